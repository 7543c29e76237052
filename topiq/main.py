#!/usr/bin/env python3
"""
Command-line runner for the topiq feed.

Starts a feed session against the live sources, prints the articles and
optionally loads more, refreshes or searches. Intended as a demo shell for
the library; the real consumer is a card viewer.
"""

import argparse
import asyncio
import logging
import sys
import textwrap
from typing import List, Optional

from topiq.config import load_config
from topiq.models.content import Article, PodcastEpisode
from topiq.pipeline.feed_session import FeedSessionManager, FeedStatus
from topiq.services.cache_service import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from topiq.services.http_client import HttpClient
from topiq.utils.error_monitoring import BatchTotalFailure
from topiq.utils.logging_config import setup_logging


def print_articles(articles: List[Article], start: int = 0, liked=None) -> None:
    for i, article in enumerate(articles, start=start):
        mark = "♥" if liked and liked(article.id) else " "
        print(f"{i:3d} {mark} [{article.source_kind.value}] {article.title}")
        if article.description_line:
            print(f"        {article.description_line}")
        if article.body_text:
            print(textwrap.indent(textwrap.shorten(article.body_text, width=160, placeholder="..."), "        "))


def print_episodes(episodes: List[PodcastEpisode]) -> None:
    for i, episode in enumerate(episodes):
        print(f"{i:3d} [{episode.duration}] {episode.title}  ({episode.feed_title})")
        if episode.audio or episode.url:
            print(f"        {episode.audio or episode.url}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="topiq infinite content feed")
    parser.add_argument('--env-file', default=None, help='Path to a .env file')
    parser.add_argument('--memory', action='store_true', help='Keep state in memory instead of SQLite')
    parser.add_argument('--refresh', action='store_true', help='Replace the feed with a fresh batch')
    parser.add_argument('--more', type=int, default=0, metavar='N', help='Load more articles N times')
    parser.add_argument('--query', default=None, help='Fetch one batch for a topic instead of the feed')
    parser.add_argument('--watch', type=float, default=0, metavar='SECONDS', help='Poll in the background for SECONDS')
    parser.add_argument('--like', type=int, default=None, metavar='INDEX', help='Toggle like on the article at INDEX')
    parser.add_argument('--saved', action='store_true', help='List liked articles')
    parser.add_argument('--history', action='store_true', help='List recently viewed articles')
    parser.add_argument('--clear', action='store_true', help='Clear the persisted feed')
    parser.add_argument('--stats', action='store_true', help='Show per-source fetch statistics')
    parser.add_argument('--add-topic', default=None, metavar='TOPIC', help='Check that TOPIC finds articles before using it')
    parser.add_argument('--podcasts', default=None, metavar='TERM', help='Search podcast episodes')
    parser.add_argument('--podcast-category', default=None, metavar='CATEGORY', help='Podcast episodes for a category')
    parser.add_argument('--trending-podcasts', action='store_true', help='List trending podcasts')
    parser.add_argument('--log-level', default='WARNING', help='Logging level (default: WARNING)')
    parser.add_argument('--log-dir', default=None, help='Write rotating log files to this directory')
    parser.add_argument('--json-logs', action='store_true', help='Structured JSON logging')
    return parser


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.env_file)
    store: KeyValueStore = MemoryKeyValueStore() if args.memory else SqliteKeyValueStore(config.database_path)

    async with HttpClient(config.user_agent, config.request_timeout_seconds) as http:
        session = FeedSessionManager.create(config, store, http)
        try:
            if args.clear:
                await session.clear()
                print("Feed cleared.")
                return 0

            if args.saved or args.history:
                await session.bookmarks.load()
                if args.saved:
                    print_articles(await session.bookmarks.get_saved_articles())
                if args.history:
                    print_articles(await session.bookmarks.get_viewed_articles())
                return 0

            if args.add_topic:
                accepted = await session.add_topic(args.add_topic)
                print(f"{'Accepted' if accepted else 'Rejected'} topic: {args.add_topic}")
                return 0 if accepted else 1

            if args.podcasts or args.podcast_category or args.trending_podcasts:
                if args.podcasts:
                    episodes = await session.podcasts.search_episodes(args.podcasts)
                elif args.podcast_category:
                    episodes = await session.podcasts.search_by_category(args.podcast_category)
                else:
                    episodes = await session.podcasts.trending()
                print_episodes(episodes)
                return 0 if episodes else 1

            if args.query:
                counts = session.aggregator.calculate_source_distribution(config.batch_size)
                articles = await session.aggregator.fetch_batch(counts, query=args.query)
                print_articles(articles)
                return 0 if articles else 1

            try:
                await session.start()
                if args.refresh:
                    await session.refresh()
            except BatchTotalFailure as e:
                print(f"❌ Could not load the feed: {e}")
                return 1

            if session.status == FeedStatus.ERROR:
                print(f"❌ {session.state.error}")
                return 1

            for _ in range(args.more):
                added = await session.load_more()
                print(f"Loaded {added} more articles")

            if args.watch > 0:
                session.start_polling()
                await asyncio.sleep(args.watch)
                session.stop_polling()

            if args.like is not None:
                items = session.get_items()
                if 0 <= args.like < len(items):
                    liked = await session.bookmarks.toggle_like(items[args.like])
                    print(f"{'Liked' if liked else 'Unliked'}: {items[args.like].title}")

            print_articles(session.get_items(), liked=session.is_liked)

            if args.stats:
                stats = session.aggregator.get_fetch_statistics()
                print("Fetch statistics:")
                for source, s in stats["sources"].items():
                    print(f"  {source}: {s['count']} fetches, {s['articles']} articles, {s['errors']} errors, {s['time']:.2f}s")
            return 0
        finally:
            await session.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    setup_logging(
        log_level=args.log_level,
        log_dir=args.log_dir,
        enable_file_logging=args.log_dir is not None,
        enable_structured_logging=args.json_logs,
    )

    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\n⚠️ Shutting down gracefully...")
        code = 130
    except Exception as e:  # noqa: BLE001
        print(f"❌ Fatal error: {e}")
        logging.exception("Fatal error in main")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
