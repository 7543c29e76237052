"""Tests for podcast search, category search and trending shows."""

import json

import pytest

from topiq.config import FeedConfig
from topiq.services.cache_service import TTLCache
from topiq.services.podcast_service import (
    ITUNES_LOOKUP_URL,
    ITUNES_SEARCH_URL,
    SAMPLE_PODCASTS,
    PodcastService,
    best_artwork,
    format_duration,
)


ARTWORK = "https://is1-ssl.mzstatic.com/image/thumb/Podcasts/v4/aa/bb/show.jpg/600x600bb.jpg"


def show(collection_id, name="Deep Space Radio", genre="Science"):
    return {
        "wrapperType": "track",
        "kind": "podcast",
        "collectionId": collection_id,
        "collectionName": name,
        "collectionViewUrl": f"https://podcasts.apple.com/podcast/id{collection_id}",
        "feedUrl": f"https://feeds.example.com/{collection_id}.xml",
        "artworkUrl100": ARTWORK.replace("600x600", "100x100"),
        "artworkUrl600": ARTWORK,
        "primaryGenreName": genre,
        "releaseDate": "2024-03-01T08:00:00Z",
    }


def episode(track_id, name="Black holes explained", millis=1_530_000):
    return {
        "wrapperType": "podcastEpisode",
        "trackId": track_id,
        "trackName": name,
        "description": "What happens past the event horizon.",
        "episodeUrl": f"https://cdn.example.com/{track_id}.mp3",
        "trackViewUrl": f"https://podcasts.apple.com/episode/{track_id}",
        "trackTimeMillis": millis,
        "releaseDate": "2024-03-05T10:30:00Z",
    }


def lookup_route(episodes_by_show):
    def handler(url, params):
        show_id = params["id"]
        return {"results": [show(show_id)] + episodes_by_show.get(show_id, [])}
    return handler


@pytest.fixture
def podcast_config():
    return FeedConfig(podcast_cache_ttl_seconds=600, podcast_country="GB")


class TestSearchEpisodes:

    @pytest.mark.asyncio
    async def test_episodes_are_mapped_from_each_show(self, fake_http, podcast_config):
        fake_http.routes[ITUNES_SEARCH_URL] = {"results": [show(1), show(2, "Star Talk")]}
        fake_http.routes[ITUNES_LOOKUP_URL] = lookup_route({1: [episode(11), episode(12)], 2: [episode(21)]})
        service = PodcastService(fake_http, config=podcast_config)

        episodes = await service.search_episodes("black holes")

        assert [e.id for e in episodes] == [11, 12, 21]
        first = episodes[0]
        assert first.title == "Black holes explained"
        assert first.audio == "https://cdn.example.com/11.mp3"
        assert first.url == "https://podcasts.apple.com/episode/11"
        assert first.duration == "25:30"
        assert first.date_published == "2024-03-05"
        assert first.feed_title == "Deep Space Radio"
        assert first.categories == ["Science"]
        assert first.image.endswith("/1200x1200bb.jpg")

        search_params = fake_http.calls[0][1]
        assert search_params["media"] == "podcast"
        assert search_params["country"] == "GB"
        lookup_params = [p for url, p in fake_http.calls if url == ITUNES_LOOKUP_URL]
        assert all(p["entity"] == "podcastEpisode" and p["limit"] == 3 for p in lookup_params)

    @pytest.mark.asyncio
    async def test_show_without_episodes_becomes_placeholder(self, fake_http, podcast_config):
        fake_http.routes[ITUNES_SEARCH_URL] = {"results": [show(7)]}
        fake_http.routes[ITUNES_LOOKUP_URL] = lookup_route({})
        service = PodcastService(fake_http, config=podcast_config)

        [placeholder] = await service.search_episodes("radio")

        assert placeholder.id == 7
        assert placeholder.title == "Deep Space Radio"
        assert placeholder.url == "https://podcasts.apple.com/podcast/id7"
        assert placeholder.audio == ""

    @pytest.mark.asyncio
    async def test_only_limit_shows_are_expanded(self, fake_http, podcast_config):
        fake_http.routes[ITUNES_SEARCH_URL] = {"results": [show(i) for i in range(1, 9)]}
        fake_http.routes[ITUNES_LOOKUP_URL] = lookup_route({})
        service = PodcastService(fake_http, config=podcast_config)

        episodes = await service.search_episodes("science", limit=2)

        assert [e.id for e in episodes] == [1, 2]
        assert fake_http.calls[0][1]["limit"] == 10
        assert fake_http.count(ITUNES_LOOKUP_URL) == 2

    @pytest.mark.asyncio
    async def test_failing_show_lookup_is_skipped(self, fake_http, podcast_config):
        def lookup(url, params):
            if params["id"] == 1:
                raise ConnectionError("reset by peer")
            return {"results": [show(2), episode(21)]}

        fake_http.routes[ITUNES_SEARCH_URL] = {"results": [show(1), show(2)]}
        fake_http.routes[ITUNES_LOOKUP_URL] = lookup
        service = PodcastService(fake_http, config=podcast_config)

        assert [e.id for e in await service.search_episodes("space")] == [21]

    @pytest.mark.asyncio
    async def test_search_failure_returns_empty(self, fake_http, podcast_config):
        fake_http.routes[ITUNES_SEARCH_URL] = ConnectionError("offline")
        service = PodcastService(fake_http, config=podcast_config)

        assert await service.search_episodes("space") == []
        assert await service.search_episodes("   ") == []

    @pytest.mark.asyncio
    async def test_results_are_cached(self, fake_http, podcast_config, memory_store):
        fake_http.routes[ITUNES_SEARCH_URL] = {"results": [show(1)]}
        fake_http.routes[ITUNES_LOOKUP_URL] = lookup_route({1: [episode(11)]})
        service = PodcastService(fake_http, TTLCache(memory_store), podcast_config)

        first = await service.search_episodes("Black Holes")
        second = await service.search_episodes("black holes")

        assert [e.id for e in second] == [e.id for e in first] == [11]
        assert fake_http.count(ITUNES_SEARCH_URL) == 1
        assert fake_http.count(ITUNES_LOOKUP_URL) == 1

    @pytest.mark.asyncio
    async def test_related_to_searches_by_article_title(self, fake_http, podcast_config, make_article):
        fake_http.routes[ITUNES_SEARCH_URL] = {"results": []}
        service = PodcastService(fake_http, config=podcast_config)

        await service.related_to(make_article(1, title="Apollo 11"))

        assert fake_http.calls[0][1]["term"] == "Apollo 11"


class TestSearchByCategory:

    @pytest.mark.asyncio
    async def test_category_maps_to_genre(self, fake_http, podcast_config):
        fake_http.routes[ITUNES_SEARCH_URL] = {"results": [show(3, genre="Health & Fitness")]}
        fake_http.routes[ITUNES_LOOKUP_URL] = lookup_route({3: [episode(31)]})
        service = PodcastService(fake_http, config=podcast_config)

        episodes = await service.search_by_category("Health")

        assert [e.id for e in episodes] == [31]
        params = fake_http.calls[0][1]
        assert params["term"] == "Health & Fitness"
        assert params["attribute"] == "genreIndex"
        lookup_params = [p for url, p in fake_http.calls if url == ITUNES_LOOKUP_URL]
        assert lookup_params[0]["limit"] == 100

    @pytest.mark.asyncio
    async def test_empty_genre_falls_back_to_term_search(self, fake_http, podcast_config):
        def search(url, params):
            if params.get("attribute") == "genreIndex":
                return {"results": []}
            return {"results": [show(4)]}

        fake_http.routes[ITUNES_SEARCH_URL] = search
        fake_http.routes[ITUNES_LOOKUP_URL] = lookup_route({4: [episode(41)]})
        service = PodcastService(fake_http, config=podcast_config)

        episodes = await service.search_by_category("philosophy")

        assert [e.id for e in episodes] == [41]
        searches = [p for url, p in fake_http.calls if url == ITUNES_SEARCH_URL]
        assert searches[-1]["term"] == "Philosophy"
        assert "attribute" not in searches[-1]

    @pytest.mark.asyncio
    async def test_genre_error_falls_back_to_raw_category(self, fake_http, podcast_config):
        def search(url, params):
            if params.get("attribute") == "genreIndex":
                raise ConnectionError("timeout")
            return {"results": []}

        fake_http.routes[ITUNES_SEARCH_URL] = search
        service = PodcastService(fake_http, config=podcast_config)

        assert await service.search_by_category("news") == []
        searches = [p for url, p in fake_http.calls if url == ITUNES_SEARCH_URL]
        assert searches[-1]["term"] == "news"


class TestTrending:

    @pytest.mark.asyncio
    async def test_episodes_come_from_data_dir(self, fake_http, tmp_path):
        (tmp_path / "index.json").write_text(json.dumps({"podcasts": [{"id": "a"}, {"id": "b"}, {"id": "gone"}]}))
        (tmp_path / "a.json").write_text(json.dumps({"episodes": [
            {"id": 1, "title": "One", "feedTitle": "Show A", "audio": "https://cdn/1.mp3", "duration": 95},
            {"id": 2, "title": "Two", "feedTitle": "Show A", "image": ARTWORK},
        ]}))
        (tmp_path / "b.json").write_text(json.dumps({"episodes": [{"id": 3, "title": "Three", "feedTitle": "Show B"}]}))
        service = PodcastService(fake_http, config=FeedConfig(podcast_data_dir=str(tmp_path)))

        episodes = await service.trending(limit=10)

        assert [e.id for e in episodes] == [1, 2, 3]
        assert episodes[0].duration == "01:35"
        assert episodes[1].image.endswith("/1200x1200bb.jpg")
        assert fake_http.calls == []

    @pytest.mark.asyncio
    async def test_feed_fetch_script_format_is_read(self, fake_http, tmp_path):
        (tmp_path / "index.json").write_text(json.dumps({"podcasts": [{"id": "radiolab", "name": "Radiolab"}]}))
        (tmp_path / "radiolab.json").write_text(json.dumps({"podcastId": "radiolab", "episodes": [{
            "id": "radiolab-0",
            "podcastName": "Radiolab",
            "title": "The Cataclysm Sentence",
            "audioUrl": "https://cdn.example.com/radiolab-0.mp3",
            "link": "https://radiolab.org/episodes/cataclysm",
            "duration": "0:42:10",
            "publishDate": "2024-02-02T12:00:00.000Z",
            "category": "science",
        }]}))
        service = PodcastService(fake_http, config=FeedConfig(podcast_data_dir=str(tmp_path)))

        [episode] = await service.trending()

        assert isinstance(episode.id, int)
        assert episode.feed_title == "Radiolab"
        assert episode.audio == "https://cdn.example.com/radiolab-0.mp3"
        assert episode.url == "https://radiolab.org/episodes/cataclysm"
        assert episode.duration == "0:42:10"
        assert episode.date_published == "2024-02-02"
        assert episode.categories == ["science"]

    @pytest.mark.asyncio
    async def test_missing_data_dir_uses_built_in_shows(self, fake_http, tmp_path):
        service = PodcastService(fake_http, config=FeedConfig(podcast_data_dir=str(tmp_path / "absent")))

        episodes = await service.trending(limit=3)

        assert [e.title for e in episodes] == [p.title for p in SAMPLE_PODCASTS[:3]]

    @pytest.mark.asyncio
    async def test_built_in_shows_are_repeated_with_distinct_ids(self, fake_http):
        service = PodcastService(fake_http, config=FeedConfig())

        episodes = await service.trending(limit=12)

        assert len(episodes) == 12
        assert len({e.id for e in episodes}) == 12
        assert episodes[5].title == "The Daily 2"
        assert all(e.image.endswith("/1200x1200bb.jpg") for e in episodes)
        assert SAMPLE_PODCASTS[0].title == "The Daily"


def test_format_duration():
    assert format_duration(1_530_000) == "25:30"
    assert format_duration(0) == "00:00"
    assert format_duration(None) == "00:00"


def test_best_artwork_prefers_first_available():
    assert best_artwork(None, "", ARTWORK).endswith("/1200x1200bb.jpg")
    assert best_artwork("https://example.org/cover.png") == "https://example.org/cover.png"
    assert best_artwork() is None
