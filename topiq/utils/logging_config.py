"""
Logging setup for topiq.

Console output is colored when attached to a terminal, or JSON lines when
structured logging is on. File logging adds a daily rotating log and a
separate error log. Batch-level numbers travel on the record as
`metrics` so the JSON output can be analysed without parsing messages.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Loggers that follow the requested level; everything else stays at WARNING
TOPIQ_LOGGERS = ('topiq.pipeline', 'topiq.services')
NOISY_LOGGERS = ('aiohttp', 'aiosqlite', 'asyncio')


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}.{record.funcName}:{record.lineno}",
        }

        metrics = getattr(record, 'metrics', None)
        if metrics:
            log_entry['metrics'] = metrics
        source = getattr(record, 'source', None)
        if source:
            log_entry['source'] = source

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """[HH:MM:SS] LEVEL [logger] message, colored by level when `use_color`."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record):
        # Drop the package prefix; every logger here lives under topiq.
        name = record.name[len('topiq.'):] if record.name.startswith('topiq.') else record.name
        line = f"[{self.formatTime(record, '%H:%M:%S')}] {record.levelname:8} [{name:28}] {record.getMessage()}"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"

        if not self.use_color:
            return line
        return f"{self.COLORS.get(record.levelname, '')}{line}{self.RESET}"


def resolve_level(log_level: str) -> int:
    """Level name -> logging constant; unknown names fall back to INFO."""
    level = logging.getLevelName(str(log_level).upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_file_logging: bool = False,
    enable_structured_logging: bool = False
) -> None:
    """
    Configure the root logger for the CLI.

    Args:
        log_level: Minimum console level; unknown names mean INFO
        log_dir: Directory for log files (defaults to ./logs)
        enable_file_logging: Also write topiq.log and errors.log
        enable_structured_logging: JSON lines instead of colored text
    """
    level = resolve_level(log_level)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    if enable_structured_logging:
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(ColoredConsoleFormatter(use_color=sys.stderr.isatty()))
    root_logger.addHandler(console_handler)

    if enable_file_logging:
        log_path = Path(log_dir) if log_dir else Path.cwd() / "logs"
        log_path.mkdir(parents=True, exist_ok=True)

        daily_handler = logging.handlers.TimedRotatingFileHandler(
            log_path / "topiq.log",
            when='midnight',
            backupCount=7,
            encoding='utf-8'
        )
        daily_handler.setLevel(logging.DEBUG)
        if enable_structured_logging:
            daily_handler.setFormatter(StructuredFormatter())
        else:
            daily_handler.setFormatter(logging.Formatter(
                '%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s'
            ))
        root_logger.addHandler(daily_handler)

        error_handler = logging.FileHandler(log_path / "errors.log", encoding='utf-8')
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)-28s | %(funcName)s:%(lineno)d | %(message)s'
        ))
        root_logger.addHandler(error_handler)

        # File handlers want DEBUG from topiq even when the console is quieter
        root_logger.setLevel(logging.DEBUG)

    for name in TOPIQ_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if enable_file_logging else level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if not isinstance(logging.getLevelName(str(log_level).upper()), int):
        logging.getLogger(__name__).warning(f"Unknown log level {log_level!r}; using INFO")


class PerformanceTracker:
    """Times a block; `duration_ms` is set on exit."""

    def __init__(self, operation_name: str, logger: Optional[logging.Logger] = None):
        self.operation_name = operation_name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time: Optional[float] = None
        self.duration_ms = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"⏱️ Starting: {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        if exc_type:
            self.logger.error(f"💥 Failed: {self.operation_name} ({self.duration_ms:.1f}ms) - {exc_val}")
        else:
            self.logger.debug(f"✅ Completed: {self.operation_name} ({self.duration_ms:.1f}ms)")
        return False


def log_pipeline_metrics(
    logger: logging.Logger,
    stage: str,
    candidates: int,
    kept: int,
    duration_ms: float,
    **extra: Any
) -> Dict[str, Any]:
    """Log how many candidate articles a stage kept, with the numbers attached as `metrics`."""
    metrics = {
        'stage': stage,
        'candidates': candidates,
        'kept': kept,
        'dropped': max(candidates - kept, 0),
        'duration_ms': round(duration_ms, 1),
        **extra
    }
    logger.info(f"📊 {stage}: kept {kept} of {candidates} candidates ({duration_ms:.1f}ms)", extra={'metrics': metrics})
    return metrics
