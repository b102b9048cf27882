"""Structured logging for the agent runtime.

Permission decisions, confirmation prompts, retries and session saves are all
emitted as keyword events through structlog and rendered as one JSON object per
line. The console stays quiet so it does not interleave with the conversation.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import structlog

LATEST_LOG_NAME = "latest.log"
# パーミッション拒否、リトライ、失敗したツール実行などの監査向けログ
ERROR_LOG_NAME = "error.log"

_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_NOISY_LOGGERS = ("asyncio",)

_EVENT_PROCESSORS: list[structlog.types.Processor] = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def _resolve_level(name: str) -> int:
    level = name.upper()
    if level not in _LEVEL_NAMES:
        print(
            f"Warning: Invalid log level '{name}', defaulting to INFO",
            file=sys.stderr,
        )
        level = "INFO"
    return getattr(logging, level)


def _rotating_handler(
    path: Path, level: int, formatter: logging.Formatter, backup_count: int
) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        path, when="midnight", backupCount=backup_count, encoding="utf-8"
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: str = "INFO",
    log_dir: str | Path = "logs",
    log_backup_count: int = 7,
) -> None:
    """
    エージェントのログ出力を設定する.

    出力先:
    - stderr: ERROR 以上のみ（会話の表示を邪魔しない）
    - ``<log_dir>/latest.log``: log_level 以上のすべてのイベント
    - ``<log_dir>/error.log``: WARNING 以上（パーミッション拒否、リトライ、ツールの失敗）

    ログディレクトリを作れない場合は stderr のみで続行する.

    Args:
        log_level: latest.log に出力する最低ログレベル
        log_dir: ログ出力ディレクトリ
        log_backup_count: 日次ローテーションで残す世代数
    """
    file_level = _resolve_level(log_level)

    structlog.configure(
        processors=[
            *_EVENT_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.ERROR)
    console.setFormatter(formatter)
    root.addHandler(console)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    directory = Path(log_dir)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(
            f"Warning: Failed to create log directory '{log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        return

    root.addHandler(
        _rotating_handler(directory / LATEST_LOG_NAME, file_level, formatter, log_backup_count)
    )
    root.addHandler(
        _rotating_handler(
            directory / ERROR_LOG_NAME, logging.WARNING, formatter, log_backup_count
        )
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """モジュール用の構造化ロガーを返す（通常は ``__name__`` を渡す）."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
