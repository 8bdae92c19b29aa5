import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_CONSOLE_FORMAT = "<level>{level:<8}</level> | <cyan>{name}</cyan> - <level>{message}</level>"
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"

# Modules whose warnings form the moderation and billing audit trail.
AUDIT_MODULES = (
    "character_chat.moderation",
    "character_chat.metering",
    "character_chat.chat_service",
)


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    """Human-readable log lines on stderr, keeping stdout free for chat output."""

    def register(self, level: str) -> int:
        return logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT)

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(self, path: str = "chat.log", rotation: str = "10 MB", retention: int = 3):
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            self._path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level})"


class AuditLogConsumer:
    """JSON lines for moderation blocks, rejected debits and settled-bucket credits.

    Only records from ``AUDIT_MODULES`` reach this sink; the level defaults to
    WARNING so routine debug output stays out of the audit file.
    """

    def __init__(self, path: str = "audit.jsonl", rotation: str = "1 day", retention: str = "30 days"):
        self._path = path
        self._rotation = rotation
        self._retention = retention

    @staticmethod
    def accepts(record: dict) -> bool:
        return (record["name"] or "").startswith(AUDIT_MODULES)

    def register(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            self._path,
            level=level,
            filter=self.accepts,
            serialize=True,
            rotation=self._rotation,
            retention=self._retention,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        return f"audit ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "audit": AuditLogConsumer,
}

_DEFAULT_LEVELS = {"console": "WARNING", "audit": "WARNING"}

_DEFAULT_CONSUMERS: list[dict[str, Any]] = [
    {"type": "console"},
    {"type": "file", "path": "chat.log"},
    {"type": "audit", "path": "audit.jsonl"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all loguru sinks with the configured consumers.

    ``consumers`` comes from the ``LogConsumers`` config key. Each entry has a
    ``type`` and an optional ``level``; the remaining keys go to the consumer.
    Returns a description of each registered consumer.
    """
    logger.remove()

    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        sink_level = config.get("level") or _DEFAULT_LEVELS.get(sink_type, level)
        consumer = cls(**{k: v for k, v in config.items() if k not in ("type", "level")})
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
