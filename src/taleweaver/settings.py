"""Configuration helpers for embedding the engine and deploying the session API."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


def _normalise_path(value: str | None) -> Path | None:
    if value is None:
        return None

    trimmed = value.strip()
    if not trimmed:
        return None

    return Path(trimmed).expanduser()


def _normalise_string(value: str | None, *, default: str) -> str:
    if value is None:
        return default

    trimmed = value.strip()
    return trimmed or default


def _parse_positive_int(source: Mapping[str, str], name: str, *, default: int) -> int:
    raw = source.get(name)
    if raw is None or not raw.strip():
        return default

    try:
        parsed = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a positive integer.") from exc
    if parsed < 1:
        raise ValueError(f"{name} must be greater than zero.")
    return parsed


def _parse_non_negative_float(
    source: Mapping[str, str], name: str, *, default: float
) -> float:
    raw = source.get(name)
    if raw is None or not raw.strip():
        return default

    try:
        parsed = float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of seconds.") from exc
    if parsed < 0:
        raise ValueError(f"{name} must not be negative.")
    return parsed


def _parse_bool(source: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = source.get(name)
    if raw is None or not raw.strip():
        return default

    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false).")


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings shared by engines and the session API.

    Values are read from ``TALEWEAVER_*`` environment variables so the service
    can be configured without modifying application code. Paths are expanded
    to support ``~`` prefixes while empty strings are treated as if the
    variable was unset.
    """

    story_path: Path | None = None
    save_dir: Path | None = None
    max_undo_entries: int = 50
    max_redo_entries: int = 50
    max_checkpoints: int = 50
    autosave_enabled: bool = False
    autosave_throttle_seconds: float = 0.1
    autosave_max_entries: int = 10
    condition_cache_size: int = 100
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        """Return settings populated from ``environ``.

        Args:
            environ: Optional mapping of environment variables. When omitted,
                :data:`os.environ` is used.

        Raises:
            ValueError: If a numeric or boolean variable cannot be parsed.
        """

        source = environ if environ is not None else os.environ

        return cls(
            story_path=_normalise_path(source.get("TALEWEAVER_STORY_PATH")),
            save_dir=_normalise_path(source.get("TALEWEAVER_SAVE_DIR")),
            max_undo_entries=_parse_positive_int(
                source, "TALEWEAVER_MAX_UNDO_ENTRIES", default=50
            ),
            max_redo_entries=_parse_positive_int(
                source, "TALEWEAVER_MAX_REDO_ENTRIES", default=50
            ),
            max_checkpoints=_parse_positive_int(
                source, "TALEWEAVER_MAX_CHECKPOINTS", default=50
            ),
            autosave_enabled=_parse_bool(
                source, "TALEWEAVER_AUTOSAVE_ENABLED", default=False
            ),
            autosave_throttle_seconds=_parse_non_negative_float(
                source, "TALEWEAVER_AUTOSAVE_THROTTLE_SECONDS", default=0.1
            ),
            autosave_max_entries=_parse_positive_int(
                source, "TALEWEAVER_AUTOSAVE_MAX_ENTRIES", default=10
            ),
            condition_cache_size=_parse_positive_int(
                source, "TALEWEAVER_CONDITION_CACHE_SIZE", default=100
            ),
            log_level=_normalise_string(
                source.get("TALEWEAVER_LOG_LEVEL"), default="INFO"
            ).upper(),
        )


__all__ = ["EngineSettings"]
