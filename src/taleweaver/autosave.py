"""Throttled, trigger-driven automatic checkpoints."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, FrozenSet, List, Mapping

from loguru import logger

from .errors import NarrativeError
from .persistence import CheckpointOptions, PersistenceManager
from .state import NarrativeState
from .story import Node

AUTOSAVE_TRIGGERS: FrozenSet[str] = frozenset(
    {"choice", "flag-change", "state-load", "branch-exit", "custom"}
)
MANUAL_TRIGGER = "manual"
AUTOSAVE_TAG = "autosave"


@dataclass(frozen=True)
class AutosaveConfig:
    """Autosave settings.

    ``name_pattern`` may use the ``{timestamp}`` (epoch milliseconds),
    ``{node_id}`` and ``{trigger}`` placeholders.
    """

    enabled: bool = False
    triggers: FrozenSet[str] = frozenset({"choice", "flag-change"})
    max_entries: int = 10
    throttle_seconds: float = 0.1
    include_metadata: bool = True
    name_pattern: str = "autosave-{timestamp}-{node_id}"

    def __post_init__(self) -> None:
        triggers = frozenset(self.triggers)
        unknown = triggers - AUTOSAVE_TRIGGERS
        if unknown:
            raise ValueError(f"Unknown autosave trigger(s): {', '.join(sorted(unknown))}")
        if self.max_entries < 1:
            raise ValueError("max_entries must be a positive integer")
        if self.throttle_seconds < 0:
            raise ValueError("throttle_seconds must not be negative")
        object.__setattr__(self, "triggers", triggers)


@dataclass(frozen=True)
class AutosaveResult:
    success: bool
    trigger: str
    error: str | None = None
    checkpoint_id: str | None = None
    duration_ms: float = 0.0
    size: int = 0

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "trigger": self.trigger,
            "duration": self.duration_ms,
            "size": self.size,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.checkpoint_id is not None:
            payload["checkpointId"] = self.checkpoint_id
        return payload


class AutosaveController:
    """Create autosave checkpoints through a :class:`PersistenceManager`.

    Only the newest ``max_entries`` autosaves are retained; older ones are
    deleted from the manager. Manual checkpoints are never touched.
    """

    def __init__(
        self,
        persistence: PersistenceManager,
        capture: Callable[[], NarrativeState],
        current_node: Callable[[], Node | None],
        config: AutosaveConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._persistence = persistence
        self._capture = capture
        self._current_node = current_node
        self.config = config or AutosaveConfig()
        self._clock = clock
        self._last_saved_at: float | None = None
        self._autosave_ids: List[str] = []
        self.last_result: AutosaveResult | None = None

    @property
    def autosave_ids(self) -> List[str]:
        """Ids of the retained autosave checkpoints, oldest first."""

        self._forget_deleted()
        return list(self._autosave_ids)

    def configure(self, **changes: Any) -> AutosaveConfig:
        if "triggers" in changes:
            changes["triggers"] = frozenset(changes["triggers"])
        self.config = replace(self.config, **changes)
        self._enforce_retention()
        return self.config

    def trigger(
        self, trigger: str, metadata: Mapping[str, Any] | None = None
    ) -> AutosaveResult | None:
        """Autosave for ``trigger`` if enabled and configured for it.

        Returns ``None`` when no autosave was attempted. A trigger arriving
        within the throttle window is dropped and reported as a failed
        result rather than queued.
        """

        if not self.config.enabled or trigger not in self.config.triggers:
            return None

        now = self._clock()
        if (
            self._last_saved_at is not None
            and now - self._last_saved_at < self.config.throttle_seconds
        ):
            result = AutosaveResult(
                success=False,
                trigger=trigger,
                error=f"Autosave throttled: last save was less than "
                f"{self.config.throttle_seconds}s ago",
            )
            logger.warning("Dropped {} autosave: throttled", trigger)
            self.last_result = result
            return result

        return self._save(trigger, metadata)

    def manual(self, metadata: Mapping[str, Any] | None = None) -> AutosaveResult:
        """Autosave immediately, ignoring the enabled flag, triggers and throttle."""

        return self._save(MANUAL_TRIGGER, metadata)

    def _save(self, trigger: str, metadata: Mapping[str, Any] | None) -> AutosaveResult:
        started = time.perf_counter()
        try:
            state = self._capture()
            name = self.config.name_pattern.format(
                timestamp=int(time.time() * 1000),
                node_id=state.current_node_id,
                trigger=trigger,
            )
            checkpoint = self._persistence.create_checkpoint(
                state,
                name,
                CheckpointOptions(
                    include_metadata=self.config.include_metadata,
                    auto_tags=(AUTOSAVE_TAG, trigger),
                    description=f"Automatic save ({trigger})",
                ),
                node=self._current_node(),
                metadata={"trigger": trigger, **dict(metadata or {})},
            )
            size = len(json.dumps(checkpoint.to_payload(), default=str).encode("utf-8"))
        except (NarrativeError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.warning("Autosave for {} failed: {}", trigger, exc)
            result = AutosaveResult(
                success=False,
                trigger=trigger,
                error=f"Autosave failed: {exc}",
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            self.last_result = result
            return result

        self._last_saved_at = self._clock()
        self._autosave_ids.append(checkpoint.id)
        self._enforce_retention()

        result = AutosaveResult(
            success=True,
            trigger=trigger,
            checkpoint_id=checkpoint.id,
            duration_ms=(time.perf_counter() - started) * 1000,
            size=size,
        )
        logger.info("Autosaved checkpoint {} on {}", checkpoint.id, trigger)
        self.last_result = result
        return result

    def _forget_deleted(self) -> None:
        self._autosave_ids = [
            checkpoint_id
            for checkpoint_id in self._autosave_ids
            if self._persistence.get_checkpoint(checkpoint_id) is not None
        ]

    def _enforce_retention(self) -> None:
        self._forget_deleted()
        while len(self._autosave_ids) > self.config.max_entries:
            self._persistence.delete_checkpoint(self._autosave_ids.pop(0))


__all__ = [
    "AUTOSAVE_TRIGGERS",
    "AutosaveConfig",
    "AutosaveResult",
    "AutosaveController",
]
