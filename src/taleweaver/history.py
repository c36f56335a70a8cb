"""Bounded undo/redo stacks of narrative state snapshots."""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, FrozenSet, List, Mapping

from loguru import logger

from .errors import NarrativeError
from .persistence import iso_timestamp
from .state import NarrativeState

TRACKABLE_ACTIONS: FrozenSet[str] = frozenset(
    {"choice", "flag-change", "state-load", "reset", "navigation", "custom"}
)


@dataclass(frozen=True)
class HistoryEntry:
    """A state captured immediately before a tracked mutation."""

    id: str
    state: NarrativeState
    timestamp: str
    action: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "timestamp": self.timestamp, "action": self.action}


@dataclass(frozen=True)
class UndoRedoConfig:
    enabled: bool = True
    max_undo_entries: int = 50
    max_redo_entries: int = 50
    track_flag_changes: bool = True
    track_choice_text: bool = True
    track_actions: FrozenSet[str] = TRACKABLE_ACTIONS

    def __post_init__(self) -> None:
        if self.max_undo_entries < 1 or self.max_redo_entries < 1:
            raise ValueError("undo/redo bounds must be positive integers")
        actions = frozenset(self.track_actions)
        unknown = actions - TRACKABLE_ACTIONS
        if unknown:
            raise ValueError(f"Unknown tracked action(s): {', '.join(sorted(unknown))}")
        object.__setattr__(self, "track_actions", actions)


@dataclass(frozen=True)
class UndoRedoResult:
    """Outcome of an undo or redo, including stack sizes before and after."""

    success: bool
    error: str | None = None
    restored_state: NarrativeState | None = None
    entry: HistoryEntry | None = None
    undo_count_before: int = 0
    redo_count_before: int = 0
    undo_count: int = 0
    redo_count: int = 0
    duration_ms: float = 0.0

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "stackSizes": {"undoCount": self.undo_count, "redoCount": self.redo_count},
            "previousStackSizes": {
                "undoCount": self.undo_count_before,
                "redoCount": self.redo_count_before,
            },
            "duration": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.entry is not None:
            payload["entry"] = {
                **self.entry.summary(),
                "nodeId": self.entry.metadata.get("nodeId"),
            }
        if self.restored_state is not None:
            payload["restoredState"] = self.restored_state.to_payload()
        return payload


class UndoRedoManager:
    """Keep linear undo/redo history for one engine.

    The manager reads and replaces the live state through the ``capture``
    and ``restore`` callables supplied by its owner. While a restore is in
    progress :attr:`is_restoring` is ``True`` and :meth:`record` ignores
    every call, so undoing never produces a new undo entry.
    """

    def __init__(
        self,
        capture: Callable[[], NarrativeState],
        restore: Callable[[NarrativeState], None],
        config: UndoRedoConfig | None = None,
    ) -> None:
        self._capture = capture
        self._restore = restore
        self.config = config or UndoRedoConfig()
        self._undo: List[HistoryEntry] = []
        self._redo: List[HistoryEntry] = []
        self._restoring = False

    @property
    def is_restoring(self) -> bool:
        return self._restoring

    @property
    def undo_count(self) -> int:
        return len(self._undo)

    @property
    def redo_count(self) -> int:
        return len(self._redo)

    def can_undo(self) -> bool:
        return self.config.enabled and bool(self._undo)

    def can_redo(self) -> bool:
        return self.config.enabled and bool(self._redo)

    def configure(self, **changes: Any) -> UndoRedoConfig:
        """Update individual config fields and trim the stacks to any new bounds."""

        if "track_actions" in changes:
            changes["track_actions"] = frozenset(changes["track_actions"])
        self.config = replace(self.config, **changes)
        _trim(self._undo, self.config.max_undo_entries)
        _trim(self._redo, self.config.max_redo_entries)
        if not self.config.enabled:
            self.clear()
        return self.config

    def record(
        self,
        state: NarrativeState,
        action: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> HistoryEntry | None:
        """Push ``state`` (the pre-mutation state) for ``action``.

        Any recorded mutation invalidates the redo stack, even when
        ``action`` itself is not tracked.
        """

        if self._restoring or not self.config.enabled:
            return None

        self._redo.clear()
        if action not in self.config.track_actions:
            return None

        details = dict(metadata or {})
        if not self.config.track_flag_changes:
            details.pop("flagsChanged", None)
        if not self.config.track_choice_text:
            details.pop("choiceText", None)

        entry = HistoryEntry(
            id=f"h-{uuid.uuid4().hex[:12]}",
            state=state.clone(),
            timestamp=iso_timestamp(),
            action=action,
            metadata=copy.deepcopy(details),
        )
        self._undo.append(entry)
        _trim(self._undo, self.config.max_undo_entries)
        logger.debug("Recorded undo entry {} for {}", entry.id, action)
        return entry

    def undo(self) -> UndoRedoResult:
        """Restore the newest undo entry, moving the current state onto the redo stack."""

        return self._swap(self._undo, self._redo, self.config.max_redo_entries, "undo")

    def redo(self) -> UndoRedoResult:
        """Re-apply the newest redo entry, moving the current state onto the undo stack."""

        return self._swap(self._redo, self._undo, self.config.max_undo_entries, "redo")

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    def get_history_summary(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "undoEntries": [entry.summary() for entry in self._undo],
            "redoEntries": [entry.summary() for entry in self._redo],
        }

    def _swap(
        self,
        source: List[HistoryEntry],
        target: List[HistoryEntry],
        target_bound: int,
        operation: str,
    ) -> UndoRedoResult:
        started = time.perf_counter()
        before = (len(self._undo), len(self._redo))

        def _result(success: bool, **extra: Any) -> UndoRedoResult:
            return UndoRedoResult(
                success=success,
                undo_count_before=before[0],
                redo_count_before=before[1],
                undo_count=len(self._undo),
                redo_count=len(self._redo),
                duration_ms=(time.perf_counter() - started) * 1000,
                **extra,
            )

        if not self.config.enabled:
            return _result(False, error="Undo/redo is disabled")
        if not source:
            return _result(False, error=f"No operations to {operation}")

        entry = source.pop()
        try:
            current = self._capture()
        except NarrativeError as exc:
            source.append(entry)
            logger.warning("Could not capture state for {}: {}", operation, exc)
            return _result(False, error=f"Failed to {operation}: {exc}")

        target.append(
            HistoryEntry(
                id=f"h-{uuid.uuid4().hex[:12]}",
                state=current,
                timestamp=iso_timestamp(),
                action=entry.action,
                metadata={"nodeId": current.current_node_id},
            )
        )
        _trim(target, target_bound)

        restored = entry.state.clone()
        self._restoring = True
        try:
            self._restore(restored)
        finally:
            self._restoring = False

        logger.debug("{} restored node {}", operation.capitalize(), restored.current_node_id)
        return _result(True, restored_state=restored.clone(), entry=entry)


def _trim(stack: List[HistoryEntry], bound: int) -> None:
    excess = len(stack) - bound
    if excess > 0:
        del stack[:excess]


__all__ = [
    "TRACKABLE_ACTIONS",
    "HistoryEntry",
    "UndoRedoConfig",
    "UndoRedoResult",
    "UndoRedoManager",
]
