"""Mutable reader state tracked by the narrative engine."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping

from .errors import StateError


@dataclass
class NarrativeState:
    """Represents where the reader is and how they got there.

    The state keeps track of three key pieces of information:

    * ``current_node_id`` – the node currently shown to the reader.
    * ``flags`` – an open-ended bag of values; a missing key means *unset*,
      which is distinct from ``False`` or ``0``.
    * ``history`` – every node id visited, in order, starting with the node
      the story began on. It is append-only and never empty.
    """

    current_node_id: str
    flags: Dict[str, Any] = field(default_factory=dict)
    history: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.current_node_id, str) or not self.current_node_id.strip():
            raise StateError("current_node_id must be a non-empty string")
        if not self.history:
            self.history = [self.current_node_id]

    def clone(self) -> "NarrativeState":
        """Return a deep copy that shares no mutable data with this state."""

        try:
            return NarrativeState(
                current_node_id=self.current_node_id,
                flags=copy.deepcopy(self.flags),
                history=list(self.history),
            )
        except (TypeError, copy.Error) as exc:
            raise StateError(f"State could not be copied: {exc}") from exc

    def move_to(self, node_id: str) -> None:
        """Set the current node and append it to the history."""

        self.current_node_id = node_id
        self.history.append(node_id)

    def apply_flag_effects(self, effects: Mapping[str, Any]) -> List[str]:
        """Shallow-merge ``effects`` into the flags and return the changed keys."""

        changed = [key for key, value in effects.items() if self.flags.get(key, _MISSING) != value]
        self.flags.update(copy.deepcopy(dict(effects)))
        return changed

    def to_payload(self) -> Dict[str, Any]:
        """Return a JSON-friendly copy using the persisted field names."""

        return {
            "currentNodeId": self.current_node_id,
            "flags": copy.deepcopy(self.flags),
            "history": list(self.history),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "NarrativeState":
        """Build a state from its persisted representation."""

        if not isinstance(payload, Mapping):
            raise StateError("Invalid state payload: expected an object")

        current = payload.get("currentNodeId")
        flags = payload.get("flags", {})
        history = payload.get("history", [])

        if not isinstance(current, str) or not current.strip():
            raise StateError("Invalid state payload: missing currentNodeId")
        if not isinstance(flags, Mapping):
            raise StateError("Invalid state payload: flags must be an object")
        if isinstance(history, (str, bytes)) or not isinstance(history, Iterable):
            raise StateError("Invalid state payload: history must be a list")

        return cls(
            current_node_id=current,
            flags=copy.deepcopy(dict(flags)),
            history=[str(entry) for entry in history],
        )


class _Missing:
    __slots__ = ()


_MISSING = _Missing()


@dataclass(frozen=True)
class FlowEvent:
    """A recorded transition between two nodes caused by a choice."""

    from_node_id: str
    to_node_id: str
    choice_text: str
    timestamp: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "fromNodeId": self.from_node_id,
            "toNodeId": self.to_node_id,
            "choiceText": self.choice_text,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "FlowEvent":
        return cls(
            from_node_id=str(payload["fromNodeId"]),
            to_node_id=str(payload["toNodeId"]),
            choice_text=str(payload.get("choiceText", "")),
            timestamp=float(payload.get("timestamp", 0.0)),
        )


__all__ = ["NarrativeState", "FlowEvent"]
