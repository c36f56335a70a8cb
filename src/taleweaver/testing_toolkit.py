"""Helpers for manipulating ``NarrativeEngine`` instances during tests."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from .engine import NarrativeEngine
from .state import NarrativeState
from .story import Node


@dataclass(frozen=True)
class EngineDebugSnapshot:
    """Structured view of an engine's internal state for debugging."""

    node_id: str
    flags: Mapping[str, Any]
    history: tuple[str, ...]
    visible_choices: tuple[str, ...]
    available_choices: tuple[str, ...]
    undo_count: int
    redo_count: int
    checkpoint_count: int


__all__ = [
    "EngineDebugSnapshot",
    "set_flags",
    "jump_to_node",
    "debug_snapshot",
    "StepResult",
    "step_through",
]


@dataclass(frozen=True)
class StepResult:
    """Outcome of a single scripted choice."""

    choice_text: str | None
    node: Node


def set_flags(
    engine: NarrativeEngine,
    flags: Mapping[str, Any],
    *,
    replace: bool = False,
    record_history: bool = False,
) -> None:
    """Apply ``flags`` to the engine.

    When ``replace`` is true every existing flag is dropped first. By default
    the change bypasses undo tracking and autosave so fixtures stay
    deterministic; ``record_history`` routes each flag through
    :meth:`NarrativeEngine.set_flag` instead.
    """

    if record_history:
        if replace:
            raise ValueError("replace=True cannot be combined with record_history")
        for name, value in flags.items():
            engine.set_flag(name, value)
        return

    state = engine.get_state()
    updated = {} if replace else state.flags
    updated.update(copy.deepcopy(dict(flags)))
    engine.load_simple_state(
        NarrativeState(state.current_node_id, updated, state.history), track=False
    )


def jump_to_node(
    engine: NarrativeEngine,
    node_id: str,
    *,
    record_event: bool = False,
) -> None:
    """Move ``engine`` to ``node_id`` without needing to play through choices.

    With ``record_event`` the helper delegates to
    :meth:`NarrativeEngine.go_to_node_by_id` so history and undo tracking
    mirror real navigation. The default still appends the visit to history
    but records no undo entry and fires no autosave, so the
    helper can be used for deterministic setup.
    """

    if record_event:
        engine.go_to_node_by_id(node_id)
        return

    if node_id not in engine.story:
        raise KeyError(f"Unknown node '{node_id}'")
    state = engine.get_state()
    engine.load_simple_state(
        NarrativeState(node_id, state.flags, [*state.history, node_id]), track=False
    )


def debug_snapshot(engine: NarrativeEngine) -> EngineDebugSnapshot:
    """Capture a deterministic snapshot of ``engine`` for debugging.

    Flags are copied into a key-sorted dictionary to provide stable
    comparisons in assertions or golden snapshots.
    """

    state = engine.get_state()
    return EngineDebugSnapshot(
        node_id=state.current_node_id,
        flags={key: state.flags[key] for key in sorted(state.flags)},
        history=tuple(state.history),
        visible_choices=tuple(choice.text for choice in engine.get_visible_choices()),
        available_choices=tuple(choice.text for choice in engine.get_available_choices()),
        undo_count=engine.undo_count,
        redo_count=engine.redo_count,
        checkpoint_count=len(engine.get_checkpoints()),
    )


def step_through(
    engine: NarrativeEngine,
    choices: Iterable[str | int],
) -> Sequence[StepResult]:
    """Execute a series of choices, given by visible text or index, one at a time."""

    steps: list[StepResult] = [StepResult(choice_text=None, node=engine.get_current_node())]

    for raw_choice in choices:
        visible = engine.get_visible_choices()
        if not visible:
            raise RuntimeError(
                "No further choices can be made: the current node offered no choices."
            )

        if isinstance(raw_choice, int) and not isinstance(raw_choice, bool):
            index = raw_choice
        elif isinstance(raw_choice, str):
            wanted = raw_choice.strip().lower()
            if not wanted:
                raise ValueError("Choice text must be non-empty after trimming whitespace.")
            matches = [i for i, choice in enumerate(visible) if choice.text.lower() == wanted]
            if not matches:
                formatted = ", ".join(choice.text for choice in visible)
                raise ValueError(
                    f"Choice '{raw_choice}' is not available. Choose from: {formatted}."
                )
            index = matches[0]
        else:
            raise TypeError("Choices must be given as text or integer indices.")

        text = visible[index].text if 0 <= index < len(visible) else None
        node = engine.make_choice(index)
        steps.append(StepResult(choice_text=text, node=node))

    return tuple(steps)
