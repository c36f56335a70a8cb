"""Tests for trigger-driven autosave checkpoints."""

from __future__ import annotations

from typing import Any

import pytest

from taleweaver import (
    AutosaveConfig,
    AutosaveController,
    NarrativeEngine,
    NarrativeState,
    PersistenceManager,
    Story,
)
from taleweaver.autosave import AUTOSAVE_TAG


def _controller(story: Story, clock: Any, **config: Any) -> AutosaveController:
    state = NarrativeState(story.initial_node_id)
    return AutosaveController(
        PersistenceManager(story),
        capture=state.clone,
        current_node=lambda: story.find_node(state.current_node_id),
        config=AutosaveConfig(**config),
        clock=clock,
    )


def test_disabled_autosave_does_nothing(quest_story: Story, fake_clock: Any) -> None:
    controller = _controller(quest_story, fake_clock)

    assert controller.trigger("choice") is None
    assert controller.autosave_ids == []


def test_unconfigured_trigger_is_ignored(quest_story: Story, fake_clock: Any) -> None:
    controller = _controller(quest_story, fake_clock, enabled=True, triggers={"choice"})

    assert controller.trigger("flag-change") is None


def test_triggers_within_throttle_window_are_dropped(
    quest_story: Story, fake_clock: Any, captured_logs: list
) -> None:
    controller = _controller(quest_story, fake_clock, enabled=True, throttle_seconds=1.0)

    first = controller.trigger("choice")
    fake_clock.advance(0.5)
    second = controller.trigger("choice")
    fake_clock.advance(0.6)
    third = controller.trigger("flag-change")

    assert first is not None and first.success
    assert second is not None and not second.success
    assert second.error is not None and second.error.startswith("Autosave throttled")
    assert third is not None and third.success
    assert len(controller.autosave_ids) == 2
    assert controller.last_result is third
    assert any("throttled" in message for message in captured_logs)


def test_manual_autosave_ignores_throttle_and_enabled(
    quest_story: Story, fake_clock: Any
) -> None:
    controller = _controller(quest_story, fake_clock, throttle_seconds=60.0)

    first = controller.manual()
    second = controller.manual({"reason": "chapter end"})

    assert first.success and second.success
    assert first.trigger == "manual"
    assert len(controller.autosave_ids) == 2


def test_retention_keeps_only_newest_autosaves(quest_story: Story, fake_clock: Any) -> None:
    persistence = PersistenceManager(quest_story)
    state = NarrativeState("gate")
    controller = AutosaveController(
        persistence,
        capture=state.clone,
        current_node=lambda: quest_story.find_node("gate"),
        config=AutosaveConfig(enabled=True, max_entries=2, throttle_seconds=0),
        clock=fake_clock,
    )
    manual_checkpoint = persistence.create_checkpoint(state, "keep me")

    ids = [controller.trigger("choice").checkpoint_id for _ in range(4)]  # type: ignore[union-attr]

    assert controller.autosave_ids == ids[-2:]
    remaining = [cp.id for cp in persistence.get_checkpoints()]
    assert remaining == [manual_checkpoint.id, *ids[-2:]]

    controller.configure(max_entries=1)
    assert controller.autosave_ids == ids[-1:]


def test_autosave_checkpoints_are_tagged_and_named(quest_story: Story, fake_clock: Any) -> None:
    persistence = PersistenceManager(quest_story)
    state = NarrativeState("gate")
    controller = AutosaveController(
        persistence,
        capture=state.clone,
        current_node=lambda: quest_story.find_node("gate"),
        config=AutosaveConfig(enabled=True, name_pattern="{trigger}@{node_id}"),
        clock=fake_clock,
    )

    result = controller.trigger("choice", {"choiceText": "Enter"})

    assert result is not None and result.size > 0
    checkpoint = persistence.get_checkpoint(result.checkpoint_id or "")
    assert checkpoint is not None
    assert checkpoint.name == "choice@gate"
    assert checkpoint.tags == (AUTOSAVE_TAG, "choice")
    assert checkpoint.metadata["trigger"] == "choice"
    assert checkpoint.metadata["choiceText"] == "Enter"
    assert checkpoint.metadata["nodeTitle"] == "The city gate looms."


def test_invalid_autosave_config_is_rejected() -> None:
    with pytest.raises(ValueError):
        AutosaveConfig(triggers={"teleport"})
    with pytest.raises(ValueError):
        AutosaveConfig(max_entries=0)
    with pytest.raises(ValueError):
        AutosaveConfig(throttle_seconds=-1)


def test_engine_autosaves_on_choices(quest_story: Story) -> None:
    engine = NarrativeEngine(
        quest_story, autosave_config=AutosaveConfig(enabled=True, throttle_seconds=0)
    )

    engine.make_choice(0)

    result = engine.last_autosave_result
    assert result is not None and result.success and result.trigger == "choice"
    checkpoint = engine.get_checkpoint(result.checkpoint_id or "")
    assert checkpoint is not None
    assert checkpoint.state.current_node_id == "square"


def test_engine_skips_autosave_while_undoing(quest_story: Story) -> None:
    engine = NarrativeEngine(
        quest_story,
        autosave_config=AutosaveConfig(
            enabled=True, throttle_seconds=0, triggers={"choice", "state-load"}
        ),
    )
    engine.make_choice(0)
    saved = len(engine.get_checkpoints())

    engine.undo()
    engine.redo()

    assert len(engine.get_checkpoints()) == saved


def test_engine_custom_trigger_and_manual_save(quest_engine: NarrativeEngine) -> None:
    assert quest_engine.trigger_autosave() is None

    quest_engine.configure_autosave(enabled=True, triggers={"custom"}, throttle_seconds=0)
    assert quest_engine.autosave_config.enabled
    custom = quest_engine.trigger_autosave("custom", {"note": "boss"})
    manual = quest_engine.manual_autosave()

    assert custom is not None and custom.success
    assert manual.success and manual.trigger == "manual"
    assert len(quest_engine.get_checkpoints()) == 2
