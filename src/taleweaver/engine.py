"""The narrative engine: current node, choice filtering and state mutation."""

from __future__ import annotations

import copy
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from loguru import logger

from .autosave import AutosaveConfig, AutosaveController, AutosaveResult
from .conditions import ConditionContext, ConditionEvaluator, CustomEvaluator, strict_equals
from .errors import (
    ChoiceValidationError,
    ConditionEvaluationError,
    NavigationError,
    StateError,
)
from .history import UndoRedoConfig, UndoRedoManager, UndoRedoResult
from .persistence import (
    Checkpoint,
    CheckpointOptions,
    LoadOptions,
    PersistenceManager,
    PersistenceResult,
    SerializationOptions,
)
from .settings import EngineSettings
from .state import FlowEvent, NarrativeState
from .storage import StorageAdapter
from .story import Choice, Node, Story, load_story_from_file, load_story_from_mapping
from .validation import (
    STANDARD_RULES,
    ChoiceValidator,
    ValidationContext,
    ValidationResult,
    ValidationRule,
)

_MISSING = object()


def _same_choice(left: Choice, right: Choice) -> bool:
    return left is right or (
        left.text == right.text and left.next_node_id == right.next_node_id
    )


class NarrativeEngine:
    """Drive a reader through a :class:`Story`.

    The engine exclusively owns the live :class:`NarrativeState`. Every
    accessor returns a copy and every snapshot handed to checkpoints, undo
    history or serialized envelopes is a deep copy as well.

    Choices pass two independent gates before they can be picked: their
    ``condition`` expression (visibility) and the validation rules
    (executability). Condition failures of any kind hide the choice and are
    logged; they never propagate to the caller.
    """

    def __init__(
        self,
        story: Story,
        *,
        state: NarrativeState | None = None,
        settings: EngineSettings | None = None,
        storage: StorageAdapter | None = None,
        validator: ChoiceValidator | None = None,
        undo_redo_config: UndoRedoConfig | None = None,
        autosave_config: AutosaveConfig | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.story = story

        if state is not None and state.current_node_id not in story:
            raise NavigationError(
                f"Node '{state.current_node_id}' does not exist in the story",
                node_id=state.current_node_id,
            )
        self._state = (
            state.clone() if state is not None else NarrativeState(story.initial_node_id)
        )

        self.condition_evaluator = ConditionEvaluator(
            max_cache_size=self.settings.condition_cache_size
        )
        self.validator = validator or ChoiceValidator()
        self.persistence = PersistenceManager(
            story, storage=storage, max_checkpoints=self.settings.max_checkpoints
        )
        self._history = UndoRedoManager(
            capture=self._capture_state,
            restore=self._restore_state,
            config=undo_redo_config
            or UndoRedoConfig(
                max_undo_entries=self.settings.max_undo_entries,
                max_redo_entries=self.settings.max_redo_entries,
            ),
        )
        self._autosave = AutosaveController(
            self.persistence,
            capture=self._capture_state,
            current_node=lambda: self.story.find_node(self._state.current_node_id),
            config=autosave_config
            or AutosaveConfig(
                enabled=self.settings.autosave_enabled,
                throttle_seconds=self.settings.autosave_throttle_seconds,
                max_entries=self.settings.autosave_max_entries,
            ),
        )
        self._flow_events: List[FlowEvent] = []
        self._performance_state: Dict[str, Any] = {
            "performanceMode": False,
            "enableProfiling": False,
            "backgroundTasks": [],
            "telemetryData": [],
        }
        self._branching_context: Dict[str, Any] = {
            "activeBranches": [],
            "branchStates": {},
            "convergencePoints": [],
        }

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def get_current_node(self) -> Node:
        """Return the node the reader is on.

        Raises:
            NavigationError: If the state points at a node missing from the story.
        """

        node = self.story.find_node(self._state.current_node_id)
        if node is None:
            raise NavigationError(
                f"Node '{self._state.current_node_id}' does not exist in the story",
                node_id=self._state.current_node_id,
            )
        return node

    def get_state(self) -> NarrativeState:
        return self._state.clone()

    def get_flags(self) -> Dict[str, Any]:
        return copy.deepcopy(self._state.flags)

    def get_history(self) -> List[str]:
        return list(self._state.history)

    def get_flow_events(self) -> List[FlowEvent]:
        return list(self._flow_events)

    def check_flag(self, name: str, expected: Any = _MISSING) -> bool:
        """Return whether ``name`` is set, or set to ``expected`` when given."""

        if expected is _MISSING:
            return name in self._state.flags
        return name in self._state.flags and strict_equals(self._state.flags[name], expected)

    def get_visible_choices(
        self, custom_data: Mapping[str, Any] | None = None
    ) -> List[Choice]:
        """Return the current node's choices whose condition holds."""

        node = self.get_current_node()
        context = ConditionContext.for_state(self._state, custom_data)
        return [choice for choice in node.choices if self._condition_holds(choice, context)]

    def get_available_choices(
        self,
        *,
        timestamp: float | None = None,
        custom_data: Mapping[str, Any] | None = None,
    ) -> List[Choice]:
        """Return the choices that are both visible and pass every validation rule.

        The result is derived from the live state on every call.
        """

        visible = self.get_visible_choices(custom_data)
        context = self._validation_context(visible, timestamp)
        return [choice for choice in visible if self.validator.validate(choice, context).is_valid]

    @property
    def is_complete(self) -> bool:
        """``True`` when the current node offers no selectable choice."""

        return not self.get_available_choices()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def make_choice(self, index: int, *, timestamp: float | None = None) -> Node:
        """Execute the ``index``-th visible choice and return the new node.

        ``index`` refers to :meth:`get_visible_choices`, so a visible choice
        that a validation rule rejects raises :class:`ChoiceValidationError`
        carrying that rule's reason instead of silently shifting the indices.

        Raises:
            NavigationError: If ``index`` is out of range or the choice leads
                to an unknown node.
            ChoiceValidationError: If the choice fails validation when re-checked.
        """

        visible = self.get_visible_choices()
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(visible):
            raise NavigationError(
                f"Invalid choice index {index}; {len(visible)} choice(s) available",
                node_id=self._state.current_node_id,
                metadata={"index": index, "choiceCount": len(visible)},
            )
        available = self.get_available_choices(timestamp=timestamp)
        return self._commit(visible[index], available, timestamp)

    def select_choice(self, choice: Choice, *, timestamp: float | None = None) -> Node:
        """Validate ``choice`` against the current node and execute it.

        Raises:
            ChoiceValidationError: If a validation rule rejects the choice or
                its condition does not hold.
            NavigationError: If the choice leads to an unknown node.
        """

        available = self.get_available_choices(timestamp=timestamp)
        return self._commit(choice, available, timestamp)

    def go_to_node_by_id(self, node_id: str) -> Node:
        """Jump straight to ``node_id`` without validation or flag effects.

        Raises:
            NavigationError: If no node with ``node_id`` exists.
        """

        node = self.story.find_node(node_id)
        if node is None:
            raise NavigationError(f"Node '{node_id}' does not exist in the story", node_id=node_id)

        self._track("navigation", {"nodeId": self._state.current_node_id, "targetNodeId": node_id})
        self._state.move_to(node_id)
        logger.debug("Navigated directly to {}", node_id)
        return node

    def set_flag(self, name: str, value: Any) -> None:
        """Set a single flag, recording the previous state for undo."""

        if not isinstance(name, str) or not name.strip():
            raise ValueError("flag name must be a non-empty string")

        self._track(
            "flag-change",
            {"nodeId": self._state.current_node_id, "flagsChanged": [name]},
        )
        self._state.flags[name] = copy.deepcopy(value)
        self._trigger_autosave("flag-change", {"flagsChanged": [name]})

    def reset_narrative(self) -> None:
        """Return to the initial node with no flags and a fresh history."""

        self._track("reset", {"nodeId": self._state.current_node_id})
        self._state = NarrativeState(self.story.initial_node_id)
        self._flow_events.clear()
        logger.info("Narrative reset to {}", self.story.initial_node_id)

    def load_simple_state(
        self, state: NarrativeState | Mapping[str, Any], *, track: bool = True
    ) -> None:
        """Replace the live state with ``state`` (a state object or its payload).

        With ``track=False`` the swap records no undo entry and triggers no
        autosave, which suits fixtures that stage a scenario.

        Raises:
            StateError: If ``state`` is malformed.
            NavigationError: If it points at an unknown node.
        """

        incoming = (
            state.clone()
            if isinstance(state, NarrativeState)
            else NarrativeState.from_payload(state)
        )
        if incoming.current_node_id not in self.story:
            raise NavigationError(
                f"Node '{incoming.current_node_id}' does not exist in the story",
                node_id=incoming.current_node_id,
            )

        if not track:
            self._state = incoming
            return
        self._track("state-load", {"nodeId": self._state.current_node_id})
        self._state = incoming
        self._trigger_autosave("state-load", {"nodeId": incoming.current_node_id})

    # ------------------------------------------------------------------
    # Conditions and validation rules
    # ------------------------------------------------------------------

    def set_condition_evaluator(self, evaluator: CustomEvaluator) -> None:
        self.condition_evaluator.set_custom_evaluator(evaluator)

    def clear_condition_evaluator(self) -> None:
        self.condition_evaluator.clear_custom_evaluator()

    def validate_choice(
        self, choice: Choice, *, timestamp: float | None = None
    ) -> ValidationResult:
        """Run the validation rules for ``choice`` without executing it."""

        visible = self.get_visible_choices()
        return self.validator.validate(choice, self._validation_context(visible, timestamp))

    def is_choice_valid(self, choice: Choice, *, timestamp: float | None = None) -> bool:
        return self.validate_choice(choice, timestamp=timestamp).is_valid

    def add_validation_rule(self, rule: ValidationRule) -> None:
        self.validator.add_rule(rule)

    def remove_validation_rule(self, name: str) -> bool:
        return self.validator.remove_rule(name)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_state(self, options: SerializationOptions | None = None) -> Dict[str, Any]:
        """Return a versioned envelope describing the current state.

        Raises:
            StateError: If the flags cannot be serialized (for example they
                contain circular references or arbitrary objects).
        """

        try:
            envelope = self.persistence.build_envelope(
                self._state,
                options,
                flow_events=[event.to_payload() for event in self._flow_events],
                performance_state=self._performance_state,
                branching_context=self._branching_context,
                validation_state=self._validation_state(),
            )
        except (TypeError, ValueError, RecursionError, copy.Error) as exc:
            raise StateError(
                f"Failed to serialize state: {exc}",
                {"currentNodeId": self._state.current_node_id},
            ) from exc

        logger.info("Saved state at node {}", self._state.current_node_id)
        return envelope

    def load_state(
        self, data: Mapping[str, Any] | str, options: LoadOptions | None = None
    ) -> PersistenceResult:
        """Replace the live state from a saved envelope.

        Never raises for bad input: invalid, incompatible, corrupt or foreign
        envelopes produce an unsuccessful result and leave the state untouched.
        """

        options = options or LoadOptions()
        outcome = self.persistence.read_envelope(data, options)
        if not outcome.result.success or outcome.state is None or outcome.envelope is None:
            return outcome.result

        envelope = outcome.envelope
        self._track("state-load", {"nodeId": self._state.current_node_id})
        self._state = outcome.state

        if options.restore_flow_events:
            self._flow_events = [
                FlowEvent(
                    from_node_id=event.from_node_id,
                    to_node_id=event.to_node_id,
                    choice_text=event.choice_text,
                    timestamp=event.timestamp,
                )
                for event in envelope.flow_events
            ]
        if options.restore_performance_state and envelope.performance_state is not None:
            self._performance_state = envelope.performance_state.model_dump(by_alias=True)
        if options.restore_branching_context and envelope.branching_context is not None:
            self._branching_context = envelope.branching_context.model_dump(by_alias=True)
        if options.restore_validation_state and envelope.validation_state is not None:
            for name in envelope.validation_state.disabled_rules:
                self.validator.remove_rule(name)

        logger.info("Loaded state at node {}", self._state.current_node_id)
        self._trigger_autosave("state-load", {"nodeId": self._state.current_node_id})
        return outcome.result

    def save_to_storage(
        self, key: str, options: SerializationOptions | None = None
    ) -> PersistenceResult:
        """Serialize the current state and write it through the storage adapter."""

        try:
            envelope = self.save_state(options)
        except StateError as exc:
            return PersistenceResult.failure(str(exc))
        return self.persistence.save_to_storage(key, envelope)

    def load_from_storage(
        self, key: str, options: LoadOptions | None = None
    ) -> PersistenceResult:
        """Read the envelope stored under ``key`` and load it."""

        envelope, error = self.persistence.fetch_from_storage(key)
        if envelope is None:
            return PersistenceResult.failure(error or f"No saved state found for key '{key}'")
        return self.load_state(envelope, options)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def create_checkpoint(
        self,
        name: str | None = None,
        options: CheckpointOptions | None = None,
        *,
        tags: Sequence[str] = (),
    ) -> Checkpoint:
        return self.persistence.create_checkpoint(
            self._state,
            name,
            options,
            node=self.story.find_node(self._state.current_node_id),
            tags=tags,
        )

    def get_checkpoints(self) -> List[Checkpoint]:
        return self.persistence.get_checkpoints()

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        return self.persistence.get_checkpoint(checkpoint_id)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return self.persistence.delete_checkpoint(checkpoint_id)

    def cleanup_checkpoints(self, options: CheckpointOptions | None = None) -> int:
        return self.persistence.cleanup_checkpoints(options)

    def export_checkpoint(self, checkpoint_id: str) -> str:
        return self.persistence.export_checkpoint(checkpoint_id)

    def import_checkpoint(self, data: str | Mapping[str, Any]) -> Checkpoint:
        return self.persistence.import_checkpoint(data)

    def restore_from_checkpoint(self, checkpoint_id: str) -> PersistenceResult:
        """Replace the live state with the one stored in ``checkpoint_id``."""

        started = time.perf_counter()
        restored = self.persistence.checkpoint_state(checkpoint_id)
        if restored is None:
            logger.warning("Checkpoint {} not found", checkpoint_id)
            return PersistenceResult.failure(f"Checkpoint not found: {checkpoint_id}")
        if restored.current_node_id not in self.story:
            return PersistenceResult.failure(
                f"Checkpoint references unknown node '{restored.current_node_id}'"
            )

        self._track(
            "state-load",
            {"nodeId": self._state.current_node_id, "checkpointId": checkpoint_id},
        )
        self._state = restored
        logger.info("Restored checkpoint {}", checkpoint_id)
        return PersistenceResult.ok(
            {
                "checkpointId": checkpoint_id,
                "nodeId": restored.current_node_id,
                "duration": (time.perf_counter() - started) * 1000,
            }
        )

    # ------------------------------------------------------------------
    # Undo / redo
    # ------------------------------------------------------------------

    def undo(self) -> UndoRedoResult:
        return self._history.undo()

    def redo(self) -> UndoRedoResult:
        return self._history.redo()

    def can_undo(self) -> bool:
        return self._history.can_undo()

    def can_redo(self) -> bool:
        return self._history.can_redo()

    @property
    def undo_count(self) -> int:
        return self._history.undo_count

    @property
    def redo_count(self) -> int:
        return self._history.redo_count

    def clear_history(self) -> None:
        self._history.clear()

    def get_history_summary(self) -> Dict[str, List[Dict[str, Any]]]:
        return self._history.get_history_summary()

    def configure_undo_redo(self, **changes: Any) -> UndoRedoConfig:
        """Override individual :class:`UndoRedoConfig` fields."""

        return self._history.configure(**changes)

    # ------------------------------------------------------------------
    # Autosave
    # ------------------------------------------------------------------

    def configure_autosave(self, **changes: Any) -> AutosaveConfig:
        """Override individual :class:`AutosaveConfig` fields."""

        return self._autosave.configure(**changes)

    def manual_autosave(self, metadata: Mapping[str, Any] | None = None) -> AutosaveResult:
        return self._autosave.manual(metadata)

    def trigger_autosave(
        self, trigger: str = "custom", metadata: Mapping[str, Any] | None = None
    ) -> AutosaveResult | None:
        """Fire a host-defined autosave trigger such as ``custom`` or ``branch-exit``."""

        return self._autosave.trigger(trigger, metadata)

    @property
    def last_autosave_result(self) -> AutosaveResult | None:
        return self._autosave.last_result

    @property
    def autosave_config(self) -> AutosaveConfig:
        return self._autosave.config

    @property
    def undo_redo_config(self) -> UndoRedoConfig:
        return self._history.config

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _condition_holds(self, choice: Choice, context: ConditionContext) -> bool:
        if not choice.condition or not choice.condition.strip():
            return True
        try:
            return self.condition_evaluator.evaluate(choice.condition, context)
        except ConditionEvaluationError as exc:
            logger.warning(
                "Hiding choice {!r}: condition {!r} failed: {}",
                choice.text,
                choice.condition,
                exc,
            )
            return False

    def _validation_context(
        self, available: Iterable[Choice], timestamp: float | None
    ) -> ValidationContext:
        return ValidationContext(
            current_node=self.get_current_node(),
            state=self._state,
            available_choices=tuple(available),
            timestamp=timestamp,
        )

    def _commit(
        self, choice: Choice, available: Sequence[Choice], timestamp: float | None
    ) -> Node:
        context = self._validation_context(available, timestamp)
        result = self.validator.validate(choice, context)
        if result.is_valid and choice.condition and not any(
            _same_choice(choice, candidate) for candidate in available
        ):
            result = ValidationResult.failed(
                f'Choice "{choice.text}" condition is not met',
                failed_conditions=[choice.condition],
                metadata={"failedRule": "condition"},
            )
        if not result.is_valid:
            if not result.suggested_choices and available:
                result = replace(result, suggested_choices=tuple(available))
            logger.debug("Rejected choice {!r}: {}", choice.text, result.reason)
            raise ChoiceValidationError(choice, result, available)

        target = self.story.find_node(choice.next_node_id)
        if target is None:
            raise NavigationError(
                f"Choice \"{choice.text}\" leads to unknown node '{choice.next_node_id}'",
                node_id=choice.next_node_id,
            )

        origin = self._state.current_node_id
        self._track(
            "choice",
            {
                "nodeId": origin,
                "choiceText": choice.text,
                "flagsChanged": list(choice.flag_effects),
            },
        )
        changed = self._state.apply_flag_effects(choice.flag_effects)
        self._state.move_to(target.id)
        self._flow_events.append(
            FlowEvent(
                from_node_id=origin,
                to_node_id=target.id,
                choice_text=choice.text,
                timestamp=time.time() * 1000,
            )
        )
        logger.debug("Chose {!r}: {} -> {} (changed {})", choice.text, origin, target.id, changed)
        self._trigger_autosave("choice", {"choiceText": choice.text, "nodeId": target.id})
        return target

    def _track(self, action: str, metadata: Mapping[str, Any]) -> None:
        self._history.record(self._state, action, metadata)

    def _trigger_autosave(self, trigger: str, metadata: Mapping[str, Any]) -> None:
        if self._history.is_restoring:
            return
        self._autosave.trigger(trigger, metadata)

    def _capture_state(self) -> NarrativeState:
        return self._state.clone()

    def _restore_state(self, state: NarrativeState) -> None:
        self._state = state.clone()

    def _validation_state(self) -> Dict[str, Any]:
        registered = {rule.name: rule for rule in self.validator.rules}
        standard = {rule.name for rule in STANDARD_RULES}
        return {
            "disabledRules": sorted(standard - set(registered)),
            "customRules": {
                name: {"priority": rule.priority}
                for name, rule in registered.items()
                if name not in standard
            },
            "validationErrors": [],
        }


def create_engine(
    story: Story | Mapping[str, Any] | Path | str,
    **options: Any,
) -> NarrativeEngine:
    """Build an engine from a :class:`Story`, a story mapping or a JSON file path.

    Keyword arguments are passed to :class:`NarrativeEngine`.

    Raises:
        StoryDataError: If the story definition is invalid.
    """

    if isinstance(story, Story):
        loaded = story
    elif isinstance(story, Mapping):
        loaded = load_story_from_mapping(story)
    else:
        loaded = load_story_from_file(story)
    return NarrativeEngine(loaded, **options)


__all__ = ["NarrativeEngine", "create_engine"]
