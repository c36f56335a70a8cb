"""Error types raised by the narrative engine."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Mapping, Sequence

if TYPE_CHECKING:  # pragma: no cover - imported only for type checking
    from .story import Choice
    from .validation import ValidationResult


class NarrativeError(Exception):
    """Base class for every error raised by :mod:`taleweaver`."""

    def __init__(
        self,
        message: str,
        error_code: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.timestamp = time.time()
        self.metadata: dict[str, Any] = dict(metadata or {})


class NavigationError(NarrativeError):
    """Raised when navigating to an unknown node or an invalid choice index."""

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message, "NAVIGATION_ERROR", {**dict(metadata or {}), "nodeId": node_id}
        )
        self.node_id = node_id


class ChoiceValidationError(NarrativeError):
    """Raised when a selected choice fails the validation pipeline.

    The error keeps the failing :class:`ValidationResult` together with the
    choices that were valid at the time so interfaces can recover without
    querying the engine again.
    """

    def __init__(
        self,
        choice: "Choice",
        validation_result: "ValidationResult",
        available_choices: Sequence["Choice"] | None = None,
    ) -> None:
        message = validation_result.reason or f'Choice "{choice.text}" is not valid'
        super().__init__(
            message,
            "CHOICE_VALIDATION_ERROR",
            {
                "choiceText": choice.text,
                "nextNodeId": choice.next_node_id,
                "failedConditions": list(validation_result.failed_conditions),
                "validationMetadata": dict(validation_result.metadata),
                "availableChoiceCount": len(available_choices or ()),
            },
        )
        self.choice = choice
        self.validation_result = validation_result
        self.available_choices = tuple(available_choices or ())

    @property
    def failed_rule(self) -> str | None:
        """Name of the rule that rejected the choice, when known."""

        rule = self.validation_result.metadata.get("failedRule")
        return str(rule) if rule is not None else None

    def user_friendly_message(self) -> str:
        """Return the error message followed by numbered alternatives."""

        lines = [str(self)]
        if self.available_choices:
            lines.append("")
            lines.append("Available choices:")
            for index, choice in enumerate(self.available_choices, start=1):
                lines.append(f"  {index}. {choice.text}")

        suggested = self.validation_result.suggested_choices
        if suggested:
            lines.append("")
            lines.append("Suggested alternatives:")
            for index, choice in enumerate(suggested, start=1):
                lines.append(f"  {index}. {choice.text}")

        return "\n".join(lines)

    def debug_info(self) -> dict[str, Any]:
        """Return a structured description of the failure for developers."""

        return {
            "error": type(self).__name__,
            "errorCode": self.error_code,
            "timestamp": self.timestamp,
            "choice": {
                "text": self.choice.text,
                "nextNodeId": self.choice.next_node_id,
                "flagEffects": dict(self.choice.flag_effects),
            },
            "validationResult": self.validation_result.to_payload(),
            "availableChoices": [
                {"text": choice.text, "nextNodeId": choice.next_node_id}
                for choice in self.available_choices
            ],
            "metadata": dict(self.metadata),
        }


class ConditionEvaluationError(NarrativeError):
    """Raised when a condition expression is unsafe, malformed or fails."""

    def __init__(
        self,
        message: str,
        expression: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            "CONDITION_EVALUATION_ERROR",
            {**dict(metadata or {}), "expression": expression},
        )
        self.expression = expression


class StoryDataError(NarrativeError, ValueError):
    """Raised when story input cannot be parsed into nodes and choices."""

    def __init__(
        self,
        message: str,
        story_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message, "STORY_DATA_ERROR", {**dict(metadata or {}), "storyId": story_id}
        )
        self.story_id = story_id


class StateError(NarrativeError):
    """Raised when the live narrative state cannot be captured or is inconsistent."""

    def __init__(
        self,
        message: str,
        state_snapshot: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, "STATE_ERROR", {"stateSnapshot": state_snapshot})
        self.state_snapshot = state_snapshot


def create_error_response(error: BaseException) -> dict[str, Any]:
    """Return a serialisable failure payload describing ``error``."""

    if isinstance(error, NarrativeError):
        return {
            "success": False,
            "error": {
                "name": type(error).__name__,
                "message": str(error),
                "code": error.error_code,
                "metadata": dict(error.metadata),
            },
        }

    return {
        "success": False,
        "error": {
            "name": type(error).__name__ or "UnknownError",
            "message": str(error) or "An unknown error occurred",
        },
    }


__all__ = [
    "NarrativeError",
    "NavigationError",
    "ChoiceValidationError",
    "ConditionEvaluationError",
    "StoryDataError",
    "StateError",
    "create_error_response",
]
