"""Prioritised rules deciding whether a selected choice may be executed."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Sequence, Tuple

from .conditions import is_truthy, strict_equals, to_js_string
from .state import NarrativeState
from .story import Choice, Node


@dataclass(frozen=True)
class ValidationContext:
    """Everything a rule may inspect when judging a choice.

    ``timestamp`` is an epoch value in milliseconds; when omitted the rules
    fall back to the current wall-clock time.
    """

    current_node: Node
    state: NarrativeState
    available_choices: Tuple[Choice, ...] = ()
    timestamp: float | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def current_time(self) -> float:
        return self.timestamp if self.timestamp is not None else time.time() * 1000


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of one rule or of the whole pipeline."""

    is_valid: bool
    reason: str | None = None
    failed_conditions: Tuple[str, ...] = ()
    suggested_choices: Tuple[Choice, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def passed(cls, metadata: Mapping[str, Any] | None = None) -> "ValidationResult":
        return cls(is_valid=True, metadata=dict(metadata or {}))

    @classmethod
    def failed(
        cls,
        reason: str,
        *,
        failed_conditions: Iterable[str] = (),
        suggested_choices: Iterable[Choice] = (),
        metadata: Mapping[str, Any] | None = None,
    ) -> "ValidationResult":
        return cls(
            is_valid=False,
            reason=reason,
            failed_conditions=tuple(failed_conditions),
            suggested_choices=tuple(suggested_choices),
            metadata=dict(metadata or {}),
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"isValid": self.is_valid}
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.failed_conditions:
            payload["failedConditions"] = list(self.failed_conditions)
        if self.suggested_choices:
            payload["suggestedChoices"] = [
                choice.to_payload() for choice in self.suggested_choices
            ]
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


RuleCheck = Callable[[Choice, ValidationContext], ValidationResult]


@dataclass(frozen=True)
class ValidationRule:
    """A named check; rules with a lower ``priority`` run first."""

    name: str
    priority: int
    check: RuleCheck

    def validate(self, choice: Choice, context: ValidationContext) -> ValidationResult:
        return self.check(choice, context)


def _check_choice_exists(choice: Choice, context: ValidationContext) -> ValidationResult:
    exists = any(
        candidate is choice
        or (candidate.text == choice.text and candidate.next_node_id == choice.next_node_id)
        for candidate in context.current_node.choices
    )
    if exists:
        return ValidationResult.passed()
    return ValidationResult.failed(
        f'Choice "{choice.text}" is not available from current node',
        failed_conditions=["choice-not-found"],
        suggested_choices=context.current_node.choices,
    )


def _check_flag_requirements(
    choice: Choice, context: ValidationContext
) -> ValidationResult:
    missing: List[str] = []
    conflicting: List[str] = []
    flags = context.state.flags

    for name, required in choice.flag_requirements.items():
        present = name in flags
        current = flags.get(name)
        if required is True:
            if not present or not is_truthy(current):
                missing.append(name)
        elif required is False:
            if present and is_truthy(current):
                conflicting.append(name)
        elif not present or not strict_equals(current, required):
            missing.append(f"{name}={to_js_string(required)}")

    if not missing and not conflicting:
        return ValidationResult.passed()

    reasons = []
    if missing:
        reasons.append(f"Missing required flags: {', '.join(missing)}")
    if conflicting:
        reasons.append(f"Conflicting flags: {', '.join(conflicting)}")

    return ValidationResult.failed(
        f"Flag conditions not met: {'; '.join(reasons)}",
        failed_conditions=[*missing, *conflicting],
        metadata={"missingFlags": missing, "conflictingFlags": conflicting},
    )


def _check_enabled(choice: Choice, context: ValidationContext) -> ValidationResult:
    if choice.enabled is False:
        return ValidationResult.failed(
            f'Choice "{choice.text}" is currently disabled',
            failed_conditions=["choice-disabled"],
        )
    return ValidationResult.passed()


def _parse_iso_ms(value: str) -> float | None:
    """Return ``value`` as epoch milliseconds; naive datetimes are taken as UTC."""

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000


def _check_time_requirements(
    choice: Choice, context: ValidationContext
) -> ValidationResult:
    requirements = choice.time_requirements
    if requirements is None or requirements.is_empty():
        return ValidationResult.passed()

    now = context.current_time()
    failures: List[str] = []

    if requirements.available_after is not None:
        after = _parse_iso_ms(requirements.available_after)
        if after is None:
            failures.append(f"invalid availableAfter date {requirements.available_after}")
        elif now < after:
            failures.append(f"not available until {requirements.available_after}")

    if requirements.available_before is not None:
        before = _parse_iso_ms(requirements.available_before)
        if before is None:
            failures.append(
                f"invalid availableBefore date {requirements.available_before}"
            )
        elif now > before:
            failures.append(f"no longer available after {requirements.available_before}")

    if requirements.min_time is not None and now < requirements.min_time:
        failures.append("minimum time not reached")

    if requirements.max_time is not None and now > requirements.max_time:
        failures.append("maximum time exceeded")

    if not failures:
        return ValidationResult.passed()

    return ValidationResult.failed(
        f"Time conditions not met: {', '.join(failures)}",
        failed_conditions=failures,
        metadata={"currentTime": now, "timeRequirements": requirements.to_payload()},
    )


def _check_inventory_requirements(
    choice: Choice, context: ValidationContext
) -> ValidationResult:
    if not choice.inventory_requirements:
        return ValidationResult.passed()

    inventory = context.state.flags.get("inventory")
    if not isinstance(inventory, Mapping):
        inventory = {}

    missing: List[str] = []
    for item, required in choice.inventory_requirements.items():
        current = inventory.get(item) or 0
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            current = 0
        if current < required:
            missing.append(
                f"{item} (need {to_js_string(required)}, have {to_js_string(current)})"
            )

    if not missing:
        return ValidationResult.passed()

    return ValidationResult.failed(
        f"Insufficient inventory: {', '.join(missing)}",
        failed_conditions=missing,
        metadata={
            "currentInventory": dict(inventory),
            "requirements": dict(choice.inventory_requirements),
        },
    )


CHOICE_EXISTS = ValidationRule("choice-exists", 1, _check_choice_exists)
FLAG_CONDITIONS = ValidationRule("flag-conditions", 2, _check_flag_requirements)
CHOICE_ENABLED = ValidationRule("choice-enabled", 3, _check_enabled)
TIME_CONDITIONS = ValidationRule("time-conditions", 4, _check_time_requirements)
INVENTORY_CONDITIONS = ValidationRule(
    "inventory-conditions", 5, _check_inventory_requirements
)

STANDARD_RULES: Tuple[ValidationRule, ...] = (
    CHOICE_EXISTS,
    FLAG_CONDITIONS,
    CHOICE_ENABLED,
    TIME_CONDITIONS,
    INVENTORY_CONDITIONS,
)


class ChoiceValidator:
    """Run registered rules in priority order, stopping at the first failure."""

    def __init__(self, rules: Sequence[ValidationRule] | None = None) -> None:
        self._rules: List[ValidationRule] = []
        for rule in STANDARD_RULES if rules is None else rules:
            self.add_rule(rule)

    @property
    def rules(self) -> Tuple[ValidationRule, ...]:
        return tuple(self._rules)

    def add_rule(self, rule: ValidationRule) -> None:
        """Register ``rule``, replacing any existing rule with the same name."""

        self.remove_rule(rule.name)
        self._rules.append(rule)
        self._rules.sort(key=lambda registered: registered.priority)

    def remove_rule(self, name: str) -> bool:
        """Remove the rule called ``name`` and report whether one existed."""

        remaining = [rule for rule in self._rules if rule.name != name]
        removed = len(remaining) != len(self._rules)
        self._rules = remaining
        return removed

    def validate(self, choice: Choice, context: ValidationContext) -> ValidationResult:
        """Validate ``choice`` against every rule.

        Returns:
            The first failing rule's result, with ``failedRule`` and
            ``rulesPassed`` added to its metadata, or a passing result whose
            metadata records how many rules were checked.
        """

        rules = self.rules
        for index, rule in enumerate(rules):
            result = rule.validate(choice, context)
            if not result.is_valid:
                return replace(
                    result,
                    metadata={
                        **dict(result.metadata),
                        "failedRule": rule.name,
                        "rulesPassed": index,
                    },
                )

        return ValidationResult.passed({"rulesChecked": len(rules), "allRulesPassed": True})

    def get_available_choices(self, context: ValidationContext) -> List[Choice]:
        """Return the current node's choices that pass every rule."""

        return [
            choice
            for choice in context.current_node.choices
            if self.validate(choice, context).is_valid
        ]


__all__ = [
    "ValidationContext",
    "ValidationResult",
    "ValidationRule",
    "ChoiceValidator",
    "STANDARD_RULES",
    "CHOICE_EXISTS",
    "FLAG_CONDITIONS",
    "CHOICE_ENABLED",
    "TIME_CONDITIONS",
    "INVENTORY_CONDITIONS",
]
