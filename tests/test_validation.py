"""Tests for the prioritised choice validation pipeline."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from taleweaver import (
    Choice,
    ChoiceValidator,
    NarrativeState,
    Node,
    TimeRequirements,
    ValidationContext,
    ValidationResult,
    ValidationRule,
)
from taleweaver.validation import STANDARD_RULES

NOW_MS = 1_700_000_000_000  # 2023-11-14T22:13:20Z


def _context(
    node: Node, flags: Mapping[str, Any] | None = None, *, timestamp: float = NOW_MS
) -> ValidationContext:
    return ValidationContext(
        current_node=node,
        state=NarrativeState(node.id, dict(flags or {})),
        available_choices=node.choices,
        timestamp=timestamp,
    )


def _node(*choices: Choice) -> Node:
    return Node("here", "Somewhere", choices)


def test_standard_rules_run_in_priority_order() -> None:
    validator = ChoiceValidator()

    assert [rule.name for rule in validator.rules] == [
        "choice-exists",
        "flag-conditions",
        "choice-enabled",
        "time-conditions",
        "inventory-conditions",
    ]
    assert [rule.priority for rule in STANDARD_RULES] == [1, 2, 3, 4, 5]


def test_choice_from_another_node_fails_existence_check() -> None:
    local = Choice("Stay", "here")
    node = _node(local)

    result = ChoiceValidator().validate(Choice("Fly", "sky"), _context(node))

    assert not result.is_valid
    assert result.reason == 'Choice "Fly" is not available from current node'
    assert result.failed_conditions == ("choice-not-found",)
    assert result.suggested_choices == (local,)
    assert result.metadata["failedRule"] == "choice-exists"
    assert result.metadata["rulesPassed"] == 0


def test_equal_choice_from_same_node_passes_existence_check() -> None:
    node = _node(Choice("Stay", "here"))

    result = ChoiceValidator().validate(Choice("Stay", "here"), _context(node))

    assert result.is_valid
    assert result.metadata == {"rulesChecked": 5, "allRulesPassed": True}


def test_flag_requirements_report_missing_and_conflicting_flags() -> None:
    choice = Choice(
        "Open",
        "vault",
        flag_requirements={"hasKey": True, "alarmed": False, "rank": "captain"},
    )
    node = _node(choice)

    result = ChoiceValidator().validate(
        choice, _context(node, {"alarmed": True, "rank": "private"})
    )

    assert not result.is_valid
    assert result.reason == (
        "Flag conditions not met: Missing required flags: hasKey, rank=captain; "
        "Conflicting flags: alarmed"
    )
    assert result.failed_conditions == ("hasKey", "rank=captain", "alarmed")
    assert result.metadata["failedRule"] == "flag-conditions"


def test_flag_requirements_use_truthiness_for_booleans() -> None:
    choice = Choice("Open", "vault", flag_requirements={"hasKey": True, "alarmed": False})
    node = _node(choice)
    validator = ChoiceValidator()

    assert validator.validate(choice, _context(node, {"hasKey": 1, "alarmed": 0})).is_valid
    assert not validator.validate(choice, _context(node, {"hasKey": 0})).is_valid


def test_disabled_choice_fails_enabled_rule() -> None:
    choice = Choice("Shop", "store", enabled=False)

    result = ChoiceValidator().validate(choice, _context(_node(choice)))

    assert result.failed_conditions == ("choice-disabled",)
    assert result.metadata["failedRule"] == "choice-enabled"
    assert result.reason == 'Choice "Shop" is currently disabled'


def test_flag_rule_reports_before_enabled_rule() -> None:
    choice = Choice("Shop", "store", enabled=False, flag_requirements={"coin": True})

    result = ChoiceValidator().validate(choice, _context(_node(choice)))

    assert result.metadata["failedRule"] == "flag-conditions"


@pytest.mark.parametrize(
    "requirements, timestamp, valid, fragment",
    [
        (TimeRequirements(available_after="2023-01-01T00:00:00Z"), NOW_MS, True, None),
        (
            TimeRequirements(available_after="2030-01-01T00:00:00Z"),
            NOW_MS,
            False,
            "not available until 2030-01-01T00:00:00Z",
        ),
        (
            TimeRequirements(available_before="2020-01-01T00:00:00"),
            NOW_MS,
            False,
            "no longer available after 2020-01-01T00:00:00",
        ),
        (TimeRequirements(min_time=NOW_MS + 1), NOW_MS, False, "minimum time not reached"),
        (TimeRequirements(max_time=NOW_MS - 1), NOW_MS, False, "maximum time exceeded"),
        (
            TimeRequirements(available_after="next tuesday"),
            NOW_MS,
            False,
            "invalid availableAfter date next tuesday",
        ),
    ],
)
def test_time_requirements(
    requirements: TimeRequirements, timestamp: float, valid: bool, fragment: str | None
) -> None:
    choice = Choice("Wait", "later", time_requirements=requirements)

    result = ChoiceValidator().validate(choice, _context(_node(choice), timestamp=timestamp))

    assert result.is_valid is valid
    if fragment is not None:
        assert result.reason is not None
        assert result.reason.startswith("Time conditions not met: ")
        assert fragment in result.reason
        assert result.metadata["failedRule"] == "time-conditions"


def test_inventory_requirements_compare_quantities() -> None:
    choice = Choice("Buy", "shop", inventory_requirements={"gold": 1000, "gems": 1})
    node = _node(choice)
    validator = ChoiceValidator()

    result = validator.validate(choice, _context(node, {"inventory": {"gold": 50, "gems": 3}}))
    assert result.reason == "Insufficient inventory: gold (need 1000, have 50)"
    assert result.failed_conditions == ("gold (need 1000, have 50)",)

    missing = validator.validate(choice, _context(node))
    assert missing.failed_conditions == (
        "gold (need 1000, have 0)",
        "gems (need 1, have 0)",
    )

    rich = {"inventory": {"gold": 1000, "gems": 1}}
    assert validator.validate(choice, _context(node, rich)).is_valid


def test_custom_rules_are_ordered_and_replace_by_name() -> None:
    calls: list[str] = []

    def _no_night(choice: Choice, context: ValidationContext) -> ValidationResult:
        calls.append("night")
        if context.state.flags.get("night"):
            return ValidationResult.failed("Too dark", failed_conditions=["night"])
        return ValidationResult.passed()

    validator = ChoiceValidator()
    validator.add_rule(ValidationRule("no-night", 0, _no_night))
    assert validator.rules[0].name == "no-night"

    choice = Choice("Go", "out", flag_requirements={"ready": True})
    result = validator.validate(choice, _context(_node(choice), {"night": True}))
    assert result.reason == "Too dark"
    assert result.metadata["failedRule"] == "no-night"

    validator.add_rule(ValidationRule("no-night", 10, _no_night))
    assert [rule.name for rule in validator.rules].count("no-night") == 1
    assert validator.rules[-1].name == "no-night"

    assert validator.remove_rule("no-night")
    assert not validator.remove_rule("no-night")
    assert calls == ["night"]


def test_removing_a_standard_rule_disables_it() -> None:
    choice = Choice("Shop", "store", enabled=False)
    validator = ChoiceValidator()

    assert validator.remove_rule("choice-enabled")
    assert validator.validate(choice, _context(_node(choice))).is_valid


def test_get_available_choices_filters_failing_choices() -> None:
    open_choice = Choice("Open", "a")
    locked = Choice("Locked", "b", flag_requirements={"key": True})
    node = _node(open_choice, locked)

    assert ChoiceValidator().get_available_choices(_context(node)) == [open_choice]


def test_validation_result_payload_uses_camel_case() -> None:
    choice = Choice("Go", "out")
    result = ValidationResult.failed(
        "nope", failed_conditions=["x"], suggested_choices=[choice], metadata={"a": 1}
    )

    assert result.to_payload() == {
        "isValid": False,
        "reason": "nope",
        "failedConditions": ["x"],
        "suggestedChoices": [{"text": "Go", "nextNodeId": "out"}],
        "metadata": {"a": 1},
    }
