"""Tests for story loading and the read-only story model."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taleweaver import (
    Choice,
    Node,
    Story,
    StoryDataError,
    load_demo_story,
    load_story_from_file,
    load_story_from_mapping,
)


def test_load_story_from_mapping_parses_choice_fields(quest_story: Story) -> None:
    gate = quest_story.find_node("gate")
    assert gate is not None
    assert [choice.text for choice in gate.choices] == [
        "Enter",
        "Bribe the guard",
        "Show the royal seal",
    ]

    bribe = gate.choices[1]
    assert bribe.inventory_requirements == {"gold": 10}
    assert bribe.flag_effects == {"bribed": True}
    assert gate.choices[2].condition == "flags.hasSeal === true"


def test_choice_mappings_are_read_only() -> None:
    choice = Choice("Open", "room", flag_effects={"opened": True})

    with pytest.raises(TypeError):
        choice.flag_effects["opened"] = False  # type: ignore[index]


def test_choice_trims_text_and_rejects_blank_targets() -> None:
    choice = Choice("  Look around  ", " hall ")
    assert choice.text == "Look around"
    assert choice.next_node_id == "hall"

    with pytest.raises(ValueError):
        Choice("Look", "   ")


def test_story_rejects_duplicate_and_missing_initial_nodes() -> None:
    node = Node("a", "First")
    with pytest.raises(StoryDataError):
        Story(initial_node_id="a", nodes=(node, Node("a", "Again")))

    with pytest.raises(StoryDataError):
        Story(initial_node_id="missing", nodes=(node,))


def test_terminal_nodes_have_no_choices(quest_story: Story) -> None:
    palace = quest_story.find_node("palace")
    assert palace is not None and palace.is_terminal
    assert not quest_story.find_node("gate").is_terminal  # type: ignore[union-attr]


def test_structural_hash_depends_only_on_node_ids(quest_story: Story) -> None:
    definition = quest_story.to_payload()
    for node in definition["nodes"]:
        node["text"] = node["text"].upper()
    reworded = load_story_from_mapping(definition)

    assert reworded.structural_hash() == quest_story.structural_hash()
    assert quest_story.structural_hash().startswith("story-4-")

    definition["nodes"].append({"id": "extra", "text": "", "choices": []})
    assert load_story_from_mapping(definition).structural_hash() != quest_story.structural_hash()


def test_dangling_targets_are_reported_only_when_required() -> None:
    definition = {
        "initialNodeId": "start",
        "nodes": [
            {"id": "start", "text": "", "choices": [{"text": "Jump", "nextNodeId": "void"}]}
        ],
    }

    story = load_story_from_mapping(definition)
    assert story.find_dangling_targets() == [("start", "void")]

    with pytest.raises(StoryDataError, match="start->void"):
        load_story_from_mapping(definition, require_targets=True)


@pytest.mark.parametrize(
    "definition, message",
    [
        ({"nodes": []}, "initialNodeId"),
        ({"initialNodeId": "a", "nodes": {}}, "list of 'nodes'"),
        ({"initialNodeId": "a", "nodes": [{"id": "a"}]}, "text description"),
        (
            {"initialNodeId": "a", "nodes": [{"id": "a", "text": "", "choices": [{"text": "x"}]}]},
            "'text' and 'nextNodeId'",
        ),
        (
            {
                "initialNodeId": "a",
                "nodes": [
                    {
                        "id": "a",
                        "text": "",
                        "choices": [{"text": "x", "nextNodeId": "a", "enabled": "yes"}],
                    }
                ],
            },
            "'enabled' must be a boolean",
        ),
        (
            {
                "initialNodeId": "a",
                "nodes": [
                    {
                        "id": "a",
                        "text": "",
                        "choices": [
                            {
                                "text": "x",
                                "nextNodeId": "a",
                                "timeRequirements": {"availableAfter": 5},
                            }
                        ],
                    }
                ],
            },
            "ISO date string",
        ),
    ],
)
def test_load_story_from_mapping_reports_invalid_definitions(
    definition: dict, message: str
) -> None:
    with pytest.raises(StoryDataError, match=message):
        load_story_from_mapping(definition)


def test_load_story_from_file_round_trips(tmp_path: Path, quest_story: Story) -> None:
    story_file = tmp_path / "story.json"
    story_file.write_text(json.dumps(quest_story.to_payload()), encoding="utf-8")

    loaded = load_story_from_file(story_file)

    assert loaded.node_ids() == quest_story.node_ids()
    assert loaded.structural_hash() == quest_story.structural_hash()


def test_load_story_from_file_wraps_io_and_json_errors(tmp_path: Path) -> None:
    with pytest.raises(StoryDataError, match="Could not read"):
        load_story_from_file(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(StoryDataError, match="not valid JSON"):
        load_story_from_file(broken)


def test_demo_story_is_bundled_and_complete() -> None:
    story = load_demo_story()

    assert story.initial_node_id == "start"
    assert "shortcut" in story
    assert story.find_dangling_targets() == []
