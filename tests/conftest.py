"""Test configuration for the narrative engine project."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from typing import Any, Callable, Dict, List

import pytest
from loguru import logger

from taleweaver import NarrativeEngine, Story, load_story_from_mapping


VAULT_STORY: Dict[str, Any] = {
    "initialNodeId": "start",
    "nodes": [
        {
            "id": "start",
            "text": "A locked vault door.",
            "choices": [
                {"text": "go", "nextNodeId": "vault", "flagRequirements": {"hasKey": True}},
            ],
        },
        {"id": "vault", "text": "Gold everywhere.", "choices": []},
    ],
}


QUEST_STORY: Dict[str, Any] = {
    "initialNodeId": "gate",
    "nodes": [
        {
            "id": "gate",
            "text": "The city gate looms.",
            "choices": [
                {"text": "Enter", "nextNodeId": "square", "flagEffects": {"entered": True}},
                {
                    "text": "Bribe the guard",
                    "nextNodeId": "square",
                    "inventoryRequirements": {"gold": 10},
                    "flagEffects": {"bribed": True},
                },
                {
                    "text": "Show the royal seal",
                    "nextNodeId": "palace",
                    "condition": "flags.hasSeal === true",
                },
            ],
        },
        {
            "id": "square",
            "text": "A busy market square.",
            "choices": [
                {"text": "Visit the smith", "nextNodeId": "smith", "flagEffects": {"metSmith": True}},
                {"text": "Closed shop", "nextNodeId": "smith", "enabled": False},
                {"text": "Go back", "nextNodeId": "gate"},
            ],
        },
        {
            "id": "smith",
            "text": "The smith eyes you.",
            "choices": [
                {"text": "Leave", "nextNodeId": "square"},
            ],
        },
        {"id": "palace", "text": "The palace throne room.", "choices": []},
    ],
}


@pytest.fixture()
def vault_story() -> Story:
    return load_story_from_mapping(VAULT_STORY)


@pytest.fixture()
def quest_story() -> Story:
    return load_story_from_mapping(QUEST_STORY)


@pytest.fixture()
def quest_engine(quest_story: Story) -> NarrativeEngine:
    return NarrativeEngine(quest_story)


@pytest.fixture()
def captured_logs() -> Any:
    """Collect loguru messages emitted while the test runs."""

    messages: List[str] = []
    handler_id = logger.add(messages.append, format="{level} | {message}", level="DEBUG")
    yield messages
    logger.remove(handler_id)


@pytest.fixture()
def fake_clock() -> Callable[[], float]:
    """Return a controllable monotonic clock for throttling tests."""

    class _Clock:
        def __init__(self) -> None:
            self.now = 1000.0

        def __call__(self) -> float:
            return self.now

        def advance(self, seconds: float) -> None:
            self.now += seconds

    return _Clock()


__all__ = ["VAULT_STORY", "QUEST_STORY"]
