"""Read-only story data: nodes, choices and loaders for story definitions."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Tuple

from .errors import StoryDataError


def _validate_text(value: str, *, field_name: str) -> str:
    """Validate and normalise identifier-like text fields used by story elements."""

    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string, got {type(value)!r}")

    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{field_name} must be a non-empty string")

    return stripped


def _freeze_mapping(value: Mapping[str, Any] | None, *, field_name: str) -> Mapping[str, Any]:
    if value is None:
        return MappingProxyType({})
    if not isinstance(value, Mapping):
        raise TypeError(f"{field_name} must be a mapping, got {type(value)!r}")
    return MappingProxyType({str(key): item for key, item in value.items()})


@dataclass(frozen=True)
class TimeRequirements:
    """Wall-clock window in which a choice may be executed.

    ``available_after``/``available_before`` are ISO-8601 strings while
    ``min_time``/``max_time`` are epoch timestamps in milliseconds.
    """

    available_after: str | None = None
    available_before: str | None = None
    min_time: float | None = None
    max_time: float | None = None

    def is_empty(self) -> bool:
        return (
            self.available_after is None
            and self.available_before is None
            and self.min_time is None
            and self.max_time is None
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.available_after is not None:
            payload["availableAfter"] = self.available_after
        if self.available_before is not None:
            payload["availableBefore"] = self.available_before
        if self.min_time is not None:
            payload["minTime"] = self.min_time
        if self.max_time is not None:
            payload["maxTime"] = self.max_time
        return payload


@dataclass(frozen=True)
class Choice:
    """An outgoing option on a node.

    ``condition`` gates *visibility* and is interpreted by the condition
    evaluator. The ``*_requirements`` fields and ``enabled`` gate
    *executability* and are checked by the validation pipeline.
    """

    text: str
    next_node_id: str
    flag_effects: Mapping[str, Any] = field(default_factory=dict)
    flag_requirements: Mapping[str, Any] = field(default_factory=dict)
    time_requirements: TimeRequirements | None = None
    inventory_requirements: Mapping[str, float] = field(default_factory=dict)
    enabled: bool | None = None
    condition: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "text", _validate_text(self.text, field_name="choice text"))
        object.__setattr__(
            self,
            "next_node_id",
            _validate_text(self.next_node_id, field_name="nextNodeId"),
        )
        object.__setattr__(
            self, "flag_effects", _freeze_mapping(self.flag_effects, field_name="flagEffects")
        )
        object.__setattr__(
            self,
            "flag_requirements",
            _freeze_mapping(self.flag_requirements, field_name="flagRequirements"),
        )
        object.__setattr__(
            self,
            "inventory_requirements",
            _freeze_mapping(
                self.inventory_requirements, field_name="inventoryRequirements"
            ),
        )
        if self.condition is not None and not isinstance(self.condition, str):
            raise TypeError("condition must be a string when provided")

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON representation used by story files."""

        payload: dict[str, Any] = {"text": self.text, "nextNodeId": self.next_node_id}
        if self.flag_effects:
            payload["flagEffects"] = dict(self.flag_effects)
        if self.flag_requirements:
            payload["flagRequirements"] = dict(self.flag_requirements)
        if self.time_requirements is not None:
            payload["timeRequirements"] = self.time_requirements.to_payload()
        if self.inventory_requirements:
            payload["inventoryRequirements"] = dict(self.inventory_requirements)
        if self.enabled is not None:
            payload["enabled"] = self.enabled
        if self.condition is not None:
            payload["condition"] = self.condition
        return payload


@dataclass(frozen=True)
class Node:
    """A single narrative beat with its outgoing choices."""

    id: str
    text: str
    choices: Tuple[Choice, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _validate_text(self.id, field_name="node id"))
        if not isinstance(self.text, str):
            raise TypeError(f"node text must be a string, got {type(self.text)!r}")
        object.__setattr__(self, "choices", tuple(self.choices))

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` when the node offers no choices at all."""

        return not self.choices

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "choices": [choice.to_payload() for choice in self.choices],
        }


@dataclass(frozen=True)
class Story:
    """Immutable collection of nodes with a designated initial node."""

    initial_node_id: str
    nodes: Tuple[Node, ...]
    _index: Mapping[str, Node] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        nodes = tuple(self.nodes)
        index: dict[str, Node] = {}
        for node in nodes:
            if node.id in index:
                raise StoryDataError(f"Duplicate node id '{node.id}'.")
            index[node.id] = node

        initial = _validate_text(self.initial_node_id, field_name="initialNodeId")
        if initial not in index:
            raise StoryDataError(f"Initial node '{initial}' does not exist in the story.")

        object.__setattr__(self, "initial_node_id", initial)
        object.__setattr__(self, "nodes", nodes)
        object.__setattr__(self, "_index", MappingProxyType(index))

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def __len__(self) -> int:
        return len(self.nodes)

    def find_node(self, node_id: str) -> Node | None:
        """Return the node with ``node_id`` or ``None`` if it does not exist."""

        return self._index.get(node_id)

    def node_ids(self) -> Tuple[str, ...]:
        return tuple(self._index.keys())

    def structural_hash(self) -> str:
        """Return an identifier derived from the node count and sorted node ids.

        Saves are stamped with this value so they are never loaded into an
        unrelated story.
        """

        sorted_ids = ",".join(sorted(self._index))
        digest = hashlib.sha256(sorted_ids.encode("utf-8")).hexdigest()[:16]
        return f"story-{len(self.nodes)}-{digest}"

    def find_dangling_targets(self) -> list[tuple[str, str]]:
        """Return ``(node_id, target_id)`` pairs for choices leading nowhere."""

        dangling: list[tuple[str, str]] = []
        for node in self.nodes:
            for choice in node.choices:
                if choice.next_node_id not in self._index:
                    dangling.append((node.id, choice.next_node_id))
        return dangling

    def to_payload(self) -> dict[str, Any]:
        return {
            "initialNodeId": self.initial_node_id,
            "nodes": [node.to_payload() for node in self.nodes],
        }


def _optional_mapping(
    payload: Mapping[str, Any], key: str, *, location: str
) -> Mapping[str, Any] | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise StoryDataError(f"{location} field '{key}' must be an object.")
    return value


def _optional_number(value: Any, *, location: str, key: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise StoryDataError(f"{location} field '{key}' must be a number.")
    return value


def _load_time_requirements(
    payload: Mapping[str, Any] | None, *, location: str
) -> TimeRequirements | None:
    if payload is None:
        return None

    after = payload.get("availableAfter")
    before = payload.get("availableBefore")
    for key, value in (("availableAfter", after), ("availableBefore", before)):
        if value is not None and not isinstance(value, str):
            raise StoryDataError(f"{location} field '{key}' must be an ISO date string.")

    return TimeRequirements(
        available_after=after,
        available_before=before,
        min_time=_optional_number(payload.get("minTime"), location=location, key="minTime"),
        max_time=_optional_number(payload.get("maxTime"), location=location, key="maxTime"),
    )


def _load_choice(payload: Any, *, node_id: str, index: int) -> Choice:
    location = f"Choice #{index} in node '{node_id}'"
    if not isinstance(payload, Mapping):
        raise StoryDataError(f"{location} must be an object definition.")

    text = payload.get("text")
    next_node_id = payload.get("nextNodeId")
    if not isinstance(text, str) or not isinstance(next_node_id, str):
        raise StoryDataError(
            f"{location} must provide 'text' and 'nextNodeId' strings."
        )

    enabled = payload.get("enabled")
    if enabled is not None and not isinstance(enabled, bool):
        raise StoryDataError(f"{location} field 'enabled' must be a boolean.")

    condition = payload.get("condition")
    if condition is not None and not isinstance(condition, str):
        raise StoryDataError(f"{location} field 'condition' must be a string.")

    inventory = _optional_mapping(payload, "inventoryRequirements", location=location)
    if inventory is not None:
        for item, quantity in inventory.items():
            _optional_number(quantity, location=location, key=f"inventoryRequirements.{item}")

    try:
        return Choice(
            text=text,
            next_node_id=next_node_id,
            flag_effects=_optional_mapping(payload, "flagEffects", location=location),
            flag_requirements=_optional_mapping(
                payload, "flagRequirements", location=location
            ),
            time_requirements=_load_time_requirements(
                _optional_mapping(payload, "timeRequirements", location=location),
                location=location,
            ),
            inventory_requirements=inventory,
            enabled=enabled,
            condition=condition,
        )
    except (TypeError, ValueError) as exc:
        if isinstance(exc, StoryDataError):
            raise
        raise StoryDataError(f"{location} is invalid: {exc}") from exc


def load_story_from_mapping(
    definition: Mapping[str, Any], *, require_targets: bool = False
) -> Story:
    """Convert a parsed story definition into a :class:`Story`.

    The ``definition`` mapping is typically produced by parsing a JSON file
    and must contain ``initialNodeId`` and a ``nodes`` list. Each node
    provides ``id``, ``text`` and a list of ``choices``.

    Args:
        definition: The raw story mapping.
        require_targets: When ``True`` every choice must lead to an existing
            node; otherwise dangling targets only fail once navigated.

    Raises:
        StoryDataError: If the definition is structurally invalid.
    """

    if not isinstance(definition, Mapping):
        raise StoryDataError("Story definition must be an object.")

    initial_node_id = definition.get("initialNodeId")
    if not isinstance(initial_node_id, str) or not initial_node_id.strip():
        raise StoryDataError("Story definition requires an 'initialNodeId' string.")

    raw_nodes = definition.get("nodes")
    if not isinstance(raw_nodes, list):
        raise StoryDataError("Story definition must provide a list of 'nodes'.")

    nodes: list[Node] = []
    for node_index, node_payload in enumerate(raw_nodes):
        if not isinstance(node_payload, Mapping):
            raise StoryDataError(f"Node #{node_index} must be an object definition.")

        node_id = node_payload.get("id")
        text = node_payload.get("text")
        if not isinstance(node_id, str) or not node_id.strip():
            raise StoryDataError(f"Node #{node_index} is missing an 'id' string.")
        if not isinstance(text, str):
            raise StoryDataError(f"Node '{node_id}' is missing a text description.")

        raw_choices = node_payload.get("choices", [])
        if not isinstance(raw_choices, list):
            raise StoryDataError(f"Node '{node_id}' must define a list of choices.")

        choices = [
            _load_choice(choice_payload, node_id=node_id, index=choice_index)
            for choice_index, choice_payload in enumerate(raw_choices)
        ]
        nodes.append(Node(id=node_id, text=text, choices=tuple(choices)))

    story = Story(initial_node_id=initial_node_id, nodes=tuple(nodes))

    if require_targets:
        dangling = story.find_dangling_targets()
        if dangling:
            described = ", ".join(f"{source}->{target}" for source, target in dangling)
            raise StoryDataError(f"Choices lead to unknown nodes: {described}")

    return story


def load_story_from_file(path: Path | str, *, require_targets: bool = False) -> Story:
    """Load a story definition stored as JSON at ``path``."""

    story_path = Path(path)
    try:
        raw = story_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StoryDataError(f"Could not read story file '{story_path}': {exc}") from exc

    try:
        definition = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StoryDataError(f"Story file '{story_path}' is not valid JSON: {exc}") from exc

    return load_story_from_mapping(definition, require_targets=require_targets)


def load_demo_story() -> Story:
    """Read the bundled demo story from the package data directory."""

    data_resource = resources.files("taleweaver.data").joinpath("demo_story.json")
    with data_resource.open("r", encoding="utf-8") as handle:
        definition = json.load(handle)

    return load_story_from_mapping(definition, require_targets=True)


__all__ = [
    "TimeRequirements",
    "Choice",
    "Node",
    "Story",
    "load_story_from_mapping",
    "load_story_from_file",
    "load_demo_story",
]
