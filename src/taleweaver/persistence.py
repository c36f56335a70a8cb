"""Versioned, checksummed serialization of engine state and checkpoint bookkeeping."""

from __future__ import annotations

import copy
import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .state import NarrativeState
from .storage import StorageAdapter
from .story import Node, Story

ENGINE_VERSION = "1.0.0"

CLEANUP_STRATEGIES = ("lru", "fifo", "timestamp", "manual")
CleanupStrategy = Literal["lru", "fifo", "timestamp", "manual"]


# ---------- Wire models ----------


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class StateModel(_WireModel):
    current_node_id: str = Field(min_length=1)
    flags: Dict[str, Any] = Field(default_factory=dict)
    history: List[str] = Field(default_factory=list)


class FlowEventModel(_WireModel):
    from_node_id: str
    to_node_id: str
    choice_text: str = ""
    timestamp: float = 0.0


class SerializationMetadataModel(_WireModel):
    engine_version: str
    timestamp: str
    story_id: Optional[str] = None
    checksum: Optional[str] = None
    compression: Literal["none", "gzip", "lz4"] = "none"
    custom_metadata: Dict[str, Any] = Field(default_factory=dict)


class PerformanceStateModel(_WireModel):
    performance_mode: bool = False
    enable_profiling: bool = False
    background_tasks: List[str] = Field(default_factory=list)
    telemetry_data: List[Dict[str, Any]] = Field(default_factory=list)


class BranchingContextModel(_WireModel):
    active_branches: List[str] = Field(default_factory=list)
    branch_states: Dict[str, Any] = Field(default_factory=dict)
    convergence_points: List[str] = Field(default_factory=list)


class ValidationStateModel(_WireModel):
    disabled_rules: List[str] = Field(default_factory=list)
    custom_rules: Dict[str, Any] = Field(default_factory=dict)
    validation_errors: List[str] = Field(default_factory=list)


class SerializedEnvelope(_WireModel):
    """Schema of a saved game as exchanged with storage backends."""

    state: StateModel
    flow_events: List[FlowEventModel] = Field(default_factory=list)
    metadata: SerializationMetadataModel
    performance_state: Optional[PerformanceStateModel] = None
    branching_context: Optional[BranchingContextModel] = None
    validation_state: Optional[ValidationStateModel] = None


class CheckpointModel(_WireModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    state: StateModel
    timestamp: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------- Options and results ----------


@dataclass(frozen=True)
class SerializationOptions:
    include_performance_data: bool = False
    include_flow_events: bool = False
    include_branching_context: bool = False
    include_validation_state: bool = False
    generate_checksum: bool = False
    custom_metadata: Mapping[str, Any] | None = None


Migration = Callable[[Dict[str, Any]], Mapping[str, Any]]


@dataclass(frozen=True)
class LoadOptions:
    verify_checksum: bool = False
    skip_compatibility_check: bool = False
    restore_flow_events: bool = False
    restore_performance_state: bool = False
    restore_branching_context: bool = False
    restore_validation_state: bool = False
    migration_function: Migration | None = None


@dataclass(frozen=True)
class CheckpointOptions:
    """Per-call checkpoint settings; ``None`` falls back to the manager defaults."""

    max_checkpoints: int | None = None
    cleanup_strategy: CleanupStrategy | None = None
    include_metadata: bool = False
    auto_tags: Tuple[str, ...] = ()
    description: str | None = None


@dataclass(frozen=True)
class PersistenceResult:
    """Structured outcome of a save, load, restore or storage operation."""

    success: bool
    error: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    @classmethod
    def ok(
        cls, data: Mapping[str, Any] | None = None, warnings: Sequence[str] = ()
    ) -> "PersistenceResult":
        return cls(success=True, data=dict(data or {}), warnings=tuple(warnings))

    @classmethod
    def failure(cls, error: str, warnings: Sequence[str] = ()) -> "PersistenceResult":
        return cls(success=False, error=error, warnings=tuple(warnings))

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.error is not None:
            payload["error"] = self.error
        if self.data:
            payload["data"] = dict(self.data)
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


@dataclass(frozen=True)
class Checkpoint:
    """A named, lightweight snapshot of the narrative state."""

    id: str
    state: NarrativeState
    timestamp: str
    name: str | None = None
    description: str | None = None
    tags: Tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    sequence: int = field(default=0, compare=False, repr=False)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "state": self.state.to_payload(),
            "timestamp": self.timestamp,
            "tags": list(self.tags),
            "metadata": copy.deepcopy(dict(self.metadata)),
        }
        if self.name is not None:
            payload["name"] = self.name
        if self.description is not None:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True)
class LoadOutcome:
    """A checked envelope ready to be applied, or the reason it cannot be."""

    result: PersistenceResult
    state: NarrativeState | None = None
    envelope: SerializedEnvelope | None = None


# ---------- Helpers ----------


def iso_timestamp(moment: datetime | None = None) -> str:
    """Return a UTC ISO-8601 timestamp with millisecond precision."""

    moment = moment or datetime.now(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def compute_checksum(envelope: Mapping[str, Any]) -> str:
    """Return the SHA-256 of the canonical JSON form of ``envelope``.

    ``metadata.checksum`` is excluded so a stored checksum can be verified
    against the envelope that carries it.
    """

    canonical = dict(envelope)
    metadata = canonical.get("metadata")
    if isinstance(metadata, Mapping):
        canonical["metadata"] = {
            key: value for key, value in metadata.items() if key != "checksum"
        }
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _parse_version(version: str) -> Tuple[int, int, int] | None:
    parts = version.strip().split(".")
    if not 1 <= len(parts) <= 3:
        return None
    try:
        numbers = [int(part) for part in parts]
    except ValueError:
        return None
    while len(numbers) < 3:
        numbers.append(0)
    return numbers[0], numbers[1], numbers[2]


def check_version_compatibility(
    saved_version: str, *, has_migration: bool = False
) -> Tuple[str | None, List[str]]:
    """Compare ``saved_version`` with :data:`ENGINE_VERSION`.

    Returns:
        ``(error, warnings)`` where ``error`` is ``None`` when the state may
        be loaded.
    """

    saved = _parse_version(saved_version)
    current = _parse_version(ENGINE_VERSION)
    if saved is None or current is None:
        return f"Unrecognised engine version '{saved_version}'", []

    if saved == current:
        return None, []

    if saved[0] > current[0]:
        return (
            f"State was saved by a newer engine version ({saved_version}); "
            f"current version is {ENGINE_VERSION}",
            [],
        )

    if saved[0] < current[0]:
        if has_migration:
            return None, [
                f"State was saved by engine version {saved_version}; "
                "relying on the supplied migration function"
            ]
        return (
            f"State was saved by an incompatible older engine version ({saved_version}); "
            "migration required",
            [],
        )

    if saved[1] > current[1]:
        return None, [
            f"State was saved by a newer minor engine version ({saved_version}); "
            "some data may be ignored"
        ]

    return None, []


def _describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "envelope"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def _state_from_model(model: StateModel) -> NarrativeState:
    return NarrativeState(
        current_node_id=model.current_node_id,
        flags=copy.deepcopy(dict(model.flags)),
        history=list(model.history),
    )


# ---------- Manager ----------


class PersistenceManager:
    """Serialize engine state and keep a bounded collection of checkpoints.

    The manager never touches the live engine state itself. Callers hand in
    the state to snapshot and receive copies back, so nothing stored here
    aliases engine-owned data.
    """

    def __init__(
        self,
        story: Story,
        *,
        storage: StorageAdapter | None = None,
        max_checkpoints: int = 50,
        cleanup_strategy: CleanupStrategy = "timestamp",
    ) -> None:
        if max_checkpoints < 1:
            raise ValueError("max_checkpoints must be a positive integer")
        if cleanup_strategy not in CLEANUP_STRATEGIES:
            raise ValueError(f"Unknown cleanup strategy: {cleanup_strategy}")
        self.story = story
        self.storage = storage
        self.max_checkpoints = max_checkpoints
        self.cleanup_strategy: CleanupStrategy = cleanup_strategy
        self._story_id = story.structural_hash()
        self._checkpoints: Dict[str, Checkpoint] = {}
        self._sequence = 0
        self._created_count = 0

    @property
    def story_id(self) -> str:
        return self._story_id

    # -- envelopes --

    def build_envelope(
        self,
        state: NarrativeState,
        options: SerializationOptions | None = None,
        *,
        flow_events: Sequence[Mapping[str, Any]] = (),
        performance_state: Mapping[str, Any] | None = None,
        branching_context: Mapping[str, Any] | None = None,
        validation_state: Mapping[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Return a JSON-ready envelope for ``state``.

        Raises:
            TypeError, ValueError: If the flags cannot be represented as JSON
                (for example circular or arbitrary Python objects).
        """

        options = options or SerializationOptions()
        state_payload = state.to_payload()
        json.dumps(state_payload)

        envelope: Dict[str, Any] = {
            "state": state_payload,
            "flowEvents": [dict(event) for event in flow_events]
            if options.include_flow_events
            else [],
            "metadata": {
                "engineVersion": ENGINE_VERSION,
                "timestamp": iso_timestamp(),
                "storyId": self._story_id,
                "compression": "none",
                "customMetadata": copy.deepcopy(dict(options.custom_metadata or {})),
            },
        }
        if options.include_performance_data and performance_state is not None:
            envelope["performanceState"] = copy.deepcopy(dict(performance_state))
        if options.include_branching_context and branching_context is not None:
            envelope["branchingContext"] = copy.deepcopy(dict(branching_context))
        if options.include_validation_state and validation_state is not None:
            envelope["validationState"] = copy.deepcopy(dict(validation_state))
        if options.generate_checksum:
            envelope["metadata"]["checksum"] = compute_checksum(envelope)
        return envelope

    def read_envelope(
        self, data: Mapping[str, Any] | str, options: LoadOptions | None = None
    ) -> LoadOutcome:
        """Check ``data`` and return the state it describes.

        The checks run in order: structure, story identity, engine version,
        checksum, migration and finally the node reference. The first
        failure is returned as an unsuccessful :class:`PersistenceResult`.
        """

        options = options or LoadOptions()
        started = time.perf_counter()
        warnings: List[str] = []

        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as exc:
                return self._failed_load(f"Invalid serialized state: not valid JSON ({exc})")
        if not isinstance(data, Mapping):
            return self._failed_load("Invalid serialized state: expected an object")

        raw = copy.deepcopy(dict(data))
        try:
            envelope = SerializedEnvelope.model_validate(raw)
        except ValidationError as exc:
            return self._failed_load(
                f"Invalid serialized state: {_describe_validation_error(exc)}"
            )

        story_id = envelope.metadata.story_id
        if story_id is None:
            warnings.append("Serialized state has no story identifier; skipping story check")
        elif story_id != self._story_id:
            return self._failed_load(
                f"Story mismatch: state was saved for story '{story_id}' "
                f"but the loaded story is '{self._story_id}'",
                warnings,
            )

        if not options.skip_compatibility_check:
            error, version_warnings = check_version_compatibility(
                envelope.metadata.engine_version,
                has_migration=options.migration_function is not None,
            )
            warnings.extend(version_warnings)
            if error is not None:
                return self._failed_load(error, warnings)

        if envelope.metadata.compression != "none":
            return self._failed_load(
                f"Unsupported compression '{envelope.metadata.compression}'", warnings
            )

        if options.verify_checksum:
            expected = envelope.metadata.checksum
            if not expected:
                return self._failed_load(
                    "Checksum verification failed: no checksum present", warnings
                )
            if compute_checksum(raw) != expected:
                return self._failed_load("Checksum verification failed", warnings)

        if options.migration_function is not None:
            try:
                migrated = options.migration_function(copy.deepcopy(raw))
                envelope = SerializedEnvelope.model_validate(dict(migrated))
            except ValidationError as exc:
                return self._failed_load(
                    f"Migration produced an invalid state: {_describe_validation_error(exc)}",
                    warnings,
                )
            except Exception as exc:  # noqa: BLE001 - caller supplied code
                return self._failed_load(f"Migration failed: {exc}", warnings)

        state = _state_from_model(envelope.state)
        if state.current_node_id not in self.story:
            return self._failed_load(
                f"Serialized state references unknown node '{state.current_node_id}'",
                warnings,
            )

        duration = (time.perf_counter() - started) * 1000
        result = PersistenceResult.ok(
            {
                "size": len(json.dumps(raw, default=str).encode("utf-8")),
                "checksum": envelope.metadata.checksum,
                "duration": duration,
            },
            warnings,
        )
        for warning in warnings:
            logger.warning("Loading state: {}", warning)
        return LoadOutcome(result=result, state=state, envelope=envelope)

    @staticmethod
    def _failed_load(error: str, warnings: Sequence[str] = ()) -> LoadOutcome:
        logger.warning("Failed to load state: {}", error)
        return LoadOutcome(result=PersistenceResult.failure(error, warnings))

    # -- checkpoints --

    def create_checkpoint(
        self,
        state: NarrativeState,
        name: str | None = None,
        options: CheckpointOptions | None = None,
        *,
        node: Node | None = None,
        tags: Sequence[str] = (),
        metadata: Mapping[str, Any] | None = None,
    ) -> Checkpoint:
        """Store a copy of ``state`` and evict old checkpoints if over the bound."""

        options = options or CheckpointOptions()
        self._created_count += 1
        self._sequence += 1

        details: Dict[str, Any] = {}
        if options.include_metadata:
            details = {
                "nodeTitle": _node_title(node),
                "choiceCount": len(node.choices) if node is not None else 0,
                "flagCount": len(state.flags),
                "historyLength": len(state.history),
            }
        details.update(copy.deepcopy(dict(metadata or {})))

        merged_tags: List[str] = []
        for tag in (*options.auto_tags, *tags):
            if tag not in merged_tags:
                merged_tags.append(tag)

        checkpoint = Checkpoint(
            id=f"cp-{uuid.uuid4().hex[:12]}",
            state=state.clone(),
            timestamp=iso_timestamp(),
            name=name or f"Checkpoint {self._created_count}",
            description=options.description,
            tags=tuple(merged_tags),
            metadata=details,
            sequence=self._sequence,
        )
        self._checkpoints[checkpoint.id] = checkpoint
        logger.info("Created checkpoint {} ({})", checkpoint.id, checkpoint.name)

        self._auto_cleanup(options)
        return checkpoint

    def get_checkpoints(self) -> List[Checkpoint]:
        """Return every checkpoint, oldest first."""

        return sorted(self._checkpoints.values(), key=lambda cp: cp.sequence)

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        return self._checkpoints.get(checkpoint_id)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        removed = self._checkpoints.pop(checkpoint_id, None) is not None
        if removed:
            logger.debug("Deleted checkpoint {}", checkpoint_id)
        return removed

    def checkpoint_state(self, checkpoint_id: str) -> NarrativeState | None:
        """Return a fresh copy of the state stored in ``checkpoint_id``."""

        checkpoint = self._checkpoints.get(checkpoint_id)
        if checkpoint is None:
            return None
        return checkpoint.state.clone()

    def cleanup_checkpoints(self, options: CheckpointOptions | None = None) -> int:
        """Evict checkpoints beyond the configured bound and return how many were removed.

        ``timestamp`` and ``lru`` evict by checkpoint timestamp; ``lru`` has
        no access tracking and so orders exactly like ``timestamp``. ``fifo``
        evicts by creation order and ``manual`` never evicts.
        """

        options = options or CheckpointOptions()
        limit = options.max_checkpoints or self.max_checkpoints
        strategy = options.cleanup_strategy or self.cleanup_strategy
        if strategy not in CLEANUP_STRATEGIES:
            raise ValueError(f"Unknown cleanup strategy: {strategy}")
        if strategy == "manual" or len(self._checkpoints) <= limit:
            return 0

        if strategy == "fifo":
            ordered = sorted(self._checkpoints.values(), key=lambda cp: cp.sequence)
        else:
            ordered = sorted(
                self._checkpoints.values(),
                key=lambda cp: (_parse_iso(cp.timestamp), cp.sequence),
            )

        excess = ordered[: len(ordered) - limit]
        for checkpoint in excess:
            del self._checkpoints[checkpoint.id]
        logger.info("Cleaned up {} checkpoint(s) using the {} strategy", len(excess), strategy)
        return len(excess)

    def _auto_cleanup(self, options: CheckpointOptions) -> None:
        strategy = options.cleanup_strategy or self.cleanup_strategy
        if strategy != "manual":
            self.cleanup_checkpoints(options)

    def export_checkpoint(self, checkpoint_id: str) -> str:
        """Return ``checkpoint_id`` as a JSON document.

        Raises:
            KeyError: If the checkpoint does not exist.
        """

        checkpoint = self._checkpoints.get(checkpoint_id)
        if checkpoint is None:
            raise KeyError(f"Checkpoint not found: {checkpoint_id}")
        return json.dumps(checkpoint.to_payload(), indent=2)

    def import_checkpoint(self, data: str | Mapping[str, Any]) -> Checkpoint:
        """Add a checkpoint previously produced by :meth:`export_checkpoint`.

        Raises:
            ValueError: If ``data`` is not a valid checkpoint document or the
                state refers to a node missing from the story.
        """

        payload = json.loads(data) if isinstance(data, str) else dict(data)
        model = CheckpointModel.model_validate(payload)
        state = _state_from_model(model.state)
        if state.current_node_id not in self.story:
            raise ValueError(
                f"Checkpoint references unknown node '{state.current_node_id}'"
            )

        self._sequence += 1
        checkpoint = Checkpoint(
            id=model.id,
            state=state,
            timestamp=model.timestamp,
            name=model.name,
            description=model.description,
            tags=tuple(model.tags),
            metadata=dict(model.metadata),
            sequence=self._sequence,
        )
        self._checkpoints[checkpoint.id] = checkpoint
        logger.info("Imported checkpoint {}", checkpoint.id)
        self._auto_cleanup(CheckpointOptions())
        return checkpoint

    # -- storage --

    def save_to_storage(self, key: str, envelope: Mapping[str, Any]) -> PersistenceResult:
        """Write ``envelope`` through the configured storage adapter."""

        if self.storage is None:
            return PersistenceResult.failure("No storage adapter configured")
        started = time.perf_counter()
        try:
            stored = self.storage.save(key, envelope)
        except Exception as exc:  # noqa: BLE001 - adapter code
            logger.warning("Storage save for {!r} failed: {}", key, exc)
            return PersistenceResult.failure(f"Storage error: {exc}")
        if not stored.success:
            return PersistenceResult.failure(stored.error or "Storage error")

        logger.info("Saved state under key {!r} ({} bytes)", stored.key, stored.size)
        metadata = envelope.get("metadata") or {}
        return PersistenceResult.ok(
            {
                "key": stored.key,
                "size": stored.size,
                "checksum": metadata.get("checksum"),
                "duration": (time.perf_counter() - started) * 1000,
            }
        )

    def fetch_from_storage(self, key: str) -> Tuple[Dict[str, Any] | None, str | None]:
        """Return ``(envelope, error)`` for ``key``."""

        if self.storage is None:
            return None, "No storage adapter configured"
        try:
            envelope = self.storage.load(key)
        except Exception as exc:  # noqa: BLE001 - adapter code
            logger.warning("Storage load for {!r} failed: {}", key, exc)
            return None, f"Storage error: {exc}"
        if envelope is None:
            return None, f"No saved state found for key '{key}'"
        return envelope, None


def _node_title(node: Node | None) -> str:
    if node is None:
        return ""
    first_line = node.text.strip().splitlines()[0] if node.text.strip() else node.id
    return first_line if len(first_line) <= 50 else first_line[:47] + "..."


__all__ = [
    "ENGINE_VERSION",
    "CLEANUP_STRATEGIES",
    "SerializedEnvelope",
    "CheckpointModel",
    "SerializationOptions",
    "LoadOptions",
    "CheckpointOptions",
    "PersistenceResult",
    "Checkpoint",
    "LoadOutcome",
    "PersistenceManager",
    "check_version_compatibility",
    "compute_checksum",
    "iso_timestamp",
]
