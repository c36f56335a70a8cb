"""Embeddable narrative state engine for branching stories."""

from .autosave import AutosaveConfig, AutosaveController, AutosaveResult
from .conditions import (
    UNDEFINED,
    ConditionContext,
    ConditionEvaluator,
    ExpressionValidation,
)
from .engine import NarrativeEngine, create_engine
from .errors import (
    ChoiceValidationError,
    ConditionEvaluationError,
    NarrativeError,
    NavigationError,
    StateError,
    StoryDataError,
    create_error_response,
)
from .history import HistoryEntry, UndoRedoConfig, UndoRedoManager, UndoRedoResult
from .log_config import configure_logging
from .persistence import (
    ENGINE_VERSION,
    Checkpoint,
    CheckpointOptions,
    LoadOptions,
    PersistenceManager,
    PersistenceResult,
    SerializationOptions,
)
from .settings import EngineSettings
from .state import FlowEvent, NarrativeState
from .storage import (
    FileStorageAdapter,
    InMemoryStorageAdapter,
    StorageAdapter,
    StorageResult,
    create_storage_adapter,
)
from .story import (
    Choice,
    Node,
    Story,
    TimeRequirements,
    load_demo_story,
    load_story_from_file,
    load_story_from_mapping,
)
from .validation import (
    ChoiceValidator,
    ValidationContext,
    ValidationResult,
    ValidationRule,
)

__all__ = [
    "NarrativeEngine",
    "create_engine",
    "Story",
    "Node",
    "Choice",
    "TimeRequirements",
    "load_story_from_mapping",
    "load_story_from_file",
    "load_demo_story",
    "NarrativeState",
    "FlowEvent",
    "UNDEFINED",
    "ConditionContext",
    "ConditionEvaluator",
    "ExpressionValidation",
    "ChoiceValidator",
    "ValidationContext",
    "ValidationResult",
    "ValidationRule",
    "ENGINE_VERSION",
    "PersistenceManager",
    "PersistenceResult",
    "SerializationOptions",
    "LoadOptions",
    "CheckpointOptions",
    "Checkpoint",
    "StorageAdapter",
    "StorageResult",
    "InMemoryStorageAdapter",
    "FileStorageAdapter",
    "create_storage_adapter",
    "HistoryEntry",
    "UndoRedoConfig",
    "UndoRedoManager",
    "UndoRedoResult",
    "AutosaveConfig",
    "AutosaveController",
    "AutosaveResult",
    "EngineSettings",
    "configure_logging",
    "NarrativeError",
    "NavigationError",
    "ChoiceValidationError",
    "ConditionEvaluationError",
    "StoryDataError",
    "StateError",
    "create_error_response",
]
