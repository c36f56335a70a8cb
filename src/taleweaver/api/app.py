"""FastAPI application exposing narrative engine sessions."""

from __future__ import annotations

import uuid
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse

from ..engine import NarrativeEngine
from ..errors import ChoiceValidationError, NavigationError, StoryDataError
from ..log_config import configure_logging
from ..persistence import (
    Checkpoint,
    CheckpointOptions,
    LoadOptions,
    PersistenceResult,
    SerializationOptions,
)
from ..settings import EngineSettings
from ..storage import FileStorageAdapter, InMemoryStorageAdapter, StorageAdapter
from ..story import Choice, Story, load_demo_story, load_story_from_file


class ChoiceResource(BaseModel):
    """A choice on the current node as offered to the reader."""

    index: int = Field(..., ge=0)
    text: str
    next_node_id: str
    available: bool
    reason: str | None = None


class NodeResource(BaseModel):
    id: str
    text: str
    is_terminal: bool


class SessionResource(BaseModel):
    """Snapshot of a session's narrative state."""

    session_id: str
    node: NodeResource
    choices: list[ChoiceResource] = Field(default_factory=list)
    flags: Dict[str, Any] = Field(default_factory=dict)
    history: list[str] = Field(default_factory=list)
    is_complete: bool
    can_undo: bool
    can_redo: bool


class SessionListResponse(BaseModel):
    data: list[str]


class SessionCreateRequest(BaseModel):
    autosave: bool | None = None


class ChoiceRequest(BaseModel):
    index: int


class NavigationRequest(BaseModel):
    node_id: str = Field(..., min_length=1)


class FlagUpdateRequest(BaseModel):
    value: Any = None


class UndoRedoResponse(BaseModel):
    success: bool
    error: str | None = None
    undo_count: int
    redo_count: int
    session: SessionResource


class CheckpointCreateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)


class CheckpointResource(BaseModel):
    id: str
    name: str | None = None
    description: str | None = None
    timestamp: str
    node_id: str
    tags: list[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CheckpointListResponse(BaseModel):
    data: list[CheckpointResource]


class PersistenceResponse(BaseModel):
    success: bool
    error: str | None = None
    data: Dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)


class SessionManager:
    """Own one :class:`NarrativeEngine` per session id.

    Sessions are fully independent; they share only the read-only story and
    the storage backend used for named saves.
    """

    def __init__(
        self,
        story: Story,
        *,
        settings: EngineSettings | None = None,
        storage: StorageAdapter | None = None,
    ) -> None:
        self.story = story
        self.settings = settings or EngineSettings()
        if storage is None:
            storage = (
                FileStorageAdapter(self.settings.save_dir)
                if self.settings.save_dir is not None
                else InMemoryStorageAdapter()
            )
        self.storage = storage
        self._sessions: dict[str, NarrativeEngine] = {}

    def create_session(self, *, autosave: bool | None = None) -> tuple[str, NarrativeEngine]:
        session_id = uuid.uuid4().hex
        engine = NarrativeEngine(self.story, settings=self.settings, storage=self.storage)
        if autosave is not None:
            engine.configure_autosave(enabled=autosave)
        self._sessions[session_id] = engine
        logger.info("Created session {}", session_id)
        return session_id, engine

    def get(self, session_id: str) -> NarrativeEngine:
        """Return the engine for ``session_id``.

        Raises:
            KeyError: If the session does not exist.
        """

        try:
            return self._sessions[session_id]
        except KeyError as exc:
            raise KeyError(f"Session '{session_id}' does not exist") from exc

    def delete(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info("Closed session {}", session_id)
        return removed

    def list_sessions(self) -> List[str]:
        return sorted(self._sessions)


def _load_configured_story(settings: EngineSettings) -> Story:
    if settings.story_path is None:
        return load_demo_story()
    try:
        return load_story_from_file(settings.story_path)
    except StoryDataError as exc:
        raise RuntimeError(f"Configured story could not be loaded: {exc}") from exc


def _build_choice_resources(engine: NarrativeEngine) -> list[ChoiceResource]:
    resources: list[ChoiceResource] = []
    for index, choice in enumerate(engine.get_visible_choices()):
        result = engine.validate_choice(choice)
        resources.append(
            ChoiceResource(
                index=index,
                text=choice.text,
                next_node_id=choice.next_node_id,
                available=result.is_valid,
                reason=result.reason,
            )
        )
    return resources


def _build_session_resource(session_id: str, engine: NarrativeEngine) -> SessionResource:
    node = engine.get_current_node()
    choices = _build_choice_resources(engine)
    return SessionResource(
        session_id=session_id,
        node=NodeResource(id=node.id, text=node.text, is_terminal=node.is_terminal),
        choices=choices,
        flags=engine.get_flags(),
        history=engine.get_history(),
        is_complete=not any(choice.available for choice in choices),
        can_undo=engine.can_undo(),
        can_redo=engine.can_redo(),
    )


def _build_checkpoint_resource(checkpoint: Checkpoint) -> CheckpointResource:
    return CheckpointResource(
        id=checkpoint.id,
        name=checkpoint.name,
        description=checkpoint.description,
        timestamp=checkpoint.timestamp,
        node_id=checkpoint.state.current_node_id,
        tags=list(checkpoint.tags),
        metadata=dict(checkpoint.metadata),
    )


def _build_persistence_response(result: PersistenceResult) -> PersistenceResponse:
    return PersistenceResponse(
        success=result.success,
        error=result.error,
        data=dict(result.data),
        warnings=list(result.warnings),
    )


def _choice_summary(choice: Choice) -> Dict[str, str]:
    return {"text": choice.text, "next_node_id": choice.next_node_id}


def create_app(
    session_manager: SessionManager | None = None,
    *,
    settings: EngineSettings | None = None,
) -> FastAPI:
    """Create a FastAPI app exposing the narrative session endpoints."""

    resolved_settings = settings or EngineSettings.from_env()
    manager = session_manager or SessionManager(
        _load_configured_story(resolved_settings), settings=resolved_settings
    )

    tags_metadata = [
        {
            "name": "Sessions",
            "description": (
                "Create reader sessions, inspect the current node and make "
                "choices through the validation pipeline."
            ),
        },
        {
            "name": "History",
            "description": "Undo and redo tracked state changes.",
        },
        {
            "name": "Persistence",
            "description": (
                "Checkpoints, named saves in the configured storage backend "
                "and raw envelope import/export."
            ),
        },
    ]

    app = FastAPI(
        title="Taleweaver Narrative API",
        version="0.1.0",
        description=(
            "HTTP API over the narrative state engine. Each session owns an "
            "independent engine with its own undo history and checkpoints."
        ),
        openapi_tags=tags_metadata,
    )
    app.state.log_handler_ids = configure_logging(resolved_settings.log_level)

    @app.exception_handler(ChoiceValidationError)
    def _handle_choice_validation(
        request: Request, exc: ChoiceValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "failed_rule": exc.failed_rule,
                "failed_conditions": list(exc.validation_result.failed_conditions),
                "available_choices": [
                    _choice_summary(choice) for choice in exc.available_choices
                ],
            },
        )

    def _session(session_id: str) -> NarrativeEngine:
        try:
            return manager.get(session_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Session not found.") from exc

    @app.post(
        "/api/sessions",
        response_model=SessionResource,
        status_code=201,
        tags=["Sessions"],
    )
    def create_session(payload: SessionCreateRequest | None = None) -> SessionResource:
        session_id, engine = manager.create_session(
            autosave=payload.autosave if payload is not None else None
        )
        return _build_session_resource(session_id, engine)

    @app.get("/api/sessions", response_model=SessionListResponse, tags=["Sessions"])
    def list_sessions() -> SessionListResponse:
        return SessionListResponse(data=manager.list_sessions())

    @app.get(
        "/api/sessions/{session_id}", response_model=SessionResource, tags=["Sessions"]
    )
    def get_session(session_id: str) -> SessionResource:
        return _build_session_resource(session_id, _session(session_id))

    @app.delete("/api/sessions/{session_id}", status_code=204, tags=["Sessions"])
    def delete_session(session_id: str) -> None:
        if not manager.delete(session_id):
            raise HTTPException(status_code=404, detail="Session not found.")

    @app.get(
        "/api/sessions/{session_id}/choices",
        response_model=list[ChoiceResource],
        tags=["Sessions"],
    )
    def list_choices(session_id: str) -> list[ChoiceResource]:
        return _build_choice_resources(_session(session_id))

    @app.post(
        "/api/sessions/{session_id}/choices",
        response_model=SessionResource,
        tags=["Sessions"],
    )
    def make_choice(session_id: str, payload: ChoiceRequest) -> SessionResource:
        engine = _session(session_id)
        try:
            engine.make_choice(payload.index)
        except NavigationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _build_session_resource(session_id, engine)

    @app.post(
        "/api/sessions/{session_id}/navigate",
        response_model=SessionResource,
        tags=["Sessions"],
    )
    def navigate(session_id: str, payload: NavigationRequest) -> SessionResource:
        engine = _session(session_id)
        try:
            engine.go_to_node_by_id(payload.node_id)
        except NavigationError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return _build_session_resource(session_id, engine)

    @app.put(
        "/api/sessions/{session_id}/flags/{name}",
        response_model=SessionResource,
        tags=["Sessions"],
    )
    def set_flag(session_id: str, name: str, payload: FlagUpdateRequest) -> SessionResource:
        engine = _session(session_id)
        try:
            engine.set_flag(name, payload.value)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _build_session_resource(session_id, engine)

    @app.post(
        "/api/sessions/{session_id}/reset",
        response_model=SessionResource,
        tags=["Sessions"],
    )
    def reset_session(session_id: str) -> SessionResource:
        engine = _session(session_id)
        engine.reset_narrative()
        return _build_session_resource(session_id, engine)

    @app.post(
        "/api/sessions/{session_id}/undo",
        response_model=UndoRedoResponse,
        tags=["History"],
    )
    def undo(session_id: str) -> UndoRedoResponse:
        engine = _session(session_id)
        result = engine.undo()
        return UndoRedoResponse(
            success=result.success,
            error=result.error,
            undo_count=result.undo_count,
            redo_count=result.redo_count,
            session=_build_session_resource(session_id, engine),
        )

    @app.post(
        "/api/sessions/{session_id}/redo",
        response_model=UndoRedoResponse,
        tags=["History"],
    )
    def redo(session_id: str) -> UndoRedoResponse:
        engine = _session(session_id)
        result = engine.redo()
        return UndoRedoResponse(
            success=result.success,
            error=result.error,
            undo_count=result.undo_count,
            redo_count=result.redo_count,
            session=_build_session_resource(session_id, engine),
        )

    @app.post(
        "/api/sessions/{session_id}/checkpoints",
        response_model=CheckpointResource,
        status_code=201,
        tags=["Persistence"],
    )
    def create_checkpoint(
        session_id: str, payload: CheckpointCreateRequest
    ) -> CheckpointResource:
        engine = _session(session_id)
        checkpoint = engine.create_checkpoint(
            payload.name,
            CheckpointOptions(include_metadata=True, description=payload.description),
            tags=payload.tags,
        )
        return _build_checkpoint_resource(checkpoint)

    @app.get(
        "/api/sessions/{session_id}/checkpoints",
        response_model=CheckpointListResponse,
        tags=["Persistence"],
    )
    def list_checkpoints(session_id: str) -> CheckpointListResponse:
        engine = _session(session_id)
        return CheckpointListResponse(
            data=[_build_checkpoint_resource(cp) for cp in engine.get_checkpoints()]
        )

    @app.post(
        "/api/sessions/{session_id}/checkpoints/{checkpoint_id}/restore",
        response_model=SessionResource,
        tags=["Persistence"],
    )
    def restore_checkpoint(session_id: str, checkpoint_id: str) -> SessionResource:
        engine = _session(session_id)
        result = engine.restore_from_checkpoint(checkpoint_id)
        if not result.success:
            raise HTTPException(status_code=404, detail=result.error)
        return _build_session_resource(session_id, engine)

    @app.post(
        "/api/sessions/{session_id}/saves/{key}",
        response_model=PersistenceResponse,
        tags=["Persistence"],
    )
    def save_to_storage(session_id: str, key: str) -> PersistenceResponse:
        engine = _session(session_id)
        result = engine.save_to_storage(
            key, SerializationOptions(include_flow_events=True, generate_checksum=True)
        )
        if not result.success:
            raise HTTPException(status_code=400, detail=result.error)
        return _build_persistence_response(result)

    @app.post(
        "/api/sessions/{session_id}/saves/{key}/load",
        response_model=PersistenceResponse,
        tags=["Persistence"],
    )
    def load_from_storage(session_id: str, key: str) -> PersistenceResponse:
        engine = _session(session_id)
        try:
            exists = manager.storage.exists(key)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not exists:
            raise HTTPException(status_code=404, detail=f"No save named '{key}'.")
        result = engine.load_from_storage(
            key, LoadOptions(verify_checksum=True, restore_flow_events=True)
        )
        if not result.success:
            raise HTTPException(status_code=422, detail=result.error)
        return _build_persistence_response(result)

    @app.get("/api/sessions/{session_id}/export", tags=["Persistence"])
    def export_state(session_id: str) -> Dict[str, Any]:
        engine = _session(session_id)
        return engine.save_state(
            SerializationOptions(include_flow_events=True, generate_checksum=True)
        )

    @app.post(
        "/api/sessions/{session_id}/import",
        response_model=PersistenceResponse,
        tags=["Persistence"],
    )
    def import_state(session_id: str, envelope: Dict[str, Any]) -> PersistenceResponse:
        engine = _session(session_id)
        result = engine.load_state(envelope, LoadOptions(restore_flow_events=True))
        if not result.success:
            raise HTTPException(status_code=422, detail=result.error)
        return _build_persistence_response(result)

    return app


__all__ = ["create_app", "SessionManager"]
