from __future__ import annotations

import logging
from concurrent.futures import Executor
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from assistant.assignments import AssignmentProcessor
from assistant.classification import IntentClassifier
from assistant.completion import CompletionClient, HttpCompletionClient, StubCompletionClient
from assistant.config import Settings, settings as default_settings
from assistant.context import ContextAccumulator
from assistant.errors import (
    AssignmentNotFoundError,
    AssistantError,
    CompletionError,
    ConversationNotFoundError,
    EmptyUtteranceError,
    InvalidTransitionError,
    ReplyGenerationError,
)
from assistant.guardrails import DatabaseRateLimitStore, GuardrailEngine
from assistant.integrations import DatabaseIntegrationStatusProvider
from assistant.materializer import ActionMaterializer
from assistant.models.api import (
    Assignment,
    AssignmentList,
    AssignmentStats,
    ConversationMessage,
    IntegrationRequest,
    IntegrationStatus,
    MessageRequest,
    MessageResponse,
    Notification,
    RetryRequest,
)
from assistant.orchestrator import Orchestrator
from assistant.storage.db import check_db, create_db_engine
from assistant.storage.stores import build_stores
from assistant.util.timeparse import utc_now

logger = logging.getLogger("assistant")

ERROR_STATUS: Dict[type, int] = {
    EmptyUtteranceError: status.HTTP_400_BAD_REQUEST,
    AssignmentNotFoundError: status.HTTP_404_NOT_FOUND,
    ConversationNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    ReplyGenerationError: status.HTTP_502_BAD_GATEWAY,
    CompletionError: status.HTTP_502_BAD_GATEWAY,
}

HTTP_ERROR_CODES: Dict[int, str] = {
    status.HTTP_400_BAD_REQUEST: "bad_request",
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
    status.HTTP_503_SERVICE_UNAVAILABLE: "database_unavailable",
}


def build_error_payload(
    code: str,
    message: str,
    status_code: int | None = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    payload = {"code": code, "message": message}
    if status_code is not None or details:
        detail_payload = dict(details or {})
        if status_code is not None:
            detail_payload.setdefault("status_code", status_code)
        payload["details"] = detail_payload
    return payload


def build_error_response(
    *,
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": build_error_payload(code, message, status_code=status_code, details=details)},
    )


def configure_logging(level: str) -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logging.getLogger("assistant").setLevel(level.upper())


def build_completion_client(settings: Settings) -> CompletionClient:
    if settings.completion_base_url:
        return HttpCompletionClient(
            base_url=settings.completion_base_url,
            model=settings.completion_model,
            api_key=settings.completion_api_key,
            path=settings.completion_path,
            temperature=settings.completion_temperature,
        )
    logger.warning("completion_stub_enabled reason=completion_base_url_unset")
    return StubCompletionClient(default="I'm running without a language model right now, but I'm here.")


def create_app(
    app_settings: Settings | None = None,
    *,
    completion_client: Optional[CompletionClient] = None,
    executor: Optional[Executor] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    app_settings = app_settings or default_settings
    configure_logging(app_settings.log_level)

    engine = create_db_engine(app_settings.database_url)
    completion = completion_client or build_completion_client(app_settings)
    stores = build_stores(engine, clock=clock)
    integrations = DatabaseIntegrationStatusProvider(engine, clock=clock)
    guardrails = GuardrailEngine(
        rate_limits=DatabaseRateLimitStore(engine),
        integrations=integrations,
        engine=engine,
        clock=clock,
        window_seconds=app_settings.rate_limit_window_seconds,
    )
    processor = AssignmentProcessor(
        stores,
        completion,
        timeout_seconds=app_settings.assignment_timeout_seconds,
        lease_seconds=app_settings.assignment_lease_seconds,
        stale_after_seconds=app_settings.assignment_stale_after_seconds,
        workers=app_settings.assignment_workers,
        recovery_interval_seconds=app_settings.assignment_recovery_interval_seconds,
        executor=executor,
        clock=clock,
    )
    context = ContextAccumulator(
        engine,
        stores,
        integrations,
        window=app_settings.context_window_messages,
        user_timezone=app_settings.user_timezone,
        assistant_name=app_settings.assistant_name,
        clock=clock,
    )
    orchestrator = Orchestrator(
        context=context,
        classifier=IntentClassifier(completion, timeout_seconds=app_settings.classification_timeout_seconds),
        materializer=ActionMaterializer(
            stores,
            guardrails,
            user_timezone=app_settings.user_timezone,
            default_meeting_provider=app_settings.default_meeting_provider,
            queue_assignment=processor.queue,
            clock=clock,
        ),
        completion=completion,
        reply_timeout_seconds=app_settings.reply_timeout_seconds,
        reply_max_tokens=app_settings.reply_max_tokens,
        voice_reply_max_tokens=app_settings.voice_reply_max_tokens,
        user_timezone=app_settings.user_timezone,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        try:
            processor.start()
        except SQLAlchemyError:
            logger.exception("assignment_recovery_failed")
        yield
        processor.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = app_settings
    app.state.engine = engine
    app.state.stores = stores
    app.state.integrations = integrations
    app.state.guardrails = guardrails
    app.state.processor = processor
    app.state.context = context
    app.state.orchestrator = orchestrator

    @app.exception_handler(AssistantError)
    def handle_assistant_error(request: Request, exc: AssistantError) -> JSONResponse:
        status_code = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        details: Dict[str, Any] = {}
        if isinstance(exc, ReplyGenerationError):
            details = {"conversation_id": exc.conversation_id, "created_actions": exc.created_actions}
        elif isinstance(exc, InvalidTransitionError):
            details = {"current_status": exc.current, "target_status": exc.target}
        return build_error_response(status_code=status_code, code=exc.code, message=str(exc), details=details)

    @app.exception_handler(SQLAlchemyError)
    def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.exception("database_error path=%s", request.url.path, exc_info=exc)
        return build_error_response(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="database_unavailable",
            message="Database unavailable",
        )

    @app.exception_handler(StarletteHTTPException)
    def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return build_error_response(
            status_code=exc.status_code,
            code=HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
            message=str(exc.detail),
        )

    def get_settings() -> Settings:
        return app.state.settings

    def require_bearer(
        authorization: str | None = Header(default=None),
        settings: Settings = Depends(get_settings),
    ) -> None:
        if not authorization:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
        try:
            scheme, token = authorization.split(" ", 1)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authorization header")
        if scheme.lower() != "bearer" or token != settings.assistant_service_token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid bearer token")

    def require_user(
        _: None = Depends(require_bearer),
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ) -> str:
        if not x_user_id or not x_user_id.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing X-User-Id header")
        return x_user_id.strip()

    @app.get("/health")
    def health() -> Dict[str, str]:
        try:
            check_db(app.state.engine)
        except Exception:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
        return {"status": "ok"}

    @app.get("/version")
    def version(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
        return {"version": settings.version, "git_sha": settings.git_sha}

    @app.post("/v1/conversations/messages", response_model=MessageResponse)
    def post_message(payload: MessageRequest, user_id: str = Depends(require_user)) -> MessageResponse:
        result = orchestrator.handle_utterance(user_id, payload.conversation_id, payload.text, payload.mode)
        return MessageResponse(
            conversation_id=result.conversation_id,
            reply_text=result.reply_text,
            created_actions=result.created_actions,
            notices=result.notices,
            clarification=result.clarification,
            permissions_requested=result.permissions_requested,
            audio=result.audio,
        )

    @app.get("/v1/conversations/{conversation_id}/messages", response_model=List[ConversationMessage])
    def list_conversation_messages(
        conversation_id: str,
        limit: int = 100,
        offset: int = 0,
        user_id: str = Depends(require_user),
    ) -> List[ConversationMessage]:
        rows = context.list_messages(user_id, conversation_id, limit=max(1, min(limit, 500)), offset=max(0, offset))
        return [ConversationMessage.model_validate(row) for row in rows]

    @app.get("/v1/assignments", response_model=AssignmentList)
    def list_assignments(
        status_filter: Optional[Literal["in_progress", "completed", "failed"]] = Query(default=None, alias="status"),
        assignment_type: Optional[str] = Query(default=None, alias="type"),
        limit: int = 20,
        offset: int = 0,
        user_id: str = Depends(require_user),
    ) -> AssignmentList:
        columns = stores.assignments.table.c
        conditions = []
        if status_filter:
            conditions.append(columns.status == status_filter)
        if assignment_type:
            conditions.append(columns.type == assignment_type)
        limit = max(1, min(limit, 100))
        offset = max(0, offset)
        rows = stores.assignments.list_for_user(user_id, *conditions, limit=limit, offset=offset)
        return AssignmentList(
            items=[Assignment.model_validate(row) for row in rows],
            total=stores.assignments.count_for_user(user_id, *conditions),
            limit=limit,
            offset=offset,
        )

    @app.get("/v1/assignments/stats", response_model=AssignmentStats)
    def assignment_stats(user_id: str = Depends(require_user)) -> AssignmentStats:
        return AssignmentStats.model_validate(stores.assignments.stats(user_id))

    def load_assignment(assignment_id: str, user_id: str) -> Dict[str, Any]:
        row = stores.assignments.find_by_id(assignment_id, user_id=user_id)
        if row is None:
            raise AssignmentNotFoundError(f"Assignment not found: {assignment_id}")
        return row

    @app.get("/v1/assignments/{assignment_id}", response_model=Assignment)
    def get_assignment(assignment_id: str, user_id: str = Depends(require_user)) -> Assignment:
        return Assignment.model_validate(load_assignment(assignment_id, user_id))

    @app.post("/v1/assignments/{assignment_id}/viewed", response_model=Assignment)
    def mark_assignment_viewed(assignment_id: str, user_id: str = Depends(require_user)) -> Assignment:
        row = stores.assignments.mark_viewed(assignment_id, user_id=user_id)
        if row is None:
            raise AssignmentNotFoundError(f"Assignment not found: {assignment_id}")
        return Assignment.model_validate(row)

    @app.post("/v1/assignments/{assignment_id}/retry", response_model=Assignment)
    def retry_assignment(
        assignment_id: str,
        payload: RetryRequest | None = None,
        user_id: str = Depends(require_user),
    ) -> Assignment:
        force = payload.force if payload is not None else False
        return Assignment.model_validate(processor.retry(assignment_id, user_id=user_id, force=force))

    @app.delete("/v1/assignments/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_assignment(assignment_id: str, user_id: str = Depends(require_user)) -> Response:
        if not stores.assignments.delete(assignment_id, user_id=user_id):
            raise AssignmentNotFoundError(f"Assignment not found: {assignment_id}")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/v1/notifications", response_model=List[Notification])
    def list_notifications(
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
        user_id: str = Depends(require_user),
    ) -> List[Notification]:
        conditions = []
        if unread_only:
            conditions.append(stores.notifications.table.c.is_read.is_(False))
        rows = stores.notifications.list_for_user(
            user_id,
            *conditions,
            limit=max(1, min(limit, 200)),
            offset=max(0, offset),
        )
        return [Notification.model_validate({**row, "metadata": row.get("meta") or {}}) for row in rows]

    def set_integration(provider: str, user_id: str, *, connected: bool, account_email: Optional[str]) -> IntegrationStatus:
        try:
            row = integrations.set_connected(user_id, provider, connected=connected, account_email=account_email)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown integration provider: {provider}")
        logger.info("integration_updated user_id=%s provider=%s connected=%s", user_id, provider, connected)
        return IntegrationStatus.model_validate(row)

    @app.put("/v1/integrations/{provider}", response_model=IntegrationStatus)
    def connect_integration(
        provider: str,
        payload: IntegrationRequest | None = None,
        user_id: str = Depends(require_user),
    ) -> IntegrationStatus:
        account_email = payload.account_email if payload is not None else None
        return set_integration(provider, user_id, connected=True, account_email=account_email)

    @app.delete("/v1/integrations/{provider}", response_model=IntegrationStatus)
    def disconnect_integration(provider: str, user_id: str = Depends(require_user)) -> IntegrationStatus:
        return set_integration(provider, user_id, connected=False, account_email=None)

    return app


app = create_app()
