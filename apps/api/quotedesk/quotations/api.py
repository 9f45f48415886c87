from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from quotedesk.context import get_correlation_id
from quotedesk.core.auth import AuthUser, get_current_user as get_auth_user
from quotedesk.core.database import get_db
from quotedesk.quotations.context import ActorContext
from quotedesk.quotations.errors import QuotationError
from quotedesk.quotations.schemas import (
    BuyerInfo,
    ClosureRejection,
    ClosureRequest,
    DocumentInfo,
    ExpirySweepResult,
    MarkReadRequest,
    MarkReadResult,
    MessageCreate,
    MessageRead,
    QuotationCreate,
    QuotationCreated,
    QuotationPage,
    QuotationRead,
    QuotationResponseUpdate,
    QuotationStats,
    QuotationStatus,
    QuotationUpdate,
    ReopenRequest,
    RevisionCreate,
    RevisionCreated,
    SignatureRequest,
    StatusChangeRequest,
    ThreadTransitionResult,
    UnreadCount,
    UnreadThread,
)
from quotedesk.quotations.service import quotation_service
from quotedesk.quotations.thread import thread_service

router = APIRouter(prefix="/api/quotations", tags=["quotations"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc, QuotationError):
        return error_response(request, status_code=exc.status_code, code=exc.code, message=str(exc.detail), details=exc.details)
    return error_response(request, status_code=exc.status_code, code="http_error", message=str(exc.detail), details=exc.detail)


def get_actor(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorContext:
    if auth_user.sub == "anonymous":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorContext(
        user_id=auth_user.sub,
        role="admin" if auth_user.is_admin else "user",
        name=auth_user.name,
        correlation_id=correlation_id,
    )


@router.post("", response_model=QuotationCreated, status_code=status.HTTP_201_CREATED)
def create_quotation(
    request: Request,
    payload: QuotationCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationCreated | JSONResponse:
    try:
        return quotation_service.create_quotation(db, actor, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/drafts", response_model=QuotationCreated, status_code=status.HTTP_201_CREATED)
def create_draft_quotation(
    request: Request,
    payload: BuyerInfo,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationCreated | JSONResponse:
    try:
        return quotation_service.create_draft_quotation(db, actor, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("/drafts/current", response_model=QuotationRead | None)
def get_current_draft(
    request: Request,
    user_id: str = Query(min_length=1),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationRead | None | JSONResponse:
    try:
        return quotation_service.get_current_draft(db, actor, user_id)
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("", response_model=QuotationPage)
def list_quotations(
    request: Request,
    status_filter: QuotationStatus | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationPage | JSONResponse:
    try:
        return quotation_service.list_all(db, actor, status=status_filter, offset=offset, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("/stats", response_model=QuotationStats)
def get_stats(
    request: Request,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationStats | JSONResponse:
    try:
        return quotation_service.get_stats(db, actor)
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("/expiring", response_model=list[QuotationRead])
def get_expiring(
    request: Request,
    days_ahead: int | None = Query(default=None, ge=1, le=365),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> list[QuotationRead] | JSONResponse:
    try:
        return quotation_service.get_expiring(db, actor, days_ahead)
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("/unread", response_model=list[UnreadThread])
def list_unread_threads(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> list[UnreadThread] | JSONResponse:
    try:
        return thread_service.list_quotations_with_unread(db, actor, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/expire", response_model=ExpirySweepResult)
def expire_overdue(
    request: Request,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> ExpirySweepResult | JSONResponse:
    if not actor.is_admin:
        return error_response(request, status_code=status.HTTP_403_FORBIDDEN, code="forbidden", message="only staff may run the expiry sweep")
    try:
        return quotation_service.expire_overdue(db, performed_by=actor.user_id)
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("/by-number/{quotation_number}", response_model=QuotationRead)
def get_by_number(
    request: Request,
    quotation_number: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationRead | JSONResponse:
    try:
        return quotation_service.get_by_number(db, actor, quotation_number)
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("/by-user/{user_id}", response_model=QuotationPage)
def list_by_user(
    request: Request,
    user_id: str,
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1, le=200),
    include_unread_count: bool = Query(default=False),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationPage | JSONResponse:
    try:
        return quotation_service.list_by_user(
            db,
            actor,
            user_id,
            offset=offset,
            limit=limit,
            include_unread_count=include_unread_count,
        )
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("/{quotation_id}", response_model=QuotationRead)
def get_quotation(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationRead | JSONResponse:
    try:
        return quotation_service.get_quotation(db, actor, quotation_id)
    except HTTPException as exc:
        return _failed(request, exc)


@router.patch("/{quotation_id}", response_model=QuotationRead)
def update_quotation(
    request: Request,
    quotation_id: uuid.UUID,
    payload: QuotationUpdate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationRead | JSONResponse:
    try:
        return quotation_service.update_quotation(db, actor, quotation_id, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.put("/{quotation_id}/response", response_model=QuotationRead)
def update_quotation_response(
    request: Request,
    quotation_id: uuid.UUID,
    payload: QuotationResponseUpdate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationRead | JSONResponse:
    try:
        return quotation_service.update_quotation_response(db, actor, quotation_id, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/status", response_model=QuotationRead)
def update_quotation_status(
    request: Request,
    quotation_id: uuid.UUID,
    payload: StatusChangeRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationRead | JSONResponse:
    try:
        return quotation_service.update_quotation_status(db, actor, quotation_id, payload.root)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/reopen", response_model=QuotationRead)
def reopen_quotation(
    request: Request,
    quotation_id: uuid.UUID,
    payload: ReopenRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationRead | JSONResponse:
    try:
        return quotation_service.reopen(db, actor, quotation_id, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/revisions", response_model=RevisionCreated, status_code=status.HTTP_201_CREATED)
def create_revision(
    request: Request,
    quotation_id: uuid.UUID,
    payload: RevisionCreate | None = None,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> RevisionCreated | JSONResponse:
    try:
        return quotation_service.create_revision(db, actor, quotation_id, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("/{quotation_id}/latest", response_model=QuotationRead)
def get_latest_revision(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuotationRead | JSONResponse:
    try:
        return quotation_service.get_latest_revision(db, actor, quotation_id)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/document", response_model=DocumentInfo)
def generate_document(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> DocumentInfo | JSONResponse:
    try:
        return quotation_service.generate_document(db, actor, quotation_id)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/signature", response_model=DocumentInfo)
def sign_document(
    request: Request,
    quotation_id: uuid.UUID,
    payload: SignatureRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> DocumentInfo | JSONResponse:
    try:
        return quotation_service.sign_document(db, actor, quotation_id, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("/{quotation_id}/messages", response_model=list[MessageRead])
def list_messages(
    request: Request,
    quotation_id: uuid.UUID,
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> list[MessageRead] | JSONResponse:
    try:
        return thread_service.list_messages(db, actor, quotation_id, offset=offset, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/messages", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
def create_message(
    request: Request,
    quotation_id: uuid.UUID,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> MessageRead | JSONResponse:
    try:
        return thread_service.create_message(db, actor, quotation_id, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/messages/read", response_model=MarkReadResult)
def mark_messages_read(
    request: Request,
    quotation_id: uuid.UUID,
    payload: MarkReadRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> MarkReadResult | JSONResponse:
    try:
        return thread_service.mark_messages_read(db, actor, quotation_id, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.get("/{quotation_id}/messages/unread-count", response_model=UnreadCount)
def get_unread_count(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> UnreadCount | JSONResponse:
    try:
        return thread_service.get_unread_count(db, actor, quotation_id)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/thread/request-closure", response_model=ThreadTransitionResult)
def request_closure(
    request: Request,
    quotation_id: uuid.UUID,
    payload: ClosureRequest | None = None,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> ThreadTransitionResult | JSONResponse:
    try:
        return thread_service.request_closure(db, actor, quotation_id, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/thread/grant-closure", response_model=ThreadTransitionResult)
def grant_closure_permission(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> ThreadTransitionResult | JSONResponse:
    try:
        return thread_service.grant_closure_permission(db, actor, quotation_id)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/thread/reject-closure", response_model=ThreadTransitionResult)
def reject_closure_request(
    request: Request,
    quotation_id: uuid.UUID,
    payload: ClosureRejection | None = None,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> ThreadTransitionResult | JSONResponse:
    try:
        return thread_service.reject_closure_request(db, actor, quotation_id, payload)
    except HTTPException as exc:
        return _failed(request, exc)


@router.post("/{quotation_id}/thread/close", response_model=ThreadTransitionResult)
def close_thread(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> ThreadTransitionResult | JSONResponse:
    try:
        return thread_service.close_thread(db, actor, quotation_id)
    except HTTPException as exc:
        return _failed(request, exc)
