"""
Call routes: session snapshot, provider sync, initiation, logs and the provider status webhook.
"""
import secrets
from typing import Iterator

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.errors import AuthenticationError, ValidationError
from app.db.session import get_db
from app.schemas.calls import CallSessionOut, CallSyncOut, InitiateCallIn
from app.services.auth.jwt import Principal, get_current_principal
from app.services.calls.provider import ExotelClient
from app.services.calls.service import CallSessionService

router = APIRouter(prefix="/calls", tags=["calls"])


def get_provider() -> Iterator[ExotelClient]:
    provider = ExotelClient()
    try:
        yield provider
    finally:
        provider.close()


def get_call_service(
    db: Session = Depends(get_db),
    provider: ExotelClient = Depends(get_provider),
) -> CallSessionService:
    return CallSessionService(db, provider=provider)


@router.get("/session/{session_id}", response_model=CallSessionOut)
def get_session(
    session_id: str,
    principal: Principal = Depends(get_current_principal),
    svc: CallSessionService = Depends(get_call_service),
):
    return svc.snapshot(principal, session_id).as_response()


@router.get("/sync/{external_call_id}", response_model=CallSyncOut)
def sync_session(
    external_call_id: str,
    principal: Principal = Depends(get_current_principal),
    svc: CallSessionService = Depends(get_call_service),
):
    snapshot = svc.reconcile(principal, external_call_id=external_call_id, source="poll")
    return {"status": snapshot.status.value, "duration": snapshot.duration_seconds}


@router.post("/initiate")
def initiate_call(
    body: InitiateCallIn,
    principal: Principal = Depends(get_current_principal),
    svc: CallSessionService = Depends(get_call_service),
):
    return {"success": True, **svc.initiate(principal, body.target_user_id)}


@router.get("/logs")
def call_logs(
    limit: int = Query(settings.call_logs_limit, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    svc: CallSessionService = Depends(get_call_service),
):
    return {"items": svc.list_logs(principal.user_id, limit)}


@router.post("/webhook")
async def provider_webhook(
    request: Request,
    token: str | None = Query(None),
    svc: CallSessionService = Depends(get_call_service),
):
    """Provider status callback. Body is JSON or form-encoded depending on account settings."""
    expected = settings.exotel_webhook_token
    if expected and not secrets.compare_digest(token or "", expected):
        raise AuthenticationError("Invalid webhook token")

    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError("Malformed JSON body")
    else:
        payload = dict(await request.form())
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be an object")

    snapshot = await run_in_threadpool(svc.handle_webhook, payload)
    if snapshot is None:
        # unmatched callbacks are acknowledged; the stored event keeps the payload
        return {"message": "Call session not found"}
    return {"success": True, "status": snapshot.status.value}
