"""Signed provider webhooks for calls, recordings and messages."""

import logging
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from ..core.errors import SignatureError, WebhookValidationError
from ..core.ratelimit import limiter, webhook_rate_limit
from ..platform import Platform, get_platform
from ..webhooks.gateway import IngestOutcome
from ..webhooks.schemas import PARSERS, WebhookResult
from ..webhooks.signature import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
TWIML_ENDPOINTS = {"voice", "message"}


async def _read_body(request: Request, max_bytes: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Payload exceeds {max_bytes} bytes",
        )
    body = await request.body()
    if len(body) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Payload exceeds {max_bytes} bytes",
        )
    return body


def _signed_url(request: Request, base_url: str | None) -> str:
    """Rebuild the URL the provider signed.

    Behind a proxy the request URL seen here differs from the public one, so
    ``WEBHOOK_BASE_URL`` replaces scheme and host when configured.
    """
    if not base_url:
        return str(request.url)
    url = base_url.rstrip("/") + request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def _reply(endpoint: str, result: WebhookResult) -> Response:
    if endpoint in TWIML_ENDPOINTS:
        return Response(content=EMPTY_TWIML, media_type="application/xml")
    return Response(content=result.model_dump_json(), media_type="application/json")


async def _handle(endpoint: str, request: Request, platform: Platform) -> Response:
    settings = platform.settings
    body = await _read_body(request, settings.webhook_max_body_bytes)
    pairs = parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True)
    params = dict(pairs)

    try:
        platform.verifier.verify(
            _signed_url(request, settings.webhook_base_url),
            pairs,
            request.headers.get(SIGNATURE_HEADER),
        )
    except SignatureError as exc:
        logger.warning("Rejected %s webhook: %s", endpoint, exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        ) from exc

    try:
        event = PARSERS[endpoint](params)
    except WebhookValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if event is None:
        result = WebhookResult(status=IngestOutcome.IGNORED.value)
        return _reply(endpoint, result)

    try:
        outcome = await run_in_threadpool(platform.gateway.ingest, event)
    except SQLAlchemyError as exc:
        logger.exception("Store failure while ingesting %s", event.kind.value)
        raise HTTPException(status_code=500, detail="Storage unavailable") from exc

    result = WebhookResult(
        status=outcome.outcome.value,
        interaction_id=outcome.interaction_id,
        event=event.kind.value,
    )
    return _reply(endpoint, result)


@router.post("/voice")
@limiter.limit(webhook_rate_limit)
async def voice_webhook(request: Request, platform: Platform = Depends(get_platform)) -> Response:
    """Incoming call; creates the call and starts routing."""
    return await _handle("voice", request, platform)


@router.post("/status")
@limiter.limit(webhook_rate_limit)
async def status_webhook(request: Request, platform: Platform = Depends(get_platform)) -> Response:
    """Call status callback."""
    return await _handle("status", request, platform)


@router.post("/recording")
@limiter.limit(webhook_rate_limit)
async def recording_webhook(
    request: Request, platform: Platform = Depends(get_platform)
) -> Response:
    return await _handle("recording", request, platform)


@router.post("/transcription")
@limiter.limit(webhook_rate_limit)
async def transcription_webhook(
    request: Request, platform: Platform = Depends(get_platform)
) -> Response:
    return await _handle("transcription", request, platform)


@router.post("/message")
@limiter.limit(webhook_rate_limit)
async def message_webhook(request: Request, platform: Platform = Depends(get_platform)) -> Response:
    """Inbound SMS/MMS; appended to the thread for the customer and line."""
    return await _handle("message", request, platform)


@router.post("/message-status")
@limiter.limit(webhook_rate_limit)
async def message_status_webhook(
    request: Request, platform: Platform = Depends(get_platform)
) -> Response:
    """Delivery status of a message sent through the provider."""
    return await _handle("message-status", request, platform)
