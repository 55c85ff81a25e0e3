import logging
import time
from uuid import uuid4

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.database import get_store
from app.modules.security.signatures import SignatureError, check_signature
from app.modules.whatsapp.processor import ChatMessageProcessor, ChatProcessingResult
from app.modules.whatsapp.providers.base import MalformedPayloadError
from app.modules.whatsapp.sender import get_provider

router = APIRouter()
logger = logging.getLogger(__name__)


def _respond(result: ChatProcessingResult, request_id: str, started: float, status_code: int = 200) -> JSONResponse:
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    body = {**result.to_dict(), "request_id": request_id, "processing_time_ms": elapsed_ms}
    logger.info(
        "[%s] WhatsApp webhook done in %dms: messages=%d statuses=%d duplicates=%d unmatched=%d errors=%d",
        request_id, elapsed_ms, result.processed_messages, result.processed_statuses,
        result.duplicates, result.unmatched, len(result.errors),
    )
    return JSONResponse(
        body,
        status_code=status_code,
        headers={"X-Request-ID": request_id, "X-Processing-Time": f"{elapsed_ms}ms"},
    )


@router.get("/webhook")
async def verify_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
):
    """Webhook verification (Meta uses GET challenge, Twilio skips this)."""
    challenge = await get_provider().verify_webhook(hub_mode, hub_verify_token, hub_challenge)
    if challenge:
        return Response(content=challenge, media_type="text/plain")
    return Response(status_code=403)


@router.post("/webhook")
async def receive_message(request: Request):
    """Receive WhatsApp messages and delivery statuses from either Meta or Twilio.

    Always acknowledges with 200 so the provider does not redeliver; failures are
    reported in the JSON body. Only a rejected signature answers 401.
    """
    started = time.perf_counter()
    request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
    settings = get_settings()
    provider = get_provider()
    result = ChatProcessingResult()

    body = await request.body()
    try:
        verified = check_signature(
            provider.signature_verifier(),
            settings.signature_policy,
            body,
            request.headers,
            url=str(request.url),
            params=provider.signature_params(body),
        )
    except SignatureError as e:
        logger.warning("[%s] Rejected WhatsApp webhook: %s", request_id, e)
        result.errors.append(f"signature: {e}")
        return _respond(result, request_id, started, status_code=401)
    except MalformedPayloadError as e:
        result.errors.append(f"malformed payload: {e}")
        return _respond(result, request_id, started)

    if not verified:
        result.errors.append("signature verification failed; payload ignored")
        return _respond(result, request_id, started)

    try:
        batch = provider.parse_webhook(body)
    except MalformedPayloadError as e:
        logger.warning("[%s] Malformed WhatsApp payload: %s", request_id, e)
        result.errors.append(f"malformed payload: {e}")
        return _respond(result, request_id, started)

    try:
        store = await get_store()
        result = await ChatMessageProcessor(store, provider=provider).handle(batch)
    except Exception as e:
        logger.exception("[%s] WhatsApp webhook failed: %s", request_id, e)
        result.errors.append(f"internal error: {e}")

    return _respond(result, request_id, started)
