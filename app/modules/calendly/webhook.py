import logging
import time
from uuid import uuid4

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from app.config import get_settings
from app.database import get_store
from app.models.events import MalformedPayloadError
from app.modules.calendly.parser import parse_webhook
from app.modules.calendly.processor import MeetingEventProcessor, MeetingProcessingResult
from app.modules.security.signatures import CalendlyVerifier, SignatureError, check_signature

router = APIRouter()
logger = logging.getLogger(__name__)


def _respond(result: MeetingProcessingResult, request_id: str, started: float, status_code: int = 200) -> JSONResponse:
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        "[%s] Calendly webhook %s done in %dms: status=%d updates=%d notifications=%d errors=%d",
        request_id, result.event_processed, elapsed_ms, status_code,
        result.lead_updates, result.notifications_sent, len(result.errors),
    )
    return JSONResponse(
        {**result.to_dict(), "request_id": request_id, "processing_time_ms": elapsed_ms},
        status_code=status_code,
        headers={"X-Request-ID": request_id, "X-Processing-Time": f"{elapsed_ms}ms"},
    )


@router.get("/webhook")
async def health():
    return PlainTextResponse("Calendly webhook endpoint is healthy")


@router.post("/webhook")
async def receive_event(request: Request):
    """Calendly booking callbacks.

    400 for bodies that cannot be parsed (Calendly does not redeliver those),
    401 for rejected signatures, 200 with a structured result otherwise.
    """
    started = time.perf_counter()
    request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
    settings = get_settings()
    result = MeetingProcessingResult()

    body = await request.body()
    verifier = CalendlyVerifier(settings.calendly_webhook_secret, settings.calendly_signature_tolerance_seconds)
    try:
        verified = check_signature(verifier, settings.signature_policy, body, request.headers)
    except SignatureError as e:
        logger.warning("[%s] Rejected Calendly webhook: %s", request_id, e)
        result.errors.append(f"signature: {e}")
        return _respond(result, request_id, started, status_code=401)
    if not verified:
        result.errors.append("signature verification failed; payload ignored")
        return _respond(result, request_id, started)

    try:
        webhook = parse_webhook(body)
    except MalformedPayloadError as e:
        logger.warning("[%s] Malformed Calendly payload: %s", request_id, e)
        result.errors.append(f"malformed payload: {e}")
        return _respond(result, request_id, started, status_code=400)

    try:
        store = await get_store()
        result = await MeetingEventProcessor(store).handle(webhook)
    except Exception as e:
        logger.exception("[%s] Calendly webhook failed: %s", request_id, e)
        result.event_processed = webhook.event_name
        result.errors.append(f"internal error: {e}")

    return _respond(result, request_id, started)
