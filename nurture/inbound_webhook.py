# nurture/inbound_webhook.py
"""
Inbound SMS webhooks.

Provider payloads are reduced to (from, text) and handed to
``nurture.inbound.handle_inbound``:

    Twilio / SignalWire → form fields From, Body, To, MessageSid
    Telnyx              → JSON event, data.payload.{from.phone_number, text, to, id}

Store failures answer 503 so the provider retries; duplicate provider
message ids are acknowledged without reprocessing.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from nurture.config import settings
from nurture.datastore import Repository
from nurture.errors import StoreError, ValidationError
from nurture.inbound import handle_inbound
from nurture.runtime import get_logger
from nurture.sender import TelnyxSender

router = APIRouter()
logger = get_logger("inbound_webhook")

TWIML_OK = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
TELNYX_INBOUND_EVENTS = {"message.received"}


# === AUTHENTICATION ===
def _is_authorized(header_token: Optional[str], query_token: Optional[str]) -> bool:
    """Check if request is authorized via header or query token."""
    expected = settings().WEBHOOK_TOKEN
    if not expected:
        return True  # auth disabled
    return (header_token == expected) or (query_token == expected)


# === IDEMPOTENCY ===
class IdempotencyStore:
    """Bounded in-process memory of provider message ids already handled."""

    def __init__(self, max_size: int = 10000):
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._max_size = max_size
        self._lock = threading.Lock()

    def seen(self, msg_id: Optional[str]) -> bool:
        """Check if message ID has been seen before, mark as seen if not."""
        if not msg_id:
            return False
        key = f"inbound:msg:{msg_id}"
        with self._lock:
            if key in self._seen:
                return True
            if len(self._seen) >= self._max_size:
                # Drop the oldest 20%
                for _ in range(max(1, self._max_size // 5)):
                    self._seen.popitem(last=False)
            self._seen[key] = None
            return False

    def forget(self, msg_id: Optional[str]) -> None:
        if msg_id:
            with self._lock:
                self._seen.pop(f"inbound:msg:{msg_id}", None)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()


IDEM = IdempotencyStore()


# === DEPENDENCIES ===
def get_repository() -> Repository:
    return Repository.from_settings()


def get_transport() -> Iterator[Optional[TelnyxSender]]:
    if not settings().AGENT_ALERT_NUMBER:
        yield None
        return
    with TelnyxSender.from_settings() as sender:
        yield sender


# === BODY PARSING ===
async def _parse_body(request: Request) -> Dict[str, Any]:
    """Parse request body supporting both JSON and form data."""
    content_type = request.headers.get("content-type", "").lower()
    try:
        if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            form = await request.form()
            return {k: (v if isinstance(v, str) else str(v)) for k, v in form.items()}
        body = await request.json()
        return dict(body) if isinstance(body, dict) else {}
    except ValueError as e:
        logger.warning("⚠️ Failed to parse request body: %s", e)
        raise HTTPException(status_code=422, detail="Invalid payload")


@dataclass(frozen=True)
class InboundPayload:
    from_phone: Optional[str]
    text: Optional[str]
    to_phone: Optional[str] = None
    message_id: Optional[str] = None
    provider: str = "unknown"
    event_type: Optional[str] = None


def _phone_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("phone_number")
    if isinstance(value, list):
        return _phone_of(value[0]) if value else None
    return str(value) if value else None


def extract_inbound(payload: Dict[str, Any]) -> InboundPayload:
    """Normalize a Twilio/SignalWire form payload or a Telnyx JSON event."""
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("payload"), dict):
        msg = data["payload"]
        return InboundPayload(
            from_phone=_phone_of(msg.get("from")),
            text=msg.get("text") or msg.get("body"),
            to_phone=_phone_of(msg.get("to")),
            message_id=msg.get("id") or data.get("id"),
            provider="telnyx",
            event_type=data.get("event_type"),
        )
    return InboundPayload(
        from_phone=payload.get("From") or payload.get("from"),
        text=payload.get("Body") or payload.get("body") or payload.get("text"),
        to_phone=payload.get("To") or payload.get("to"),
        message_id=payload.get("MessageSid") or payload.get("SmsSid") or payload.get("message_id"),
        provider="twilio" if "MessageSid" in payload or "SmsSid" in payload else "generic",
    )


async def _process(request: Request, repository: Repository, transport: Optional[TelnyxSender]) -> Dict[str, Any]:
    data = await _parse_body(request)
    inbound = extract_inbound(data)

    if inbound.event_type and inbound.event_type not in TELNYX_INBOUND_EVENTS:
        return {"status": "ignored", "event_type": inbound.event_type}
    if not inbound.from_phone:
        raise HTTPException(status_code=400, detail="Missing From phone")
    if IDEM.seen(inbound.message_id):
        logger.info("Duplicate inbound %s ignored", inbound.message_id)
        return {"status": "duplicate", "message_id": inbound.message_id}

    try:
        result = await run_in_threadpool(
            handle_inbound,
            repository,
            inbound.from_phone,
            inbound.text,
            transport=transport,
            to_phone=inbound.to_phone,
            provider_message_id=inbound.message_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        IDEM.forget(inbound.message_id)
        logger.error("❌ Inbound store failure (%s): %s", inbound.provider, e)
        raise HTTPException(status_code=503, detail="Store unavailable")
    return {"status": "ok", **result.as_dict()}


def _guard(header_token: Optional[str], query_token: Optional[str]) -> None:
    if not _is_authorized(header_token, query_token):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/inbound")
async def inbound_handler(
    request: Request,
    x_webhook_token: Optional[str] = Header(None, alias="x-webhook-token"),
    token: Optional[str] = Query(None),
    repository: Repository = Depends(get_repository),
    transport: Optional[TelnyxSender] = Depends(get_transport),
):
    """Provider-agnostic inbound endpoint (JSON or form)."""
    _guard(x_webhook_token, token)
    return await _process(request, repository, transport)


@router.post("/telnyx-inbound")
async def telnyx_inbound_handler(
    request: Request,
    x_webhook_token: Optional[str] = Header(None, alias="x-webhook-token"),
    token: Optional[str] = Query(None),
    repository: Repository = Depends(get_repository),
    transport: Optional[TelnyxSender] = Depends(get_transport),
):
    _guard(x_webhook_token, token)
    return await _process(request, repository, transport)


@router.post("/twilio-inbound")
@router.post("/signalwire-inbound")
async def twiml_inbound_handler(
    request: Request,
    x_webhook_token: Optional[str] = Header(None, alias="x-webhook-token"),
    token: Optional[str] = Query(None),
    repository: Repository = Depends(get_repository),
    transport: Optional[TelnyxSender] = Depends(get_transport),
):
    """Twilio-style providers expect an (empty) TwiML document back."""
    _guard(x_webhook_token, token)
    await _process(request, repository, transport)
    return Response(content=TWIML_OK, media_type="application/xml")


__all__ = ["router", "IDEM", "IdempotencyStore", "InboundPayload", "extract_inbound", "get_repository", "get_transport"]
