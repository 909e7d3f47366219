# nurture/sender.py
"""
📡 Telnyx Sender: outbound SMS transport
- Telnyx v2 messages API (JSON body, Bearer auth)
- Non-2xx, 429 or timeout → TransportError (caller leaves the lead due)
- Dry-run mode returns a fake message id without touching the network
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from nurture.config import Settings, settings
from nurture.errors import TransportError
from nurture.runtime import get_logger

logger = get_logger("sender")

MAX_BODY_CHARS = 1600


@dataclass(frozen=True)
class SendResult:
    provider_message_id: Optional[str]
    status: Optional[str] = None
    dry_run: bool = False


# =========================
# Small helpers
# =========================
def _has_value(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _validate_payload(payload: Dict[str, Any]) -> None:
    problems: List[str] = []
    for field in ("to", "from"):
        if not _has_value(payload.get(field)):
            problems.append(f"{field} is required")
    text = payload.get("text")
    if not _has_value(text):
        problems.append("text is required")
    elif len(str(text)) > MAX_BODY_CHARS:
        problems.append(f"text exceeds {MAX_BODY_CHARS} characters")
    if problems:
        raise TransportError("Invalid Telnyx payload: " + "; ".join(problems))


def _extract_error_body(resp: httpx.Response) -> Any:
    """Parse JSON body if available; fallback to plain text."""
    try:
        return resp.json()
    except ValueError:
        return (resp.text or "").strip()


def _summarize_error_body(body: Any) -> str:
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            first = errors[0]
            return str(first.get("detail") or first.get("title") or first)
        for key in ("message", "error", "detail"):
            if _has_value(body.get(key)):
                return str(body[key])
        return str(body)
    return str(body or "")


# =========================
# Transport
# =========================
class TelnyxSender:
    """Thin Telnyx client. One instance per invocation; safe to share across sweep workers."""

    def __init__(
        self,
        api_key: Optional[str],
        from_number: Optional[str],
        *,
        messaging_profile_id: Optional[str] = None,
        api_url: str = "https://api.telnyx.com/v2/messages",
        timeout: float = 15.0,
        dry_run: bool = False,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.from_number = from_number
        self.messaging_profile_id = messaging_profile_id
        self.api_url = api_url
        self.dry_run = dry_run
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None, **kwargs: Any) -> "TelnyxSender":
        c = config or settings()
        return cls(
            c.TELNYX_API_KEY,
            c.TELNYX_FROM_NUMBER,
            messaging_profile_id=c.TELNYX_MESSAGING_PROFILE_ID,
            api_url=c.TELNYX_API_URL,
            timeout=c.TRANSPORT_TIMEOUT_SEC,
            dry_run=c.TRANSPORT_DRY_RUN,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "TelnyxSender":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _payload(self, to: str, text: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"from": self.from_number, "to": to, "text": text}
        if self.messaging_profile_id:
            payload["messaging_profile_id"] = self.messaging_profile_id
        return payload

    def send(self, to: str, text: str) -> SendResult:
        payload = self._payload(to, text)
        _validate_payload(payload)

        if self.dry_run:
            logger.info("[DRY RUN] POST %s to=%s chars=%s", self.api_url, to, len(text))
            return SendResult(f"dry_{int(time.time())}_{uuid.uuid4().hex[:8]}", "queued", dry_run=True)

        if not self.api_key:
            raise TransportError("TELNYX_API_KEY is not configured")

        try:
            resp = self._client.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"Telnyx request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Telnyx request failed: {exc}") from exc

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            raise TransportError(f"429 rate limited; retry_after={retry_after}", status_code=429, body=retry_after)
        if resp.is_error:
            body = _extract_error_body(resp)
            logger.error("Telnyx %s error body: %s", resp.status_code, body)
            summary = _summarize_error_body(body)
            message = f"Telnyx HTTP {resp.status_code}"
            if summary:
                message = f"{message}: {summary}"
            raise TransportError(message, status_code=resp.status_code, body=body)

        try:
            data = (resp.json() or {}).get("data") or {}
        except ValueError:
            data = {}
        message_id = data.get("id")
        status = None
        to_list = data.get("to")
        if isinstance(to_list, list) and to_list and isinstance(to_list[0], dict):
            status = to_list[0].get("status")
        logger.info("📤 Telnyx accepted message id=%s to=%s status=%s", message_id, to, status)
        return SendResult(message_id, status)


__all__ = ["SendResult", "TelnyxSender", "MAX_BODY_CHARS"]
