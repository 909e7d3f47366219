import json

import httpx
import pytest

from nurture.config import refresh_settings
from nurture.errors import TransportError
from nurture.sender import TelnyxSender


def _sender(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return TelnyxSender("KEY123", "+15125550111", messaging_profile_id="prof-1", client=client, **kwargs)


def test_send_posts_telnyx_payload():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"id": "msg-123", "to": [{"phone_number": "+15125550100", "status": "queued"}]}})

    result = _sender(handler).send("+15125550100", "hello there")

    assert result.provider_message_id == "msg-123"
    assert result.status == "queued"
    assert seen["url"] == "https://api.telnyx.com/v2/messages"
    assert seen["auth"] == "Bearer KEY123"
    assert seen["body"] == {
        "from": "+15125550111",
        "to": "+15125550100",
        "text": "hello there",
        "messaging_profile_id": "prof-1",
    }


def test_error_body_is_exposed():
    def handler(request):
        return httpx.Response(422, json={"errors": [{"title": "Invalid", "detail": "Invalid 'to' number"}]})

    with pytest.raises(TransportError) as exc:
        _sender(handler).send("+15125550100", "hi")

    assert exc.value.status_code == 422
    assert "Invalid 'to' number" in str(exc.value)
    assert exc.value.body["errors"][0]["title"] == "Invalid"


def test_rate_limit_is_transport_error():
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "30"})

    with pytest.raises(TransportError) as exc:
        _sender(handler).send("+15125550100", "hi")
    assert exc.value.status_code == 429
    assert exc.value.body == "30"


def test_timeout_is_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransportError) as exc:
        _sender(handler).send("+15125550100", "hi")
    assert "timed out" in str(exc.value)


def test_payload_validation():
    def handler(request):  # pragma: no cover - never reached
        raise AssertionError("should not send")

    sender = TelnyxSender("KEY", None, client=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(TransportError) as exc:
        sender.send("+15125550100", "")
    assert "from is required" in str(exc.value)
    assert "text is required" in str(exc.value)

    with pytest.raises(TransportError):
        _sender(handler).send("+15125550100", "x" * 1601)


def test_dry_run_skips_network():
    def handler(request):  # pragma: no cover - never reached
        raise AssertionError("should not send")

    result = _sender(handler, dry_run=True).send("+15125550100", "hi")
    assert result.dry_run is True
    assert result.provider_message_id.startswith("dry_")


def test_missing_api_key_fails():
    def handler(request):  # pragma: no cover - never reached
        raise AssertionError("should not send")

    sender = TelnyxSender(None, "+15125550111", client=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(TransportError):
        sender.send("+15125550100", "hi")


def test_from_settings(monkeypatch):
    monkeypatch.setenv("TELNYX_API_KEY", "envkey")
    monkeypatch.setenv("TELNYX_US_NUMBER", "+15125550111")
    monkeypatch.setenv("TELNYX_MESSAGING_PROFILE_ID", "prof-env")
    monkeypatch.setenv("TRANSPORT_DRY_RUN", "true")

    with TelnyxSender.from_settings(refresh_settings()) as sender:
        assert sender.api_key == "envkey"
        assert sender.from_number == "+15125550111"
        assert sender.messaging_profile_id == "prof-env"
        assert sender.dry_run is True
