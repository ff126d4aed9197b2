from __future__ import annotations

from datetime import datetime
import json
from pathlib import Path

import httpx
import pytest

from pushsched.core.config import get_settings
from pushsched.core.errors import DeliveryAuthError, DeliveryConfigError, StartupConfigError
from pushsched.domain.models import Notification
from pushsched.providers.delivery import fcm as fcm_module
from pushsched.providers.delivery import (
    FcmDeliveryChannel,
    LoggingDeliveryChannel,
    get_delivery_channel,
    load_firebase_credentials,
)
from pushsched.providers.delivery.fcm import build_fcm_message
from pushsched.services.resilience import RetryPolicy
from pushsched.services.telemetry import delivery_call_stats


class _StaticTokenProvider:
    def __init__(self, token: str = "token-123", *, error: Exception | None = None) -> None:
        self._token = token
        self._error = error
        self.calls = 0

    async def token(self) -> str:
        self.calls += 1
        if self._error is not None:
            raise self._error
        return self._token


class _FakeCredentials:
    def __init__(self, project_id: str | None = "from-credentials") -> None:
        self.project_id = project_id
        self.valid = True
        self.token = "cached-token"


def _notification(**overrides) -> Notification:
    values = {
        "id": "n-1",
        "recipient": "device-token-1",
        "payload_json": {"title": "Reminder", "body": "Class starts at 10:00", "data": {"count": 3, "kind": "reminder"}},
        "status": "Pending",
        "scheduled_time": datetime(2026, 3, 2, 9, 0),
    }
    values.update(overrides)
    return Notification(**values)


def _channel(handler, *, token_provider=None, max_attempts: int = 2) -> FcmDeliveryChannel:
    return FcmDeliveryChannel(
        project_id="demo-project",
        token_provider=token_provider or _StaticTokenProvider(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        base_url="https://fcm.test/",
        retry_policy=RetryPolicy(timeout_ms=1000, max_attempts=max_attempts, backoff_ms=1),
    )


def _fcm_error(status_code: int, status: str, error_code: str | None = None) -> httpx.Response:
    details = []
    if error_code:
        details.append({"@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError", "errorCode": error_code})
    return httpx.Response(
        status_code,
        json={"error": {"code": status_code, "status": status, "details": details}},
    )


def test_build_fcm_message_stringifies_data() -> None:
    body = build_fcm_message(_notification())
    assert body == {
        "message": {
            "token": "device-token-1",
            "notification": {"title": "Reminder", "body": "Class starts at 10:00"},
            "data": {"count": "3", "kind": "reminder"},
        }
    }


@pytest.mark.asyncio
async def test_send_posts_v1_message_with_bearer_token() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"name": "projects/demo-project/messages/0:123"})

    channel = _channel(handler)
    result = await channel.send(_notification())
    await channel.aclose()

    assert result.success is True
    assert result.provider_message_id == "projects/demo-project/messages/0:123"
    assert len(captured) == 1
    assert str(captured[0].url) == "https://fcm.test/v1/projects/demo-project/messages:send"
    assert captured[0].headers["Authorization"] == "Bearer token-123"
    assert json.loads(captured[0].content)["message"]["token"] == "device-token-1"
    assert delivery_call_stats("delivery.fcm")["count"] == 1


@pytest.mark.asyncio
async def test_unregistered_token_fails_without_retry() -> None:
    # Client errors are permanent for this attempt, so only one request is made.
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return _fcm_error(404, "NOT_FOUND", "UNREGISTERED")

    result = await _channel(handler).send(_notification())

    assert result.success is False
    assert result.reason == "UNREGISTERED"
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_succeed() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return _fcm_error(503, "UNAVAILABLE")
        return httpx.Response(200, json={"name": "projects/demo-project/messages/0:456"})

    result = await _channel(handler).send(_notification())

    assert result.success is True
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_persistent_server_error_reports_status_after_retries() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return _fcm_error(503, "UNAVAILABLE")

    result = await _channel(handler, max_attempts=3).send(_notification())

    assert result.success is False
    assert result.reason == "UNAVAILABLE"
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_auth_rejection_and_token_failure_are_reported_as_auth_errors() -> None:
    def forbidden(request: httpx.Request) -> httpx.Response:
        return _fcm_error(403, "PERMISSION_DENIED", "SENDER_ID_MISMATCH")

    rejected = await _channel(forbidden).send(_notification())
    assert rejected.reason == "auth_error: SENDER_ID_MISMATCH"

    def never_called(request: httpx.Request) -> httpx.Response:
        raise AssertionError("request should not be sent without a token")

    provider = _StaticTokenProvider(error=DeliveryAuthError("refresh failed"))
    no_token = await _channel(never_called, token_provider=provider).send(_notification())
    assert no_token.success is False
    assert no_token.reason.startswith("auth_error:")


@pytest.mark.asyncio
async def test_transport_failure_is_a_delivery_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await _channel(handler).send(_notification())

    assert result.success is False
    assert result.reason == "transport_error: ConnectError"


@pytest.mark.asyncio
async def test_invalid_message_is_rejected_before_any_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("invalid messages must not reach FCM")

    empty_recipient = await _channel(handler).send(_notification(recipient="  "))
    bad_data = await _channel(handler).send(_notification(payload_json={"title": "x", "data": ["not", "a", "map"]}))

    assert empty_recipient.reason.startswith("invalid_message:")
    assert bad_data.reason.startswith("invalid_message:")


@pytest.mark.asyncio
async def test_verify_turns_token_failure_into_startup_error() -> None:
    provider = _StaticTokenProvider(error=DeliveryAuthError("invalid_grant"))
    channel = _channel(lambda request: httpx.Response(200), token_provider=provider)
    with pytest.raises(StartupConfigError):
        await channel.verify()


def test_load_firebase_credentials_requires_a_value() -> None:
    with pytest.raises(StartupConfigError):
        load_firebase_credentials(None)
    with pytest.raises(StartupConfigError):
        load_firebase_credentials("   ")


def test_load_firebase_credentials_rejects_malformed_json() -> None:
    with pytest.raises(StartupConfigError):
        load_firebase_credentials("{not json")
    with pytest.raises(StartupConfigError):
        load_firebase_credentials('["a", "list"]')


def test_load_firebase_credentials_from_file_and_inline_json(monkeypatch, tmp_path: Path) -> None:
    # A path and an inline document go through different google-auth constructors.
    seen: dict[str, object] = {}

    def from_file(path, scopes=None):
        seen["file"] = (path, scopes)
        return _FakeCredentials()

    def from_info(info, scopes=None):
        seen["info"] = (info, scopes)
        return _FakeCredentials()

    monkeypatch.setattr(fcm_module.service_account.Credentials, "from_service_account_file", staticmethod(from_file))
    monkeypatch.setattr(fcm_module.service_account.Credentials, "from_service_account_info", staticmethod(from_info))

    key_path = tmp_path / "service-account.json"
    key_path.write_text(json.dumps({"type": "service_account"}), encoding="utf-8")
    load_firebase_credentials(str(key_path))
    load_firebase_credentials('{"type": "service_account", "project_id": "demo"}')

    assert seen["file"] == (str(key_path), [fcm_module.FCM_SCOPE])
    assert seen["info"] == ({"type": "service_account", "project_id": "demo"}, [fcm_module.FCM_SCOPE])


def test_get_delivery_channel_selects_by_name(monkeypatch) -> None:
    monkeypatch.setenv("DELIVERY_CHANNEL", "log")
    get_settings.cache_clear()
    assert isinstance(get_delivery_channel(), LoggingDeliveryChannel)

    monkeypatch.setenv("DELIVERY_CHANNEL", "carrier-pigeon")
    get_settings.cache_clear()
    with pytest.raises(DeliveryConfigError):
        get_delivery_channel()


def test_fcm_channel_requires_credentials(monkeypatch) -> None:
    monkeypatch.setenv("DELIVERY_CHANNEL", "fcm")
    get_settings.cache_clear()
    with pytest.raises(StartupConfigError):
        get_delivery_channel()


def test_fcm_project_id_override_wins_over_credentials(monkeypatch) -> None:
    monkeypatch.setattr(
        fcm_module.service_account.Credentials,
        "from_service_account_info",
        staticmethod(lambda info, scopes=None: _FakeCredentials()),
    )
    monkeypatch.setenv("DELIVERY_CHANNEL", "fcm")
    monkeypatch.setenv("FIREBASE_CREDENTIALS", '{"type": "service_account"}')
    get_settings.cache_clear()
    assert get_delivery_channel().send_url.endswith("/v1/projects/from-credentials/messages:send")

    monkeypatch.setenv("FIREBASE_PROJECT_ID", "override-project")
    get_settings.cache_clear()
    assert get_delivery_channel().send_url.endswith("/v1/projects/override-project/messages:send")


def test_fcm_channel_without_any_project_id_is_rejected(monkeypatch) -> None:
    monkeypatch.setattr(
        fcm_module.service_account.Credentials,
        "from_service_account_info",
        staticmethod(lambda info, scopes=None: _FakeCredentials(project_id=None)),
    )
    monkeypatch.setenv("FIREBASE_CREDENTIALS", '{"type": "service_account"}')
    get_settings.cache_clear()
    with pytest.raises(StartupConfigError):
        get_delivery_channel()


@pytest.mark.asyncio
async def test_logging_channel_always_succeeds() -> None:
    channel = LoggingDeliveryChannel()
    await channel.verify()
    result = await channel.send(_notification())
    assert result.success is True
    assert result.provider_message_id == "log:n-1"


@pytest.mark.asyncio
async def test_accepted_send_with_unexpected_body_is_still_a_success() -> None:
    # FCM accepted the message; a body that is not an object only loses the message name.
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["projects/demo-project/messages/0:789"])

    result = await _channel(handler).send(_notification())

    assert result.success is True
    assert result.provider_message_id is None
