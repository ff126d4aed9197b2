from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from typing import Any, Protocol

import httpx
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from pushsched.core.config import get_settings
from pushsched.core.errors import DeliveryAuthError, DeliveryError, StartupConfigError
from pushsched.domain.models import Notification
from pushsched.providers.delivery.base import DeliveryResult
from pushsched.services.resilience import RetryPolicy, default_retry_policy, is_transient, retry_async
from pushsched.services.telemetry import record_delivery_call


logger = logging.getLogger(__name__)

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
_INTEGRATION = "delivery.fcm"
_FCM_ERROR_TYPE = "type.googleapis.com/google.firebase.fcm.v1.FcmError"


class AccessTokenProvider(Protocol):
    async def token(self) -> str:
        ...


class FcmResponseError(DeliveryError):
    """FCM rejected a send request."""

    def __init__(self, status_code: int, reason: str) -> None:
        super().__init__(f"FCM send failed ({status_code}): {reason}")
        self.status_code = status_code
        self.reason = reason


def load_firebase_credentials(raw: str | None) -> service_account.Credentials:
    """Load service-account credentials from a file path or an inline JSON document.

    Local deployments point ``FIREBASE_CREDENTIALS`` at a key file; hosted
    deployments inject the JSON itself. Anything else is a fatal startup error.
    """
    value = (raw or "").strip()
    if not value:
        raise StartupConfigError("FIREBASE_CREDENTIALS environment variable is not set.")
    try:
        if os.path.isfile(value):
            credentials = service_account.Credentials.from_service_account_file(value, scopes=[FCM_SCOPE])
            logger.info("firebase_credentials_loaded source=file path=%s", value)
        else:
            info = json.loads(value)
            if not isinstance(info, dict):
                raise ValueError("service-account JSON must be an object")
            credentials = service_account.Credentials.from_service_account_info(info, scopes=[FCM_SCOPE])
            logger.info("firebase_credentials_loaded source=env_json")
    except (ValueError, KeyError, OSError) as exc:
        raise StartupConfigError(
            "FIREBASE_CREDENTIALS is neither a readable service-account file nor valid service-account JSON."
        ) from exc
    return credentials


class ServiceAccountTokenProvider:
    def __init__(self, credentials: service_account.Credentials) -> None:
        self._credentials = credentials
        # Serialize refreshes so concurrent callers do not hit the token endpoint twice.
        self._lock = asyncio.Lock()

    @property
    def project_id(self) -> str | None:
        return getattr(self._credentials, "project_id", None)

    async def token(self) -> str:
        async with self._lock:
            if not self._credentials.valid:
                try:
                    # google-auth refresh is blocking; keep it off the event loop.
                    await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
                except (RefreshError, TransportError) as exc:
                    raise DeliveryAuthError("Firebase access token refresh failed.") from exc
            return str(self._credentials.token)


def _stringify_data(data: dict[str, Any]) -> dict[str, str]:
    # FCM data messages only accept string values.
    return {str(key): value if isinstance(value, str) else json.dumps(value) for key, value in data.items()}


def build_fcm_message(notification: Notification) -> dict[str, Any]:
    recipient = (notification.recipient or "").strip()
    if not recipient:
        raise ValueError("recipient device token is empty")
    payload = notification.payload_json or {}
    message: dict[str, Any] = {"token": recipient}
    display = {key: str(payload[key]) for key in ("title", "body") if payload.get(key) is not None}
    if display:
        message["notification"] = display
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError("payload.data must be an object")
    if data:
        message["data"] = _stringify_data(data)
    return {"message": message}


def _response_error_reason(response: httpx.Response) -> str:
    # Prefer the FCM-specific error code (UNREGISTERED, QUOTA_EXCEEDED, ...) over the generic status.
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        for detail in error.get("details") or []:
            if isinstance(detail, dict) and detail.get("@type") == _FCM_ERROR_TYPE and detail.get("errorCode"):
                return str(detail["errorCode"])
        if error.get("status"):
            return str(error["status"])
    return f"http_{int(response.status_code)}"


def _retryable(exc: Exception) -> bool:
    # httpx transport errors are not OSError subclasses, so name them explicitly.
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)) or is_transient(exc)


class FcmDeliveryChannel:
    def __init__(
        self,
        *,
        project_id: str,
        token_provider: AccessTokenProvider,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = get_settings()
        self._project_id = project_id
        self._token_provider = token_provider
        self._client = client
        self._base_url = (base_url or self._settings.fcm_base_url).rstrip("/")
        self._retry_policy = retry_policy or default_retry_policy()

    @property
    def send_url(self) -> str:
        return f"{self._base_url}/v1/projects/{self._project_id}/messages:send"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client for connection pooling across ticks.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def verify(self) -> None:
        # Acquire one access token at startup so bad credentials stop the process before it serves.
        try:
            await self._token_provider.token()
        except DeliveryAuthError as exc:
            raise StartupConfigError("Firebase initialization failed: could not acquire an access token.") from exc
        logger.info("firebase_initialized project_id=%s", self._project_id)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, notification: Notification) -> DeliveryResult:
        try:
            body = build_fcm_message(notification)
        except ValueError as exc:
            return DeliveryResult.failed(f"invalid_message: {exc}")

        client = self._get_client()
        start = time.monotonic()

        async def _call() -> httpx.Response:
            token = await self._token_provider.token()
            response = await client.post(
                self.send_url,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
            if response.status_code >= 400:
                raise FcmResponseError(response.status_code, _response_error_reason(response))
            return response

        try:
            response = await retry_async(
                _call,
                integration=_INTEGRATION,
                policy=self._retry_policy,
                retryable=_retryable,
            )
        except FcmResponseError as exc:
            self._record(start, success=False)
            if exc.status_code in {401, 403}:
                return DeliveryResult.failed(f"auth_error: {exc.reason}")
            return DeliveryResult.failed(exc.reason)
        except DeliveryAuthError as exc:
            self._record(start, success=False)
            return DeliveryResult.failed(f"auth_error: {exc}")
        except (httpx.HTTPError, TimeoutError) as exc:
            self._record(start, success=False)
            return DeliveryResult.failed(f"transport_error: {type(exc).__name__}")

        self._record(start, success=True)
        # FCM already accepted the message; an odd body must not turn that into a failure.
        try:
            body = response.json()
        except ValueError:
            body = None
        message_name = body.get("name") if isinstance(body, dict) else None
        return DeliveryResult.ok(provider_message_id=message_name)

    def _record(self, start: float, *, success: bool) -> None:
        record_delivery_call(
            _INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
