from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx

from tenantauth.client.coordinator import DEFAULT_REFRESH_TIMEOUT_SECONDS, RefreshCoordinator
from tenantauth.config import get_settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import (
    InvalidCredentialsError,
    ServiceError,
    SessionExpiredError,
    TransientIOError,
)

logger = get_logger(__name__)

LOGIN_PATH = "/api/auth/login"
REFRESH_PATH = "/api/auth/refresh-token"
LOGOUT_PATH = "/api/auth/refresh-token/logout"
ME_PATH = "/api/auth/me"

DEFAULT_IDENTITY_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 0.25


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return fallback


class SessionClient:
    """Cookie-based API client that recovers from access-token expiry.

    A 401 on any request routes through the shared :class:`RefreshCoordinator`;
    after a successful refresh the original request is replayed once. When the
    refresh fails the cookie jar is emptied and :class:`SessionExpiredError`
    tells the caller to send the user back to the login screen.
    """

    def __init__(
        self,
        base_url: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT_SECONDS,
        identity_attempts: int = DEFAULT_IDENTITY_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport)
        self.identity_attempts = max(1, identity_attempts)
        self.backoff_seconds = backoff_seconds
        self.coordinator = RefreshCoordinator(
            self._perform_refresh,
            timeout=refresh_timeout,
            on_failure=self.clear_credentials,
        )

    @classmethod
    def from_settings(cls, base_url: str, **kwargs: Any) -> "SessionClient":
        """Build a client whose refresh bound is REFRESH_TIMEOUT_SECONDS."""
        kwargs.setdefault("refresh_timeout", get_settings().refresh_timeout_seconds)
        return cls(base_url, **kwargs)

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    async def __aenter__(self) -> "SessionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def clear_credentials(self) -> None:
        self._client.cookies.clear()
        logger.info("session_credentials_cleared")

    async def _perform_refresh(self) -> bool:
        response = await self._client.post(REFRESH_PATH)
        return response.status_code == 200

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        tenant_id: Optional[str] = None,
    ) -> dict:
        payload: dict[str, Any] = {"email": email, "password": password, "rememberMe": remember_me}
        if tenant_id:
            payload["tenantId"] = tenant_id
        response = await self._client.post(LOGIN_PATH, json=payload)
        if response.status_code == 401:
            raise InvalidCredentialsError(_error_message(response, "invalid email or password"))
        if response.status_code != 200:
            raise ServiceError(
                _error_message(response, "login failed"), status_code=response.status_code
            )
        self.coordinator.reset()
        return response.json()["data"]["user"]

    async def logout(self) -> None:
        try:
            await self._client.post(LOGOUT_PATH)
        finally:
            self.clear_credentials()

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        generation = self.coordinator.generation
        response = await self._client.request(method, url, **kwargs)
        if response.status_code != 401:
            return response
        await self.coordinator.refresh(generation)
        response = await self._client.request(method, url, **kwargs)
        if response.status_code == 401:
            logger.info("session_replay_unauthorized", url=url)
            self.clear_credentials()
            raise SessionExpiredError()
        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def fetch_current_user(self) -> dict:
        """Return the signed-in user, retrying transport failures with linear backoff.

        Authorization failures are never retried here; they go through the
        refresh path inside :meth:`request`.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.identity_attempts + 1):
            try:
                response = await self.request("GET", ME_PATH)
            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "fetch_current_user_transport_error",
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
            else:
                if response.status_code == 200:
                    return response.json()["data"]
                if response.status_code != 503:
                    raise ServiceError(
                        _error_message(response, "could not load current user"),
                        status_code=response.status_code,
                    )
                logger.warning("fetch_current_user_unavailable", attempt=attempt)
            if attempt < self.identity_attempts:
                await asyncio.sleep(self.backoff_seconds * attempt)
        raise TransientIOError("identity endpoint unreachable") from last_error
