"""Request-level authorization.

Every request passes through :class:`AuthorizationGate` before routing. The
gate is the only code that reads the access token; handlers see the caller
exclusively through ``request.state.identity``, an immutable
:class:`~tenantauth.service.auth.AuthContext`. Identity headers sent by the
client (``X-User-Id`` and friends) are never consulted.

An API request carrying a token that fails verification is passed through
with ``identity`` unset so the handler dependency produces the same 401 every
route produces. Clients key their refresh logic off that response.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import RedirectResponse

from tenantauth.api.error_handling import _error_response, service_unavailable_response
from tenantauth.config import Settings
from tenantauth.logging import bound_session, get_logger
from tenantauth.service.auth import AuthContext
from tenantauth.service.errors import ConfigurationError
from tenantauth.service.runtime import Runtime, get_runtime
from tenantauth.service.tokens import AccessClaims, TokenError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RouteRules:
    public_paths: frozenset = frozenset(
        {
            "/api/auth/login",
            "/api/auth/logout",
            "/api/auth/refresh-token",
            "/api/auth/refresh-token/logout",
            "/healthz",
        }
    )
    login_paths: frozenset = frozenset({"/login"})
    admin_prefixes: tuple = ("/admin", "/api/admin")
    api_prefix: str = "/api/"
    static_prefixes: tuple = ("/static/", "/assets/", "/favicon.ico", "/robots.txt")

    def is_static(self, path: str) -> bool:
        return path.startswith(self.static_prefixes)

    def is_public(self, path: str) -> bool:
        return path in self.public_paths

    def is_login(self, path: str) -> bool:
        return path in self.login_paths

    def is_admin(self, path: str) -> bool:
        return any(path == p or path.startswith(p + "/") for p in self.admin_prefixes)

    def is_api(self, path: str) -> bool:
        return path.startswith(self.api_prefix)


def _extract_bearer(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthorizationGate:
    def __init__(
        self,
        rules: Optional[RouteRules] = None,
        runtime_provider: Callable[[], Runtime] = get_runtime,
    ) -> None:
        self.rules = rules or RouteRules()
        self._runtime_provider = runtime_provider

    def _token_from(self, request: Request, settings: Settings) -> Optional[str]:
        return request.cookies.get(settings.access_cookie_name) or _extract_bearer(
            request.headers.get("Authorization")
        )

    def _unauthenticated(self, request: Request, settings: Settings):
        path = request.url.path
        if self.rules.is_api(path):
            return _error_response(401, "authentication required", code="unauthorized")
        target = f"{settings.login_path}?next={quote(path, safe='/')}"
        return RedirectResponse(target, status_code=303)

    async def __call__(self, request: Request, call_next):
        path = request.url.path
        request.state.identity = None
        request.state.auth_failure = None
        if self.rules.is_static(path) or self.rules.is_public(path):
            return await call_next(request)

        try:
            runtime = self._runtime_provider()
        except ConfigurationError as exc:
            logger.error("gate_configuration_error", path=path, message=exc.message)
            return service_unavailable_response()
        settings = runtime.settings

        token = self._token_from(request, settings)
        claims: Optional[AccessClaims] = None
        if token:
            try:
                claims = runtime.codec.verify(token)
            except TokenError as exc:
                request.state.auth_failure = exc.reason
                logger.info("gate_token_rejected", path=path, reason=exc.reason)

        if self.rules.is_login(path):
            if claims is not None:
                return RedirectResponse(settings.landing_path, status_code=303)
            return await call_next(request)

        if claims is None:
            if token and self.rules.is_api(path):
                return await call_next(request)
            return self._unauthenticated(request, settings)

        identity = AuthContext.from_claims(claims)
        requested_tenant = request.headers.get("X-Tenant-ID")
        if requested_tenant and requested_tenant != identity.tenant_id:
            logger.warning(
                "gate_tenant_mismatch",
                path=path,
                user_id=identity.user_id,
                tenant_id=identity.tenant_id,
            )
            return _error_response(403, "tenant mismatch", code="forbidden")
        if self.rules.is_admin(path) and not identity.is_admin:
            logger.warning("gate_admin_required", path=path, user_id=identity.user_id)
            return _error_response(403, "administrator role required", code="forbidden")

        request.state.identity = identity
        with bound_session(identity.user_id, identity.tenant_id):
            return await call_next(request)
