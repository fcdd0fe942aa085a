"""Client-side authorization-code broker for third-party identity providers."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlparse

import httpx

from core.auth.settings import AuthSettings, OAuthProviderSettings, get_auth_settings
from core.logging import get_logger
from services.auth.common import AuthServiceError, utcnow
from services.auth.providers import PROVIDER_CLASSES, ExternalIdentity, OAuthProvider, build_provider

logger = get_logger(__name__)

_CONNECT_TIMEOUT_SECONDS = 5.0
_GET_ATTEMPTS = 2


@dataclass(frozen=True)
class OAuthSettings:
    providers: Mapping[str, OAuthProviderSettings]
    state_secret: str
    state_ttl_seconds: int = 600
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class AuthRedirect:
    auth_url: str
    state: str
    nonce: str
    expires_at: datetime


@dataclass(frozen=True)
class OAuthState:
    provider: str
    nonce: str
    redirect_uri: str
    expires_at: datetime


def load_oauth_settings(settings: Optional[AuthSettings] = None) -> OAuthSettings:
    settings = settings or get_auth_settings()
    return OAuthSettings(
        providers=dict(settings.oauth_providers),
        state_secret=settings.state_secret,
        state_ttl_seconds=settings.oauth_state_ttl_seconds,
        timeout_seconds=settings.oauth_http_timeout_seconds,
    )


def _provider_error(message: str, *, code: str = "auth.provider_error", status_code: int = 502) -> AuthServiceError:
    return AuthServiceError.of("ProviderError", message, code=code, status_code=status_code)


class OAuthBroker:
    """Drives ``begin_auth`` / ``complete_auth`` against the configured providers.

    ``transport`` lets callers (tests, proxies) substitute the httpx transport.
    """

    def __init__(
        self,
        settings: OAuthSettings,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self._transport = transport
        self._clock = clock

    # ---------------------------------------------------------------- lookup

    def available_providers(self) -> List[Dict[str, Any]]:
        return [
            {"name": name, "configured": config.configured}
            for name, config in sorted(self.settings.providers.items())
            if name in PROVIDER_CLASSES
        ]

    def provider(self, name: str) -> OAuthProvider:
        key = (name or "").strip().lower()
        config = self.settings.providers.get(key)
        if config is None or key not in PROVIDER_CLASSES:
            raise AuthServiceError.of("NotFound", f"Unknown OAuth provider '{name}'.", code="auth.provider_unknown")
        provider = build_provider(config)
        if not provider.configured:
            raise _provider_error(
                f"OAuth provider '{key}' is missing client credentials.",
                code="auth.provider_misconfigured",
                status_code=503,
            )
        return provider

    # ----------------------------------------------------------------- state

    def _sign(self, serialized: str) -> str:
        return hmac.new(self.settings.state_secret.encode("utf-8"), serialized.encode("utf-8"), hashlib.sha256).hexdigest()

    def _encode_state(self, payload: Mapping[str, Any]) -> str:
        serialized = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        blob = json.dumps({"p": payload, "s": self._sign(serialized)}, separators=(",", ":"), sort_keys=True)
        return base64.urlsafe_b64encode(blob.encode("utf-8")).decode("utf-8").rstrip("=")

    def decode_state(self, state: str) -> OAuthState:
        """Verify signature and expiry of a state value minted by ``begin_auth``."""
        token = (state or "").strip()
        padding = "=" * (-len(token) % 4)
        try:
            parsed = json.loads(base64.urlsafe_b64decode(token + padding).decode("utf-8"))
        except (ValueError, binascii.Error):
            raise AuthServiceError.of("InvalidInput", "The OAuth state is corrupted.", code="auth.oauth_invalid_state") from None
        if not isinstance(parsed, dict):
            raise AuthServiceError.of("InvalidInput", "The OAuth state is corrupted.", code="auth.oauth_invalid_state")
        payload = parsed.get("p") or {}
        signature = parsed.get("s")
        serialized = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        if not isinstance(signature, str) or not hmac.compare_digest(signature, self._sign(serialized)):
            raise AuthServiceError.of("InvalidInput", "The OAuth state signature is invalid.", code="auth.oauth_invalid_state")
        try:
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
            decoded = OAuthState(
                provider=str(payload["provider"]),
                nonce=str(payload["nonce"]),
                redirect_uri=str(payload["redirectUri"]),
                expires_at=expires_at,
            )
        except (KeyError, TypeError, ValueError):
            raise AuthServiceError.of("InvalidInput", "The OAuth state is incomplete.", code="auth.oauth_invalid_state") from None
        if decoded.expires_at <= self._clock():
            raise AuthServiceError.of("Expired", "The OAuth state has expired. Start again.", code="auth.oauth_state_expired")
        return decoded

    # ------------------------------------------------------------------ flow

    def begin_auth(self, provider_name: str, redirect_uri: str) -> AuthRedirect:
        provider = self.provider(provider_name)
        redirect = _validate_redirect_uri(redirect_uri)
        nonce = secrets.token_urlsafe(24)
        expires_at = self._clock() + timedelta(seconds=self.settings.state_ttl_seconds)
        state = self._encode_state(
            {
                "provider": provider.name,
                "nonce": nonce,
                "redirectUri": redirect,
                "exp": int(expires_at.timestamp()),
            }
        )
        return AuthRedirect(
            auth_url=provider.build_authorization_url(redirect, state),
            state=state,
            nonce=nonce,
            expires_at=expires_at,
        )

    def complete_auth(
        self,
        provider_name: str,
        code: str,
        state: str,
        redirect_uri: Optional[str] = None,
    ) -> ExternalIdentity:
        """Exchange ``code`` and normalise the provider's user info."""
        provider = self.provider(provider_name)
        payload = self.decode_state(state)
        if payload.provider != provider.name:
            raise AuthServiceError.of("InvalidInput", "The OAuth state belongs to another provider.", code="auth.oauth_state_mismatch")
        if redirect_uri and redirect_uri != payload.redirect_uri:
            raise AuthServiceError.of("InvalidInput", "The redirect URI does not match the original request.", code="auth.oauth_state_mismatch")
        if not (code or "").strip():
            raise AuthServiceError.of("InvalidInput", "Authorization code is required.", code="auth.oauth_missing_code")

        timeout = httpx.Timeout(self.settings.timeout_seconds, connect=_CONNECT_TIMEOUT_SECONDS)
        with httpx.Client(timeout=timeout, transport=self._transport) as client:
            access_token = self._exchange_code(client, provider, code.strip(), payload.redirect_uri)
            identity = provider.fetch_identity(lambda url, headers: self._get_json(client, provider, url, headers), access_token)

        if not identity.subject_id:
            raise _provider_error(f"{provider.name} did not return a subject identifier.")
        if not identity.email:
            raise _provider_error(
                f"{provider.name} did not share an email address for this account.",
                code="auth.provider_no_email",
                status_code=422,
            )
        logger.info("OAuth exchange completed with %s for subject %s.", provider.name, identity.subject_id)
        return ExternalIdentity(
            provider=identity.provider,
            subject_id=identity.subject_id,
            email=identity.email.strip().lower(),
            display_name=identity.display_name,
            email_verified=identity.email_verified,
        )

    def _exchange_code(self, client: httpx.Client, provider: OAuthProvider, code: str, redirect_uri: str) -> str:
        # authorization codes are single-use at the provider; never retried
        try:
            response = client.post(
                provider.config.token_endpoint,
                data=provider.token_request(code, redirect_uri),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Token exchange with %s failed: %s", provider.name, exc)
            raise _provider_error(f"Could not reach {provider.name}.") from exc
        if response.status_code >= 500:
            raise _provider_error(f"{provider.name} token endpoint returned {response.status_code}.")
        try:
            token_data = response.json()
        except ValueError:
            token_data = {}
        access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if response.status_code >= 400 or not access_token:
            reason = token_data.get("error") if isinstance(token_data, dict) else None
            logger.info("Token exchange rejected by %s (status=%s, error=%s).", provider.name, response.status_code, reason)
            raise _provider_error(
                f"{provider.name} rejected the authorization code.",
                code="auth.provider_exchange_failed",
            )
        return str(access_token)

    def _get_json(self, client: httpx.Client, provider: OAuthProvider, url: str, headers: Mapping[str, str]) -> Any:
        last_error: Optional[Exception] = None
        for attempt in range(_GET_ATTEMPTS):
            try:
                response = client.get(url, headers=dict(headers))
            except httpx.TransportError as exc:
                last_error = exc
                logger.info("GET %s attempt %d failed: %s", url, attempt + 1, exc)
                continue
            if response.status_code >= 400:
                raise _provider_error(f"{provider.name} user-info request returned {response.status_code}.")
            try:
                return response.json()
            except ValueError as exc:
                raise _provider_error(f"{provider.name} returned an unreadable user-info payload.") from exc
        raise _provider_error(f"Could not reach {provider.name}.") from last_error


def _validate_redirect_uri(redirect_uri: Optional[str]) -> str:
    value = (redirect_uri or "").strip()
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise AuthServiceError.of("InvalidInput", "redirectUri must be an absolute http(s) URL.", code="auth.invalid_redirect_uri")
    return value


def get_oauth_broker() -> OAuthBroker:
    return OAuthBroker(load_oauth_settings())


__all__ = [
    "AuthRedirect",
    "OAuthBroker",
    "OAuthSettings",
    "OAuthState",
    "get_oauth_broker",
    "load_oauth_settings",
]
