"""Per-vendor OAuth provider adapters.

Each adapter knows how to build its authorization URL, how to shape the token request,
and how to turn user-info payloads into an ``ExternalIdentity``.

``email_verified`` is only ``True`` when the provider explicitly vouches for the address.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type
from urllib.parse import urlencode

from core.auth.settings import OAuthProviderSettings

FetchJson = Callable[[str, Mapping[str, str]], Any]


@dataclass(frozen=True)
class ExternalIdentity:
    provider: str
    subject_id: str
    email: Optional[str]
    display_name: Optional[str]
    email_verified: bool = False


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


class OAuthProvider:
    name = "generic"

    def __init__(self, config: OAuthProviderSettings):
        self.config = config

    @property
    def configured(self) -> bool:
        return self.config.configured

    def build_authorization_url(self, redirect_uri: str, state: str) -> str:
        params: Dict[str, str] = {
            "client_id": self.config.client_id or "",
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "state": state,
        }
        params.update(self.config.extra_auth_params)
        return f"{self.config.auth_endpoint}?{urlencode(params)}"

    def token_request(self, code: str, redirect_uri: str) -> Dict[str, str]:
        return {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.config.client_id or "",
            "client_secret": self.config.client_secret or "",
        }

    def api_headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    def fetch_identity(self, fetch_json: FetchJson, access_token: str) -> ExternalIdentity:
        userinfo = fetch_json(self.config.userinfo_endpoint, self.api_headers(access_token)) or {}
        return self.parse_userinfo(userinfo)

    def parse_userinfo(self, userinfo: Mapping[str, Any]) -> ExternalIdentity:
        raise NotImplementedError


class GoogleProvider(OAuthProvider):
    name = "google"

    def parse_userinfo(self, userinfo: Mapping[str, Any]) -> ExternalIdentity:
        return ExternalIdentity(
            provider=self.name,
            subject_id=_text(userinfo.get("id") or userinfo.get("sub")) or "",
            email=_text(userinfo.get("email")),
            display_name=_text(userinfo.get("name")),
            email_verified=_flag(userinfo.get("verified_email", userinfo.get("email_verified"))),
        )


class GitHubProvider(OAuthProvider):
    """``/user`` says nothing about verification, so ``/user/emails`` is always consulted when configured."""

    name = "github"

    def fetch_identity(self, fetch_json: FetchJson, access_token: str) -> ExternalIdentity:
        headers = self.api_headers(access_token)
        identity = self.parse_userinfo(fetch_json(self.config.userinfo_endpoint, headers) or {})
        if not self.config.email_endpoint:
            return identity
        emails = fetch_json(self.config.email_endpoint, headers) or []
        entries = emails if isinstance(emails, list) else []
        if identity.email:
            email, verified = identity.email, self.is_verified(entries, identity.email)
        else:
            email, verified = self.pick_email(entries)
        return ExternalIdentity(
            provider=self.name,
            subject_id=identity.subject_id,
            email=email,
            display_name=identity.display_name,
            email_verified=verified,
        )

    @staticmethod
    def _entries(entries: List[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
        return [entry for entry in entries if isinstance(entry, Mapping) and _text(entry.get("email"))]

    @classmethod
    def pick_email(cls, entries: List[Mapping[str, Any]]) -> Tuple[Optional[str], bool]:
        candidates = cls._entries(entries)
        if not candidates:
            return None, False
        ranked = sorted(candidates, key=lambda entry: (not entry.get("primary"), not _flag(entry.get("verified"))))
        chosen = ranked[0]
        return _text(chosen.get("email")), _flag(chosen.get("verified"))

    @classmethod
    def is_verified(cls, entries: List[Mapping[str, Any]], email: str) -> bool:
        wanted = email.strip().lower()
        return any(
            _flag(entry.get("verified"))
            for entry in cls._entries(entries)
            if (_text(entry.get("email")) or "").lower() == wanted
        )

    def parse_userinfo(self, userinfo: Mapping[str, Any]) -> ExternalIdentity:
        return ExternalIdentity(
            provider=self.name,
            subject_id=_text(userinfo.get("id")) or "",
            email=_text(userinfo.get("email")),
            display_name=_text(userinfo.get("name") or userinfo.get("login")),
        )


class MicrosoftProvider(OAuthProvider):
    """Graph's ``mail``/``userPrincipalName`` are tenant-controlled; only ``xms_edov`` vouches for them."""

    name = "microsoft"

    def parse_userinfo(self, userinfo: Mapping[str, Any]) -> ExternalIdentity:
        return ExternalIdentity(
            provider=self.name,
            subject_id=_text(userinfo.get("id")) or "",
            email=_text(userinfo.get("mail") or userinfo.get("userPrincipalName")),
            display_name=_text(userinfo.get("displayName")),
            email_verified=_flag(userinfo.get("xms_edov")),
        )


PROVIDER_CLASSES: Dict[str, Type[OAuthProvider]] = {
    GoogleProvider.name: GoogleProvider,
    GitHubProvider.name: GitHubProvider,
    MicrosoftProvider.name: MicrosoftProvider,
}


def build_provider(config: OAuthProviderSettings) -> OAuthProvider:
    provider_cls = PROVIDER_CLASSES.get(config.name)
    if provider_cls is None:
        raise KeyError(config.name)
    return provider_cls(config)


__all__ = [
    "ExternalIdentity",
    "GitHubProvider",
    "GoogleProvider",
    "MicrosoftProvider",
    "OAuthProvider",
    "PROVIDER_CLASSES",
    "build_provider",
]
