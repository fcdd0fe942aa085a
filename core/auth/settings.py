"""Typed configuration for the identity core, loaded once from the environment."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Mapping, Optional, Tuple

from core.auth.constants import BINDING_CODE_TTL_SECONDS, MAX_BINDING_ATTEMPTS
from core.env import env_bool, env_float, env_int, env_list, env_str
from core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OAuthProviderSettings:
    """Endpoints and client credentials for one third-party identity provider."""

    name: str
    client_id: Optional[str]
    client_secret: Optional[str]
    auth_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    email_endpoint: Optional[str] = None
    scopes: Tuple[str, ...] = ()
    extra_auth_params: Mapping[str, str] = field(default_factory=dict)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class AuthSettings:
    jwt_secret: str
    state_secret: str
    encryption_key: Optional[str]
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "portal-auth"
    jwt_audience: str = "portal"
    session_ttl_seconds: int = 8 * 60 * 60
    mfa_token_ttl_seconds: int = 5 * 60
    oauth_state_ttl_seconds: int = 10 * 60
    oauth_http_timeout_seconds: float = 10.0
    totp_issuer: str = "KIISHA"
    backup_code_count: int = 10
    binding_code_ttl_seconds: int = BINDING_CODE_TTL_SECONDS
    binding_max_attempts: int = MAX_BINDING_ATTEMPTS
    binding_channel_number: Optional[str] = None
    login_failure_limit: int = 5
    account_lock_seconds: int = 15 * 60
    password_reset_ttl_seconds: int = 30 * 60
    email_verification_ttl_seconds: int = 24 * 60 * 60
    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536
    argon2_parallelism: int = 1
    rate_limit_redis_url: Optional[str] = None
    rate_limit_prefix: str = "auth"
    rate_limits: Mapping[str, RateLimitRule] = field(default_factory=dict)
    oauth_providers: Mapping[str, OAuthProviderSettings] = field(default_factory=dict)

    def rate_limit(self, scope: str) -> RateLimitRule:
        return self.rate_limits.get(scope) or _DEFAULT_RATE_LIMITS.get(scope) or RateLimitRule(limit=10, window_seconds=300)


_DEFAULT_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "binding.request.account": RateLimitRule(limit=5, window_seconds=3600),
    "binding.request.value": RateLimitRule(limit=5, window_seconds=3600),
    "binding.verify": RateLimitRule(limit=10, window_seconds=900),
    "mfa.verify": RateLimitRule(limit=5, window_seconds=300),
    "login.email": RateLimitRule(limit=5, window_seconds=300),
    "login.ip": RateLimitRule(limit=20, window_seconds=300),
    "password_reset.email": RateLimitRule(limit=3, window_seconds=1800),
    "register.ip": RateLimitRule(limit=10, window_seconds=3600),
    "email_verification.email": RateLimitRule(limit=3, window_seconds=1800),
}

_PROVIDER_DEFAULTS: Dict[str, Dict[str, object]] = {
    "google": {
        "auth_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_endpoint": "https://oauth2.googleapis.com/token",
        "userinfo_endpoint": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scopes": ("openid", "email", "profile"),
        "extra_auth_params": {"access_type": "offline", "prompt": "consent"},
    },
    "github": {
        "auth_endpoint": "https://github.com/login/oauth/authorize",
        "token_endpoint": "https://github.com/login/oauth/access_token",
        "userinfo_endpoint": "https://api.github.com/user",
        "email_endpoint": "https://api.github.com/user/emails",
        "scopes": ("read:user", "user:email"),
    },
    "microsoft": {
        "auth_endpoint": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_endpoint": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_endpoint": "https://graph.microsoft.com/v1.0/me",
        "scopes": ("openid", "email", "profile", "User.Read"),
    },
}


def _load_provider(name: str) -> OAuthProviderSettings:
    defaults = _PROVIDER_DEFAULTS[name]
    prefix = name.upper()
    return OAuthProviderSettings(
        name=name,
        client_id=env_str(f"{prefix}_CLIENT_ID"),
        client_secret=env_str(f"{prefix}_CLIENT_SECRET"),
        auth_endpoint=env_str(f"{prefix}_AUTH_ENDPOINT") or str(defaults["auth_endpoint"]),
        token_endpoint=env_str(f"{prefix}_TOKEN_ENDPOINT") or str(defaults["token_endpoint"]),
        userinfo_endpoint=env_str(f"{prefix}_USERINFO_ENDPOINT") or str(defaults["userinfo_endpoint"]),
        email_endpoint=env_str(f"{prefix}_EMAIL_ENDPOINT") or defaults.get("email_endpoint"),  # type: ignore[arg-type]
        scopes=env_list(f"{prefix}_SCOPES", tuple(defaults["scopes"])),  # type: ignore[arg-type]
        extra_auth_params=dict(defaults.get("extra_auth_params") or {}),  # type: ignore[arg-type]
    )


def _load_rate_limits() -> Dict[str, RateLimitRule]:
    rules: Dict[str, RateLimitRule] = {}
    for scope, default in _DEFAULT_RATE_LIMITS.items():
        env_key = "AUTH_RATE_" + scope.upper().replace(".", "_")
        rules[scope] = RateLimitRule(
            limit=env_int(f"{env_key}_LIMIT", default.limit, minimum=1),
            window_seconds=env_int(f"{env_key}_WINDOW_SECONDS", default.window_seconds, minimum=1),
        )
    return rules


def load_auth_settings() -> AuthSettings:
    """Build settings from the environment; the JWT secret is mandatory."""

    jwt_secret = env_str("AUTH_JWT_SECRET") or env_str("AUTH_SECRET")
    if not jwt_secret:
        raise RuntimeError("AUTH_JWT_SECRET or AUTH_SECRET must be configured.")
    state_secret = env_str("AUTH_STATE_SECRET") or jwt_secret
    encryption_key = env_str("AUTH_ENCRYPTION_KEY")
    if not encryption_key:
        logger.warning("AUTH_ENCRYPTION_KEY is not set; MFA secrets cannot be stored.")
    providers = {name: _load_provider(name) for name in _PROVIDER_DEFAULTS}
    if not env_bool("AUTH_OAUTH_ENABLED", True):
        providers = {}
    return AuthSettings(
        jwt_secret=jwt_secret,
        state_secret=state_secret,
        encryption_key=encryption_key,
        jwt_algorithm=env_str("AUTH_JWT_ALG") or "HS256",
        jwt_issuer=env_str("AUTH_JWT_ISSUER") or "portal-auth",
        jwt_audience=env_str("AUTH_JWT_AUDIENCE") or "portal",
        session_ttl_seconds=env_int("AUTH_SESSION_TTL_SECONDS", 8 * 60 * 60, minimum=60),
        mfa_token_ttl_seconds=env_int("AUTH_MFA_TOKEN_TTL_SECONDS", 5 * 60, minimum=30),
        oauth_state_ttl_seconds=env_int("AUTH_OAUTH_STATE_TTL_SECONDS", 10 * 60, minimum=60),
        oauth_http_timeout_seconds=env_float("AUTH_OAUTH_HTTP_TIMEOUT_SECONDS", 10.0, minimum=0.5),
        totp_issuer=env_str("AUTH_TOTP_ISSUER") or "KIISHA",
        backup_code_count=env_int("AUTH_BACKUP_CODE_COUNT", 10, minimum=4),
        binding_code_ttl_seconds=env_int("AUTH_BINDING_CODE_TTL_SECONDS", BINDING_CODE_TTL_SECONDS, minimum=60),
        binding_max_attempts=env_int("AUTH_BINDING_MAX_ATTEMPTS", MAX_BINDING_ATTEMPTS, minimum=1),
        binding_channel_number=env_str("AUTH_BINDING_CHANNEL_NUMBER"),
        login_failure_limit=env_int("AUTH_LOGIN_FAILURE_LIMIT", 5, minimum=3),
        account_lock_seconds=env_int("AUTH_ACCOUNT_LOCK_SECONDS", 15 * 60, minimum=60),
        password_reset_ttl_seconds=env_int("AUTH_PASSWORD_RESET_TTL_SECONDS", 30 * 60, minimum=60),
        email_verification_ttl_seconds=env_int("AUTH_EMAIL_VERIFICATION_TTL_SECONDS", 24 * 60 * 60, minimum=300),
        argon2_time_cost=env_int("AUTH_ARGON2_TIME_COST", 3, minimum=1),
        argon2_memory_cost=env_int("AUTH_ARGON2_MEMORY_COST", 65536, minimum=8192),
        argon2_parallelism=env_int("AUTH_ARGON2_PARALLELISM", 1, minimum=1),
        rate_limit_redis_url=env_str("AUTH_RATE_LIMIT_REDIS_URL"),
        rate_limit_prefix=env_str("AUTH_RATE_LIMIT_PREFIX") or "auth",
        rate_limits=_load_rate_limits(),
        oauth_providers=providers,
    )


@lru_cache(maxsize=1)
def get_auth_settings() -> AuthSettings:
    return load_auth_settings()


__all__ = [
    "AuthSettings",
    "OAuthProviderSettings",
    "RateLimitRule",
    "get_auth_settings",
    "load_auth_settings",
]
