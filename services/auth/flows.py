"""Login orchestration: first factor -> optional second factor -> scope -> session."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update

from core.logging import get_logger
from models.account import Account
from models.identifier import OAuthExchangeState
from services.auth.common import (
    AuthServiceError,
    RequestContext,
    atomic,
    from_token_error,
    record_auth_event,
    utcnow,
)
from services.auth.identity_resolver import IdentityResolver, ResolvedIdentity
from services.auth.mfa import MfaService
from services.auth.oauth_broker import AuthRedirect, OAuthBroker, get_oauth_broker
from services.auth.providers import ExternalIdentity
from services.auth.scope_resolver import EMPTY_SCOPE, PortalScope, ScopeResolver
from services.auth.session_activity import record_session
from services.auth.session_issuer import (
    MFA_TOKEN_TYPE,
    IssuedSession,
    SessionClaims,
    SessionIssuer,
    SessionRevocationStore,
)
from services.auth_tokens import AuthTokenError

logger = get_logger(__name__)

_DISABLED_STATUSES = {"suspended", "deactivated"}


@dataclass(frozen=True)
class LoginResult:
    account_id: uuid.UUID
    account_status: str
    mfa_required: bool = False
    session: Optional[IssuedSession] = None
    mfa_token: Optional[IssuedSession] = None
    scope: PortalScope = EMPTY_SCOPE
    created: bool = False


def _nonce_hash(nonce: str) -> str:
    return hashlib.sha256(nonce.encode("utf-8")).hexdigest()


def _ensure_login_allowed(account: Account) -> None:
    if account.status in _DISABLED_STATUSES:
        raise AuthServiceError.of("Forbidden", "This account is disabled.", code="auth.account_disabled")


def issue_portal_session(
    session,
    account: Account,
    *,
    view_all_customers: bool = False,
    customer_id=None,
    created: bool = False,
    channel: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> LoginResult:
    scope = ScopeResolver(session).resolve(account.id, view_all_customers=view_all_customers, customer_id=customer_id)
    issued = SessionIssuer().issue(account, scope)
    with atomic(session):
        record_session(session, account.id, issued, channel=channel, context=context)
    return LoginResult(
        account_id=account.id,
        account_status=account.status,
        session=issued,
        scope=scope,
        created=created,
    )


def complete_first_factor(
    session,
    account: Account,
    *,
    channel: str,
    context: Optional[RequestContext] = None,
    created: bool = False,
) -> LoginResult:
    """Either a full session or, with MFA on, a short-lived challenge token."""
    _ensure_login_allowed(account)
    if MfaService(session).status(account.id).enabled:
        with atomic(session):
            record_auth_event(session, event_type="login.mfa_required", account_id=account.id, channel=channel, context=context)
        return LoginResult(
            account_id=account.id,
            account_status=account.status,
            mfa_required=True,
            mfa_token=SessionIssuer().issue_mfa_token(account),
            created=created,
        )
    with atomic(session):
        record_auth_event(session, event_type="login.success", account_id=account.id, channel=channel, context=context)
    return issue_portal_session(session, account, created=created, channel=channel, context=context)


def complete_mfa_challenge(
    session,
    mfa_token: str,
    code: str,
    *,
    context: Optional[RequestContext] = None,
) -> LoginResult:
    store = SessionRevocationStore(session)
    try:
        claims = SessionIssuer(revocation_check=store.is_revoked).validate(mfa_token, expected_type=MFA_TOKEN_TYPE)
    except AuthTokenError as exc:
        raise from_token_error(exc) from exc
    account = session.get(Account, claims.subject)
    if account is None:
        raise AuthServiceError.of("Unauthenticated", "Account not found.", code="auth.account_not_found")
    _ensure_login_allowed(account)
    result = MfaService(session).verify_second_factor(account.id, code, context=context)
    with atomic(session):
        store.revoke_token(claims, reason="mfa_consumed")
        record_auth_event(
            session,
            event_type="login.success",
            account_id=account.id,
            channel=result.method,
            context=context,
        )
    return issue_portal_session(session, account, channel=result.method, context=context)


def begin_oauth(
    session,
    provider: str,
    redirect_uri: str,
    *,
    broker: Optional[OAuthBroker] = None,
) -> AuthRedirect:
    """Mint the provider redirect and persist a single-use record of its nonce."""
    broker = broker or get_oauth_broker()
    redirect = broker.begin_auth(provider, redirect_uri)
    state = broker.decode_state(redirect.state)
    with atomic(session):
        session.add(
            OAuthExchangeState(
                nonce_hash=_nonce_hash(state.nonce),
                provider=state.provider,
                redirect_uri=state.redirect_uri,
                expires_at=state.expires_at,
            )
        )
    return redirect


def _consume_exchange_state(session, nonce: str, provider: str) -> None:
    now = utcnow()
    with atomic(session):
        result = session.execute(
            update(OAuthExchangeState)
            .where(
                OAuthExchangeState.nonce_hash == _nonce_hash(nonce),
                OAuthExchangeState.provider == provider,
                OAuthExchangeState.consumed_at.is_(None),
                OAuthExchangeState.expires_at > now,
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        consumed = result.rowcount == 1
    if not consumed:
        raise AuthServiceError.of(
            "InvalidInput",
            "This sign-in attempt was already used or has expired. Start again.",
            code="auth.oauth_state_consumed",
        )


def _exchange_identity(
    session,
    broker: OAuthBroker,
    provider: str,
    code: str,
    state: str,
    redirect_uri: Optional[str],
) -> ExternalIdentity:
    if not code:
        raise AuthServiceError.of("InvalidInput", "Authorization code is required.", code="auth.oauth_missing_code")
    decoded = broker.decode_state(state)
    if decoded.provider != provider:
        raise AuthServiceError.of("InvalidInput", "The OAuth state belongs to another provider.", code="auth.oauth_state_mismatch")
    _consume_exchange_state(session, decoded.nonce, decoded.provider)
    return broker.complete_auth(provider, code, state, redirect_uri)


def complete_oauth(
    session,
    provider: str,
    code: str,
    state: str,
    *,
    redirect_uri: Optional[str] = None,
    broker: Optional[OAuthBroker] = None,
    context: Optional[RequestContext] = None,
) -> LoginResult:
    broker = broker or get_oauth_broker()
    identity = _exchange_identity(session, broker, provider, code, state, redirect_uri)
    resolved = IdentityResolver(session).resolve_or_provision(identity, context=context)
    if resolved.created:
        logger.info("First %s login created pending account %s.", provider, resolved.account.id)
    return complete_first_factor(session, resolved.account, channel=provider, context=context, created=resolved.created)


def link_oauth(
    session,
    claims: SessionClaims,
    provider: str,
    code: str,
    state: str,
    *,
    redirect_uri: Optional[str] = None,
    broker: Optional[OAuthBroker] = None,
    context: Optional[RequestContext] = None,
) -> ResolvedIdentity:
    """Link a provider sign-in to the session's account; the only way back for a revoked subject."""
    broker = broker or get_oauth_broker()
    identity = _exchange_identity(session, broker, provider, code, state, redirect_uri)
    return IdentityResolver(session).link(claims.subject, identity, context=context)


def switch_scope(
    session,
    claims: SessionClaims,
    *,
    view_all_customers: bool = False,
    customer_id=None,
) -> LoginResult:
    """Re-issue the session for a different portal view and retire the old token."""
    account = session.get(Account, claims.subject)
    if account is None:
        raise AuthServiceError.of("Unauthenticated", "Account not found.", code="auth.account_not_found")
    _ensure_login_allowed(account)
    result = issue_portal_session(
        session,
        account,
        view_all_customers=view_all_customers,
        customer_id=customer_id,
        channel="scope_switch",
    )
    with atomic(session):
        SessionRevocationStore(session).revoke_token(claims, reason="scope_switch")
    return result


def logout(session, claims: SessionClaims, *, all_devices: bool = False, context: Optional[RequestContext] = None) -> None:
    store = SessionRevocationStore(session)
    with atomic(session):
        if all_devices:
            store.revoke_all(claims.subject)
        else:
            store.revoke_token(claims)
        record_auth_event(
            session,
            event_type="logout_all" if all_devices else "logout",
            account_id=claims.subject,
            channel="session",
            context=context,
        )


__all__ = [
    "LoginResult",
    "begin_oauth",
    "complete_first_factor",
    "complete_mfa_challenge",
    "complete_oauth",
    "issue_portal_session",
    "link_oauth",
    "logout",
    "switch_scope",
]
