"""Map identifiers and external identities onto accounts.

Order of resolution:
1. a verified identifier with the same type and value,
2. an account whose primary email matches (provider-verified emails only),
3. otherwise a new account in ``pending_approval`` with no memberships.

An OAuth subject that was revoked never resolves again on its own; the owner has to
sign in another way and ``link`` it explicitly.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Literal, Optional

from sqlalchemy import select

from core.auth.constants import IDENTIFIER_TYPES, IdentifierType
from core.logging import get_logger, mask_email, mask_identifier
from models.account import Account
from models.identifier import AccountIdentifier
from services.auth.common import (
    AuthServiceError,
    RequestContext,
    atomic,
    coerce_uuid,
    normalize_email,
    normalize_identifier,
    record_auth_event,
    utcnow,
)
from services.auth.providers import ExternalIdentity

logger = get_logger(__name__)

InboundStatus = Literal["unknown", "pending", "verified", "revoked"]


@dataclass(frozen=True)
class ResolvedIdentity:
    account: Account
    created: bool
    linked: bool = False


@dataclass(frozen=True)
class InboundResolution:
    status: InboundStatus
    identifier_type: str
    masked_value: str
    account_id: Optional[uuid.UUID] = None
    identifier_id: Optional[int] = None


def oauth_subject_value(provider: str, subject_id: str) -> str:
    return f"{provider}:{subject_id}"


class IdentityResolver:
    def __init__(self, session, *, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock

    def _verified_identifier(self, identifier_type: str, value: str) -> Optional[AccountIdentifier]:
        return self.session.execute(
            select(AccountIdentifier).where(
                AccountIdentifier.identifier_type == identifier_type,
                AccountIdentifier.value == value,
                AccountIdentifier.status == "verified",
            )
        ).scalar_one_or_none()

    def _is_revoked(self, identifier_type: str, value: str) -> bool:
        return (
            self.session.execute(
                select(AccountIdentifier.id)
                .where(
                    AccountIdentifier.identifier_type == identifier_type,
                    AccountIdentifier.value == value,
                    AccountIdentifier.status == "revoked",
                )
                .limit(1)
            ).first()
            is not None
        )

    def _account_by_email(self, email: str) -> Optional[Account]:
        return self.session.execute(select(Account).where(Account.primary_email == email)).scalar_one_or_none()

    def resolve(self, identifier_type: IdentifierType, value: str) -> Optional[Account]:
        """Return the owning account, or ``None`` when nothing verified matches."""
        if identifier_type not in IDENTIFIER_TYPES:
            raise AuthServiceError.of("InvalidInput", f"Unknown identifier type '{identifier_type}'.")
        normalized = normalize_identifier(identifier_type, value)
        identifier = self._verified_identifier(identifier_type, normalized)
        if identifier is not None:
            return self.session.get(Account, identifier.account_id)
        if identifier_type == "email":
            return self._account_by_email(normalized)
        return None

    def resolve_or_provision(
        self,
        identity: ExternalIdentity,
        *,
        context: Optional[RequestContext] = None,
    ) -> ResolvedIdentity:
        if not identity.subject_id:
            raise AuthServiceError.of("InvalidInput", "External identity has no subject.")
        email = normalize_email(identity.email)
        subject = oauth_subject_value(identity.provider, identity.subject_id)
        now = self.clock()

        with atomic(self.session):
            identifier = self._verified_identifier("oauth_subject", subject)
            if identifier is not None:
                account = self.session.get(Account, identifier.account_id)
                if account is None:
                    raise AuthServiceError.of("NotFound", "Linked account no longer exists.")
                return ResolvedIdentity(account=account, created=False)

            if self._is_revoked("oauth_subject", subject):
                logger.warning("Refused sign-in through revoked %s subject.", identity.provider)
                raise AuthServiceError.of(
                    "Forbidden",
                    "This sign-in method was revoked. Sign in another way and link it again.",
                    code="auth.identifier_revoked",
                )

            account = None
            email_identifier = self._verified_identifier("email", email)
            if email_identifier is not None:
                account = self.session.get(Account, email_identifier.account_id)
            if account is None:
                account = self._account_by_email(email)
            if account is not None:
                if identity.email_verified is not True:
                    raise AuthServiceError.of(
                        "Conflict",
                        "The provider has not verified this email; sign in with your existing method first.",
                        code="auth.provider_email_unverified",
                    )
                self.session.add(
                    AccountIdentifier(
                        account_id=account.id,
                        identifier_type="oauth_subject",
                        value=subject,
                        status="verified",
                        verified_at=now,
                        verified_by=account.id,
                    )
                )
                record_auth_event(
                    self.session,
                    event_type="oauth.linked",
                    account_id=account.id,
                    channel=identity.provider,
                    context=context,
                    metadata={"subject": subject},
                )
                logger.info("Linked %s subject to existing account %s.", identity.provider, account.id)
                return ResolvedIdentity(account=account, created=False, linked=True)

            account = Account(
                id=uuid.uuid4(),
                primary_email=email,
                display_name=identity.display_name,
                status="pending_approval",
                account_type="customer",
                role="user",
                signup_channel=identity.provider,
                email_verified_at=now if identity.email_verified else None,
            )
            self.session.add(account)
            self.session.flush()
            self.session.add_all(
                [
                    AccountIdentifier(
                        account_id=account.id,
                        identifier_type="oauth_subject",
                        value=subject,
                        status="verified",
                        verified_at=now,
                        verified_by=account.id,
                    ),
                    AccountIdentifier(
                        account_id=account.id,
                        identifier_type="email",
                        value=email,
                        status="pending",
                    ),
                ]
            )
            record_auth_event(
                self.session,
                event_type="account.provisioned",
                account_id=account.id,
                channel=identity.provider,
                context=context,
                metadata={"email": mask_email(email)},
            )

        logger.info("Provisioned pending account %s via %s (%s).", account.id, identity.provider, mask_email(email))
        return ResolvedIdentity(account=account, created=True)

    def link(
        self,
        account_id,
        identity: ExternalIdentity,
        *,
        context: Optional[RequestContext] = None,
    ) -> ResolvedIdentity:
        """Attach an external subject to a signed-in account, reclaiming one that was revoked."""
        if not identity.subject_id:
            raise AuthServiceError.of("InvalidInput", "External identity has no subject.")
        subject = oauth_subject_value(identity.provider, identity.subject_id)
        now = self.clock()

        with atomic(self.session):
            account = self.session.get(Account, coerce_uuid(account_id, field="accountId"))
            if account is None:
                raise AuthServiceError.of("NotFound", "Account not found.", code="auth.account_not_found")
            owner = self._verified_identifier("oauth_subject", subject)
            if owner is not None:
                if owner.account_id != account.id:
                    raise AuthServiceError.of(
                        "Conflict",
                        "This sign-in is already linked to another account.",
                        code="auth.identifier_conflict",
                    )
                return ResolvedIdentity(account=account, created=False)
            self.session.add(
                AccountIdentifier(
                    account_id=account.id,
                    identifier_type="oauth_subject",
                    value=subject,
                    status="verified",
                    verified_at=now,
                    verified_by=account.id,
                )
            )
            record_auth_event(
                self.session,
                event_type="oauth.linked",
                account_id=account.id,
                channel=identity.provider,
                context=context,
                metadata={"subject": subject, "explicit": True},
            )
        logger.info("Account %s linked a %s sign-in.", account.id, identity.provider)
        return ResolvedIdentity(account=account, created=False, linked=True)

    def lookup_inbound(self, identifier_type: IdentifierType, value: str) -> InboundResolution:
        """Status of an identifier arriving from an inbound channel (verified > pending > revoked)."""
        if identifier_type not in IDENTIFIER_TYPES:
            raise AuthServiceError.of("InvalidInput", f"Unknown identifier type '{identifier_type}'.")
        normalized = normalize_identifier(identifier_type, value)
        rows = self.session.execute(
            select(AccountIdentifier)
            .where(AccountIdentifier.identifier_type == identifier_type, AccountIdentifier.value == normalized)
            .order_by(AccountIdentifier.id.desc())
        ).scalars().all()
        masked = mask_identifier(identifier_type, normalized)
        for status in ("verified", "pending", "revoked"):
            for row in rows:
                if row.status == status:
                    return InboundResolution(
                        status=status,
                        identifier_type=identifier_type,
                        masked_value=masked,
                        account_id=row.account_id,
                        identifier_id=row.id,
                    )
        return InboundResolution(status="unknown", identifier_type=identifier_type, masked_value=masked)


def resolve_or_provision(session, identity: ExternalIdentity, **kwargs) -> ResolvedIdentity:
    return IdentityResolver(session).resolve_or_provision(identity, **kwargs)


__all__ = [
    "IdentityResolver",
    "InboundResolution",
    "ResolvedIdentity",
    "oauth_subject_value",
    "resolve_or_provision",
]
