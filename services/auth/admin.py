"""Administrator and owner actions on accounts and their identifiers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from core.auth.constants import CUSTOMER_ROLES, AccountType
from core.logging import get_logger, mask_email, mask_identifier
from models.account import Account
from models.identifier import AccountIdentifier
from models.tenancy import Customer, CustomerMember, Organization, OrganizationMember
from services.auth.common import (
    AuthServiceError,
    RequestContext,
    atomic,
    coerce_uuid,
    normalize_email,
    record_auth_event,
    utcnow,
)
from services.auth.identity_resolver import IdentityResolver, InboundResolution
from services.auth.session_issuer import SessionRevocationStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class IdentifierView:
    id: int
    identifier_type: str
    masked_value: str
    status: str
    verified_at: Optional[datetime]
    revoked_at: Optional[datetime]
    is_primary: bool = False


@dataclass(frozen=True)
class LinkedAccountView:
    identifier_id: int
    provider: str
    masked_subject: str
    linked_at: Optional[datetime]


def _load_account(session, account_id, *, lock: bool = False) -> Account:
    query = select(Account).where(Account.id == coerce_uuid(account_id, field="accountId"))
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    account = session.execute(query).scalar_one_or_none()
    if account is None:
        raise AuthServiceError.of("NotFound", "Account not found.", code="auth.account_not_found")
    return account


def _load_identifier(session, identifier_id: int) -> AccountIdentifier:
    identifier = session.execute(
        select(AccountIdentifier)
        .where(AccountIdentifier.id == identifier_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if identifier is None:
        raise AuthServiceError.of("NotFound", "Identifier not found.", code="auth.identifier_not_found")
    return identifier


def _is_primary_email(identifier: AccountIdentifier, account: Account) -> bool:
    return identifier.identifier_type == "email" and identifier.value == account.primary_email


def list_identifiers(session, account_id) -> List[IdentifierView]:
    account = _load_account(session, account_id)
    rows = session.execute(
        select(AccountIdentifier)
        .where(AccountIdentifier.account_id == account.id)
        .order_by(AccountIdentifier.id)
    ).scalars().all()
    return [
        IdentifierView(
            id=row.id,
            identifier_type=row.identifier_type,
            masked_value=mask_identifier(row.identifier_type, row.value),
            status=row.status,
            verified_at=row.verified_at,
            revoked_at=row.revoked_at,
            is_primary=_is_primary_email(row, account),
        )
        for row in rows
    ]


def revoke_identifier(
    session,
    *,
    account_id,
    identifier_id: int,
    actor_id,
    reason: Optional[str] = None,
    as_admin: bool = False,
    context: Optional[RequestContext] = None,
) -> IdentifierView:
    """Owners revoke their own identifiers; the primary email can only move via ``change_primary_email``."""
    now = utcnow()
    with atomic(session):
        identifier = _load_identifier(session, identifier_id)
        account = _load_account(session, identifier.account_id)
        if not as_admin and identifier.account_id != coerce_uuid(account_id, field="accountId"):
            raise AuthServiceError.of("NotFound", "Identifier not found.", code="auth.identifier_not_found")
        if _is_primary_email(identifier, account) and identifier.status != "revoked":
            raise AuthServiceError.of(
                "Forbidden",
                "The primary email cannot be revoked. An administrator must change it.",
                code="auth.primary_email_immutable",
            )
        if identifier.status != "revoked":
            identifier.status = "revoked"
            identifier.revoked_at = now
            identifier.revoked_by = coerce_uuid(actor_id, field="actorId")
            identifier.revoked_reason = (reason or "revoked")[:255]
            record_auth_event(
                session,
                event_type="identifier.revoked",
                account_id=account.id,
                channel=identifier.identifier_type,
                context=context,
                metadata={"identifierId": identifier.id, "byAdmin": as_admin},
            )
    logger.info(
        "Identifier %s (%s) revoked on account %s.",
        identifier.id,
        mask_identifier(identifier.identifier_type, identifier.value),
        account.id,
    )
    return IdentifierView(
        id=identifier.id,
        identifier_type=identifier.identifier_type,
        masked_value=mask_identifier(identifier.identifier_type, identifier.value),
        status=identifier.status,
        verified_at=identifier.verified_at,
        revoked_at=identifier.revoked_at,
    )


def _linked_subjects(session, account_id, *, lock: bool = False) -> List[AccountIdentifier]:
    query = (
        select(AccountIdentifier)
        .where(
            AccountIdentifier.account_id == account_id,
            AccountIdentifier.identifier_type == "oauth_subject",
            AccountIdentifier.status == "verified",
        )
        .order_by(AccountIdentifier.id)
    )
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    return list(session.execute(query).scalars().all())


def list_linked_accounts(session, account_id) -> List[LinkedAccountView]:
    account = _load_account(session, account_id)
    views = []
    for row in _linked_subjects(session, account.id):
        provider, _, subject = row.value.partition(":")
        views.append(
            LinkedAccountView(
                identifier_id=row.id,
                provider=provider,
                masked_subject=mask_identifier("oauth_subject", subject),
                linked_at=row.verified_at,
            )
        )
    return views


def unlink_provider(
    session,
    *,
    account_id,
    provider: str,
    context: Optional[RequestContext] = None,
) -> int:
    """Revoke the account's sign-ins through ``provider``, keeping at least one way back in."""
    name = (provider or "").strip().lower()
    now = utcnow()
    with atomic(session):
        account = _load_account(session, account_id, lock=True)
        subjects = _linked_subjects(session, account.id, lock=True)
        targets = [row for row in subjects if row.value.startswith(f"{name}:")]
        if not targets:
            raise AuthServiceError.of("NotFound", f"No {name} sign-in is linked.", code="auth.identifier_not_found")
        if not account.password_hash and len(targets) == len(subjects):
            raise AuthServiceError.of(
                "Conflict",
                "This is your only way to sign in. Set a password or link another provider first.",
                code="auth.last_sign_in_method",
            )
        for row in targets:
            row.status = "revoked"
            row.revoked_at = now
            row.revoked_by = account.id
            row.revoked_reason = "unlinked"
        record_auth_event(
            session,
            event_type="oauth.unlinked",
            account_id=account.id,
            channel=name,
            context=context,
            metadata={"identifierIds": [row.id for row in targets]},
        )
    logger.info("Account %s unlinked its %s sign-in.", account.id, name)
    return len(targets)


def admin_verify_identifier(
    session,
    *,
    identifier_id: int,
    actor_id,
    context: Optional[RequestContext] = None,
) -> IdentifierView:
    now = utcnow()
    with atomic(session):
        identifier = _load_identifier(session, identifier_id)
        account = _load_account(session, identifier.account_id)
        if identifier.status != "verified":
            owner = session.execute(
                select(AccountIdentifier)
                .where(
                    AccountIdentifier.identifier_type == identifier.identifier_type,
                    AccountIdentifier.value == identifier.value,
                    AccountIdentifier.status == "verified",
                )
                .with_for_update()
            ).scalar_one_or_none()
            if owner is not None:
                raise AuthServiceError.of(
                    "Conflict",
                    "This identifier is already verified on another account.",
                    code="auth.identifier_conflict",
                )
            identifier.status = "verified"
            identifier.verified_at = now
            identifier.verified_by = coerce_uuid(actor_id, field="actorId")
            identifier.revoked_at = None
            identifier.revoked_by = None
            identifier.revoked_reason = None
            if _is_primary_email(identifier, account):
                account.email_verified_at = now
            record_auth_event(
                session,
                event_type="identifier.admin_verified",
                account_id=account.id,
                channel=identifier.identifier_type,
                context=context,
                metadata={"identifierId": identifier.id, "actorId": str(actor_id)},
            )
    return IdentifierView(
        id=identifier.id,
        identifier_type=identifier.identifier_type,
        masked_value=mask_identifier(identifier.identifier_type, identifier.value),
        status=identifier.status,
        verified_at=identifier.verified_at,
        revoked_at=identifier.revoked_at,
        is_primary=_is_primary_email(identifier, account),
    )


def change_primary_email(
    session,
    *,
    account_id,
    new_email: str,
    actor_id,
    context: Optional[RequestContext] = None,
) -> Account:
    """Swap the primary email; the new address starts unverified."""
    normalized = normalize_email(new_email)
    now = utcnow()
    with atomic(session):
        account = _load_account(session, account_id, lock=True)
        if account.primary_email == normalized:
            raise AuthServiceError.of("InvalidInput", "That is already the primary email.", code="auth.email_unchanged")
        clash = session.execute(select(Account.id).where(Account.primary_email == normalized)).scalar_one_or_none()
        verified_elsewhere = session.execute(
            select(AccountIdentifier.account_id).where(
                AccountIdentifier.identifier_type == "email",
                AccountIdentifier.value == normalized,
                AccountIdentifier.status == "verified",
                AccountIdentifier.account_id != account.id,
            )
        ).scalar_one_or_none()
        if clash is not None or verified_elsewhere is not None:
            raise AuthServiceError.of("Conflict", "That email belongs to another account.", code="auth.email_conflict")

        previous = account.primary_email
        for row in session.execute(
            select(AccountIdentifier).where(
                AccountIdentifier.account_id == account.id,
                AccountIdentifier.identifier_type == "email",
                AccountIdentifier.value == previous,
                AccountIdentifier.status != "revoked",
            )
        ).scalars():
            row.status = "revoked"
            row.revoked_at = now
            row.revoked_by = coerce_uuid(actor_id, field="actorId")
            row.revoked_reason = "primary_email_changed"
        account.primary_email = normalized
        account.email_verified_at = None
        session.add(AccountIdentifier(account_id=account.id, identifier_type="email", value=normalized, status="pending"))
        record_auth_event(
            session,
            event_type="account.email_changed",
            account_id=account.id,
            channel="admin",
            context=context,
            metadata={"from": mask_email(previous), "to": mask_email(normalized), "actorId": str(actor_id)},
        )
    logger.info("Primary email of account %s changed by %s.", account.id, actor_id)
    return account


def approve_account(
    session,
    *,
    account_id,
    actor_id,
    account_type: AccountType,
    organization_id=None,
    customer_id=None,
    role: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> Account:
    """Attach the account to an organisation (company) or customer and activate it."""
    now = utcnow()
    with atomic(session):
        account = _load_account(session, account_id, lock=True)
        if account.status == "deactivated":
            raise AuthServiceError.of("Forbidden", "Deactivated accounts cannot be approved.", code="auth.account_disabled")
        if account_type == "company":
            if organization_id is None:
                raise AuthServiceError.of("InvalidInput", "organizationId is required for company accounts.")
            org_id = coerce_uuid(organization_id, field="organizationId")
            if session.get(Organization, org_id) is None:
                raise AuthServiceError.of("NotFound", "Organisation not found.")
            membership = session.get(OrganizationMember, (org_id, account.id))
            if membership is None:
                session.add(OrganizationMember(organization_id=org_id, account_id=account.id, role=role or "member", status="active"))
            else:
                membership.status = "active"
            target = {"organizationId": str(org_id)}
        elif account_type == "customer":
            if customer_id is None:
                raise AuthServiceError.of("InvalidInput", "customerId is required for customer accounts.")
            cust_id = coerce_uuid(customer_id, field="customerId")
            if session.get(Customer, cust_id) is None:
                raise AuthServiceError.of("NotFound", "Customer not found.")
            customer_role = (role or "VIEWER").upper()
            if customer_role not in CUSTOMER_ROLES:
                raise AuthServiceError.of("InvalidInput", f"Unknown customer role '{role}'.")
            other_customer = session.execute(
                select(CustomerMember.customer_id).where(
                    CustomerMember.account_id == account.id,
                    CustomerMember.customer_id != cust_id,
                    CustomerMember.status == "active",
                )
            ).first()
            if other_customer is not None:
                raise AuthServiceError.of(
                    "Conflict",
                    "Customer accounts belong to exactly one customer.",
                    code="auth.customer_membership_conflict",
                )
            membership = session.get(CustomerMember, (cust_id, account.id))
            if membership is None:
                session.add(CustomerMember(customer_id=cust_id, account_id=account.id, role=customer_role, status="active"))
            else:
                membership.role = customer_role
                membership.status = "active"
            target = {"customerId": str(cust_id)}
        else:
            raise AuthServiceError.of("InvalidInput", f"Unknown account type '{account_type}'.")

        account.account_type = account_type
        account.status = "active"
        account.approved_at = now
        account.approved_by = coerce_uuid(actor_id, field="actorId")
        record_auth_event(
            session,
            event_type="account.approved",
            account_id=account.id,
            channel="admin",
            context=context,
            metadata={"accountType": account_type, "actorId": str(actor_id), **target},
        )
    logger.info("Account %s approved as %s by %s.", account.id, account_type, actor_id)
    return account


def suspend_account(
    session,
    *,
    account_id,
    actor_id,
    reason: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> Account:
    with atomic(session):
        account = _load_account(session, account_id, lock=True)
        if account.id == coerce_uuid(actor_id, field="actorId"):
            raise AuthServiceError.of("InvalidInput", "Administrators cannot suspend themselves.")
        account.status = "suspended"
        SessionRevocationStore(session).revoke_all(account.id, reason="suspended")
        record_auth_event(
            session,
            event_type="account.suspended",
            account_id=account.id,
            channel="admin",
            context=context,
            metadata={"actorId": str(actor_id), "reason": reason or ""},
        )
    logger.info("Account %s suspended by %s.", account.id, actor_id)
    return account


def resolve_inbound(session, identifier_type, value: str) -> InboundResolution:
    return IdentityResolver(session).lookup_inbound(identifier_type, value)


__all__ = [
    "IdentifierView",
    "LinkedAccountView",
    "admin_verify_identifier",
    "approve_account",
    "change_primary_email",
    "list_identifiers",
    "list_linked_accounts",
    "resolve_inbound",
    "revoke_identifier",
    "suspend_account",
    "unlink_provider",
]
