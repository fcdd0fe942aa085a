"""Portal scope: which organisations, customers and projects a session may act on.

Company staff see every customer of their organisations and may switch into the
consolidated ("all customers") view, which is read-only. Customer users are pinned
to a single customer. Anything not ``active`` resolves to ``EMPTY_SCOPE``, which
every check treats exactly like an anonymous caller.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Literal, Mapping, Optional, Tuple

from sqlalchemy import select

from core.auth.constants import IdentifierType
from core.logging import get_logger
from models.account import Account
from models.tenancy import Customer, CustomerMember, CustomerProjectGrant, Organization, OrganizationMember, Project
from services.auth.common import AuthServiceError, coerce_uuid
from services.auth.identity_resolver import IdentityResolver

logger = get_logger(__name__)

ScopeKind = Literal["company", "customer", "none"]


@dataclass(frozen=True)
class ProjectGrant:
    project_id: uuid.UUID
    customer_id: uuid.UUID
    access_level: str = "full"


@dataclass(frozen=True)
class PortalScope:
    account_id: Optional[uuid.UUID] = None
    kind: ScopeKind = "none"
    organization_ids: FrozenSet[uuid.UUID] = frozenset()
    customer_ids: FrozenSet[uuid.UUID] = frozenset()
    project_ids: FrozenSet[uuid.UUID] = frozenset()
    aggregate: bool = False
    active_customer_id: Optional[uuid.UUID] = None
    grants: Tuple[ProjectGrant, ...] = field(default=())

    @property
    def is_empty(self) -> bool:
        return self.kind == "none" or not (self.organization_ids or self.customer_ids)

    def grant_for(self, project_id: uuid.UUID) -> Optional[ProjectGrant]:
        for grant in self.grants:
            if grant.project_id == project_id:
                return grant
        return None

    def to_claims(self) -> Dict[str, Any]:
        """Compact JSON-safe snapshot embedded in session tokens."""
        if self.is_empty:
            return {"k": "none"}
        claims: Dict[str, Any] = {
            "k": self.kind,
            "o": sorted(str(value) for value in self.organization_ids),
            "c": sorted(str(value) for value in self.customer_ids),
            "p": sorted(str(value) for value in self.project_ids),
            "a": self.aggregate,
        }
        if self.active_customer_id:
            claims["ac"] = str(self.active_customer_id)
        if self.grants:
            claims["g"] = [[str(g.project_id), str(g.customer_id), g.access_level] for g in self.grants]
        return claims

    @classmethod
    def from_claims(cls, claims: Optional[Mapping[str, Any]], account_id: Optional[uuid.UUID]) -> "PortalScope":
        if not claims or claims.get("k") not in {"company", "customer"}:
            return EMPTY_SCOPE
        try:
            return cls(
                account_id=account_id,
                kind=claims["k"],
                organization_ids=frozenset(uuid.UUID(v) for v in claims.get("o") or []),
                customer_ids=frozenset(uuid.UUID(v) for v in claims.get("c") or []),
                project_ids=frozenset(uuid.UUID(v) for v in claims.get("p") or []),
                aggregate=bool(claims.get("a")),
                active_customer_id=uuid.UUID(claims["ac"]) if claims.get("ac") else None,
                grants=tuple(
                    ProjectGrant(project_id=uuid.UUID(p), customer_id=uuid.UUID(c), access_level=str(level))
                    for p, c, level in claims.get("g") or []
                ),
            )
        except (TypeError, ValueError):
            return EMPTY_SCOPE


EMPTY_SCOPE = PortalScope()


def _ids(values: Iterable[Any]) -> FrozenSet[uuid.UUID]:
    return frozenset(value for value in values if value is not None)


class ScopeResolver:
    def __init__(self, session):
        self.session = session

    def resolve(
        self,
        account_id,
        *,
        view_all_customers: bool = False,
        customer_id=None,
    ) -> PortalScope:
        account = self.session.get(Account, coerce_uuid(account_id, field="accountId"))
        if account is None or not account.is_active:
            return EMPTY_SCOPE
        target_customer = coerce_uuid(customer_id, field="customerId") if customer_id else None
        if account.account_type == "company":
            return self._company_scope(account, view_all_customers, target_customer)
        if view_all_customers:
            raise AuthServiceError.of(
                "Forbidden",
                "Customer accounts cannot use the consolidated view.",
                code="auth.aggregate_not_allowed",
            )
        return self._customer_scope(account, target_customer)

    def resolve_for_identifier(self, identifier_type: IdentifierType, value: str, **kwargs) -> PortalScope:
        """Scope of whoever holds a verified identifier; revoked or unknown values get nothing."""
        account = IdentityResolver(self.session).resolve(identifier_type, value)
        if account is None:
            return EMPTY_SCOPE
        return self.resolve(account.id, **kwargs)

    def _company_scope(
        self,
        account: Account,
        view_all_customers: bool,
        customer_id: Optional[uuid.UUID],
    ) -> PortalScope:
        org_ids = _ids(
            self.session.execute(
                select(OrganizationMember.organization_id)
                .join(Organization, Organization.id == OrganizationMember.organization_id)
                .where(
                    OrganizationMember.account_id == account.id,
                    OrganizationMember.status == "active",
                    Organization.status == "active",
                )
            ).scalars()
        )
        if not org_ids:
            return EMPTY_SCOPE
        customer_ids = _ids(
            self.session.execute(
                select(Customer.id).where(Customer.organization_id.in_(org_ids), Customer.status == "active")
            ).scalars()
        )
        project_ids = _ids(
            self.session.execute(
                select(Project.id).where(Project.organization_id.in_(org_ids), Project.status == "active")
            ).scalars()
        )

        if customer_id is not None and not view_all_customers:
            if customer_id not in customer_ids:
                raise AuthServiceError.of("Forbidden", "That customer is outside your organisations.")
            grants = self._grants_for(customer_id)
            return PortalScope(
                account_id=account.id,
                kind="company",
                organization_ids=org_ids,
                customer_ids=frozenset({customer_id}),
                project_ids=frozenset(g.project_id for g in grants) & project_ids,
                active_customer_id=customer_id,
                grants=grants,
            )

        return PortalScope(
            account_id=account.id,
            kind="company",
            organization_ids=org_ids,
            customer_ids=customer_ids,
            project_ids=project_ids,
            aggregate=view_all_customers,
        )

    def _customer_scope(self, account: Account, customer_id: Optional[uuid.UUID]) -> PortalScope:
        memberships = self.session.execute(
            select(CustomerMember.customer_id, Customer.organization_id)
            .join(Customer, Customer.id == CustomerMember.customer_id)
            .where(
                CustomerMember.account_id == account.id,
                CustomerMember.status == "active",
                Customer.status == "active",
            )
            .order_by(CustomerMember.created_at)
        ).all()
        if not memberships:
            return EMPTY_SCOPE
        if customer_id is None:
            chosen = memberships[0]
        else:
            chosen = next((row for row in memberships if row.customer_id == customer_id), None)
            if chosen is None:
                raise AuthServiceError.of("Forbidden", "You are not a member of that customer.")
        grants = self._grants_for(chosen.customer_id)
        return PortalScope(
            account_id=account.id,
            kind="customer",
            organization_ids=frozenset({chosen.organization_id}),
            customer_ids=frozenset({chosen.customer_id}),
            project_ids=frozenset(g.project_id for g in grants),
            active_customer_id=chosen.customer_id,
            grants=grants,
        )

    def _grants_for(self, customer_id: uuid.UUID) -> Tuple[ProjectGrant, ...]:
        rows = self.session.execute(
            select(CustomerProjectGrant.project_id, CustomerProjectGrant.access_level)
            .join(Project, Project.id == CustomerProjectGrant.project_id)
            .where(
                CustomerProjectGrant.customer_id == customer_id,
                CustomerProjectGrant.status == "active",
                Project.status == "active",
            )
            .order_by(CustomerProjectGrant.created_at)
        ).all()
        return tuple(ProjectGrant(project_id=row.project_id, customer_id=customer_id, access_level=row.access_level) for row in rows)


def can_access_org(scope: PortalScope, organization_id) -> bool:
    return not scope.is_empty and coerce_uuid(organization_id) in scope.organization_ids


def can_access_customer(scope: PortalScope, customer_id) -> bool:
    return not scope.is_empty and coerce_uuid(customer_id) in scope.customer_ids


def can_access_project(scope: PortalScope, project_id) -> bool:
    return not scope.is_empty and coerce_uuid(project_id) in scope.project_ids


def authorize(
    scope: Optional[PortalScope],
    *,
    organization_id=None,
    customer_id=None,
    project_id=None,
    mutating: bool = False,
) -> None:
    """Raise unless ``scope`` covers every target given."""
    if scope is None or scope.is_empty:
        raise AuthServiceError.of("Unauthenticated", "Authentication is required.")
    if mutating and scope.aggregate:
        raise AuthServiceError.of(
            "Forbidden",
            "The consolidated view is read-only. Select a single customer first.",
            code="auth.aggregate_read_only",
        )
    if organization_id is not None and not can_access_org(scope, organization_id):
        raise AuthServiceError.of("Forbidden", "Access to this organisation is not allowed.")
    if customer_id is not None and not can_access_customer(scope, customer_id):
        raise AuthServiceError.of("Forbidden", "Access to this customer is not allowed.")
    if project_id is not None:
        if not can_access_project(scope, project_id):
            raise AuthServiceError.of("Forbidden", "Access to this project is not allowed.")
        grant = scope.grant_for(coerce_uuid(project_id))
        if mutating and grant is not None and grant.access_level == "reports_only":
            raise AuthServiceError.of("Forbidden", "This project is shared for reports only.")


__all__ = [
    "EMPTY_SCOPE",
    "PortalScope",
    "ProjectGrant",
    "ScopeResolver",
    "authorize",
    "can_access_customer",
    "can_access_org",
    "can_access_project",
]
