"""Create (or promote) an active administrator account so the approval workflow can start.

Run from the repository root: ``python -m scripts.create_admin admin@example.com``.
"""

from __future__ import annotations

import argparse
import getpass
from typing import Optional, Sequence

from sqlalchemy import select

from core.logging import get_logger
from database import SessionLocal
from models.account import Account
from models.identifier import AccountIdentifier
from models.tenancy import Organization, OrganizationMember
from services.auth.common import normalize_email, utcnow
from services.auth.password import hash_password

logger = get_logger(__name__)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("email")
    parser.add_argument("--organization", help="Organisation name; created when missing and joined as owner.")
    parser.add_argument("--no-password", action="store_true", help="OAuth-only administrator.")
    return parser.parse_args(argv)


def create_admin(email: str, *, password: Optional[str], organization: Optional[str]) -> Account:
    normalized = normalize_email(email)
    now = utcnow()
    session = SessionLocal()
    try:
        account = session.execute(select(Account).where(Account.primary_email == normalized)).scalar_one_or_none()
        if account is None:
            account = Account(primary_email=normalized, signup_channel="admin")
            session.add(account)
            session.flush()
            session.add(
                AccountIdentifier(
                    account_id=account.id,
                    identifier_type="email",
                    value=normalized,
                    status="verified",
                    verified_at=now,
                )
            )
        account.role = "admin"
        account.account_type = "company"
        account.status = "active"
        account.email_verified_at = account.email_verified_at or now
        account.approved_at = account.approved_at or now
        if password:
            account.password_hash = hash_password(password)
        if organization:
            org = session.execute(select(Organization).where(Organization.name == organization)).scalar_one_or_none()
            if org is None:
                org = Organization(name=organization)
                session.add(org)
                session.flush()
            if session.get(OrganizationMember, (org.id, account.id)) is None:
                session.add(OrganizationMember(organization_id=org.id, account_id=account.id, role="owner"))
        session.commit()
        logger.info("Administrator %s ready (account %s).", normalized, account.id)
        return account
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    password = None if args.no_password else getpass.getpass("Password: ")
    create_admin(args.email, password=password, organization=args.organization)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
