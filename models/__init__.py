from .account import Account, AccountMfa, MfaBackupCode  # noqa: F401
from .identifier import AccountIdentifier, BindingChallenge, OAuthExchangeState  # noqa: F401
from .tenancy import (  # noqa: F401
    Customer,
    CustomerMember,
    CustomerProjectGrant,
    Organization,
    OrganizationMember,
    Project,
)
from .auth_audit import AccountSession, AuthEvent, AuthToken, SessionRevocation  # noqa: F401
