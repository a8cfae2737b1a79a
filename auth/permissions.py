"""
auth/permissions.py -- Permission catalogue, system roles, and resolution.

Permission codes are opaque "<category>:<action>" strings. Authorization is
exact set membership: no hierarchy, no wildcards, "users:read" does not imply
anything else.

SYSTEM_ROLES is installed by IdentityStore.ensure_system_roles() at startup.
Existing roles keep any extra grants an administrator added; missing grants
from the catalogue are re-added.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from auth.models import Permission
from auth.store import IdentityStore

# ---------------------------------------------------------------------------
# Codes
# ---------------------------------------------------------------------------

USERS_READ = "users:read"
USERS_CREATE = "users:create"
USERS_UPDATE = "users:update"
USERS_DELETE = "users:delete"
USERS_INVITE = "users:invite"
ROLES_READ = "roles:read"
ROLES_UPDATE = "roles:update"
CLIENTS_READ = "clients:read"
CLIENTS_CREATE = "clients:create"
CLIENTS_UPDATE = "clients:update"
CLIENTS_DELETE = "clients:delete"
TRANSACTIONS_READ = "transactions:read"
TRANSACTIONS_CREATE = "transactions:create"
TRANSACTIONS_UPDATE = "transactions:update"
TRANSACTIONS_DELETE = "transactions:delete"
TRANSACTIONS_APPROVE = "transactions:approve"
KYC_APPROVE = "kyc:approve"
AUDIT_READ = "audit:read"
REPORTS_READ = "reports:read"
SETTINGS_UPDATE = "settings:update"
PROFILE_UPDATE = "profile:update"

PERMISSIONS: list[Permission] = [
    Permission(code=USERS_READ, category="users", name="View users"),
    Permission(code=USERS_CREATE, category="users", name="Create users"),
    Permission(code=USERS_UPDATE, category="users", name="Update users"),
    Permission(code=USERS_DELETE, category="users", name="Delete users"),
    Permission(code=USERS_INVITE, category="users", name="Invite users"),
    Permission(code=ROLES_READ, category="roles", name="View roles"),
    Permission(code=ROLES_UPDATE, category="roles", name="Update roles"),
    Permission(code=CLIENTS_READ, category="clients", name="View clients"),
    Permission(code=CLIENTS_CREATE, category="clients", name="Create clients"),
    Permission(code=CLIENTS_UPDATE, category="clients", name="Update clients"),
    Permission(code=CLIENTS_DELETE, category="clients", name="Delete clients"),
    Permission(code=TRANSACTIONS_READ, category="transactions", name="View transactions"),
    Permission(code=TRANSACTIONS_CREATE, category="transactions", name="Create transactions"),
    Permission(code=TRANSACTIONS_UPDATE, category="transactions", name="Update transactions"),
    Permission(code=TRANSACTIONS_DELETE, category="transactions", name="Delete transactions"),
    Permission(code=TRANSACTIONS_APPROVE, category="transactions", name="Approve transactions"),
    Permission(code=KYC_APPROVE, category="compliance", name="Approve KYC reviews"),
    Permission(code=AUDIT_READ, category="compliance", name="View audit log"),
    Permission(code=REPORTS_READ, category="reports", name="View reports"),
    Permission(code=SETTINGS_UPDATE, category="settings", name="Update organization settings"),
    Permission(code=PROFILE_UPDATE, category="profile", name="Update own profile"),
]

ALL_CODES: frozenset[str] = frozenset(p.code for p in PERMISSIONS)

DEFAULT_ROLE = "ORG_USER"

# role name -> (description, permission codes)
SYSTEM_ROLES: dict[str, tuple[str, list[str]]] = {
    "ORG_ADMIN": ("Organization administrator", sorted(ALL_CODES)),
    "ORG_USER": (
        "Organization staff member",
        [CLIENTS_READ, CLIENTS_CREATE, CLIENTS_UPDATE, TRANSACTIONS_READ, TRANSACTIONS_CREATE, PROFILE_UPDATE],
    ),
    "AGENT_ADMIN": (
        "Agent location administrator",
        [USERS_READ, USERS_INVITE, ROLES_READ, CLIENTS_READ, CLIENTS_CREATE, TRANSACTIONS_READ,
         TRANSACTIONS_CREATE, TRANSACTIONS_APPROVE, REPORTS_READ, PROFILE_UPDATE],
    ),
    "AGENT_USER": ("Agent teller", [CLIENTS_READ, TRANSACTIONS_READ, TRANSACTIONS_CREATE, PROFILE_UPDATE]),
    "COMPLIANCE_USER": (
        "Compliance officer",
        [CLIENTS_READ, TRANSACTIONS_READ, KYC_APPROVE, AUDIT_READ, REPORTS_READ, PROFILE_UPDATE],
    ),
}


class PermissionResolver:
    """Maps an identity id to the set of permission codes its role grants."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def resolve(self, identity_id: str) -> frozenset[str]:
        """Return the deduplicated permission codes for identity_id.

        An unknown identity, or one without a role, resolves to the empty set.
        """
        return frozenset(self.store.get_permission_codes(identity_id))
