"""
tests/test_permissions.py -- Permission catalogue and resolver.
"""

from __future__ import annotations

from auth.models import Identity
from auth.permissions import ALL_CODES, PERMISSIONS, SYSTEM_ROLES, USERS_INVITE, PermissionResolver


def test_catalogue_codes_are_unique() -> None:
    codes = [p.code for p in PERMISSIONS]
    assert len(codes) == len(set(codes))
    assert all(":" in code for code in codes), "Codes use the resource:action form"


def test_system_roles_only_reference_catalogue_codes() -> None:
    for name, (_description, codes) in SYSTEM_ROLES.items():
        unknown = set(codes) - ALL_CODES
        assert not unknown, f"{name} references unknown permission codes: {unknown}"


def test_org_admin_holds_everything() -> None:
    assert set(SYSTEM_ROLES["ORG_ADMIN"][1]) == ALL_CODES


def test_resolves_role_permissions(store, make_identity) -> None:
    identity = make_identity("agentadmin@ledgergate.test", role="AGENT_ADMIN")
    resolved = PermissionResolver(store).resolve(identity.id)
    assert isinstance(resolved, frozenset)
    assert resolved == frozenset(SYSTEM_ROLES["AGENT_ADMIN"][1])
    assert USERS_INVITE in resolved


def test_resolution_tracks_grant_changes(store, make_identity) -> None:
    identity = make_identity("teller@ledgergate.test", role="ORG_USER")
    resolver = PermissionResolver(store)
    assert "audit:read" not in resolver.resolve(identity.id)
    store.grant_permission(identity.role_id, "audit:read")
    assert "audit:read" in resolver.resolve(identity.id)


def test_no_role_and_unknown_identity_resolve_empty(store) -> None:
    identity_id = store.create_identity(Identity(email="norole@ledgergate.test"))
    resolver = PermissionResolver(store)
    assert resolver.resolve(identity_id) == frozenset()
    assert resolver.resolve("does-not-exist") == frozenset()
