"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. IdentityStore is the repository; the
_row_to_* functions are the mappers. Services and routes never touch SQL
directly.

Tables: users, roles, permissions, role_permissions, invitations.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are lower-cased on every write and every lookup, so UNIQUE(email)
  behaves as a case-insensitive constraint on SQLite and PostgreSQL alike.

Concurrency:
  record_failed_attempt() increments the counter with a single
  `count = count + 1` UPDATE inside a transaction and reads the new value back
  in the same transaction. Concurrent failures against one identity cannot
  lose an increment.

  accept_invitation() claims the invitation (PENDING -> ACCEPTED, conditional
  on the row still being PENDING) and writes the identity in one transaction.
  A second caller sees rowcount 0 and gets False back.

Timeouts:
  SQLite waits at most `timeout_seconds` on a locked database; PostgreSQL
  drivers get the same value as connect_timeout.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Identity, IdentityStatus, Invitation, InvitationStatus, Permission, Role

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ledgergate_identity.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # always lower-case
    Column("username", String(255), nullable=False, server_default=""),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("phone", String(50)),
    Column("department", String(100)),
    Column("position", String(100)),
    Column("password_hash", Text),
    Column("status", String(30), nullable=False, server_default=IdentityStatus.ACTIVE.value),
    Column("failed_attempt_count", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("role_id", Integer),
    Column("last_login_at", String(32)),
    Column("last_login_ip", String(45)),
    Column("password_changed_at", String(32)),
    Column("invited_by", String(36)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("version", Integer, nullable=False, server_default="1"),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(100), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("category", String(100), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, nullable=False),
    Column("permission_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
)

_invitations = Table(
    "invitations",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("token", String(64), nullable=False, unique=True),
    Column("role_id", Integer, nullable=False),
    Column("invited_by", String(36), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("status", String(20), nullable=False, server_default=InvitationStatus.PENDING.value),
    Column("accepted_at", String(32)),
    Column("accepted_by", String(36)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _to_column_value(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _iso(value)
    return value


def _identity_select():
    return select(_users, _roles.c.name.label("role_name")).select_from(
        _users.outerjoin(_roles, _users.c.role_id == _roles.c.id)
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity, Role, Permission and Invitation entities.

    Usage:
        store = IdentityStore()
        store.ensure_system_roles(PERMISSIONS, SYSTEM_ROLES)
        role = store.get_role_by_name("ORG_ADMIN")
        store.create_identity(Identity(email="admin@x.com", role_id=role.id, password_hash=...))
        identity = store.get_by_email("Admin@X.com")
        store.close()
    """

    # Identity columns update_identity() is allowed to touch. Counters,
    # timestamps and version have dedicated methods.
    _MUTABLE_IDENTITY_FIELDS: set = {
        "username",
        "first_name",
        "last_name",
        "phone",
        "department",
        "position",
        "status",
        "role_id",
    }

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout_seconds: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout_seconds
        elif db_url.startswith("postgresql"):
            connect_args["connect_timeout"] = max(1, int(timeout_seconds))
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def has_identities(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_identity(self, identity: Identity) -> str:
        """Insert a new identity and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        """
        identity_id = identity.id or str(uuid.uuid4())
        now = _iso(_now())
        with self.engine.connect() as conn:
            conn.execute(_users.insert().values(**_identity_insert_values(identity, identity_id, now)))
            conn.commit()
        return identity_id

    def get_by_email(self, email: str) -> Identity | None:
        """Case-insensitive lookup by email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_identity_select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_id(self, identity_id: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identity_select().where(_users.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def update_identity(self, identity_id: str, **fields) -> bool:
        """Update profile/status/role fields. Returns False if identity_id is unknown.

        Unknown field names raise ValueError rather than being ignored.
        """
        unknown = set(fields) - self._MUTABLE_IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")
        values = {k: _to_column_value(v) for k, v in fields.items()}
        return self._bump(identity_id, **values)

    def set_password(self, identity_id: str, password_hash: str) -> bool:
        now = _now()
        return self._bump(identity_id, password_hash=password_hash, password_changed_at=_iso(now))

    def reset_lockout(self, identity_id: str) -> None:
        """Clear failed_attempt_count and locked_until (lazy unlock)."""
        self._bump(identity_id, failed_attempt_count=0, locked_until=None)

    def record_failed_attempt(
        self, identity_id: str, threshold: int, lock_until: datetime
    ) -> tuple[int, datetime | None]:
        """Atomically increment the failure counter; lock when it reaches threshold.

        Returns (new_count, locked_until). locked_until is set to lock_until
        only when new_count >= threshold, otherwise it is left untouched.
        """
        now = _iso(_now())
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == identity_id)
                .values(
                    failed_attempt_count=_users.c.failed_attempt_count + 1,
                    updated_at=now,
                    version=_users.c.version + 1,
                )
            )
            count = conn.execute(select(_users.c.failed_attempt_count).where(_users.c.id == identity_id)).scalar()
            locked_until = None
            if count is not None and count >= threshold:
                locked_until = lock_until
                conn.execute(_users.update().where(_users.c.id == identity_id).values(locked_until=_iso(lock_until)))
        return count or 0, locked_until

    def record_successful_login(self, identity_id: str, ip: str | None = None) -> None:
        """Reset lockout state and stamp last_login_at / last_login_ip."""
        self._bump(
            identity_id,
            failed_attempt_count=0,
            locked_until=None,
            last_login_at=_iso(_now()),
            last_login_ip=ip,
        )

    def _bump(self, identity_id: str, **values) -> bool:
        """Apply column values, stamp updated_at and increment version."""
        values["updated_at"] = _iso(_now())
        values["version"] = _users.c.version + 1
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == identity_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        """Insert a role. Raises IntegrityError if the name exists."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    name=role.name,
                    description=role.description,
                    is_system=1 if role.is_system else 0,
                    created_at=_iso(_now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_role_by_id(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def create_permission(self, permission: Permission) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _permissions.insert().values(
                    code=permission.code,
                    name=permission.name or permission.code,
                    category=permission.category,
                    created_at=_iso(_now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def grant_permission(self, role_id: int, code: str) -> bool:
        """Attach a permission (by code) to a role. Idempotent.

        Returns False if the permission code does not exist.
        """
        with self.engine.connect() as conn:
            permission_id = conn.execute(select(_permissions.c.id).where(_permissions.c.code == code)).scalar()
            if permission_id is None:
                return False
            exists = conn.execute(
                select(func.count())
                .select_from(_role_permissions)
                .where((_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id))
            ).scalar()
            if not exists:
                conn.execute(
                    _role_permissions.insert().values(
                        role_id=role_id, permission_id=permission_id, created_at=_iso(_now())
                    )
                )
                conn.commit()
        return True

    def revoke_permission(self, role_id: int, code: str) -> bool:
        with self.engine.connect() as conn:
            permission_id = conn.execute(select(_permissions.c.id).where(_permissions.c.code == code)).scalar()
            if permission_id is None:
                return False
            result = conn.execute(
                _role_permissions.delete().where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def get_role_permission_codes(self, role_id: int) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_permissions.c.code)
                .select_from(
                    _role_permissions.join(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
                )
                .where(_role_permissions.c.role_id == role_id)
                .order_by(_permissions.c.code)
            ).fetchall()
        return [r.code for r in rows]

    def get_permission_codes(self, identity_id: str) -> list[str]:
        """identity -> role -> role_permissions -> permissions.code.

        May contain duplicates if the schema ever allows several roles per
        identity; PermissionResolver deduplicates.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_permissions.c.code)
                .select_from(
                    _users.join(_role_permissions, _role_permissions.c.role_id == _users.c.role_id).join(
                        _permissions, _permissions.c.id == _role_permissions.c.permission_id
                    )
                )
                .where(_users.c.id == identity_id)
            ).fetchall()
        return [r.code for r in rows]

    def ensure_system_roles(
        self,
        permissions: Iterable[Permission],
        roles: dict[str, tuple[str, Iterable[str]]],
    ) -> None:
        """Install the permission catalogue and system roles if missing. Idempotent.

        roles maps role name -> (description, permission codes). Existing
        roles keep their grants; missing grants are added.
        """
        with self.engine.connect() as conn:
            existing_codes = {r.code for r in conn.execute(select(_permissions.c.code)).fetchall()}
        for permission in permissions:
            if permission.code not in existing_codes:
                self.create_permission(permission)
        for name, (description, codes) in roles.items():
            role = self.get_role_by_name(name)
            role_id = role.id if role else self.create_role(Role(name=name, description=description, is_system=True))
            for code in codes:
                self.grant_permission(role_id, code)

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(self, invitation: Invitation) -> str:
        """Insert an invitation and return its id. Raises IntegrityError on token collision."""
        invitation_id = invitation.id or str(uuid.uuid4())
        now = _iso(_now())
        with self.engine.connect() as conn:
            conn.execute(
                _invitations.insert().values(
                    id=invitation_id,
                    email=normalize_email(invitation.email),
                    token=invitation.token,
                    role_id=invitation.role_id,
                    invited_by=invitation.invited_by,
                    expires_at=_iso(invitation.expires_at),
                    status=invitation.status.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return invitation_id

    def get_invitation_by_token(self, token: str) -> Invitation | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invitations.select().where(_invitations.c.token == token)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def get_invitation_by_id(self, invitation_id: str) -> Invitation | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invitations.select().where(_invitations.c.id == invitation_id)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def list_invitations(self, status: InvitationStatus | None = None, email: str | None = None) -> list[Invitation]:
        """Return invitations newest first, optionally filtered by stored status and email."""
        query = _invitations.select().order_by(_invitations.c.created_at.desc())
        if status is not None:
            query = query.where(_invitations.c.status == status.value)
        if email:
            query = query.where(_invitations.c.email == normalize_email(email))
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_invitation(r) for r in rows]

    def update_invitation(self, invitation_id: str, **fields) -> bool:
        values = {k: _to_column_value(v) for k, v in fields.items()}
        values["updated_at"] = _iso(_now())
        with self.engine.connect() as conn:
            result = conn.execute(_invitations.update().where(_invitations.c.id == invitation_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def accept_invitation(self, invitation_id: str, identity: Identity, *, promote: bool) -> bool:
        """Consume a PENDING invitation and write its identity in one transaction.

        promote=True updates the existing row identity.id in place (status,
        profile, role, password); promote=False inserts identity as a new row.
        Returns False, with nothing written, if the invitation was no longer
        PENDING when the claim ran. Raises IntegrityError, with the claim rolled
        back, if another identity took the email first.
        """
        identity_id = identity.id or str(uuid.uuid4())
        identity.id = identity_id
        now = _iso(_now())
        with self.engine.connect() as conn:
            tx = conn.begin()
            claimed = conn.execute(
                _invitations.update()
                .where(
                    (_invitations.c.id == invitation_id)
                    & (_invitations.c.status == InvitationStatus.PENDING.value)
                )
                .values(
                    status=InvitationStatus.ACCEPTED.value,
                    accepted_at=now,
                    accepted_by=identity_id,
                    updated_at=now,
                )
            ).rowcount
            if claimed != 1:
                tx.rollback()
                return False
            if promote:
                conn.execute(
                    _users.update()
                    .where(_users.c.id == identity_id)
                    .values(
                        first_name=identity.first_name,
                        last_name=identity.last_name,
                        phone=identity.phone,
                        department=identity.department,
                        position=identity.position,
                        status=identity.status.value,
                        role_id=identity.role_id,
                        password_hash=identity.password_hash,
                        password_changed_at=now,
                        failed_attempt_count=0,
                        locked_until=None,
                        updated_at=now,
                        version=_users.c.version + 1,
                    )
                )
            else:
                try:
                    conn.execute(_users.insert().values(**_identity_insert_values(identity, identity_id, now)))
                except IntegrityError:
                    tx.rollback()
                    raise
            tx.commit()
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _identity_insert_values(identity: Identity, identity_id: str, now: str) -> dict:
    email = normalize_email(identity.email)
    return {
        "id": identity_id,
        "email": email,
        "username": identity.username or email.split("@", 1)[0],
        "first_name": identity.first_name,
        "last_name": identity.last_name,
        "phone": identity.phone,
        "department": identity.department,
        "position": identity.position,
        "password_hash": identity.password_hash,
        "status": identity.status.value,
        "failed_attempt_count": identity.failed_attempt_count,
        "locked_until": _iso(identity.locked_until),
        "role_id": identity.role_id,
        "password_changed_at": now if identity.password_hash else None,
        "invited_by": identity.invited_by,
        "created_at": now,
        "updated_at": now,
        "version": 1,
    }


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        username=row.username,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        department=row.department,
        position=row.position,
        password_hash=row.password_hash,
        status=IdentityStatus(row.status),
        failed_attempt_count=row.failed_attempt_count,
        locked_until=_parse(row.locked_until),
        role_id=row.role_id,
        role_name=row.role_name or "",
        last_login_at=_parse(row.last_login_at),
        last_login_ip=row.last_login_ip,
        password_changed_at=_parse(row.password_changed_at),
        invited_by=row.invited_by,
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
        version=row.version,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description,
        is_system=bool(row.is_system),
    )


def _row_to_invitation(row) -> Invitation:
    return Invitation(
        id=row.id,
        email=row.email,
        token=row.token,
        role_id=row.role_id,
        invited_by=row.invited_by,
        expires_at=_parse(row.expires_at),
        status=InvitationStatus(row.status),
        accepted_at=_parse(row.accepted_at),
        accepted_by=row.accepted_by,
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
    )
