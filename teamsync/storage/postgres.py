from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from teamsync.logging import get_logger
from teamsync.storage.common import build_token_cipher, decrypt_token, encrypt_token
from teamsync.storage.errors import ConstraintViolation, StoreUnavailable
from teamsync.storage.models import (
    Identity,
    Membership,
    ProviderKind,
    ProviderLink,
    Session,
    Workspace,
    new_id,
    normalize_email,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS identity (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        profile_picture TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login TIMESTAMPTZ,
        current_workspace_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS identity_credential (
        identity_id TEXT PRIMARY KEY REFERENCES identity(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provider_link (
        id TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES identity(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_subject TEXT NOT NULL,
        refresh_token TEXT,
        token_expiry TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_subject)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workspace (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        owner_id TEXT NOT NULL REFERENCES identity(id),
        invite_code TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workspace_member (
        identity_id TEXT NOT NULL REFERENCES identity(id) ON DELETE CASCADE,
        workspace_id TEXT NOT NULL REFERENCES workspace(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        joined_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (identity_id, workspace_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES identity(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_identity_idx ON auth_session (identity_id)",
)


class PostgresStore:
    """Postgres-backed identity, workspace membership and session store."""

    def __init__(self, dsn: str, *, token_key: str, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = build_token_cipher(token_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("store_unavailable", backend="postgres", error=str(exc))
            raise StoreUnavailable("database unavailable", backend="postgres") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # row mapping ----------------------------------------------------------

    @staticmethod
    def _identity_from_row(row: dict) -> Identity:
        return Identity(
            id=row["id"],
            email=row["email"],
            name=row.get("name"),
            profile_picture=row.get("profile_picture"),
            is_active=row.get("is_active", True),
            last_login=row.get("last_login"),
            current_workspace_id=row.get("current_workspace_id"),
            created_at=row.get("created_at") or utcnow(),
        )

    def _link_from_row(self, row: dict) -> ProviderLink:
        return ProviderLink(
            id=row["id"],
            identity_id=row["identity_id"],
            provider=ProviderKind(row["provider"]),
            provider_subject=row["provider_subject"],
            refresh_token=decrypt_token(self._cipher, row.get("refresh_token")),
            token_expiry=row.get("token_expiry"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _workspace_from_row(row: dict) -> Workspace:
        return Workspace(
            id=row["id"],
            name=row["name"],
            owner_id=row["owner_id"],
            invite_code=row["invite_code"],
            description=row.get("description"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _membership_from_row(row: dict) -> Membership:
        return Membership(
            identity_id=row["identity_id"],
            workspace_id=row["workspace_id"],
            role=row["role"],
            joined_at=row.get("joined_at") or utcnow(),
        )

    # identities -----------------------------------------------------------

    def create_identity(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        profile_picture: Optional[str] = None,
        is_active: bool = True,
    ) -> Identity:
        identity = Identity(
            id=new_id(),
            email=normalize_email(email),
            name=name,
            profile_picture=profile_picture,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identity (id, email, name, profile_picture, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        identity.id,
                        identity.email,
                        name,
                        profile_picture,
                        is_active,
                        identity.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return identity

    def find_identity_by_id(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def find_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def find_identity_by_provider(
        self, provider: ProviderKind, provider_subject: str
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT i.* FROM identity i
                JOIN provider_link p ON p.identity_id = i.id
                WHERE p.provider = %s AND p.provider_subject = %s
                """,
                (ProviderKind(provider).value, provider_subject),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def set_password(self, identity_id: str, password_hash: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identity_credential (identity_id, password_hash, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (identity_id)
                    DO UPDATE SET password_hash = EXCLUDED.password_hash, updated_at = now()
                    """,
                    (identity_id, password_hash),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "identity not found for credentials", {"identity_id": identity_id}
            )

    def get_password_hash(self, identity_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM identity_credential WHERE identity_id = %s",
                (identity_id,),
            ).fetchone()
        return row["password_hash"] if row else None

    def link_provider(
        self,
        identity_id: str,
        provider: ProviderKind,
        provider_subject: str,
        *,
        refresh_token: Optional[str] = None,
        token_expiry: Optional[datetime] = None,
    ) -> ProviderLink:
        provider = ProviderKind(provider)
        existing = self.get_provider_link(provider, provider_subject)
        if existing:
            if existing.identity_id != identity_id:
                raise ConstraintViolation(
                    "provider account already linked", {"provider": provider.value}
                )
            return existing
        link = ProviderLink(
            id=new_id(),
            identity_id=identity_id,
            provider=provider,
            provider_subject=provider_subject,
            refresh_token=refresh_token,
            token_expiry=token_expiry,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO provider_link (id, identity_id, provider, provider_subject, refresh_token, token_expiry, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        link.id,
                        identity_id,
                        provider.value,
                        provider_subject,
                        encrypt_token(self._cipher, refresh_token),
                        token_expiry,
                        link.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "provider account already linked", {"provider": provider.value}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "identity not found for provider link", {"identity_id": identity_id}
            )
        return link

    def get_provider_link(
        self, provider: ProviderKind, provider_subject: str
    ) -> Optional[ProviderLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM provider_link WHERE provider = %s AND provider_subject = %s",
                (ProviderKind(provider).value, provider_subject),
            ).fetchone()
        return self._link_from_row(row) if row else None

    def update_provider_tokens(
        self,
        provider: ProviderKind,
        provider_subject: str,
        refresh_token: Optional[str],
        token_expiry: Optional[datetime],
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE provider_link SET refresh_token = %s, token_expiry = %s
                WHERE provider = %s AND provider_subject = %s
                """,
                (
                    encrypt_token(self._cipher, refresh_token),
                    token_expiry,
                    ProviderKind(provider).value,
                    provider_subject,
                ),
            )

    def touch_last_login(self, identity_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE identity SET last_login = %s WHERE id = %s", (at, identity_id)
            )

    def set_identity_active(self, identity_id: str, active: bool) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE identity SET is_active = %s WHERE id = %s RETURNING *",
                (active, identity_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def set_current_workspace(
        self, identity_id: str, workspace_id: Optional[str]
    ) -> Optional[Identity]:
        with self._connect() as conn:
            if workspace_id is not None:
                exists = conn.execute(
                    "SELECT 1 FROM workspace WHERE id = %s", (workspace_id,)
                ).fetchone()
                if not exists:
                    raise ConstraintViolation(
                        "workspace does not exist", {"workspace_id": workspace_id}
                    )
            row = conn.execute(
                "UPDATE identity SET current_workspace_id = %s WHERE id = %s RETURNING *",
                (workspace_id, identity_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    # provisioning ---------------------------------------------------------

    def provision_identity(
        self,
        email: str,
        name: Optional[str],
        *,
        provider: ProviderKind,
        provider_subject: str,
        workspace_name: str,
        owner_role: str,
        password_hash: Optional[str] = None,
        profile_picture: Optional[str] = None,
    ) -> tuple[Identity, Workspace]:
        """Create identity, provider link, credentials, workspace and membership in one transaction."""
        provider = ProviderKind(provider)
        identity = Identity(
            id=new_id(),
            email=normalize_email(email),
            name=name,
            profile_picture=profile_picture,
        )
        workspace = Workspace(
            id=new_id(),
            name=workspace_name,
            owner_id=identity.id,
            invite_code=Workspace.generate_invite_code(),
        )
        identity.current_workspace_id = workspace.id
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identity (id, email, name, profile_picture, is_active, current_workspace_id, created_at)
                    VALUES (%s, %s, %s, %s, TRUE, %s, %s)
                    """,
                    (
                        identity.id,
                        identity.email,
                        name,
                        profile_picture,
                        workspace.id,
                        identity.created_at,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO provider_link (id, identity_id, provider, provider_subject, created_at)
                    VALUES (%s, %s, %s, %s, now())
                    """,
                    (new_id(), identity.id, provider.value, provider_subject),
                )
                if password_hash:
                    conn.execute(
                        """
                        INSERT INTO identity_credential (identity_id, password_hash, updated_at)
                        VALUES (%s, %s, now())
                        """,
                        (identity.id, password_hash),
                    )
                conn.execute(
                    """
                    INSERT INTO workspace (id, name, description, owner_id, invite_code, created_at)
                    VALUES (%s, %s, NULL, %s, %s, %s)
                    """,
                    (
                        workspace.id,
                        workspace_name,
                        identity.id,
                        workspace.invite_code,
                        workspace.created_at,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO workspace_member (identity_id, workspace_id, role, joined_at)
                    VALUES (%s, %s, %s, now())
                    """,
                    (identity.id, workspace.id, owner_role),
                )
        except errors.UniqueViolation as exc:
            # the pool rolls the transaction back before this runs
            constraint = getattr(exc.diag, "constraint_name", None) or "unique"
            raise ConstraintViolation("provisioning conflict", {"constraint": constraint})
        return identity, workspace

    # workspaces and memberships -------------------------------------------

    def create_workspace(
        self, name: str, owner_id: str, *, description: Optional[str] = None
    ) -> Workspace:
        workspace = Workspace(
            id=new_id(),
            name=name,
            owner_id=owner_id,
            invite_code=Workspace.generate_invite_code(),
            description=description,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO workspace (id, name, description, owner_id, invite_code, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        workspace.id,
                        name,
                        description,
                        owner_id,
                        workspace.invite_code,
                        workspace.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("owner does not exist", {"owner_id": owner_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("invite code collision", {"field": "invite_code"})
        return workspace

    def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace WHERE id = %s", (workspace_id,)
            ).fetchone()
        return self._workspace_from_row(row) if row else None

    def get_workspace_by_invite_code(self, invite_code: str) -> Optional[Workspace]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace WHERE invite_code = %s", (invite_code,)
            ).fetchone()
        return self._workspace_from_row(row) if row else None

    def add_membership(self, identity_id: str, workspace_id: str, role: str) -> Membership:
        membership = Membership(identity_id=identity_id, workspace_id=workspace_id, role=role)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO workspace_member (identity_id, workspace_id, role, joined_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (identity_id, workspace_id, role, membership.joined_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "membership already exists",
                {"identity_id": identity_id, "workspace_id": workspace_id},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "membership references missing rows",
                {"identity_id": identity_id, "workspace_id": workspace_id},
            )
        return membership

    def get_membership(self, identity_id: str, workspace_id: str) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace_member WHERE identity_id = %s AND workspace_id = %s",
                (identity_id, workspace_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def list_workspace_members(self, workspace_id: str) -> List[Membership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workspace_member WHERE workspace_id = %s ORDER BY joined_at",
                (workspace_id,),
            ).fetchall()
        return [self._membership_from_row(row) for row in rows]

    def update_membership_role(
        self, identity_id: str, workspace_id: str, role: str
    ) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE workspace_member SET role = %s
                WHERE identity_id = %s AND workspace_id = %s
                RETURNING *
                """,
                (role, identity_id, workspace_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    # sessions -------------------------------------------------------------

    def create_session(self, identity_id: str, ttl_minutes: int = 60 * 24) -> Session:
        sess = Session.new(identity_id, ttl_minutes=ttl_minutes)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, identity_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (sess.id, identity_id, sess.created_at, sess.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "identity does not exist", {"identity_id": identity_id}
            )
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=row["id"],
            identity_id=row["identity_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def revoke_identity_sessions(self, identity_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM auth_session WHERE identity_id = %s", (identity_id,)
            )

    def close(self) -> None:
        self.pool.close()
