from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from teamsync.logging import get_logger
from teamsync.storage.common import build_token_cipher, decrypt_token, encrypt_token
from teamsync.storage.errors import ConstraintViolation
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


class MemoryStore:
    """In-process backing store used for tests and single-node development.

    When ``fs_root`` is given, every mutation is snapshotted to
    ``<fs_root>/state/memory_store.json`` and reloaded on startup.
    """

    def __init__(self, fs_root: Optional[str] = None, *, token_key: str) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.credentials: Dict[str, str] = {}
        self.providers: List[ProviderLink] = []
        self.workspaces: Dict[str, Workspace] = {}
        # (identity_id, workspace_id) -> Membership
        self.memberships: Dict[tuple[str, str], Membership] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can nest inside locked sections
        self._data_lock = threading.RLock()
        self._defer_persist = False
        self._cipher = build_token_cipher(token_key)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # identities -----------------------------------------------------------

    def create_identity(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        profile_picture: Optional[str] = None,
        is_active: bool = True,
    ) -> Identity:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.identities.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            identity = Identity(
                id=new_id(),
                email=normalized,
                name=name,
                profile_picture=profile_picture,
                is_active=is_active,
            )
            self.identities[identity.id] = identity
            self._persist_state()
            return identity

    def find_identity_by_id(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    def find_identity_by_email(self, email: str) -> Optional[Identity]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next(
                (i for i in self.identities.values() if i.email == normalized), None
            )

    def find_identity_by_provider(
        self, provider: ProviderKind, provider_subject: str
    ) -> Optional[Identity]:
        link = self.get_provider_link(provider, provider_subject)
        if not link:
            return None
        return self.find_identity_by_id(link.identity_id)

    def set_password(self, identity_id: str, password_hash: str) -> None:
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity not found for credentials", {"identity_id": identity_id}
                )
            self.credentials[identity_id] = password_hash
            self._persist_state()

    def get_password_hash(self, identity_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(identity_id)

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
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity not found for provider link", {"identity_id": identity_id}
                )
            for existing in self.providers:
                if existing.provider == provider and existing.provider_subject == provider_subject:
                    if existing.identity_id != identity_id:
                        raise ConstraintViolation(
                            "provider account already linked",
                            {"provider": provider.value},
                        )
                    return self._public_link(existing)
            link = ProviderLink(
                id=new_id(),
                identity_id=identity_id,
                provider=provider,
                provider_subject=provider_subject,
                refresh_token=encrypt_token(self._cipher, refresh_token),
                token_expiry=token_expiry,
            )
            self.providers.append(link)
            self._persist_state()
            return self._public_link(link)

    def get_provider_link(
        self, provider: ProviderKind, provider_subject: str
    ) -> Optional[ProviderLink]:
        provider = ProviderKind(provider)
        with self._data_lock:
            for link in self.providers:
                if link.provider == provider and link.provider_subject == provider_subject:
                    return self._public_link(link)
            return None

    def update_provider_tokens(
        self,
        provider: ProviderKind,
        provider_subject: str,
        refresh_token: Optional[str],
        token_expiry: Optional[datetime],
    ) -> None:
        provider = ProviderKind(provider)
        with self._data_lock:
            for link in self.providers:
                if link.provider == provider and link.provider_subject == provider_subject:
                    link.refresh_token = encrypt_token(self._cipher, refresh_token)
                    link.token_expiry = token_expiry
                    self._persist_state()
                    return

    def _public_link(self, link: ProviderLink) -> ProviderLink:
        return ProviderLink(
            id=link.id,
            identity_id=link.identity_id,
            provider=link.provider,
            provider_subject=link.provider_subject,
            refresh_token=decrypt_token(self._cipher, link.refresh_token),
            token_expiry=link.token_expiry,
            created_at=link.created_at,
        )

    def touch_last_login(self, identity_id: str, at: datetime) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.last_login = at
                self._persist_state()

    def set_identity_active(self, identity_id: str, active: bool) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.is_active = active
            self._persist_state()
            return identity

    def set_current_workspace(
        self, identity_id: str, workspace_id: Optional[str]
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            if workspace_id is not None and workspace_id not in self.workspaces:
                raise ConstraintViolation(
                    "workspace does not exist", {"workspace_id": workspace_id}
                )
            identity.current_workspace_id = workspace_id
            self._persist_state()
            return identity

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
        """Create identity, provider link, credentials, workspace and membership as one unit.

        Any failure restores the maps to their prior state and nothing is
        snapshotted.
        """
        with self._data_lock:
            saved = (
                dict(self.identities),
                dict(self.credentials),
                list(self.providers),
                dict(self.workspaces),
                dict(self.memberships),
            )
            self._defer_persist = True
            try:
                identity = self.create_identity(email, name, profile_picture=profile_picture)
                self.link_provider(identity.id, provider, provider_subject)
                if password_hash:
                    self.set_password(identity.id, password_hash)
                workspace = self.create_workspace(workspace_name, identity.id)
                self.add_membership(identity.id, workspace.id, owner_role)
                identity = self.set_current_workspace(identity.id, workspace.id) or identity
            except Exception:
                (
                    self.identities,
                    self.credentials,
                    self.providers,
                    self.workspaces,
                    self.memberships,
                ) = saved
                raise
            finally:
                self._defer_persist = False
            self._persist_state()
            return identity, workspace

    # workspaces and memberships -------------------------------------------

    def create_workspace(
        self, name: str, owner_id: str, *, description: Optional[str] = None
    ) -> Workspace:
        with self._data_lock:
            if owner_id not in self.identities:
                raise ConstraintViolation("owner does not exist", {"owner_id": owner_id})
            invite_code = Workspace.generate_invite_code()
            while any(w.invite_code == invite_code for w in self.workspaces.values()):
                invite_code = Workspace.generate_invite_code()
            workspace = Workspace(
                id=new_id(),
                name=name,
                owner_id=owner_id,
                invite_code=invite_code,
                description=description,
            )
            self.workspaces[workspace.id] = workspace
            self._persist_state()
            return workspace

    def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        with self._data_lock:
            return self.workspaces.get(workspace_id)

    def get_workspace_by_invite_code(self, invite_code: str) -> Optional[Workspace]:
        with self._data_lock:
            return next(
                (w for w in self.workspaces.values() if w.invite_code == invite_code),
                None,
            )

    def add_membership(self, identity_id: str, workspace_id: str, role: str) -> Membership:
        key = (identity_id, workspace_id)
        with self._data_lock:
            if identity_id not in self.identities or workspace_id not in self.workspaces:
                raise ConstraintViolation(
                    "membership references missing rows",
                    {"identity_id": identity_id, "workspace_id": workspace_id},
                )
            if key in self.memberships:
                raise ConstraintViolation(
                    "membership already exists",
                    {"identity_id": identity_id, "workspace_id": workspace_id},
                )
            membership = Membership(
                identity_id=identity_id, workspace_id=workspace_id, role=role
            )
            self.memberships[key] = membership
            self._persist_state()
            return membership

    def get_membership(self, identity_id: str, workspace_id: str) -> Optional[Membership]:
        with self._data_lock:
            return self.memberships.get((identity_id, workspace_id))

    def list_workspace_members(self, workspace_id: str) -> List[Membership]:
        with self._data_lock:
            members = [
                m for m in self.memberships.values() if m.workspace_id == workspace_id
            ]
            return sorted(members, key=lambda m: m.joined_at)

    def update_membership_role(
        self, identity_id: str, workspace_id: str, role: str
    ) -> Optional[Membership]:
        with self._data_lock:
            membership = self.memberships.get((identity_id, workspace_id))
            if not membership:
                return None
            membership.role = role
            self._persist_state()
            return membership

    # sessions -------------------------------------------------------------

    def create_session(self, identity_id: str, ttl_minutes: int = 60 * 24) -> Session:
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity does not exist", {"identity_id": identity_id}
                )
            self._drop_expired_sessions()
            sess = Session.new(identity_id, ttl_minutes=ttl_minutes)
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is not None and not sess.is_live(utcnow()):
                del self.sessions[session_id]
                self._persist_state()
                return None
            return sess

    def _drop_expired_sessions(self) -> None:
        now = utcnow()
        for sid in [sid for sid, sess in self.sessions.items() if not sess.is_live(now)]:
            del self.sessions[sid]

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    def revoke_identity_sessions(self, identity_id: str) -> None:
        with self._data_lock:
            stale = [
                sid for sid, sess in self.sessions.items() if sess.identity_id == identity_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()

    # persistence ----------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None or self._defer_persist:
            return
        with self._data_lock:
            state = {
                "identities": [self._serialize_identity(i) for i in self.identities.values()],
                "credentials": [
                    {"identity_id": identity_id, "password_hash": pwd_hash}
                    for identity_id, pwd_hash in self.credentials.items()
                ],
                "providers": [self._serialize_provider(p) for p in self.providers],
                "workspaces": [self._serialize_workspace(w) for w in self.workspaces.values()],
                "memberships": [
                    self._serialize_membership(m) for m in self.memberships.values()
                ],
                "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.credentials = {
            entry["identity_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.providers = [self._deserialize_provider(p) for p in data.get("providers", [])]
        self.workspaces = {
            w["id"]: self._deserialize_workspace(w) for w in data.get("workspaces", [])
        }
        self.memberships = {}
        for raw in data.get("memberships", []):
            membership = self._deserialize_membership(raw)
            self.memberships[(membership.identity_id, membership.workspace_id)] = membership
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded",
            identities=len(self.identities),
            workspaces=len(self.workspaces),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_identity(self, identity: Identity) -> dict:
        return {
            "id": identity.id,
            "email": identity.email,
            "name": identity.name,
            "profile_picture": identity.profile_picture,
            "is_active": identity.is_active,
            "last_login": self._dt(identity.last_login),
            "current_workspace_id": identity.current_workspace_id,
            "created_at": self._dt(identity.created_at),
        }

    def _deserialize_identity(self, raw: dict) -> Identity:
        return Identity(
            id=raw["id"],
            email=raw["email"],
            name=raw.get("name"),
            profile_picture=raw.get("profile_picture"),
            is_active=raw.get("is_active", True),
            last_login=self._parse_dt(raw.get("last_login")),
            current_workspace_id=raw.get("current_workspace_id"),
            created_at=self._parse_dt(raw.get("created_at")),
        )

    def _serialize_provider(self, link: ProviderLink) -> dict:
        # refresh_token is already encrypted at rest
        return {
            "id": link.id,
            "identity_id": link.identity_id,
            "provider": link.provider.value,
            "provider_subject": link.provider_subject,
            "refresh_token": link.refresh_token,
            "token_expiry": self._dt(link.token_expiry),
            "created_at": self._dt(link.created_at),
        }

    def _deserialize_provider(self, raw: dict) -> ProviderLink:
        return ProviderLink(
            id=raw["id"],
            identity_id=raw["identity_id"],
            provider=ProviderKind(raw["provider"]),
            provider_subject=raw["provider_subject"],
            refresh_token=raw.get("refresh_token"),
            token_expiry=self._parse_dt(raw.get("token_expiry")),
            created_at=self._parse_dt(raw.get("created_at")),
        )

    def _serialize_workspace(self, workspace: Workspace) -> dict:
        return {
            "id": workspace.id,
            "name": workspace.name,
            "owner_id": workspace.owner_id,
            "invite_code": workspace.invite_code,
            "description": workspace.description,
            "created_at": self._dt(workspace.created_at),
        }

    def _deserialize_workspace(self, raw: dict) -> Workspace:
        return Workspace(
            id=raw["id"],
            name=raw["name"],
            owner_id=raw["owner_id"],
            invite_code=raw["invite_code"],
            description=raw.get("description"),
            created_at=self._parse_dt(raw.get("created_at")),
        )

    def _serialize_membership(self, membership: Membership) -> dict:
        return {
            "identity_id": membership.identity_id,
            "workspace_id": membership.workspace_id,
            "role": membership.role,
            "joined_at": self._dt(membership.joined_at),
        }

    def _deserialize_membership(self, raw: dict) -> Membership:
        return Membership(
            identity_id=raw["identity_id"],
            workspace_id=raw["workspace_id"],
            role=raw["role"],
            joined_at=self._parse_dt(raw.get("joined_at")),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "identity_id": sess.identity_id,
            "created_at": self._dt(sess.created_at),
            "expires_at": self._dt(sess.expires_at),
        }

    def _deserialize_session(self, raw: dict) -> Session:
        return Session(
            id=raw["id"],
            identity_id=raw["identity_id"],
            created_at=self._parse_dt(raw["created_at"]),
            expires_at=self._parse_dt(raw["expires_at"]),
        )
