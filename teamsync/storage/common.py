"""Storage contract and helpers shared between the memory and postgres backends."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from typing import List, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from teamsync.logging import get_logger
from teamsync.storage.models import (
    Identity,
    Membership,
    ProviderKind,
    ProviderLink,
    Session,
    Workspace,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    # identities and credentials
    def create_identity(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        profile_picture: Optional[str] = None,
        is_active: bool = True,
    ) -> Identity: ...

    def find_identity_by_id(self, identity_id: str) -> Optional[Identity]: ...

    def find_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def find_identity_by_provider(
        self, provider: ProviderKind, provider_subject: str
    ) -> Optional[Identity]: ...

    def set_password(self, identity_id: str, password_hash: str) -> None: ...

    def get_password_hash(self, identity_id: str) -> Optional[str]: ...

    def link_provider(
        self,
        identity_id: str,
        provider: ProviderKind,
        provider_subject: str,
        *,
        refresh_token: Optional[str] = None,
        token_expiry: Optional[datetime] = None,
    ) -> ProviderLink: ...

    def get_provider_link(
        self, provider: ProviderKind, provider_subject: str
    ) -> Optional[ProviderLink]: ...

    def update_provider_tokens(
        self,
        provider: ProviderKind,
        provider_subject: str,
        refresh_token: Optional[str],
        token_expiry: Optional[datetime],
    ) -> None: ...

    def touch_last_login(self, identity_id: str, at: datetime) -> None: ...

    def set_identity_active(self, identity_id: str, active: bool) -> Optional[Identity]: ...

    def set_current_workspace(
        self, identity_id: str, workspace_id: Optional[str]
    ) -> Optional[Identity]: ...

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
        """All-or-nothing creation of a new account and its personal workspace."""
        ...

    # workspaces and memberships
    def create_workspace(
        self, name: str, owner_id: str, *, description: Optional[str] = None
    ) -> Workspace: ...

    def get_workspace(self, workspace_id: str) -> Optional[Workspace]: ...

    def get_workspace_by_invite_code(self, invite_code: str) -> Optional[Workspace]: ...

    def add_membership(self, identity_id: str, workspace_id: str, role: str) -> Membership: ...

    def get_membership(self, identity_id: str, workspace_id: str) -> Optional[Membership]: ...

    def list_workspace_members(self, workspace_id: str) -> List[Membership]: ...

    def update_membership_role(
        self, identity_id: str, workspace_id: str, role: str
    ) -> Optional[Membership]: ...

    # sessions
    def create_session(self, identity_id: str, ttl_minutes: int = 60 * 24) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...

    def revoke_identity_sessions(self, identity_id: str) -> None: ...


def build_token_cipher(key_material: str) -> Fernet:
    """Fernet cipher for provider refresh tokens, keyed from the session secret."""
    key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
    return Fernet(key)


def encrypt_token(cipher: Fernet, token: Optional[str]) -> Optional[str]:
    if not token:
        return token
    return cipher.encrypt(token.encode()).decode()


def decrypt_token(cipher: Fernet, token: Optional[str]) -> Optional[str]:
    if not token:
        return token
    try:
        return cipher.decrypt(token.encode()).decode()
    except InvalidToken:
        # written under a different secret; unusable for refresh
        logger.warning("provider_token_decrypt_failed")
        return None


__all__ = ["AuthStore", "build_token_cipher", "encrypt_token", "decrypt_token"]
