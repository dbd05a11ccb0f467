"""Identity resolution and renames.

The resolver turns authenticated session claims into a stable identity,
provisioning one through the storage service when the session does not
carry an id yet. Provisioning failures are fatal for the connection that
triggered them: callers must refuse the connection rather than register it.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from chatroom.storage.service import ChatStore, DisplayNameConflict

from .schemas import Identity, SessionClaims
from .session import SessionCodec

logger = logging.getLogger(__name__)


class IdentityProvisioningError(Exception):
    """The storage service could not provide an identity for a session."""


class InvalidDisplayName(ValueError):
    """A display name is empty or too long."""


@dataclass
class ResolvedIdentity:
    """Result of resolving a session.

    Attributes:
        identity: The stable identity.
        token: A re-issued session token when the session changed
            (identity id newly assigned), otherwise None.
    """
    identity: Identity
    token: Optional[str] = None


def normalize_display_name(raw: Optional[str], max_length: int = 50) -> str:
    """Trim a display name and check its length.

    Raises:
        InvalidDisplayName: Empty after trimming, or longer than ``max_length``.
    """
    name = (raw or "").strip()
    if not name:
        raise InvalidDisplayName("Display name is required")
    if len(name) > max_length:
        raise InvalidDisplayName(f"Display name must be 1-{max_length} characters")
    return name


class IdentityResolver:
    """Maps session claims to identities and applies renames."""

    def __init__(self, store: ChatStore, codec: SessionCodec, max_name_length: int = 50) -> None:
        self.store = store
        self.codec = codec
        self.max_name_length = max_name_length

    async def resolve(self, claims: SessionClaims) -> ResolvedIdentity:
        """Return the identity for ``claims``, provisioning it if absent.

        Raises:
            IdentityProvisioningError: Storage failed while provisioning.
        """
        try:
            if claims.sub:
                identity = await self.store.get_user(claims.sub)
                if identity is not None:
                    return ResolvedIdentity(identity=identity)
                logger.warning(f"Session refers to unknown identity {claims.sub}; re-provisioning")

            identity_id = await self.store.ensure_user(claims.name)
            identity = await self.store.get_user(identity_id)
        except Exception as e:
            raise IdentityProvisioningError(f"Could not provision identity for {claims.name!r}") from e

        if identity is None:
            raise IdentityProvisioningError(f"Provisioned identity {identity_id} vanished")

        logger.info(f"Resolved session '{claims.name}' to identity {identity.id}")
        token = self.codec.encode(SessionClaims(sub=identity.id, name=identity.display_name))
        return ResolvedIdentity(identity=identity, token=token)

    async def rename(self, identity_id: str, raw_name: str) -> ResolvedIdentity:
        """Rename an identity and return it with a re-issued session token.

        Raises:
            InvalidDisplayName: The new name fails validation.
            DisplayNameConflict: The name belongs to another identity.
            LookupError: The identity does not exist.
        """
        name = normalize_display_name(raw_name, self.max_name_length)
        identity = await self.store.rename_user(identity_id, name)
        token = self.codec.encode(SessionClaims(sub=identity.id, name=identity.display_name))
        return ResolvedIdentity(identity=identity, token=token)


__all__ = [
    "DisplayNameConflict",
    "IdentityProvisioningError",
    "IdentityResolver",
    "InvalidDisplayName",
    "ResolvedIdentity",
    "normalize_display_name",
]
