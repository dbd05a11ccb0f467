"""Pydantic schemas for identities and session payloads."""
from typing import Optional

from pydantic import BaseModel, Field


class Identity(BaseModel):
    """A stable user identity.

    The id survives reconnects and is shared by every simultaneous
    connection of the same user; the display name is mutable.
    """
    id: str = Field(..., description="Stable identity id")
    display_name: str = Field(..., description="Current display name")
    email: Optional[str] = Field(default=None, description="Contact email, if known")


class SessionClaims(BaseModel):
    """Claims carried by the signed session cookie.

    Attributes:
        sub: Identity id, absent until the identity has been provisioned.
        name: Display name chosen at login (or after a rename).
    """
    sub: Optional[str] = None
    name: str = Field(..., min_length=1)


class NicknameRequest(BaseModel):
    """Request body for ``POST /login`` and ``POST /api/user/nickname``."""
    nickname: str = ""
