from uuid import UUID

from pydantic import BaseModel


class CurrentUser(BaseModel):
    """Authenticated caller as asserted by the identity provider's access token."""

    id: UUID
    school_id: UUID
    role: str
