from datetime import datetime
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, field_validator


class UserInfo(BaseModel):
    """Attribute snapshot of one user, pre-resolved by the identity collaborator."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    name: Optional[str] = None
    inviter_id: Optional[str] = None
    github_stars: Tuple[str, ...] = ()
    vip: int = 0
    company: Optional[str] = None
    registered_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None

    @field_validator("github_stars", mode="before")
    @classmethod
    def _split_stars(cls, value):
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return tuple(value)

    @property
    def has_inviter(self) -> bool:
        return bool(self.inviter_id and self.inviter_id.strip())

    def has_starred(self, resource: str) -> bool:
        return resource in self.github_stars
