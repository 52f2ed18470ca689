from datetime import datetime, timezone
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator

from portal.audience import (
    AudienceSpec,
    CreatorRole,
    Target,
    TargetAudience,
    encode_audience,
)


class AnnouncementBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    category: str = Field("General", max_length=100)
    target: Target
    target_audience: Optional[TargetAudience] = None


class AnnouncementCreate(AnnouncementBase):
    created_by: str
    creator_name: Optional[str] = None
    creator_role: CreatorRole


class AnnouncementContentUpdate(BaseModel):
    content: str = Field(..., min_length=1)


class AnnouncementRecord(AnnouncementBase):
    """An announcement as stored, the unit delivered to viewers."""
    model_config = ConfigDict(frozen=True)

    id: str
    seq: int
    created_by: str
    creator_name: Optional[str] = None
    creator_role: CreatorRole
    created_at: datetime
    edited_at: Optional[datetime] = None
    attachment_url: Optional[str] = None

    @field_validator("created_at", "edited_at")
    @classmethod
    def ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Some backends (sqlite) hand timestamps back without tzinfo
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def from_row(cls, row) -> "AnnouncementRecord":
        target_audience = None
        if row.audience_type is not None:
            target_audience = TargetAudience(type=row.audience_type, value=row.audience_value)
        return cls(
            id=row.id,
            seq=row.seq,
            title=row.title,
            content=row.content,
            category=row.category,
            target=row.target,
            target_audience=target_audience,
            created_by=row.created_by,
            creator_name=row.creator_name,
            creator_role=row.creator_role,
            created_at=row.created_at,
            edited_at=row.edited_at,
            attachment_url=row.attachment_url,
        )

    @property
    def audience(self) -> AudienceSpec:
        return encode_audience(self.target, self.target_audience)

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        return (self.created_at, self.seq)
