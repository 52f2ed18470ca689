from sqlalchemy import Column, Integer, String, Text, DateTime, Enum, Index
from portal.audience import Target, RefinementType, CreatorRole
from portal.database import Base


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Announcements authored once and broadcast to a targeted audience
class Announcement(Base):
    __tablename__ = "announcements"
    __table_args__ = (
        Index("ix_announcements_audience", "audience_type", "audience_value"),
        Index("ix_announcements_order", "created_at", "seq"),
        {"sqlite_autoincrement": True},
    )

    # Insertion order at the store; never reused, breaks created_at ties
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, index=True, nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    category = Column(String(100), nullable=False, default="General")

    # Audience, write-once
    target = Column(Enum(Target, name="announcement_target", values_callable=_enum_values), nullable=False)
    audience_type = Column(Enum(RefinementType, name="announcement_audience_type", values_callable=_enum_values))
    audience_value = Column(String(100))

    # Author, write-once
    created_by = Column(String(100), nullable=False)
    creator_name = Column(String(255))
    creator_role = Column(Enum(CreatorRole, name="announcement_creator_role", values_callable=_enum_values), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    edited_at = Column(DateTime(timezone=True))
    attachment_url = Column(Text)
