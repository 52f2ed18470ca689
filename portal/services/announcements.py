import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional

from fastapi import UploadFile
from starlette.requests import HTTPConnection
from sqlalchemy import asc, delete, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from portal.audience import audience_columns, encode_audience
from portal.config import settings
from portal.database import AsyncSessionLocal
from portal.exceptions import NotFoundError
from portal.models.announcements import Announcement
from portal.realtime.feed import ChangeFeed, MutationKind
from portal.realtime.scopes import Scope
from portal.schemas.announcements import AnnouncementCreate, AnnouncementRecord
from portal.services.cloudinary import upload_attachment

logger = logging.getLogger(__name__)

Uploader = Callable[[UploadFile, str], Awaitable[str]]

_COLUMNS = tuple(Announcement.__table__.c)


class AnnouncementStore:
    """
    Authoritative collection of announcements.

    Every write is published on the change feed as soon as its commit returns,
    before the session is released, so events follow commit order. Writes are not
    coordinated with each other: concurrent content updates to the same
    announcement resolve as last write wins, in the order they reach the
    database.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        uploader: Uploader = upload_attachment,
        attachment_folder: str = settings.ATTACHMENT_FOLDER,
    ):
        self.feed = feed
        self._session_factory = session_factory
        self._uploader = uploader
        self._attachment_folder = attachment_folder
        self._last_stamp: Optional[datetime] = None

    def _stamp(self) -> datetime:
        # Strictly increasing within the process; the database breaks any
        # remaining tie with seq
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    async def create(self, draft: AnnouncementCreate, attachment: Optional[UploadFile] = None) -> str:
        """
        Validate, persist and publish a new announcement. Returns its id.

        Raises:
            InvalidAudienceError: Before any upload or write.
            UploadError: The attachment failed; nothing is persisted.
        """
        spec = encode_audience(draft.target, draft.target_audience)
        _, audience_type, audience_value = audience_columns(spec)

        attachment_url = None
        if attachment is not None:
            attachment_url = await self._uploader(attachment, self._attachment_folder)
            logger.info(f"Uploaded attachment {attachment.filename} to {attachment_url}")

        announcement = Announcement(
            id=str(uuid.uuid4()),
            title=draft.title,
            content=draft.content,
            category=draft.category,
            target=draft.target,
            audience_type=audience_type,
            audience_value=audience_value,
            created_by=draft.created_by,
            creator_name=draft.creator_name,
            creator_role=draft.creator_role,
            created_at=self._stamp(),
            attachment_url=attachment_url,
        )

        async with self._session_factory() as session:
            session.add(announcement)
            await session.commit()
            record = AnnouncementRecord.from_row(announcement)
            self.feed.publish(MutationKind.INSERT, record)

        logger.info(
            f"Announcement {record.id} created by {record.created_by} "
            f"[{record.creator_role.value}] for {spec.kind}"
        )
        return record.id

    async def update_content(self, announcement_id: str, content: str) -> AnnouncementRecord:
        """Replace the content and stamp edited_at; audience and author never change."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Announcement)
                .where(Announcement.id == announcement_id)
                .values(content=content, edited_at=datetime.now(timezone.utc))
                .returning(*_COLUMNS)
            )
            row = result.first()
            if row is None:
                raise NotFoundError(announcement_id)
            record = AnnouncementRecord.from_row(row)
            await session.commit()
            self.feed.publish(MutationKind.UPDATE, record)

        logger.info(f"Announcement {announcement_id} content updated")
        return record

    async def delete(self, announcement_id: str) -> None:
        """Hard-delete an announcement."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Announcement)
                .where(Announcement.id == announcement_id)
                .returning(*_COLUMNS)
            )
            row = result.first()
            if row is None:
                raise NotFoundError(announcement_id)
            record = AnnouncementRecord.from_row(row)
            await session.commit()
            self.feed.publish(MutationKind.DELETE, record)

        logger.info(f"Announcement {announcement_id} deleted")

    async def get(self, announcement_id: str) -> AnnouncementRecord:
        async with self._session_factory() as session:
            result = await session.execute(select(Announcement).where(Announcement.id == announcement_id))
            announcement = result.scalars().first()
            if announcement is None:
                raise NotFoundError(announcement_id)
            return AnnouncementRecord.from_row(announcement)

    async def scan(self, scope: Scope, skip: int = 0, limit: Optional[int] = None) -> List[AnnouncementRecord]:
        """
        Full scan of the announcements in ``scope``, oldest first.

        The scope's SQL predicate narrows the query and every row is checked
        again with the scope's own matcher.
        """
        query = (
            select(Announcement)
            .where(scope.where_clause())
            .order_by(asc(Announcement.created_at), asc(Announcement.seq))
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        records = [AnnouncementRecord.from_row(row) for row in rows]
        matching = [record for record in records if scope.matches(record)]
        if len(matching) != len(records):
            logger.warning(f"Scan for {scope} dropped {len(records) - len(matching)} rows failing the audience check")
        end = None if limit is None else skip + limit
        return matching[skip:end]


def get_store(connection: HTTPConnection) -> AnnouncementStore:
    """Dependency returning the application's announcement store."""
    return connection.app.state.store
