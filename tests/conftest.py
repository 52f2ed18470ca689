import os
import tempfile

# Settings are read at import time; point them at a throwaway sqlite database
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "portal-tests.db"),
)
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from portal.audience import CreatorRole, Target, TargetAudience
from portal.exceptions import UploadError
from portal.models import Base
from portal.realtime.feed import ChangeFeed
from portal.realtime.subscriptions import ReconnectPolicy, SubscriptionManager
from portal.schemas.announcements import AnnouncementCreate
from portal.services.announcements import AnnouncementStore


class FakeUploader:
    """Stands in for Cloudinary; remembers what it was asked to store."""

    def __init__(self):
        self.calls = []
        self.fail = False

    async def __call__(self, file, folder):
        self.calls.append((file.filename, folder))
        if self.fail:
            raise UploadError("Failed to upload attachment: storage unavailable")
        return f"https://files.example.test/{folder}/{file.filename}"


class Recorder:
    """Consumer that keeps every FeedUpdate it is handed."""

    def __init__(self):
        self.updates = []

    def __call__(self, update):
        self.updates.append(update)

    @property
    def last(self):
        return self.updates[-1]

    @property
    def changes(self):
        return [update.change.value for update in self.updates]

    def ids(self):
        return [announcement.id for announcement in self.last.announcements]


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def store(feed, session_factory, uploader):
    return AnnouncementStore(feed, session_factory, uploader)


@pytest.fixture
async def manager(store):
    manager = SubscriptionManager(store, policy=ReconnectPolicy(attempts=3, backoff=0, max_backoff=0))
    yield manager
    manager.close_all()


@pytest.fixture
def recorder():
    return Recorder


@pytest.fixture
def make_draft():
    def _make_draft(
        target=Target.BOTH,
        audience=None,
        role=CreatorRole.PRINCIPAL,
        author="principal-1",
        **fields,
    ):
        target_audience = None
        if audience is not None:
            kind, value = audience
            target_audience = TargetAudience(type=kind, value=value)
        values = {
            "title": "Notice",
            "content": "School will close early on Friday.",
            "category": "General",
        }
        values.update(fields)
        return AnnouncementCreate(
            target=target,
            target_audience=target_audience,
            created_by=author,
            creator_name=f"{role.value} {author}",
            creator_role=role,
            **values,
        )
    return _make_draft
