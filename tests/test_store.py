import asyncio
import io
from datetime import datetime, timezone

import pytest
from fastapi import UploadFile
from sqlalchemy import update

from portal.audience import ClassScoped, CreatorRole, Target
from portal.exceptions import InvalidAudienceError, NotFoundError, UploadError
from portal.models.announcements import Announcement
from portal.realtime.feed import MutationKind
from portal.realtime.scopes import AllAnnouncementsScope, AudienceScope, RecipientScope
from portal.resolver import AdminViewer, StudentViewer, TeacherViewer, is_recipient

EVERYTHING = AllAnnouncementsScope()


def upload(name="timetable.pdf"):
    return UploadFile(file=io.BytesIO(b"%PDF-1.4"), filename=name)


def capture(feed):
    events = []

    async def _open():
        await feed.open_channel(events.append, name="capture")

    return events, _open


async def test_create_then_scan_returns_identical_fields(store, make_draft):
    draft = make_draft(
        target=Target.STUDENTS,
        audience=("class", "10-A"),
        role=CreatorRole.CLASS_TEACHER,
        author="teacher-7",
        title="Science fair",
        content="Projects are due Monday.",
        category="Events",
    )
    announcement_id = await store.create(draft)

    [record] = await store.scan(RecipientScope(viewer=StudentViewer(class_section="10-A", student_id="s1")))
    assert record.id == announcement_id
    assert record.title == "Science fair"
    assert record.content == "Projects are due Monday."
    assert record.category == "Events"
    assert record.target == Target.STUDENTS
    assert record.target_audience.value == "10-A"
    assert record.created_by == "teacher-7"
    assert record.creator_role == CreatorRole.CLASS_TEACHER
    assert record.edited_at is None
    assert record.attachment_url is None
    assert record.audience == ClassScoped(class_section="10-A")
    assert record.created_at.tzinfo is not None


async def test_ids_are_unique(store, make_draft):
    ids = {await store.create(make_draft()) for _ in range(5)}
    assert len(ids) == 5


async def test_create_publishes_insert(store, feed, make_draft):
    events, open_channel = capture(feed)
    await open_channel()

    announcement_id = await store.create(make_draft(target=Target.TEACHERS))

    [event] = events
    assert event.kind == MutationKind.INSERT
    assert event.announcement_id == announcement_id
    assert event.record.target == Target.TEACHERS


async def test_invalid_audience_is_rejected_before_any_write(store, feed, uploader, make_draft):
    events, open_channel = capture(feed)
    await open_channel()
    draft = make_draft(target=Target.TEACHERS, audience=("class", "10-A"))

    with pytest.raises(InvalidAudienceError):
        await store.create(draft, upload())

    assert uploader.calls == []
    assert events == []
    assert await store.scan(EVERYTHING) == []


async def test_attachment_url_is_stored(store, uploader, make_draft):
    announcement_id = await store.create(make_draft(), upload("timetable.pdf"))

    record = await store.get(announcement_id)
    assert record.attachment_url == "https://files.example.test/announcements/timetable.pdf"
    assert uploader.calls == [("timetable.pdf", "announcements")]


async def test_failed_upload_persists_nothing(store, feed, uploader, make_draft):
    events, open_channel = capture(feed)
    await open_channel()
    uploader.fail = True

    with pytest.raises(UploadError):
        await store.create(make_draft(), upload())

    assert events == []
    assert await store.scan(EVERYTHING) == []


async def test_update_content_stamps_edited_at_only(store, feed, make_draft):
    announcement_id = await store.create(make_draft(target=Target.STUDENTS, audience=("class", "10-A")))
    before = await store.get(announcement_id)
    events, open_channel = capture(feed)
    await open_channel()

    updated = await store.update_content(announcement_id, "Rescheduled to Tuesday.")

    assert updated.content == "Rescheduled to Tuesday."
    assert updated.edited_at is not None
    assert updated.created_at == before.created_at
    assert updated.seq == before.seq
    assert updated.title == before.title
    assert updated.target_audience == before.target_audience
    assert updated.creator_role == before.creator_role
    [event] = events
    assert event.kind == MutationKind.UPDATE
    assert event.record == updated


async def test_update_unknown_id_raises_not_found(store):
    with pytest.raises(NotFoundError):
        await store.update_content("missing", "content")


async def test_delete_removes_and_publishes(store, feed, make_draft):
    announcement_id = await store.create(make_draft())
    events, open_channel = capture(feed)
    await open_channel()

    await store.delete(announcement_id)

    assert await store.scan(EVERYTHING) == []
    [event] = events
    assert event.kind == MutationKind.DELETE
    assert event.announcement_id == announcement_id
    with pytest.raises(NotFoundError):
        await store.get(announcement_id)


async def test_delete_unknown_id_raises_not_found(store):
    with pytest.raises(NotFoundError):
        await store.delete("missing")


async def test_concurrent_updates_resolve_last_write_wins(store, make_draft):
    announcement_id = await store.create(make_draft())

    results = await asyncio.gather(
        store.update_content(announcement_id, "first"),
        store.update_content(announcement_id, "second"),
        store.update_content(announcement_id, "third"),
    )

    # Whichever write committed last is what remains; nothing is merged
    stored = await store.get(announcement_id)
    assert (stored.content, stored.edited_at) in {(record.content, record.edited_at) for record in results}


async def test_created_at_is_strictly_increasing(store, make_draft):
    for _ in range(5):
        await store.create(make_draft())

    records = await store.scan(EVERYTHING)
    stamps = [record.created_at for record in records]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


async def test_scan_orders_by_created_at_then_insertion(store, session_factory, make_draft):
    first = await store.create(make_draft(title="first"))
    second = await store.create(make_draft(title="second"))
    # Clock skew: force the same timestamp onto both rows
    same = datetime(2000, 1, 5, 8, 0, tzinfo=timezone.utc)
    async with session_factory() as session:
        await session.execute(update(Announcement).values(created_at=same))
        await session.commit()
    third = await store.create(make_draft(title="third"))

    assert [record.id for record in await store.scan(EVERYTHING)] == [first, second, third]


async def test_scan_skip_and_limit(store, make_draft):
    ids = [await store.create(make_draft()) for _ in range(4)]

    page = await store.scan(EVERYTHING, skip=1, limit=2)

    assert [record.id for record in page] == ids[1:3]


async def test_recipient_scans_match_the_resolver(store, make_draft):
    drafts = [
        make_draft(target=Target.STUDENTS),
        make_draft(target=Target.TEACHERS),
        make_draft(target=Target.BOTH),
        make_draft(target=Target.STUDENTS, audience=("class", "10-A")),
        make_draft(target=Target.BOTH, audience=("class", "10-B")),
        make_draft(target=Target.STUDENTS, audience=("student", "s1")),
        make_draft(target=Target.STUDENTS, audience=("student", "s9")),
    ]
    for draft in drafts:
        await store.create(draft)
    everything = await store.scan(EVERYTHING)

    viewers = [
        StudentViewer(class_section="10-A", student_id="s1"),
        StudentViewer(class_section="10-B", student_id="s2"),
        TeacherViewer(assigned_class_sections=frozenset({"10-A"})),
        AdminViewer(role=CreatorRole.OWNER),
    ]
    for viewer in viewers:
        scanned = await store.scan(RecipientScope(viewer=viewer))
        expected = [record for record in everything if is_recipient(record.audience, viewer)]
        assert scanned == expected


async def test_audience_scope_selects_one_thread(store, make_draft):
    await store.create(make_draft(target=Target.STUDENTS, audience=("class", "10-A")))
    await store.create(make_draft(target=Target.BOTH, audience=("class", "10-A")))
    await store.create(make_draft(target=Target.STUDENTS))

    thread = await store.scan(AudienceScope(audience=ClassScoped(class_section="10-A")))

    assert len(thread) == 2
