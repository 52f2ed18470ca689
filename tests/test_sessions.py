import pytest

from portal.audience import ClassScoped, CreatorRole, Everyone, StudentScoped, Target
from portal.exceptions import InvalidAudienceError
from portal.realtime.scopes import (
    AllAnnouncementsScope,
    AudienceScope,
    RecipientScope,
    default_scope,
    parse_scope,
)
from portal.realtime.sessions import ViewerSession
from portal.realtime.subscriptions import SubscriptionState
from portal.resolver import AdminViewer, StudentViewer, TeacherViewer

STUDENT = StudentViewer(class_section="10-A", student_id="s1")
TEACHER = TeacherViewer(assigned_class_sections=frozenset({"10-A"}))
OWNER = AdminViewer(role=CreatorRole.OWNER)


def test_default_scope_is_the_inbox_for_recipients():
    assert default_scope(STUDENT) == RecipientScope(viewer=STUDENT)
    assert default_scope(TEACHER) == RecipientScope(viewer=TEACHER)


def test_default_scope_is_everything_for_administrators():
    assert default_scope(OWNER) == AllAnnouncementsScope()


@pytest.mark.parametrize(
    "expression,expected",
    [
        (None, RecipientScope(viewer=TEACHER)),
        ("inbox", RecipientScope(viewer=TEACHER)),
        ("all", AllAnnouncementsScope()),
        ("everyone", AudienceScope(audience=Everyone())),
        ("class:10-A", AudienceScope(audience=ClassScoped(class_section="10-A"))),
        (" student:s7 ", AudienceScope(audience=StudentScoped(student_id="s7"))),
    ],
)
def test_parse_scope(expression, expected):
    assert parse_scope(expression, TEACHER) == expected


@pytest.mark.parametrize("expression", ["parents", "class:", "department:science", "class:   "])
def test_parse_scope_rejects_unknown_expressions(expression):
    with pytest.raises(InvalidAudienceError):
        parse_scope(expression, TEACHER)


async def test_watching_the_same_scope_twice_reuses_the_handle(manager):
    async with ViewerSession(manager, STUDENT) as session:
        first = await session.watch(default_scope(STUDENT))
        second = await session.watch(default_scope(STUDENT))

        assert first is second
        assert manager.consumer_count(RecipientScope(viewer=STUDENT)) == 1


async def test_leaving_the_session_closes_every_subscription(manager, feed):
    async with ViewerSession(manager, OWNER) as session:
        everything = await session.watch(default_scope(OWNER))
        thread = await session.watch(parse_scope("class:10-A", OWNER))
        assert len(session.scopes) == 2
        assert feed.channel_count == 2

    assert everything.state == SubscriptionState.CLOSED
    assert thread.state == SubscriptionState.CLOSED
    assert session.scopes == []
    assert manager.active_scopes() == []
    assert feed.channel_count == 0


async def test_session_close_leaves_other_sessions_running(manager, store, make_draft):
    other = ViewerSession(manager, StudentViewer(class_section="10-B", student_id="s2"))
    kept = await other.watch(RecipientScope(viewer=other.viewer))

    async with ViewerSession(manager, other.viewer) as session:
        await session.watch(RecipientScope(viewer=other.viewer))
        assert manager.consumer_count(kept.scope) == 2

    assert manager.consumer_count(kept.scope) == 1
    await store.create(make_draft(target=Target.STUDENTS))
    assert kept.state == SubscriptionState.ACTIVE
    assert len(kept.announcements) == 1
    other.close()


async def test_unwatch_releases_one_scope(manager):
    async with ViewerSession(manager, TEACHER) as session:
        inbox = await session.watch(default_scope(TEACHER))
        thread = await session.watch(parse_scope("teachers", TEACHER))

        session.unwatch(inbox.scope)

        assert inbox.state == SubscriptionState.CLOSED
        assert thread.state == SubscriptionState.ACTIVE
        assert session.scopes == [thread.scope]
