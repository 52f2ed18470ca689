from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import true
from sqlalchemy.sql.elements import ColumnElement

from portal.audience import (
    AllStudents,
    AllTeachers,
    AudienceSpec,
    Everyone,
    Target,
    describe_audience,
    encode_audience,
)
from portal.exceptions import InvalidAudienceError
from portal.resolver import AdminViewer, ViewerContext, compile_spec, compile_viewer, is_recipient
from portal.schemas.announcements import AnnouncementRecord


class _Scope(BaseModel):
    model_config = ConfigDict(frozen=True)

    def matches(self, record: AnnouncementRecord) -> bool:
        raise NotImplementedError

    def where_clause(self) -> ColumnElement:
        raise NotImplementedError


class RecipientScope(_Scope):
    """Announcements a viewer receives: a student dashboard or a teacher inbox."""
    kind: Literal["recipient"] = "recipient"
    viewer: ViewerContext

    def matches(self, record: AnnouncementRecord) -> bool:
        try:
            return is_recipient(record.audience, self.viewer)
        except InvalidAudienceError:
            return False

    def where_clause(self) -> ColumnElement:
        return compile_viewer(self.viewer)

    def __str__(self):
        return f"recipient:{self.viewer.kind}"


class AudienceScope(_Scope):
    """A composer thread showing everything addressed to exactly one audience."""
    kind: Literal["audience"] = "audience"
    audience: AudienceSpec

    def matches(self, record: AnnouncementRecord) -> bool:
        try:
            return record.audience == self.audience
        except InvalidAudienceError:
            return False

    def where_clause(self) -> ColumnElement:
        return compile_spec(self.audience)

    def __str__(self):
        return f"audience:{describe_audience(self.audience)}"


class AllAnnouncementsScope(_Scope):
    """Administrator overview of every announcement."""
    kind: Literal["all"] = "all"

    def matches(self, record: AnnouncementRecord) -> bool:
        return True

    def where_clause(self) -> ColumnElement:
        return true()

    def __str__(self):
        return "all"


Scope = Annotated[
    Union[RecipientScope, AudienceScope, AllAnnouncementsScope],
    Field(discriminator="kind"),
]


def default_scope(viewer: ViewerContext) -> Scope:
    """Students and teachers see what they receive; administrators see everything."""
    if isinstance(viewer, AdminViewer):
        return AllAnnouncementsScope()
    return RecipientScope(viewer=viewer)


_NAMED_AUDIENCES = {
    "students": AllStudents(),
    "teachers": AllTeachers(),
    "everyone": Everyone(),
}


def parse_scope(expression: Optional[str], viewer: ViewerContext) -> Scope:
    """
    Parse a scope expression as sent by clients.

    ``inbox`` (or nothing) is the viewer's default scope, ``all`` every
    announcement, ``students``/``teachers``/``everyone`` a coarse audience
    thread, and ``class:<section>``/``student:<id>`` a refined one.
    """
    expression = (expression or "inbox").strip()
    if expression == "inbox":
        return default_scope(viewer)
    if expression == "all":
        return AllAnnouncementsScope()
    if expression in _NAMED_AUDIENCES:
        return AudienceScope(audience=_NAMED_AUDIENCES[expression])

    prefix, _, value = expression.partition(":")
    if prefix in ("class", "student") and value:
        return AudienceScope(audience=encode_audience(Target.STUDENTS, {"type": prefix, "value": value}))
    raise InvalidAudienceError(f"Unknown scope '{expression}'")
