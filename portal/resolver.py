"""
Audience resolution: decides whether a viewer is a recipient of an audience,
and compiles the same rules into SQL predicates for the announcements table.
"""
from typing import Annotated, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, false, or_
from sqlalchemy.sql.elements import ColumnElement

from portal.audience import (
    AllStudents,
    AllTeachers,
    AudienceSpec,
    ClassScoped,
    CreatorRole,
    Everyone,
    RefinementType,
    StudentScoped,
    Target,
)
from portal.models.announcements import Announcement


class _Viewer(BaseModel):
    model_config = ConfigDict(frozen=True)


class StudentViewer(_Viewer):
    kind: Literal["student"] = "student"
    class_section: str
    student_id: str


class TeacherViewer(_Viewer):
    kind: Literal["teacher"] = "teacher"
    assigned_class_sections: FrozenSet[str] = frozenset()


class AdminViewer(_Viewer):
    """Principal or Owner. Administrators author announcements, they never receive them."""
    kind: Literal["admin"] = "admin"
    role: Literal[CreatorRole.PRINCIPAL, CreatorRole.OWNER]


ViewerContext = Annotated[
    Union[StudentViewer, TeacherViewer, AdminViewer],
    Field(discriminator="kind"),
]


def is_recipient(spec: AudienceSpec, viewer: Optional[ViewerContext]) -> bool:
    """
    Return True if ``viewer`` should receive an announcement addressed to ``spec``.

    Pure and total: unknown specs, administrators and unresolved viewers
    (``None``) never match.
    """
    if not isinstance(viewer, (StudentViewer, TeacherViewer)):
        return False

    if isinstance(spec, Everyone):
        return True
    if isinstance(spec, AllStudents):
        return isinstance(viewer, StudentViewer)
    if isinstance(spec, AllTeachers):
        return isinstance(viewer, TeacherViewer)
    if isinstance(spec, ClassScoped):
        # Only the students of the class, not the teachers assigned to it
        return isinstance(viewer, StudentViewer) and viewer.class_section == spec.class_section
    if isinstance(spec, StudentScoped):
        return isinstance(viewer, StudentViewer) and viewer.student_id == spec.student_id
    return False


def recipient_specs(viewer: Optional[ViewerContext]) -> List[AudienceSpec]:
    """Every audience the viewer is a recipient of."""
    if isinstance(viewer, StudentViewer):
        return [
            Everyone(),
            AllStudents(),
            ClassScoped(class_section=viewer.class_section),
            StudentScoped(student_id=viewer.student_id),
        ]
    if isinstance(viewer, TeacherViewer):
        return [Everyone(), AllTeachers()]
    return []


# Predicate builder

def _coarse(target: Target) -> ColumnElement:
    return and_(Announcement.target == target, Announcement.audience_type.is_(None))


def _refined(kind: RefinementType, value: str) -> ColumnElement:
    return and_(Announcement.audience_type == kind, Announcement.audience_value == value)


def compile_spec(spec: AudienceSpec) -> ColumnElement:
    """SQL predicate selecting announcements stored with exactly this audience."""
    if isinstance(spec, AllStudents):
        return _coarse(Target.STUDENTS)
    if isinstance(spec, AllTeachers):
        return _coarse(Target.TEACHERS)
    if isinstance(spec, Everyone):
        return _coarse(Target.BOTH)
    if isinstance(spec, ClassScoped):
        return _refined(RefinementType.CLASS, spec.class_section)
    if isinstance(spec, StudentScoped):
        return _refined(RefinementType.STUDENT, spec.student_id)
    return false()


def compile_viewer(viewer: Optional[ViewerContext]) -> ColumnElement:
    """SQL predicate selecting the announcements a viewer receives."""
    specs = recipient_specs(viewer)
    if not specs:
        return false()
    return or_(*[compile_spec(spec) for spec in specs])
