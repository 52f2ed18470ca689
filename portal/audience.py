from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from portal.exceptions import InvalidAudienceError


class Target(str, Enum):
    STUDENTS = "students"
    TEACHERS = "teachers"
    BOTH = "both"


class RefinementType(str, Enum):
    CLASS = "class"
    STUDENT = "student"


class CreatorRole(str, Enum):
    OWNER = "Owner"
    PRINCIPAL = "Principal"
    TEACHER = "Teacher"
    CLASS_TEACHER = "Class Teacher"
    SUBJECT_TEACHER = "Subject Teacher"


class TargetAudience(BaseModel):
    """Optional narrowing of a coarse target to one class-section or one student."""
    model_config = ConfigDict(frozen=True)

    type: RefinementType
    value: str


# Audience variants. Every announcement maps to exactly one of these.

class _Audience(BaseModel):
    model_config = ConfigDict(frozen=True)


class AllStudents(_Audience):
    kind: Literal["all_students"] = "all_students"


class AllTeachers(_Audience):
    kind: Literal["all_teachers"] = "all_teachers"


class Everyone(_Audience):
    kind: Literal["everyone"] = "everyone"


class ClassScoped(_Audience):
    kind: Literal["class"] = "class"
    class_section: str


class StudentScoped(_Audience):
    kind: Literal["student"] = "student"
    student_id: str


AudienceSpec = Annotated[
    Union[AllStudents, AllTeachers, Everyone, ClassScoped, StudentScoped],
    Field(discriminator="kind"),
]

# Targets whose population contains students, the only population refinements live in
_STUDENT_TARGETS = (Target.STUDENTS, Target.BOTH)

_COARSE = {
    Target.STUDENTS: AllStudents(),
    Target.TEACHERS: AllTeachers(),
    Target.BOTH: Everyone(),
}


def _coerce_target(target: Union[Target, str]) -> Target:
    try:
        return Target(target)
    except ValueError:
        raise InvalidAudienceError(f"Unknown target '{target}'")


def _coerce_refinement(
    refinement: Union[TargetAudience, Dict[str, Any], None]
) -> Optional[TargetAudience]:
    if refinement is None or isinstance(refinement, TargetAudience):
        return refinement
    try:
        return TargetAudience.model_validate(refinement)
    except ValidationError:
        raise InvalidAudienceError(f"Malformed target audience: {refinement!r}")


def encode_audience(
    target: Union[Target, str],
    refinement: Union[TargetAudience, Dict[str, Any], None] = None,
) -> AudienceSpec:
    """
    Turn an author's target and optional refinement into an AudienceSpec.

    A refinement may only narrow the population named by ``target``: class and
    student refinements live inside the student population, so they require
    ``target`` to be ``students`` or ``both``.

    Raises:
        InvalidAudienceError: If the target is unknown, the refinement is
            malformed or blank, or the refinement lies outside the target.
    """
    target = _coerce_target(target)
    refinement = _coerce_refinement(refinement)

    if refinement is None:
        return _COARSE[target]

    if target not in _STUDENT_TARGETS:
        raise InvalidAudienceError(
            f"A {refinement.type.value} refinement cannot be used with target '{target.value}'"
        )

    value = refinement.value.strip()
    if not value:
        raise InvalidAudienceError(f"A {refinement.type.value} refinement needs a value")

    if refinement.type == RefinementType.CLASS:
        return ClassScoped(class_section=value)
    return StudentScoped(student_id=value)


def audience_columns(spec: AudienceSpec) -> Tuple[Target, Optional[RefinementType], Optional[str]]:
    """Canonical (target, refinement type, refinement value) for a spec."""
    if isinstance(spec, AllStudents):
        return Target.STUDENTS, None, None
    if isinstance(spec, AllTeachers):
        return Target.TEACHERS, None, None
    if isinstance(spec, Everyone):
        return Target.BOTH, None, None
    if isinstance(spec, ClassScoped):
        return Target.STUDENTS, RefinementType.CLASS, spec.class_section
    if isinstance(spec, StudentScoped):
        return Target.STUDENTS, RefinementType.STUDENT, spec.student_id
    raise InvalidAudienceError(f"Unknown audience {spec!r}")


def describe_audience(spec: AudienceSpec) -> str:
    if isinstance(spec, AllStudents):
        return "All Students"
    if isinstance(spec, AllTeachers):
        return "All Teachers"
    if isinstance(spec, Everyone):
        return "Everyone"
    if isinstance(spec, ClassScoped):
        return f"Class {spec.class_section}"
    if isinstance(spec, StudentScoped):
        return f"Student {spec.student_id}"
    return "Unknown audience"
