import pytest

from portal.audience import (
    AllStudents,
    AllTeachers,
    ClassScoped,
    Everyone,
    RefinementType,
    StudentScoped,
    Target,
    TargetAudience,
    audience_columns,
    describe_audience,
    encode_audience,
)
from portal.exceptions import InvalidAudienceError


def test_coarse_targets_cover_their_whole_population():
    assert encode_audience(Target.STUDENTS) == AllStudents()
    assert encode_audience(Target.TEACHERS) == AllTeachers()
    assert encode_audience(Target.BOTH) == Everyone()


def test_plain_strings_are_accepted():
    assert encode_audience("teachers") == AllTeachers()
    assert encode_audience("students", {"type": "class", "value": "10-A"}) == ClassScoped(class_section="10-A")


def test_class_refinement_narrows_students():
    spec = encode_audience(Target.STUDENTS, TargetAudience(type=RefinementType.CLASS, value="10-A"))
    assert spec == ClassScoped(class_section="10-A")


def test_student_refinement_narrows_students():
    spec = encode_audience(Target.STUDENTS, TargetAudience(type=RefinementType.STUDENT, value="stu-42"))
    assert spec == StudentScoped(student_id="stu-42")


def test_refinement_under_both_stays_within_students():
    spec = encode_audience(Target.BOTH, TargetAudience(type=RefinementType.CLASS, value="9-B"))
    assert spec == ClassScoped(class_section="9-B")


def test_refinement_value_is_trimmed():
    spec = encode_audience(Target.STUDENTS, {"type": "class", "value": "  10-A "})
    assert spec == ClassScoped(class_section="10-A")


@pytest.mark.parametrize("kind", ["class", "student"])
def test_refinement_under_teachers_is_rejected(kind):
    with pytest.raises(InvalidAudienceError):
        encode_audience(Target.TEACHERS, {"type": kind, "value": "10-A"})


def test_blank_refinement_value_is_rejected():
    with pytest.raises(InvalidAudienceError):
        encode_audience(Target.STUDENTS, {"type": "class", "value": "   "})


def test_unknown_target_is_rejected():
    with pytest.raises(InvalidAudienceError):
        encode_audience("parents")


def test_malformed_refinement_is_rejected():
    with pytest.raises(InvalidAudienceError):
        encode_audience(Target.STUDENTS, {"type": "department", "value": "science"})


def test_specs_are_hashable_and_compare_by_value():
    assert len({ClassScoped(class_section="10-A"), ClassScoped(class_section="10-A"), Everyone()}) == 2


def test_audience_columns_are_canonical():
    assert audience_columns(Everyone()) == (Target.BOTH, None, None)
    assert audience_columns(ClassScoped(class_section="10-A")) == (Target.STUDENTS, RefinementType.CLASS, "10-A")
    assert audience_columns(StudentScoped(student_id="s1")) == (Target.STUDENTS, RefinementType.STUDENT, "s1")


def test_describe_audience():
    assert describe_audience(AllTeachers()) == "All Teachers"
    assert describe_audience(ClassScoped(class_section="10-A")) == "Class 10-A"
