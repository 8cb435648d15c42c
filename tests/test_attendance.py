from datetime import date

import pytest

from actors import SYSTEM, Actor
from attendance import bulk_save_lectures, check_modifiable, set_lecture_field
from completion import calculate_completion_percentage, completed_lecture_count, course_completion
from db_utils import unit_of_work
from errors import AuthorizationError, ModificationError, ValidationError
from models import Lecture, db


def test_present_marks_lecture_completed(make_course):
    course = make_course()
    lecture = set_lecture_field(course.lectures[0].id, 'attendance', 'present', SYSTEM)
    db.session.commit()
    assert lecture.is_completed
    assert course_completion(course) == 10


def test_absent_also_counts_as_held(make_course):
    course = make_course()
    lecture = set_lecture_field(course.lectures[0].id, 'attendance', 'absent', SYSTEM)
    assert lecture.is_completed


def test_back_to_pending_clears_completion(make_course):
    course = make_course()
    lecture_id = course.lectures[0].id
    set_lecture_field(lecture_id, 'attendance', 'present', SYSTEM)
    lecture = set_lecture_field(lecture_id, 'attendance', 'pending', SYSTEM)
    assert not lecture.is_completed


def test_text_fields_are_written_and_trimmed(make_course):
    course = make_course()
    lecture = set_lecture_field(course.lectures[0].id, 'activity', '  Role play  ', SYSTEM)
    assert lecture.activity == 'Role play'
    assert not lecture.is_completed


def test_text_field_length_is_limited(make_course):
    course = make_course()
    with pytest.raises(ValidationError):
        set_lecture_field(course.lectures[0].id, 'homework', 'x' * 300, SYSTEM)


def test_unknown_field_is_rejected(make_course):
    course = make_course()
    with pytest.raises(ValidationError):
        set_lecture_field(course.lectures[0].id, 'date', '2030-01-01', SYSTEM)


def test_postponement_value_needs_new_date(make_course):
    course = make_course()
    with pytest.raises(ValidationError):
        set_lecture_field(course.lectures[0].id, 'attendance', 'postponed_by_student', SYSTEM)


def test_postponement_value_is_not_per_student(make_course):
    course = make_course(is_dual=True)
    lecture = course.lectures[0]
    with pytest.raises(ValidationError) as exc:
        set_lecture_field(lecture.id, 'attendance', 'postponed_by_student', SYSTEM,
                          course.student_ids[0], new_date=date.today().isoformat())
    assert exc.value.details['field'] == 'student_id'
    assert lecture.attendance == 'pending'
    assert lecture.makeup is None


def test_future_lecture_is_locked(make_course):
    course = make_course(days_ago=1, lecture_count=4)
    yesterday, today_lecture, future = course.lectures[0], course.lectures[1], course.lectures[2]
    assert check_modifiable(yesterday)['type'] == 'past'
    assert check_modifiable(today_lecture) == {'can_modify': True, 'reason': None, 'type': 'today'}
    assert check_modifiable(future) == {'can_modify': False, 'reason': 'future lecture locked',
                                        'type': 'future'}
    for field, value in (('attendance', 'present'), ('notes', 'early')):
        with pytest.raises(ModificationError):
            set_lecture_field(future.id, field, value, SYSTEM)
    set_lecture_field(today_lecture.id, 'attendance', 'present', SYSTEM)


def test_gate_uses_the_supplied_day(make_course):
    course = make_course(start_date=date(2024, 3, 1), lecture_count=3)
    lecture = course.lectures[2]
    assert not check_modifiable(lecture, today=date(2024, 3, 2))['can_modify']
    assert check_modifiable(lecture, today=date(2024, 3, 3))['type'] == 'today'


def test_dual_course_tracks_students_independently(make_course):
    course = make_course(is_dual=True)
    first, second = course.student_ids
    lecture_id = course.lectures[0].id

    lecture = set_lecture_field(lecture_id, 'attendance', 'present', SYSTEM, first)
    assert lecture.is_completed
    assert lecture.attendance == 'pending'
    set_lecture_field(lecture_id, 'homework', 'Page 4', SYSTEM, second)
    lecture = set_lecture_field(lecture_id, 'attendance', 'absent', SYSTEM, second)
    db.session.commit()

    assert lecture.student_attendance[first]['attendance'] == 'present'
    assert lecture.student_attendance[second] == {
        'attendance': 'absent', 'activity': None, 'homework': 'Page 4', 'notes': None,
    }
    lecture = set_lecture_field(lecture_id, 'attendance', 'pending', SYSTEM, first)
    assert lecture.is_completed
    lecture = set_lecture_field(lecture_id, 'attendance', 'pending', SYSTEM, second)
    assert not lecture.is_completed


def test_student_id_requires_dual_enrollment(make_course, make_student):
    single = make_course()
    with pytest.raises(ValidationError):
        set_lecture_field(single.lectures[0].id, 'attendance', 'present', SYSTEM, single.student_ids[0])
    dual = make_course(is_dual=True)
    outsider = make_student()
    with pytest.raises(ValidationError):
        set_lecture_field(dual.lectures[0].id, 'attendance', 'present', SYSTEM, outsider.id)


def test_trainers_edit_only_their_own_courses(make_course, make_trainer):
    course = make_course()
    other = make_trainer()
    with pytest.raises(AuthorizationError):
        set_lecture_field(course.lectures[0].id, 'attendance', 'present', Actor('trainer', other.id))
    with pytest.raises(AuthorizationError):
        set_lecture_field(course.lectures[0].id, 'attendance', 'present', Actor('finance'))
    lecture = set_lecture_field(course.lectures[0].id, 'attendance', 'present',
                                Actor('trainer', course.trainer_id))
    assert lecture.is_completed


def test_due_evaluation_blocks_trainer_attendance(make_course, hold):
    course = make_course()
    hold(*course.lectures[:5])
    trainer = Actor('trainer', course.trainer_id)
    sixth = course.lectures[5]

    with pytest.raises(ModificationError) as exc:
        set_lecture_field(sixth.id, 'attendance', 'present', trainer)
    assert exc.value.details['reason'] == 'evaluation_required'

    set_lecture_field(sixth.id, 'activity', 'Review', trainer)
    assert set_lecture_field(sixth.id, 'attendance', 'present', Actor('customer_service')).is_completed


def test_bulk_save_applies_every_entry(make_course):
    course = make_course()
    entries = [
        {'lecture_id': course.lectures[0].id, 'attendance': 'present', 'activity': 'Warm up'},
        {'lecture_id': course.lectures[1].id, 'attendance': 'absent'},
        {'lecture_id': course.lectures[2].id, 'notes': 'Late start'},
    ]
    with unit_of_work():
        result = bulk_save_lectures(entries, SYSTEM)
    assert result == {'saved_count': 3}
    assert completed_lecture_count(course.lectures) == 2
    assert course.lectures[0].activity == 'Warm up'


def test_bulk_save_is_all_or_nothing(make_course):
    course = make_course(days_ago=2, lecture_count=5)
    first_id, future_id = course.lectures[0].id, course.lectures[4].id
    entries = [
        {'lecture_id': first_id, 'attendance': 'present'},
        {'lecture_id': future_id, 'attendance': 'present'},
        {'lecture_id': 12345, 'attendance': 'present'},
        {'lecture_id': first_id, 'attendance': 'postponed_holiday'},
    ]
    with pytest.raises(ValidationError) as exc:
        with unit_of_work():
            bulk_save_lectures(entries, SYSTEM)

    invalid = exc.value.details['invalid']
    assert [item['index'] for item in invalid] == [1, 2, 3]
    assert invalid[0]['error'] == 'modification_error'
    assert invalid[1]['error'] == 'not_found'
    assert db.session.get(Lecture, first_id).attendance == 'pending'


def test_bulk_save_rejects_empty_batch(app):
    with pytest.raises(ValidationError):
        bulk_save_lectures([], SYSTEM)


def test_completion_is_monotonic_and_bounded(make_course, hold):
    course = make_course(lecture_count=7, days_ago=7)
    previous = course_completion(course)
    assert previous == 0
    for lecture in course.lectures:
        hold(lecture)
        current = course_completion(course)
        assert previous <= current <= 100
        previous = current
    assert previous == 100


def test_completion_prefers_declared_count(make_course, hold):
    course = make_course(lecture_count=8)
    hold(course.lectures[0])
    partial_page = course.lectures[:2]
    assert calculate_completion_percentage(partial_page, lecture_count=8) == 13
    assert calculate_completion_percentage(partial_page) == 50
    assert calculate_completion_percentage([], lecture_count=0) == 0
    assert calculate_completion_percentage(partial_page, precomputed=140) == 100
    assert calculate_completion_percentage(partial_page, precomputed=42) == 42
