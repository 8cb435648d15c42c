from datetime import date, timedelta

import pytest

from actors import Actor
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from lecture_schedule import (
    create_course,
    generate_lectures,
    normalize_weekdays,
    parse_time,
    plan_lecture_dates,
)

MONDAY = date(2024, 1, 1)


def test_tuesday_thursday_series_from_a_monday():
    dates = plan_lecture_dates(MONDAY, ['tue', 'thu'], 8)
    assert len(dates) == 8
    assert dates[0] == date(2024, 1, 2)
    assert dates[-1] == date(2024, 1, 25)
    assert dates[-1].weekday() == 3


@pytest.mark.parametrize('days,count', [
    (['sun', 'tue', 'thu'], 12),
    (['sat'], 5),
    (['mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun'], 30),
])
def test_every_date_falls_on_a_selected_weekday(days, count):
    dates = plan_lecture_dates(MONDAY, days, count)
    assert len(dates) == count
    allowed = {('mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun').index(d) for d in days}
    assert all(d.weekday() in allowed for d in dates)
    assert dates == sorted(set(dates))


def test_start_date_counts_when_it_matches():
    assert plan_lecture_dates(MONDAY, ['mon'], 2) == [MONDAY, MONDAY + timedelta(days=7)]


def test_empty_weekday_set_is_rejected():
    with pytest.raises(ValidationError):
        plan_lecture_dates(MONDAY, [], 4)


def test_unknown_weekday_is_rejected():
    with pytest.raises(ValidationError) as exc:
        normalize_weekdays(['tue', 'funday'])
    assert exc.value.details['invalid'] == ['fun']


def test_weekdays_are_normalised_monday_first():
    assert normalize_weekdays(['Thu', 'sun', 'tue', 'thu']) == ['tue', 'thu', 'sun']


@pytest.mark.parametrize('count', [0, -3, 501])
def test_lecture_count_bounds(count):
    with pytest.raises(ValidationError):
        plan_lecture_dates(MONDAY, ['mon'], count)


def test_parse_time_normalises():
    assert parse_time('9:05') == '09:05'
    assert parse_time(None) is None
    with pytest.raises(ValidationError):
        parse_time('25:00')


def test_create_course_generates_numbered_lectures(make_course):
    course = make_course(start_date=MONDAY, lecture_days=['tue', 'thu'], lecture_count=8,
                         lecture_time='17:30')
    assert [l.lecture_number for l in course.lectures] == list(range(1, 9))
    assert all(l.time == '17:30' for l in course.lectures)
    assert all(l.attendance == 'pending' and not l.is_makeup for l in course.lectures)
    assert course.enrollments[0].is_primary


def test_generating_twice_is_a_conflict(make_course):
    course = make_course(lecture_count=3)
    with pytest.raises(ConflictError):
        generate_lectures(course)


def test_dual_course_needs_two_students(app, make_trainer, make_student):
    trainer = make_trainer()
    student = make_student()
    data = {'trainer_id': trainer.id, 'student_ids': [student.id], 'is_dual': True,
            'start_date': '2024-01-01', 'lecture_days': ['mon'], 'lecture_count': 4}
    with pytest.raises(ValidationError):
        create_course(data, Actor('admin'))


def test_unknown_trainer(app, make_student):
    student = make_student()
    data = {'trainer_id': 999, 'student_ids': [student.id], 'start_date': '2024-01-01',
            'lecture_days': ['mon'], 'lecture_count': 4}
    with pytest.raises(NotFoundError):
        create_course(data, Actor('admin'))


def test_trainers_cannot_create_courses(app, make_trainer, make_student):
    trainer = make_trainer()
    data = {'trainer_id': trainer.id, 'student_ids': [make_student().id],
            'start_date': '2024-01-01', 'lecture_days': ['mon'], 'lecture_count': 4}
    with pytest.raises(AuthorizationError):
        create_course(data, Actor('trainer', trainer.id))
