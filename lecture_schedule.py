"""Lecture series generation and course creation.

A course's lectures are planned by walking forward one day at a time from the
start date and emitting every date whose weekday is in the course's weekday
set, until the declared lecture count is reached. Sequence numbers follow
generation order (1..N) and are never reassigned.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Iterable, List, Mapping, Optional

from actors import LECTURE_PRIVILEGED, Actor, require_role
from app_logging import get_logger
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    WEEKDAY_CODES,
    Course,
    CourseStudent,
    Lecture,
    Student,
    Trainer,
    db,
)

_logger = get_logger("app.schedule")

MAX_LECTURE_COUNT = 500


def parse_date(value: Any, field: str = 'date') -> date:
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {field}, must be YYYY-MM-DD', field=field)


def parse_time(value: Any, field: str = 'time') -> Optional[str]:
    """Normalise a time of day to ``HH:MM``; ``None`` passes through."""
    if value is None or value == '':
        return None
    try:
        return datetime.strptime(str(value), '%H:%M').strftime('%H:%M')
    except ValueError:
        raise ValidationError(f'Invalid {field}, must be HH:MM', field=field)


def normalize_weekdays(days: Optional[Iterable[Any]]) -> List[str]:
    """Validate weekday codes and return them in a stable Monday-first order."""
    if days is None or isinstance(days, (str, bytes)):
        raise ValidationError('lecture_days must be a list of weekday codes', field='lecture_days')
    codes = {str(d).strip().lower()[:3] for d in days}
    if not codes:
        raise ValidationError('At least one lecture weekday is required', field='lecture_days')
    unknown = sorted(codes - set(WEEKDAY_CODES))
    if unknown:
        raise ValidationError('Unknown weekday codes', field='lecture_days', invalid=unknown)
    return [code for code in WEEKDAY_CODES if code in codes]


def plan_lecture_dates(start: date, weekdays: Iterable[str], count: int) -> List[date]:
    """Return exactly ``count`` dates on the selected weekdays from ``start``."""
    selected = {WEEKDAY_CODES.index(code) for code in normalize_weekdays(weekdays)}
    if count < 1 or count > MAX_LECTURE_COUNT:
        raise ValidationError(f'lecture_count must be between 1 and {MAX_LECTURE_COUNT}',
                              field='lecture_count')

    dates: List[date] = []
    current = start
    while len(dates) < count:
        if current.weekday() in selected:
            dates.append(current)
        current += timedelta(days=1)
    return dates


def generate_lectures(course: Course) -> List[Lecture]:
    """Create the planned lecture rows for a course that has none yet."""
    if course.lectures:
        raise ConflictError('Lectures were already generated for this course', course_id=course.id)

    lectures = [
        Lecture(course=course, lecture_number=number, date=day, time=course.lecture_time)
        for number, day in enumerate(
            plan_lecture_dates(course.start_date, course.lecture_days, course.lecture_count),
            start=1,
        )
    ]
    db.session.add_all(lectures)
    _logger.info('lectures generated', extra={'course_id': course.id, 'count': len(lectures)})
    return lectures


def _resolve_students(student_ids: Any, is_dual: bool) -> List[Student]:
    if not isinstance(student_ids, list) or not all(isinstance(s, int) for s in student_ids):
        raise ValidationError('student_ids must be a list of integers', field='student_ids')
    expected = 2 if is_dual else 1
    if len(set(student_ids)) != expected or len(student_ids) != expected:
        raise ValidationError(
            f'A {"dual" if is_dual else "single"} course needs exactly {expected} distinct student(s)',
            field='student_ids',
        )
    students = []
    for student_id in student_ids:
        student = db.session.get(Student, student_id)
        if student is None:
            raise NotFoundError(f'Student {student_id} not found')
        students.append(student)
    return students


def build_course(data: Mapping[str, Any], *, title: Optional[str] = None) -> Course:
    """Validate a course payload and return an unsaved course with enrollments."""
    trainer_id = data.get('trainer_id')
    if not isinstance(trainer_id, int):
        raise ValidationError('trainer_id is required', field='trainer_id')
    trainer = db.session.get(Trainer, trainer_id)
    if trainer is None:
        raise NotFoundError(f'Trainer {trainer_id} not found')

    is_dual = bool(data.get('is_dual', False))
    students = _resolve_students(data.get('student_ids'), is_dual)

    lecture_count = data.get('lecture_count')
    if not isinstance(lecture_count, int) or isinstance(lecture_count, bool):
        raise ValidationError('lecture_count must be an integer', field='lecture_count')

    course = Course(
        title=data.get('title', title),
        package_id=data.get('package_id'),
        trainer=trainer,
        is_dual=is_dual,
        start_date=parse_date(data.get('start_date'), 'start_date'),
        lecture_time=parse_time(data.get('lecture_time'), 'lecture_time'),
        lecture_days=normalize_weekdays(data.get('lecture_days')),
        lecture_count=lecture_count,
        renewed_with_trainer=bool(data.get('renewed_with_trainer', False)),
    )
    for position, student in enumerate(students):
        course.enrollments.append(CourseStudent(student=student, is_primary=position == 0))
    return course


def create_course(data: Mapping[str, Any], actor: Actor) -> Course:
    """Create a course and its lecture series; the caller commits."""
    require_role(actor, LECTURE_PRIVILEGED, 'create courses')
    course = build_course(data)
    db.session.add(course)
    db.session.flush()
    generate_lectures(course)
    _logger.info('course created', extra={'course_id': course.id, 'trainer_id': course.trainer_id})
    return course


__all__ = [
    'build_course',
    'create_course',
    'generate_lectures',
    'normalize_weekdays',
    'parse_date',
    'parse_time',
    'plan_lecture_dates',
]
