"""Typed lecture field writes, the modifiability gate and bulk saves.

Only four fields can be written: ``attendance``, ``activity``, ``homework``
and ``notes``. On a dual course a write that names a ``student_id`` lands in
that student's entry; otherwise the lecture-level field is written. Writing
a postponement value to ``attendance`` hands the lecture over to the
postponement engine instead of patching the field.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence

from actors import LECTURE_EDITORS, Actor, require_course_access, require_role
from app_logging import get_logger
from business_rules import BusinessRules, load_business_rules
from errors import (
    ConflictError,
    ModificationError,
    NotFoundError,
    ValidationError,
)
from milestones import evaluation_due
from models import (
    ATTENDANCE_PENDING,
    HELD_ATTENDANCE,
    POSTPONED_ATTENDANCE,
    Lecture,
    LectureStudent,
    db,
)

_logger = get_logger("app.attendance")

LECTURE_FIELDS = ('attendance', 'activity', 'homework', 'notes')
DIRECT_ATTENDANCE = (ATTENDANCE_PENDING,) + HELD_ATTENDANCE
TEXT_LIMITS = {'activity': 255, 'homework': 255, 'notes': 2000}
MAX_BULK_ENTRIES = 500


def get_lecture(lecture_id: int, lock: bool = False) -> Lecture:
    query = db.select(Lecture).filter_by(id=lecture_id)
    if lock:
        query = query.with_for_update()
    lecture = db.session.execute(query).scalar_one_or_none()
    if lecture is None:
        raise NotFoundError(f'Lecture {lecture_id} not found')
    return lecture


def check_modifiable(lecture: Lecture, today: Optional[date] = None) -> Dict[str, Any]:
    """Today's and past lectures are open; anything later is locked."""
    today = today or date.today()
    if lecture.date > today:
        return {'can_modify': False, 'reason': 'future lecture locked', 'type': 'future'}
    return {'can_modify': True, 'reason': None, 'type': 'today' if lecture.date == today else 'past'}


def ensure_modifiable(lecture: Lecture, today: Optional[date] = None) -> None:
    state = check_modifiable(lecture, today)
    if not state['can_modify']:
        raise ModificationError('future lecture locked', lecture_id=lecture.id,
                                date=lecture.date.isoformat(), reason='future_locked')


def refresh_completion(lecture: Lecture) -> None:
    """A lecture is complete once it, or any of its students, was held."""
    lecture.is_completed = (
        lecture.attendance in HELD_ATTENDANCE
        or any(entry.attendance in HELD_ATTENDANCE for entry in lecture.student_entries)
    )


def _student_entry(lecture: Lecture, student_id: Any) -> LectureStudent:
    course = lecture.course
    if not course.is_dual:
        raise ValidationError('student_id is only accepted for dual courses', field='student_id')
    if student_id not in course.student_ids:
        raise ValidationError(f'Student {student_id} is not enrolled in this course', field='student_id')
    for entry in lecture.student_entries:
        if entry.student_id == student_id:
            return entry
    entry = LectureStudent(student_id=student_id, attendance=ATTENDANCE_PENDING)
    lecture.student_entries.append(entry)
    return entry


def _clean_text(field: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{field} must be a string', field=field)
    value = value.strip()
    if len(value) > TEXT_LIMITS[field]:
        raise ValidationError(f'{field} is longer than {TEXT_LIMITS[field]} characters', field=field)
    return value or None


def _apply_field(lecture: Lecture, field: str, value: Any, actor: Actor,
                 student_id: Optional[int], today: Optional[date],
                 rules: BusinessRules) -> None:
    """Validate and write one field without committing."""
    if field not in LECTURE_FIELDS:
        raise ValidationError(f"Unknown lecture field '{field}'", field='field',
                              allowed=list(LECTURE_FIELDS))
    require_course_access(actor, lecture.course, 'edit lectures')
    ensure_modifiable(lecture, today)

    if field == 'attendance':
        if value in POSTPONED_ATTENDANCE:
            raise ValidationError('Postponements must go through the postponement flow', field='attendance')
        if value not in DIRECT_ATTENDANCE:
            raise ValidationError('Unknown attendance value', field='attendance',
                                  allowed=list(DIRECT_ATTENDANCE + POSTPONED_ATTENDANCE))
        if lecture.is_postponed:
            raise ConflictError('Lecture is postponed; cancel the postponement first',
                                lecture_id=lecture.id, attendance=lecture.attendance)
        if actor.is_trainer and evaluation_due(lecture.course, rules):
            raise ModificationError('An evaluation is due before attendance can be edited',
                                    course_id=lecture.course_id, reason='evaluation_required')
    else:
        value = _clean_text(field, value)

    target = _student_entry(lecture, student_id) if student_id is not None else lecture
    setattr(target, field, value)
    if field == 'attendance':
        refresh_completion(lecture)


def set_lecture_field(
    lecture_id: int,
    field: str,
    value: Any,
    actor: Actor,
    student_id: Optional[int] = None,
    *,
    new_date: Any = None,
    new_time: Any = None,
    reason_text: Optional[str] = None,
    force: bool = False,
    today: Optional[date] = None,
    rules: Optional[BusinessRules] = None,
) -> Lecture:
    """Write a single lecture field; the caller commits.

    A postponement value for ``attendance`` requires ``new_date`` and is
    delegated to :func:`postponement.postpone_lecture`; the original lecture
    is returned with its makeup reachable as ``lecture.makeup``.
    """
    rules = rules or load_business_rules()
    require_role(actor, LECTURE_EDITORS, 'edit lectures')

    if field == 'attendance' and value in POSTPONED_ATTENDANCE:
        from postponement import postpone_lecture

        if student_id is not None:
            raise ValidationError('A postponement moves the whole lecture; omit student_id',
                                  field='student_id')
        if new_date is None:
            raise ValidationError('new_date is required to postpone a lecture', field='new_date')
        original, _ = postpone_lecture(
            lecture_id, new_date, value, actor, new_time=new_time, reason_text=reason_text,
            force=force, today=today, rules=rules,
        )
        return original

    lecture = get_lecture(lecture_id, lock=True)
    _apply_field(lecture, field, value, actor, student_id, today, rules)
    _logger.info('lecture field updated', extra={
        'lecture_id': lecture.id, 'field': field, 'student_id': student_id,
    })
    return lecture


def bulk_save_lectures(entries: Sequence[Mapping[str, Any]], actor: Actor,
                       today: Optional[date] = None,
                       rules: Optional[BusinessRules] = None) -> Dict[str, int]:
    """Apply many lecture edits as one batch; the caller commits.

    Each entry is ``{"lecture_id", "student_id"?, <field>: <value>...}``.
    Every entry is validated; if any fails, a :class:`ValidationError`
    listing all failures is raised and the transaction must be rolled back.
    """
    rules = rules or load_business_rules()
    require_role(actor, LECTURE_EDITORS, 'edit lectures')
    if not isinstance(entries, list) or not entries:
        raise ValidationError('lectures must be a non-empty list', field='lectures')
    if len(entries) > MAX_BULK_ENTRIES:
        raise ValidationError(f'At most {MAX_BULK_ENTRIES} lectures per batch', field='lectures')

    invalid: List[Dict[str, Any]] = []
    saved = 0
    for index, entry in enumerate(entries):
        lecture_id = entry.get('lecture_id') if isinstance(entry, Mapping) else None
        try:
            if not isinstance(lecture_id, int):
                raise ValidationError('lecture_id is required', field='lecture_id')
            fields = [f for f in LECTURE_FIELDS if f in entry]
            if not fields:
                raise ValidationError('Entry has no lecture fields to save')
            lecture = get_lecture(lecture_id, lock=True)
            for field in fields:
                _apply_field(lecture, field, entry[field], actor, entry.get('student_id'), today, rules)
            saved += 1
        except (ValidationError, ModificationError, NotFoundError, ConflictError) as exc:
            invalid.append({
                'index': index,
                'lecture_id': lecture_id,
                'error': exc.error_type,
                'detail': exc.message,
            })

    if invalid:
        _logger.warning('bulk lecture save rejected', extra={'invalid_count': len(invalid)})
        raise ValidationError(f'{len(invalid)} lecture(s) failed validation; nothing was saved',
                              invalid=invalid)
    _logger.info('bulk lecture save', extra={'saved_count': saved})
    return {'saved_count': saved}


__all__ = [
    'DIRECT_ATTENDANCE',
    'LECTURE_FIELDS',
    'bulk_save_lectures',
    'check_modifiable',
    'ensure_modifiable',
    'get_lecture',
    'refresh_completion',
    'set_lecture_field',
]
