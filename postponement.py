"""Lecture postponement.

A postponed lecture is never moved or deleted. Its attendance is set to the
postponement reason and a single makeup lecture is created on the new date,
linked back through ``postponed_from``. Before anything is written the
engine checks, in order: the modifiability gate, the lecture's state, the
course's postponement cap, and whether the trainer is already booked at the
new date and time.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func

from actors import (
    LECTURE_EDITORS,
    LECTURE_PRIVILEGED,
    Actor,
    require_course_access,
    require_role,
)
from app_logging import get_logger
from attendance import ensure_modifiable, get_lecture, refresh_completion
from business_rules import BusinessRules, load_business_rules
from errors import AuthorizationError, ConflictError, LimitExceededError, ValidationError
from lecture_schedule import parse_date, parse_time
from models import (
    ATTENDANCE_PENDING,
    ATTENDANCE_POSTPONED_BY_STUDENT,
    ATTENDANCE_POSTPONED_BY_TRAINER,
    ATTENDANCE_POSTPONED_HOLIDAY,
    HELD_ATTENDANCE,
    POSTPONED_ATTENDANCE,
    Course,
    Lecture,
    db,
)

_logger = get_logger("app.postponement")

REASON_CODES = {
    'trainer': ATTENDANCE_POSTPONED_BY_TRAINER,
    'student': ATTENDANCE_POSTPONED_BY_STUDENT,
    'holiday': ATTENDANCE_POSTPONED_HOLIDAY,
    'customer_service': ATTENDANCE_POSTPONED_BY_TRAINER,
    'admin': ATTENDANCE_POSTPONED_BY_TRAINER,
}
REASON_CODES.update({value: value for value in POSTPONED_ATTENDANCE})

REASON_NOTE_PREFIX = 'Postponement reason: '


def resolve_reason(reason: Any) -> str:
    """Map a reason code to the attendance value stored on the original lecture."""
    code = REASON_CODES.get(str(reason or '').strip().lower())
    if code is None:
        raise ValidationError('Unknown postponement reason', field='reason',
                              allowed=sorted(REASON_CODES))
    return code


def find_conflicts(trainer_id: int, on_date: date, at_time: Optional[str],
                   exclude_lecture_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Return the trainer's other live lectures at ``on_date`` (and ``at_time``).

    The rows are read with ``FOR UPDATE`` so the check and the write that
    follows happen against the same snapshot.
    """
    query = (
        db.select(Lecture)
        .join(Course, Lecture.course_id == Course.id)
        .where(
            Course.trainer_id == trainer_id,
            Course.status != 'cancelled',
            Lecture.date == on_date,
            Lecture.attendance.not_in(POSTPONED_ATTENDANCE),
        )
        .order_by(Lecture.time, Lecture.id)
        .with_for_update(of=Lecture)
    )
    if at_time is not None:
        query = query.where(Lecture.time == at_time)
    if exclude_lecture_id is not None:
        query = query.where(Lecture.id != exclude_lecture_id)

    conflicts = []
    for lecture in db.session.execute(query).scalars():
        course = lecture.course
        label = course.title or f'Course #{course.id}'
        at = f' at {lecture.time}' if lecture.time else ''
        conflicts.append({
            'course': {'id': course.id, 'title': course.title},
            'lecture_id': lecture.id,
            'date': lecture.date.isoformat(),
            'time': lecture.time,
            'message': f'Trainer already has lecture {lecture.lecture_number} of {label} '
                       f'on {lecture.date.isoformat()}{at}',
        })
    return conflicts


def postponement_count(course: Course) -> int:
    return sum(1 for lecture in course.lectures if lecture.is_postponed)


def postponement_stats(course: Course, rules: Optional[BusinessRules] = None) -> Dict[str, Any]:
    rules = rules or load_business_rules()
    total = postponement_count(course)
    limit = rules.max_postponements
    remaining = max(0, limit - total) if limit else None
    return {
        'total_postponements': total,
        'makeup_lectures_created': sum(1 for lecture in course.lectures if lecture.is_makeup),
        'max_allowed': limit,
        'remaining': remaining,
        'can_postpone': remaining is None or remaining > 0,
    }


def _ensure_postponable(lecture: Lecture) -> None:
    if lecture.is_postponed:
        raise ConflictError('Lecture is already postponed', lecture_id=lecture.id,
                            attendance=lecture.attendance)
    if lecture.counts_as_completed:
        raise ConflictError('A completed lecture cannot be postponed', lecture_id=lecture.id)


def _ensure_under_cap(course: Course, rules: BusinessRules) -> None:
    limit = rules.max_postponements
    if not limit:
        return
    count = postponement_count(course)
    if count >= limit:
        raise LimitExceededError(
            f'Course reached its postponement limit ({count}/{limit})', count=count, max=limit,
        )


def _lock_course(course_id: int) -> Course:
    # Serialises postponements on one course so the cap cannot be overrun.
    query = db.select(Course).filter_by(id=course_id).with_for_update()
    return db.session.execute(query).scalar_one()


def check_conflicts(lecture_id: int, new_date: Any, new_time: Any, actor: Actor) -> Dict[str, Any]:
    """Dry-run of the double-booking check; nothing is written."""
    require_role(actor, LECTURE_EDITORS, 'check conflicts')
    lecture = get_lecture(lecture_id)
    require_course_access(actor, lecture.course, 'check conflicts')
    target_date = parse_date(new_date, 'new_date')
    target_time = parse_time(new_time, 'new_time') or lecture.time or lecture.course.lecture_time
    conflicts = find_conflicts(lecture.course.trainer_id, target_date, target_time, lecture.id)
    return {
        'has_conflicts': bool(conflicts),
        'conflicts': conflicts,
        'can_force': actor.can_force,
    }


def postpone_lecture(
    lecture_id: int,
    new_date: Any,
    reason: Any,
    actor: Actor,
    *,
    new_time: Any = None,
    reason_text: Optional[str] = None,
    force: bool = False,
    today: Optional[date] = None,
    rules: Optional[BusinessRules] = None,
) -> Tuple[Lecture, Lecture]:
    """Postpone a lecture and create its makeup; the caller commits.

    Returns ``(original, makeup)``. Raises :class:`ModificationError` for a
    future lecture, :class:`ConflictError` if the lecture is already
    postponed or held or if the trainer is booked and ``force`` is not set,
    and :class:`LimitExceededError` once the course's cap is reached.
    """
    rules = rules or load_business_rules()
    require_role(actor, LECTURE_EDITORS, 'postpone lectures')
    target_date = parse_date(new_date, 'new_date')
    target_time = parse_time(new_time, 'new_time')
    code = resolve_reason(reason)
    if reason_text is not None and not isinstance(reason_text, str):
        raise ValidationError('reason_text must be a string', field='reason_text')

    lecture = get_lecture(lecture_id, lock=True)
    course = _lock_course(lecture.course_id)
    require_course_access(actor, course, 'postpone lectures')
    ensure_modifiable(lecture, today)
    _ensure_postponable(lecture)
    _ensure_under_cap(course, rules)

    makeup_time = target_time or lecture.time or course.lecture_time
    conflicts = find_conflicts(course.trainer_id, target_date, makeup_time, lecture.id)
    if conflicts:
        if not force:
            raise ConflictError('Trainer already has a lecture at the new date and time',
                                conflicts=conflicts, can_force=actor.can_force)
        if not actor.can_force:
            raise AuthorizationError(f"Role '{actor.role}' may not override trainer conflicts",
                                     conflicts=conflicts)
        _logger.warning('trainer conflict overridden', extra={
            'lecture_id': lecture.id, 'actor_role': actor.role,
            'conflict_lecture_ids': [c['lecture_id'] for c in conflicts],
        })

    lecture.attendance = code
    lecture.is_completed = False
    if reason_text and reason_text.strip():
        note = REASON_NOTE_PREFIX + reason_text.strip()
        lecture.notes = f'{lecture.notes}\n{note}' if lecture.notes else note

    next_number = db.session.execute(
        db.select(func.max(Lecture.lecture_number)).where(Lecture.course_id == course.id)
    ).scalar_one()
    makeup = Lecture(
        course=course,
        lecture_number=(next_number or 0) + 1,
        date=target_date,
        time=makeup_time,
        is_makeup=True,
        postponed_from=lecture,
        attendance=ATTENDANCE_PENDING,
        is_completed=False,
        notes=f'Makeup for lecture {lecture.lecture_number}',
    )
    db.session.add(makeup)
    db.session.flush()
    _logger.info('lecture postponed', extra={
        'lecture_id': lecture.id, 'makeup_id': makeup.id, 'course_id': course.id,
        'reason': code, 'new_date': target_date.isoformat(), 'forced': bool(conflicts),
    })
    return lecture, makeup


def _makeup_untouched(makeup: Lecture) -> bool:
    if makeup.attendance != ATTENDANCE_PENDING or makeup.is_completed:
        return False
    if makeup.activity or makeup.homework or makeup.makeup is not None:
        return False
    return all(entry.attendance not in HELD_ATTENDANCE + POSTPONED_ATTENDANCE
               for entry in makeup.student_entries)


def _strip_reason_note(notes: Optional[str]) -> Optional[str]:
    if not notes:
        return notes
    kept = [line for line in notes.split('\n') if not line.startswith(REASON_NOTE_PREFIX)]
    return '\n'.join(kept) or None


def cancel_postponement(lecture_id: int, actor: Actor) -> Lecture:
    """Undo a postponement while its makeup is still untouched; the caller commits."""
    require_role(actor, LECTURE_PRIVILEGED, 'cancel postponements')
    lecture = get_lecture(lecture_id, lock=True)
    makeup = lecture.makeup
    if not lecture.is_postponed or makeup is None:
        raise ConflictError('Lecture is not postponed', lecture_id=lecture.id)
    if not _makeup_untouched(makeup):
        raise ConflictError('The makeup lecture was already used and cannot be removed',
                            lecture_id=lecture.id, makeup_id=makeup.id)

    makeup_id = makeup.id
    lecture.makeup = None
    lecture.course.lectures.remove(makeup)
    db.session.delete(makeup)
    lecture.attendance = ATTENDANCE_PENDING
    lecture.notes = _strip_reason_note(lecture.notes)
    refresh_completion(lecture)
    db.session.flush()
    _logger.info('postponement cancelled', extra={'lecture_id': lecture.id, 'makeup_id': makeup_id})
    return lecture


__all__ = [
    'REASON_CODES',
    'cancel_postponement',
    'check_conflicts',
    'find_conflicts',
    'postpone_lecture',
    'postponement_count',
    'postponement_stats',
    'resolve_reason',
]
