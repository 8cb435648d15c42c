"""Evaluation milestones, renewal alerts and course renewal.

Every ``evaluation_interval`` completed lectures (5 by default) the trainer
owes the family an evaluation. Until it is confirmed the trainer cannot edit
attendance on that course. Once completion reaches the renewal band (75% up
to, but excluding, 100%) the course shows a renewal alert that customer
service drives manually: ``none/alert -> sent -> renewed``. A renewed course
can be reset into a brand-new course with the same trainer.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Dict, Mapping, Optional

from actors import LECTURE_EDITORS, LECTURE_PRIVILEGED, Actor, require_course_access, require_role
from app_logging import get_logger
from business_rules import BusinessRules, load_business_rules
from completion import completed_lecture_count, course_completion
from errors import ConflictError, NotFoundError, ValidationError
from lecture_schedule import build_course, generate_lectures
from models import RENEWAL_ALERT_STATUSES, Course, db

_logger = get_logger("app.milestones")

ALERT_TRANSITIONS = {
    'none': ('alert', 'sent'),
    'alert': ('sent',),
    'sent': ('renewed',),
    'renewed': (),
}


def get_course(course_id: int, lock: bool = False) -> Course:
    query = db.select(Course).filter_by(id=course_id)
    if lock:
        query = query.with_for_update()
    course = db.session.execute(query).scalar_one_or_none()
    if course is None:
        raise NotFoundError(f'Course {course_id} not found')
    return course


def current_milestone(completed: int, interval: int) -> int:
    return (completed // interval) * interval


def milestone_state(course: Course, rules: Optional[BusinessRules] = None) -> Dict[str, Any]:
    rules = rules or load_business_rules()
    completed = completed_lecture_count(course.lectures)
    milestone = current_milestone(completed, rules.evaluation_interval)
    return {
        'completed_lectures': completed,
        'current_milestone': milestone,
        'last_evaluation_milestone': course.last_evaluation_milestone,
        'evaluation_required': (milestone >= rules.evaluation_interval
                                and milestone > course.last_evaluation_milestone),
    }


def evaluation_due(course: Course, rules: Optional[BusinessRules] = None) -> bool:
    return milestone_state(course, rules)['evaluation_required']


def confirm_evaluation(course_id: int, milestone: Any, actor: Actor,
                       rules: Optional[BusinessRules] = None) -> Course:
    """Acknowledge the evaluation for ``milestone``; the caller commits."""
    rules = rules or load_business_rules()
    require_role(actor, LECTURE_EDITORS, 'confirm evaluations')
    course = get_course(course_id, lock=True)
    require_course_access(actor, course, 'confirm evaluations')

    if not isinstance(milestone, int) or isinstance(milestone, bool):
        raise ValidationError('milestone must be an integer', field='milestone')
    interval = rules.evaluation_interval
    if milestone < interval or milestone % interval:
        raise ValidationError(f'milestone must be a positive multiple of {interval}', field='milestone')

    state = milestone_state(course, rules)
    if milestone > state['current_milestone']:
        raise ValidationError('milestone has not been reached yet', field='milestone',
                              current_milestone=state['current_milestone'])
    if milestone < course.last_evaluation_milestone:
        raise ValidationError('a later milestone was already confirmed', field='milestone',
                              last_evaluation_milestone=course.last_evaluation_milestone)

    previous = course.last_evaluation_milestone
    course.last_evaluation_milestone = milestone
    _logger.info('evaluation confirmed', extra={
        'course_id': course.id, 'milestone': milestone, 'previous_milestone': previous,
    })
    return course


def renewal_alert(course: Course, rules: Optional[BusinessRules] = None) -> Dict[str, Any]:
    """Effective renewal alert: a stored ``none`` reads as ``alert`` inside the band."""
    rules = rules or load_business_rules()
    percentage = course_completion(course)
    in_band = rules.renewal_alert_percent <= percentage < 100
    status = course.renewal_alert_status
    if status == 'none' and in_band:
        status = 'alert'
    return {'status': status, 'in_alert_band': in_band, 'completion_percentage': percentage}


def set_renewal_alert_status(course_id: int, status: Any, actor: Actor) -> Course:
    require_role(actor, LECTURE_PRIVILEGED, 'change renewal alerts')
    if status not in RENEWAL_ALERT_STATUSES:
        raise ValidationError('Unknown renewal alert status', field='status',
                              allowed=list(RENEWAL_ALERT_STATUSES))
    course = get_course(course_id, lock=True)
    if course.renewal is not None:
        raise ConflictError('Course was superseded by a renewal', renewal_course_id=course.renewal.id)

    old_status = course.renewal_alert_status
    if status == old_status:
        return course
    allowed = ALERT_TRANSITIONS[old_status]
    if status not in allowed:
        raise ValidationError(f"Cannot move renewal alert from '{old_status}' to '{status}'",
                              field='status', allowed=list(allowed))
    course.renewal_alert_status = status
    _logger.info('renewal alert status changed', extra={
        'course_id': course.id, 'old_status': old_status, 'new_status': status,
    })
    return course


def _default_renewal_start(course: Course, today: date) -> date:
    last = max((lecture.date for lecture in course.lectures), default=None)
    if last is None:
        return today
    return max(today, last + timedelta(days=1))


def renew_course(course_id: int, overrides: Mapping[str, Any], actor: Actor,
                 today: Optional[date] = None) -> Course:
    """Create the follow-up course for a renewed course; the caller commits.

    Trainer, students and schedule carry over; package, dates, time, weekdays
    and lecture count may be overridden.
    """
    require_role(actor, LECTURE_PRIVILEGED, 'renew courses')
    today = today or date.today()
    course = get_course(course_id, lock=True)
    if course.renewal_alert_status != 'renewed':
        raise ConflictError('Only courses marked renewed can be reset into a new course',
                            renewal_alert_status=course.renewal_alert_status)
    if course.renewal is not None:
        raise ConflictError('Course was already renewed', renewal_course_id=course.renewal.id)

    data: Dict[str, Any] = {
        'trainer_id': course.trainer_id,
        'student_ids': course.student_ids,
        'is_dual': course.is_dual,
        'title': course.title,
        'package_id': course.package_id,
        'start_date': _default_renewal_start(course, today),
        'lecture_time': course.lecture_time,
        'lecture_days': list(course.lecture_days or []),
        'lecture_count': course.lecture_count,
    }
    for key in ('title', 'package_id', 'start_date', 'lecture_time', 'lecture_days', 'lecture_count'):
        if key in overrides:
            data[key] = overrides[key]
    data['renewed_with_trainer'] = True

    new_course = build_course(data)
    new_course.renewed_from = course
    db.session.add(new_course)
    db.session.flush()
    generate_lectures(new_course)
    _logger.info('course renewed', extra={'course_id': course.id, 'renewal_course_id': new_course.id})
    return new_course


__all__ = [
    'confirm_evaluation',
    'current_milestone',
    'evaluation_due',
    'get_course',
    'milestone_state',
    'renew_course',
    'renewal_alert',
    'set_renewal_alert_status',
]
