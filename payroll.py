"""Monthly trainer payroll.

For a month the engine counts each trainer's held lectures and renewals and
derives the pay components::

    total_pay = base_pay + renewal_bonus + volume_bonus
                + competition_bonus + bonus_deduction

The computed figures are recomputed from lecture and course data on every
fetch and snapshotted on the trainer's :class:`~models.PayrollRecord`. The
bonus toggles, the signed manual ``bonus_deduction`` and the payment fields
persist independently and every change to them is written to the payroll
ledger.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func, or_

from actors import PAYROLL_ROLES, Actor, require_role
from app_logging import get_logger
from business_rules import BusinessRules, load_business_rules
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    HELD_ATTENDANCE,
    PAYMENT_METHODS,
    Course,
    CourseStudent,
    Lecture,
    LectureStudent,
    PayrollLedgerEntry,
    PayrollRecord,
    Trainer,
    db,
    utcnow,
)

_logger = get_logger("app.payroll")

LECTURE_PAYMENT_STATUSES = ('unpaid', 'paid')
BONUS_SELECTION_FLAGS = ('include_renewal_bonus', 'include_volume_bonus', 'include_competition_bonus')


@dataclass(frozen=True)
class CompetitionWinner:
    trainer_id: int
    rank: int
    renewal_count: int
    bonus: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class PeriodFigures:
    """Per-trainer inputs for one month, shared by every record of the period."""

    month: int
    year: int
    completed: Dict[int, int]
    renewals: Dict[int, int]
    winners: List[CompetitionWinner]

    def winner_for(self, trainer_id: int) -> Optional[CompetitionWinner]:
        for winner in self.winners:
            if winner.trainer_id == trainer_id:
                return winner
        return None


def validate_period(month: Any, year: Any) -> Tuple[int, int]:
    if not isinstance(month, int) or isinstance(month, bool) or not 1 <= month <= 12:
        raise ValidationError('month must be an integer between 1 and 12', field='month')
    if not isinstance(year, int) or isinstance(year, bool) or not 2000 <= year <= 2100:
        raise ValidationError('year must be an integer between 2000 and 2100', field='year')
    return month, year


def period_bounds(month: int, year: int) -> Tuple[date, date]:
    """Half-open ``[start, end)`` date range of the month."""
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


def volume_bonus(completed_lectures: int, rules: BusinessRules) -> Tuple[int, int]:
    """Return ``(tier, amount)``; the higher tier replaces the lower one."""
    if completed_lectures >= rules.volume_tier2_threshold:
        return 2, rules.volume_tier2_amount
    if completed_lectures >= rules.volume_tier1_threshold:
        return 1, rules.volume_tier1_amount
    return 0, 0


def rank_competition(renewals: Mapping[int, int], rules: BusinessRules) -> List[CompetitionWinner]:
    """Rank trainers by renewals, highest first; ties go to the lower trainer id."""
    contenders = sorted(
        ((trainer_id, count) for trainer_id, count in renewals.items() if count > 0),
        key=lambda item: (-item[1], item[0]),
    )
    return [
        CompetitionWinner(trainer_id=trainer_id, rank=rank, renewal_count=count,
                          bonus=rules.competition_unit)
        for rank, (trainer_id, count) in enumerate(contenders[:rules.competition_winners], start=1)
    ]


def completed_lectures_by_trainer(month: int, year: int) -> Dict[int, int]:
    start, end = period_bounds(month, year)
    held_by_student = (
        db.select(LectureStudent.id)
        .where(LectureStudent.lecture_id == Lecture.id,
               LectureStudent.attendance.in_(HELD_ATTENDANCE))
        .exists()
    )
    query = (
        db.select(Course.trainer_id, func.count(Lecture.id))
        .join(Course, Lecture.course_id == Course.id)
        .where(
            Lecture.date >= start,
            Lecture.date < end,
            or_(Lecture.is_completed.is_(True), Lecture.attendance.in_(HELD_ATTENDANCE), held_by_student),
        )
        .group_by(Course.trainer_id)
    )
    return {trainer_id: count for trainer_id, count in db.session.execute(query)}


def _previous_course(course: Course) -> Optional[Course]:
    """The course the renewal continues: the explicit link, else the
    latest earlier course shared by one of its students."""
    if course.renewed_from is not None:
        return course.renewed_from
    student_ids = course.student_ids
    if not student_ids:
        return None
    query = (
        db.select(Course)
        .join(CourseStudent, CourseStudent.course_id == Course.id)
        .where(
            CourseStudent.student_id.in_(student_ids),
            Course.id != course.id,
            Course.start_date < course.start_date,
        )
        .order_by(Course.start_date.desc(), Course.id.desc())
        .limit(1)
    )
    return db.session.execute(query).scalars().first()


def renewals_by_trainer(month: int, year: int) -> Dict[int, int]:
    """Courses started in the month as renewals with the same trainer."""
    start, end = period_bounds(month, year)
    query = db.select(Course).where(
        Course.renewed_with_trainer.is_(True),
        Course.status != 'cancelled',
        Course.start_date >= start,
        Course.start_date < end,
    )
    counts: Dict[int, int] = {}
    for course in db.session.execute(query).scalars():
        previous = _previous_course(course)
        if previous is not None and previous.trainer_id == course.trainer_id:
            counts[course.trainer_id] = counts.get(course.trainer_id, 0) + 1
    return counts


def period_figures(month: int, year: int, rules: BusinessRules) -> PeriodFigures:
    renewals = renewals_by_trainer(month, year)
    return PeriodFigures(
        month=month,
        year=year,
        completed=completed_lectures_by_trainer(month, year),
        renewals=renewals,
        winners=rank_competition(renewals, rules),
    )


def apply_figures(record: PayrollRecord, figures: PeriodFigures, rules: BusinessRules) -> PayrollRecord:
    """Refresh the computed snapshot on ``record`` from the period figures."""
    trainer_id = record.trainer_id
    completed = figures.completed.get(trainer_id, 0)
    renewals = figures.renewals.get(trainer_id, 0)

    record.completed_lectures = completed
    record.lecture_rate = rules.rate_per_lecture
    record.base_pay = completed * rules.rate_per_lecture
    record.renewal_count = renewals

    if not record.include_renewal_bonus or renewals == 0:
        record.renewal_bonus = 0
    elif record.renewal_total_override is not None:
        record.renewal_bonus = record.renewal_total_override
    else:
        record.renewal_bonus = renewals * rules.renewal_unit

    tier, amount = volume_bonus(completed, rules)
    record.volume_tier = tier
    record.volume_bonus = amount if record.include_volume_bonus else 0

    winner = figures.winner_for(trainer_id)
    record.competition_rank = winner.rank if winner else None
    record.competition_bonus = winner.bonus if winner and record.include_competition_bonus else 0

    record.total_pay = (record.base_pay + record.renewal_bonus + record.volume_bonus
                        + record.competition_bonus + record.bonus_deduction)
    return record


def _get_trainer(trainer_id: int) -> Trainer:
    trainer = db.session.get(Trainer, trainer_id)
    if trainer is None:
        raise NotFoundError(f'Trainer {trainer_id} not found')
    return trainer


def _find_record(trainer_id: int, month: int, year: int, lock: bool = False) -> Optional[PayrollRecord]:
    query = db.select(PayrollRecord).filter_by(trainer_id=trainer_id, month=month, year=year)
    if lock:
        query = query.with_for_update()
    return db.session.execute(query).scalar_one_or_none()


def _get_or_create_record(trainer: Trainer, month: int, year: int) -> PayrollRecord:
    record = _find_record(trainer.id, month, year, lock=True)
    if record is None:
        record = PayrollRecord(
            trainer=trainer,
            trainer_id=trainer.id,
            month=month,
            year=year,
            include_renewal_bonus=True,
            include_volume_bonus=True,
            include_competition_bonus=True,
            bonus_deduction=0,
            status='draft',
            payment_method=trainer.payment_method,
            payment_account_number=trainer.payment_account_number,
        )
        db.session.add(record)
    return record


def _record_for_update(trainer_id: int, month: Any, year: Any,
                       rules: BusinessRules) -> Tuple[PayrollRecord, PeriodFigures]:
    month, year = validate_period(month, year)
    trainer = _get_trainer(trainer_id)
    record = _get_or_create_record(trainer, month, year)
    return record, period_figures(month, year, rules)


def _write_ledger(record: PayrollRecord, action: str, actor: Actor,
                  amount: Optional[int] = None, notes: Optional[str] = None) -> None:
    db.session.add(PayrollLedgerEntry(
        trainer_id=record.trainer_id,
        month=record.month,
        year=record.year,
        action=action,
        amount=amount,
        notes=notes,
        actor_role=actor.role,
    ))


def compute_payroll(month: Any, year: Any, actor: Actor,
                    rules: Optional[BusinessRules] = None) -> Dict[str, Any]:
    """Recompute every trainer's payroll for the month; the caller commits.

    Trainers appear when they are active, or had lectures, renewals or a
    stored record in the period.
    """
    require_role(actor, PAYROLL_ROLES, 'compute payroll')
    month, year = validate_period(month, year)
    rules = rules or load_business_rules()
    figures = period_figures(month, year, rules)

    existing = {
        record.trainer_id: record
        for record in db.session.execute(
            db.select(PayrollRecord).filter_by(month=month, year=year)
        ).scalars()
    }
    records = []
    for trainer in db.session.execute(db.select(Trainer).order_by(Trainer.id)).scalars():
        involved = (trainer.id in figures.completed or trainer.id in figures.renewals
                    or trainer.id in existing)
        if trainer.status != 'active' and not involved:
            continue
        record = existing.get(trainer.id) or _get_or_create_record(trainer, month, year)
        records.append(apply_figures(record, figures, rules))

    summary = {
        'total_trainers': len(records),
        'total_lectures': sum(r.completed_lectures for r in records),
        'total_renewals': sum(r.renewal_count for r in records),
        'total_payout': sum(r.total_pay for r in records),
        'paid_trainers': sum(1 for r in records if r.status == 'paid'),
        'paid_amount': sum(r.paid_amount or 0 for r in records if r.status == 'paid'),
    }
    _logger.info('payroll computed', extra={'month': month, 'year': year, **summary})
    return {
        'month': month,
        'year': year,
        'records': [r.to_dict() for r in records],
        'competition_winners': [w.to_dict() for w in figures.winners],
        'summary': summary,
    }


def set_bonus_deduction(trainer_id: int, month: Any, year: Any, amount: Any,
                        notes: Optional[str], actor: Actor,
                        rules: Optional[BusinessRules] = None) -> PayrollRecord:
    """Store the signed manual adjustment (positive bonus, negative deduction)."""
    require_role(actor, PAYROLL_ROLES, 'adjust payroll')
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValidationError('amount must be an integer', field='amount')
    if notes is not None and not isinstance(notes, str):
        raise ValidationError('notes must be a string', field='notes')
    rules = rules or load_business_rules()
    record, figures = _record_for_update(trainer_id, month, year, rules)

    previous = record.bonus_deduction
    record.bonus_deduction = amount
    record.bonus_deduction_notes = notes.strip() if notes and notes.strip() else None
    apply_figures(record, figures, rules)
    _write_ledger(record, 'bonus_deduction', actor, amount=amount, notes=record.bonus_deduction_notes)
    _logger.info('bonus deduction set', extra={
        'trainer_id': trainer_id, 'month': record.month, 'year': record.year,
        'previous_amount': previous, 'amount': amount,
    })
    return record


def set_bonus_selection(trainer_id: int, month: Any, year: Any, selection: Mapping[str, Any],
                        actor: Actor, rules: Optional[BusinessRules] = None) -> PayrollRecord:
    """Toggle the per-record bonus components and the renewal total override."""
    require_role(actor, PAYROLL_ROLES, 'adjust payroll')
    changes: Dict[str, Any] = {}
    for flag in BONUS_SELECTION_FLAGS:
        if flag in selection:
            if not isinstance(selection[flag], bool):
                raise ValidationError(f'{flag} must be a boolean', field=flag)
            changes[flag] = selection[flag]
    if 'renewal_total_override' in selection:
        override = selection['renewal_total_override']
        if override is not None and (not isinstance(override, int) or isinstance(override, bool)
                                     or override < 0):
            raise ValidationError('renewal_total_override must be a non-negative integer or null',
                                  field='renewal_total_override')
        changes['renewal_total_override'] = override
    if not changes:
        raise ValidationError('No bonus selection supplied')

    rules = rules or load_business_rules()
    record, figures = _record_for_update(trainer_id, month, year, rules)
    for key, value in changes.items():
        setattr(record, key, value)
    apply_figures(record, figures, rules)
    _write_ledger(record, 'bonus_selection', actor,
                  notes=', '.join(f'{key}={value}' for key, value in sorted(changes.items())))
    return record


def set_payment_method(trainer_id: int, method: Any, account_number: Any, actor: Actor,
                       pin: Any = None, month: Any = None, year: Any = None,
                       today: Optional[date] = None,
                       rules: Optional[BusinessRules] = None) -> PayrollRecord:
    """Store the payout account on the trainer and on the period's record.

    The period defaults to the current month. The PIN is stored but never
    returned or logged.
    """
    require_role(actor, PAYROLL_ROLES, 'change payment methods')
    if method not in PAYMENT_METHODS:
        raise ValidationError('Unknown payment method', field='method', allowed=list(PAYMENT_METHODS))
    if not isinstance(account_number, str) or not account_number.strip() or len(account_number) > 50:
        raise ValidationError('account_number is required (max 50 characters)', field='account_number')
    if pin is not None and (not isinstance(pin, str) or not pin.isdigit() or len(pin) > 20):
        raise ValidationError('pin must be a string of digits', field='pin')

    today = today or date.today()
    rules = rules or load_business_rules()
    record, figures = _record_for_update(
        trainer_id, month if month is not None else today.month,
        year if year is not None else today.year, rules,
    )
    trainer = record.trainer
    trainer.payment_method = method
    trainer.payment_account_number = account_number.strip()
    record.payment_method = method
    record.payment_account_number = account_number.strip()
    if pin is not None:
        record.payment_pin = pin
    apply_figures(record, figures, rules)
    _write_ledger(record, 'payment_method', actor, notes=method)
    _logger.info('payment method set', extra={'trainer_id': trainer_id, 'payment_method': method})
    return record


def mark_paid(trainer_id: int, month: Any, year: Any, actor: Actor,
              rules: Optional[BusinessRules] = None) -> PayrollRecord:
    require_role(actor, PAYROLL_ROLES, 'change payment status')
    rules = rules or load_business_rules()
    record, figures = _record_for_update(trainer_id, month, year, rules)
    if record.status == 'paid':
        raise ConflictError('Payroll is already marked paid', trainer_id=trainer_id)
    apply_figures(record, figures, rules)
    record.status = 'paid'
    record.paid_at = utcnow()
    record.paid_amount = record.total_pay
    _write_ledger(record, 'paid', actor, amount=record.total_pay)
    _logger.info('payroll marked paid', extra={
        'trainer_id': trainer_id, 'month': record.month, 'year': record.year, 'amount': record.total_pay,
    })
    return record


def mark_unpaid(trainer_id: int, month: Any, year: Any, actor: Actor,
                rules: Optional[BusinessRules] = None) -> PayrollRecord:
    require_role(actor, PAYROLL_ROLES, 'change payment status')
    rules = rules or load_business_rules()
    record, figures = _record_for_update(trainer_id, month, year, rules)
    if record.status != 'paid':
        raise ConflictError('Payroll is not marked paid', trainer_id=trainer_id)
    reverted = record.paid_amount
    record.status = 'draft'
    record.paid_at = None
    record.paid_amount = None
    apply_figures(record, figures, rules)
    _write_ledger(record, 'unpaid', actor, amount=reverted)
    _logger.info('payroll marked unpaid', extra={
        'trainer_id': trainer_id, 'month': record.month, 'year': record.year,
    })
    return record


def ledger(trainer_id: int, month: Any, year: Any, actor: Actor) -> List[PayrollLedgerEntry]:
    require_role(actor, PAYROLL_ROLES, 'read the payroll ledger')
    month, year = validate_period(month, year)
    _get_trainer(trainer_id)
    query = (
        db.select(PayrollLedgerEntry)
        .filter_by(trainer_id=trainer_id, month=month, year=year)
        .order_by(PayrollLedgerEntry.created_at, PayrollLedgerEntry.id)
    )
    return list(db.session.execute(query).scalars())


def set_lecture_payment_status(lecture_id: int, status: Any, actor: Actor) -> Lecture:
    require_role(actor, PAYROLL_ROLES, 'change lecture payment status')
    if status not in LECTURE_PAYMENT_STATUSES:
        raise ValidationError('Unknown payment status', field='status',
                              allowed=list(LECTURE_PAYMENT_STATUSES))
    lecture = db.session.execute(
        db.select(Lecture).filter_by(id=lecture_id).with_for_update()
    ).scalar_one_or_none()
    if lecture is None:
        raise NotFoundError(f'Lecture {lecture_id} not found')
    lecture.trainer_payment_status = status
    return lecture


__all__ = [
    'CompetitionWinner',
    'PeriodFigures',
    'apply_figures',
    'completed_lectures_by_trainer',
    'compute_payroll',
    'ledger',
    'mark_paid',
    'mark_unpaid',
    'period_bounds',
    'period_figures',
    'rank_competition',
    'renewals_by_trainer',
    'set_bonus_deduction',
    'set_bonus_selection',
    'set_lecture_payment_status',
    'set_payment_method',
    'validate_period',
    'volume_bonus',
]
