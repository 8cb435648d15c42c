"""Database models for the course lecture and trainer payroll engine.

SQLAlchemy is used as the ORM layer. The models include:

* :class:`Trainer` – a trainer with a level range and default payout account.
* :class:`Student` – a student enrolled in one or more courses.
* :class:`Course` – a course for one student, or two when ``is_dual`` is set.
  Its lecture series is generated from a start date, weekday set and count.
* :class:`Lecture` – one planned slot of a course. Postponed lectures are
  never deleted; they are flagged and linked to exactly one makeup lecture
  via ``postponed_from_id``.
* :class:`LectureStudent` – per-student attendance for dual courses. The
  engine only ever sees it as the ``student_attendance`` mapping.
* :class:`PayrollRecord` – per trainer/month compensation, with the manual
  adjustment and payment bookkeeping persisted independently of the
  recomputed figures.
* :class:`PayrollLedgerEntry` – append-only history of payroll bookkeeping.
* :class:`Setting` – runtime overrides for business-rule constants.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from flask_sqlalchemy import SQLAlchemy


# Initialised with the Flask application in ``app.py`` via ``db.init_app(app)``.
db = SQLAlchemy()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


WEEKDAY_CODES = ('mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun')  # index == date.weekday()

COURSE_STATUSES = ('active', 'paused', 'finished', 'cancelled')
RENEWAL_ALERT_STATUSES = ('none', 'alert', 'sent', 'renewed')

ATTENDANCE_PENDING = 'pending'
ATTENDANCE_PRESENT = 'present'
ATTENDANCE_ABSENT = 'absent'
ATTENDANCE_POSTPONED_BY_TRAINER = 'postponed_by_trainer'
ATTENDANCE_POSTPONED_BY_STUDENT = 'postponed_by_student'
ATTENDANCE_POSTPONED_HOLIDAY = 'postponed_holiday'

HELD_ATTENDANCE = (ATTENDANCE_PRESENT, ATTENDANCE_ABSENT)
POSTPONED_ATTENDANCE = (
    ATTENDANCE_POSTPONED_BY_TRAINER,
    ATTENDANCE_POSTPONED_BY_STUDENT,
    ATTENDANCE_POSTPONED_HOLIDAY,
)
ATTENDANCE_VALUES = (ATTENDANCE_PENDING,) + HELD_ATTENDANCE + POSTPONED_ATTENDANCE

PAYMENT_METHODS = ('zain_cash', 'qi_card')


class Trainer(db.Model):
    """Represents a trainer.

    ``payment_method`` and ``payment_account_number`` are the defaults copied
    into a payroll record the first time it is created for a period.
    """

    __tablename__ = 'trainer'

    id: int = db.Column(db.Integer, primary_key=True)
    name: str = db.Column(db.String(100), nullable=False)
    level_min: Optional[int] = db.Column(db.Integer, nullable=True)
    level_max: Optional[int] = db.Column(db.Integer, nullable=True)
    status: str = db.Column(db.String(20), nullable=False, default='active')
    notes: Optional[str] = db.Column(db.Text, nullable=True)
    payment_method: Optional[str] = db.Column(db.String(20), nullable=True)
    payment_account_number: Optional[str] = db.Column(db.String(50), nullable=True)

    courses = db.relationship('Course', backref='trainer', lazy=True)

    @property
    def weekly_lecture_count(self) -> int:
        """Number of weekly slots across the trainer's active courses."""
        return sum(len(c.lecture_days or []) for c in self.courses if c.status == 'active')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'level_min': self.level_min,
            'level_max': self.level_max,
            'status': self.status,
            'notes': self.notes,
            'weekly_lecture_count': self.weekly_lecture_count,
        }

    def __repr__(self) -> str:
        return f"<Trainer {self.name}>"


class Student(db.Model):
    __tablename__ = 'student'

    id: int = db.Column(db.Integer, primary_key=True)
    name: str = db.Column(db.String(100), nullable=False)

    def __repr__(self) -> str:
        return f"<Student {self.name}>"


class CourseStudent(db.Model):
    """Enrollment of a student in a course; the primary student sorts first."""

    __tablename__ = 'course_students'

    course_id: int = db.Column(db.Integer, db.ForeignKey('course.id'), primary_key=True)
    student_id: int = db.Column(db.Integer, db.ForeignKey('student.id'), primary_key=True)
    is_primary: bool = db.Column(db.Boolean, nullable=False, default=False)

    student = db.relationship('Student', lazy='joined')


class Course(db.Model):
    """Represents a course and its planned lecture series.

    ``lecture_count`` is the declared number of planned lectures. Makeup
    lectures created by postponements add rows but never change it, so the
    completion percentage stays relative to the plan.
    """

    __tablename__ = 'course'

    id: int = db.Column(db.Integer, primary_key=True)
    title: Optional[str] = db.Column(db.String(150), nullable=True)
    package_id: Optional[int] = db.Column(db.Integer, nullable=True)
    trainer_id: int = db.Column(db.Integer, db.ForeignKey('trainer.id'), nullable=False)
    is_dual: bool = db.Column(db.Boolean, nullable=False, default=False)
    start_date: date = db.Column(db.Date, nullable=False)
    lecture_time: Optional[str] = db.Column(db.String(5), nullable=True)  # HH:MM
    lecture_days: List[str] = db.Column(db.JSON, nullable=False, default=list)
    lecture_count: int = db.Column(db.Integer, nullable=False)
    status: str = db.Column(db.String(20), nullable=False, default='active')
    renewal_alert_status: str = db.Column(db.String(20), nullable=False, default='none')
    last_evaluation_milestone: int = db.Column(db.Integer, nullable=False, default=0)
    renewed_with_trainer: bool = db.Column(db.Boolean, nullable=False, default=False)
    renewed_from_id: Optional[int] = db.Column(db.Integer, db.ForeignKey('course.id'),
                                               nullable=True, unique=True)
    finished_at: Optional[datetime] = db.Column(db.DateTime, nullable=True)
    created_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)

    enrollments = db.relationship('CourseStudent', lazy=True, cascade='all, delete-orphan',
                                  order_by=[CourseStudent.is_primary.desc(), CourseStudent.student_id])
    lectures = db.relationship('Lecture', backref='course', lazy=True,
                               cascade='all, delete-orphan', order_by='Lecture.lecture_number')
    renewed_from = db.relationship('Course', remote_side=[id],
                                   backref=db.backref('renewal', uselist=False))

    @property
    def student_ids(self) -> List[int]:
        return [e.student_id for e in self.enrollments]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'package_id': self.package_id,
            'trainer_id': self.trainer_id,
            'student_ids': self.student_ids,
            'is_dual': self.is_dual,
            'start_date': self.start_date.isoformat(),
            'lecture_time': self.lecture_time,
            'lecture_days': list(self.lecture_days or []),
            'lecture_count': self.lecture_count,
            'status': self.status,
            'renewal_alert_status': self.renewal_alert_status,
            'last_evaluation_milestone': self.last_evaluation_milestone,
            'renewed_with_trainer': self.renewed_with_trainer,
            'renewed_from_id': self.renewed_from_id,
        }

    def __repr__(self) -> str:
        return f"<Course {self.id} trainer={self.trainer_id} status={self.status}>"


class Lecture(db.Model):
    """Represents one lecture slot of a course.

    ``lecture_number`` is unique per course and never changes once assigned.
    ``postponed_from_id`` is unique, which guarantees a single makeup lecture
    per postponement even when two requests race.
    """

    __tablename__ = 'lecture'

    id: int = db.Column(db.Integer, primary_key=True)
    course_id: int = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    lecture_number: int = db.Column(db.Integer, nullable=False)
    date = db.Column(db.Date, nullable=False)
    time: Optional[str] = db.Column(db.String(5), nullable=True)
    is_makeup: bool = db.Column(db.Boolean, nullable=False, default=False)
    postponed_from_id: Optional[int] = db.Column(db.Integer, db.ForeignKey('lecture.id'),
                                                 nullable=True, unique=True)
    attendance: str = db.Column(db.String(30), nullable=False, default=ATTENDANCE_PENDING)
    is_completed: bool = db.Column(db.Boolean, nullable=False, default=False)
    activity: Optional[str] = db.Column(db.String(255), nullable=True)
    homework: Optional[str] = db.Column(db.String(255), nullable=True)
    notes: Optional[str] = db.Column(db.Text, nullable=True)
    trainer_payment_status: str = db.Column(db.String(10), nullable=False, default='unpaid')

    student_entries = db.relationship('LectureStudent', backref='lecture', lazy=True,
                                      cascade='all, delete-orphan',
                                      order_by='LectureStudent.student_id')
    postponed_from = db.relationship('Lecture', remote_side=[id],
                                     backref=db.backref('makeup', uselist=False))

    __table_args__ = (db.UniqueConstraint('course_id', 'lecture_number',
                                          name='uix_lecture_course_number'),)

    @property
    def student_attendance(self) -> Dict[int, Dict[str, Any]]:
        """Canonical per-student view: ``{student_id: {attendance, ...}}``."""
        return {entry.student_id: entry.to_dict() for entry in self.student_entries}

    @property
    def is_postponed(self) -> bool:
        return self.attendance in POSTPONED_ATTENDANCE

    @property
    def counts_as_completed(self) -> bool:
        if self.is_completed or self.attendance in HELD_ATTENDANCE:
            return True
        return any(e.attendance in HELD_ATTENDANCE for e in self.student_entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'course_id': self.course_id,
            'lecture_number': self.lecture_number,
            'date': self.date.isoformat(),
            'time': self.time,
            'is_makeup': self.is_makeup,
            'postponed_from': self.postponed_from_id,
            'attendance': self.attendance,
            'is_completed': self.is_completed,
            'activity': self.activity,
            'homework': self.homework,
            'notes': self.notes,
            'trainer_payment_status': self.trainer_payment_status,
            'student_attendance': self.student_attendance,
        }

    def __repr__(self) -> str:
        return (f"<Lecture course={self.course_id} no={self.lecture_number} "
                f"date={self.date} attendance={self.attendance}>")


class LectureStudent(db.Model):
    __tablename__ = 'lecture_students'

    id: int = db.Column(db.Integer, primary_key=True)
    lecture_id: int = db.Column(db.Integer, db.ForeignKey('lecture.id'), nullable=False)
    student_id: int = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False)
    attendance: str = db.Column(db.String(30), nullable=False, default=ATTENDANCE_PENDING)
    activity: Optional[str] = db.Column(db.String(255), nullable=True)
    homework: Optional[str] = db.Column(db.String(255), nullable=True)
    notes: Optional[str] = db.Column(db.Text, nullable=True)

    __table_args__ = (db.UniqueConstraint('lecture_id', 'student_id',
                                          name='uix_lecture_student'),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attendance': self.attendance,
            'activity': self.activity,
            'homework': self.homework,
            'notes': self.notes,
        }


class PayrollRecord(db.Model):
    """Trainer compensation for one month.

    The computed columns (``completed_lectures`` through ``total_pay``) are a
    snapshot refreshed on every payroll computation. The toggles, the signed
    ``bonus_deduction`` and the payment fields are only changed by explicit
    bookkeeping operations.
    """

    __tablename__ = 'trainer_payroll'

    id: int = db.Column(db.Integer, primary_key=True)
    trainer_id: int = db.Column(db.Integer, db.ForeignKey('trainer.id'), nullable=False)
    month: int = db.Column(db.Integer, nullable=False)
    year: int = db.Column(db.Integer, nullable=False)

    completed_lectures: int = db.Column(db.Integer, nullable=False, default=0)
    lecture_rate: int = db.Column(db.Integer, nullable=False, default=0)
    base_pay: int = db.Column(db.Integer, nullable=False, default=0)
    renewal_count: int = db.Column(db.Integer, nullable=False, default=0)
    renewal_bonus: int = db.Column(db.Integer, nullable=False, default=0)
    volume_tier: int = db.Column(db.Integer, nullable=False, default=0)
    volume_bonus: int = db.Column(db.Integer, nullable=False, default=0)
    competition_rank: Optional[int] = db.Column(db.Integer, nullable=True)
    competition_bonus: int = db.Column(db.Integer, nullable=False, default=0)
    total_pay: int = db.Column(db.Integer, nullable=False, default=0)

    include_renewal_bonus: bool = db.Column(db.Boolean, nullable=False, default=True)
    renewal_total_override: Optional[int] = db.Column(db.Integer, nullable=True)
    include_volume_bonus: bool = db.Column(db.Boolean, nullable=False, default=True)
    include_competition_bonus: bool = db.Column(db.Boolean, nullable=False, default=True)
    bonus_deduction: int = db.Column(db.Integer, nullable=False, default=0)
    bonus_deduction_notes: Optional[str] = db.Column(db.Text, nullable=True)

    payment_method: Optional[str] = db.Column(db.String(20), nullable=True)
    payment_account_number: Optional[str] = db.Column(db.String(50), nullable=True)
    payment_pin: Optional[str] = db.Column(db.String(20), nullable=True)
    status: str = db.Column(db.String(10), nullable=False, default='draft')
    paid_at: Optional[datetime] = db.Column(db.DateTime, nullable=True)
    paid_amount: Optional[int] = db.Column(db.Integer, nullable=True)

    trainer = db.relationship('Trainer', lazy='joined')

    __table_args__ = (db.UniqueConstraint('trainer_id', 'month', 'year',
                                          name='uix_payroll_trainer_period'),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trainer_id': self.trainer_id,
            'trainer_name': self.trainer.name if self.trainer else None,
            'month': self.month,
            'year': self.year,
            'completed_lectures': self.completed_lectures,
            'lecture_rate': self.lecture_rate,
            'base_pay': self.base_pay,
            'renewal_count': self.renewal_count,
            'include_renewal_bonus': self.include_renewal_bonus,
            'renewal_total_override': self.renewal_total_override,
            'renewal_bonus': self.renewal_bonus,
            'include_volume_bonus': self.include_volume_bonus,
            'volume_tier': self.volume_tier,
            'volume_bonus': self.volume_bonus,
            'include_competition_bonus': self.include_competition_bonus,
            'competition_rank': self.competition_rank,
            'competition_bonus': self.competition_bonus,
            'bonus_deduction': self.bonus_deduction,
            'bonus_deduction_notes': self.bonus_deduction_notes,
            'total_pay': self.total_pay,
            'status': self.status,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'paid_amount': self.paid_amount,
            'payment_method': self.payment_method,
            'payment_account_number': self.payment_account_number,
            'has_payment_pin': bool(self.payment_pin),
        }


class PayrollLedgerEntry(db.Model):
    __tablename__ = 'payroll_ledger'

    id: int = db.Column(db.Integer, primary_key=True)
    trainer_id: int = db.Column(db.Integer, db.ForeignKey('trainer.id'), nullable=False)
    month: int = db.Column(db.Integer, nullable=False)
    year: int = db.Column(db.Integer, nullable=False)
    action: str = db.Column(db.String(30), nullable=False)  # bonus_deduction, payment_method, paid, unpaid
    amount: Optional[int] = db.Column(db.Integer, nullable=True)
    notes: Optional[str] = db.Column(db.Text, nullable=True)
    actor_role: Optional[str] = db.Column(db.String(30), nullable=True)
    created_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'trainer_id': self.trainer_id,
            'month': self.month,
            'year': self.year,
            'action': self.action,
            'amount': self.amount,
            'notes': self.notes,
            'actor_role': self.actor_role,
            'created_at': self.created_at.isoformat(),
        }


class Setting(db.Model):
    __tablename__ = 'setting'

    key: str = db.Column(db.String(50), primary_key=True)
    value: str = db.Column(db.String(100), nullable=False)
    description: Optional[str] = db.Column(db.String(255), nullable=True)
    updated_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Setting {self.key}={self.value}>"
