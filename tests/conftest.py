import sys
from datetime import date, timedelta
from pathlib import Path
from typing import Generator

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from actors import ROLE_HEADER, SYSTEM, TRAINER_HEADER
from app import create_app
from attendance import refresh_completion
from config import TestingConfig
from lecture_schedule import create_course
from models import WEEKDAY_CODES, Student, Trainer, db

EVERY_DAY = list(WEEKDAY_CODES)


@pytest.fixture
def app() -> Generator:
    application = create_app(TestingConfig)
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def headers():
    def _headers(role: str = 'admin', trainer_id: int = None):
        values = {ROLE_HEADER: role}
        if trainer_id is not None:
            values[TRAINER_HEADER] = str(trainer_id)
        return values
    return _headers


@pytest.fixture
def make_trainer(app):
    counter = {'n': 0}

    def _make(**kwargs):
        counter['n'] += 1
        kwargs.setdefault('name', f"Trainer {counter['n']}")
        trainer = Trainer(**kwargs)
        db.session.add(trainer)
        db.session.commit()
        return trainer
    return _make


@pytest.fixture
def make_student(app):
    counter = {'n': 0}

    def _make(name: str = None):
        counter['n'] += 1
        student = Student(name=name or f"Student {counter['n']}")
        db.session.add(student)
        db.session.commit()
        return student
    return _make


@pytest.fixture
def make_course(make_trainer, make_student):
    """Create a course with generated lectures.

    By default the course meets every day and starts ``days_ago`` days in the
    past, so lecture N falls on ``start + N - 1`` days.
    """

    def _make(trainer=None, students=None, is_dual=False, days_ago=10, start_date=None,
              lecture_days=None, lecture_count=10, lecture_time='16:00', **extra):
        trainer = trainer or make_trainer()
        if students is None:
            students = [make_student() for _ in range(2 if is_dual else 1)]
        data = {
            'trainer_id': trainer.id,
            'student_ids': [s.id for s in students],
            'is_dual': is_dual,
            'start_date': start_date or date.today() - timedelta(days=days_ago),
            'lecture_days': lecture_days or EVERY_DAY,
            'lecture_count': lecture_count,
            'lecture_time': lecture_time,
        }
        data.update(extra)
        course = create_course(data, SYSTEM)
        db.session.commit()
        return course
    return _make


@pytest.fixture
def hold():
    """Mark the given lectures as held (present) and commit."""

    def _hold(*lectures, attendance='present'):
        for lecture in lectures:
            lecture.attendance = attendance
            refresh_completion(lecture)
        db.session.commit()
    return _hold
