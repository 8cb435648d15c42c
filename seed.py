"""Seed the database with demo data.

Creates a few trainers and students, a handful of courses whose lecture
series start four weeks ago (so some lectures are already in the past and
marked held), and one course renewed with the same trainer. Useful for
trying the API locally; on a fresh deployment run it once by hand.

Usage:
    flask --app app seed
    python seed.py
"""

from datetime import date, timedelta
from typing import Dict, List, Optional

from flask import Flask

from actors import SYSTEM
from attendance import refresh_completion
from config import Config
from lecture_schedule import create_course
from models import ATTENDANCE_ABSENT, ATTENDANCE_PRESENT, Student, Trainer, db

TRAINERS = [
    {'name': 'Sara Ahmed', 'level_min': 1, 'level_max': 3, 'payment_method': 'zain_cash',
     'payment_account_number': '07700000001'},
    {'name': 'Omar Khalil', 'level_min': 2, 'level_max': 5, 'payment_method': 'qi_card',
     'payment_account_number': '4000123412341234'},
    {'name': 'Lina Hassan', 'level_min': 1, 'level_max': 2},
]

STUDENTS = ['Ali', 'Noor', 'Yusuf', 'Maryam', 'Hamza', 'Zainab']


def create_app() -> Flask:
    """Create a standalone Flask application for seeding."""
    app = Flask(__name__)
    app.config.from_object(Config)
    db.init_app(app)
    return app


def _mark_past_lectures_held(course, today: date) -> int:
    held = 0
    for lecture in course.lectures:
        if lecture.date >= today:
            break
        lecture.attendance = ATTENDANCE_ABSENT if lecture.lecture_number % 7 == 0 else ATTENDANCE_PRESENT
        refresh_completion(lecture)
        held += 1
    return held


def seed_data(today: Optional[date] = None) -> Dict[str, int]:
    """Drop and recreate all tables, then insert demo data."""
    today = today or date.today()
    db.drop_all()
    db.create_all()

    trainers: List[Trainer] = [Trainer(**values) for values in TRAINERS]
    students: List[Student] = [Student(name=name) for name in STUDENTS]
    db.session.add_all(trainers + students)
    db.session.flush()

    start = today - timedelta(weeks=4)
    courses = [
        create_course({
            'title': 'Conversation A1', 'trainer_id': trainers[0].id, 'student_ids': [students[0].id],
            'start_date': start, 'lecture_time': '16:00', 'lecture_days': ['sun', 'tue', 'thu'],
            'lecture_count': 12,
        }, SYSTEM),
        create_course({
            'title': 'Grammar B1 (pair)', 'trainer_id': trainers[1].id, 'is_dual': True,
            'student_ids': [students[1].id, students[2].id], 'start_date': start,
            'lecture_time': '18:00', 'lecture_days': ['mon', 'wed'], 'lecture_count': 8,
        }, SYSTEM),
        create_course({
            'title': 'Reading A2', 'trainer_id': trainers[2].id, 'student_ids': [students[3].id],
            'start_date': start + timedelta(days=7), 'lecture_time': '17:00',
            'lecture_days': ['sat'], 'lecture_count': 10,
        }, SYSTEM),
    ]
    held = sum(_mark_past_lectures_held(course, today) for course in courses)

    finished = create_course({
        'title': 'Conversation A0', 'trainer_id': trainers[0].id, 'student_ids': [students[4].id],
        'start_date': today - timedelta(weeks=10), 'lecture_time': '15:00',
        'lecture_days': ['mon', 'thu'], 'lecture_count': 8,
    }, SYSTEM)
    held += _mark_past_lectures_held(finished, today)
    finished.status = 'finished'
    finished.renewal_alert_status = 'renewed'
    renewal = create_course({
        'title': 'Conversation A1', 'trainer_id': trainers[0].id, 'student_ids': [students[4].id],
        'start_date': today, 'lecture_time': '15:00', 'lecture_days': ['mon', 'thu'],
        'lecture_count': 8, 'renewed_with_trainer': True,
    }, SYSTEM)
    renewal.renewed_from = finished

    db.session.commit()
    return {'trainers': len(trainers), 'students': len(students),
            'courses': len(courses) + 2, 'held_lectures': held}


def main() -> None:
    app = create_app()
    with app.app_context():
        counts = seed_data()
    print(f'Database seeded successfully: {counts}')


if __name__ == '__main__':
    main()
