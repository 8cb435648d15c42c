"""Completion counting shared by the attendance, milestone and payroll code."""

from __future__ import annotations

from typing import Iterable, Optional

from models import Course, Lecture


def completed_lecture_count(lectures: Iterable[Lecture]) -> int:
    """Lectures that were held: flagged complete, or marked present/absent
    at lecture level or for any student of a dual course."""
    return sum(1 for lecture in lectures if lecture.counts_as_completed)


def calculate_completion_percentage(
    lectures: Iterable[Lecture],
    lecture_count: Optional[int] = None,
    precomputed: Optional[int] = None,
) -> int:
    """Return the share of planned lectures completed, as an integer 0-100.

    A percentage already computed by the data source wins. Otherwise the
    declared ``lecture_count`` is the denominator, because the loaded lecture
    list may be a partial page; the list length is only a fallback. Halves
    round up.
    """
    if precomputed is not None:
        return max(0, min(100, int(precomputed)))

    lectures = list(lectures)
    total = lecture_count if lecture_count and lecture_count > 0 else len(lectures)
    if total <= 0:
        return 0
    completed = completed_lecture_count(lectures)
    percentage = (200 * completed + total) // (2 * total)
    return max(0, min(100, percentage))


def course_completion(course: Course) -> int:
    return calculate_completion_percentage(course.lectures, course.lecture_count)


__all__ = ["calculate_completion_percentage", "completed_lecture_count", "course_completion"]
