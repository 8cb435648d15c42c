"""Course and lecture endpoints.

Endpoints:

* ``POST /api/courses`` - create a course and generate its lecture series.
* ``GET /api/courses/<id>`` - course with completion, milestone, renewal
  alert and postponement figures.
* ``GET /api/courses/<id>/completion`` - completion percentage only.
* ``GET /api/courses/<id>/lectures`` - the course's lectures in order.
* ``GET /api/courses/<id>/postponement-stats`` - postponement usage.
* ``POST /api/courses/<id>/evaluation`` - confirm an evaluation milestone.
* ``PUT /api/courses/<id>/renewal-alert`` - move the renewal alert.
* ``POST /api/courses/<id>/renew`` - create the renewal course.
* ``PATCH /api/lectures/<id>`` - write one lecture field.
* ``POST /api/lectures/<id>/postpone`` - postpone and create a makeup.
* ``POST /api/lectures/<id>/check-conflicts`` - dry-run conflict check.
* ``POST /api/lectures/<id>/cancel-postponement`` - undo a postponement.
* ``GET /api/lectures/<id>/modifiable`` - modifiability gate state.
* ``PUT /api/lectures/<id>/payment-status`` - lecture payment bookkeeping.
* ``POST /api/lectures/bulk`` - batch lecture edits, all or nothing.

Every endpoint needs the actor headers described in :mod:`actors`.
"""

from __future__ import annotations

from typing import Any, Dict

from flask import Flask, jsonify, request

from actors import current_actor, require_course_access
from attendance import bulk_save_lectures, check_modifiable, get_lecture, set_lecture_field
from business_rules import BusinessRules, load_business_rules
from completion import completed_lecture_count, course_completion
from db_utils import unit_of_work
from errors import ValidationError
from lecture_schedule import create_course
from milestones import (
    confirm_evaluation,
    get_course,
    milestone_state,
    renew_course,
    renewal_alert,
    set_renewal_alert_status,
)
from models import Course
from payroll import set_lecture_payment_status
from postponement import cancel_postponement, check_conflicts, postpone_lecture, postponement_stats


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Missing JSON object payload')
    return data


def _course_payload(course: Course, rules: BusinessRules) -> Dict[str, Any]:
    payload = course.to_dict()
    payload['completion_percentage'] = course_completion(course)
    payload['milestone'] = milestone_state(course, rules)
    payload['renewal_alert'] = renewal_alert(course, rules)
    payload['postponement_stats'] = postponement_stats(course, rules)
    payload['renewal_course_id'] = course.renewal.id if course.renewal else None
    return payload


def init_lecture_routes(app: Flask) -> None:
    """Register the course and lecture API on ``app``."""

    @app.route('/api/courses', methods=['POST'])
    def api_create_course():
        actor = current_actor()
        data = _json_body()
        rules = load_business_rules()
        with unit_of_work():
            course = create_course(data, actor)
        payload = _course_payload(course, rules)
        payload['lectures'] = [lecture.to_dict() for lecture in course.lectures]
        return jsonify(payload), 201

    @app.route('/api/courses/<int:course_id>', methods=['GET'])
    def api_get_course(course_id: int):
        actor = current_actor()
        course = get_course(course_id)
        require_course_access(actor, course, 'view courses')
        return jsonify(_course_payload(course, load_business_rules()))

    @app.route('/api/courses/<int:course_id>/completion', methods=['GET'])
    def api_course_completion(course_id: int):
        actor = current_actor()
        course = get_course(course_id)
        require_course_access(actor, course, 'view courses')
        return jsonify({
            'course_id': course.id,
            'completion_percentage': course_completion(course),
            'completed_lectures': completed_lecture_count(course.lectures),
            'lecture_count': course.lecture_count,
        })

    @app.route('/api/courses/<int:course_id>/lectures', methods=['GET'])
    def api_course_lectures(course_id: int):
        actor = current_actor()
        course = get_course(course_id)
        require_course_access(actor, course, 'view courses')
        return jsonify([lecture.to_dict() for lecture in course.lectures])

    @app.route('/api/courses/<int:course_id>/postponement-stats', methods=['GET'])
    def api_postponement_stats(course_id: int):
        actor = current_actor()
        course = get_course(course_id)
        require_course_access(actor, course, 'view courses')
        return jsonify(postponement_stats(course))

    @app.route('/api/courses/<int:course_id>/evaluation', methods=['POST'])
    def api_confirm_evaluation(course_id: int):
        actor = current_actor()
        data = _json_body()
        rules = load_business_rules()
        with unit_of_work():
            course = confirm_evaluation(course_id, data.get('milestone'), actor, rules)
        return jsonify(_course_payload(course, rules))

    @app.route('/api/courses/<int:course_id>/renewal-alert', methods=['PUT'])
    def api_renewal_alert(course_id: int):
        actor = current_actor()
        data = _json_body()
        with unit_of_work():
            course = set_renewal_alert_status(course_id, data.get('status'), actor)
        return jsonify(_course_payload(course, load_business_rules()))

    @app.route('/api/courses/<int:course_id>/renew', methods=['POST'])
    def api_renew_course(course_id: int):
        actor = current_actor()
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            raise ValidationError('Renewal overrides must be a JSON object')
        rules = load_business_rules()
        with unit_of_work():
            course = renew_course(course_id, data, actor)
        payload = _course_payload(course, rules)
        payload['lectures'] = [lecture.to_dict() for lecture in course.lectures]
        return jsonify(payload), 201

    @app.route('/api/lectures/<int:lecture_id>', methods=['PATCH'])
    def api_update_lecture(lecture_id: int):
        actor = current_actor()
        data = _json_body()
        field = data.get('field')
        if not field:
            raise ValidationError('field is required', field='field')
        with unit_of_work():
            lecture = set_lecture_field(
                lecture_id, field, data.get('value'), actor, data.get('student_id'),
                new_date=data.get('new_date'), new_time=data.get('new_time'),
                reason_text=data.get('reason'), force=data.get('force') is True,
            )
        payload = lecture.to_dict()
        if lecture.makeup is not None:
            payload['makeup'] = lecture.makeup.to_dict()
        return jsonify(payload)

    @app.route('/api/lectures/<int:lecture_id>/postpone', methods=['POST'])
    def api_postpone_lecture(lecture_id: int):
        actor = current_actor()
        data = _json_body()
        if not data.get('new_date'):
            raise ValidationError('new_date is required', field='new_date')
        with unit_of_work():
            original, makeup = postpone_lecture(
                lecture_id, data['new_date'], data.get('reason_code'), actor,
                new_time=data.get('new_time'), reason_text=data.get('reason'),
                force=data.get('force') is True,
            )
        return jsonify({'original': original.to_dict(), 'makeup': makeup.to_dict()}), 201

    @app.route('/api/lectures/<int:lecture_id>/check-conflicts', methods=['POST'])
    def api_check_conflicts(lecture_id: int):
        actor = current_actor()
        data = _json_body()
        return jsonify(check_conflicts(lecture_id, data.get('new_date'), data.get('new_time'), actor))

    @app.route('/api/lectures/<int:lecture_id>/cancel-postponement', methods=['POST'])
    def api_cancel_postponement(lecture_id: int):
        actor = current_actor()
        with unit_of_work():
            lecture = cancel_postponement(lecture_id, actor)
        return jsonify(lecture.to_dict())

    @app.route('/api/lectures/<int:lecture_id>/modifiable', methods=['GET'])
    def api_lecture_modifiable(lecture_id: int):
        actor = current_actor()
        lecture = get_lecture(lecture_id)
        require_course_access(actor, lecture.course, 'view lectures')
        return jsonify(check_modifiable(lecture))

    @app.route('/api/lectures/<int:lecture_id>/payment-status', methods=['PUT'])
    def api_lecture_payment_status(lecture_id: int):
        actor = current_actor()
        data = _json_body()
        with unit_of_work():
            lecture = set_lecture_payment_status(lecture_id, data.get('status'), actor)
        return jsonify(lecture.to_dict())

    @app.route('/api/lectures/bulk', methods=['POST'])
    def api_bulk_save_lectures():
        actor = current_actor()
        data = _json_body()
        with unit_of_work():
            result = bulk_save_lectures(data.get('lectures'), actor)
        return jsonify(result)


__all__ = ['init_lecture_routes']
