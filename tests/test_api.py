from datetime import date, timedelta


def later(days=30):
    return (date.today() + timedelta(days=days)).isoformat()


def test_missing_actor_is_forbidden(client):
    response = client.post('/api/courses', json={})
    assert response.status_code == 403
    assert response.get_json()['type'] == 'authorization_error'


def test_unknown_role_is_forbidden(client, headers):
    response = client.get('/api/payroll?month=3&year=2024', headers=headers('janitor'))
    assert response.status_code == 403


def test_create_course(client, headers, make_trainer, make_student):
    trainer, student = make_trainer(), make_student()
    payload = {
        'title': 'Conversation A1', 'trainer_id': trainer.id, 'student_ids': [student.id],
        'start_date': '2024-01-01', 'lecture_days': ['tue', 'thu'], 'lecture_count': 8,
        'lecture_time': '16:00',
    }
    response = client.post('/api/courses', json=payload, headers=headers('customer_service'))
    assert response.status_code == 201
    data = response.get_json()
    assert data['lecture_count'] == 8
    assert [l['date'] for l in data['lectures']][::7] == ['2024-01-02', '2024-01-25']
    assert data['completion_percentage'] == 0
    assert data['renewal_alert']['status'] == 'none'

    response = client.post('/api/courses', json=payload, headers=headers('trainer', trainer.id))
    assert response.status_code == 403


def test_create_course_rejects_empty_weekdays(client, headers, make_trainer, make_student):
    payload = {'trainer_id': make_trainer().id, 'student_ids': [make_student().id],
               'start_date': '2024-01-01', 'lecture_days': [], 'lecture_count': 8}
    response = client.post('/api/courses', json=payload, headers=headers())
    data = response.get_json()
    assert response.status_code == 400
    assert data['type'] == 'validation_error'
    assert data['field'] == 'lecture_days'


def test_course_views(client, headers, make_course, hold):
    course = make_course(lecture_count=8)
    hold(*course.lectures[:2])
    trainer_headers = headers('trainer', course.trainer_id)

    data = client.get(f'/api/courses/{course.id}', headers=trainer_headers).get_json()
    assert data['completion_percentage'] == 25
    assert data['milestone']['evaluation_required'] is False
    assert data['postponement_stats']['max_allowed'] == 3

    completion = client.get(f'/api/courses/{course.id}/completion', headers=trainer_headers).get_json()
    assert completion == {'course_id': course.id, 'completion_percentage': 25,
                          'completed_lectures': 2, 'lecture_count': 8}
    lectures = client.get(f'/api/courses/{course.id}/lectures', headers=trainer_headers).get_json()
    assert [l['lecture_number'] for l in lectures] == list(range(1, 9))

    other = headers('trainer', course.trainer_id + 100)
    assert client.get(f'/api/courses/{course.id}', headers=other).status_code == 403


def test_patch_lecture_fields(client, headers, make_course):
    course = make_course(days_ago=1, lecture_count=4)
    trainer_headers = headers('trainer', course.trainer_id)
    past, future = course.lectures[0], course.lectures[3]

    response = client.patch(f'/api/lectures/{past.id}', json={'field': 'attendance', 'value': 'present'},
                            headers=trainer_headers)
    assert response.status_code == 200
    assert response.get_json()['is_completed'] is True

    response = client.patch(f'/api/lectures/{future.id}', json={'field': 'notes', 'value': 'x'},
                            headers=trainer_headers)
    assert response.status_code == 422
    assert response.get_json()['type'] == 'modification_error'

    modifiable = client.get(f'/api/lectures/{future.id}/modifiable', headers=trainer_headers).get_json()
    assert modifiable == {'can_modify': False, 'reason': 'future lecture locked', 'type': 'future'}

    response = client.patch(f'/api/lectures/{past.id}', json={'field': 'course_id', 'value': 3},
                            headers=trainer_headers)
    assert response.status_code == 400


def test_patch_with_postponement_value(client, headers, make_course):
    course = make_course(days_ago=3, lecture_count=6)
    response = client.patch(f'/api/lectures/{course.lectures[0].id}', headers=headers('customer_service'),
                            json={'field': 'attendance', 'value': 'postponed_by_trainer',
                                  'new_date': later(), 'reason': 'Trainer sick'})
    data = response.get_json()
    assert response.status_code == 200
    assert data['attendance'] == 'postponed_by_trainer'
    assert data['makeup']['lecture_number'] == 7
    assert data['notes'] == 'Postponement reason: Trainer sick'


def test_postpone_conflict_and_force(client, headers, make_course, make_trainer):
    trainer = make_trainer()
    course = make_course(trainer=trainer, days_ago=3, lecture_count=6)
    other = make_course(trainer=trainer, start_date=date.today() + timedelta(days=30), lecture_count=1,
                        title='Busy slot')
    url = f'/api/lectures/{course.lectures[0].id}/postpone'
    body = {'new_date': later(), 'reason_code': 'student'}

    dry_run = client.post(f'/api/lectures/{course.lectures[0].id}/check-conflicts',
                          json={'new_date': later()}, headers=headers('customer_service')).get_json()
    assert dry_run['has_conflicts'] is True

    response = client.post(url, json=body, headers=headers('customer_service'))
    data = response.get_json()
    assert response.status_code == 409
    assert data['conflicts'][0]['course'] == {'id': other.id, 'title': 'Busy slot'}
    assert data['can_force'] is True

    for not_true in ('false', 'true', 1):
        response = client.post(url, json={**body, 'force': not_true}, headers=headers('customer_service'))
        assert response.status_code == 409

    response = client.patch(f'/api/lectures/{course.lectures[0].id}',
                            json={'field': 'attendance', 'value': 'postponed_by_student',
                                  'new_date': later(), 'force': 'false'},
                            headers=headers('customer_service'))
    assert response.status_code == 409

    response = client.post(url, json={**body, 'force': True}, headers=headers('trainer', trainer.id))
    assert response.status_code == 403

    response = client.post(url, json={**body, 'force': True}, headers=headers('customer_service'))
    data = response.get_json()
    assert response.status_code == 201
    assert data['original']['attendance'] == 'postponed_by_student'
    assert data['makeup']['postponed_from'] == data['original']['id']

    response = client.post(url, json=body, headers=headers('customer_service'))
    assert response.status_code == 409

    response = client.post(f'/api/lectures/{course.lectures[0].id}/cancel-postponement',
                           headers=headers('customer_service'))
    assert response.status_code == 200
    assert response.get_json()['attendance'] == 'pending'
    lectures = client.get(f'/api/courses/{course.id}/lectures', headers=headers()).get_json()
    assert len(lectures) == 6


def test_postponement_limit_reports_counts(client, headers, make_course):
    course = make_course(days_ago=6, lecture_count=8)
    for offset, lecture in enumerate(course.lectures[:3]):
        response = client.post(f'/api/lectures/{lecture.id}/postpone', headers=headers(),
                               json={'new_date': later(30 + offset), 'reason_code': 'holiday'})
        assert response.status_code == 201

    response = client.post(f'/api/lectures/{course.lectures[3].id}/postpone', headers=headers(),
                           json={'new_date': later(40), 'reason_code': 'holiday'})
    data = response.get_json()
    assert response.status_code == 422
    assert (data['count'], data['max']) == (3, 3)

    stats = client.get(f'/api/courses/{course.id}/postponement-stats', headers=headers()).get_json()
    assert stats['can_postpone'] is False


def test_bulk_save(client, headers, make_course):
    course = make_course(days_ago=2, lecture_count=5)
    lectures = course.lectures
    response = client.post('/api/lectures/bulk', headers=headers(), json={'lectures': [
        {'lecture_id': lectures[0].id, 'attendance': 'present'},
        {'lecture_id': lectures[4].id, 'attendance': 'present'},
    ]})
    data = response.get_json()
    assert response.status_code == 400
    assert data['invalid'][0]['index'] == 1
    completion = client.get(f'/api/courses/{course.id}/completion', headers=headers()).get_json()
    assert completion['completed_lectures'] == 0

    response = client.post('/api/lectures/bulk', headers=headers(), json={'lectures': [
        {'lecture_id': lectures[0].id, 'attendance': 'present'},
        {'lecture_id': lectures[1].id, 'attendance': 'absent', 'notes': 'No show'},
    ]})
    assert response.get_json() == {'saved_count': 2}


def test_evaluation_and_renewal_flow(client, headers, make_course, hold):
    course = make_course(days_ago=8, lecture_count=8)
    hold(*course.lectures[:6])
    trainer_headers = headers('trainer', course.trainer_id)

    response = client.patch(f'/api/lectures/{course.lectures[6].id}', headers=trainer_headers,
                            json={'field': 'attendance', 'value': 'present'})
    assert response.status_code == 422
    assert response.get_json()['reason'] == 'evaluation_required'

    response = client.post(f'/api/courses/{course.id}/evaluation', json={'milestone': 5},
                           headers=trainer_headers)
    assert response.status_code == 200
    assert response.get_json()['last_evaluation_milestone'] == 5
    assert response.get_json()['renewal_alert']['status'] == 'alert'

    url = f'/api/courses/{course.id}/renewal-alert'
    assert client.put(url, json={'status': 'sent'}, headers=trainer_headers).status_code == 403
    assert client.put(url, json={'status': 'sent'}, headers=headers('customer_service')).status_code == 200
    response = client.put(url, json={'status': 'renewed'}, headers=headers('customer_service'))
    assert response.get_json()['renewal_alert']['status'] == 'renewed'

    response = client.post(f'/api/courses/{course.id}/renew', json={'lecture_count': 4},
                           headers=headers('customer_service'))
    data = response.get_json()
    assert response.status_code == 201
    assert data['renewed_from_id'] == course.id
    assert data['renewed_with_trainer'] is True
    assert len(data['lectures']) == 4

    response = client.post(f'/api/courses/{course.id}/renew', headers=headers('customer_service'))
    assert response.status_code == 409


def test_payroll_endpoints(client, headers, make_course, hold):
    course = make_course(start_date=date(2024, 3, 1), lecture_count=10)
    hold(*course.lectures[:4])
    trainer_id = course.trainer_id
    finance = headers('finance')

    assert client.get('/api/payroll', headers=finance).status_code == 400
    assert client.get('/api/payroll?month=3&year=2024', headers=headers('customer_service')).status_code == 403

    data = client.get('/api/payroll?month=3&year=2024', headers=finance).get_json()
    assert data['records'][0]['base_pay'] == 16000
    assert data['summary']['total_payout'] == 16000

    period = {'month': 3, 'year': 2024}
    response = client.put(f'/api/payroll/{trainer_id}/bonus-deduction', headers=finance,
                          json={**period, 'amount': 2500, 'notes': 'Extra session'})
    assert response.get_json()['total_pay'] == 18500

    response = client.put(f'/api/payroll/{trainer_id}/payment-method', headers=finance,
                          json={**period, 'method': 'qi_card', 'account_number': '4000', 'pin': '9999'})
    data = response.get_json()
    assert data['has_payment_pin'] is True
    assert '9999' not in response.get_data(as_text=True)

    response = client.put(f'/api/payroll/{trainer_id}/bonus-selection', headers=finance,
                          json={**period, 'include_volume_bonus': False})
    assert response.get_json()['include_volume_bonus'] is False

    response = client.post(f'/api/payroll/{trainer_id}/paid', headers=finance, json=period)
    assert response.get_json()['status'] == 'paid'
    assert response.get_json()['paid_amount'] == 18500
    assert client.post(f'/api/payroll/{trainer_id}/paid', headers=finance, json=period).status_code == 409
    assert client.post(f'/api/payroll/{trainer_id}/unpaid', headers=finance, json=period).status_code == 200

    entries = client.get(f'/api/payroll/{trainer_id}/ledger?month=3&year=2024', headers=finance).get_json()
    assert [e['action'] for e in entries] == [
        'bonus_deduction', 'payment_method', 'bonus_selection', 'paid', 'unpaid',
    ]

    response = client.put(f'/api/lectures/{course.lectures[0].id}/payment-status', headers=finance,
                          json={'status': 'paid'})
    assert response.get_json()['trainer_payment_status'] == 'paid'


def test_settings_override_business_rules(client, headers, make_course, hold):
    course = make_course(start_date=date(2024, 3, 1), lecture_count=3)
    hold(*course.lectures)

    assert client.get('/api/settings', headers=headers('finance')).status_code == 403
    assert client.get('/api/settings', headers=headers()).get_json()['rate_per_lecture'] == 4000

    response = client.put('/api/settings', headers=headers(), json={'rate_per_lecture': 5000})
    assert response.status_code == 200
    assert response.get_json()['rate_per_lecture'] == 5000

    data = client.get('/api/payroll?month=3&year=2024', headers=headers('finance')).get_json()
    assert data['records'][0]['base_pay'] == 15000

    response = client.put('/api/settings', headers=headers(), json={'volume_tier2_threshold': 10})
    assert response.status_code == 400
    response = client.put('/api/settings', headers=headers(), json={'coffee_budget': 1})
    assert response.status_code == 400
