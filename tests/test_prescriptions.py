import os

import pytest

MEDICINES = [
    {'name': 'Aspirin', 'dose': '300 mg', 'duration': 'Once, chewed', 'instructions': 'Take immediately'},
    {'name': 'Atorvastatin', 'dose': '40 mg', 'duration': '30 days'},
]


@pytest.fixture
def consultation(client, patient, doctor, create_emergency, create_order):
    emergency = create_emergency('doctor')
    order = create_order(emergencyId=emergency['id'], serviceType='PRESCRIPTION',
                         doctorId=doctor['id']).get_json()['order']
    return emergency, order


def _pay(client, patient, order):
    resp = client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': 'TX-RX-1'},
                       headers=patient['headers'])
    assert resp.status_code == 200


def _issue(client, headers, emergency, order, **extra):
    body = {'emergencyId': emergency['id'], 'orderId': order['orderId'], 'medicines': MEDICINES}
    body.update(extra)
    return client.post('/api/prescriptions', json=body, headers=headers)


def _context(client, emergency, headers):
    resp = client.get(f"/api/prescriptions/emergency/{emergency['id']}", headers=headers)
    assert resp.status_code == 200
    return resp.get_json()['data']


def test_editor_unlocks_only_after_payment(client, patient, doctor, create_emergency):
    emergency = create_emergency('doctor')
    context = _context(client, emergency, doctor['headers'])
    assert context['order'] is None
    assert context['paymentRequired'] is True
    assert context['editorUnlocked'] is False


def test_editor_unlocked_once_paid(client, patient, doctor, consultation):
    emergency, order = consultation
    assert _context(client, emergency, doctor['headers'])['editorUnlocked'] is False

    _pay(client, patient, order)
    context = _context(client, emergency, doctor['headers'])
    assert context['editorUnlocked'] is True
    assert context['order']['orderId'] == order['orderId']
    assert context['doctor']['prescriptionFee'] == 80


def test_issue_requires_payment(client, doctor, consultation):
    emergency, order = consultation
    resp = _issue(client, doctor['headers'], emergency, order)
    assert resp.status_code == 400
    assert 'must be paid' in resp.get_json()['error']


def test_issue_prescription(client, app, patient, doctor, consultation):
    emergency, order = consultation
    _pay(client, patient, order)

    resp = _issue(client, doctor['headers'], emergency, order, notes='Avoid exertion', followUpDate='2026-11-01')
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['orderId'] == order['orderId']
    assert data['followUpDate'] == '2026-11-01'
    assert data['medicines'][0]['instructions'] == 'Take immediately'
    assert 'instructions' not in data['medicines'][1]
    assert data['downloadUrl'].endswith(f"/api/prescriptions/{data['id']}/pdf")
    assert os.path.exists(os.path.join(app.config['PRESCRIPTION_DIR'], f"prescription-{data['id']}.pdf"))

    order = client.get(f"/api/orders/{order['orderId']}", headers=patient['headers']).get_json()['order']
    assert order['status'] == 'completed'
    assert order['prescriptionId'] == data['id']

    context = _context(client, emergency, patient['headers'])
    assert context['prescription']['id'] == data['id']
    assert context['editorUnlocked'] is False

    resp = client.get(f"/api/prescriptions/{data['id']}/pdf", headers=patient['headers'])
    assert resp.status_code == 200
    assert resp.mimetype == 'application/pdf'
    assert resp.data.startswith(b'%PDF')
    resp.close()

    resp = _issue(client, doctor['headers'], emergency, order)
    assert resp.status_code == 400
    assert 'already been issued' in resp.get_json()['error']

    # With the prescription sent the emergency can be closed
    resp = client.put(f"/api/emergency/{emergency['id']}/status", json={'status': 'completed'},
                      headers=doctor['headers'])
    assert resp.status_code == 200


def test_only_the_orders_doctor_can_issue(client, patient, make_user, consultation):
    emergency, order = consultation
    _pay(client, patient, order)
    other = make_user('doctor', bkash_number='01788888888')

    assert _issue(client, other['headers'], emergency, order).status_code == 403
    assert _issue(client, patient['headers'], emergency, order).status_code == 403


@pytest.mark.parametrize("medicines", [
    [],
    [{'name': 'Aspirin', 'dose': '300 mg'}],
    ['Aspirin'],
])
def test_medicines_are_validated(client, patient, doctor, consultation, medicines):
    emergency, order = consultation
    _pay(client, patient, order)
    resp = _issue(client, doctor['headers'], emergency, order, medicines=medicines)
    assert resp.status_code == 400


def test_strangers_cannot_see_context_or_pdf(client, make_user, consultation):
    emergency, _ = consultation
    stranger = make_user('patient')
    resp = client.get(f"/api/prescriptions/emergency/{emergency['id']}", headers=stranger['headers'])
    assert resp.status_code == 403
    assert client.get('/api/prescriptions/99/pdf', headers=stranger['headers']).status_code == 404
