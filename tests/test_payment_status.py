from rescuelink.extensions import db
from rescuelink.models import EmergencyRequest


def _status(client, headers, **params):
    query = '&'.join(f'{k}={v}' for k, v in params.items())
    resp = client.get(f'/api/orders/payment-status?{query}', headers=headers)
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()['data']


def test_patient_sees_pay_button_until_paid(client, patient, doctor, create_emergency, create_order):
    emergency = create_emergency('doctor')

    state = _status(client, patient['headers'], emergencyId=emergency['id'])
    assert state['helperRole'] == 'doctor'
    assert state['helperId'] == doctor['id']
    assert state['status'] == 'none'
    assert state['amount'] == 80
    assert state['paymentTo'] == '01712345678'
    assert state['showPayButton'] is True
    assert state['order'] is None

    order = create_order(emergencyId=emergency['id'], serviceType='PRESCRIPTION',
                         doctorId=doctor['id']).get_json()['order']
    client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': 'TX9'},
                headers=patient['headers'])

    # Reloading the page must not offer payment again
    state = _status(client, patient['headers'], emergencyId=emergency['id'], serviceType='PRESCRIPTION')
    assert state['status'] == 'paid'
    assert state['paid'] is True
    assert state['showPayButton'] is False
    assert state['canMarkReceived'] is False

    state = _status(client, doctor['headers'], emergencyId=emergency['id'], doctorId=doctor['id'])
    assert state['canMarkReceived'] is True
    assert state['order']['orderId'] == order['orderId']


def test_distributed_after_receipt(client, patient, doctor, create_emergency, create_order):
    emergency = create_emergency('doctor')
    order = create_order(emergencyId=emergency['id'], serviceType='PRESCRIPTION',
                         doctorId=doctor['id']).get_json()['order']
    client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': 'TX9'},
                headers=patient['headers'])
    client.post('/api/orders/complete', json={'orderId': order['orderId']}, headers=doctor['headers'])

    state = _status(client, patient['headers'], emergencyId=emergency['id'])
    assert state['status'] == 'distributed'
    assert state['canMarkReceived'] is False


def test_missing_recipient_shows_warning_instead_of_pay_button(client, patient, make_user, create_emergency):
    make_user('volunteer', latitude=23.809, longitude=90.411, is_on_duty=True)
    emergency = create_emergency('volunteer', itemsCost=100)

    state = _status(client, patient['headers'], emergencyId=emergency['id'])
    assert state['helperRole'] == 'volunteer'
    assert state['amount'] == 105
    assert state['recipientMissing'] is True
    assert state['showPayButton'] is False
    assert 'has not provided a bKash number' in state['warning']


def test_falls_back_to_emergency_payment_status(app, client, patient, driver, create_emergency):
    emergency = create_emergency('driver', distance=9)
    with app.app_context():
        db.session.get(EmergencyRequest, emergency['id']).payment_status = 'paid'
        db.session.commit()

    state = _status(client, patient['headers'], emergencyId=emergency['id'], serviceType='AMBULANCE_LONG_DISTANCE')
    assert state['serviceFamily'] == 'AMBULANCE'
    assert state['order'] is None
    assert state['status'] == 'paid'
    assert state['amount'] == 400
    assert state['showPayButton'] is False


def test_free_ambulance_needs_no_payment(client, patient, driver, create_emergency):
    emergency = create_emergency('driver', distance=2)
    state = _status(client, patient['headers'], emergencyId=emergency['id'])
    assert state['paymentRequired'] is False
    assert state['showPayButton'] is False
    assert state['warning'] is None


def test_only_participants_can_read_payment_status(client, doctor, make_user, create_emergency):
    emergency = create_emergency('doctor')
    stranger = make_user('patient')
    resp = client.get(f"/api/orders/payment-status?emergencyId={emergency['id']}", headers=stranger['headers'])
    assert resp.status_code == 403

    resp = client.get('/api/orders/payment-status', headers=stranger['headers'])
    assert resp.status_code == 400


def test_new_doctor_is_offered_for_payment_after_reassignment(client, patient, doctor, admin, make_user,
                                                              create_emergency, create_order):
    emergency = create_emergency('doctor')
    order = create_order(emergencyId=emergency['id'], serviceType='PRESCRIPTION',
                         doctorId=doctor['id']).get_json()['order']
    client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': 'TX10'},
                headers=patient['headers'])
    other = make_user('doctor', bkash_number='01766666666', prescription_fee=50)

    resp = client.post(f"/api/emergency/{emergency['id']}/assign", json={'helperId': other['id']},
                       headers=admin['headers'])
    assert resp.status_code == 200
    assert resp.get_json()['data']['paymentStatus'] == 'pending'

    state = _status(client, patient['headers'], emergencyId=emergency['id'], serviceType='PRESCRIPTION')
    assert state['helperId'] == other['id']
    assert state['order'] is None
    assert state['status'] == 'none'
    assert state['amount'] == 50
    assert state['showPayButton'] is True
