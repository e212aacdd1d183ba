import pytest
import requests

from rescuelink import payouts


def _emergency(client, emergency_id, headers):
    resp = client.get(f'/api/emergency/{emergency_id}', headers=headers)
    assert resp.status_code == 200
    return resp.get_json()['data']


def _prescription_order(create_emergency, create_order, doctor):
    emergency = create_emergency('doctor')
    resp = create_order(emergencyId=emergency['id'], serviceType='PRESCRIPTION', doctorId=doctor['id'])
    assert resp.status_code == 200, resp.get_json()
    return emergency, resp.get_json()['order']


class TestCreateOrder:
    def test_long_distance_fare_is_recomputed_on_the_server(self, client, patient, driver,
                                                           create_emergency, create_order):
        emergency = create_emergency('driver', distance=12)
        assert emergency['assignedDriver']['id'] == driver['id']

        resp = create_order(emergencyId=emergency['id'], serviceType='ambulance-long-distance',
                            driverId=driver['id'], amount=1)
        assert resp.status_code == 200
        order = resp.get_json()['order']
        assert order['serviceType'] == 'AMBULANCE_LONG_DISTANCE'
        assert order['amount'] == 700
        assert order['distance'] == 12
        assert order['paymentTo'] == '01555555555'
        assert order['status'] == 'pending'

        data = _emergency(client, emergency['id'], patient['headers'])
        assert data['paymentStatus'] == 'pending'
        # Only free bookings are recorded on the emergency
        assert data['ambulanceService'] is None

    def test_short_ambulance_booking_is_free_and_settled_immediately(self, client, patient, driver,
                                                                    create_emergency, create_order):
        emergency = create_emergency('driver', distance=3)

        resp = create_order(emergencyId=emergency['id'], driverId=driver['id'])
        assert resp.status_code == 200
        order = resp.get_json()['order']
        assert order['serviceType'] == 'AMBULANCE_EQUIPMENT'
        assert order['amount'] == 0
        assert order['status'] == 'completed'
        assert order['paymentDistributed'] is True

        data = _emergency(client, emergency['id'], patient['headers'])
        assert data['paymentStatus'] == 'distributed'
        assert data['ambulanceService']['serviceType'] == 'AMBULANCE_EQUIPMENT'
        assert data['ambulanceService']['driverId'] == driver['id']
        assert data['ambulanceService']['amount'] == 0

    def test_prescription_uses_the_doctors_fee(self, doctor, create_emergency, create_order):
        _, order = _prescription_order(create_emergency, create_order, doctor)
        assert order['amount'] == 80
        assert order['paymentTo'] == '01712345678'

    def test_existing_order_is_returned_instead_of_a_duplicate(self, doctor, create_emergency, create_order):
        emergency, order = _prescription_order(create_emergency, create_order, doctor)

        resp = create_order(emergencyId=emergency['id'], serviceType='PRESCRIPTION', doctorId=doctor['id'])
        body = resp.get_json()
        assert resp.status_code == 200
        assert body['order']['orderId'] == order['orderId']
        assert 'Existing payment order' in body['message']

    def test_volunteer_purchase_adds_platform_fee(self, volunteer, create_emergency, create_order):
        emergency = create_emergency('volunteer', itemsNeeded='Insulin pens', itemsCost=250)
        assert emergency['paymentStatus'] == 'pending'

        resp = create_order(emergencyId=emergency['id'], serviceType='VOLUNTEER_PURCHASE',
                            volunteerId=volunteer['id'])
        order = resp.get_json()['order']
        assert order['itemPrice'] == 250
        assert order['volunteerFee'] == 13
        assert order['amount'] == 263
        # Volunteer has no bKash number, so their phone is used
        assert order['paymentTo'] == '01911111111'

    def test_paid_service_needs_a_payment_recipient(self, make_user, create_order):
        unreachable = make_user('doctor')
        resp = create_order(serviceType='PRESCRIPTION', doctorId=unreachable['id'])
        assert resp.status_code == 400
        assert 'Payment recipient' in resp.get_json()['error']

    def test_numeric_payment_recipient_is_stored_as_text(self, create_order):
        resp = create_order(serviceType='PRESCRIPTION', amount=100, paymentTo=1712345678)
        assert resp.status_code == 200
        assert resp.get_json()['order']['paymentTo'] == '1712345678'

    def test_unknown_service_type_is_rejected(self, create_order):
        resp = create_order(serviceType='taxi', amount=100, paymentTo='01712345678')
        assert resp.status_code == 400
        body = resp.get_json()
        assert body['error'] == 'Order validation failed'
        assert 'PRESCRIPTION' in body['details']['allowedServiceTypes']

    def test_missing_fields(self, create_order):
        resp = create_order(serviceType='PRESCRIPTION_LATER')
        assert resp.status_code == 400

        resp = create_order(amount=10, paymentTo='01712345678')
        assert resp.status_code == 400
        assert resp.get_json()['error'].startswith('Missing required fields')

    def test_unknown_emergency(self, create_order):
        resp = create_order(emergencyId=999, serviceType='PRESCRIPTION', amount=50, paymentTo='01712345678')
        assert resp.status_code == 404


class TestVerifyAndComplete:
    def test_full_payment_lifecycle(self, client, patient, doctor, create_emergency, create_order):
        emergency, order = _prescription_order(create_emergency, create_order, doctor)

        resp = client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': ' '},
                           headers=patient['headers'])
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Transaction ID is required'

        resp = client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': 'TX1'},
                           headers=doctor['headers'])
        assert resp.status_code == 403

        resp = client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': '9AB3XK'},
                           headers=patient['headers'])
        assert resp.status_code == 200
        paid = resp.get_json()['order']
        assert paid['status'] == 'paid'
        assert paid['transactionId'] == '9AB3XK'
        assert _emergency(client, emergency['id'], patient['headers'])['paymentStatus'] == 'paid'

        resp = client.post('/api/orders/complete', json={'orderId': order['orderId']}, headers=patient['headers'])
        assert resp.status_code == 403

        resp = client.post('/api/orders/complete', json={'orderId': order['orderId']}, headers=doctor['headers'])
        assert resp.status_code == 200
        done = resp.get_json()['order']
        assert done['status'] == 'completed'
        assert done['paymentDistributed'] is True
        assert _emergency(client, emergency['id'], patient['headers'])['paymentStatus'] == 'distributed'

        resp = client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': 'AGAIN'},
                           headers=patient['headers'])
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Order is already completed'

    def test_paid_order_can_be_verified_again(self, client, patient, doctor, create_emergency, create_order):
        _, order = _prescription_order(create_emergency, create_order, doctor)
        for tx in ('TX-TYPO', 'TX-FIXED'):
            resp = client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': tx},
                               headers=patient['headers'])
            assert resp.status_code == 200

        paid = resp.get_json()['order']
        assert paid['status'] == 'paid'
        assert paid['transactionId'] == 'TX-FIXED'

    def test_cancelled_order_cannot_be_verified(self, client, patient, doctor, admin, make_user,
                                                create_emergency, create_order):
        emergency, order = _prescription_order(create_emergency, create_order, doctor)
        other = make_user('doctor', bkash_number='01722222222')
        resp = client.post(f"/api/emergency/{emergency['id']}/assign", json={'helperId': other['id']},
                           headers=admin['headers'])
        assert resp.status_code == 200

        resp = client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': 'TX-LATE'},
                           headers=patient['headers'])
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Order has been cancelled'
        order = client.get(f"/api/orders/{order['orderId']}", headers=patient['headers']).get_json()['order']
        assert order['status'] == 'cancelled'
        assert order['transactionId'] is None

    def test_numeric_transaction_id_is_accepted(self, client, patient, doctor, create_emergency, create_order):
        _, order = _prescription_order(create_emergency, create_order, doctor)
        resp = client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': 8812345},
                           headers=patient['headers'])
        assert resp.status_code == 200
        assert resp.get_json()['order']['transactionId'] == '8812345'

    def test_complete_requires_payment_first(self, client, doctor, create_emergency, create_order):
        _, order = _prescription_order(create_emergency, create_order, doctor)
        resp = client.post('/api/orders/complete', json={'orderId': order['orderId']}, headers=doctor['headers'])
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Order must be paid before completion'

    def test_unknown_order(self, client, patient):
        resp = client.post('/api/orders/verify', json={'orderId': 'nope', 'transactionId': 'TX'},
                           headers=patient['headers'])
        assert resp.status_code == 404


class TestPayoutPush:
    class _Response:
        status_code = 202

        def raise_for_status(self):
            pass

    def _paid_order(self, client, patient, doctor, create_emergency, create_order):
        _, order = _prescription_order(create_emergency, create_order, doctor)
        client.post('/api/orders/verify', json={'orderId': order['orderId'], 'transactionId': 'TX42'},
                    headers=patient['headers'])
        return order

    def test_completion_pushes_payout(self, app, client, patient, doctor, create_emergency, create_order,
                                      monkeypatch):
        app.config['PAYOUT_WEBHOOK_URL'] = 'http://payouts.test/hook'
        calls = []

        def fake_post(url, json=None, timeout=None):
            calls.append((url, json))
            return self._Response()

        monkeypatch.setattr(payouts.requests, 'post', fake_post)
        order = self._paid_order(client, patient, doctor, create_emergency, create_order)

        resp = client.post('/api/orders/complete', json={'orderId': order['orderId']}, headers=doctor['headers'])
        assert resp.status_code == 200
        assert len(calls) == 1
        url, payload = calls[0]
        assert url == 'http://payouts.test/hook'
        assert payload['orderId'] == order['orderId']
        assert payload['paymentTo'] == '01712345678'
        assert payload['amount'] == 80

    def test_unreachable_payout_service_does_not_block_completion(self, app, client, patient, doctor,
                                                                  create_emergency, create_order, monkeypatch):
        app.config['PAYOUT_WEBHOOK_URL'] = 'http://payouts.test/hook'

        def failing_post(url, json=None, timeout=None):
            raise requests.exceptions.ConnectionError("connection refused")

        monkeypatch.setattr(payouts.requests, 'post', failing_post)
        order = self._paid_order(client, patient, doctor, create_emergency, create_order)

        resp = client.post('/api/orders/complete', json={'orderId': order['orderId']}, headers=doctor['headers'])
        assert resp.status_code == 200
        assert resp.get_json()['order']['paymentDistributed'] is True


class TestQueries:
    def test_list_only_shows_own_orders(self, client, patient, doctor, admin, make_user,
                                        create_emergency, create_order):
        _prescription_order(create_emergency, create_order, doctor)
        stranger = make_user('patient')

        resp = client.get('/api/orders', headers=patient['headers'])
        assert len(resp.get_json()['orders']) == 1

        resp = client.get('/api/orders', headers=stranger['headers'])
        assert resp.get_json()['orders'] == []

        resp = client.get('/api/orders?serviceType=prescription', headers=admin['headers'])
        assert len(resp.get_json()['orders']) == 1
        resp = client.get('/api/orders?status=paid', headers=admin['headers'])
        assert resp.get_json()['orders'] == []

    def test_get_order_checks_access(self, client, patient, doctor, make_user, create_emergency, create_order):
        _, order = _prescription_order(create_emergency, create_order, doctor)

        assert client.get(f"/api/orders/{order['orderId']}", headers=doctor['headers']).status_code == 200
        stranger = make_user('patient')
        assert client.get(f"/api/orders/{order['orderId']}", headers=stranger['headers']).status_code == 403

    @pytest.mark.parametrize("query, amount", [
        ("serviceType=AMBULANCE_LONG_DISTANCE&distance=8.2", 400),
        ("distance=4", 0),
        ("serviceType=VOLUNTEER_PURCHASE&itemPrice=250", 263),
        ("serviceType=PRESCRIPTION", 50),
    ])
    def test_quote(self, client, patient, query, amount):
        resp = client.get(f'/api/orders/quote?{query}', headers=patient['headers'])
        assert resp.status_code == 200
        assert resp.get_json()['quote']['amount'] == amount

    def test_quote_uses_the_emergency_details(self, client, patient, doctor, create_emergency):
        emergency = create_emergency('doctor')
        resp = client.get(f"/api/orders/quote?serviceType=PRESCRIPTION&emergencyId={emergency['id']}",
                          headers=patient['headers'])
        assert resp.get_json()['quote']['amount'] == 80

    def test_quote_rejects_unknown_service(self, client, patient):
        resp = client.get('/api/orders/quote?serviceType=taxi', headers=patient['headers'])
        assert resp.status_code == 400
