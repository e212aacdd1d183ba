import pytest
from flask_jwt_extended import create_access_token

from rescuelink import create_app
from rescuelink.config import TestConfig
from rescuelink.extensions import db
from rescuelink.models import User

# Patient location in Dhaka; helpers are placed a few hundred metres away
PATIENT_LNG, PATIENT_LAT = 90.4125, 23.8103


@pytest.fixture
def app(tmp_path):
    class _Config(TestConfig):
        PRESCRIPTION_DIR = str(tmp_path / "prescriptions")

    app = create_app(_Config)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Creates a user and returns {'id', 'token', 'headers'} with a bearer token."""
    counter = {'n': 0}

    def _make(role='patient', **fields):
        counter['n'] += 1
        with app.app_context():
            user = User(name=fields.pop('name', f"{role.title()} {counter['n']}"),
                        email=fields.pop('email', f"{role}{counter['n']}@example.com"),
                        role=role, **fields)
            user.set_password('secret123')
            db.session.add(user)
            db.session.commit()
            token = create_access_token(identity=str(user.id))
            return {'id': user.id, 'token': token, 'headers': {'Authorization': f'Bearer {token}'}}

    return _make


@pytest.fixture
def patient(make_user):
    return make_user('patient', phone='01811111111')


@pytest.fixture
def doctor(make_user):
    return make_user('doctor', bkash_number='01712345678', prescription_fee=80,
                     latitude=23.812, longitude=90.414, is_on_duty=True)


@pytest.fixture
def volunteer(make_user):
    # Volunteer only gave a phone number, which doubles as their bKash account
    return make_user('volunteer', phone='01911111111', latitude=23.809, longitude=90.411, is_on_duty=True)


@pytest.fixture
def driver(make_user):
    return make_user('driver', bkash_number='01555555555', latitude=23.811, longitude=90.413, is_on_duty=True)


@pytest.fixture
def admin(make_user):
    return make_user('admin')


@pytest.fixture
def create_emergency(client, patient):
    def _create(requested_role='doctor', headers=None, **fields):
        body = {
            'location': {'coordinates': [PATIENT_LNG, PATIENT_LAT], 'address': 'Gulshan 1, Dhaka'},
            'description': 'Chest pain and shortness of breath',
            'requestedRole': requested_role,
        }
        body.update(fields)
        resp = client.post('/api/emergency', json=body, headers=headers or patient['headers'])
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()['data']

    return _create


@pytest.fixture
def create_order(client, patient):
    def _create(headers=None, **body):
        return client.post('/api/orders/create', json=body, headers=headers or patient['headers'])

    return _create
