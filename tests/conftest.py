from __future__ import annotations

import pytest

from sosdispatch import create_app, db
from sosdispatch.config import TestConfig
from sosdispatch.models import Ambulance, Hospital

PUNE = (18.5204, 73.8567)
# Degrees of latitude per kilometre on the haversine sphere
LAT_PER_KM = 1 / 111.195


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    # One app per run: Flask-Session declares its table model on first init.
    # File-backed so that threads in a test get connections of their own.
    db_path = tmp_path_factory.mktemp('db') / 'sos_dispatch.db'

    class FileTestConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{db_path}'

    return create_app(FileTestConfig)


@pytest.fixture(autouse=True)
def _tables(app):
    with app.app_context():
        db.create_all()
    yield
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """App context for tests that call the service layer directly."""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


def add_hospital(name='City Hospital', km_north=1.0, username=None, password='secret123',
                 total_beds=100, occupied_beds=10, specializations=None, is_active=True):
    hospital = Hospital(
        name=name,
        username=username,
        latitude=PUNE[0] + km_north * LAT_PER_KM,
        longitude=PUNE[1],
        total_beds=total_beds,
        occupied_beds=occupied_beds,
        specializations=specializations if specializations is not None else ['Emergency'],
        is_active=is_active,
    )
    if username:
        hospital.set_password(password)
    db.session.add(hospital)
    db.session.commit()
    return hospital


def add_ambulance(hospital, vehicle_number='MH12AB0001', is_available=True):
    ambulance = Ambulance(
        hospital_id=hospital.id,
        vehicle_number=vehicle_number,
        driver_name='Ravi Patil',
        driver_phone='+91 98220 00001',
        is_available=is_available,
    )
    db.session.add(ambulance)
    db.session.commit()
    return ambulance


@pytest.fixture
def seeded(app):
    """Two logged-in-able hospitals with one ambulance each, as plain ids."""
    with app.app_context():
        ruby = add_hospital('Ruby Hall Clinic', km_north=1.0, username='ruby')
        kem = add_hospital('KEM Hospital', km_north=2.0, username='kem')
        ruby_amb = add_ambulance(ruby, 'MH12RH0001')
        kem_amb = add_ambulance(kem, 'MH12KE0001')
        return {
            'ruby': ruby.id,
            'kem': kem.id,
            'ruby_ambulance': ruby_amb.id,
            'kem_ambulance': kem_amb.id,
        }


def login(client, username, password='secret123'):
    res = client.post('/api/auth/hospital/login', json={'username': username, 'password': password})
    assert res.status_code == 200, res.get_json()
    return res
