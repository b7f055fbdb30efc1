import click
from flask import current_app
from flask.cli import with_appcontext

from sosdispatch import db
from sosdispatch.models import Ambulance, Hospital

DEMO_PASSWORD = 'hospital123'

# (username, name, latitude, longitude, total_beds, occupied_beds, specializations, ambulances)
DEMO_HOSPITALS = [
    ('sassoon', 'Sassoon General Hospital', 18.5284, 73.8739, 1300, 1100,
     ['Emergency', 'Trauma', 'General Surgery', 'Orthopedics'], ['MH12AB1001', 'MH12AB1002', 'MH12AB1003']),
    ('ruby', 'Ruby Hall Clinic', 18.5334, 73.8773, 750, 520,
     ['Cardiology', 'Neurology', 'Emergency'], ['MH12RH2001', 'MH12RH2002']),
    ('jehangir', 'Jehangir Hospital', 18.5309, 73.8760, 350, 210,
     ['General Medicine', 'Pediatrics'], ['MH12JH3001']),
    ('kem', 'KEM Hospital, Pune', 18.5196, 73.8664, 550, 480,
     ['General Medicine', 'Obstetrics & Gynecology', 'Trauma'], ['MH12KE4001', 'MH12KE4002']),
    ('poona', 'Poona Hospital and Research Centre', 18.5115, 73.8446, 400, 150,
     [], ['MH12PH5001']),
    ('deenanath', 'Deenanath Mangeshkar Hospital', 18.5028, 73.8296, 800, 690,
     ['Cardiology', 'Oncology', 'Nephrology'], ['MH12DM6001', 'MH12DM6002']),
    ('smile', 'Smile Dental Clinic', 18.5210, 73.8570, 10, 2,
     ['Orthodontics'], []),
    ('citydental', 'City Dental and Trauma Centre', 18.5150, 73.8600, 40, 12,
     ['Maxillofacial Trauma'], ['MH12CD7001']),
    ('visioneye', 'Vision Eye Hospital', 18.5250, 73.8500, 30, 5,
     [], []),
    ('aundh', 'Aundh District Hospital', 18.5590, 73.8078, None, 40,
     ['General Medicine'], ['MH12AD8001']),
]


def seed_demo_data():
    """Load the Pune demo hospitals and ambulances into an empty database.

    Returns the number of hospitals added; nothing is added when any hospital
    already exists.
    """
    if Hospital.query.count() > 0:
        return 0

    for username, name, lat, lng, total, occupied, specs, vehicles in DEMO_HOSPITALS:
        hospital = Hospital(
            name=name,
            username=username,
            latitude=lat,
            longitude=lng,
            total_beds=total,
            occupied_beds=occupied,
            specializations=specs,
            is_active=True,
        )
        hospital.set_password(DEMO_PASSWORD)
        db.session.add(hospital)
        for index, vehicle_number in enumerate(vehicles, start=1):
            hospital.ambulances.append(Ambulance(
                vehicle_number=vehicle_number,
                driver_name=f'{name.split()[0]} Driver {index}',
                driver_phone=f'+91 98220 {index:05d}',
                is_available=True,
            ))
    db.session.commit()
    return len(DEMO_HOSPITALS)


@click.command('seed-demo')
@click.option('--create-tables/--no-create-tables', default=True, help='Create missing tables first.')
@with_appcontext
def seed_demo_command(create_tables):
    """Seed demo hospitals and ambulances around Pune."""
    if create_tables:
        db.create_all()
    added = seed_demo_data()
    if added:
        current_app.logger.info(f'Seeded {added} demo hospitals')
        click.echo(f'Seeded {added} hospitals. Demo password: {DEMO_PASSWORD}')
    else:
        click.echo('Hospitals already present, nothing seeded.')
