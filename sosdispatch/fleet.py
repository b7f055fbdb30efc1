from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from sosdispatch import db
from sosdispatch.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from sosdispatch.geo import parse_coordinates
from sosdispatch.models import Ambulance, Hospital, utcnow
from sosdispatch.signals import ambulance_location_reported


def get_ambulance(ambulance_id):
    ambulance = db.session.get(Ambulance, ambulance_id)
    if ambulance is None:
        raise NotFoundError('Ambulance not found')
    return ambulance


def register_ambulance(hospital_id, vehicle_number, driver_name, driver_phone):
    vehicle_number = vehicle_number.strip().upper()
    existing = Ambulance.query.filter_by(hospital_id=hospital_id, vehicle_number=vehicle_number).first()
    if existing:
        raise ConflictError(f'Vehicle {vehicle_number} is already registered')

    ambulance = Ambulance(
        hospital_id=hospital_id,
        vehicle_number=vehicle_number,
        driver_name=driver_name.strip(),
        driver_phone=driver_phone.strip(),
        is_available=True,
    )
    db.session.add(ambulance)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f'Vehicle {vehicle_number} is already registered')

    current_app.logger.info(f'Ambulance {vehicle_number} registered for hospital {hospital_id}')
    return ambulance


def list_ambulances(hospital_id, available=None):
    query = Ambulance.query.filter_by(hospital_id=hospital_id)
    if available is not None:
        query = query.filter(Ambulance.is_available.is_(available))
    return query.order_by(Ambulance.vehicle_number.asc()).all()


def set_ambulance_availability(ambulance_id, hospital_id, is_available):
    """Manual override from the owning hospital's dashboard."""
    ambulance = get_ambulance(ambulance_id)
    if ambulance.hospital_id != hospital_id:
        raise ForbiddenError('Ambulance belongs to a different hospital')
    ambulance.is_available = bool(is_available)
    db.session.commit()
    return ambulance


def report_ambulance_location(ambulance_id, latitude, longitude):
    """Store the latest GPS fix for an ambulance.

    Last write wins, stamped with the server time. Reporting is best-effort:
    if the store rejects the write it is logged and dropped, and the driver
    app simply sends the next fix. Returns whether the fix was stored.
    """
    lat, lng = parse_coordinates(latitude, longitude)

    try:
        ambulance = db.session.get(Ambulance, ambulance_id)
        if ambulance is not None:
            ambulance.latitude = lat
            ambulance.longitude = lng
            ambulance.last_updated = utcnow()
            db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.warning(f'Dropped location update for ambulance {ambulance_id}: {str(e)}')
        return False
    if ambulance is None:
        raise NotFoundError('Ambulance not found')

    ambulance_location_reported.send(current_app._get_current_object(), ambulance=ambulance)
    return True


def get_ambulance_location(ambulance_id):
    ambulance = get_ambulance(ambulance_id)
    if ambulance.latitude is None or ambulance.longitude is None:
        raise NotFoundError('Location not found')
    return {
        'latitude': ambulance.latitude,
        'longitude': ambulance.longitude,
        'updated_at': ambulance.last_updated.isoformat() if ambulance.last_updated else None,
    }


def update_bed_counts(hospital_id, total_beds=None, occupied_beds=None):
    """Update a hospital's bed numbers, keeping occupied within total.

    A hospital without a total bed count has unknown capacity, so only the
    lower bound is checked for it.
    """
    hospital = db.session.get(Hospital, hospital_id)
    if hospital is None:
        raise NotFoundError('Hospital not found')

    new_total = hospital.total_beds if total_beds is None else total_beds
    new_occupied = hospital.occupied_beds if occupied_beds is None else occupied_beds

    if new_total is not None and new_total < 0:
        raise ValidationError('Total beds cannot be negative')
    if new_occupied is not None and new_occupied < 0:
        raise ValidationError('Occupied beds cannot be negative')
    if new_total is not None and (new_occupied or 0) > new_total:
        raise ValidationError(f'Occupied beds ({new_occupied}) cannot exceed total beds ({new_total})')

    hospital.total_beds = new_total
    hospital.occupied_beds = new_occupied or 0
    db.session.commit()
    return hospital
