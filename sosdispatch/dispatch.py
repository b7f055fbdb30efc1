"""Emergency lifecycle: intake, hospital claim, ambulance dispatch, resolution.

Every transition is written as a conditional UPDATE on the current status, so
two callers acting on the same emergency cannot both succeed. The hospital
claim additionally requires that no hospital holds the emergency yet; the
first claim to commit wins and later ones get a ConflictError naming it.

Ambulance availability is bookkeeping for the hospital dashboards. Dispatch
never refuses an ambulance because it is marked unavailable, and one ambulance
can be on several active missions at once.
"""
import re

from flask import current_app
from sqlalchemy import or_, select, update

from sosdispatch import db
from sosdispatch.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from sosdispatch.geo import UNKNOWN_DISTANCE, haversine_km, parse_coordinates
from sosdispatch.models import (
    ACKNOWLEDGED,
    ACTIVE_MISSION_STATUSES,
    CANCELLED,
    DISPATCHED,
    EMERGENCY_LEVELS,
    EMERGENCY_STATUSES,
    IN_PROGRESS,
    PENDING,
    RESOLVED,
    Ambulance,
    Emergency,
    Hospital,
    HospitalNotification,
    utcnow,
)
from sosdispatch.scoring import nearest_hospitals
from sosdispatch.signals import emergency_claimed, emergency_created, emergency_status_changed

TRANSITIONS = {
    PENDING: (ACKNOWLEDGED, CANCELLED),
    ACKNOWLEDGED: (DISPATCHED, CANCELLED),
    DISPATCHED: (IN_PROGRESS, RESOLVED),
    IN_PROGRESS: (RESOLVED,),
    RESOLVED: (),
    CANCELLED: (),
}

PHONE_PATTERN = re.compile(r'^[\d\s\-\+\(\)]+$')
MAX_NOTIFY_COUNT = 100


def _app():
    return current_app._get_current_object()


def _guarded_update(emergency_id, expected_status, new_status, values, *criteria):
    """Move an emergency from expected_status to new_status if it is still there.

    Returns True when the row was updated. Nothing is committed.
    """
    stmt = (
        update(Emergency)
        .where(Emergency.id == emergency_id, Emergency.status == expected_status, *criteria)
        .values(status=new_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


# ==================
# Intake and queries
# ==================

def create_emergency(phone_number, latitude, longitude, name=None, emergency_level='high',
                     emergency_type=None, description=None, blood_group=None, allergies=None,
                     medical_conditions=None, selected_hospital_id=None, notify_count=None):
    """Record a new SOS and notify hospitals about it.

    With a selected hospital only that hospital is notified; otherwise the
    nearest emergency-capable hospitals are. Either way the emergency stays
    pending until one of them claims it.
    """
    phone_number = (phone_number or '').strip()
    if not phone_number:
        raise ValidationError('Phone number is required')
    if not PHONE_PATTERN.match(phone_number):
        raise ValidationError('Phone number may only contain digits, spaces and +()-')
    lat, lng = parse_coordinates(latitude, longitude)
    emergency_level = (emergency_level or 'high').lower()
    if emergency_level not in EMERGENCY_LEVELS:
        raise ValidationError(f'Emergency level must be one of: {", ".join(EMERGENCY_LEVELS)}')

    if selected_hospital_id is not None:
        hospital = db.session.get(Hospital, selected_hospital_id)
        if hospital is None or not hospital.is_active:
            raise NotFoundError('Selected hospital not found')
        targets = [(hospital, haversine_km(lat, lng, hospital.latitude, hospital.longitude))]
    else:
        if notify_count is None:
            notify_count = current_app.config.get('NOTIFY_COUNT', 20)
        if not 1 <= notify_count <= MAX_NOTIFY_COUNT:
            raise ValidationError(f'notify_count must be between 1 and {MAX_NOTIFY_COUNT}')
        targets = nearest_hospitals(lat, lng, notify_count)

    emergency = Emergency(
        phone_number=phone_number,
        name=name,
        latitude=lat,
        longitude=lng,
        emergency_level=emergency_level,
        emergency_type=emergency_type,
        description=description,
        blood_group=blood_group,
        allergies=allergies,
        medical_conditions=medical_conditions,
        status=PENDING,
    )
    db.session.add(emergency)
    for hospital, distance_km in targets:
        emergency.notifications.append(HospitalNotification(
            hospital_id=hospital.id,
            distance_km=round(distance_km, 2) if distance_km != UNKNOWN_DISTANCE else None,
        ))
    db.session.commit()

    if not targets:
        current_app.logger.warning(f'Emergency {emergency.id} created with no hospital in range')
    emergency_created.send(
        _app(), emergency=emergency, notified_hospital_ids=[h.id for h, _ in targets]
    )
    return emergency


def get_emergency(emergency_id):
    emergency = db.session.get(Emergency, emergency_id)
    if emergency is None:
        raise NotFoundError('Emergency not found')
    return emergency


def notified_hospitals(emergency):
    return [
        {
            'hospital_id': notification.hospital_id,
            'name': notification.hospital.name if notification.hospital else None,
            'distance_km': notification.distance_km,
            'notified_at': notification.created_at.isoformat(),
        }
        for notification in sorted(emergency.notifications, key=lambda n: (n.distance_km is None, n.distance_km or 0))
    ]


def list_emergencies(statuses=None, hospital_id=None, ambulance_id=None, since=None, limit=200):
    """Emergencies for a dashboard poll, newest first.

    ``hospital_id`` matches emergencies the hospital was notified about or
    holds. ``since`` keeps only rows updated after that time, so a poller can
    ask for what changed since its last tick.
    """
    query = Emergency.query
    if statuses:
        unknown = set(statuses) - set(EMERGENCY_STATUSES)
        if unknown:
            raise ValidationError(f'Unknown status: {", ".join(sorted(unknown))}')
        query = query.filter(Emergency.status.in_(statuses))
    if hospital_id is not None:
        notified = select(HospitalNotification.emergency_id).where(HospitalNotification.hospital_id == hospital_id)
        query = query.filter(or_(Emergency.hospital_id == hospital_id, Emergency.id.in_(notified)))
    if ambulance_id is not None:
        query = query.filter(Emergency.assigned_ambulance_id == ambulance_id)
    if since is not None:
        query = query.filter(Emergency.updated_at > since)
    return query.order_by(Emergency.created_at.desc(), Emergency.id.desc()).limit(limit).all()


def active_missions(ambulance_id):
    """Dispatched or in-progress emergencies assigned to the ambulance."""
    if db.session.get(Ambulance, ambulance_id) is None:
        raise NotFoundError('Ambulance not found')
    return (
        Emergency.query
        .filter(
            Emergency.assigned_ambulance_id == ambulance_id,
            Emergency.status.in_(ACTIVE_MISSION_STATUSES),
        )
        .order_by(Emergency.dispatched_at.asc(), Emergency.id.asc())
        .all()
    )


# ==================
# Transitions
# ==================

def claim_emergency(emergency_id, hospital_id):
    """pending -> acknowledged, first hospital wins."""
    hospital = db.session.get(Hospital, hospital_id)
    if hospital is None:
        raise NotFoundError('Hospital not found')
    if not hospital.is_active:
        raise ForbiddenError('Hospital is not active')

    now = utcnow()
    claimed = _guarded_update(
        emergency_id,
        PENDING,
        ACKNOWLEDGED,
        {
            'hospital_id': hospital.id,
            'assigned_hospital_name': hospital.name,
            'assigned_hospital_lat': hospital.latitude,
            'assigned_hospital_lng': hospital.longitude,
            'acknowledged_at': now,
        },
        Emergency.hospital_id.is_(None),
    )

    if not claimed:
        db.session.rollback()
        emergency = get_emergency(emergency_id)
        if emergency.hospital_id == hospital.id:
            # Retry of our own successful claim
            return emergency
        if emergency.hospital_id is not None:
            current_app.logger.warning(
                f'Hospital {hospital.id} lost the claim on emergency {emergency.id} '
                f'to {emergency.assigned_hospital_name}'
            )
            raise ConflictError(
                f'Emergency already assigned to {emergency.assigned_hospital_name}',
                assigned_to=emergency.assigned_hospital_name,
                assigned_hospital_id=emergency.hospital_id,
            )
        raise ConflictError(f'Emergency is {emergency.status} and can no longer be acknowledged',
                            status=emergency.status)

    db.session.commit()
    emergency = get_emergency(emergency_id)
    emergency_claimed.send(_app(), emergency=emergency, hospital=hospital)
    emergency_status_changed.send(_app(), emergency=emergency, previous_status=PENDING)
    return emergency


def dispatch_ambulance(emergency_id, ambulance_id, hospital_id=None):
    """acknowledged -> dispatched with the chosen ambulance.

    The ambulance is marked unavailable, but an ambulance that is already
    marked unavailable can still be dispatched.
    """
    emergency = get_emergency(emergency_id)
    ambulance = db.session.get(Ambulance, ambulance_id)
    if ambulance is None:
        raise NotFoundError('Ambulance not found')
    if hospital_id is not None and emergency.hospital_id != hospital_id:
        raise ForbiddenError('Emergency is not assigned to this hospital')
    if emergency.status != ACKNOWLEDGED:
        raise ConflictError(f'Cannot dispatch an emergency that is {emergency.status}', status=emergency.status)
    if ambulance.hospital_id != emergency.hospital_id:
        raise ValidationError('Ambulance belongs to a different hospital')

    if not ambulance.is_available:
        current_app.logger.info(
            f'Ambulance {ambulance.vehicle_number} is already on a mission; '
            f'dispatching it to emergency {emergency.id} as well'
        )

    dispatched = _guarded_update(
        emergency.id,
        ACKNOWLEDGED,
        DISPATCHED,
        {
            'assigned_ambulance_id': ambulance.id,
            'assigned_ambulance_number': ambulance.vehicle_number,
            'driver_name': ambulance.driver_name,
            'driver_phone': ambulance.driver_phone,
            'dispatched_at': utcnow(),
        },
        Emergency.hospital_id == ambulance.hospital_id,
    )
    if not dispatched:
        db.session.rollback()
        raise ConflictError('Emergency changed while dispatching; refresh and try again')

    ambulance = _lock_ambulance(ambulance.id)
    ambulance.is_available = False
    db.session.commit()

    emergency = get_emergency(emergency_id)
    emergency_status_changed.send(_app(), emergency=emergency, previous_status=ACKNOWLEDGED)
    return emergency


def _check_caller(emergency, new_status, vehicle_number, hospital_id, phone_number):
    if vehicle_number is not None and vehicle_number != emergency.assigned_ambulance_number:
        raise ForbiddenError('This vehicle is not assigned to the emergency')
    if hospital_id is not None and emergency.hospital_id is not None and hospital_id != emergency.hospital_id:
        raise ForbiddenError('Emergency is assigned to another hospital')

    if new_status == IN_PROGRESS and vehicle_number is None:
        raise ValidationError('vehicle_number is required to confirm pickup')
    if new_status == RESOLVED and vehicle_number is None and hospital_id is None:
        raise ForbiddenError('Only the assigned hospital or ambulance can resolve an emergency')
    if new_status == CANCELLED:
        if emergency.hospital_id is not None and hospital_id is None:
            raise ForbiddenError('Only the assigned hospital can cancel an acknowledged emergency')
        if emergency.hospital_id is None and phone_number != emergency.phone_number:
            raise ForbiddenError('Only the reporter can cancel an unclaimed emergency')


def update_emergency_status(emergency_id, new_status, vehicle_number=None, hospital_id=None, phone_number=None):
    """Apply a status change requested by a driver, hospital or reporter.

    Acknowledging goes through ``claim_emergency`` and dispatching through
    ``dispatch_ambulance``; this handles pickup, resolution and cancellation.
    Asking for the status the emergency already has is a no-op.
    """
    if new_status not in EMERGENCY_STATUSES:
        raise ValidationError(f'Unknown status: {new_status}')

    emergency = get_emergency(emergency_id)
    if new_status == emergency.status:
        return emergency

    if new_status == ACKNOWLEDGED:
        if hospital_id is None:
            raise ValidationError('hospital_id is required to acknowledge an emergency')
        return claim_emergency(emergency_id, hospital_id)
    if new_status == DISPATCHED:
        raise ValidationError('Dispatching requires an ambulance; use the dispatch endpoint')

    previous_status = emergency.status
    if new_status not in TRANSITIONS[previous_status]:
        raise ValidationError(f'Invalid status transition from {previous_status} to {new_status}')
    _check_caller(emergency, new_status, vehicle_number, hospital_id, phone_number)

    now = utcnow()
    values = {}
    if new_status == IN_PROGRESS:
        values['picked_up_at'] = now
    elif new_status == RESOLVED:
        values['resolved_at'] = now

    if not _guarded_update(emergency.id, previous_status, new_status, values):
        db.session.rollback()
        raise ConflictError('Emergency changed while updating; refresh and try again')

    if new_status == RESOLVED and emergency.assigned_ambulance_id is not None:
        _release_ambulance_if_idle(emergency.assigned_ambulance_id)

    db.session.commit()
    emergency = get_emergency(emergency_id)
    emergency_status_changed.send(_app(), emergency=emergency, previous_status=previous_status)
    return emergency


def _lock_ambulance(ambulance_id):
    # Row lock held until commit; orders dispatch and release for one ambulance
    return db.session.get(Ambulance, ambulance_id, with_for_update=True, populate_existing=True)


def _release_ambulance_if_idle(ambulance_id):
    ambulance = _lock_ambulance(ambulance_id)
    if ambulance is None:
        return
    # Counted after taking the lock, once any concurrent release has committed
    remaining = (
        Emergency.query
        .filter(
            Emergency.assigned_ambulance_id == ambulance_id,
            Emergency.status.in_(ACTIVE_MISSION_STATUSES),
        )
        .count()
    )
    if remaining:
        current_app.logger.info(f'Ambulance {ambulance_id} still has {remaining} active mission(s)')
        return
    ambulance.is_available = True
