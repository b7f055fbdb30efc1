from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload

from sosdispatch import db
from sosdispatch.dispatch import get_emergency
from sosdispatch.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from sosdispatch.models import POLICE_REQUEST_STATUSES, PoliceRequest, utcnow


def request_police_assistance(emergency_id, hospital_id, notes=None):
    """Ask the police for traffic clearance on an emergency this hospital holds."""
    emergency = get_emergency(emergency_id)
    if emergency.hospital_id != hospital_id:
        raise ForbiddenError('Only the hospital handling the emergency can request police assistance')
    if emergency.police_request is not None:
        raise ConflictError('Police assistance already requested for this emergency',
                            police_request_id=emergency.police_request.id)

    police_request = PoliceRequest(
        emergency_id=emergency.id,
        hospital_id=hospital_id,
        status='pending',
        traffic_notes=notes or None,
    )
    db.session.add(police_request)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Police assistance already requested for this emergency')

    current_app.logger.info(f'Police assistance requested for emergency {emergency.id}')
    return police_request


def list_police_requests(status=None):
    query = PoliceRequest.query.options(
        joinedload(PoliceRequest.emergency),
        joinedload(PoliceRequest.hospital),
    )
    if status:
        if status not in POLICE_REQUEST_STATUSES:
            raise ValidationError(f'Unknown status: {status}')
        query = query.filter(PoliceRequest.status == status)
    return query.order_by(PoliceRequest.requested_at.desc(), PoliceRequest.id.desc()).all()


def update_police_request(request_id, status=None, traffic_notes=None):
    police_request = db.session.get(PoliceRequest, request_id)
    if police_request is None:
        raise NotFoundError('Police request not found')

    if status:
        if status not in POLICE_REQUEST_STATUSES:
            raise ValidationError(f'Unknown status: {status}')
        police_request.status = status
        if status == 'acknowledged' and police_request.acknowledged_at is None:
            police_request.acknowledged_at = utcnow()

    if traffic_notes is not None:
        police_request.traffic_notes = traffic_notes

    police_request.updated_at = utcnow()
    db.session.commit()
    return police_request
