"""Dispatch events.

Dashboards poll the API; anything inside the process that wants to react to
an emergency changing (push channels, audit trails, tests) subscribes here.
Signals are sent after the change is committed.
"""
from blinker import Namespace

_signals = Namespace()

# sender: app; kwargs: emergency, notified_hospital_ids
emergency_created = _signals.signal('emergency-created')
# sender: app; kwargs: emergency, hospital
emergency_claimed = _signals.signal('emergency-claimed')
# sender: app; kwargs: emergency, previous_status
emergency_status_changed = _signals.signal('emergency-status-changed')
# sender: app; kwargs: ambulance
ambulance_location_reported = _signals.signal('ambulance-location-reported')


def _log_created(app, emergency, notified_hospital_ids, **extra):
    app.logger.info(
        f'Emergency {emergency.id} ({emergency.emergency_level}) created, '
        f'{len(notified_hospital_ids)} hospital(s) notified'
    )


def _log_claimed(app, emergency, hospital, **extra):
    app.logger.info(f'Emergency {emergency.id} acknowledged by {hospital.name}')


def _log_status_changed(app, emergency, previous_status, **extra):
    app.logger.info(f'Emergency {emergency.id}: {previous_status} -> {emergency.status}')


def _log_location(app, ambulance, **extra):
    app.logger.debug(f'Ambulance {ambulance.vehicle_number} at ({ambulance.latitude}, {ambulance.longitude})')


def connect_logging_subscribers(app):
    emergency_created.connect(_log_created, sender=app, weak=False)
    emergency_claimed.connect(_log_claimed, sender=app, weak=False)
    emergency_status_changed.connect(_log_status_changed, sender=app, weak=False)
    ambulance_location_reported.connect(_log_location, sender=app, weak=False)
