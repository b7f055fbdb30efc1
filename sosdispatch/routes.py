from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from sosdispatch import dispatch, fleet, police
from sosdispatch.errors import ValidationError
from sosdispatch.forms import (
    AmbulanceForm,
    AvailabilityForm,
    BedsForm,
    DispatchForm,
    EmergencyForm,
    PoliceRequestForm,
    PoliceRequestUpdateForm,
    StatusUpdateForm,
    load_form,
    provided,
)
from sosdispatch.scoring import rank_hospitals

api = Blueprint('api', __name__)


def _json_body():
    return request.get_json(silent=True) or {}


def _int_arg(name):
    value = request.args.get(name)
    if value in (None, ''):
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f'{name} must be an integer')


def _since_arg():
    value = request.args.get('since')
    if not value:
        return None
    try:
        since = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError('since must be an ISO 8601 timestamp')
    if since.tzinfo is not None:
        since = since.astimezone(timezone.utc).replace(tzinfo=None)
    return since


def _emergency_detail(emergency):
    data = emergency.to_dict()
    data['notified_hospitals'] = dispatch.notified_hospitals(emergency)
    return data


# ==================
# Hospitals
# ==================

@api.route('/hospitals/rank', methods=['POST'])
def hospitals_rank():
    data = _json_body()
    ranked = rank_hospitals(data.get('latitude'), data.get('longitude'))
    return jsonify({'success': True, 'data': ranked})


@api.route('/hospitals/me/beds', methods=['PATCH'])
@login_required
def update_beds():
    form = load_form(BedsForm, _json_body())
    hospital = fleet.update_bed_counts(
        current_user.id,
        total_beds=provided(form.total_beds),
        occupied_beds=provided(form.occupied_beds),
    )
    return jsonify({'success': True, 'hospital': hospital.to_dict()})


# ==================
# Emergencies
# ==================

@api.route('/emergencies', methods=['POST'])
def create_emergency():
    data = _json_body()
    form = load_form(EmergencyForm, data)
    emergency = dispatch.create_emergency(
        phone_number=form.phone.data,
        latitude=data.get('latitude'),
        longitude=data.get('longitude'),
        name=form.name.data or None,
        emergency_level=form.emergency_level.data or 'high',
        emergency_type=form.emergency_type.data or None,
        description=form.description.data or None,
        blood_group=form.blood_group.data or None,
        allergies=form.allergies.data or None,
        medical_conditions=form.medical_conditions.data or None,
        selected_hospital_id=form.selected_hospital_id.data,
        notify_count=form.notify_count.data,
    )
    return jsonify({
        'success': True,
        'message': 'Emergency reported. Nearby hospitals have been notified.',
        'emergency': _emergency_detail(emergency),
    }), 201


@api.route('/emergencies', methods=['GET'])
def list_emergencies():
    statuses = [s.strip() for s in request.args.get('status', '').split(',') if s.strip()]
    emergencies = dispatch.list_emergencies(
        statuses=statuses or None,
        hospital_id=_int_arg('hospital_id'),
        ambulance_id=_int_arg('ambulance_id'),
        since=_since_arg(),
    )
    return jsonify({
        'success': True,
        'data': [e.to_dict() for e in emergencies],
        'server_time': datetime.now(timezone.utc).replace(tzinfo=None).isoformat(),
    })


@api.route('/emergencies/<int:emergency_id>', methods=['GET'])
def get_emergency(emergency_id):
    emergency = dispatch.get_emergency(emergency_id)
    return jsonify({'success': True, 'emergency': _emergency_detail(emergency)})


@api.route('/emergencies/<int:emergency_id>/claim', methods=['POST'])
@login_required
def claim_emergency(emergency_id):
    emergency = dispatch.claim_emergency(emergency_id, current_user.id)
    return jsonify({
        'success': True,
        'message': f'Emergency approved and assigned to {emergency.assigned_hospital_name}',
        'emergency': emergency.to_dict(),
    })


@api.route('/emergencies/<int:emergency_id>/dispatch', methods=['POST'])
@login_required
def dispatch_ambulance(emergency_id):
    form = load_form(DispatchForm, _json_body())
    emergency = dispatch.dispatch_ambulance(emergency_id, form.ambulance_id.data, hospital_id=current_user.id)
    return jsonify({
        'success': True,
        'message': f'Ambulance {emergency.assigned_ambulance_number} dispatched',
        'emergency': emergency.to_dict(),
    })


@api.route('/emergencies/<int:emergency_id>/status', methods=['PATCH'])
def update_emergency_status(emergency_id):
    form = load_form(StatusUpdateForm, _json_body())
    # Drivers and reporters are not logged in; hospitals are
    hospital_id = current_user.id if current_user.is_authenticated else None
    emergency = dispatch.update_emergency_status(
        emergency_id,
        form.status.data,
        vehicle_number=form.vehicle_number.data or None,
        hospital_id=hospital_id,
        phone_number=form.phone_number.data or None,
    )
    return jsonify({
        'success': True,
        'message': f'Emergency {emergency.status}',
        'emergency': emergency.to_dict(),
    })


# ==================
# Ambulances
# ==================

@api.route('/ambulances', methods=['GET'])
@login_required
def list_ambulances():
    available = request.args.get('available')
    if available is not None:
        available = available.lower() in ('1', 'true', 'yes')
    ambulances = fleet.list_ambulances(current_user.id, available=available)
    return jsonify({'success': True, 'data': [a.to_dict() for a in ambulances]})


@api.route('/ambulances', methods=['POST'])
@login_required
def register_ambulance():
    form = load_form(AmbulanceForm, _json_body())
    ambulance = fleet.register_ambulance(
        current_user.id,
        form.vehicle_number.data,
        form.driver_name.data,
        form.driver_phone.data,
    )
    return jsonify({'success': True, 'message': 'Ambulance added successfully', 'ambulance': ambulance.to_dict()}), 201


@api.route('/ambulances/<int:ambulance_id>/availability', methods=['PATCH'])
@login_required
def set_ambulance_availability(ambulance_id):
    form = load_form(AvailabilityForm, _json_body())
    ambulance = fleet.set_ambulance_availability(ambulance_id, current_user.id, form.is_available.data)
    return jsonify({'success': True, 'ambulance': ambulance.to_dict()})


@api.route('/ambulances/<int:ambulance_id>/location', methods=['POST'])
def report_ambulance_location(ambulance_id):
    data = _json_body()
    stored = fleet.report_ambulance_location(ambulance_id, data.get('latitude'), data.get('longitude'))
    if not stored:
        # Best-effort: the driver app sends the next fix instead of retrying this one
        return jsonify({'success': False, 'message': 'Location update dropped'}), 202
    return jsonify({'success': True, 'message': 'Location updated'})


@api.route('/ambulances/<int:ambulance_id>/location', methods=['GET'])
def get_ambulance_location(ambulance_id):
    return jsonify({'success': True, 'data': fleet.get_ambulance_location(ambulance_id)})


@api.route('/ambulances/<int:ambulance_id>/missions', methods=['GET'])
def ambulance_missions(ambulance_id):
    missions = dispatch.active_missions(ambulance_id)
    return jsonify({'success': True, 'data': [m.to_dict() for m in missions]})


# ==================
# Police
# ==================

@api.route('/police-requests', methods=['POST'])
@login_required
def create_police_request():
    form = load_form(PoliceRequestForm, _json_body())
    police_request = police.request_police_assistance(
        form.emergency_id.data,
        current_user.id,
        notes=form.notes.data or None,
    )
    return jsonify({'success': True, 'data': police_request.to_dict()}), 201


@api.route('/police-requests', methods=['GET'])
def list_police_requests():
    requests = police.list_police_requests(status=request.args.get('status') or None)
    return jsonify({'success': True, 'data': [r.to_dict(include_related=True) for r in requests]})


@api.route('/police-requests/<int:request_id>', methods=['PATCH'])
def update_police_request(request_id):
    form = load_form(PoliceRequestUpdateForm, _json_body())
    police_request = police.update_police_request(
        request_id,
        status=form.status.data or None,
        traffic_notes=provided(form.traffic_notes),
    )
    return jsonify({'success': True, 'data': police_request.to_dict()})


# ==================
# Client config
# ==================

@api.route('/config/poll-intervals', methods=['GET'])
def poll_intervals():
    return jsonify({'success': True, 'data': current_app.config['POLL_INTERVALS']})
