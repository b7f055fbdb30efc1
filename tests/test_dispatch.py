from __future__ import annotations

import threading
from contextlib import contextmanager

import pytest
from sqlalchemy import event
from sqlalchemy.dialects import postgresql

from conftest import PUNE, add_ambulance, add_hospital
from sosdispatch import db
from sosdispatch.dispatch import (
    active_missions,
    claim_emergency,
    create_emergency,
    dispatch_ambulance,
    get_emergency,
    list_emergencies,
    notified_hospitals,
    update_emergency_status,
)
from sosdispatch.errors import ConflictError, DispatchError, ForbiddenError, NotFoundError, ValidationError
from sosdispatch.models import Ambulance
from sosdispatch.signals import emergency_claimed, emergency_created, emergency_status_changed

REPORTER = '+91 98765 43210'


def report(**kwargs):
    kwargs.setdefault('phone_number', REPORTER)
    kwargs.setdefault('latitude', PUNE[0])
    kwargs.setdefault('longitude', PUNE[1])
    return create_emergency(**kwargs)


@pytest.fixture
def ruby(ctx):
    return add_hospital('Ruby Hall Clinic', km_north=1.0)


@pytest.fixture
def kem(ctx):
    return add_hospital('KEM Hospital', km_north=2.0)


def dispatched(hospital, ambulance):
    emergency = report()
    claim_emergency(emergency.id, hospital.id)
    return dispatch_ambulance(emergency.id, ambulance.id, hospital_id=hospital.id)


def run_concurrently(app, *calls):
    """Run each call in its own thread and app context, all released at once."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def worker(index, call):
        with app.app_context():
            barrier.wait(timeout=10)
            try:
                results[index] = ('ok', call())
            except ConflictError as e:
                results[index] = ('conflict', e.assigned_to)
            except DispatchError as e:
                results[index] = ('error', e.message)

    threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results


@contextmanager
def row_locks():
    """Collect the SELECT ... FOR UPDATE statements the session runs, as Postgres SQL."""
    locked = []
    session = db.session()

    def record(state):
        if state.is_select:
            sql = str(state.statement.compile(dialect=postgresql.dialect()))
            if 'FOR UPDATE' in sql:
                locked.append(sql)

    event.listen(session, 'do_orm_execute', record)
    try:
        yield locked
    finally:
        event.remove(session, 'do_orm_execute', record)


# ==================
# Intake
# ==================

def test_create_notifies_nearest_hospitals_in_distance_order(ctx):
    far = add_hospital('Far Hospital', km_north=9.0)
    near = add_hospital('Near Hospital', km_north=1.0)
    add_hospital('Smile Dental Clinic', km_north=0.5, specializations=[])

    emergency = report(name='Asha', emergency_level='CRITICAL', blood_group='O+')

    assert emergency.status == 'pending'
    assert emergency.hospital_id is None
    assert emergency.emergency_level == 'critical'
    assert [n['hospital_id'] for n in notified_hospitals(emergency)] == [near.id, far.id]
    assert notified_hospitals(emergency)[0]['distance_km'] == pytest.approx(1.0, abs=0.01)


def test_create_caps_fan_out_at_notify_count(app, ctx):
    for i in range(5):
        add_hospital(f'Hospital {i}', km_north=i + 1)

    assert len(report(notify_count=3).notifications) == 3

    app.config['NOTIFY_COUNT'] = 2
    try:
        assert len(report().notifications) == 2
    finally:
        app.config['NOTIFY_COUNT'] = 20


def test_create_with_selected_hospital_notifies_only_that_hospital(ruby, kem):
    emergency = report(selected_hospital_id=kem.id)
    assert [n['hospital_id'] for n in notified_hospitals(emergency)] == [kem.id]
    assert emergency.status == 'pending'
    assert emergency.hospital_id is None


def test_create_with_unknown_selected_hospital(ctx):
    with pytest.raises(NotFoundError):
        report(selected_hospital_id=999)


def test_create_with_no_hospital_in_range_still_records(ctx):
    emergency = report()
    assert emergency.id is not None
    assert emergency.notifications == []


@pytest.mark.parametrize('kwargs', [
    {'phone_number': ''},
    {'phone_number': 'call me'},
    {'latitude': None},
    {'longitude': 200},
    {'emergency_level': 'apocalyptic'},
    {'notify_count': 0},
    {'notify_count': 101},
])
def test_create_validation(ctx, kwargs):
    with pytest.raises(ValidationError):
        report(**kwargs)


# ==================
# Claim
# ==================

def test_first_claim_wins_and_second_gets_conflict_naming_winner(ruby, kem):
    emergency = report()

    claimed = claim_emergency(emergency.id, ruby.id)
    assert claimed.status == 'acknowledged'
    assert claimed.hospital_id == ruby.id
    assert claimed.assigned_hospital_name == 'Ruby Hall Clinic'
    assert claimed.assigned_hospital_lat == ruby.latitude
    assert claimed.acknowledged_at is not None

    with pytest.raises(ConflictError) as excinfo:
        claim_emergency(emergency.id, kem.id)
    assert excinfo.value.status_code == 409
    assert excinfo.value.assigned_to == 'Ruby Hall Clinic'
    assert excinfo.value.to_dict()['assigned_hospital_id'] == ruby.id

    # The loser changed nothing
    assert get_emergency(emergency.id).hospital_id == ruby.id


def test_claim_after_stale_read_still_loses(ruby, kem):
    emergency = report()
    # Both dashboards loaded the emergency while it was pending
    stale = get_emergency(emergency.id)
    assert stale.status == 'pending'

    claim_emergency(emergency.id, kem.id)
    with pytest.raises(ConflictError) as excinfo:
        claim_emergency(stale.id, ruby.id)
    assert excinfo.value.assigned_to == 'KEM Hospital'


def test_repeat_claim_by_winner_is_idempotent(ruby):
    emergency = report()
    first = claim_emergency(emergency.id, ruby.id)
    acknowledged_at = first.acknowledged_at
    again = claim_emergency(emergency.id, ruby.id)
    assert again.hospital_id == ruby.id
    assert again.acknowledged_at == acknowledged_at


def test_claim_of_cancelled_emergency_conflicts(ruby):
    emergency = report()
    update_emergency_status(emergency.id, 'cancelled', phone_number=REPORTER)
    with pytest.raises(ConflictError) as excinfo:
        claim_emergency(emergency.id, ruby.id)
    assert excinfo.value.assigned_to is None
    assert excinfo.value.to_dict()['status'] == 'cancelled'


def test_claim_by_inactive_hospital(ctx):
    closed = add_hospital('Closed Hospital', is_active=False)
    emergency = report()
    with pytest.raises(ForbiddenError):
        claim_emergency(emergency.id, closed.id)


def test_claim_unknown_emergency(ruby):
    with pytest.raises(NotFoundError):
        claim_emergency(12345, ruby.id)


# ==================
# Dispatch
# ==================

def test_dispatch_marks_ambulance_unavailable(ruby):
    ambulance = add_ambulance(ruby)
    emergency = dispatched(ruby, ambulance)

    assert emergency.status == 'dispatched'
    assert emergency.assigned_ambulance_id == ambulance.id
    assert emergency.assigned_ambulance_number == 'MH12AB0001'
    assert emergency.driver_name == 'Ravi Patil'
    assert emergency.dispatched_at is not None
    assert db.session.get(Ambulance, ambulance.id).is_available is False


def test_busy_ambulance_can_take_a_second_mission(ruby):
    ambulance = add_ambulance(ruby)
    first = dispatched(ruby, ambulance)
    assert db.session.get(Ambulance, ambulance.id).is_available is False

    second = dispatched(ruby, ambulance)

    assert second.status == 'dispatched'
    assert [e.id for e in active_missions(ambulance.id)] == [first.id, second.id]


def test_dispatch_requires_acknowledged_emergency(ruby):
    ambulance = add_ambulance(ruby)
    emergency = report()
    with pytest.raises(ConflictError):
        dispatch_ambulance(emergency.id, ambulance.id)


def test_dispatch_by_other_hospital_is_forbidden(ruby, kem):
    ambulance = add_ambulance(kem)
    emergency = report()
    claim_emergency(emergency.id, ruby.id)
    with pytest.raises(ForbiddenError):
        dispatch_ambulance(emergency.id, ambulance.id, hospital_id=kem.id)


def test_dispatch_with_another_hospitals_ambulance(ruby, kem):
    ambulance = add_ambulance(kem)
    emergency = report()
    claim_emergency(emergency.id, ruby.id)
    with pytest.raises(ValidationError):
        dispatch_ambulance(emergency.id, ambulance.id, hospital_id=ruby.id)


def test_dispatch_unknown_ambulance(ruby):
    emergency = report()
    claim_emergency(emergency.id, ruby.id)
    with pytest.raises(NotFoundError):
        dispatch_ambulance(emergency.id, 999)


# ==================
# Status changes
# ==================

def test_full_lifecycle_releases_ambulance(ruby):
    ambulance = add_ambulance(ruby)
    emergency = dispatched(ruby, ambulance)

    picked_up = update_emergency_status(emergency.id, 'in_progress', vehicle_number='MH12AB0001')
    assert picked_up.status == 'in_progress'
    assert picked_up.picked_up_at is not None

    resolved = update_emergency_status(emergency.id, 'resolved', vehicle_number='MH12AB0001')
    assert resolved.status == 'resolved'
    assert resolved.resolved_at is not None
    assert db.session.get(Ambulance, ambulance.id).is_available is True
    assert active_missions(ambulance.id) == []


def test_resolving_one_of_two_missions_keeps_ambulance_busy(ruby):
    ambulance = add_ambulance(ruby)
    first = dispatched(ruby, ambulance)
    second = dispatched(ruby, ambulance)

    update_emergency_status(first.id, 'resolved', hospital_id=ruby.id)
    assert db.session.get(Ambulance, ambulance.id).is_available is False
    assert [e.id for e in active_missions(ambulance.id)] == [second.id]

    update_emergency_status(second.id, 'resolved', vehicle_number='MH12AB0001')
    assert db.session.get(Ambulance, ambulance.id).is_available is True


def test_same_status_is_a_no_op(ruby):
    emergency = report()
    claim_emergency(emergency.id, ruby.id)
    unchanged = update_emergency_status(emergency.id, 'acknowledged', hospital_id=ruby.id)
    assert unchanged.status == 'acknowledged'


@pytest.mark.parametrize('new_status', ['in_progress', 'resolved'])
def test_pending_cannot_skip_ahead(ruby, new_status):
    emergency = report()
    with pytest.raises(ValidationError) as excinfo:
        update_emergency_status(emergency.id, new_status, vehicle_number='MH12AB0001', hospital_id=ruby.id)
    assert 'Invalid status transition from pending' in excinfo.value.message


def test_terminal_states_stay_terminal(ruby):
    ambulance = add_ambulance(ruby)
    emergency = dispatched(ruby, ambulance)
    update_emergency_status(emergency.id, 'resolved', hospital_id=ruby.id)
    with pytest.raises(ValidationError):
        update_emergency_status(emergency.id, 'cancelled', hospital_id=ruby.id)
    with pytest.raises(ValidationError):
        update_emergency_status(emergency.id, 'in_progress', vehicle_number='MH12AB0001')


def test_dispatched_cannot_be_cancelled(ruby):
    ambulance = add_ambulance(ruby)
    emergency = dispatched(ruby, ambulance)
    with pytest.raises(ValidationError):
        update_emergency_status(emergency.id, 'cancelled', hospital_id=ruby.id)


def test_dispatched_status_needs_the_dispatch_operation(ruby):
    emergency = report()
    claim_emergency(emergency.id, ruby.id)
    with pytest.raises(ValidationError):
        update_emergency_status(emergency.id, 'dispatched', hospital_id=ruby.id)


def test_acknowledge_through_status_update_claims(ruby):
    emergency = report()
    acknowledged = update_emergency_status(emergency.id, 'acknowledged', hospital_id=ruby.id)
    assert acknowledged.hospital_id == ruby.id


def test_wrong_vehicle_cannot_update(ruby):
    ambulance = add_ambulance(ruby)
    emergency = dispatched(ruby, ambulance)
    with pytest.raises(ForbiddenError):
        update_emergency_status(emergency.id, 'in_progress', vehicle_number='MH12ZZ9999')


def test_pickup_requires_vehicle(ruby):
    ambulance = add_ambulance(ruby)
    emergency = dispatched(ruby, ambulance)
    with pytest.raises(ValidationError):
        update_emergency_status(emergency.id, 'in_progress', hospital_id=ruby.id)


def test_anonymous_resolve_is_forbidden(ruby):
    ambulance = add_ambulance(ruby)
    emergency = dispatched(ruby, ambulance)
    with pytest.raises(ForbiddenError):
        update_emergency_status(emergency.id, 'resolved')


def test_reporter_cancels_unclaimed_emergency(ctx):
    emergency = report()
    with pytest.raises(ForbiddenError):
        update_emergency_status(emergency.id, 'cancelled', phone_number='+91 11111 11111')
    cancelled = update_emergency_status(emergency.id, 'cancelled', phone_number=REPORTER)
    assert cancelled.status == 'cancelled'


def test_only_claimant_cancels_acknowledged_emergency(ruby, kem):
    emergency = report()
    claim_emergency(emergency.id, ruby.id)
    with pytest.raises(ForbiddenError):
        update_emergency_status(emergency.id, 'cancelled', phone_number=REPORTER)
    with pytest.raises(ForbiddenError):
        update_emergency_status(emergency.id, 'cancelled', hospital_id=kem.id)
    assert update_emergency_status(emergency.id, 'cancelled', hospital_id=ruby.id).status == 'cancelled'


def test_unknown_status(ctx):
    emergency = report()
    with pytest.raises(ValidationError):
        update_emergency_status(emergency.id, 'teleported')


# ==================
# Queries
# ==================

def test_list_emergencies_filters(ruby, kem):
    ambulance = add_ambulance(ruby)
    for_kem = report(selected_hospital_id=kem.id)
    on_route = dispatched(ruby, ambulance)
    cancelled = report(selected_hospital_id=kem.id)
    update_emergency_status(cancelled.id, 'cancelled', phone_number=REPORTER)

    assert {e.id for e in list_emergencies(statuses=['pending', 'dispatched'])} == {for_kem.id, on_route.id}
    assert {e.id for e in list_emergencies(hospital_id=kem.id)} == {for_kem.id, cancelled.id, on_route.id}
    assert [e.id for e in list_emergencies(ambulance_id=ambulance.id)] == [on_route.id]
    # Newest first
    assert [e.id for e in list_emergencies()] == [cancelled.id, on_route.id, for_kem.id]


def test_list_emergencies_since(ruby):
    first = report()
    cutoff = get_emergency(first.id).updated_at
    second = report()
    claim_emergency(first.id, ruby.id)
    changed = {e.id for e in list_emergencies(since=cutoff)}
    assert changed == {first.id, second.id}


def test_list_emergencies_unknown_status(ctx):
    with pytest.raises(ValidationError):
        list_emergencies(statuses=['lost'])


def test_active_missions_unknown_ambulance(ctx):
    with pytest.raises(NotFoundError):
        active_missions(404)


# ==================
# Signals
# ==================

def test_signals_fire_after_each_transition(app, ruby):
    ambulance = add_ambulance(ruby)
    created, claimed, changes = [], [], []

    def on_created(sender, emergency, notified_hospital_ids, **extra):
        created.append((emergency.id, notified_hospital_ids))

    def on_claimed(sender, emergency, hospital, **extra):
        claimed.append((emergency.id, hospital.id))

    def on_changed(sender, emergency, previous_status, **extra):
        changes.append((previous_status, emergency.status))

    with emergency_created.connected_to(on_created, sender=app), \
            emergency_claimed.connected_to(on_claimed, sender=app), \
            emergency_status_changed.connected_to(on_changed, sender=app):
        emergency = dispatched(ruby, ambulance)
        update_emergency_status(emergency.id, 'in_progress', vehicle_number='MH12AB0001')
        update_emergency_status(emergency.id, 'resolved', vehicle_number='MH12AB0001')

    assert created == [(emergency.id, [ruby.id])]
    assert claimed == [(emergency.id, ruby.id)]
    assert changes == [
        ('pending', 'acknowledged'),
        ('acknowledged', 'dispatched'),
        ('dispatched', 'in_progress'),
        ('in_progress', 'resolved'),
    ]


def test_losing_claim_sends_no_signal(app, ruby, kem):
    emergency = report()
    claim_emergency(emergency.id, ruby.id)
    claimed = []
    with emergency_claimed.connected_to(lambda sender, **kw: claimed.append(kw), sender=app):
        with pytest.raises(ConflictError):
            claim_emergency(emergency.id, kem.id)
    assert claimed == []


# ==================
# Concurrency
# ==================

def test_concurrent_claims_have_exactly_one_winner(app):
    with app.app_context():
        hospital_ids = [
            add_hospital('Ruby Hall Clinic', km_north=1.0).id,
            add_hospital('KEM Hospital', km_north=2.0).id,
        ]
        emergency_id = report().id

    results = run_concurrently(app, *[
        (lambda hospital_id=hospital_id: claim_emergency(emergency_id, hospital_id).assigned_hospital_name)
        for hospital_id in hospital_ids
    ])

    assert sorted(outcome for outcome, _ in results) == ['conflict', 'ok']
    winner = dict(results)['ok']
    assert dict(results)['conflict'] == winner
    with app.app_context():
        assert get_emergency(emergency_id).assigned_hospital_name == winner


def test_concurrent_resolves_of_last_two_missions_release_ambulance(app):
    with app.app_context():
        ruby = add_hospital('Ruby Hall Clinic')
        ambulance = add_ambulance(ruby)
        ruby_id, ambulance_id = ruby.id, ambulance.id
        mission_ids = [dispatched(ruby, ambulance).id for _ in range(2)]
        assert db.session.get(Ambulance, ambulance_id).is_available is False

    results = run_concurrently(app, *[
        (lambda emergency_id=emergency_id: update_emergency_status(emergency_id, 'resolved', hospital_id=ruby_id).status)
        for emergency_id in mission_ids
    ])

    assert results == [('ok', 'resolved'), ('ok', 'resolved')]
    with app.app_context():
        assert db.session.get(Ambulance, ambulance_id).is_available is True
        assert active_missions(ambulance_id) == []


def test_dispatch_and_release_lock_the_ambulance_row(ruby):
    ambulance = add_ambulance(ruby)
    emergency = report()
    claim_emergency(emergency.id, ruby.id)

    with row_locks() as locked:
        dispatch_ambulance(emergency.id, ambulance.id, hospital_id=ruby.id)
    assert any('FROM ambulances' in sql for sql in locked)

    with row_locks() as locked:
        update_emergency_status(emergency.id, 'resolved', hospital_id=ruby.id)
    assert any('FROM ambulances' in sql for sql in locked)
