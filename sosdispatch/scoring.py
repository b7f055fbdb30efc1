"""Hospital recommendation for a patient location.

Candidates come from a bounding-box query, non-emergency facilities are
dropped by name, and the rest are ranked by a weighted sum of three
sub-scores on a 0-100 scale: distance, bed load and specialization.
"""
from flask import current_app
from sqlalchemy import func, or_

from sosdispatch import db
from sosdispatch.config import (
    DEFAULT_TOTAL_BEDS,
    DEFAULT_WEIGHTS,
    EMERGENCY_OVERRIDE_KEYWORDS,
    NON_EMERGENCY_KEYWORDS,
)
from sosdispatch.geo import UNKNOWN_DISTANCE, bounding_box, haversine_km, longitude_ranges, parse_coordinates
from sosdispatch.models import Ambulance, Hospital


def is_emergency_capable(hospital, denylist=NON_EMERGENCY_KEYWORDS, overrides=EMERGENCY_OVERRIDE_KEYWORDS):
    """False for clinics whose name marks them as non-emergency.

    A listed emergency or trauma specialization wins over the name.
    """
    specializations = [str(s).lower() for s in (hospital.specializations or [])]
    if any(keyword in specialty for specialty in specializations for keyword in overrides):
        return True
    name = (hospital.name or '').lower()
    return not any(keyword in name for keyword in denylist)


def distance_score(distance_km):
    # Zero at 50 km and beyond, and for unknown distances
    return max(0.0, 100.0 - distance_km * 2)


def load_score(occupied_beds, total_beds, default_total_beds=DEFAULT_TOTAL_BEDS):
    if total_beds is None:
        total_beds = default_total_beds
    occupied = occupied_beds or 0
    ratio = min(1.0, occupied / max(total_beds, 1))
    return (1 - ratio) * 100


def specialization_score(specializations):
    return 100.0 if specializations else 50.0


def score_hospital(hospital, patient_lat, patient_lng, weights=None, default_total_beds=DEFAULT_TOTAL_BEDS):
    """Score one hospital for a patient. Returns the ranking entry."""
    weights = weights or DEFAULT_WEIGHTS
    distance_km = haversine_km(patient_lat, patient_lng, hospital.latitude, hospital.longitude)

    components = {
        'distance': distance_score(distance_km),
        'load': load_score(hospital.occupied_beds, hospital.total_beds, default_total_beds),
        'specialization': specialization_score(hospital.specializations),
    }
    composite = round(sum(weights.get(key, 0.0) * value for key, value in components.items()))

    return {
        'hospital': hospital.to_dict(),
        'distance': round(distance_km, 2) if distance_km != UNKNOWN_DISTANCE else None,
        'composite_score': composite,
        'score_components': {key: round(value, 2) for key, value in components.items()},
    }


def rank_candidates(hospitals, patient_lat, patient_lng, weights=None, limit=50,
                    default_total_beds=DEFAULT_TOTAL_BEDS,
                    denylist=NON_EMERGENCY_KEYWORDS, overrides=EMERGENCY_OVERRIDE_KEYWORDS):
    """Filter and rank an already-fetched candidate list.

    Ties keep the order the candidates came in.
    """
    scored = [
        score_hospital(hospital, patient_lat, patient_lng, weights, default_total_beds)
        for hospital in hospitals
        if is_emergency_capable(hospital, denylist, overrides)
    ]
    scored.sort(key=lambda item: item['composite_score'], reverse=True)
    return scored[:limit]


def find_candidate_hospitals(latitude, longitude, radius_km):
    """Active hospitals inside the bounding box around the patient."""
    min_lat, max_lat, min_lng, max_lng = bounding_box(latitude, longitude, radius_km)
    return (
        Hospital.query
        .filter(
            Hospital.is_active.is_(True),
            Hospital.latitude.between(min_lat, max_lat),
            or_(*[Hospital.longitude.between(lo, hi) for lo, hi in longitude_ranges(min_lng, max_lng)]),
        )
        .order_by(Hospital.id.asc())
        .all()
    )


def _available_ambulance_counts(hospital_ids):
    if not hospital_ids:
        return {}
    rows = (
        db.session.query(Ambulance.hospital_id, func.count(Ambulance.id))
        .filter(Ambulance.hospital_id.in_(hospital_ids), Ambulance.is_available.is_(True))
        .group_by(Ambulance.hospital_id)
        .all()
    )
    return dict(rows)


def _availability_summary(hospital, available_ambulances, default_total_beds):
    total = hospital.total_beds if hospital.total_beds is not None else default_total_beds
    occupied = hospital.occupied_beds or 0
    return {
        'total_beds': total,
        'occupied_beds': occupied,
        'available_beds': max(0, total - occupied),
        'available_ambulances': available_ambulances,
    }


def rank_hospitals(patient_lat, patient_lng):
    """Ranked hospital recommendations for a patient location."""
    lat, lng = parse_coordinates(patient_lat, patient_lng)
    config = current_app.config
    default_total_beds = config.get('DEFAULT_TOTAL_BEDS', DEFAULT_TOTAL_BEDS)

    candidates = find_candidate_hospitals(lat, lng, config.get('SEARCH_RADIUS_KM', 50.0))
    ranked = rank_candidates(
        candidates,
        lat,
        lng,
        weights=config.get('SCORING_WEIGHTS', DEFAULT_WEIGHTS),
        limit=config.get('RANK_LIMIT', 50),
        default_total_beds=default_total_beds,
        denylist=config.get('NON_EMERGENCY_KEYWORDS', NON_EMERGENCY_KEYWORDS),
        overrides=config.get('EMERGENCY_OVERRIDE_KEYWORDS', EMERGENCY_OVERRIDE_KEYWORDS),
    )

    by_id = {hospital.id: hospital for hospital in candidates}
    ambulance_counts = _available_ambulance_counts(list(by_id))
    for item in ranked:
        hospital = by_id[item['hospital']['id']]
        item['availability_summary'] = _availability_summary(
            hospital, ambulance_counts.get(hospital.id, 0), default_total_beds
        )

    current_app.logger.info(
        f'Ranked {len(ranked)} of {len(candidates)} hospitals near ({lat:.4f}, {lng:.4f})'
    )
    return ranked


def nearest_hospitals(latitude, longitude, limit):
    """Emergency-capable hospitals closest to the point, as (hospital, distance_km)."""
    config = current_app.config
    candidates = find_candidate_hospitals(latitude, longitude, config.get('SEARCH_RADIUS_KM', 50.0))
    denylist = config.get('NON_EMERGENCY_KEYWORDS', NON_EMERGENCY_KEYWORDS)
    overrides = config.get('EMERGENCY_OVERRIDE_KEYWORDS', EMERGENCY_OVERRIDE_KEYWORDS)

    with_distance = [
        (hospital, haversine_km(latitude, longitude, hospital.latitude, hospital.longitude))
        for hospital in candidates
        if is_emergency_capable(hospital, denylist, overrides)
    ]
    with_distance.sort(key=lambda pair: pair[1])
    return with_distance[:limit]
