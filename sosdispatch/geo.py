import math

from sosdispatch.errors import ValidationError

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.0

# Distance reported when either end of the pair has no coordinates
UNKNOWN_DISTANCE = math.inf


def haversine_km(lat1, lon1, lat2, lon2):
    """Great-circle distance in kilometres between two points given in degrees.

    Returns ``UNKNOWN_DISTANCE`` when any coordinate is missing or not a
    number, so callers can sort unknown distances last.
    """
    if any(_is_missing(value) for value in (lat1, lon1, lat2, lon2)):
        return UNKNOWN_DISTANCE

    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    # Rounding can push a a hair past 1 for antipodal points
    a = min(1.0, a)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounding_box(latitude, longitude, radius_km):
    """(min_lat, max_lat, min_lng, max_lng) of a box around the point."""
    lat_delta = radius_km / KM_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(latitude))
    # Near the poles every longitude is within reach
    if abs(cos_lat) < 1e-6:
        lng_delta = 180.0
    else:
        lng_delta = radius_km / (KM_PER_DEGREE_LAT * abs(cos_lat))
    return (
        latitude - lat_delta,
        latitude + lat_delta,
        longitude - lng_delta,
        longitude + lng_delta,
    )


def longitude_ranges(min_lng, max_lng):
    """Split a box's longitude span into ranges inside [-180, 180].

    A span that crosses the antimeridian becomes two ranges, one on each side.
    """
    if max_lng - min_lng >= 360:
        return [(-180.0, 180.0)]
    if min_lng < -180:
        return [(min_lng + 360, 180.0), (-180.0, max_lng)]
    if max_lng > 180:
        return [(min_lng, 180.0), (-180.0, max_lng - 360)]
    return [(min_lng, max_lng)]


def parse_coordinates(latitude, longitude):
    """Validate a lat/lng pair from a request body and return it as floats."""
    if latitude is None or longitude is None or latitude == '' or longitude == '':
        raise ValidationError('Latitude and longitude are required')
    if isinstance(latitude, bool) or isinstance(longitude, bool):
        raise ValidationError('Latitude and longitude must be numbers')
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        raise ValidationError('Latitude and longitude must be numbers')
    if math.isnan(lat) or math.isnan(lng):
        raise ValidationError('Latitude and longitude must be numbers')
    if not -90 <= lat <= 90:
        raise ValidationError('Latitude must be between -90 and 90')
    if not -180 <= lng <= 180:
        raise ValidationError('Longitude must be between -180 and 180')
    return lat, lng


def _is_missing(value):
    if value is None or isinstance(value, bool):
        return True
    try:
        return math.isnan(value)
    except TypeError:
        return True
