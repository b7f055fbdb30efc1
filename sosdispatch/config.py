import os
from datetime import timedelta

DEFAULT_WEIGHTS = {'distance': 0.4, 'load': 0.3, 'specialization': 0.3}
DEFAULT_TOTAL_BEDS = 50
NON_EMERGENCY_KEYWORDS = (
    'dental', 'eye', 'skin', 'cosmetic', 'physio',
    'homeopathy', 'ayurveda', 'wellness', 'hair',
)
# A listed specialization containing one of these wins over the name
EMERGENCY_OVERRIDE_KEYWORDS = ('emergency', 'trauma')


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    # Basic configuration
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///sos_dispatch.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = True
    WTF_CSRF_SECRET_KEY = os.environ.get('CSRF_SECRET_KEY', 'dev-csrf-secret-key')

    # Server-side sessions (SESSION_SQLALCHEMY is bound to the app's db in create_app)
    SESSION_TYPE = 'sqlalchemy'
    SESSION_PERMANENT = True
    PERMANENT_SESSION_LIFETIME = timedelta(hours=1)
    SESSION_USE_SIGNER = True
    SESSION_COOKIE_SECURE = os.environ.get('SESSION_COOKIE_SECURE', '1') == '1'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_REFRESH_EACH_REQUEST = True

    # Hospital search and ranking
    SEARCH_RADIUS_KM = _env_float('SEARCH_RADIUS_KM', 50.0)
    RANK_LIMIT = _env_int('RANK_LIMIT', 50)
    NOTIFY_COUNT = _env_int('NOTIFY_COUNT', 20)
    DEFAULT_TOTAL_BEDS = _env_int('DEFAULT_TOTAL_BEDS', DEFAULT_TOTAL_BEDS)
    SCORING_WEIGHTS = {
        'distance': _env_float('SCORE_WEIGHT_DISTANCE', DEFAULT_WEIGHTS['distance']),
        'load': _env_float('SCORE_WEIGHT_LOAD', DEFAULT_WEIGHTS['load']),
        'specialization': _env_float('SCORE_WEIGHT_SPECIALIZATION', DEFAULT_WEIGHTS['specialization']),
    }
    NON_EMERGENCY_KEYWORDS = NON_EMERGENCY_KEYWORDS
    EMERGENCY_OVERRIDE_KEYWORDS = EMERGENCY_OVERRIDE_KEYWORDS

    # Seconds between dashboard refreshes, per role
    POLL_INTERVALS = {
        'patient': 3,
        'hospital': 5,
        'ambulance': 5,
        'police': 10,
    }


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    WTF_CSRF_ENABLED = False
    SESSION_COOKIE_SECURE = False
