from datetime import datetime, timezone

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from sosdispatch import db, login_manager


def utcnow():
    # Naive UTC, matching what SQLite hands back for DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _isoformat(value):
    return value.isoformat() if value else None


# Emergency lifecycle
PENDING = 'pending'
ACKNOWLEDGED = 'acknowledged'
DISPATCHED = 'dispatched'
IN_PROGRESS = 'in_progress'
RESOLVED = 'resolved'
CANCELLED = 'cancelled'

EMERGENCY_STATUSES = (PENDING, ACKNOWLEDGED, DISPATCHED, IN_PROGRESS, RESOLVED, CANCELLED)
ACTIVE_MISSION_STATUSES = (DISPATCHED, IN_PROGRESS)
EMERGENCY_LEVELS = ('low', 'medium', 'high', 'critical')

POLICE_REQUEST_STATUSES = ('pending', 'acknowledged', 'completed')


class Hospital(UserMixin, db.Model):
    __tablename__ = 'hospitals'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    username = db.Column(db.String(64), unique=True, nullable=True)
    password_hash = db.Column(db.String(256), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    phone = db.Column(db.String(20), nullable=True)
    address = db.Column(db.String(300), nullable=True)

    total_beds = db.Column(db.Integer, nullable=True)  # unset means "assume the default"
    occupied_beds = db.Column(db.Integer, nullable=False, default=0)
    specializations = db.Column(db.JSON, nullable=False, default=list)  # e.g. ['Cardiology', 'Trauma']
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login = db.Column(db.DateTime, nullable=True)

    ambulances = db.relationship('Ambulance', backref='hospital', lazy=True)
    emergencies = db.relationship('Emergency', backref='hospital', lazy=True)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'phone': self.phone,
            'address': self.address,
            'total_beds': self.total_beds,
            'occupied_beds': self.occupied_beds,
            'specializations': list(self.specializations or []),
            'is_active': self.is_active,
        }


class Ambulance(db.Model):
    __tablename__ = 'ambulances'
    __table_args__ = (
        db.UniqueConstraint('hospital_id', 'vehicle_number', name='uq_ambulance_vehicle_per_hospital'),
    )
    id = db.Column(db.Integer, primary_key=True)
    hospital_id = db.Column(db.Integer, db.ForeignKey('hospitals.id'), nullable=False)
    vehicle_number = db.Column(db.String(32), nullable=False)
    driver_name = db.Column(db.String(100), nullable=False)
    driver_phone = db.Column(db.String(20), nullable=False)
    is_available = db.Column(db.Boolean, nullable=False, default=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    last_updated = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'hospital_id': self.hospital_id,
            'vehicle_number': self.vehicle_number,
            'driver_name': self.driver_name,
            'driver_phone': self.driver_phone,
            'is_available': self.is_available,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'last_updated': _isoformat(self.last_updated),
        }


class Emergency(db.Model):
    __tablename__ = 'sos_emergencies'
    id = db.Column(db.Integer, primary_key=True)
    phone_number = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(100), nullable=True)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    emergency_level = db.Column(db.String(20), nullable=False, default='high')
    emergency_type = db.Column(db.String(50), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=PENDING, index=True)

    # Set once, by the hospital whose claim wins
    hospital_id = db.Column(db.Integer, db.ForeignKey('hospitals.id'), nullable=True)
    assigned_hospital_name = db.Column(db.String(150), nullable=True)
    assigned_hospital_lat = db.Column(db.Float, nullable=True)
    assigned_hospital_lng = db.Column(db.Float, nullable=True)

    # Not a lock: the same ambulance may appear on several active emergencies
    assigned_ambulance_id = db.Column(db.Integer, db.ForeignKey('ambulances.id'), nullable=True, index=True)
    assigned_ambulance_number = db.Column(db.String(32), nullable=True)
    driver_name = db.Column(db.String(100), nullable=True)
    driver_phone = db.Column(db.String(20), nullable=True)

    description = db.Column(db.Text, nullable=True)
    blood_group = db.Column(db.String(5), nullable=True)
    allergies = db.Column(db.Text, nullable=True)
    medical_conditions = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow, index=True)
    acknowledged_at = db.Column(db.DateTime, nullable=True)
    dispatched_at = db.Column(db.DateTime, nullable=True)
    picked_up_at = db.Column(db.DateTime, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    notifications = db.relationship('HospitalNotification', backref='emergency', lazy=True,
                                    cascade='all, delete-orphan')
    police_request = db.relationship('PoliceRequest', back_populates='emergency', uselist=False, lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'phone_number': self.phone_number,
            'name': self.name,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'emergency_level': self.emergency_level,
            'emergency_type': self.emergency_type,
            'status': self.status,
            'hospital_id': self.hospital_id,
            'assigned_hospital_name': self.assigned_hospital_name,
            'assigned_hospital_lat': self.assigned_hospital_lat,
            'assigned_hospital_lng': self.assigned_hospital_lng,
            'assigned_ambulance_id': self.assigned_ambulance_id,
            'assigned_ambulance_number': self.assigned_ambulance_number,
            'driver_name': self.driver_name,
            'driver_phone': self.driver_phone,
            'description': self.description,
            'blood_group': self.blood_group,
            'allergies': self.allergies,
            'medical_conditions': self.medical_conditions,
            'created_at': _isoformat(self.created_at),
            'updated_at': _isoformat(self.updated_at),
            'acknowledged_at': _isoformat(self.acknowledged_at),
            'dispatched_at': _isoformat(self.dispatched_at),
            'picked_up_at': _isoformat(self.picked_up_at),
            'resolved_at': _isoformat(self.resolved_at),
        }


class HospitalNotification(db.Model):
    __tablename__ = 'hospital_notifications'
    __table_args__ = (
        db.UniqueConstraint('emergency_id', 'hospital_id', name='uq_notification_per_hospital'),
    )
    id = db.Column(db.Integer, primary_key=True)
    emergency_id = db.Column(db.Integer, db.ForeignKey('sos_emergencies.id'), nullable=False, index=True)
    hospital_id = db.Column(db.Integer, db.ForeignKey('hospitals.id'), nullable=False, index=True)
    distance_km = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    hospital = db.relationship('Hospital', lazy=True)


class PoliceRequest(db.Model):
    __tablename__ = 'police_requests'
    id = db.Column(db.Integer, primary_key=True)
    emergency_id = db.Column(db.Integer, db.ForeignKey('sos_emergencies.id'), nullable=False, unique=True)
    hospital_id = db.Column(db.Integer, db.ForeignKey('hospitals.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')
    traffic_notes = db.Column(db.Text, nullable=True)
    requested_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    acknowledged_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    emergency = db.relationship('Emergency', back_populates='police_request', lazy=True)
    hospital = db.relationship('Hospital', lazy=True)

    def to_dict(self, include_related=False):
        data = {
            'id': self.id,
            'emergency_id': self.emergency_id,
            'hospital_id': self.hospital_id,
            'status': self.status,
            'traffic_notes': self.traffic_notes,
            'requested_at': _isoformat(self.requested_at),
            'acknowledged_at': _isoformat(self.acknowledged_at),
            'updated_at': _isoformat(self.updated_at),
        }
        if include_related:
            data['emergency'] = self.emergency.to_dict() if self.emergency else None
            data['hospital'] = self.hospital.to_dict() if self.hospital else None
        return data


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(Hospital, int(user_id))
