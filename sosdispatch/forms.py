from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import BooleanField, IntegerField, PasswordField, StringField
from wtforms.validators import AnyOf, DataRequired, InputRequired, Length, NumberRange, Optional, Regexp

from sosdispatch.errors import ValidationError
from sosdispatch.models import EMERGENCY_STATUSES, POLICE_REQUEST_STATUSES

PHONE_REGEX = r'^[\d\s\-\+\(\)]+$'
PHONE_MESSAGE = 'Phone number may only contain digits, spaces and +()-'


class ApiForm(FlaskForm):
    """Form fed from a JSON body. The API blueprints are CSRF-exempt."""

    class Meta:
        csrf = False


def _to_form_value(value):
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def load_form(form_class, payload):
    """Build and validate a form from a JSON payload, raising ValidationError."""
    payload = payload if isinstance(payload, dict) else {}
    formdata = MultiDict({
        key: _to_form_value(value)
        for key, value in payload.items()
        if value is not None and not isinstance(value, (dict, list))
    })
    form = form_class(formdata=formdata)
    if not form.validate():
        messages = [
            f'{getattr(form, name).label.text}: {errors[0]}'
            for name, errors in form.errors.items()
        ]
        raise ValidationError('; '.join(messages))
    return form


def provided(field):
    """Field data if the key was present in the payload, else None."""
    return field.data if field.raw_data else None


# ==================
# Auth
# ==================

class HospitalLoginForm(ApiForm):
    username = StringField('Username', validators=[DataRequired()])
    password = PasswordField('Password', validators=[DataRequired()])
    remember = BooleanField('Remember Me')


# ==================
# Emergencies
# ==================

class EmergencyForm(ApiForm):
    phone = StringField('Phone', validators=[DataRequired(), Length(max=20), Regexp(PHONE_REGEX, message=PHONE_MESSAGE)])
    name = StringField('Name', validators=[Optional(), Length(max=100)])
    emergency_level = StringField('Emergency level', default='high', validators=[Optional(), Length(max=20)])
    emergency_type = StringField('Emergency type', validators=[Optional(), Length(max=50)])
    description = StringField('Description', validators=[Optional(), Length(max=2000)])
    blood_group = StringField('Blood group', validators=[Optional(), Length(max=5)])
    allergies = StringField('Allergies', validators=[Optional(), Length(max=1000)])
    medical_conditions = StringField('Medical conditions', validators=[Optional(), Length(max=1000)])
    selected_hospital_id = IntegerField('Selected hospital', validators=[Optional()])
    notify_count = IntegerField('Notify count', validators=[Optional(), NumberRange(min=1, max=100)])


class DispatchForm(ApiForm):
    ambulance_id = IntegerField('Ambulance', validators=[InputRequired()])


class StatusUpdateForm(ApiForm):
    status = StringField('Status', validators=[DataRequired(), AnyOf(EMERGENCY_STATUSES)])
    vehicle_number = StringField('Vehicle number', validators=[Optional(), Length(max=32)])
    phone_number = StringField('Phone number', validators=[Optional(), Length(max=20)])


# ==================
# Fleet and beds
# ==================

class AmbulanceForm(ApiForm):
    vehicle_number = StringField('Vehicle number', validators=[DataRequired(), Length(min=5, max=32)])
    driver_name = StringField('Driver name', validators=[DataRequired(), Length(min=2, max=100)])
    driver_phone = StringField('Driver phone', validators=[DataRequired(), Length(max=20), Regexp(PHONE_REGEX, message=PHONE_MESSAGE)])


class AvailabilityForm(ApiForm):
    is_available = BooleanField('Available', validators=[InputRequired()])


class BedsForm(ApiForm):
    total_beds = IntegerField('Total beds', validators=[Optional(), NumberRange(min=0)])
    occupied_beds = IntegerField('Occupied beds', validators=[Optional(), NumberRange(min=0)])


# ==================
# Police
# ==================

class PoliceRequestForm(ApiForm):
    emergency_id = IntegerField('Emergency', validators=[InputRequired()])
    notes = StringField('Notes', validators=[Optional(), Length(max=500)])


class PoliceRequestUpdateForm(ApiForm):
    status = StringField('Status', validators=[Optional(), AnyOf(POLICE_REQUEST_STATUSES)])
    traffic_notes = StringField('Traffic notes', validators=[Optional(), Length(max=500)])
