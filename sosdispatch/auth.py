from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user

from sosdispatch import db
from sosdispatch.forms import HospitalLoginForm, load_form
from sosdispatch.models import Hospital, utcnow

auth = Blueprint('auth', __name__)


@auth.route('/hospital/login', methods=['POST'])
def hospital_login():
    form = load_form(HospitalLoginForm, request.get_json(silent=True))
    username = form.username.data.strip()

    hospital = Hospital.query.filter_by(username=username).first()
    if not hospital or not hospital.check_password(form.password.data):
        current_app.logger.warning(f'Failed hospital login for {username}')
        return jsonify({'success': False, 'message': 'Invalid username or password'}), 401
    if not login_user(hospital, remember=form.remember.data):
        return jsonify({'success': False, 'message': 'Hospital account is inactive'}), 403

    hospital.last_login = utcnow()
    db.session.commit()
    return jsonify({'success': True, 'message': 'Logged in successfully', 'hospital': hospital.to_dict()})


@auth.route('/hospital/logout', methods=['POST'])
@login_required
def hospital_logout():
    logout_user()
    return jsonify({'success': True, 'message': 'Logged out'})


@auth.route('/hospital/me', methods=['GET'])
@login_required
def hospital_me():
    return jsonify({'success': True, 'hospital': current_user.to_dict()})
