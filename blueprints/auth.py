from functools import wraps

from flask import Blueprint, jsonify
from flask_login import login_user, logout_user, login_required, current_user

from models import User
from helpers import request_data

auth_bp = Blueprint('auth', __name__)


def admin_required(f):
    """Decorator to require admin privileges"""
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({'error': 'Admin-Zugang erforderlich.'}), 403
        return f(*args, **kwargs)
    return decorated_function


@auth_bp.route('/login', methods=['POST'])
def login():
    """Start a session"""
    data = request_data()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    user = User.query.filter_by(username=username).first()
    if user and user.check_password(password) and user.active:
        login_user(user)
        return jsonify({'id': user.id, 'username': user.username, 'is_admin': bool(user.is_admin)})
    return jsonify({'error': 'Ungültige Anmeldedaten oder Konto deaktiviert.'}), 401


@auth_bp.route('/logout')
@login_required
def logout():
    """Logout user"""
    logout_user()
    return jsonify({'success': True})
