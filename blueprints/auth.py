from flask import Blueprint, request, session, g, jsonify
from functools import wraps
import re

from models import db, User, current_time

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


def request_data() -> dict:
    """JSON body, falling back to form fields."""
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


# Helper function - load current user
def load_current_user():
    """Load user into g.current_user for easy access"""
    user_id = session.get('user_id')
    g.current_user = db.session.get(User, user_id) if user_id else None


def login_required(f):
    """Require any logged-in user"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not getattr(g, 'current_user', None):
            return jsonify({'error': 'Please log in to access this page.'}), 401
        return f(*args, **kwargs)
    return decorated_function


def validate_registration(name, username, email, password, phone_number=None) -> list[str]:
    """Validate registration data format without using the database."""
    errors: list[str] = []

    if not name or not name.strip():
        errors.append("Name is required")

    if not username or len(username.strip()) < 3:
        errors.append("Username must be at least 3 characters")

    if username and not username.replace('_', '').replace('-', '').isalnum():
        errors.append("Username can only contain letters, numbers, hyphens and underscores")

    email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    if not email or not re.match(email_pattern, email):
        errors.append("Valid email required")

    if not password or len(password) < 8:
        errors.append("Password must be at least 8 characters")

    if phone_number:
        phone_pattern = r'^\+?[0-9\s-]{7,15}$'
        if not re.fullmatch(phone_pattern, phone_number):
            errors.append("Phone number must contain 7-15 digits and may include + or -")

    return errors


def check_user_uniqueness(username, email):
    """
    Check if username or email already exists in database.
    Returns list of errors. Requires Flask app context.
    """
    errors = []

    if User.query.filter_by(username=username).first():
        errors.append("Username already exists")

    if User.query.filter_by(email=email).first():
        errors.append("Email already registered")

    return errors


def _user_payload(user: User) -> dict:
    return {
        'id': user.id,
        'name': user.name,
        'username': user.username,
        'email': user.email,
        'phone_number': user.phone_number,
    }


@auth_bp.route('/register', methods=['POST'])
def register():
    data = request_data()
    name = (data.get('name') or '').strip()
    username = (data.get('username') or '').strip()
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''
    phone_number = (data.get('phone_number') or '').strip() or None

    errors = validate_registration(name, username, email, password, phone_number)
    if not errors:
        errors.extend(check_user_uniqueness(username, email))
    if errors:
        return jsonify({'error': errors[0], 'errors': errors}), 400

    user = User(name=name, username=username, email=email, phone_number=phone_number)
    user.set_password(password)

    try:
        db.session.add(user)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return jsonify(_user_payload(user)), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    data = request_data()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    user = User.query.filter_by(username=username).first()
    if not user or not user.check_password(password):
        return jsonify({'error': 'Invalid username or password.'}), 401

    session.clear()
    session['user_id'] = user.id
    session['username'] = user.username
    session['logged_in_at'] = current_time().isoformat()
    return jsonify(_user_payload(user))


@auth_bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'message': 'You have been logged out.'})


@auth_bp.route('/me')
@login_required
def me():
    return jsonify(_user_payload(g.current_user))
