import logging
import re
from functools import wraps

from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import create_access_token, get_jwt_identity, jwt_required

from .dispatch import nearby_helpers
from .errors import ApiError, Forbidden, NotFound
from .extensions import db, jwt
from .models import User, ROLES, HELPER_ROLES
from .pricing import to_number

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')
users_bp = Blueprint('users', __name__, url_prefix='/api/users')

BKASH_NUMBER_RE = re.compile(r"^01\d{9}$")


# ------------------------------------------------------------------
# Identity helpers
# ------------------------------------------------------------------
def current_user():
    """The authenticated user; must be called inside a jwt_required view."""
    identity = get_jwt_identity()
    user = db.session.get(User, int(identity)) if identity is not None else None
    if user is None or not user.is_active:
        raise ApiError("User not found or inactive", 401)
    return user


def role_required(*allowed_roles):
    """Restricts a view to authenticated users with one of the given roles."""
    def decorator(fn):
        @wraps(fn)
        @jwt_required()
        def wrapper(*args, **kwargs):
            user = current_user()
            if user.role not in allowed_roles:
                raise Forbidden("Insufficient permissions")
            return fn(*args, **kwargs)
        return wrapper
    return decorator


@jwt.unauthorized_loader
def _missing_token(reason):
    return jsonify({"success": False, "error": reason}), 401


@jwt.invalid_token_loader
def _invalid_token(reason):
    return jsonify({"success": False, "error": reason}), 401


@jwt.expired_token_loader
def _expired_token(jwt_header, jwt_payload):
    return jsonify({"success": False, "error": "Token has expired"}), 401


def _validate_bkash(number):
    if number and not BKASH_NUMBER_RE.match(number):
        raise ApiError("Please provide a valid bKash number (11 digits starting with 01)")
    return number or None


def _apply_location(user, location):
    coords = (location or {}).get('coordinates')
    if coords and len(coords) == 2:
        lng, lat = to_number(coords[0]), to_number(coords[1])
        if lng is None or lat is None:
            raise ApiError("Location coordinates must be numeric [longitude, latitude]")
        user.longitude, user.latitude = lng, lat
    if location and location.get('address'):
        user.address = location['address']


def _token_response(user, status_code=200, message=None):
    token = create_access_token(identity=str(user.id))
    body = {"success": True, "token": token, "user": user.to_dict()}
    if message:
        body["message"] = message
    return jsonify(body), status_code


# ------------------------------------------------------------------
# Auth routes
# ------------------------------------------------------------------
@auth_bp.route('/register', methods=['POST'])
def register_user():
    data = request.get_json(silent=True) or {}
    name, email, password = data.get('name'), (data.get('email') or '').strip().lower(), data.get('password')
    role = data.get('role', 'patient')

    if not all([name, email, password]):
        raise ApiError("Name, email and password are required for registration.")
    if len(password) < 6:
        raise ApiError("Password must be at least 6 characters.")
    if role not in ROLES or role == 'admin':
        raise ApiError(f"Role must be one of: {', '.join(r for r in ROLES if r != 'admin')}")
    if User.query.filter_by(email=email).first():
        raise ApiError("Email already registered. Please log in.", 409)

    user = User(name=name, email=email, role=role, phone=data.get('phone'),
                bkash_number=_validate_bkash(data.get('bkashNumber')))
    user.set_password(password)
    if role == 'doctor':
        user.specialization = data.get('specialization')
        user.experience = data.get('experience')
        fee = to_number(data.get('prescriptionFee'))
        user.prescription_fee = int(fee) if fee is not None else current_app.config['DEFAULT_PRESCRIPTION_FEE']
    _apply_location(user, data.get('location'))

    db.session.add(user)
    db.session.commit()
    logger.info("Registered %s user %s", role, user.id)
    return _token_response(user, 201, "Registration successful.")


@auth_bp.route('/login', methods=['POST'])
def login_user():
    data = request.get_json(silent=True) or {}
    email, password = (data.get('email') or '').strip().lower(), data.get('password')
    if not all([email, password]):
        raise ApiError("Email and password are required.")

    user = User.query.filter_by(email=email).first()
    if user is None or not user.check_password(password):
        raise ApiError("Invalid email or password.", 401)
    if not user.is_active:
        raise ApiError("Account is deactivated.", 401)
    return _token_response(user)


@auth_bp.route('/me', methods=['GET'])
@jwt_required()
def get_me():
    return jsonify({"success": True, "data": current_user().to_dict()}), 200


# ------------------------------------------------------------------
# User routes
# ------------------------------------------------------------------
@users_bp.route('/nearby', methods=['GET'])
@jwt_required()
def get_nearby_helpers():
    """Helpers of a role around a point, closest first."""
    role = request.args.get('role', 'doctor')
    lat, lng = to_number(request.args.get('lat')), to_number(request.args.get('lng'))
    if role not in HELPER_ROLES:
        raise ApiError(f"role must be one of: {', '.join(HELPER_ROLES)}")
    if lat is None or lng is None:
        raise ApiError("lat and lng are required")
    radius = to_number(request.args.get('radius')) or current_app.config['HELPER_SEARCH_RADIUS_KM']

    helpers = [dict(h.to_dict(), distanceKm=round(km, 2)) for h, km in nearby_helpers(role, lat, lng, radius)]
    return jsonify({"success": True, "count": len(helpers), "data": helpers}), 200


@users_bp.route('/me', methods=['PUT'])
@jwt_required()
def update_me():
    user = current_user()
    data = request.get_json(silent=True) or {}

    if 'name' in data and data['name']:
        user.name = data['name']
    if 'phone' in data:
        user.phone = data['phone'] or None
    if 'bkashNumber' in data:
        user.bkash_number = _validate_bkash(data['bkashNumber'])
    if 'isOnDuty' in data:
        user.is_on_duty = bool(data['isOnDuty'])
    if 'availability' in data:
        user.availability = bool(data['availability'])
    if user.role == 'doctor':
        if 'specialization' in data:
            user.specialization = data['specialization']
        if 'prescriptionFee' in data:
            fee = to_number(data['prescriptionFee'])
            if fee is None or fee < 0:
                raise ApiError("prescriptionFee must be a non-negative number")
            user.prescription_fee = int(fee)
    _apply_location(user, data.get('location'))

    db.session.commit()
    return jsonify({"success": True, "data": user.to_dict()}), 200


@users_bp.route('/<int:user_id>', methods=['GET'])
@jwt_required()
def get_user(user_id):
    """Public profile, including the payment contact used by payment widgets."""
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return jsonify({"success": True, "data": user.to_dict()}), 200
