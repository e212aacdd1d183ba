import logging

from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required

from .auth import current_user, role_required
from .dispatch import find_nearest_helper
from .errors import ApiError, Forbidden, NotFound
from .extensions import db
from .models import (EmergencyRequest, Order, User, EMERGENCY_STATUSES, HELPER_ROLES,
                     URGENCY_LEVELS, utcnow)
from .orders import cancel_prescription_orders, complete_paid_orders
from .payouts import notify_payout
from .pricing import PRESCRIPTION, to_number
from .realtime import push_to_emergency, push_to_users

logger = logging.getLogger(__name__)

emergency_bp = Blueprint('emergency', __name__, url_prefix='/api/emergency')


def get_emergency_or_404(emergency_id):
    emergency = db.session.get(EmergencyRequest, emergency_id)
    if emergency is None:
        raise NotFound("Emergency request not found")
    return emergency


def _check_participant(emergency, user):
    if user.role == 'admin' or emergency.is_participant(user.id):
        return
    raise Forbidden("Not authorized to access this emergency request")


def assign_helper(emergency, helper):
    """Assigns a helper in the slot matching their role; the caller commits.

    A doctor assignment cancels earlier prescription orders so the patient
    pays again for the new consultation.
    """
    if helper.role not in HELPER_ROLES:
        raise ApiError("Only doctors, volunteers and drivers can be assigned")
    if helper.role == 'doctor':
        cancel_prescription_orders(emergency)

    previous_id = getattr(emergency, f"assigned_{helper.role}_id")
    if previous_id != helper.id:
        previous = db.session.get(User, previous_id) if previous_id else None
        if previous is not None and previous.active_emergencies > 0:
            previous.active_emergencies -= 1
        helper.active_emergencies += 1

    setattr(emergency, f"assigned_{helper.role}_id", helper.id)
    emergency.status = 'assigned'
    emergency.assigned_at = utcnow()
    logger.info("Assigned %s %s to emergency %s", helper.role, helper.id, emergency.id)


def _release_helpers(emergency):
    for helper_id in emergency.assigned_helper_ids():
        helper = db.session.get(User, helper_id)
        if helper is not None and helper.active_emergencies > 0:
            helper.active_emergencies -= 1


def _notify_assignment(emergency):
    role = emergency.requested_role
    helper_id = getattr(emergency, f"assigned_{role}_id")
    if helper_id:
        push_to_users('newEmergency', {
            'emergencyId': emergency.id, 'urgencyLevel': emergency.urgency_level,
            'description': emergency.description, 'itemsNeeded': emergency.items_needed,
        }, helper_id)


def has_unissued_prescription(emergency_id):
    """True while a paid prescription order has no prescription attached."""
    paid = Order.query.filter_by(emergency_id=emergency_id, service_type=PRESCRIPTION, status='paid').all()
    return any(order.prescription is None for order in paid)


# ==============================================================================
# --- ROUTES ---
# ==============================================================================

@emergency_bp.route('', methods=['POST'])
@role_required('patient')
def create_emergency():
    """Patient raises an emergency; the nearest helper of the requested role is assigned."""
    patient = current_user()
    data = request.get_json(silent=True) or {}

    coords = (data.get('location') or {}).get('coordinates') or []
    if len(coords) != 2 or to_number(coords[0]) is None or to_number(coords[1]) is None:
        raise ApiError("location.coordinates must be [longitude, latitude]")
    longitude, latitude = to_number(coords[0]), to_number(coords[1])

    role = data.get('requestedRole')
    if role not in HELPER_ROLES:
        role = 'doctor'
    urgency = data.get('urgencyLevel') or 'high'
    if urgency not in URGENCY_LEVELS:
        raise ApiError(f"urgencyLevel must be one of: {', '.join(URGENCY_LEVELS)}")
    items_cost = to_number(data.get('itemsCost')) or 0
    distance = to_number(data.get('distance')) or 0
    if items_cost < 0 or distance < 0:
        raise ApiError("itemsCost and distance cannot be negative")

    emergency = EmergencyRequest(
        patient_id=patient.id, latitude=latitude, longitude=longitude,
        address=(data.get('location') or {}).get('address'),
        description=data.get('description'), urgency_level=urgency, requested_role=role,
        items_needed=data.get('itemsNeeded') or '', items_cost=items_cost, distance=distance,
        payment_status='pending' if role == 'volunteer' and items_cost > 0 else 'none',
    )
    db.session.add(emergency)
    db.session.flush()

    helper, km = find_nearest_helper(role, latitude, longitude, current_app.config['HELPER_SEARCH_RADIUS_KM'])
    if helper is not None:
        assign_helper(emergency, helper)
    db.session.commit()

    _notify_assignment(emergency)
    body = emergency.to_dict()
    body['helperDistanceKm'] = round(km, 2) if km is not None else None
    message = (f"Emergency request created and {role} assigned" if helper is not None
               else f"Emergency request created. No {role} available nearby yet.")
    return jsonify({"success": True, "message": message, "data": body}), 201


@emergency_bp.route('/my-requests', methods=['GET'])
@jwt_required()
def get_my_requests():
    user = current_user()
    emergencies = (EmergencyRequest.query.filter_by(patient_id=user.id)
                   .order_by(EmergencyRequest.created_at.desc()).all())
    return jsonify({"success": True, "count": len(emergencies),
                    "data": [e.to_dict() for e in emergencies]}), 200


@emergency_bp.route('/assigned', methods=['GET'])
@role_required(*HELPER_ROLES)
def get_assigned():
    user = current_user()
    column = getattr(EmergencyRequest, f"assigned_{user.role}_id")
    emergencies = (EmergencyRequest.query.filter(column == user.id)
                   .order_by(EmergencyRequest.created_at.desc()).all())
    return jsonify({"success": True, "count": len(emergencies),
                    "data": [e.to_dict() for e in emergencies]}), 200


@emergency_bp.route('/all', methods=['GET'])
@role_required('admin')
def get_all():
    query = EmergencyRequest.query
    if request.args.get('status'):
        query = query.filter_by(status=request.args['status'])
    emergencies = query.order_by(EmergencyRequest.created_at.desc()).limit(200).all()
    return jsonify({"success": True, "count": len(emergencies),
                    "data": [e.to_dict() for e in emergencies]}), 200


@emergency_bp.route('/<int:emergency_id>', methods=['GET'])
@jwt_required()
def get_emergency(emergency_id):
    emergency = get_emergency_or_404(emergency_id)
    _check_participant(emergency, current_user())
    return jsonify({"success": True, "data": emergency.to_dict()}), 200


@emergency_bp.route('/<int:emergency_id>/assign', methods=['POST'])
@jwt_required()
def reassign(emergency_id):
    """Assigns a specific helper (admin) or the nearest one again (patient or admin)."""
    user = current_user()
    emergency = get_emergency_or_404(emergency_id)
    if user.role != 'admin' and user.id != emergency.patient_id:
        raise Forbidden("Not authorized to reassign this emergency request")
    if emergency.status in ('completed', 'cancelled'):
        raise ApiError(f"Emergency is already {emergency.status}")

    data = request.get_json(silent=True) or {}
    helper_id = data.get('helperId')
    if helper_id is not None:
        if user.role != 'admin':
            raise Forbidden("Only an admin can pick a specific helper")
        helper = db.session.get(User, helper_id)
        if helper is None:
            raise NotFound("Helper not found")
    else:
        helper, _ = find_nearest_helper(emergency.requested_role, emergency.latitude, emergency.longitude,
                                        current_app.config['HELPER_SEARCH_RADIUS_KM'])
        if helper is None:
            raise NotFound(f"No {emergency.requested_role} available nearby")

    assign_helper(emergency, helper)
    db.session.commit()
    push_to_users('newEmergency', {'emergencyId': emergency.id, 'urgencyLevel': emergency.urgency_level,
                                   'description': emergency.description}, helper.id)
    return jsonify({"success": True, "data": emergency.to_dict()}), 200


@emergency_bp.route('/<int:emergency_id>/status', methods=['PUT'])
@jwt_required()
def update_status(emergency_id):
    user = current_user()
    emergency = get_emergency_or_404(emergency_id)
    _check_participant(emergency, user)

    data = request.get_json(silent=True) or {}
    status = data.get('status')
    if status not in EMERGENCY_STATUSES:
        raise ApiError(f"status must be one of: {', '.join(EMERGENCY_STATUSES)}")
    if emergency.status in ('completed', 'cancelled'):
        raise ApiError(f"Emergency is already {emergency.status}")

    distributed = []
    if status == 'completed':
        if has_unissued_prescription(emergency.id):
            raise ApiError("There are paid prescription order(s) for this emergency that have not yet been "
                           "issued. Please issue/send the prescription(s) before marking the emergency as completed.")
        emergency.completed_at = utcnow()
        distributed = complete_paid_orders(emergency)
        _release_helpers(emergency)
    elif status == 'cancelled':
        emergency.cancelled_at = utcnow()
        emergency.notes = data.get('cancellationReason') or emergency.notes
        _release_helpers(emergency)
    elif status == 'arrived':
        emergency.arrived_at = utcnow()
    elif status == 'en-route' and emergency.assigned_at is None:
        emergency.assigned_at = utcnow()

    emergency.status = status
    if data.get('notes'):
        emergency.notes = data['notes']
    db.session.commit()
    logger.info("Emergency %s -> %s by user %s", emergency.id, status, user.id)

    for order in distributed:
        notify_payout(order)
        push_to_emergency(emergency.id, 'paymentDistributed', {
            'orderId': order.order_id, 'emergencyId': emergency.id,
            'amount': order.amount, 'paymentTo': order.payment_to,
        })
    push_to_emergency(emergency.id, 'statusUpdate', {
        'emergencyId': emergency.id, 'status': status, 'timestamp': utcnow().isoformat(),
    })
    return jsonify({"success": True, "data": emergency.to_dict()}), 200
