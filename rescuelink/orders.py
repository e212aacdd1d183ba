"""Payment orders: create, verify (transaction id), complete (receipt), query.

Lifecycle: pending -> paid -> completed, with cancelled as a side exit for
prescription orders reset by a doctor reassignment. Every transition also
moves the linked emergency's paymentStatus:

    order created      -> pending   (free ambulance booking -> distributed)
    order verified     -> paid
    order completed    -> distributed
"""
import logging

from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy import or_

from . import pricing
from .auth import current_user
from .errors import ApiError, Forbidden, NotFound
from .extensions import db
from .models import Order, EmergencyRequest, User, ACTIVE_ORDER_STATUSES, utcnow
from .payment_status import resolve_payment_state
from .payouts import notify_payout
from .realtime import push_to_emergency, push_to_users

logger = logging.getLogger(__name__)

orders_bp = Blueprint('orders', __name__, url_prefix='/api/orders')


def _to_id(value):
    number = pricing.to_number(value)
    return int(number) if number is not None else None


def _text(value):
    """Client strings may arrive as numbers; None means absent."""
    return str(value).strip() if value is not None else ''


def _get_helper(user_id):
    if user_id is None:
        return None
    helper = db.session.get(User, user_id)
    if helper is None:
        raise NotFound("Service provider not found")
    return helper


def get_order_or_404(order_id):
    order = Order.query.filter_by(order_id=order_id).first()
    if order is None:
        raise NotFound("Order not found")
    return order


def find_existing_order(emergency_id, service_type, doctor_id=None, driver_id=None, volunteer_id=None):
    """Newest order still in the payment lifecycle for this emergency, service and provider."""
    query = Order.query.filter(
        Order.emergency_id == emergency_id,
        Order.service_type == service_type,
        Order.status.in_(ACTIVE_ORDER_STATUSES),
    )
    if doctor_id:
        query = query.filter(Order.doctor_id == doctor_id)
    if driver_id:
        query = query.filter(Order.driver_id == driver_id)
    if volunteer_id:
        query = query.filter(Order.volunteer_id == volunteer_id)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).first()


def _order_event_payload(order):
    return {
        'orderId': order.order_id,
        'emergencyId': order.emergency_id,
        'patientId': order.patient_id,
        'doctorId': order.doctor_id,
        'driverId': order.driver_id,
        'volunteerId': order.volunteer_id,
        'serviceType': order.service_type,
        'amount': order.amount,
        'transactionId': order.transaction_id,
        'paymentTo': order.payment_to,
        'itemPrice': order.item_price,
        'volunteerFee': order.volunteer_fee,
    }


# ==============================================================================
# --- LIFECYCLE ---
# ==============================================================================

def _resolve_amount(service_type, data, emergency, distance, helper):
    """Returns (amount, extra fields) with the server-side pricing applied."""
    cfg = current_app.config
    amount = pricing.to_number(data.get('amount'))
    extra = {}

    if pricing.is_ambulance_service(service_type):
        if distance is not None:
            amount = pricing.ambulance_fare(distance, cfg['AMBULANCE_FREE_KM'], cfg['AMBULANCE_PER_KM_FEE'])
            extra['distance'] = distance
    elif service_type == pricing.VOLUNTEER_PURCHASE:
        item_price = pricing.to_number(data.get('itemPrice'))
        if item_price is None and amount is None and emergency is not None and emergency.items_cost:
            item_price = emergency.items_cost
        if item_price is not None:
            if item_price < 0:
                raise ApiError("itemPrice cannot be negative")
            extra['item_price'] = item_price
            extra['volunteer_fee'] = pricing.volunteer_fee(item_price, cfg['VOLUNTEER_FEE_PERCENT'])
            amount = pricing.volunteer_total(item_price, cfg['VOLUNTEER_FEE_PERCENT'])
    elif service_type == pricing.PRESCRIPTION and amount is None:
        fee = helper.prescription_fee if helper is not None else None
        amount = fee if fee is not None else cfg['DEFAULT_PRESCRIPTION_FEE']

    return amount, extra


def create_order(data, user):
    """Creates a payment order, or returns the existing one for the same emergency/service/provider.

    Returns (order, created).
    """
    cfg = current_app.config
    service_type = pricing.normalize_service_type(data.get('serviceType'))
    helper_ids = {
        'doctor_id': _to_id(data.get('doctorId')),
        'driver_id': _to_id(data.get('driverId')),
        'volunteer_id': _to_id(data.get('volunteerId')),
    }
    emergency_id = _to_id(data.get('emergencyId'))
    patient_id = _to_id(data.get('patientId'))
    distance = pricing.to_number(data.get('distance'))

    emergency = None
    if emergency_id is not None:
        emergency = db.session.get(EmergencyRequest, emergency_id)
        if emergency is None:
            raise NotFound("Emergency request not found")
        if patient_id is None:
            patient_id = emergency.patient_id
        if distance is None:
            distance = emergency.resolved_distance
    if patient_id is None and user is not None and user.role == 'patient':
        patient_id = user.id

    if not service_type and distance is not None:
        service_type = pricing.infer_ambulance_service_type(distance, cfg['AMBULANCE_FREE_KM'])
        logger.info("Inferred serviceType=%s from distance=%skm", service_type, distance)
    if service_type and service_type not in pricing.SERVICE_TYPES:
        raise ApiError("Order validation failed", details={
            'message': f"Unknown service type {service_type}",
            'incomingServiceType': data.get('serviceType'),
            'allowedServiceTypes': list(pricing.SERVICE_TYPES),
        })

    helper = _get_helper(next((v for v in helper_ids.values() if v is not None), None))
    amount, extra = _resolve_amount(service_type, data, emergency, distance, helper)

    if not patient_id or not service_type or amount is None:
        raise ApiError("Missing required fields: patientId, serviceType, amount")
    if amount < 0:
        raise ApiError("Amount cannot be negative")

    payment_to = _text(data.get('paymentTo')) or None
    if amount > 0:
        if not payment_to and helper is not None:
            payment_to = helper.payment_contact
        if not payment_to:
            raise ApiError("Payment recipient (bKash/phone number) is required for paid services. "
                           "Please provide paymentTo or ensure the service provider has a phone/bKash number.")

    if emergency is not None:
        existing = find_existing_order(emergency.id, service_type, **helper_ids)
        if existing is not None:
            logger.info("Existing order %s found for emergency %s (%s)", existing.order_id, emergency.id, service_type)
            return existing, False

    order = Order(patient_id=patient_id, emergency_id=emergency_id, service_type=service_type,
                  amount=amount, payment_to=payment_to, status='pending', **helper_ids)
    for field, value in extra.items():
        setattr(order, field, value)
    equipment = data.get('equipment')
    if isinstance(equipment, list):
        order.equipment = equipment
    db.session.add(order)

    free_booking = pricing.is_ambulance_service(service_type) and amount <= 0
    if free_booking:
        # Free ambulance bookings need no payment and are confirmed on the spot
        order.status = 'completed'
        order.payment_distributed = True
        order.payment_distributed_at = utcnow()

    if emergency is not None:
        if free_booking:
            emergency.ambulance_service = {
                'serviceType': service_type, 'distance': distance or 0,
                'equipment': order.equipment or [], 'driverId': order.driver_id,
                'amount': amount, 'bookedAt': utcnow().isoformat(),
            }
        emergency.payment_status = 'distributed' if free_booking else 'pending'

    db.session.commit()
    logger.info("Created order %s: %s %s BDT (status=%s, emergency=%s)",
                order.order_id, service_type, amount, order.status, emergency_id)

    if free_booking and emergency_id is not None:
        push_to_emergency(emergency_id, 'paymentDistributed', {
            'orderId': order.order_id, 'emergencyId': emergency_id, 'amount': order.amount,
            'paymentTo': order.payment_to, 'serviceType': order.service_type, 'driverId': order.driver_id,
        })
        push_to_users('ambulanceBooked', {
            'orderId': order.order_id, 'emergencyId': emergency_id, 'amount': order.amount,
        }, order.driver_id)
    return order, True


def verify_order(order, transaction_id):
    """Records the patient's bKash transaction id and marks the order paid.

    The id is not checked against bKash; the payee confirms receipt later.
    """
    transaction_id = _text(transaction_id)
    if not transaction_id:
        raise ApiError("Transaction ID is required")
    if order.status == 'cancelled':
        raise ApiError("Order has been cancelled")
    if order.status == 'completed':
        raise ApiError("Order is already completed")

    order.transaction_id = transaction_id
    order.status = 'paid'
    if order.emergency is not None:
        order.emergency.payment_status = 'paid'
    db.session.commit()
    logger.info("Payment verified for order %s (%s, tx=%s)", order.order_id, order.service_type, transaction_id)

    payload = _order_event_payload(order)
    push_to_emergency(order.emergency_id, 'orderPaid', payload)
    push_to_users('orderPaid', payload, order.patient_id, order.helper_id)
    return order


def _distribute(order):
    """Marks a completed order's payment as handed on to its payee."""
    if order.payment_distributed or not order.payment_to:
        return False
    order.payment_distributed = True
    order.payment_distributed_at = utcnow()
    return True


def complete_order(order):
    """Payee confirms receipt: paid -> completed, payment distributed."""
    if order.status != 'paid':
        raise ApiError("Order must be paid before completion")

    order.status = 'completed'
    distributed = _distribute(order)
    if order.emergency is not None:
        order.emergency.payment_status = 'distributed'
    db.session.commit()
    logger.info("Order %s completed (distributed=%s)", order.order_id, order.payment_distributed)

    if distributed:
        notify_payout(order)
    push_to_emergency(order.emergency_id, 'paymentDistributed', {
        'orderId': order.order_id, 'emergencyId': order.emergency_id,
        'amount': order.amount, 'paymentTo': order.payment_to,
    })
    return order


def complete_paid_orders(emergency):
    """Completes every paid order of an emergency when the emergency itself completes.

    The caller commits.
    """
    orders = Order.query.filter_by(emergency_id=emergency.id, status='paid').all()
    distributed = []
    for order in orders:
        order.status = 'completed'
        if _distribute(order):
            distributed.append(order)
    if orders:
        emergency.payment_status = 'distributed'
    return distributed


def cancel_prescription_orders(emergency):
    """Cancels every live prescription order of an emergency; the caller commits.

    A new doctor assignment (even the same doctor again) must be paid for again,
    so the emergency's paymentStatus drops back to pending.
    """
    orders = Order.query.filter(
        Order.emergency_id == emergency.id,
        Order.service_type == pricing.PRESCRIPTION,
        Order.status != 'cancelled',
    ).all()
    for order in orders:
        order.status = 'cancelled'
    if orders:
        emergency.payment_status = 'pending'
        logger.info("Cancelled %d prescription order(s) for emergency %s", len(orders), emergency.id)
    return len(orders)


def _check_can_view(order, user):
    if user.role == 'admin' or user.id in (order.patient_id, order.helper_id):
        return
    raise Forbidden("Not authorized to access this order")


# ==============================================================================
# --- ROUTES ---
# ==============================================================================

@orders_bp.route('/create', methods=['POST'])
@jwt_required()
def create_order_route():
    data = request.get_json(silent=True) or {}
    order, created = create_order(data, current_user())
    body = {"success": True, "order": order.to_dict()}
    if not created:
        body["message"] = "Existing payment order found for this emergency"
    return jsonify(body), 200


@orders_bp.route('/verify', methods=['POST'])
@jwt_required()
def verify_order_route():
    data = request.get_json(silent=True) or {}
    if not _text(data.get('transactionId')):
        raise ApiError("Transaction ID is required")
    user = current_user()
    order = get_order_or_404(data.get('orderId'))
    if user.role != 'admin' and user.id != order.patient_id:
        raise Forbidden("Only the paying patient can submit a transaction ID")
    verify_order(order, data.get('transactionId'))
    return jsonify({"success": True, "order": order.to_dict()}), 200


@orders_bp.route('/complete', methods=['POST'])
@jwt_required()
def complete_order_route():
    data = request.get_json(silent=True) or {}
    user = current_user()
    order = get_order_or_404(data.get('orderId'))
    if user.role != 'admin' and user.id != order.helper_id:
        raise Forbidden("Only the payment recipient can confirm receipt")
    complete_order(order)
    return jsonify({"success": True, "order": order.to_dict()}), 200


@orders_bp.route('/quote', methods=['GET'])
@jwt_required()
def quote_route():
    """Fare preview using the same rules as order creation."""
    cfg = current_app.config
    args = request.args
    service_type = pricing.normalize_service_type(args.get('serviceType'))
    distance, item_price, fee = args.get('distance'), args.get('itemPrice'), None

    emergency_id = _to_id(args.get('emergencyId'))
    if emergency_id is not None:
        emergency = db.session.get(EmergencyRequest, emergency_id)
        if emergency is None:
            raise NotFound("Emergency request not found")
        if distance is None:
            distance = emergency.resolved_distance
        if item_price is None:
            item_price = emergency.items_cost
        if emergency.assigned_doctor is not None:
            fee = emergency.assigned_doctor.prescription_fee
    if not service_type and distance is not None:
        service_type = pricing.infer_ambulance_service_type(distance, cfg['AMBULANCE_FREE_KM'])
    if service_type not in pricing.SERVICE_TYPES:
        raise ApiError("A valid serviceType is required",
                       details={'allowedServiceTypes': list(pricing.SERVICE_TYPES)})
    if service_type == pricing.PRESCRIPTION and fee is None:
        fee = cfg['DEFAULT_PRESCRIPTION_FEE']

    quote = pricing.fare_quote(service_type, distance=distance, item_price=item_price, prescription_fee=fee,
                               free_km=cfg['AMBULANCE_FREE_KM'], per_km=cfg['AMBULANCE_PER_KM_FEE'],
                               fee_percent=cfg['VOLUNTEER_FEE_PERCENT'])
    return jsonify({"success": True, "quote": quote}), 200


@orders_bp.route('/payment-status', methods=['GET'])
@jwt_required()
def payment_status_route():
    """What a payment widget should show for one emergency and provider."""
    args = request.args
    emergency_id = _to_id(args.get('emergencyId'))
    if emergency_id is None:
        raise ApiError("emergencyId is required")
    emergency = db.session.get(EmergencyRequest, emergency_id)
    if emergency is None:
        raise NotFound("Emergency request not found")

    user = current_user()
    if user.role != 'admin' and not emergency.is_participant(user.id):
        raise Forbidden("Not authorized to view payments for this emergency")

    state = resolve_payment_state(
        emergency, viewer=user,
        service_type=pricing.normalize_service_type(args.get('serviceType')),
        doctor_id=_to_id(args.get('doctorId')),
        driver_id=_to_id(args.get('driverId')),
        volunteer_id=_to_id(args.get('volunteerId')),
    )
    return jsonify({"success": True, "data": state}), 200


@orders_bp.route('', methods=['GET'])
@jwt_required()
def list_orders():
    user = current_user()
    filters = {
        'patient_id': _to_id(request.args.get('patientId')),
        'doctor_id': _to_id(request.args.get('doctorId')),
        'driver_id': _to_id(request.args.get('driverId')),
        'volunteer_id': _to_id(request.args.get('volunteerId')),
        'emergency_id': _to_id(request.args.get('emergencyId')),
        'service_type': pricing.normalize_service_type(request.args.get('serviceType')),
        'status': request.args.get('status'),
    }
    query = Order.query.filter_by(**{k: v for k, v in filters.items() if v is not None})
    if user.role != 'admin':
        # Only orders the caller pays or is paid for
        query = query.filter(or_(Order.patient_id == user.id, Order.doctor_id == user.id,
                               Order.driver_id == user.id, Order.volunteer_id == user.id))
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).all()
    return jsonify({"success": True, "orders": [o.to_dict() for o in orders]}), 200


@orders_bp.route('/<order_id>', methods=['GET'])
@jwt_required()
def get_order(order_id):
    order = get_order_or_404(order_id)
    _check_can_view(order, current_user())
    return jsonify({"success": True, "order": order.to_dict()}), 200
