"""Reconciles order state with the emergency-level paymentStatus.

Payment widgets need one answer per (emergency, provider, service): is
there anything to pay, has it been paid, can the payee confirm receipt, and
is the payee reachable at all. Orders are authoritative; the emergency's
paymentStatus is only consulted when no order exists (for example an
emergency paid before orders were linked to it).
"""
from flask import current_app

from . import pricing
from .extensions import db
from .models import Order, User

PAID_STATES = ("paid", "distributed")

_ROLE_BY_FAMILY = {
    "AMBULANCE": "driver",
    pricing.VOLUNTEER_PURCHASE: "volunteer",
    pricing.PRESCRIPTION: "doctor",
}

_FAMILY_BY_ROLE = {
    "driver": "AMBULANCE",
    "volunteer": pricing.VOLUNTEER_PURCHASE,
    "doctor": pricing.PRESCRIPTION,
}


def service_family(service_type):
    if pricing.is_ambulance_service(service_type):
        return "AMBULANCE"
    return service_type


def order_payment_state(order):
    """pending | paid | distributed for an order, or None for a cancelled one."""
    if order.status == "pending":
        return "pending"
    if order.status in ("paid", "completed"):
        return "distributed" if order.payment_distributed else "paid"
    return None


def find_service_order(emergency_id, family, helper_column=None, helper_id=None):
    """Newest live order of a service family for an emergency, optionally for one provider."""
    query = Order.query.filter(Order.emergency_id == emergency_id, Order.status != "cancelled")
    if family == "AMBULANCE":
        query = query.filter(Order.service_type.like("AMBULANCE%"))
    elif family:
        query = query.filter(Order.service_type == family)
    if helper_column is not None and helper_id is not None:
        query = query.filter(getattr(Order, helper_column) == helper_id)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).first()


def _resolve_target(emergency, service_type, doctor_id, driver_id, volunteer_id):
    """Works out (role, helper id, family) from whatever the caller supplied."""
    if driver_id is not None:
        role, helper_id = "driver", driver_id
    elif volunteer_id is not None:
        role, helper_id = "volunteer", volunteer_id
    elif doctor_id is not None:
        role, helper_id = "doctor", doctor_id
    else:
        role = _ROLE_BY_FAMILY.get(service_family(service_type), emergency.requested_role)
        helper_id = getattr(emergency, f"assigned_{role}_id", None)
    family = service_family(service_type) if service_type else _FAMILY_BY_ROLE.get(role)
    return role, helper_id, family


def _quote_amount(emergency, family, helper):
    cfg = current_app.config
    if family == "AMBULANCE":
        return pricing.ambulance_fare(emergency.resolved_distance, cfg["AMBULANCE_FREE_KM"],
                                      cfg["AMBULANCE_PER_KM_FEE"])
    if family == pricing.VOLUNTEER_PURCHASE:
        return pricing.volunteer_total(emergency.items_cost, cfg["VOLUNTEER_FEE_PERCENT"])
    if family == pricing.PRESCRIPTION:
        if helper is not None and helper.prescription_fee is not None:
            return helper.prescription_fee
        return cfg["DEFAULT_PRESCRIPTION_FEE"]
    return 0


def resolve_payment_state(emergency, viewer, service_type=None, doctor_id=None, driver_id=None, volunteer_id=None):
    role, helper_id, family = _resolve_target(emergency, service_type, doctor_id, driver_id, volunteer_id)
    order = find_service_order(emergency.id, family, f"{role}_id", helper_id)

    helper = db.session.get(User, helper_id) if helper_id is not None else None

    if order is not None:
        status = order_payment_state(order)
        amount = order.amount
        payment_to = order.payment_to or (helper.payment_contact if helper else None)
    else:
        status = emergency.payment_status if emergency.payment_status in PAID_STATES else "none"
        amount = _quote_amount(emergency, family, helper)
        payment_to = helper.payment_contact if helper else None

    payment_required = (amount or 0) > 0
    recipient_missing = payment_required and not payment_to
    is_paid = status in PAID_STATES
    viewer_is_patient = viewer is not None and viewer.id == emergency.patient_id

    warning = None
    if recipient_missing and not is_paid:
        warning = (f"This {role or 'helper'} has not provided a bKash number or phone number. "
                   "Please contact them directly.")

    return {
        "emergencyId": emergency.id,
        "serviceFamily": family,
        "helperRole": role,
        "helperId": helper_id,
        "status": status,
        "paid": is_paid,
        "amount": amount,
        "paymentRequired": payment_required,
        "paymentTo": payment_to,
        "recipientMissing": recipient_missing,
        "warning": warning,
        "showPayButton": (viewer_is_patient and payment_required and not is_paid
                          and not recipient_missing),
        "canMarkReceived": (order is not None and order.status == "paid"
                            and viewer is not None and viewer.id == order.helper_id),
        "order": order.to_dict() if order is not None else None,
    }
