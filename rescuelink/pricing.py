"""Fare and fee rules for paid services.

The server is the only place amounts are decided; clients may send a preview
amount but ambulance fares and volunteer totals are recomputed here.
"""
import math
import re
from decimal import Decimal, ROUND_HALF_UP

PRESCRIPTION = "PRESCRIPTION"
AMBULANCE_PRIORITY = "AMBULANCE_PRIORITY"
AMBULANCE_ADDON = "AMBULANCE_ADDON"
AMBULANCE_LONG_DISTANCE = "AMBULANCE_LONG_DISTANCE"
AMBULANCE_EQUIPMENT = "AMBULANCE_EQUIPMENT"
AMBULANCE_NON_EMERGENCY = "AMBULANCE_NON_EMERGENCY"
VOLUNTEER_PURCHASE = "VOLUNTEER_PURCHASE"

SERVICE_TYPES = (
    PRESCRIPTION,
    AMBULANCE_PRIORITY,
    AMBULANCE_ADDON,
    AMBULANCE_LONG_DISTANCE,
    AMBULANCE_EQUIPMENT,
    AMBULANCE_NON_EMERGENCY,
    VOLUNTEER_PURCHASE,
)

# Legacy / typoed values sent by older clients, keyed by their alphanumeric form
_SERVICE_TYPE_ALIASES = {
    "AMBULANCEADDON": AMBULANCE_EQUIPMENT,
    "ADDON": AMBULANCE_EQUIPMENT,
    "AMBULANCELONGDISTANCE": AMBULANCE_LONG_DISTANCE,
}

DEFAULT_FREE_KM = 5
DEFAULT_PER_KM_FEE = 100
DEFAULT_VOLUNTEER_FEE_PERCENT = 0.05


def to_number(value):
    """Parses a request value into a float, or None for blanks and junk."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def is_ambulance_service(service_type):
    return bool(service_type) and service_type.startswith("AMBULANCE")


def normalize_service_type(service_type):
    if not service_type or not isinstance(service_type, str):
        return None
    upper = service_type.strip().upper()
    compact = re.sub(r"[^A-Z0-9]", "", upper)
    if compact in _SERVICE_TYPE_ALIASES:
        return _SERVICE_TYPE_ALIASES[compact]
    if upper in SERVICE_TYPES:
        return upper
    for known in SERVICE_TYPES:
        if compact == known.replace("_", ""):
            return known
    return upper


def ambulance_extra_km(distance, free_km=DEFAULT_FREE_KM):
    distance = to_number(distance)
    if distance is None or distance <= free_km:
        return 0
    return math.ceil(distance - free_km)


def ambulance_fare(distance, free_km=DEFAULT_FREE_KM, per_km=DEFAULT_PER_KM_FEE):
    """Up to free_km is free; each started km beyond it costs per_km."""
    return per_km * ambulance_extra_km(distance, free_km)


def infer_ambulance_service_type(distance, free_km=DEFAULT_FREE_KM):
    distance = to_number(distance)
    if distance is not None and distance > free_km:
        return AMBULANCE_LONG_DISTANCE
    return AMBULANCE_EQUIPMENT


def volunteer_fee(item_price, percent=DEFAULT_VOLUNTEER_FEE_PERCENT):
    """Platform fee on a volunteer purchase, rounded half up to whole taka."""
    price = to_number(item_price) or 0
    if price <= 0:
        return 0
    fee = Decimal(str(price)) * Decimal(str(percent))
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def volunteer_total(item_price, percent=DEFAULT_VOLUNTEER_FEE_PERCENT):
    price = to_number(item_price) or 0
    if price <= 0:
        return 0
    return price + volunteer_fee(price, percent)


def fare_quote(service_type, distance=None, item_price=None, prescription_fee=None,
               free_km=DEFAULT_FREE_KM, per_km=DEFAULT_PER_KM_FEE,
               fee_percent=DEFAULT_VOLUNTEER_FEE_PERCENT):
    """Amount breakdown for a service; `amount` is None when it cannot be priced."""
    quote = {"serviceType": service_type, "amount": None}
    if is_ambulance_service(service_type):
        quote.update({
            "distance": to_number(distance),
            "freeKm": free_km,
            "extraKm": ambulance_extra_km(distance, free_km),
            "perKmFee": per_km,
        })
        if to_number(distance) is not None:
            quote["amount"] = ambulance_fare(distance, free_km, per_km)
    elif service_type == VOLUNTEER_PURCHASE:
        price = to_number(item_price)
        quote["itemPrice"] = price
        if price is not None:
            quote["volunteerFee"] = volunteer_fee(price, fee_percent)
            quote["amount"] = volunteer_total(price, fee_percent)
    elif service_type == PRESCRIPTION:
        quote["amount"] = to_number(prescription_fee)
    return quote
