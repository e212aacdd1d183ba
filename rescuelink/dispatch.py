"""Helper matching: finds the closest available doctor, volunteer or driver."""
import logging
import math

from .models import User

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1, lon1, lat2, lon2):
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def nearby_helpers(role, latitude, longitude, radius_km):
    """Active helpers of a role within radius_km, closest first, as (user, km) pairs."""
    candidates = User.query.filter_by(role=role, is_active=True).all()
    found = []
    for helper in candidates:
        if not helper.has_location:
            continue
        km = haversine_km(latitude, longitude, helper.latitude, helper.longitude)
        if km <= radius_km:
            found.append((helper, km))
    found.sort(key=lambda pair: pair[1])
    return found


def find_nearest_helper(role, latitude, longitude, radius_km):
    """Closest available helper, preferring those on duty.

    Falls back to off-duty helpers in range when nobody is on duty.
    """
    in_range = [(h, km) for h, km in nearby_helpers(role, latitude, longitude, radius_km) if h.availability]
    on_duty = [(h, km) for h, km in in_range if h.is_on_duty]
    pool = on_duty or in_range
    if not pool:
        logger.info("No %s found within %.0f km of (%s, %s)", role, radius_km, latitude, longitude)
        return None, None
    helper, km = pool[0]
    logger.info("Nearest %s is user %s at %.2f km (on duty: %s)", role, helper.id, km, helper.is_on_duty)
    return helper, km
