import logging

import requests
from flask import current_app

logger = logging.getLogger(__name__)


def notify_payout(order):
    """Pushes a distributed payment to the payout service, if one is configured.

    Money moves over bKash outside this system; the push only tells the
    operator which helper number should receive how much. Returns True when
    the payout service acknowledged the push.
    """
    url = current_app.config.get('PAYOUT_WEBHOOK_URL')
    logger.info("Payment of %s BDT should be sent to %s (%s, order %s)",
                order.amount, order.payment_to, order.service_type, order.order_id)
    if not url:
        return False

    payload = {
        'orderId': order.order_id,
        'paymentTo': order.payment_to,
        'amount': order.amount,
        'serviceType': order.service_type,
        'emergencyId': order.emergency_id,
    }
    try:
        resp = requests.post(url, json=payload, timeout=current_app.config.get('PAYOUT_WEBHOOK_TIMEOUT', 3))
        resp.raise_for_status()
        logger.info("Payout push for order %s accepted (status_code=%s)", order.order_id, resp.status_code)
        return True
    except requests.exceptions.RequestException as e:
        logger.warning("Failed to push payout for order %s: %s", order.order_id, e)
        return False
