"""Webhooks blueprint — /gateway/webhooks

Receives payment gateway notifications. Every delivery is stored before it
is processed (see WebhookDispatcher.ingest).

Response codes:
  200  stored and handled (applied, duplicate, unknown reference, unsupported)
  401  shared-secret check failed (only when WEBHOOK_SHARED_SECRET is set)
  500  handler failed; the gateway should redeliver
"""

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from paybridge.extensions import limiter
from paybridge.services.engine import get_engine

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/gateway")


def _webhook_rate_limit():
    return current_app.config.get("WEBHOOK_RATE_LIMIT", "120 per minute")


@webhooks_bp.route("/webhooks", methods=["POST"])
@limiter.limit(_webhook_rate_limit)
def gateway_webhook():
    """Receive and process a gateway webhook.

    1. Check the shared secret header, if one is configured
    2. Pass the raw body + source metadata to the dispatcher
    3. Return 200 to acknowledge, or 500 so the gateway retries
    """
    secret = current_app.config.get("WEBHOOK_SHARED_SECRET")
    if secret:
        supplied = request.headers.get("X-Webhook-Secret", "")
        if not hmac.compare_digest(supplied, secret):
            logger.warning(f"Webhook rejected: bad shared secret from {request.remote_addr}")
            return jsonify({"error": "Invalid webhook secret"}), 401

    payload = request.get_data(as_text=True)
    # First hop of X-Forwarded-For when behind a proxy.
    forwarded = request.headers.get("X-Forwarded-For", "")
    source = {
        "source_ip": forwarded.split(",")[0].strip() or request.remote_addr,
        "headers": dict(request.headers),
    }

    result = get_engine().dispatcher.ingest(payload, source)

    if result.should_redeliver:
        logger.error(f"Webhook {result.event.id} processing failed: {result.event.processing_error}")
        return jsonify({"error": "Processing failed", "event_id": result.event.id}), 500

    return jsonify({"status": result.outcome, "event_id": result.event.id}), 200
