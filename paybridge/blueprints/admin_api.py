"""Admin API blueprint — /admin/api/*

Read-only views over the ledger, schedules and webhook log, plus the few
operator actions the engine supports. JSON only.
All routes protected by @admin_token_required.

Route Map:
  GET  /admin/api/transactions                     — List transactions (filters: status, account_id, schedule_id, type)
  GET  /admin/api/transactions/<id>                — Transaction detail
  GET  /admin/api/schedules                        — List schedules (filters: status, account_id)
  GET  /admin/api/schedules/<id>                   — Schedule detail + recent transactions
  POST /admin/api/schedules/<id>/pause             — Pause
  POST /admin/api/schedules/<id>/resume            — Resume
  POST /admin/api/schedules/<id>/cancel            — Cancel (JSON body: {"reason": ...})
  GET  /admin/api/webhook-events                   — List webhook deliveries (filters: processed, outcome, event_type)
  POST /admin/api/webhook-events/<id>/retry        — Re-run a failed delivery
  GET  /admin/api/health                           — Recurring health + payment summary
"""

import logging

from flask import Blueprint, jsonify, request

from paybridge.decorators import admin_token_required
from paybridge.errors import InvalidTransition, UnknownReference
from paybridge.extensions import db
from paybridge.models.schedule import RecurringSchedule
from paybridge.models.transaction import Transaction
from paybridge.models.webhook_event import WebhookEvent
from paybridge.services import reporting
from paybridge.services.engine import get_engine
from paybridge.timeutil import parse_iso

logger = logging.getLogger(__name__)

admin_api_bp = Blueprint("admin_api", __name__, url_prefix="/admin/api")

MAX_PAGE_SIZE = 500


def _limit():
    limit = request.args.get("limit", 50, type=int)
    return max(1, min(limit, MAX_PAGE_SIZE))


# ══════════════════════════════════════════════
#  TRANSACTIONS
# ══════════════════════════════════════════════

@admin_api_bp.route("/transactions")
@admin_token_required
def list_transactions():
    query = Transaction.query
    for field in ("status", "account_id", "schedule_id", "type"):
        value = request.args.get(field)
        if value:
            query = query.filter(getattr(Transaction, field) == value)

    transactions = query.order_by(Transaction.created_at.desc()).limit(_limit()).all()
    return jsonify({"transactions": [t.to_dict() for t in transactions]}), 200


@admin_api_bp.route("/transactions/<txn_id>")
@admin_token_required
def transaction_detail(txn_id):
    txn = db.session.get(Transaction, txn_id)
    if txn is None:
        return jsonify({"error": "Transaction not found"}), 404
    return jsonify({"transaction": txn.to_dict()}), 200


# ══════════════════════════════════════════════
#  SCHEDULES
# ══════════════════════════════════════════════

@admin_api_bp.route("/schedules")
@admin_token_required
def list_schedules():
    query = RecurringSchedule.query
    status = request.args.get("status")
    if status:
        query = query.filter(RecurringSchedule.status == status)
    account_id = request.args.get("account_id")
    if account_id:
        query = query.filter(RecurringSchedule.account_id == account_id)

    schedules = query.order_by(RecurringSchedule.next_billing_date).limit(_limit()).all()
    return jsonify({"schedules": [s.to_dict() for s in schedules]}), 200


@admin_api_bp.route("/schedules/<schedule_id>")
@admin_token_required
def schedule_detail(schedule_id):
    schedule = db.session.get(RecurringSchedule, schedule_id)
    if schedule is None:
        return jsonify({"error": "Schedule not found"}), 404

    recent = (
        schedule.transactions
        .order_by(None)
        .order_by(Transaction.created_at.desc())
        .limit(20)
        .all()
    )
    data = schedule.to_dict()
    data["transactions"] = [t.to_dict() for t in recent]
    return jsonify({"schedule": data}), 200


@admin_api_bp.route("/schedules/<schedule_id>/<action>", methods=["POST"])
@admin_token_required
def control_schedule(schedule_id, action):
    """Pause / resume / cancel. Cancelling never touches an in-flight charge."""
    scheduler = get_engine().scheduler
    try:
        if action == "pause":
            schedule = scheduler.pause(schedule_id)
        elif action == "resume":
            schedule = scheduler.resume(schedule_id)
        elif action == "cancel":
            body = request.get_json(silent=True) or {}
            schedule = scheduler.cancel(schedule_id, reason=body.get("reason"))
        else:
            return jsonify({"error": f"Unknown action: {action}"}), 404
    except UnknownReference:
        db.session.rollback()
        return jsonify({"error": "Schedule not found"}), 404
    except InvalidTransition as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 409

    db.session.commit()
    logger.info(f"Admin {action} on schedule {schedule_id}")
    return jsonify({"schedule": schedule.to_dict()}), 200


# ══════════════════════════════════════════════
#  WEBHOOK EVENTS
# ══════════════════════════════════════════════

@admin_api_bp.route("/webhook-events")
@admin_token_required
def list_webhook_events():
    query = WebhookEvent.query
    processed = request.args.get("processed")
    if processed is not None:
        query = query.filter(WebhookEvent.processed.is_(processed.lower() in ("1", "true", "yes")))
    outcome = request.args.get("outcome")
    if outcome:
        query = query.filter(WebhookEvent.outcome == outcome)
    event_type = request.args.get("event_type")
    if event_type:
        query = query.filter(WebhookEvent.event_type == event_type)

    events = query.order_by(WebhookEvent.received_at.desc()).limit(_limit()).all()
    return jsonify({"webhook_events": [e.to_dict() for e in events]}), 200


@admin_api_bp.route("/webhook-events/<event_id>/retry", methods=["POST"])
@admin_token_required
def retry_webhook_event(event_id):
    try:
        result = get_engine().dispatcher.retry_event(event_id)
    except UnknownReference:
        return jsonify({"error": "Webhook event not found"}), 404

    logger.info(f"Admin retry of webhook {event_id}: {result.outcome}")
    return jsonify({"outcome": result.outcome, "webhook_event": result.event.to_dict()}), 200


# ══════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════

@admin_api_bp.route("/health")
@admin_token_required
def health():
    since = request.args.get("since")
    try:
        since = parse_iso(since) if since else None
    except ValueError:
        return jsonify({"error": "Invalid 'since' timestamp"}), 400

    return jsonify({
        "recurring": reporting.recurring_health(db.session),
        "payments": reporting.payment_summary(db.session, since=since),
    }), 200
