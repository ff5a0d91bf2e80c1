"""Read-only billing health summaries.

recurring_health: schedule counts and amounts per (cadence, status).
payment_summary: transaction counts, totals and success rate per (type, status).

Used by `flask billing-health` and GET /admin/api/health.
"""

from decimal import Decimal

from sqlalchemy import case, func, select

from paybridge.models.schedule import RecurringSchedule
from paybridge.models.transaction import Transaction
from paybridge.timeutil import as_utc, utcnow


def _money(value):
    return str(Decimal(str(value or 0)).quantize(Decimal("0.01")))


def recurring_health(session, now=None):
    """Per (cadence, status): schedule count, amount total, average failed
    attempts, and how many are due for billing at `now`."""
    now = as_utc(now) or utcnow()
    due = case(
        (
            (RecurringSchedule.status == "active")
            & (RecurringSchedule.next_billing_date <= now),
            1,
        ),
        else_=0,
    )
    rows = session.execute(
        select(
            RecurringSchedule.cadence,
            RecurringSchedule.status,
            func.count(RecurringSchedule.id),
            func.sum(RecurringSchedule.amount),
            func.avg(RecurringSchedule.failed_attempts),
            func.sum(due),
        )
        .group_by(RecurringSchedule.cadence, RecurringSchedule.status)
        .order_by(RecurringSchedule.cadence, RecurringSchedule.status)
    ).all()

    return [
        {
            "cadence": cadence,
            "status": status,
            "count": count,
            "total_amount": _money(total),
            "avg_failed_attempts": round(float(avg_failed or 0), 2),
            "due_for_billing": int(due_count or 0),
        }
        for cadence, status, count, total, avg_failed, due_count in rows
    ]


def payment_summary(session, since=None):
    """Per (type, status) transaction counts and totals, plus a success rate
    per type (approved / finalized, pending excluded)."""
    stmt = select(
        Transaction.type,
        Transaction.status,
        func.count(Transaction.id),
        func.sum(Transaction.amount),
    ).group_by(Transaction.type, Transaction.status)
    if since is not None:
        stmt = stmt.where(Transaction.created_at >= as_utc(since))

    by_type = {}
    for txn_type, status, count, total in session.execute(stmt).all():
        entry = by_type.setdefault(txn_type, {"type": txn_type, "statuses": {}})
        entry["statuses"][status] = {"count": count, "total_amount": _money(total)}

    summary = []
    for txn_type in sorted(by_type):
        entry = by_type[txn_type]
        statuses = entry["statuses"]
        approved = statuses.get("approved", {}).get("count", 0)
        finalized = sum(
            v["count"] for s, v in statuses.items() if s in Transaction.FINAL_STATUSES
        )
        entry["success_rate"] = round(approved / finalized, 4) if finalized else None
        summary.append(entry)
    return summary
