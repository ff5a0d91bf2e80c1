"""Recurring schedule model.

A standing instruction to charge a fixed amount at a fixed cadence.

- cycle_date is the anchor of the cycle currently being billed. It only
  moves forward (by exactly one cadence unit) after an approved charge.
- next_billing_date is when the scheduler should next pick the schedule up.
  Normally equal to cycle_date; after a decline it is pushed out to the
  retry time while cycle_date stays put.
- claimed_until / claim_token is the exclusive claim taken by a scheduler
  run before it creates a transaction for the cycle.
- in_flight_transaction_id points at the pending transaction of the current
  cycle. While set, the schedule is never selected again.
"""

import uuid

from paybridge.extensions import db


class RecurringSchedule(db.Model):
    __tablename__ = "recurring_schedules"

    # -- Valid cadences --
    CADENCES = ["weekly", "monthly", "quarterly", "yearly"]

    # -- Valid statuses --
    STATUSES = ["active", "paused", "cancelled", "failed"]
    TERMINAL_STATUSES = ["cancelled", "failed"]

    # -- Allowed control transitions (enforced in RecurringScheduler) --
    VALID_TRANSITIONS = {
        "active": ["paused", "cancelled"],
        "paused": ["active", "cancelled"],
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    account_id = db.Column(db.String(36), nullable=False, index=True)
    customer_token_id = db.Column(
        db.String(36), db.ForeignKey("customer_tokens.id"), nullable=False
    )
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="AUD")
    cadence = db.Column(
        db.String(20), nullable=False
    )  # weekly | monthly | quarterly | yearly

    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    cycle_date = db.Column(db.DateTime(timezone=True), nullable=False)
    next_billing_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default="active"
    )  # active | paused | cancelled | failed
    failed_attempts = db.Column(db.Integer, nullable=False, default=0)
    max_failed_attempts = db.Column(db.Integer, nullable=False, default=3)
    failure_reason = db.Column(db.Text, nullable=True)

    # --- Exclusive claim ---
    claimed_until = db.Column(db.DateTime(timezone=True), nullable=True)
    claim_token = db.Column(db.String(36), nullable=True)
    in_flight_transaction_id = db.Column(db.String(36), nullable=True)

    last_processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_transaction_id = db.Column(db.String(36), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    customer_token = db.relationship("CustomerToken")
    transactions = db.relationship(
        "Transaction",
        back_populates="schedule",
        order_by="Transaction.created_at",
        lazy="dynamic",
    )

    __table_args__ = (
        db.Index("ix_recurring_schedules_due", "status", "next_billing_date"),
    )

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "customer_token_id": self.customer_token_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "cadence": self.cadence,
            "start_date": _iso(self.start_date),
            "cycle_date": _iso(self.cycle_date),
            "next_billing_date": _iso(self.next_billing_date),
            "end_date": _iso(self.end_date),
            "status": self.status,
            "failed_attempts": self.failed_attempts,
            "max_failed_attempts": self.max_failed_attempts,
            "failure_reason": self.failure_reason,
            "in_flight_transaction_id": self.in_flight_transaction_id,
            "last_processed_at": _iso(self.last_processed_at),
            "last_transaction_id": self.last_transaction_id,
            "cancelled_at": _iso(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
        }

    def __repr__(self):
        return f"<RecurringSchedule {self.cadence} {self.amount} {self.currency} ({self.status})>"


def _iso(value):
    return value.isoformat() if value else None
