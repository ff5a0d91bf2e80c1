"""Transaction model — the billing ledger.

One row per attempted charge (one-off purchase or one occurrence of a
recurring schedule). This table is the source of truth for "did we charge
this, and what happened".

Status only ever moves pending -> approved | declined | failed, and only
through TransactionLedger.finalize() (conditional UPDATE on status).
"""

import uuid

from paybridge.extensions import db


class Transaction(db.Model):
    __tablename__ = "billing_transactions"

    # -- Valid types --
    TYPES = ["purchase", "recurring", "refund"]

    # -- Valid statuses --
    STATUSES = ["pending", "approved", "declined", "failed"]
    FINAL_STATUSES = ["approved", "declined", "failed"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    account_id = db.Column(db.String(36), nullable=False, index=True)
    schedule_id = db.Column(
        db.String(36), db.ForeignKey("recurring_schedules.id"), nullable=True, index=True
    )
    customer_token_id = db.Column(
        db.String(36), db.ForeignKey("customer_tokens.id"), nullable=False
    )
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="AUD")
    type = db.Column(
        db.String(20), nullable=False
    )  # purchase | recurring | refund
    status = db.Column(
        db.String(20), nullable=False, default="pending", index=True
    )  # pending | approved | declined | failed

    # --- Gateway references ---
    gateway_transaction_id = db.Column(
        db.String(64), unique=True, nullable=True
    )  # set once, never changed
    reference = db.Column(
        db.String(64), unique=True, nullable=False
    )  # invoice reference sent with the charge, e.g. "PB-20240101-1A2B3C4D"
    response_code = db.Column(db.String(10), nullable=True)
    response_message = db.Column(db.Text, nullable=True)

    # --- Opaque fraud metadata (stored, never acted on) ---
    fraud_action = db.Column(db.String(50), nullable=True)
    fraud_score = db.Column(db.Numeric(5, 2), nullable=True)

    # --- Billing period (recurring only) ---
    billing_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    billing_period_end = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Transient-error retries of this same charge ---
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=3)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    raw_response = db.Column(db.JSON, nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
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
    schedule = db.relationship("RecurringSchedule", back_populates="transactions")

    __table_args__ = (
        db.CheckConstraint("retry_count <= max_retries", name="ck_transactions_retry_count"),
    )

    @property
    def is_final(self):
        return self.status in self.FINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "schedule_id": self.schedule_id,
            "customer_token_id": self.customer_token_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "type": self.type,
            "status": self.status,
            "gateway_transaction_id": self.gateway_transaction_id,
            "reference": self.reference,
            "response_code": self.response_code,
            "response_message": self.response_message,
            "fraud_action": self.fraud_action,
            "fraud_score": str(self.fraud_score) if self.fraud_score is not None else None,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_retry_at": _iso(self.next_retry_at),
            "billing_period_start": _iso(self.billing_period_start),
            "billing_period_end": _iso(self.billing_period_end),
            "processed_at": _iso(self.processed_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Transaction {self.reference} {self.type} ({self.status})>"


def _iso(value):
    return value.isoformat() if value else None
