"""Webhook event model.

Every inbound gateway notification is stored as its own row (one per
delivery attempt), before any processing happens. Deduplication is on
(gateway_transaction_id, event_type): once one delivery of a pair has
outcome "applied", later deliveries are marked "duplicate" and do nothing.
"""

import uuid

from paybridge.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    # -- Processing outcomes --
    OUTCOMES = ["applied", "duplicate", "unknown_reference", "unsupported", "error"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_type = db.Column(
        db.String(100), nullable=False
    )  # e.g. "Payment.Successful"
    gateway_transaction_id = db.Column(db.String(64), nullable=True)
    customer_token = db.Column(db.String(64), nullable=True)
    reference = db.Column(db.String(64), nullable=True)

    raw_payload = db.Column(db.Text, nullable=True)
    event_data = db.Column(db.JSON, nullable=True)
    source_ip = db.Column(db.String(45), nullable=True)
    headers = db.Column(db.JSON, nullable=True)

    processed = db.Column(db.Boolean, nullable=False, default=False)
    outcome = db.Column(db.String(30), nullable=True)
    processing_attempts = db.Column(db.Integer, nullable=False, default=0)
    processing_error = db.Column(db.Text, nullable=True)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)

    received_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.Index("ix_webhook_events_dedup", "gateway_transaction_id", "event_type", "outcome"),
        db.Index("ix_webhook_events_pending", "processed", "next_attempt_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "event_type": self.event_type,
            "gateway_transaction_id": self.gateway_transaction_id,
            "customer_token": self.customer_token,
            "reference": self.reference,
            "source_ip": self.source_ip,
            "processed": self.processed,
            "outcome": self.outcome,
            "processing_attempts": self.processing_attempts,
            "processing_error": self.processing_error,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self):
        return f"<WebhookEvent {self.event_type} txn={self.gateway_transaction_id} ({self.outcome})>"
