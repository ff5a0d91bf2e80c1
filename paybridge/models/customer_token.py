"""Customer token model.

A gateway-issued token standing in for a stored payment method. Only masked
card metadata (last four digits, brand, expiry) is kept locally.

Tokens are deactivated, never deleted: old transactions and schedules keep
pointing at the token they were charged against.
"""

import uuid

from paybridge.extensions import db


class CustomerToken(db.Model):
    __tablename__ = "customer_tokens"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    account_id = db.Column(db.String(36), nullable=False, index=True)
    purpose = db.Column(
        db.String(50), nullable=False, default="billing"
    )  # which charges this payment method is used for
    gateway_token = db.Column(
        db.String(64), unique=True, nullable=False
    )  # e.g. eWAY TokenCustomerID (16 digits)
    card_last4 = db.Column(db.String(4), nullable=True)
    card_brand = db.Column(db.String(50), nullable=True)  # Visa, MasterCard, ...
    card_expiry_month = db.Column(db.Integer, nullable=True)
    card_expiry_year = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.Index("ix_customer_tokens_account_active", "account_id", "purpose", "is_active"),
    )

    @property
    def masked(self):
        """Display string safe for logs and admin views."""
        brand = self.card_brand or "card"
        return f"{brand} ****{self.card_last4 or '????'}"

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "purpose": self.purpose,
            "card_last4": self.card_last4,
            "card_brand": self.card_brand,
            "card_expiry_month": self.card_expiry_month,
            "card_expiry_year": self.card_expiry_year,
            "is_active": self.is_active,
            "last_used_at": _iso(self.last_used_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<CustomerToken {self.masked} ({'active' if self.is_active else 'inactive'})>"


def _iso(value):
    return value.isoformat() if value else None
