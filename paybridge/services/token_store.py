"""Customer token store — tokenized payment methods.

Responsible for:
- Storing the gateway token returned after payment-method setup
- Keeping at most one active token per (account, purpose)
- Deactivating (never deleting) replaced or removed tokens
- Refreshing masked card metadata from customer-updated webhooks

Only masked metadata ever reaches the database or the logs. Anything that
looks like a full card number is reduced to its last four digits.

Functions flush but do NOT commit — the caller commits.
"""

import logging

from paybridge.errors import NoPaymentMethod, UnknownReference
from paybridge.models.customer_token import CustomerToken
from paybridge.timeutil import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PURPOSE = "billing"


def mask_card_metadata(meta):
    """Reduce raw card details to the masked fields we keep.

    Accepts our own keys (last4, brand, expiry_month, expiry_year) as well
    as the gateway's (CardNumber, CardType, CardExpiryMonth, CardExpiryYear).
    Unknown keys are dropped.
    """
    meta = meta or {}
    last4 = meta.get("last4")
    card_number = meta.get("card_number") or meta.get("CardNumber")
    if not last4 and card_number:
        digits = "".join(ch for ch in str(card_number) if ch.isdigit())
        last4 = digits[-4:] or None

    masked = {
        "card_last4": str(last4)[-4:] if last4 else None,
        "card_brand": meta.get("brand") or meta.get("CardType"),
        "card_expiry_month": _to_int(meta.get("expiry_month") or meta.get("CardExpiryMonth")),
        "card_expiry_year": _to_int(meta.get("expiry_year") or meta.get("CardExpiryYear")),
    }
    return masked


def _to_int(value):
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class CustomerTokenStore:
    """Persists CustomerToken rows through an explicit SQLAlchemy session."""

    def __init__(self, session):
        self.session = session

    def store(self, account_id, gateway_token, masked_meta=None, purpose=DEFAULT_PURPOSE):
        """Store a new active token for the account, deactivating the previous one.

        Re-storing a gateway token we already hold reactivates that row
        instead of creating a duplicate.
        """
        fields = mask_card_metadata(masked_meta)

        for previous in self._active_query(account_id, purpose).all():
            if previous.gateway_token != gateway_token:
                previous.is_active = False
                logger.info(f"Deactivated customer token {previous.id} for account {account_id} (replaced)")

        token = (
            self.session.query(CustomerToken)
            .filter_by(gateway_token=gateway_token)
            .first()
        )
        if token and token.account_id != account_id:
            raise ValueError("Gateway token already belongs to another account")

        if token:
            token.is_active = True
            token.purpose = purpose
        else:
            token = CustomerToken(
                account_id=account_id,
                gateway_token=gateway_token,
                purpose=purpose,
                is_active=True,
            )
            self.session.add(token)

        for key, value in fields.items():
            if value is not None:
                setattr(token, key, value)

        self.session.flush()
        logger.info(f"Stored customer token {token.id} ({token.masked}) for account {account_id}")
        return token

    def get_active(self, account_id, purpose=DEFAULT_PURPOSE):
        """Return the active token for the account or raise NoPaymentMethod."""
        token = (
            self._active_query(account_id, purpose)
            .order_by(CustomerToken.created_at.desc())
            .first()
        )
        if token is None:
            raise NoPaymentMethod(account_id)
        return token

    def get(self, token_id):
        return self.session.get(CustomerToken, token_id)

    def deactivate(self, token_id):
        """Deactivate a token. The row is kept for audit."""
        token = self.session.get(CustomerToken, token_id)
        if token is None:
            raise UnknownReference(f"Unknown customer token {token_id}")
        if token.is_active:
            token.is_active = False
            self.session.flush()
            logger.info(f"Deactivated customer token {token.id} for account {token.account_id}")
        return token

    def update_masked(self, gateway_token, masked_meta):
        """Refresh masked card metadata for a gateway token (customer-updated webhook)."""
        token = (
            self.session.query(CustomerToken)
            .filter_by(gateway_token=gateway_token)
            .first()
        )
        if token is None:
            raise UnknownReference("Unknown gateway customer token")

        for key, value in mask_card_metadata(masked_meta).items():
            if value is not None:
                setattr(token, key, value)
        self.session.flush()
        logger.info(f"Updated card metadata for customer token {token.id} ({token.masked})")
        return token

    def touch(self, token_id, when=None):
        """Record that a token was just used for an approved charge."""
        token = self.session.get(CustomerToken, token_id)
        if token is not None:
            token.last_used_at = when or utcnow()
            self.session.flush()

    def _active_query(self, account_id, purpose):
        return self.session.query(CustomerToken).filter_by(
            account_id=account_id, purpose=purpose, is_active=True
        )
