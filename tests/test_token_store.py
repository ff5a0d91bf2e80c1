"""Tests for the customer token store.

Covers:
- One active token per (account, purpose)
- Replacement deactivates, never deletes
- Masking of raw card details
- NoPaymentMethod when nothing is active
- Card metadata refresh by gateway token
"""

import pytest

from paybridge.errors import NoPaymentMethod, UnknownReference
from paybridge.models.customer_token import CustomerToken
from paybridge.services.token_store import CustomerTokenStore, mask_card_metadata


class TestMasking:
    """Only masked metadata is kept."""

    def test_full_card_number_reduced_to_last4(self):
        masked = mask_card_metadata({"CardNumber": "4444 3333 2222 1111", "CardType": "Visa"})
        assert masked["card_last4"] == "1111"
        assert masked["card_brand"] == "Visa"

    def test_gateway_masked_number(self):
        masked = mask_card_metadata({"card_number": "444433XXXXXX1111", "expiry_month": "07"})
        assert masked["card_last4"] == "1111"
        assert masked["card_expiry_month"] == 7

    def test_unknown_keys_dropped(self):
        masked = mask_card_metadata({"last4": "4242", "cvn": "123"})
        assert "cvn" not in masked
        assert masked["card_last4"] == "4242"


class TestStore:
    """Storing and replacing tokens."""

    def test_store_then_get_active(self, db_session):
        store = CustomerTokenStore(db_session)
        token = store.store("acct-1", "111122223333", {"last4": "4242", "brand": "Visa"})
        db_session.commit()

        active = store.get_active("acct-1")
        assert active.id == token.id
        assert active.masked == "Visa ****4242"

    def test_replacement_deactivates_previous(self, db_session):
        store = CustomerTokenStore(db_session)
        old = store.store("acct-1", "111122223333")
        new = store.store("acct-1", "444455556666")
        db_session.commit()

        assert store.get_active("acct-1").id == new.id
        assert db_session.get(CustomerToken, old.id).is_active is False
        active_count = CustomerToken.query.filter_by(account_id="acct-1", is_active=True).count()
        assert active_count == 1

    def test_restoring_same_token_reuses_row(self, db_session):
        store = CustomerTokenStore(db_session)
        first = store.store("acct-1", "111122223333")
        store.store("acct-1", "444455556666")
        again = store.store("acct-1", "111122223333")
        db_session.commit()

        assert again.id == first.id
        assert again.is_active is True
        assert CustomerToken.query.filter_by(account_id="acct-1").count() == 2

    def test_token_of_other_account_rejected(self, db_session):
        store = CustomerTokenStore(db_session)
        store.store("acct-1", "111122223333")
        with pytest.raises(ValueError):
            store.store("acct-2", "111122223333")

    def test_purposes_are_independent(self, db_session):
        store = CustomerTokenStore(db_session)
        billing = store.store("acct-1", "111122223333")
        other = store.store("acct-1", "444455556666", purpose="deposits")
        db_session.commit()

        assert store.get_active("acct-1").id == billing.id
        assert store.get_active("acct-1", "deposits").id == other.id


class TestLookup:
    """Active lookups and deactivation."""

    def test_no_token_raises_no_payment_method(self, db_session):
        store = CustomerTokenStore(db_session)
        with pytest.raises(NoPaymentMethod) as exc:
            store.get_active("acct-missing")
        assert exc.value.account_id == "acct-missing"

    def test_deactivated_token_is_not_active(self, db_session):
        store = CustomerTokenStore(db_session)
        token = store.store("acct-1", "111122223333")
        store.deactivate(token.id)
        db_session.commit()

        with pytest.raises(NoPaymentMethod):
            store.get_active("acct-1")
        assert db_session.get(CustomerToken, token.id) is not None

    def test_deactivate_unknown_token(self, db_session):
        with pytest.raises(UnknownReference):
            CustomerTokenStore(db_session).deactivate("nope")


class TestUpdateMasked:
    """Card metadata refresh (customer-updated webhooks)."""

    def test_updates_expiry_and_last4(self, db_session):
        store = CustomerTokenStore(db_session)
        store.store("acct-1", "111122223333", {"last4": "1111", "expiry_year": 2025})
        token = store.update_masked("111122223333", {"CardNumber": "444433XXXXXX9999", "CardExpiryYear": "2029"})
        db_session.commit()

        assert token.card_last4 == "9999"
        assert token.card_expiry_year == 2029

    def test_unknown_gateway_token(self, db_session):
        with pytest.raises(UnknownReference):
            CustomerTokenStore(db_session).update_masked("000000000000", {"last4": "1234"})
