"""Tests for the transaction ledger.

Covers:
- create_pending requires an active token of the account
- finalize applies exactly once (idempotent for repeats)
- gateway id is set once and never overwritten
- transient retry bookkeeping (schedule / claim / exhaustion)
- resolving gateway signals by id or invoice reference
"""

from datetime import datetime, timedelta, timezone

import pytest

from paybridge.errors import LedgerError, NoPaymentMethod, UnknownReference
from paybridge.models.transaction import Transaction
from paybridge.services.ledger import TransactionLedger
from paybridge.services.token_store import CustomerTokenStore

NOW = datetime(2024, 1, 3, tzinfo=timezone.utc)


def _make_pending(db_session, account_id="acct-1", gateway_token="111122223333", max_retries=None):
    token = CustomerTokenStore(db_session).store(account_id, gateway_token)
    ledger = TransactionLedger(db_session)
    txn = ledger.create_pending(account_id, token.id, "29.99", "aud", "purchase", max_retries=max_retries)
    db_session.commit()
    return ledger, txn


class TestCreatePending:
    """Pending transaction creation."""

    def test_creates_pending_with_reference(self, db_session):
        ledger, txn = _make_pending(db_session)
        assert txn.status == "pending"
        assert txn.currency == "AUD"
        assert txn.reference.startswith("PB-")
        assert txn.gateway_transaction_id is None
        assert str(txn.amount) == "29.99"

    def test_inactive_token_rejected(self, db_session):
        store = CustomerTokenStore(db_session)
        token = store.store("acct-1", "111122223333")
        store.deactivate(token.id)
        with pytest.raises(NoPaymentMethod):
            TransactionLedger(db_session).create_pending("acct-1", token.id, "10.00", "AUD", "purchase")

    def test_token_of_other_account_rejected(self, db_session):
        token = CustomerTokenStore(db_session).store("acct-1", "111122223333")
        with pytest.raises(NoPaymentMethod):
            TransactionLedger(db_session).create_pending("acct-2", token.id, "10.00", "AUD", "purchase")

    def test_invalid_type_rejected(self, db_session):
        token = CustomerTokenStore(db_session).store("acct-1", "111122223333")
        with pytest.raises(ValueError):
            TransactionLedger(db_session).create_pending("acct-1", token.id, "10.00", "AUD", "gift")


class TestFinalize:
    """Exactly-once outcome application."""

    def test_finalize_applies(self, db_session):
        ledger, txn = _make_pending(db_session)
        result = ledger.finalize(txn.id, "approved", gateway_txn_id="9001", response_code="00")
        db_session.commit()

        assert result.applied is True
        assert result.transaction.status == "approved"
        assert result.transaction.gateway_transaction_id == "9001"
        assert result.transaction.processed_at is not None

    def test_second_finalize_is_noop(self, db_session):
        ledger, txn = _make_pending(db_session)
        ledger.finalize(txn.id, "approved", gateway_txn_id="9001", response_code="00")
        db_session.commit()

        again = ledger.finalize(txn.id, "declined", gateway_txn_id="9001", response_code="05")
        db_session.commit()

        assert again.applied is False
        assert again.already_finalized is True
        assert db_session.get(Transaction, txn.id).status == "approved"
        assert db_session.get(Transaction, txn.id).response_code == "00"

    def test_conflicting_gateway_id_refused(self, db_session):
        ledger, txn = _make_pending(db_session)
        ledger.attach_gateway_id(txn.id, "9001")
        db_session.commit()

        with pytest.raises(LedgerError):
            ledger.finalize(txn.id, "approved", gateway_txn_id="9002")

    def test_invalid_outcome(self, db_session):
        ledger, txn = _make_pending(db_session)
        with pytest.raises(ValueError):
            ledger.finalize(txn.id, "pending")

    def test_unknown_transaction(self, db_session):
        with pytest.raises(UnknownReference):
            TransactionLedger(db_session).finalize("missing", "approved")

    def test_long_response_code_truncated(self, db_session):
        ledger, txn = _make_pending(db_session)
        result = ledger.finalize(txn.id, "declined", response_code="D4405-EXTENDED")
        db_session.commit()

        assert result.transaction.response_code == "D4405-EXTE"

    def test_fraud_metadata_stored(self, db_session):
        ledger, txn = _make_pending(db_session)
        result = ledger.finalize(
            txn.id, "approved", gateway_txn_id="9001",
            raw_payload={"FraudAction": "NotChallenged", "BeagleScore": 12.5},
        )
        db_session.commit()

        assert result.transaction.fraud_action == "NotChallenged"
        assert float(result.transaction.fraud_score) == 12.5


class TestGatewayId:
    """Gateway id attachment."""

    def test_attach_once(self, db_session):
        ledger, txn = _make_pending(db_session)
        assert ledger.attach_gateway_id(txn.id, "9001") is True
        assert ledger.attach_gateway_id(txn.id, "9001") is True
        assert ledger.attach_gateway_id(txn.id, "9002") is False
        db_session.commit()
        assert db_session.get(Transaction, txn.id).gateway_transaction_id == "9001"


class TestRetryBookkeeping:
    """Transient retries of the same charge."""

    def test_schedule_and_claim_retry(self, db_session):
        ledger, txn = _make_pending(db_session, max_retries=2)
        assert ledger.schedule_retry(txn.id, NOW + timedelta(minutes=5)) is True
        db_session.commit()

        assert ledger.due_retries(NOW) == []
        due = ledger.due_retries(NOW + timedelta(minutes=5))
        assert [t.id for t in due] == [txn.id]

        assert ledger.claim_retry(txn.id, NOW + timedelta(minutes=5)) is True
        assert ledger.claim_retry(txn.id, NOW + timedelta(minutes=5)) is False
        assert db_session.get(Transaction, txn.id).retry_count == 1

    def test_retry_count_never_exceeds_max(self, db_session):
        ledger, txn = _make_pending(db_session, max_retries=1)
        assert ledger.schedule_retry(txn.id, NOW) is True
        assert ledger.schedule_retry(txn.id, NOW) is False
        db_session.commit()
        assert db_session.get(Transaction, txn.id).retry_count == 1

    def test_stop_retries_keeps_charge_pending(self, db_session):
        ledger, txn = _make_pending(db_session, max_retries=1)
        ledger.schedule_retry(txn.id, NOW)
        assert ledger.stop_retries(txn.id, "Gateway unavailable after 2 attempts") is True
        db_session.commit()

        stored = db_session.get(Transaction, txn.id)
        assert stored.status == "pending"
        assert stored.next_retry_at is None
        assert stored.response_message == "Gateway unavailable after 2 attempts"
        assert ledger.due_retries(NOW + timedelta(days=1)) == []

    def test_final_transaction_not_retried(self, db_session):
        ledger, txn = _make_pending(db_session)
        ledger.finalize(txn.id, "declined")
        assert ledger.schedule_retry(txn.id, NOW) is False


class TestResolve:
    """Finding the transaction a gateway signal refers to."""

    def test_by_gateway_id(self, db_session):
        ledger, txn = _make_pending(db_session)
        ledger.attach_gateway_id(txn.id, "9001")
        db_session.commit()
        assert ledger.resolve("9001").id == txn.id

    def test_falls_back_to_reference(self, db_session):
        ledger, txn = _make_pending(db_session)
        assert ledger.resolve("9001", txn.reference).id == txn.id

    def test_reference_with_other_gateway_id_not_matched(self, db_session):
        ledger, txn = _make_pending(db_session)
        ledger.attach_gateway_id(txn.id, "9001")
        db_session.commit()
        assert ledger.resolve("9999", txn.reference) is None

    def test_unknown(self, db_session):
        assert TransactionLedger(db_session).resolve("404", "PB-NOPE") is None
