"""Transaction ledger — every attempted charge and its outcome.

Responsible for:
- Creating pending transactions (requires an active customer token)
- Finalizing a transaction exactly once, whichever signal arrives first
  (synchronous gateway response or webhook)
- Attaching the gateway transaction id when it becomes known
- Bookkeeping for transient-error retries of the same charge

finalize() is the single write path for outcomes. It is a conditional
UPDATE ... WHERE status = 'pending', so two concurrent callers for the same
transaction cannot both apply an outcome: the loser gets applied=False
(AlreadyFinalized) and the row as the winner left it.

Functions flush but do NOT commit — the caller commits.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy import or_, select, update

from paybridge.errors import LedgerError, NoPaymentMethod, UnknownReference
from paybridge.models.customer_token import CustomerToken
from paybridge.models.transaction import Transaction
from paybridge.timeutil import utcnow

logger = logging.getLogger(__name__)

# Width of Transaction.response_code.
RESPONSE_CODE_MAX_LENGTH = 10


@dataclass
class FinalizeResult:
    transaction: Transaction
    applied: bool

    @property
    def already_finalized(self):
        return not self.applied


def generate_reference(now=None):
    """Invoice reference sent to the gateway, e.g. PB-20240103-1A2B3C4D."""
    now = now or utcnow()
    return f"PB-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"


def _fraud_fields(raw):
    """Pull the gateway's fraud metadata out of a response. Stored only."""
    raw = raw if isinstance(raw, dict) else {}
    action = raw.get("FraudAction") or raw.get("fraudAction")
    score = raw.get("BeagleScore", raw.get("fraudScore"))
    try:
        score = Decimal(str(score)) if score not in (None, "") else None
    except InvalidOperation:
        score = None
    return action, score


class TransactionLedger:
    def __init__(self, session, default_max_retries=3):
        self.session = session
        self.default_max_retries = default_max_retries

    # ──────────────────────────────────────────────
    # Creation
    # ──────────────────────────────────────────────

    def create_pending(self, account_id, token_id, amount, currency, type,
                       schedule_id=None, billing_period=None, max_retries=None):
        """Create a pending transaction.

        Raises NoPaymentMethod if token_id is not an active token of the account.
        """
        if type not in Transaction.TYPES:
            raise ValueError(f"Invalid transaction type: {type}")

        token = self.session.get(CustomerToken, token_id) if token_id else None
        if token is None or not token.is_active or token.account_id != account_id:
            raise NoPaymentMethod(account_id)

        period_start, period_end = billing_period or (None, None)
        txn = Transaction(
            account_id=account_id,
            schedule_id=schedule_id,
            customer_token_id=token.id,
            amount=Decimal(str(amount)),
            currency=currency.upper(),
            type=type,
            status="pending",
            reference=generate_reference(),
            retry_count=0,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            billing_period_start=period_start,
            billing_period_end=period_end,
        )
        self.session.add(txn)
        self.session.flush()

        logger.info(
            f"Created pending {type} transaction {txn.id} ({txn.reference}) "
            f"for account {account_id}: {txn.amount} {txn.currency}"
        )
        return txn

    # ──────────────────────────────────────────────
    # Finalization (compare-and-set on status)
    # ──────────────────────────────────────────────

    def finalize(self, transaction_id, outcome, gateway_txn_id=None,
                 response_code=None, response_message=None, raw_payload=None):
        """Move a pending transaction to approved / declined / failed, once.

        Returns FinalizeResult. applied=False means the transaction was already
        final and nothing was written (a successful no-op for the caller).

        Raises:
            ValueError: outcome is not a final status.
            UnknownReference: no such transaction.
            LedgerError: the transaction already carries a different gateway id.
        """
        if outcome not in Transaction.FINAL_STATUSES:
            raise ValueError(f"Invalid outcome: {outcome}")
        if response_code is not None:
            response_code = str(response_code)[:RESPONSE_CODE_MAX_LENGTH]

        fraud_action, fraud_score = _fraud_fields(raw_payload)
        values = {
            "status": outcome,
            "response_code": response_code,
            "response_message": response_message,
            "raw_response": raw_payload,
            "fraud_action": fraud_action,
            "fraud_score": fraud_score,
            "processed_at": utcnow(),
            "next_retry_at": None,
        }
        stmt = update(Transaction).where(
            Transaction.id == transaction_id,
            Transaction.status == "pending",
        )
        if gateway_txn_id:
            gateway_txn_id = str(gateway_txn_id)
            # Never overwrite a gateway id that is already set.
            stmt = stmt.where(or_(
                Transaction.gateway_transaction_id.is_(None),
                Transaction.gateway_transaction_id == gateway_txn_id,
            ))
            values["gateway_transaction_id"] = gateway_txn_id

        result = self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        txn = self._reload(transaction_id)
        if txn is None:
            raise UnknownReference(f"Unknown transaction {transaction_id}")

        if result.rowcount == 1:
            logger.info(
                f"Finalized transaction {txn.id} ({txn.reference}) as {outcome} "
                f"[{response_code}] gateway_id={txn.gateway_transaction_id}"
            )
            return FinalizeResult(transaction=txn, applied=True)

        if txn.status == "pending":
            raise LedgerError(
                f"Transaction {txn.id} already has gateway id "
                f"{txn.gateway_transaction_id}, refusing {gateway_txn_id}"
            )

        logger.info(f"Transaction {txn.id} already finalized as {txn.status}, ignoring {outcome}")
        return FinalizeResult(transaction=txn, applied=False)

    def attach_gateway_id(self, transaction_id, gateway_txn_id):
        """Record the gateway id of a still-pending charge. Only sets it once.

        Returns True if this call set it (or it was already this value).
        """
        gateway_txn_id = str(gateway_txn_id)
        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.gateway_transaction_id.is_(None),
            )
            .values(gateway_transaction_id=gateway_txn_id)
            .execution_options(synchronize_session=False)
        )
        txn = self._reload(transaction_id)
        return result.rowcount == 1 or (txn is not None and txn.gateway_transaction_id == gateway_txn_id)

    # ──────────────────────────────────────────────
    # Transient-error retries
    # ──────────────────────────────────────────────

    def schedule_retry(self, transaction_id, not_before):
        """Count one more retry and park the charge until not_before.

        Returns False (and changes nothing) once retry_count has reached
        max_retries or the transaction is no longer pending.
        """
        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status == "pending",
                Transaction.retry_count < Transaction.max_retries,
            )
            .values(
                retry_count=Transaction.retry_count + 1,
                next_retry_at=not_before,
            )
            .execution_options(synchronize_session=False)
        )
        self._reload(transaction_id)
        return result.rowcount == 1

    def claim_retry(self, transaction_id, now):
        """Exclusively take a parked retry. Only one caller gets True."""
        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status == "pending",
                Transaction.next_retry_at.isnot(None),
                Transaction.next_retry_at <= now,
            )
            .values(next_retry_at=None)
            .execution_options(synchronize_session=False)
        )
        self._reload(transaction_id)
        return result.rowcount == 1

    def stop_retries(self, transaction_id, message):
        """Stop re-attempting a charge whose outcome is still unknown.

        The transaction stays pending so a later webhook can still finalize
        it. Returns False if it is no longer pending.
        """
        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status == "pending",
            )
            .values(next_retry_at=None, response_message=message)
            .execution_options(synchronize_session=False)
        )
        self._reload(transaction_id)
        return result.rowcount == 1

    def due_retries(self, now, limit=100):
        return self.session.scalars(
            select(Transaction)
            .where(
                Transaction.status == "pending",
                Transaction.next_retry_at.isnot(None),
                Transaction.next_retry_at <= now,
            )
            .order_by(Transaction.next_retry_at)
            .limit(limit)
        ).all()

    # ──────────────────────────────────────────────
    # Lookups
    # ──────────────────────────────────────────────

    def get(self, transaction_id):
        txn = self.session.get(Transaction, transaction_id)
        if txn is None:
            raise UnknownReference(f"Unknown transaction {transaction_id}")
        return txn

    def find_by_gateway_id(self, gateway_txn_id):
        if not gateway_txn_id:
            return None
        return self.session.scalars(
            select(Transaction).where(Transaction.gateway_transaction_id == str(gateway_txn_id))
        ).first()

    def find_by_reference(self, reference):
        if not reference:
            return None
        return self.session.scalars(
            select(Transaction).where(Transaction.reference == reference)
        ).first()

    def resolve(self, gateway_txn_id=None, reference=None):
        """Find the transaction a gateway signal refers to.

        By gateway id first; falls back to our invoice reference for charges
        whose gateway id was not known yet when the signal was sent.
        """
        txn = self.find_by_gateway_id(gateway_txn_id)
        if txn is None and reference:
            candidate = self.find_by_reference(reference)
            if candidate is not None and (
                not gateway_txn_id
                or candidate.gateway_transaction_id in (None, str(gateway_txn_id))
            ):
                txn = candidate
        return txn

    def _reload(self, transaction_id):
        return self.session.get(Transaction, transaction_id, populate_existing=True)
