"""Recurring schedule scheduler.

Responsible for:
- Finding schedules due for billing and claiming them exclusively
- Creating the cycle's pending transaction and charging the gateway
- Applying the outcome to the schedule (advance / retry later / fail)
- Re-attempting charges parked after a transient gateway error
- Schedule control: create, pause, resume, cancel

Per-schedule state machine:
    active -> active     approved cycle (cycle_date advances one cadence unit)
    active -> active     declined, retry at backoff time
    active -> failed     failed_attempts reached max_failed_attempts
    active <-> paused    explicit control
    active/paused -> cancelled

Exclusivity: a schedule is only charged after a conditional UPDATE sets its
claim (claimed_until/claim_token) and that claim is committed. Once the
cycle's transaction exists, in_flight_transaction_id keeps the schedule out
of selection until the transaction is final, however long a webhook takes.

apply_outcome() is the one schedule transition. The webhook dispatcher calls
it too, and only ever for a finalize() that actually applied, so a duplicate
signal can never advance a schedule twice.

Designed to be called from a Flask CLI command (`flask run-billing`) on a
cron schedule, or from the `flask billing-worker` loop.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from sqlalchemy import or_, select, update

from paybridge.errors import (
    GatewayTransientError,
    InvalidTransition,
    NoPaymentMethod,
    UnknownReference,
)
from paybridge.models.schedule import RecurringSchedule
from paybridge.services.retry_policy import next_attempt
from paybridge.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

CADENCE_MONTHS = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}


def add_cadence(when, cadence, anchor_day=None):
    """Advance `when` by one cadence unit.

    Month-based cadences keep the schedule's anchor day where the month has
    it (Jan 31 -> Feb 29 -> Mar 31), so month-end clamping never drifts.
    """
    if cadence == "weekly":
        return when + timedelta(weeks=1)
    if cadence not in CADENCE_MONTHS:
        raise ValueError(f"Invalid cadence: {cadence}")
    if anchor_day:
        return when + relativedelta(months=CADENCE_MONTHS[cadence], day=anchor_day)
    return when + relativedelta(months=CADENCE_MONTHS[cadence])


@dataclass
class CycleReport:
    """What one run_due_cycle() did. Returned, logged, echoed by the CLI."""

    now: datetime
    claimed: int = 0
    skipped: int = 0
    approved: int = 0
    declined: int = 0
    failed: int = 0
    pending: int = 0
    retries_scheduled: int = 0
    retried: int = 0
    unconfirmed: int = 0
    no_payment_method: int = 0
    schedules_failed: int = 0
    transaction_ids: list = field(default_factory=list)
    errors: list = field(default_factory=list)


class RecurringScheduler:
    def __init__(self, session, ledger, token_store, gateway,
                 schedule_policy, charge_policy,
                 claim_ttl=timedelta(minutes=15), batch_size=100):
        self.session = session
        self.ledger = ledger
        self.token_store = token_store
        self.gateway = gateway
        self.schedule_policy = schedule_policy
        self.charge_policy = charge_policy
        self.claim_ttl = claim_ttl
        self.batch_size = batch_size

    # ──────────────────────────────────────────────
    # Schedule control
    # ──────────────────────────────────────────────

    def create_schedule(self, account_id, amount, currency, cadence, start_date,
                        end_date=None, max_failed_attempts=3):
        """Create an active schedule billed against the account's active token.

        The first charge is due on start_date. Raises NoPaymentMethod if the
        account has no active token.
        """
        if cadence not in RecurringSchedule.CADENCES:
            raise ValueError(f"Invalid cadence: {cadence}")
        if max_failed_attempts < 1:
            raise ValueError("max_failed_attempts must be >= 1")

        token = self.token_store.get_active(account_id)
        start_date = as_utc(start_date)
        end_date = as_utc(end_date)
        if end_date is not None and end_date < start_date:
            raise ValueError("end_date is before start_date")

        schedule = RecurringSchedule(
            account_id=account_id,
            customer_token_id=token.id,
            amount=Decimal(str(amount)),
            currency=currency.upper(),
            cadence=cadence,
            start_date=start_date,
            cycle_date=start_date,
            next_billing_date=start_date,
            end_date=end_date,
            status="active",
            failed_attempts=0,
            max_failed_attempts=max_failed_attempts,
        )
        self.session.add(schedule)
        self.session.flush()
        logger.info(
            f"Created {cadence} schedule {schedule.id} for account {account_id}: "
            f"{schedule.amount} {schedule.currency} from {start_date.date()}"
        )
        return schedule

    def pause(self, schedule_id):
        return self._transition(schedule_id, "paused")

    def resume(self, schedule_id):
        return self._transition(schedule_id, "active")

    def cancel(self, schedule_id, reason=None, now=None):
        """Cancel future cycles. A transaction already in flight still completes."""
        return self._transition(
            schedule_id,
            "cancelled",
            cancelled_at=as_utc(now) or utcnow(),
            cancellation_reason=reason,
        )

    def _transition(self, schedule_id, new_status, **extra):
        allowed_from = [
            status for status, targets in RecurringSchedule.VALID_TRANSITIONS.items()
            if new_status in targets
        ]
        result = self.session.execute(
            update(RecurringSchedule)
            .where(
                RecurringSchedule.id == schedule_id,
                RecurringSchedule.status.in_(allowed_from),
            )
            .values(status=new_status, **extra)
            .execution_options(synchronize_session=False)
        )
        schedule = self._reload(schedule_id)
        if schedule is None:
            raise UnknownReference(f"Unknown schedule {schedule_id}")
        if result.rowcount != 1:
            raise InvalidTransition(f"Cannot move schedule from {schedule.status} to {new_status}")
        logger.info(f"Schedule {schedule_id} -> {new_status}")
        return schedule

    # ──────────────────────────────────────────────
    # Due cycle
    # ──────────────────────────────────────────────

    def run_due_cycle(self, now=None):
        """Charge every schedule due at `now` and re-attempt parked charges.

        Never raises for a single schedule's failure: errors are logged,
        rolled back and collected in the report.
        """
        now = as_utc(now) or utcnow()
        report = CycleReport(now=now)

        self._run_parked_retries(now, report)

        for schedule_id in self._due_schedule_ids(now):
            claim_token = str(uuid.uuid4())
            if not self._claim(schedule_id, now, claim_token):
                report.skipped += 1
                continue
            self.session.commit()

            try:
                self._process_schedule(schedule_id, claim_token, now, report)
            except Exception as e:
                self.session.rollback()
                logger.error(f"Error processing schedule {schedule_id}: {e}", exc_info=True)
                report.errors.append({"schedule_id": schedule_id, "error": str(e)})
                self._release_claim(schedule_id, claim_token)
                self.session.commit()

        logger.info(
            f"Billing cycle at {now.isoformat()}: claimed={report.claimed} "
            f"approved={report.approved} declined={report.declined} failed={report.failed} "
            f"pending={report.pending} retried={report.retried} "
            f"unconfirmed={report.unconfirmed} errors={len(report.errors)}"
        )
        return report

    def _due_schedule_ids(self, now):
        return self.session.scalars(
            select(RecurringSchedule.id)
            .where(
                RecurringSchedule.status == "active",
                RecurringSchedule.next_billing_date <= now,
                RecurringSchedule.in_flight_transaction_id.is_(None),
                or_(
                    RecurringSchedule.claimed_until.is_(None),
                    RecurringSchedule.claimed_until <= now,
                ),
            )
            .order_by(RecurringSchedule.next_billing_date)
            .limit(self.batch_size)
        ).all()

    def _claim(self, schedule_id, now, claim_token):
        """Compare-and-set claim. Exactly one concurrent caller gets True."""
        result = self.session.execute(
            update(RecurringSchedule)
            .where(
                RecurringSchedule.id == schedule_id,
                RecurringSchedule.status == "active",
                RecurringSchedule.next_billing_date <= now,
                RecurringSchedule.in_flight_transaction_id.is_(None),
                or_(
                    RecurringSchedule.claimed_until.is_(None),
                    RecurringSchedule.claimed_until <= now,
                ),
            )
            .values(claimed_until=now + self.claim_ttl, claim_token=claim_token)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _release_claim(self, schedule_id, claim_token):
        self.session.execute(
            update(RecurringSchedule)
            .where(
                RecurringSchedule.id == schedule_id,
                RecurringSchedule.claim_token == claim_token,
            )
            .values(claimed_until=None, claim_token=None)
            .execution_options(synchronize_session=False)
        )

    def _process_schedule(self, schedule_id, claim_token, now, report):
        schedule = self._reload(schedule_id)
        report.claimed += 1

        try:
            token = self.token_store.get_active(schedule.account_id)
        except NoPaymentMethod as e:
            logger.warning(f"Schedule {schedule.id}: {e}")
            report.no_payment_method += 1
            self._record_failure(schedule, now, reason=str(e))
            if schedule.status == "failed":
                report.schedules_failed += 1
            schedule.last_processed_at = now
            self._release_claim(schedule.id, claim_token)
            self.session.commit()
            return

        if token.id != schedule.customer_token_id:
            # Payment method was replaced since the schedule was created.
            schedule.customer_token_id = token.id

        period_start = as_utc(schedule.cycle_date)
        period_end = self._next_cycle_date(schedule) - timedelta(days=1)
        txn = self.ledger.create_pending(
            account_id=schedule.account_id,
            token_id=token.id,
            amount=schedule.amount,
            currency=schedule.currency,
            type="recurring",
            schedule_id=schedule.id,
            billing_period=(period_start, period_end),
            max_retries=self.charge_policy.max_attempts - 1,
        )
        schedule.in_flight_transaction_id = txn.id
        schedule.last_transaction_id = txn.id
        schedule.last_processed_at = now
        schedule.claimed_until = None
        schedule.claim_token = None
        self.session.commit()
        report.transaction_ids.append(txn.id)

        self._attempt_charge(txn, now, report)

    # ──────────────────────────────────────────────
    # Charging
    # ──────────────────────────────────────────────

    def charge_now(self, account_id, amount, currency, type="purchase", now=None):
        """Ad-hoc one-off charge against the account's active token.

        Returns the Transaction (possibly still pending). Raises
        NoPaymentMethod if the account has nothing to charge.
        """
        now = as_utc(now) or utcnow()
        token = self.token_store.get_active(account_id)
        txn = self.ledger.create_pending(
            account_id=account_id,
            token_id=token.id,
            amount=amount,
            currency=currency,
            type=type,
            max_retries=self.charge_policy.max_attempts - 1,
        )
        self.session.commit()
        report = CycleReport(now=now)
        self._attempt_charge(txn, now, report)
        return self.ledger.get(txn.id)

    def _run_parked_retries(self, now, report):
        for txn in self.ledger.due_retries(now, limit=self.batch_size):
            if not self.ledger.claim_retry(txn.id, now):
                continue
            self.session.commit()
            report.retried += 1
            try:
                self._attempt_charge(txn, now, report)
            except Exception as e:
                self.session.rollback()
                logger.error(f"Error retrying transaction {txn.id}: {e}", exc_info=True)
                report.errors.append({"transaction_id": txn.id, "error": str(e)})

    def _attempt_charge(self, txn, now, report):
        token = self.token_store.get(txn.customer_token_id)
        gateway_type = "Recurring" if txn.type == "recurring" else "Purchase"
        try:
            result = self.gateway.charge(
                token.gateway_token, txn.amount, txn.currency, txn.reference,
                transaction_type=gateway_type,
            )
        except GatewayTransientError as e:
            self._handle_transient(txn, now, str(e), report)
            return
        except Exception as e:
            # Unclassified client failure: we can't tell whether the charge
            # went through, so it is handled like a timeout.
            logger.error(f"Gateway client error for transaction {txn.id}: {e}", exc_info=True)
            self._handle_transient(txn, now, str(e), report)
            return

        self.record_charge_result(txn, result, now, report)

    def record_charge_result(self, txn, result, now, report=None):
        """Apply a synchronous gateway response to the ledger and schedule."""
        report = report or CycleReport(now=now)

        if result.is_pending:
            if result.gateway_transaction_id:
                self.ledger.attach_gateway_id(txn.id, result.gateway_transaction_id)
            self.session.commit()
            report.pending += 1
            logger.info(f"Transaction {txn.id} pending at gateway, awaiting webhook")
            return txn

        outcome = self.ledger.finalize(
            txn.id,
            result.status,
            gateway_txn_id=result.gateway_transaction_id,
            response_code=result.code,
            response_message=result.message,
            raw_payload=result.raw,
        )
        if outcome.applied:
            self.apply_outcome(outcome.transaction, now, report)
        self.session.commit()
        self._tally(report, outcome.transaction.status)
        return outcome.transaction

    def _handle_transient(self, txn, now, error, report):
        txn = self.ledger.get(txn.id)
        attempt = txn.retry_count + 1
        policy = self.charge_policy.with_max_attempts(txn.max_retries + 1)
        decision = next_attempt(attempt, policy, now, jitter_key=txn.id)

        if decision.should_retry and self.ledger.schedule_retry(txn.id, decision.not_before):
            self.session.commit()
            report.retries_scheduled += 1
            logger.warning(
                f"Transient gateway error on transaction {txn.id} (attempt {attempt}): "
                f"{error}. Retrying after {decision.not_before.isoformat()}"
            )
            return

        # The gateway may still have taken the charge: leave it pending and
        # in flight until a webhook reports the outcome.
        logger.error(
            f"Transaction {txn.id} unconfirmed after {attempt} attempts: {error}. "
            f"Awaiting webhook"
        )
        self.ledger.stop_retries(
            txn.id, f"Gateway unavailable after {attempt} attempts: {error}",
        )
        self.session.commit()
        report.unconfirmed += 1

    @staticmethod
    def _tally(report, status):
        if status == "approved":
            report.approved += 1
        elif status == "declined":
            report.declined += 1
        elif status == "failed":
            report.failed += 1

    # ──────────────────────────────────────────────
    # Shared schedule transition
    # ──────────────────────────────────────────────

    def apply_outcome(self, txn, now=None, report=None):
        """Move the transaction's schedule on after the transaction went final.

        Called by the scheduler for synchronous responses and by the webhook
        dispatcher for asynchronous ones. Callers only invoke it when
        finalize() applied, so it runs once per transaction.
        """
        now = as_utc(now) or utcnow()

        if txn.status == "approved":
            self.token_store.touch(txn.customer_token_id, now)

        if not txn.schedule_id:
            return None

        schedule = self._reload(txn.schedule_id)
        if schedule is None:
            logger.warning(f"Transaction {txn.id} references missing schedule {txn.schedule_id}")
            return None

        if schedule.in_flight_transaction_id == txn.id:
            schedule.in_flight_transaction_id = None
        schedule.last_transaction_id = txn.id
        schedule.last_processed_at = now

        if txn.status == "approved":
            self._record_success(schedule, txn, now)
        elif schedule.status == "active":
            self._record_failure(
                schedule, now,
                reason=f"{txn.response_code or txn.status}: {txn.response_message or ''}".strip(),
            )
            if schedule.status == "failed" and report is not None:
                report.schedules_failed += 1
        else:
            # Paused or cancelled meanwhile: nothing left to retry.
            schedule.failure_reason = txn.response_message

        self.session.flush()
        return schedule

    def _record_success(self, schedule, txn, now):
        schedule.failed_attempts = 0
        schedule.failure_reason = None

        cycle_date = as_utc(schedule.cycle_date)
        billed_cycle = as_utc(txn.billing_period_start)
        if billed_cycle is None or billed_cycle == cycle_date:
            # Always from the previous cycle date, never from `now`.
            new_cycle = self._next_cycle_date(schedule)
            schedule.cycle_date = new_cycle
            schedule.next_billing_date = new_cycle
            logger.info(
                f"Schedule {schedule.id} charged for {cycle_date.date()}, "
                f"next billing {new_cycle.date()}"
            )

            end_date = as_utc(schedule.end_date)
            if end_date is not None and new_cycle > end_date and self._set_status(
                schedule, ["active", "paused"], "cancelled",
                cancelled_at=now, cancellation_reason="end_date_reached",
            ):
                logger.info(f"Schedule {schedule.id} reached its end date")

    def _record_failure(self, schedule, now, reason):
        schedule.failed_attempts = (schedule.failed_attempts or 0) + 1
        schedule.failure_reason = reason

        if schedule.failed_attempts >= schedule.max_failed_attempts:
            # next_billing_date is left as-is for audit.
            if self._set_status(schedule, ["active"], "failed"):
                logger.warning(
                    f"Schedule {schedule.id} failed after {schedule.failed_attempts} attempts: {reason}"
                )
            return

        policy = self.schedule_policy.with_max_attempts(schedule.max_failed_attempts)
        decision = next_attempt(schedule.failed_attempts, policy, now, jitter_key=schedule.id)
        schedule.next_billing_date = decision.not_before
        logger.warning(
            f"Schedule {schedule.id} attempt {schedule.failed_attempts}/"
            f"{schedule.max_failed_attempts} failed ({reason}); "
            f"retrying after {decision.not_before.isoformat()}"
        )

    def _set_status(self, schedule, allowed_from, new_status, **extra):
        """Compare-and-set on status. A concurrent pause or cancel wins.

        Pending attribute changes on `schedule` are flushed first and the
        object is reloaded afterwards.
        """
        self.session.flush()
        result = self.session.execute(
            update(RecurringSchedule)
            .where(
                RecurringSchedule.id == schedule.id,
                RecurringSchedule.status.in_(allowed_from),
            )
            .values(status=new_status, **extra)
            .execution_options(synchronize_session=False)
        )
        self._reload(schedule.id)
        if result.rowcount != 1:
            logger.warning(
                f"Schedule {schedule.id} is {schedule.status}, not moving it to {new_status}"
            )
            return False
        return True

    def _next_cycle_date(self, schedule):
        anchor_day = as_utc(schedule.start_date).day if schedule.cadence != "weekly" else None
        return add_cadence(as_utc(schedule.cycle_date), schedule.cadence, anchor_day=anchor_day)

    def _reload(self, schedule_id):
        return self.session.get(RecurringSchedule, schedule_id, populate_existing=True)
