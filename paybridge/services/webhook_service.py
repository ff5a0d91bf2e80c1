"""Webhook service — ingestion, deduplication and dispatch of gateway notifications.

Responsible for:
- Parsing raw payloads into a closed set of event variants at the boundary
- Persisting every delivery as a WebhookEvent before anything else happens
- Deduplicating on (gateway transaction id, event type)
- Dispatching to on_payment_success / on_payment_failure / on_customer_updated
- Retry bookkeeping for deliveries whose handler failed

Outcomes recorded on the event:
    applied            state changed
    duplicate          same (transaction, type) already applied, or the
                       transaction was already final; no state change
    unknown_reference  transaction/token not tracked here; acknowledged, never retried
    unsupported        event type outside the supported set, or unparseable
    error              handler raised; processed stays False and the retry
                       policy decides next_attempt_at
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select, update

from paybridge.errors import DuplicateEvent, UnknownReference
from paybridge.models.webhook_event import WebhookEvent
from paybridge.services.retry_policy import next_attempt
from paybridge.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS_TYPES = {"Payment.Successful", "Payment.Success", "Recurring.Payment.Success"}
PAYMENT_FAILURE_TYPES = {"Payment.Failed", "Recurring.Payment.Failed"}
CUSTOMER_UPDATED_TYPES = {"Customer.Updated", "TokenCustomer.Updated"}

# Never persisted from inbound request headers.
REDACTED_HEADERS = {"authorization", "cookie", "x-webhook-secret"}


# ──────────────────────────────────────────────
# Event variants
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class GatewayEvent:
    event_type: str
    gateway_transaction_id: Optional[str] = None
    customer_token: Optional[str] = None
    reference: Optional[str] = None
    data: dict = field(default_factory=dict)

    @property
    def response_code(self):
        return _first(self.data, "responseCode", "ResponseCode")

    @property
    def response_message(self):
        return _first(self.data, "responseMessage", "ResponseMessage")


@dataclass(frozen=True)
class PaymentSuccess(GatewayEvent):
    pass


@dataclass(frozen=True)
class PaymentFailure(GatewayEvent):
    @property
    def outcome(self):
        # Gateway-side errors are failures; anything else is a bank decline.
        return "failed" if self.data.get("Errors") else "declined"


@dataclass(frozen=True)
class CustomerUpdated(GatewayEvent):
    @property
    def card_metadata(self):
        """Masked card fields from either our shape or the gateway's."""
        card = dict(self.data.get("card") or {})
        customer = self.data.get("Customer") or {}
        details = customer.get("CardDetails") or {}
        if details.get("Number"):
            card.setdefault("card_number", details["Number"])
        if details.get("ExpiryMonth"):
            card.setdefault("expiry_month", details["ExpiryMonth"])
        if details.get("ExpiryYear"):
            card.setdefault("expiry_year", details["ExpiryYear"])
        if customer.get("CardType"):
            card.setdefault("brand", customer["CardType"])
        return card


@dataclass(frozen=True)
class Unrecognized(GatewayEvent):
    reason: str = "unsupported event type"


def _first(data, *keys):
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_id(value):
    if value in (None, "", 0, "0"):
        return None
    return str(value)


def parse_event(raw_payload):
    """Turn a raw webhook body into one of the event variants. Never raises."""
    data = raw_payload
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return Unrecognized(event_type="unparseable", reason="payload is not valid JSON")
    if not isinstance(data, dict):
        return Unrecognized(event_type="unparseable", reason="payload is not a JSON object")

    event_type = _first(data, "eventType", "EventType", "event_type")
    if not event_type:
        return Unrecognized(event_type="unknown", data=data, reason="missing event type")
    event_type = str(event_type)

    payment = data.get("Payment") if isinstance(data.get("Payment"), dict) else {}
    common = dict(
        event_type=event_type,
        gateway_transaction_id=_as_id(_first(data, "transactionId", "TransactionID", "transaction_id")),
        customer_token=_as_id(_first(data, "customerToken", "TokenCustomerID", "customer_token")),
        reference=_as_id(
            _first(data, "reference", "InvoiceReference", "InvoiceNumber")
            or _first(payment, "InvoiceReference", "InvoiceNumber")
        ),
        data=data,
    )

    if event_type in PAYMENT_SUCCESS_TYPES or event_type in PAYMENT_FAILURE_TYPES:
        if not common["gateway_transaction_id"] and not common["reference"]:
            return Unrecognized(reason="payment event without transaction reference", **common)
        if event_type in PAYMENT_SUCCESS_TYPES:
            return PaymentSuccess(**common)
        return PaymentFailure(**common)

    if event_type in CUSTOMER_UPDATED_TYPES:
        if not common["customer_token"]:
            return Unrecognized(reason="customer event without customer token", **common)
        return CustomerUpdated(**common)

    return Unrecognized(**common)


@dataclass
class IngestResult:
    event: WebhookEvent
    outcome: str

    @property
    def should_redeliver(self):
        """True when the gateway should send this again (handler failed)."""
        return self.outcome == "error"


# ──────────────────────────────────────────────
# Dispatcher
# ──────────────────────────────────────────────

class WebhookDispatcher:
    def __init__(self, session, ledger, token_store, scheduler, retry_policy):
        self.session = session
        self.ledger = ledger
        self.token_store = token_store
        self.scheduler = scheduler
        self.retry_policy = retry_policy
        self.handlers = {
            PaymentSuccess: self.on_payment_success,
            PaymentFailure: self.on_payment_failure,
            CustomerUpdated: self.on_customer_updated,
        }

    def ingest(self, raw_payload, source_metadata=None, now=None):
        """Store one delivery and process it. Returns IngestResult, never raises
        for handler errors (those are recorded for retry)."""
        now = as_utc(now) or utcnow()
        source_metadata = source_metadata or {}
        parsed = parse_event(raw_payload)

        if isinstance(raw_payload, (dict, list)):
            raw_text = json.dumps(raw_payload)
        elif isinstance(raw_payload, bytes):
            raw_text = raw_payload.decode("utf-8", errors="replace")
        else:
            raw_text = raw_payload

        event = WebhookEvent(
            event_type=parsed.event_type[:100],
            gateway_transaction_id=parsed.gateway_transaction_id,
            customer_token=parsed.customer_token,
            reference=parsed.reference,
            raw_payload=raw_text,
            event_data=parsed.data or None,
            source_ip=source_metadata.get("source_ip"),
            headers=_safe_headers(source_metadata.get("headers")),
            received_at=now,
            processed=False,
            processing_attempts=0,
        )
        self.session.add(event)
        self.session.commit()
        logger.info(
            f"Received webhook {event.id}: {event.event_type} "
            f"txn={event.gateway_transaction_id} from {event.source_ip}"
        )

        return self._process(event, parsed, now)

    def retry_event(self, event_id, now=None):
        """Re-run processing for a stored delivery (admin action).

        Resets the attempt bookkeeping and goes through the same path as
        ingest(). An already-processed event is returned untouched.
        """
        now = as_utc(now) or utcnow()
        event = self.session.get(WebhookEvent, event_id)
        if event is None:
            raise UnknownReference(f"Unknown webhook event {event_id}")
        if event.processed:
            logger.info(f"Webhook {event_id} already processed ({event.outcome}), nothing to retry")
            return IngestResult(event=event, outcome=event.outcome)

        event.processing_attempts = 0
        event.processing_error = None
        event.next_attempt_at = None
        self.session.commit()
        return self._process(event, self._reparse(event), now)

    def due_retries(self, now, limit=100):
        return self.session.scalars(
            select(WebhookEvent)
            .where(
                WebhookEvent.processed.is_(False),
                WebhookEvent.next_attempt_at.isnot(None),
                WebhookEvent.next_attempt_at <= now,
            )
            .order_by(WebhookEvent.next_attempt_at)
            .limit(limit)
        ).all()

    def retry_due_events(self, now=None, limit=100):
        """Re-process failed deliveries whose backoff has elapsed."""
        now = as_utc(now) or utcnow()
        results = []
        for event in self.due_retries(now, limit=limit):
            # Exclusive take: clear next_attempt_at only if still due.
            claimed = self.session.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == event.id,
                    WebhookEvent.processed.is_(False),
                    WebhookEvent.next_attempt_at <= now,
                )
                .values(next_attempt_at=None)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            self.session.commit()
            if not claimed:
                continue
            results.append(self._process(event, self._reparse(event), now))
        return results

    # ──────────────────────────────────────────────
    # Processing
    # ──────────────────────────────────────────────

    def _process(self, event, parsed, now):
        if isinstance(parsed, Unrecognized):
            logger.warning(f"Webhook {event.id} not processed: {parsed.reason} ({parsed.event_type})")
            return self._finish(event, "unsupported", now, error=parsed.reason)

        handler = self.handlers[type(parsed)]
        try:
            if self._already_applied(parsed, event.id):
                raise DuplicateEvent(
                    f"{parsed.event_type} for txn={parsed.gateway_transaction_id} already applied"
                )
            outcome = handler(event, parsed, now)
        except DuplicateEvent as e:
            self.session.commit()
            logger.info(f"Duplicate webhook {event.id}: {e}, skipping")
            return self._finish(event, "duplicate", now)
        except UnknownReference as e:
            self.session.rollback()
            logger.warning(f"Webhook {event.id} ({parsed.event_type}) refers to unknown record: {e}")
            return self._finish(event, "unknown_reference", now, error=str(e))
        except Exception as e:
            self.session.rollback()
            logger.error(f"Error handling webhook {event.id} ({parsed.event_type}): {e}", exc_info=True)
            return self._record_error(event, now, e)

        return self._finish(event, outcome, now)

    def _already_applied(self, parsed, event_id):
        if not parsed.gateway_transaction_id:
            return False
        return self.session.scalars(
            select(WebhookEvent.id)
            .where(
                WebhookEvent.gateway_transaction_id == parsed.gateway_transaction_id,
                WebhookEvent.event_type == parsed.event_type,
                WebhookEvent.outcome == "applied",
                WebhookEvent.id != event_id,
            )
            .limit(1)
        ).first() is not None

    def _finish(self, event, outcome, now, error=None):
        event = self.session.get(WebhookEvent, event.id)
        event.processed = True
        event.outcome = outcome
        event.processing_error = error
        event.processing_attempts = (event.processing_attempts or 0) + 1
        event.next_attempt_at = None
        event.processed_at = now
        self.session.commit()
        return IngestResult(event=event, outcome=outcome)

    def _record_error(self, event, now, error):
        event = self.session.get(WebhookEvent, event.id)
        event.processing_attempts = (event.processing_attempts or 0) + 1
        event.processing_error = str(error)
        event.processed = False
        event.outcome = "error"

        decision = next_attempt(event.processing_attempts, self.retry_policy, now, jitter_key=event.id)
        event.next_attempt_at = decision.not_before
        if not decision.should_retry:
            logger.error(
                f"Webhook {event.id} gave up after {event.processing_attempts} attempts; "
                f"needs a manual retry"
            )
        self.session.commit()
        return IngestResult(event=event, outcome="error")

    @staticmethod
    def _reparse(event):
        if event.raw_payload:
            return parse_event(event.raw_payload)
        return parse_event(event.event_data or {})

    # ──────────────────────────────────────────────
    # Handlers
    # ──────────────────────────────────────────────

    def on_payment_success(self, event, parsed, now):
        return self._finalize_payment(event, parsed, "approved", now)

    def on_payment_failure(self, event, parsed, now):
        return self._finalize_payment(event, parsed, parsed.outcome, now)

    def _finalize_payment(self, event, parsed, outcome, now):
        txn = self.ledger.resolve(parsed.gateway_transaction_id, parsed.reference)
        if txn is None:
            raise UnknownReference(
                f"No transaction for gateway id {parsed.gateway_transaction_id} "
                f"/ reference {parsed.reference}"
            )

        result = self.ledger.finalize(
            txn.id,
            outcome,
            gateway_txn_id=parsed.gateway_transaction_id,
            response_code=parsed.response_code,
            response_message=parsed.response_message,
            raw_payload=parsed.data,
        )

        if event.gateway_transaction_id is None and result.transaction.gateway_transaction_id:
            event.gateway_transaction_id = result.transaction.gateway_transaction_id

        if not result.applied:
            if result.transaction.status != outcome:
                logger.error(
                    f"Gateway reports {outcome} for transaction {txn.id} already finalized "
                    f"as {result.transaction.status}; needs manual reconciliation"
                )
            raise DuplicateEvent(f"transaction {txn.id} already {result.transaction.status}")

        self.scheduler.apply_outcome(result.transaction, now)
        return "applied"

    def on_customer_updated(self, event, parsed, now):
        self.token_store.update_masked(parsed.customer_token, parsed.card_metadata)
        return "applied"


def _safe_headers(headers):
    if not headers:
        return None
    return {
        key: value for key, value in dict(headers).items()
        if key.lower() not in REDACTED_HEADERS
    }
