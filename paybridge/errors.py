"""Billing error taxonomy.

Every lower-level failure seen by the scheduler or the webhook dispatcher is
classified into one of these before it is acted on:

- ConfigurationError / NoPaymentMethod: the account cannot be charged.
  Fatal to the charge attempt, counted as a failed attempt on the schedule.
- GatewayTransientError: network / timeout / 5xx talking to the gateway.
  The only gateway error that goes through the retry controller.
- GatewayDecline: business decline. Terminal for that attempt.
- DuplicateEvent: not a failure, an idempotent no-op.
- UnknownReference: a webhook for something we don't track. Logged and
  acknowledged, never retried.
"""


class BillingError(Exception):
    """Base class for every error raised by the billing engine."""


class ConfigurationError(BillingError):
    """Billing cannot proceed because of missing setup (e.g. payment method)."""


class NoPaymentMethod(ConfigurationError):
    """No active customer token exists for the account."""

    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"No active payment method for account {account_id}")


class GatewayError(BillingError):
    """Base for errors reported while talking to the payment gateway."""


class GatewayTransientError(GatewayError):
    """Network error, timeout or gateway-side outage. Safe to retry."""


class GatewayDecline(GatewayError):
    """The gateway declined the charge. Not retried immediately."""

    def __init__(self, code, message):
        self.code = code
        self.message = message
        super().__init__(f"Declined ({code}): {message}")


class DuplicateEvent(BillingError):
    """A webhook for an already-applied (transaction, event type) pair."""


class UnknownReference(BillingError):
    """A webhook refers to a transaction or token we have no record of."""


class LedgerError(BillingError):
    """An operation would break a ledger invariant."""


class InvalidTransition(BillingError):
    """A schedule control operation is not allowed from the current status."""
