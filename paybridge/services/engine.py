"""Component wiring.

build_engine() assembles the token store, ledger, scheduler and webhook
dispatcher around one session and one gateway client. create_app() uses
it with db.session; tests pass a MagicMock gateway.

The app keeps one engine in app.extensions["paybridge"], built on first
use so the app still starts without gateway credentials.
"""

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from paybridge.extensions import db
from paybridge.services.gateway import EwayGatewayClient
from paybridge.services.ledger import TransactionLedger
from paybridge.services.retry_policy import RetryPolicy
from paybridge.services.scheduler import RecurringScheduler
from paybridge.services.token_store import CustomerTokenStore
from paybridge.services.webhook_service import WebhookDispatcher


@dataclass
class BillingEngine:
    token_store: CustomerTokenStore
    ledger: TransactionLedger
    scheduler: RecurringScheduler
    dispatcher: WebhookDispatcher


def build_engine(config, session, gateway=None):
    """Build the engine from a Flask config mapping.

    Args:
        config: app.config (or any mapping with the same keys).
        session: SQLAlchemy session shared by every component.
        gateway: GatewayClient; defaults to EwayGatewayClient.from_config(config).
    """
    if gateway is None:
        gateway = EwayGatewayClient.from_config(config)

    charge_policy = RetryPolicy.from_config(config, "CHARGE")
    schedule_policy = RetryPolicy.from_config(
        config, "SCHEDULE",
        max_attempts=config.get("SCHEDULE_DEFAULT_MAX_FAILED_ATTEMPTS", 3),
    )
    webhook_policy = RetryPolicy.from_config(config, "WEBHOOK")

    token_store = CustomerTokenStore(session)
    ledger = TransactionLedger(session, default_max_retries=charge_policy.max_attempts - 1)
    scheduler = RecurringScheduler(
        session,
        ledger,
        token_store,
        gateway,
        schedule_policy=schedule_policy,
        charge_policy=charge_policy,
        claim_ttl=timedelta(seconds=config.get("SCHEDULER_CLAIM_TTL_SECONDS", 900)),
        batch_size=config.get("SCHEDULER_BATCH_SIZE", 100),
    )
    dispatcher = WebhookDispatcher(session, ledger, token_store, scheduler, webhook_policy)
    return BillingEngine(
        token_store=token_store,
        ledger=ledger,
        scheduler=scheduler,
        dispatcher=dispatcher,
    )


def get_engine(app=None):
    """Return the app's engine, building it on first use."""
    app = app or current_app
    engine = app.extensions.get("paybridge")
    if engine is None:
        engine = build_engine(app.config, db.session)
        app.extensions["paybridge"] = engine
    return engine
