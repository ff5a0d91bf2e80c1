"""Billing jobs — the periodic entry points.

- run_billing_cycle: one scheduler pass (parked retries + due schedules)
- retry_failed_webhooks: re-process webhook deliveries whose backoff elapsed
- run_worker: both of the above on a timer

Designed to be called from Flask CLI commands (`flask run-billing`,
`flask retry-webhooks`, `flask billing-worker`) from cron or a worker dyno.
Must run inside an app context.
"""

import logging
import time

from paybridge.extensions import db
from paybridge.services.engine import get_engine

logger = logging.getLogger(__name__)


def run_billing_cycle(now=None):
    """Run one due cycle. Returns the CycleReport."""
    return get_engine().scheduler.run_due_cycle(now=now)


def retry_failed_webhooks(now=None):
    """Returns the IngestResult of every delivery that was re-processed."""
    results = get_engine().dispatcher.retry_due_events(now=now)
    if results:
        logger.info(f"Re-processed {len(results)} webhook event(s)")
    return results


def run_worker(interval=300, iterations=0, echo=None, sleep=time.sleep):
    """Loop: billing cycle, webhook retries, sleep.

    iterations=0 runs until interrupted. One failing pass is logged and the
    loop carries on with the next.
    """
    echo = echo or (lambda message: None)
    completed = 0
    while True:
        try:
            report = run_billing_cycle()
            retried = retry_failed_webhooks()
            echo(
                f"[{report.now.isoformat()}] claimed={report.claimed} approved={report.approved} "
                f"declined={report.declined} pending={report.pending} "
                f"webhooks_retried={len(retried)} errors={len(report.errors)}"
            )
        except Exception as e:
            db.session.rollback()
            logger.error(f"Billing worker pass failed: {e}", exc_info=True)
            echo(f"Billing worker pass failed: {e}")

        completed += 1
        if iterations and completed >= iterations:
            return completed
        try:
            sleep(interval)
        except KeyboardInterrupt:
            logger.info("Billing worker stopped")
            return completed
