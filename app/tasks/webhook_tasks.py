"""
Webhook replay Celery task.

Re-drives acknowledged webhook deliveries that failed after receipt
(order not yet known, processing error). Typical case: the vendor's
first webhook beats our own order insert.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from app.core.exceptions import OfframpError
from app.settlement.config import REPLAY_BATCH_SIZE, REPLAY_WINDOW_HOURS
from app.tasks.celery_app import celery_app
from app.tasks.runtime import settlement_runtime

logger = logging.getLogger(__name__)


async def _replay_failed_webhooks() -> dict:
    since = datetime.now(timezone.utc) - timedelta(hours=REPLAY_WINDOW_HOURS)
    replayed = applied = errors = 0

    async with settlement_runtime() as rt:
        events = await rt.store.list_replayable_events(since, limit=REPLAY_BATCH_SIZE)
        for event in events:
            try:
                ack = await rt.ingestor.replay(event.id)
            except OfframpError as exc:
                errors += 1
                logger.warning("Replay of event %s failed: %s", event.id, exc.message)
                continue
            replayed += 1
            if ack.applied:
                applied += 1

    return {"candidates": len(events), "replayed": replayed, "applied": applied, "errors": errors}


@celery_app.task(name="app.tasks.webhook_tasks.replay_failed_webhooks")
def replay_failed_webhooks():
    """Retry recent webhook failures through the Reconciler."""
    loop = asyncio.new_event_loop()
    try:
        result = loop.run_until_complete(_replay_failed_webhooks())
        logger.info(
            "Webhook replay: %d candidates, %d replayed, %d applied",
            result["candidates"], result["replayed"], result["applied"],
        )
        return result
    except Exception:
        logger.exception("Webhook replay failed")
        raise
    finally:
        loop.close()
