"""
Polling Celery tasks.

``poll_order`` runs one order's backoff loop in a worker (queued when a
pull-only order is created). ``sweep_open_orders`` runs on a schedule
and re-polls non-terminal pull-only orders nobody has looked at lately,
so an order survives a worker or API restart mid-poll.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

from app.settlement.config import SWEEP_BATCH_SIZE, SWEEP_STALE_MINUTES
from app.tasks.celery_app import celery_app
from app.tasks.runtime import settlement_runtime

logger = logging.getLogger(__name__)


async def _poll_order(order_id: str) -> dict:
    async with settlement_runtime() as rt:
        result = await rt.poller.poll(uuid.UUID(order_id))
    return {
        "order_id": order_id,
        "outcome": result.outcome.value,
        "attempts": result.attempts,
        "reason": result.reason,
    }


async def _sweep_open_orders() -> dict:
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=SWEEP_STALE_MINUTES)
    async with settlement_runtime() as rt:
        providers = [a.provider for a in rt.registry.pull_only()]
        orders = await rt.store.list_open_orders(providers, cutoff, limit=SWEEP_BATCH_SIZE)
        results = await asyncio.gather(
            *(rt.poller.poll(o.id) for o in orders), return_exceptions=True,
        )

    outcomes: dict[str, int] = {}
    for order, result in zip(orders, results):
        if isinstance(result, Exception):
            logger.error("Sweep poll for order %s failed: %s", order.id, result)
            key = "error"
        else:
            key = result.outcome.value
        outcomes[key] = outcomes.get(key, 0) + 1
    return {"swept": len(orders), "outcomes": outcomes}


@celery_app.task(name="app.tasks.polling_tasks.poll_order")
def poll_order(order_id: str):
    """
    Poll one order until it settles, fails or times out.

    Celery tasks are synchronous, so we run the async engine
    in an event loop.
    """
    logger.info("Starting poll for order %s", order_id)
    loop = asyncio.new_event_loop()
    try:
        result = loop.run_until_complete(_poll_order(order_id))
        logger.info(
            "Poll for order %s finished: %s after %d attempts",
            order_id, result["outcome"], result["attempts"],
        )
        return result
    except Exception:
        logger.exception("Poll for order %s failed", order_id)
        raise
    finally:
        loop.close()


@celery_app.task(name="app.tasks.polling_tasks.sweep_open_orders")
def sweep_open_orders():
    """Re-poll stale non-terminal orders of pull-only providers."""
    loop = asyncio.new_event_loop()
    try:
        result = loop.run_until_complete(_sweep_open_orders())
        logger.info("Sweep polled %d orders: %s", result["swept"], result["outcomes"])
        return result
    except Exception:
        logger.exception("Open-order sweep failed")
        raise
    finally:
        loop.close()
