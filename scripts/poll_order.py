"""
Manual poll trigger — runs one order's backoff loop from the command line.

Usage:
    python scripts/poll_order.py <order-id> [--max-attempts N]

Useful for chasing a stuck order without waiting for the sweep schedule.
"""

import argparse
import asyncio
import json
import uuid

from app.settlement.poller import PollOptions
from app.tasks.runtime import settlement_runtime


async def main(order_id: uuid.UUID, max_attempts: int | None) -> None:
    """Poll the order and print the outcome."""
    options = PollOptions(max_attempts=max_attempts) if max_attempts else PollOptions()
    print(f"Polling order {order_id}...")
    async with settlement_runtime() as rt:
        result = await rt.poller.poll(order_id, options)

    print("\n=== Poll Result ===")
    print(json.dumps({
        "outcome": result.outcome.value,
        "attempts": result.attempts,
        "reason": result.reason,
        "canonical_status": result.order.canonical_status.value if result.order else None,
        "error": str(result.error) if result.error else None,
    }, indent=2))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("order_id", type=uuid.UUID)
    parser.add_argument("--max-attempts", type=int, default=None)
    args = parser.parse_args()
    asyncio.run(main(args.order_id, args.max_attempts))
