"""
Stale Order Sweeper
===================
Cancels checkouts that never reached payment and gives their stock back.

An order is stale when it is still ``pending`` or ``awaiting_payment_setup``
longer than ``STALE_PENDING_HOURS`` after creation. One call is one pass;
it is triggered by an operator endpoint or an external scheduler.
"""

from datetime import datetime, timedelta
from typing import List

import structlog

from pipeline.state_machine import OrderStateMachine
from storage.repositories import IOrderRepository

logger = structlog.get_logger().bind(component="stale_order_sweeper")


async def expire_stale_orders(
    orders: IOrderRepository,
    state_machine: OrderStateMachine,
    older_than_hours: int = 24,
    batch_size: int = 100,
    actor: str = "system",
) -> List[str]:
    """
    Cancel every open order created before the cutoff.

    Returns:
        Ids of the orders this pass cancelled. Orders that were confirmed or
        cancelled concurrently are skipped, not counted.
    """
    cutoff = datetime.utcnow() - timedelta(hours=older_than_hours)
    candidates = await orders.list_open_before(cutoff, limit=batch_size)

    if not candidates:
        logger.debug("no_stale_orders", cutoff=cutoff.isoformat())
        return []

    logger.info("stale_orders_found", count=len(candidates), cutoff=cutoff.isoformat())

    expired = []
    for order in candidates:
        try:
            cancelled = await state_machine.cancel(
                order.order_id,
                actor=actor,
                reason=f"no payment within {older_than_hours}h",
            )
        except Exception as e:
            # One bad order must not stop the pass.
            logger.error("stale_order_expire_failed", order_id=order.order_id, error=str(e))
            continue

        if cancelled is not None:
            expired.append(order.order_id)
            logger.info(
                "stale_order_expired",
                order_id=order.order_id,
                correlation_id=order.correlation_id,
                age_hours=round((datetime.utcnow() - order.created_at).total_seconds() / 3600, 1),
            )

    logger.info("stale_order_pass_complete", candidates=len(candidates), expired=len(expired))
    return expired
