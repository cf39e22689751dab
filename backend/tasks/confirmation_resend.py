"""
Confirmation Resend Loop - The Safety Net
=========================================
Background task that finds paid orders whose confirmation notification
never went out (broker down, worker unreachable) and sends it again.

Features:
- Runs every 5 minutes
- Picks up orders paid more than 10 minutes ago without a confirmation
- Gives up after MAX_ATTEMPTS and flags the order for manual follow-up
- Logs every attempt to the event log
- Configurable thresholds
"""

import os
import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from schemas.orders import Order, utcnow

if TYPE_CHECKING:
    from pipeline.container import CheckoutSystem

# Configure logger
logger = structlog.get_logger().bind(component="confirmation_resend")

COMPONENT = "confirmation_resend"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ResendConfig:
    """Resend loop configuration"""

    # How often to look for unconfirmed orders (seconds)
    CHECK_INTERVAL = int(os.getenv("CONFIRMATION_RESEND_INTERVAL", "300"))

    # How long after payment before a missing confirmation counts (minutes)
    STUCK_THRESHOLD = int(os.getenv("CONFIRMATION_RESEND_THRESHOLD", "10"))

    # Maximum orders to process per cycle
    MAX_ORDERS_PER_CYCLE = int(os.getenv("CONFIRMATION_RESEND_BATCH_SIZE", "10"))

    # Maximum resend attempts before alerting
    MAX_ATTEMPTS = int(os.getenv("CONFIRMATION_RESEND_MAX_ATTEMPTS", "3"))

    # Enable/disable the loop
    ENABLED = os.getenv("CONFIRMATION_RESEND_ENABLED", "true").lower() == "true"


config = ResendConfig()


# =============================================================================
# RESEND LOGIC
# =============================================================================

async def resend_confirmation(system: "CheckoutSystem", order: Order) -> bool:
    """
    Re-send the confirmation for one order.

    Returns:
        True if the notifier accepted it and the order is now marked confirmed
    """
    attempts = await system.events.count("CONFIRMATION_RESEND_FAILED", order.id)

    if attempts >= config.MAX_ATTEMPTS:
        # Flag once; abandoned orders drop out of the unconfirmed query
        await system.events.record(
            "CONFIRMATION_ABANDONED",
            {
                "error": f"Max resend attempts ({config.MAX_ATTEMPTS}) exceeded",
                "requires_manual_intervention": True,
            },
            order_id=order.id,
            component=COMPONENT,
            severity="CRITICAL",
        )
        await system.store.mark_confirmation_abandoned(order.id, utcnow())
        return False

    sent = await system.fulfillment.send_confirmation(order)

    if sent:
        await system.events.record(
            "CONFIRMATION_RESENT",
            {"attempt": attempts + 1},
            order_id=order.id,
            component=COMPONENT,
            severity="WARN",
        )
    else:
        await system.events.record(
            "CONFIRMATION_RESEND_FAILED",
            {"attempt": attempts + 1},
            order_id=order.id,
            component=COMPONENT,
            severity="ERROR",
        )
    return sent


async def run_resend_cycle(system: "CheckoutSystem") -> int:
    """One pass over unconfirmed paid orders; returns how many were sent"""
    paid_before = utcnow() - timedelta(minutes=config.STUCK_THRESHOLD)
    orders = await system.store.get_unconfirmed_paid_orders(
        paid_before=paid_before,
        limit=config.MAX_ORDERS_PER_CYCLE,
    )

    if not orders:
        return 0

    logger.warning("unconfirmed_orders_found", count=len(orders))

    sent = 0
    for order in orders:
        if await resend_confirmation(system, order):
            sent += 1

    logger.info("resend_cycle_complete", processed=len(orders), sent=sent)
    return sent


async def confirmation_resend_loop(system: "CheckoutSystem"):
    """
    Background task that runs every CHECK_INTERVAL seconds.

    This is "The Safety Net" - ensures no paid customer goes without
    their confirmation.
    """
    logger.info(
        "resend_loop_started",
        interval=config.CHECK_INTERVAL,
        threshold=config.STUCK_THRESHOLD,
        enabled=config.ENABLED,
    )

    if not config.ENABLED:
        logger.info("resend_loop_disabled")
        return

    while True:
        try:
            await run_resend_cycle(system)
        except Exception as e:
            logger.error("resend_loop_error", error=str(e), error_type=type(e).__name__)

        # Sleep until next check
        await asyncio.sleep(config.CHECK_INTERVAL)
