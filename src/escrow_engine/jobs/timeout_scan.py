"""Timeout expiration scheduled job."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..timeouts.monitor import TimeoutCheckResult, TimeoutMonitor

logger = logging.getLogger(__name__)


async def scan_timeouts(monitor: "TimeoutMonitor") -> "TimeoutCheckResult":
    """
    Handle expired timeouts and send pre-expiration warnings.

    Runs on an interval (every 5 minutes by default). Swap timeouts are
    settled automatically; other kinds are escalated to admin review.
    """
    try:
        logger.info("Starting timeout scan job")
        result = await monitor.check_expired_escrows()

        if result.expired_count or result.warnings_sent:
            logger.info(
                f"Timeout scan job completed: {result.expired_count} expired, "
                f"{result.warnings_sent} warnings, {result.escalated_to_admin} escalated"
            )
        else:
            logger.debug("Timeout scan job completed: no timeouts due")
        for error in result.errors:
            logger.warning("Timeout scan error: %s", error)
        return result

    except Exception as e:
        logger.error(f"Timeout scan job failed: {e}", exc_info=True)
        raise
