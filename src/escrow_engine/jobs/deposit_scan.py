"""Deposit confirmation scheduled job."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..deposits import DepositMonitor

logger = logging.getLogger(__name__)


async def scan_deposits(monitor: "DepositMonitor") -> dict[str, int]:
    """
    Confirm pending deposits and advance funding on open contracts.

    Runs on an interval (every minute by default). Funded swaps that have
    not executed yet are retried by the same pass.
    """
    try:
        logger.info("Starting deposit scan job")
        result = await monitor.scan()

        if result["deposits_confirmed"] or result["newly_funded"] or result["swaps_executed"]:
            logger.info(
                "Deposit scan job completed: %d deposits confirmed, %d escrows funded, %d swaps executed",
                result["deposits_confirmed"], result["newly_funded"], result["swaps_executed"],
            )
        else:
            logger.debug("Deposit scan job completed: nothing changed")
        return result

    except Exception as e:
        logger.error(f"Deposit scan job failed: {e}", exc_info=True)
        raise
