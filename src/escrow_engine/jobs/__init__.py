"""Scheduled scan jobs."""
from .deposit_scan import scan_deposits
from .timeout_scan import scan_timeouts

__all__ = ["scan_deposits", "scan_timeouts"]
