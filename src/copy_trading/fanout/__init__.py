"""Fan-out package exports."""

from copy_trading.fanout.allocation import allocation_for, compute_allocation
from copy_trading.fanout.orchestrator import FanOutOrchestrator

__all__ = [
    "FanOutOrchestrator",
    "allocation_for",
    "compute_allocation",
]
