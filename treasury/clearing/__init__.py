"""
Treasury Clearing

Multilateral netting of inter-marketplace debts into a minimal set of
settlement transfers.
"""

from .netting import NetTransfer, compute_balances, net_transfers
from .engine import ClearingEngine, ClearingResult

__all__ = [
    "NetTransfer",
    "compute_balances",
    "net_transfers",
    "ClearingEngine",
    "ClearingResult",
]
