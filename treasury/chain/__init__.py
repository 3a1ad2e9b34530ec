"""
Treasury Chain Integration

Unsigned transaction descriptors for the treasury contract and the chain
context (chain id, nonce, gas) they are built against.
"""

from .context import (
    ChainContext,
    ChainContextProvider,
    GasEstimate,
    JsonRpcChainContextProvider,
    StaticChainContextProvider,
)
from .builder import (
    CONTRACT_CALLS,
    CallKind,
    ContractCall,
    TransactionBuilder,
    TransactionObject,
)

__all__ = [
    "ChainContext",
    "ChainContextProvider",
    "GasEstimate",
    "JsonRpcChainContextProvider",
    "StaticChainContextProvider",
    "CONTRACT_CALLS",
    "CallKind",
    "ContractCall",
    "TransactionBuilder",
    "TransactionObject",
]
