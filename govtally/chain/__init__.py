"""
Ledger-facing collaborators: on-chain event observation and unsigned
transaction construction.
"""

from .events import (
    HTTPEventSource,
    OnChainEvent,
    OnChainEventSource,
    StaticEventSource,
)
from .transactions import (
    EnvelopeTransactionBuilder,
    TransactionBuilder,
    TransactionIntent,
    UnsignedTransaction,
)

__all__ = [
    "HTTPEventSource",
    "OnChainEvent",
    "OnChainEventSource",
    "StaticEventSource",
    "EnvelopeTransactionBuilder",
    "TransactionBuilder",
    "TransactionIntent",
    "UnsignedTransaction",
]
