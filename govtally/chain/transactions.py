"""
Unsigned transaction construction.

Creating a proposal or casting a vote hands back an unsigned payload the
caller signs and submits to the ledger. The engine treats the payload as
opaque bytes and never parses it.
"""

import base64
import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..logger import get_logger

logger = get_logger(__name__)

OP_CREATE_PROPOSAL = "create_proposal"
OP_CAST_VOTE = "cast_vote"


@dataclass(frozen=True)
class TransactionIntent:
    """What the signer is being asked to authorise."""
    operation: str
    source: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    contract_id: Optional[str] = None


@dataclass(frozen=True)
class UnsignedTransaction:
    payload: str
    encoding: str
    operation: str
    digest: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payload": self.payload,
            "encoding": self.encoding,
            "operation": self.operation,
            "digest": self.digest,
        }


class TransactionBuilder(ABC):

    @abstractmethod
    def build(self, intent: TransactionIntent) -> UnsignedTransaction:
        """Build the unsigned transaction for ``intent``."""


class EnvelopeTransactionBuilder(TransactionBuilder):
    """
    Reference builder: canonical JSON (sorted keys, no whitespace) wrapped in
    base64, with a SHA-256 digest of the canonical bytes for the signer to
    display.
    """

    ENCODING = "base64+json"

    def __init__(self, network: str = "testnet", contract_id: Optional[str] = None):
        self.network = network
        self.contract_id = contract_id

    def canonical_bytes(self, intent: TransactionIntent) -> bytes:
        envelope = {
            "network": self.network,
            "contract": intent.contract_id or self.contract_id,
            "operation": intent.operation,
            "source": intent.source,
            "args": intent.arguments,
        }
        return json.dumps(
            envelope, sort_keys=True, separators=(',', ':'), default=str
        ).encode('utf-8')

    def build(self, intent: TransactionIntent) -> UnsignedTransaction:
        raw = self.canonical_bytes(intent)
        tx = UnsignedTransaction(
            payload=base64.b64encode(raw).decode('ascii'),
            encoding=self.ENCODING,
            operation=intent.operation,
            digest=hashlib.sha256(raw).hexdigest(),
        )
        logger.debug(f"Built unsigned {intent.operation} for {intent.source} ({tx.digest[:16]})")
        return tx
