"""Value types shared across the daemon.

Block records come from the ledger node's JSON-RPC interface and are parsed
with pydantic. Field names follow the node's camelCase wire names through
aliases, so the models accept both the wire form and the Python form.
"""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class BlockInfo(BaseModel):
    """Immutable snapshot of a ledger block's consensus-derived fields."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    hash: str
    blue_score: int = Field(ge=0, validation_alias=AliasChoices("blue_score", "blueScore"))
    parents: tuple[str, ...] = Field(
        default=(),
        validation_alias=AliasChoices("parents", "directParents", "parentHashes"),
    )
    timestamp: int = 0

    @property
    def short(self) -> str:
        return self.hash[:12]


class TxOutput(BaseModel):
    """A transaction output; only the payee address and amount are used."""

    model_config = ConfigDict(populate_by_name=True)

    address: str | None = Field(
        default=None,
        validation_alias=AliasChoices("address", "scriptPublicKeyAddress"),
    )
    amount: int = 0


class LedgerTransaction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str = Field(
        default="",
        validation_alias=AliasChoices("transaction_id", "transactionId"),
    )
    outputs: list[TxOutput] = Field(default_factory=list)


def _object(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"Malformed {what}: expected an object, got {type(value).__name__}")
    return value


def _array(value: Any, what: str) -> list[Any]:
    if not isinstance(value, list):
        raise ValueError(f"Malformed {what}: expected an array, got {type(value).__name__}")
    return value


class LedgerBlock(BaseModel):
    """A full block as returned by the ledger node (header fields + transactions)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    hash: str
    blue_score: int = Field(ge=0, validation_alias=AliasChoices("blue_score", "blueScore"))
    parents: tuple[str, ...] = Field(
        default=(),
        validation_alias=AliasChoices("parents", "directParents", "parentHashes"),
    )
    timestamp: int = 0
    transactions: tuple[LedgerTransaction, ...] = ()

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> LedgerBlock:
        """Parse a block from the node's JSON.

        Accepts either a flat record or the nested ``{"header": ...,
        "verboseData": {"hash": ...}, "transactions": [...]}`` layout. Output
        addresses nested under ``verboseData`` are lifted onto the output.

        Raises:
            ValueError: If the payload has the wrong shape (pydantic's
                ValidationError is a ValueError too).
        """
        if "header" not in data:
            return cls.model_validate(data)

        header = _object(data["header"], "block header")
        verbose = _object(data.get("verboseData") or {}, "block verboseData")
        flat: dict[str, Any] = {
            "hash": header.get("hash") or verbose.get("hash", ""),
            "blueScore": header.get("blueScore", 0),
            "timestamp": header.get("timestamp", 0),
        }
        if "directParents" in header:
            flat["directParents"] = header["directParents"]
        elif header.get("parents"):
            # parents-by-level: level 0 holds the direct parents
            level0 = _array(header["parents"], "header parents")[0]
            flat["directParents"] = level0.get("parentHashes", level0) if isinstance(level0, dict) else level0

        txs = []
        for tx in _array(data.get("transactions") or [], "transactions"):
            tx = _object(tx, "transaction")
            outputs = []
            for out in _array(tx.get("outputs") or [], "transaction outputs"):
                out = _object(out, "transaction output")
                out_verbose = _object(out.get("verboseData") or {}, "output verboseData")
                outputs.append({
                    "address": out.get("address") or out_verbose.get("scriptPublicKeyAddress"),
                    "amount": out.get("amount", 0),
                })
            tx_verbose = _object(tx.get("verboseData") or {}, "transaction verboseData")
            txs.append({
                "transactionId": tx.get("transactionId") or tx_verbose.get("transactionId", ""),
                "outputs": outputs,
            })
        flat["transactions"] = txs
        return cls.model_validate(flat)

    @property
    def info(self) -> BlockInfo:
        return BlockInfo(
            hash=self.hash,
            blue_score=self.blue_score,
            parents=self.parents,
            timestamp=self.timestamp,
        )

    def payee_address(self) -> str | None:
        """Address of the first output of the first (coinbase) transaction."""
        if not self.transactions:
            return None
        outputs = self.transactions[0].outputs
        if not outputs:
            return None
        return outputs[0].address or None


class StitchRequest(BaseModel):
    """Signed request asking miners to merge ``tip_hashes`` into one block."""

    weak_hash: str
    tip_hashes: list[str]
    reward_sompi: int = Field(ge=0)
    sender: str  # operator public key, hex
    timestamp: float = Field(default_factory=time.time)
    signature: str = ""

    def signing_payload(self) -> bytes:
        """Canonical JSON of every field except the signature."""
        body = self.model_dump(exclude={"signature"})
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode()

    def verify(self) -> bool:
        """Check ``signature`` against the ``sender`` public key."""
        if not self.signature:
            return False
        try:
            key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(self.sender))
            key.verify(bytes.fromhex(self.signature), self.signing_payload())
        except (ValueError, InvalidSignature):
            return False
        return True


class StitchMessage(BaseModel):
    """P2P envelope for a stitch request, relayed with controlled flooding."""

    sender_id: str
    ttl: int = 7
    request: StitchRequest

    @property
    def message_id(self) -> str:
        """Content hash used for dedup; independent of the TTL and relaying peer."""
        digest = hashlib.sha256(self.request.signing_payload())
        digest.update(self.request.signature.encode())
        return digest.hexdigest()
