"""Operator wallet: Ed25519 signing key and reward transactions.

The key is kept as an unencrypted PKCS#8 PEM file and generated on first use.
Transactions built here are signed reward records handed to the ledger client
for submission; UTXO selection is left to the ledger node.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from pydantic import BaseModel, Field

from stitch_node.errors import WalletError

logger = logging.getLogger(__name__)

ADDRESS_PREFIX = "kaspa:"


class RewardTransaction(BaseModel):
    """A signed payment of ``amount`` sompi from the operator to a miner."""

    sender: str
    recipient: str
    amount: int = Field(gt=0)
    timestamp: float = Field(default_factory=time.time)
    public_key: str = ""
    signature: str = ""

    def signing_payload(self) -> bytes:
        body = self.model_dump(exclude={"signature"})
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode()


class Wallet:
    """Holds the operator's signing key."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._key = private_key
        raw = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.public_key_hex = raw.hex()
        self.address = ADDRESS_PREFIX + hashlib.sha256(raw).hexdigest()[:40]

    @classmethod
    def generate(cls) -> Wallet:
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def load_or_generate(cls, path: str | Path) -> Wallet:
        """Load the key from ``path``, creating a new one if the file is missing."""
        key_path = Path(path)
        if key_path.exists():
            try:
                key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
            except ValueError as e:
                raise WalletError(f"Cannot read wallet key {key_path}: {e}") from e
            if not isinstance(key, Ed25519PrivateKey):
                raise WalletError(f"Wallet key {key_path} is not an Ed25519 key")
            wallet = cls(key)
            logger.info("Wallet loaded: %s (from %s)", wallet.address, key_path)
            return wallet

        wallet = cls.generate()
        key_path.parent.mkdir(parents=True, exist_ok=True)
        key_path.write_bytes(wallet._key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ))
        key_path.chmod(0o600)
        logger.info("Wallet generated: %s (saved to %s)", wallet.address, key_path)
        return wallet

    def sign(self, payload: bytes) -> str:
        """Sign ``payload``; returns the signature as hex."""
        return self._key.sign(payload).hex()

    def create_transaction(self, address: str, amount: int) -> RewardTransaction:
        """Build and sign a reward payment to ``address``."""
        if not address:
            raise WalletError("Recipient address is empty")
        if amount <= 0:
            raise WalletError(f"Reward amount must be positive, got {amount}")
        tx = RewardTransaction(
            sender=self.address,
            recipient=address,
            amount=amount,
            public_key=self.public_key_hex,
        )
        tx.signature = self.sign(tx.signing_payload())
        return tx
