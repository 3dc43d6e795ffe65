"""
Content-addressed receipt ledger.

A receipt binds a settled payment to the signal it bought. Its key is

    sha256(canonical_json(tx, signal, timestamp, client))

where canonical_json is compact JSON with the fields in exactly that order:

    {"tx":"<transactionSignature>","signal":"<signalContent>","timestamp":<ms>,"client":"<clientPublicKey or empty>"}

That is the same byte string JSON.stringify produces for the same object, so
anyone holding the four fields can recompute the hash without trusting us.

INVARIANT: a stored receipt is never overwritten. Storing the same fields twice
is a no-op that returns the same hash.
"""
import hashlib
import json
import logging
import re
import time
from typing import Callable, Optional, List

from ..models.signals import Receipt
from .errors import IntegrityError

logger = logging.getLogger("receipts")

HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def now_ms() -> int:
    return int(time.time() * 1000)


def canonical_receipt_bytes(
    transaction_signature: str,
    signal_content: str,
    request_timestamp: int,
    client_public_key: Optional[str],
) -> bytes:
    body = {
        "tx": transaction_signature,
        "signal": signal_content,
        "timestamp": int(request_timestamp),
        "client": client_public_key or "",
    }
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_receipt_hash(
    transaction_signature: str,
    signal_content: str,
    request_timestamp: int,
    client_public_key: Optional[str] = None,
) -> str:
    """Deterministic 64-hex digest over the canonical receipt fields."""
    data = canonical_receipt_bytes(
        transaction_signature, signal_content, request_timestamp, client_public_key
    )
    return hashlib.sha256(data).hexdigest()


def verify_receipt(receipt: Receipt) -> bool:
    """Recompute the digest from the receipt's own fields."""
    expected = compute_receipt_hash(
        receipt.transaction_signature,
        receipt.signal_content,
        receipt.request_timestamp,
        receipt.client_public_key,
    )
    return expected == receipt.hash


class ReceiptLedger:
    """Hash ledger over a storage backend. Owns the receipts table."""

    def __init__(self, storage, clock: Callable[[], int] = now_ms):
        self.storage = storage
        self.clock = clock

    async def store(
        self,
        transaction_signature: str,
        signal_content: str,
        request_timestamp: int,
        client_public_key: Optional[str] = None,
    ) -> str:
        """
        Insert a receipt and return its hash.

        Idempotent: a second store of the same fields leaves the first row in
        place and returns the same hash. Storage errors propagate as
        StorageUnavailable; retrying is the caller's call.
        """
        digest = compute_receipt_hash(
            transaction_signature, signal_content, request_timestamp, client_public_key
        )
        row = {
            "hash": digest,
            "transaction_signature": transaction_signature,
            "signal_content": signal_content,
            "request_timestamp": int(request_timestamp),
            "client_public_key": client_public_key or None,
            "created_at": self.clock(),
        }
        inserted = await self.storage.insert_receipt(row)
        if inserted:
            logger.info(f"Receipt stored: {digest} tx={transaction_signature[:16]}")
        else:
            logger.info(f"Receipt already present: {digest}")
        return digest

    async def lookup(self, receipt_hash: str) -> Optional[Receipt]:
        """
        Fetch a receipt by hash, or None.

        The stored fields are re-hashed before returning. A mismatch means the
        row was altered after it was written and raises IntegrityError.
        """
        receipt_hash = receipt_hash.strip().lower()
        if not HASH_RE.match(receipt_hash):
            return None

        row = await self.storage.get_receipt(receipt_hash)
        if row is None:
            return None

        receipt = Receipt(**row)
        if not verify_receipt(receipt):
            logger.error(f"Receipt integrity failure for {receipt_hash}")
            raise IntegrityError(f"Stored receipt {receipt_hash} does not match its hash")
        return receipt

    async def list(self, limit: int = 50) -> List[Receipt]:
        """Newest first."""
        rows = await self.storage.list_receipts(max(1, limit))
        return [Receipt(**r) for r in rows]
