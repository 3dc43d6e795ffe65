"""
Receipt ledger: canonical hashing, idempotent store, integrity on lookup.
"""
import asyncio
import hashlib

import pytest

from signalgate.lib.errors import IntegrityError
from signalgate.lib.receipts import (
    ReceiptLedger,
    canonical_receipt_bytes,
    compute_receipt_hash,
)
from signalgate.lib.storage import MemoryStorage

FIELDS = ("5xTx", '{"signal":"long"}', 1700000000000, "PayerKey")


class TestReceiptHash:
    def test_canonical_form(self):
        """Field order and compact separators are fixed; anyone can rebuild the bytes."""
        raw = canonical_receipt_bytes(*FIELDS)
        assert raw == (
            b'{"tx":"5xTx","signal":"{\\"signal\\":\\"long\\"}",'
            b'"timestamp":1700000000000,"client":"PayerKey"}'
        )
        assert compute_receipt_hash(*FIELDS) == hashlib.sha256(raw).hexdigest()

    def test_deterministic(self):
        assert compute_receipt_hash(*FIELDS) == compute_receipt_hash(*FIELDS)

    def test_every_field_changes_the_digest(self):
        base = compute_receipt_hash(*FIELDS)
        variants = [
            ("5xOther", FIELDS[1], FIELDS[2], FIELDS[3]),
            (FIELDS[0], '{"signal":"short"}', FIELDS[2], FIELDS[3]),
            (FIELDS[0], FIELDS[1], FIELDS[2] + 1, FIELDS[3]),
            (FIELDS[0], FIELDS[1], FIELDS[2], "OtherPayer"),
        ]
        for v in variants:
            assert compute_receipt_hash(*v) != base, f"digest should change for {v}"

    def test_missing_payer_hashes_as_empty_string(self):
        assert compute_receipt_hash("tx", "s", 1, None) == compute_receipt_hash("tx", "s", 1, "")


class TestReceiptLedger:
    def test_store_is_idempotent(self):
        async def scenario():
            storage = MemoryStorage()
            ticks = iter([100, 200])
            ledger = ReceiptLedger(storage, clock=lambda: next(ticks))

            first = await ledger.store(*FIELDS)
            second = await ledger.store(*FIELDS)
            rows = await ledger.list(10)
            return first, second, rows

        first, second, rows = asyncio.run(scenario())
        assert first == second, "same record -> same digest"
        assert len(rows) == 1, "second store must not add a row"
        assert rows[0].created_at == 100, "existing receipt is never overwritten"

    def test_lookup_round_trip(self):
        async def scenario():
            ledger = ReceiptLedger(MemoryStorage())
            digest = await ledger.store(*FIELDS)
            return digest, await ledger.lookup(digest.upper())

        digest, receipt = asyncio.run(scenario())
        assert receipt is not None
        assert receipt.hash == digest
        assert receipt.transaction_signature == "5xTx"
        assert receipt.request_timestamp == 1700000000000

    def test_lookup_unknown_or_malformed(self):
        async def scenario():
            ledger = ReceiptLedger(MemoryStorage())
            return await ledger.lookup("ab" * 32), await ledger.lookup("not-a-hash")

        assert asyncio.run(scenario()) == (None, None)

    def test_tampered_row_raises_integrity_error(self):
        async def scenario():
            storage = MemoryStorage()
            ledger = ReceiptLedger(storage)
            digest = await ledger.store(*FIELDS)
            storage._receipts[digest]["signal_content"] = '{"signal":"short"}'
            await ledger.lookup(digest)

        with pytest.raises(IntegrityError):
            asyncio.run(scenario())

    def test_list_newest_first(self):
        async def scenario():
            ticks = iter([1, 2, 3])
            ledger = ReceiptLedger(MemoryStorage(), clock=lambda: next(ticks))
            for tx in ("a", "b", "c"):
                await ledger.store(tx, "content", 1)
            return await ledger.list(2)

        rows = asyncio.run(scenario())
        assert [r.transaction_signature for r in rows] == ["c", "b"]
