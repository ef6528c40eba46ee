"""
Tests for multi-receipt split allocation.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import make_receipt, make_transaction
from app.engine.lookups import get_receipts
from app.engine.split_allocator import SplitAllocator, allocate, split_confidence
from app.models.tables import TransactionSplit


class TestAllocate:

    def test_equal_thirds_sum_exactly(self):
        shares = allocate(Decimal("100.00"), [Decimal("10")] * 3)
        assert shares == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]
        assert sum(shares) == Decimal("100.00")

    def test_leftover_goes_to_largest_share(self):
        shares = allocate(Decimal("-10.00"), [Decimal("1"), Decimal("2"), Decimal("4")])
        assert sum(shares) == Decimal("10.00")
        assert shares[2] == max(shares)

    def test_proportional(self):
        assert allocate(Decimal("100"), [Decimal("60"), Decimal("40")]) == [Decimal("60.00"), Decimal("40.00")]

    def test_zero_receipts_total(self):
        assert allocate(Decimal("100"), [Decimal("0"), Decimal("0")]) == [Decimal("0"), Decimal("0")]


class TestAnalyze:

    def test_single_receipt_rejected(self, company_id):
        tx = make_transaction(company_id)
        result = SplitAllocator().analyze(tx, [make_receipt(company_id)])
        assert not result.can_split
        assert result.reason == "at_least_two_receipts_required"

    def test_amount_mismatch(self, company_id):
        tx = make_transaction(company_id)
        receipts = [make_receipt(company_id, amount="50.00"), make_receipt(company_id, amount="40.00")]
        result = SplitAllocator().analyze(tx, receipts)
        assert not result.can_split
        assert result.reason == "amount_mismatch"
        assert result.amount_difference == Decimal("10.00")

    def test_same_merchant_same_day(self, company_id):
        tx = make_transaction(company_id)
        receipts = [make_receipt(company_id, amount="25.00") for _ in range(4)]
        result = SplitAllocator().analyze(tx, receipts)
        # 0.4 + 0.3 + 0.2 + 0.08
        assert result.confidence == pytest.approx(0.98)
        assert result.can_split
        assert [s.split_amount for s in result.splits] == [Decimal("25.00")] * 4
        assert result.splits[0].split_percentage == Decimal("25.0000")

    def test_mixed_merchants(self, company_id):
        tx = make_transaction(company_id)
        receipts = [
            make_receipt(company_id, amount="60.00", merchant="Starbucks"),
            make_receipt(company_id, amount="40.00", merchant="Target"),
        ]
        assert split_confidence(tx, receipts) == pytest.approx(0.84)

    def test_far_dates_are_low_confidence(self, company_id):
        tx = make_transaction(company_id)
        receipts = [
            make_receipt(company_id, amount="60.00", extracted_date="2024-03-01", merchant="Starbucks"),
            make_receipt(company_id, amount="40.00", extracted_date="2024-03-01", merchant="Target"),
        ]
        result = SplitAllocator().analyze(tx, receipts)
        assert not result.can_split
        assert result.reason == "low_confidence"
        assert result.splits


class TestPersistSplits:

    async def test_split_transaction_writes_rows(self, session, company_id, add_transaction, add_receipt):
        tx = await add_transaction()
        big = await add_receipt(amount="60.00", filename="lunch.jpg")
        small = await add_receipt(amount="40.00", filename="coffee.jpg")
        allocator = SplitAllocator()

        result = await allocator.split_transaction(session, tx, [big, small], user_id="u1")

        assert result.split_group_id is not None
        rows = await allocator.get_transaction_splits(session, tx.id)
        assert [r.receipt_id for r in rows] == [big.id, small.id]
        assert sum(Decimal(str(r.split_amount)) for r in rows) == Decimal("100.00")
        assert {str(r.split_group_id) for r in rows} == {result.split_group_id}
        assert rows[0].created_by == "u1"
        assert rows[0].description == "Split for lunch.jpg (60.0%)"

    async def test_rejected_split_writes_nothing(self, session, company_id, add_transaction, add_receipt):
        tx = await add_transaction()
        receipts = [await add_receipt(amount="10.00"), await add_receipt(amount="10.00")]

        result = await SplitAllocator().split_transaction(session, tx, receipts)

        assert result.split_group_id is None
        assert (await session.execute(select(TransactionSplit))).first() is None

    async def test_repeated_receipt_counts_once(self, session, company_id, add_transaction, add_receipt):
        tx = await add_transaction()
        half = await add_receipt(amount="50.00")

        result = await SplitAllocator().split_transaction(session, tx, [half, half])

        assert not result.can_split
        assert result.reason == "at_least_two_receipts_required"
        assert result.total_receipt_amount == Decimal("0")
        assert (await session.execute(select(TransactionSplit))).first() is None

    async def test_lookup_returns_each_receipt_once(self, session, company_id, add_receipt):
        first = await add_receipt(amount="60.00")
        second = await add_receipt(amount="40.00")

        receipts = await get_receipts(session, [first.id, second.id, first.id], company_id)

        assert [r.id for r in receipts] == [first.id, second.id]

    async def test_repeated_receipt_gets_one_share(self, session, company_id, add_transaction, add_receipt):
        tx = await add_transaction()
        big = await add_receipt(amount="60.00")
        small = await add_receipt(amount="40.00")
        allocator = SplitAllocator()

        result = await allocator.split_transaction(session, tx, [big, small, big])

        assert result.can_split
        rows = await allocator.get_transaction_splits(session, tx.id)
        assert [r.receipt_id for r in rows] == [big.id, small.id]
        assert [Decimal(str(r.split_amount)) for r in rows] == [Decimal("60.00"), Decimal("40.00")]
