"""
Tests for receipt-to-transaction matching.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import make_receipt, make_transaction
from app.engine.receipt_matcher import (
    ReceiptMatcher,
    rank_candidates,
    score_amount,
    score_candidate,
    score_date,
    score_merchant,
)
from app.models.enums import MatchStatus
from app.models.tables import Match


class TestScoring:

    @pytest.mark.parametrize("tx_amount, points", [
        ("100.00", 60),
        ("99.00", 40),
        ("105.00", 20),
        ("90.00", 10),
        ("89.99", 0),
        ("-100.00", 60),
    ])
    def test_amount_tiers(self, tx_amount, points):
        score, _, _ = score_amount(Decimal(tx_amount), Decimal("100.00"))
        assert score == points

    def test_amount_missing(self):
        assert score_amount(Decimal("10"), None) == (0, None, None)

    @pytest.mark.parametrize("receipt_date, points", [
        ("2024-03-15", 25),
        ("2024-03-16", 15),
        ("03/18/2024", 5),
        ("2024-03-19", 0),
        ("garbage", 0),
    ])
    def test_date_tiers(self, receipt_date, points):
        score, _ = score_date(date(2024, 3, 15), receipt_date)
        assert score == points

    def test_merchant_exact_substring(self):
        assert score_merchant("STARBUCKS STORE 1234", "Starbucks") == (25, "Exact merchant match")

    def test_merchant_keyword_overlap(self):
        score, reason = score_merchant("AMAZON MKTPLACE PMTS", "Amazon Marketplace Inc")
        # 1 of 2 words, 1 significant: 1/2 * 15 + 5
        assert score == pytest.approx(12.5)
        assert "1 words" in reason

    def test_merchant_only_stopwords(self):
        assert score_merchant("ACME LLC", "LLC Inc") == (0, None)

    def test_perfect_candidate_scores_110(self, company_id):
        receipt = make_receipt(company_id)
        tx = make_transaction(company_id)
        candidate = score_candidate(receipt, tx)
        assert candidate.confidence == 110
        assert candidate.reasons == ["Exact amount match", "Same date", "Exact merchant match"]

    def test_rank_drops_below_minimum_and_keeps_order(self, company_id):
        receipt = make_receipt(company_id)
        weak = make_transaction(company_id, amount="500.00", on=date(2024, 1, 1), description="SHELL OIL")
        first = make_transaction(company_id, description="STARBUCKS A")
        second = make_transaction(company_id, description="STARBUCKS B")
        ranked = rank_candidates(receipt, [weak, first, second])
        assert [c.transaction_id for c in ranked] == [str(first.id), str(second.id)]

    def test_rank_without_receipt_amount(self, company_id):
        receipt = make_receipt(company_id, amount=None)
        assert rank_candidates(receipt, [make_transaction(company_id)]) == []


class TestAutoMatch:

    async def test_auto_match_persists_top_candidate(self, session, company_id, add_receipt, add_transaction):
        receipt = await add_receipt()
        tx = await add_transaction()
        await add_transaction(amount="42.00", description="SHELL OIL")

        result = await ReceiptMatcher().auto_match_receipt(session, receipt, company_id)

        assert result.matched
        assert result.transaction_id == str(tx.id)
        assert result.confidence == 110
        match = (await session.execute(select(Match))).scalar_one()
        assert match.status == MatchStatus.AUTO_MATCHED.value
        assert not match.user_confirmed

    async def test_below_threshold_writes_nothing(self, session, company_id, add_receipt, add_transaction):
        receipt = await add_receipt()
        await add_transaction(amount="95.00", on=date(2024, 3, 17), description="SHELL OIL")

        result = await ReceiptMatcher().auto_match_receipt(session, receipt, company_id)

        assert not result.matched
        assert result.confidence == 25
        count = (await session.execute(select(func.count(Match.id)))).scalar()
        assert count == 0

    async def test_confirmed_receipt_is_skipped(self, session, company_id, add_receipt, add_transaction):
        receipt = await add_receipt()
        tx = await add_transaction()
        matcher = ReceiptMatcher()
        await matcher.create_manual_match(session, tx.id, receipt.id, company_id, confirm=True, user_id="u1")

        result = await matcher.auto_match_receipt(session, receipt, company_id)

        assert not result.matched
        assert result.skipped_reason == "receipt_already_confirmed"

    async def test_confirmed_transactions_are_not_candidates(self, session, company_id, add_receipt, add_transaction):
        taken = await add_transaction()
        other_receipt = await add_receipt()
        matcher = ReceiptMatcher()
        await matcher.create_manual_match(session, taken.id, other_receipt.id, company_id, confirm=True)

        receipt = await add_receipt()
        candidates = await matcher.find_receipt_matches(session, receipt, company_id)
        assert str(taken.id) not in [c.transaction_id for c in candidates]

    async def test_other_company_is_invisible(self, session, company_id, other_company_id, add_receipt, add_transaction):
        receipt = await add_receipt()
        await add_transaction(company_id=other_company_id)

        candidates = await ReceiptMatcher().find_receipt_matches(session, receipt, company_id)
        assert candidates == []

    async def test_upsert_is_one_row_per_pair(self, session, add_receipt, add_transaction):
        receipt = await add_receipt()
        tx = await add_transaction()
        matcher = ReceiptMatcher()

        await matcher.upsert_match(session, tx.id, receipt.id, 50.0)
        match = await matcher.upsert_match(session, tx.id, receipt.id, 80.0, status=MatchStatus.AUTO_MATCHED)

        rows = (await session.execute(select(Match))).scalars().all()
        assert len(rows) == 1
        assert match.confidence == 80.0
        assert match.status == MatchStatus.AUTO_MATCHED.value


class TestBulkAutoMatch:

    async def test_greedy_assignment(self, session, company_id, add_receipt, add_transaction):
        await add_receipt()
        await add_receipt()
        exact = await add_transaction()
        later = await add_transaction(on=date(2024, 3, 25), description="STARBUCKS STORE 99")

        summary = await ReceiptMatcher().bulk_auto_match(session, company_id)

        assert summary.total_receipts == 2
        assert summary.matched == 2
        matched = {d.transaction_id for d in summary.details}
        assert matched == {str(exact.id), str(later.id)}

    async def test_skips_pending_and_amountless_receipts(self, session, company_id, add_receipt, add_transaction):
        await add_receipt(processing_status="pending")
        await add_receipt(amount=None)
        await add_transaction()

        summary = await ReceiptMatcher().bulk_auto_match(session, company_id)

        assert summary.total_receipts == 0
        assert summary.matched == 0

    async def test_threshold_override(self, session, company_id, add_receipt, add_transaction):
        await add_receipt()
        await add_transaction(on=date(2024, 3, 25), description="STARBUCKS STORE 99")

        summary = await ReceiptMatcher().bulk_auto_match(session, company_id, threshold=90)

        assert summary.matched == 0
        assert summary.threshold == 90
