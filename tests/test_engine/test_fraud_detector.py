"""
Tests for fraud rules and alert persistence.
"""

import re
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select

from conftest import make_receipt, make_transaction
from app.engine.fraud_detector import (
    AmountHistory,
    FraudDetector,
    check_ocr_consistency,
    duplicate_transaction_risk,
    evaluate_suspicious_text,
    evaluate_time_anomaly,
    evaluate_unusual_amount,
    validate_receipt,
)
from app.engine.patterns import PatternTable, RegexRule, RuleContext, default_pattern_table
from app.models.enums import FraudAlertType
from app.models.tables import FraudAlert

GOOD_OCR = "Starbucks Store 1234 Seattle WA Latte 4.50 Muffin 3.25 Total $100.00 Thank you"
FOCAL_DAY = date(2024, 3, 13)


def _history(avg: str) -> AmountHistory:
    return AmountHistory(count=20, average=Decimal(avg), maximum=Decimal(avg) * 2)


class TestPureRules:

    def test_extreme_amount_beats_ratio(self):
        risk, description = evaluate_unusual_amount(Decimal("12000"), _history("100"))
        assert risk == 0.9
        assert description.startswith("Extremely high amount")

    def test_ratio_tier(self):
        risk, description = evaluate_unusual_amount(Decimal("-612.34"), _history("50"))
        assert risk == 0.8
        assert "higher than average" in description

    def test_normal_amount(self):
        assert evaluate_unusual_amount(Decimal("55"), _history("50"))[0] == 0.0

    def test_suspicious_text_takes_max(self):
        risk, reason = evaluate_suspicious_text("CASH ADVANCE UNKNOWN MERCHANT", default_pattern_table())
        assert risk == 0.9
        assert reason == "Cash advance transaction"

    def test_injected_table(self):
        table = PatternTable(
            suspicious_merchants=(RegexRule(re.compile("acme", re.IGNORECASE), 0.95, "Blocked vendor"),),
            suspicious_ocr=(),
        )
        assert evaluate_suspicious_text("ACME SUPPLIES", table) == (0.95, "Blocked vendor")
        assert evaluate_suspicious_text("CASH ADVANCE", table) == (0.0, "")

    def test_unusual_hour_needs_timestamp(self, company_id):
        table = default_pattern_table()
        date_only = make_transaction(company_id, on=FOCAL_DAY)
        stamped = make_transaction(company_id, on=FOCAL_DAY, posted_at=datetime(2024, 3, 13, 2, 15))
        assert evaluate_time_anomaly(date_only, {2: 10}, table)[0] == 0.0
        assert evaluate_time_anomaly(stamped, {2: 10}, table) == (0.6, "Transaction at unusual hour: 2:00")

    def test_weekend_for_weekday_company(self, company_id):
        saturday = make_transaction(company_id, on=date(2024, 3, 16))
        risk, _ = evaluate_time_anomaly(saturday, {0: 20, 1: 20, 5: 1}, default_pattern_table())
        assert risk == 0.4

    def test_holiday(self, company_id):
        christmas = make_transaction(company_id, on=date(2024, 12, 25))
        assert evaluate_time_anomaly(christmas, {2: 5}, default_pattern_table()) == (0.3, "Holiday transaction")

    def test_duplicate_risk_capped(self, company_id):
        a = make_transaction(company_id)
        b = make_transaction(company_id)
        assert duplicate_transaction_risk(a, b) == 1.0

    def test_round_number_rule(self):
        rule = default_pattern_table().rules[0]
        assert rule.evaluate(RuleContext(amount=Decimal("-1500.00"))) == 0.5
        assert rule.evaluate(RuleContext(amount=Decimal("300.00"))) == 0.0

    def test_same_merchant_same_day_rule(self):
        rule = default_pattern_table().rules[1]
        assert rule.evaluate(RuleContext(amount=Decimal("10"), same_merchant_same_day=2)) == 0.6
        assert rule.evaluate(RuleContext(amount=Decimal("10"), same_merchant_same_day=1)) == 0.0


class TestReceiptRules:

    def test_old_receipt_without_text(self, company_id):
        receipt = make_receipt(company_id, extracted_date="2023-01-01", ocr_text=None)
        risk, description = validate_receipt(receipt, date(2024, 3, 20))
        assert risk == 0.7
        assert "insufficient OCR text" in description
        assert "days old" in description

    def test_missing_amount_and_date(self, company_id):
        receipt = make_receipt(company_id, amount=None, extracted_date=None, ocr_text=GOOD_OCR)
        risk, description = validate_receipt(receipt, date(2024, 3, 20))
        assert risk == 0.5
        assert "Could not extract date" in description

    def test_valid_receipt(self, company_id):
        receipt = make_receipt(company_id, ocr_text=GOOD_OCR)
        assert validate_receipt(receipt, date(2024, 3, 20)) == (0.0, "")

    def test_ocr_amount_mismatch(self, company_id):
        receipt = make_receipt(company_id, amount="99.00", ocr_text="Subtotal $42.00 Tax $3.00 Total $45.00")
        risk, description = check_ocr_consistency(receipt, default_pattern_table())
        assert risk == 0.6
        assert "does not match" in description

    def test_void_text(self, company_id):
        receipt = make_receipt(company_id, ocr_text="VOID Total $100.00")
        risk, _ = check_ocr_consistency(receipt, default_pattern_table())
        assert risk == 0.8


class TestAnalyzeTransaction:

    async def _seed_history(self, add_transaction):
        for i in range(10):
            await add_transaction(
                amount=str(Decimal("40.00") + i),
                on=FOCAL_DAY - timedelta(days=i + 1),
                description="LUNCH CAFE",
            )

    async def test_no_amount_alert_without_history(self, session, company_id, add_transaction):
        tx = await add_transaction(amount="12345.67", on=FOCAL_DAY, description="OFFICE DEPOT")

        analysis = await FraudDetector().analyze_transaction(session, tx, company_id)

        types = [a.alert_type for a in analysis.alerts]
        assert FraudAlertType.UNUSUAL_AMOUNT not in types
        # high amount at a never-seen merchant
        assert types == [FraudAlertType.SUSPICIOUS_MERCHANT]
        assert analysis.risk_score == 0.6
        assert analysis.requires_review

    async def test_unusual_amount_with_history(self, session, company_id, add_transaction):
        await self._seed_history(add_transaction)
        tx = await add_transaction(amount="612.34", on=FOCAL_DAY, description="LUNCH CAFE")

        analysis = await FraudDetector().analyze_transaction(session, tx, company_id)

        assert [a.alert_type for a in analysis.alerts] == [FraudAlertType.UNUSUAL_AMOUNT]
        assert analysis.risk_score == 0.8
        rows = (await session.execute(select(FraudAlert))).scalars().all()
        assert len(rows) == 1
        assert rows[0].transaction_id == tx.id
        assert rows[0].receipt_id is None
        assert str(rows[0].id) == analysis.alerts[0].alert_id

    async def test_late_night_posting(self, session, company_id, add_transaction):
        await self._seed_history(add_transaction)
        tx = await add_transaction(
            amount="50.00",
            on=FOCAL_DAY,
            description="LUNCH CAFE",
            posted_at=datetime(2024, 3, 13, 2, 30),
        )

        analysis = await FraudDetector().analyze_transaction(session, tx, company_id)

        assert [a.alert_type for a in analysis.alerts] == [FraudAlertType.TIME_ANOMALY]

    async def test_duplicate_charge(self, session, company_id, add_transaction):
        await add_transaction(amount="87.65", on=FOCAL_DAY, description="UBER TRIP")
        tx = await add_transaction(amount="87.65", on=FOCAL_DAY, description="UBER TRIP")

        analysis = await FraudDetector().analyze_transaction(session, tx, company_id)

        duplicate = [a for a in analysis.alerts if a.alert_type == FraudAlertType.DUPLICATE_TRANSACTION]
        assert len(duplicate) == 1
        assert duplicate[0].risk_score == 1.0

    async def test_clean_transaction_writes_nothing(self, session, company_id, add_transaction):
        tx = await add_transaction(amount="12.34", on=FOCAL_DAY, description="LUNCH CAFE")

        analysis = await FraudDetector().analyze_transaction(session, tx, company_id)

        assert analysis.alerts == []
        assert analysis.risk_score == 0.0
        assert not analysis.requires_review
        assert (await session.execute(select(FraudAlert))).first() is None

    async def test_repeat_invocation_repeats_alerts(self, session, company_id, add_transaction):
        tx = await add_transaction(amount="250.00", on=FOCAL_DAY, description="CASH ADVANCE")
        detector = FraudDetector()

        await detector.analyze_transaction(session, tx, company_id)
        await detector.analyze_transaction(session, tx, company_id)

        rows = (await session.execute(select(FraudAlert))).scalars().all()
        assert len(rows) == 2


class TestAnalyzeReceipt:

    async def test_duplicate_receipt_alert(self, session, company_id, add_receipt):
        await add_receipt(ocr_text=GOOD_OCR)
        receipt = await add_receipt(ocr_text=GOOD_OCR)

        analysis = await FraudDetector().analyze_receipt(session, receipt, company_id, as_of=date(2024, 3, 20))

        assert [a.alert_type for a in analysis.alerts] == [FraudAlertType.DUPLICATE_RECEIPT]
        row = (await session.execute(select(FraudAlert))).scalar_one()
        assert row.receipt_id == receipt.id
        assert row.transaction_id is None

    async def test_stale_receipt(self, session, company_id, add_receipt):
        receipt = await add_receipt(extracted_date="2022-06-01", ocr_text=GOOD_OCR)

        analysis = await FraudDetector().analyze_receipt(session, receipt, company_id, as_of=date(2024, 3, 20))

        assert [a.alert_type for a in analysis.alerts] == [FraudAlertType.RECEIPT_VALIDATION]
        assert analysis.risk_score == 0.7
