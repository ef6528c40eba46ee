"""
Tests for calendar-event correlation.
"""

from datetime import date, datetime

import pytest
from sqlalchemy import select

from conftest import make_event, make_transaction
from app.engine.calendar_correlator import CalendarCorrelator, correlation_type, score_event
from app.models.enums import CalendarSyncStatus, CorrelationType
from app.models.tables import CalendarCorrelation


def _dinner(company_id, **overrides):
    values = dict(location="Nobu Malibu", estimated_cost="100.00")
    values.update(overrides)
    return make_event(company_id, **values)


class TestScoreEvent:

    def test_same_day_everything_lines_up(self, company_id):
        tx = make_transaction(company_id, description="NOBU MALIBU ACME")
        # time 0.4 + amount 0.25 + location 0.2 + 1/3 title words x 0.15
        assert score_event(tx, _dinner(company_id)) == pytest.approx(0.9)
        assert correlation_type(tx, _dinner(company_id)) == CorrelationType.TIME

    def test_next_day_location(self, company_id):
        tx = make_transaction(company_id, on=date(2024, 3, 16), description="NOBU MALIBU")
        assert score_event(tx, _dinner(company_id)) == pytest.approx(0.3 + 0.25 + 0.2)
        assert correlation_type(tx, _dinner(company_id)) == CorrelationType.LOCATION

    @pytest.mark.parametrize("amount, points", [
        ("115.00", 0.25),
        ("135.00", 0.15),
        ("155.00", 0.05),
        ("170.00", 0.0),
    ])
    def test_amount_tiers(self, company_id, amount, points):
        tx = make_transaction(company_id, amount=amount, on=date(2024, 3, 18), description="SHELL OIL")
        assert score_event(tx, _dinner(company_id)) == pytest.approx(0.1 + points)

    def test_amount_then_merchant_fallback(self, company_id):
        near = make_transaction(company_id, on=date(2024, 3, 17), description="SHELL OIL")
        off = make_transaction(company_id, amount="30.00", on=date(2024, 3, 17), description="SHELL OIL")
        assert correlation_type(near, _dinner(company_id)) == CorrelationType.AMOUNT
        assert correlation_type(off, _dinner(company_id)) == CorrelationType.MERCHANT

    def test_no_estimated_cost(self, company_id):
        tx = make_transaction(company_id, on=date(2024, 3, 17), description="SHELL OIL")
        assert score_event(tx, _dinner(company_id, estimated_cost=None, location=None)) == pytest.approx(0.2)


class TestAnalyzeCorrelation:

    async def test_strong_match_is_persisted(self, session, company_id, add_event, add_transaction):
        event = await add_event(location="Nobu Malibu", estimated_cost="100.00")
        tx = await add_transaction(description="NOBU MALIBU ACME")

        result = await CalendarCorrelator().analyze_calendar_correlation(session, tx, company_id)

        assert result.has_correlation
        assert result.primary_event.event_id == str(event.id)
        row = (await session.execute(select(CalendarCorrelation))).scalar_one()
        assert str(row.id) == result.correlation_id
        assert row.correlation_type == CorrelationType.TIME.value

    async def test_weak_match_is_reported_not_saved(self, session, company_id, add_event, add_transaction):
        await add_event()
        tx = await add_transaction(on=date(2024, 3, 17), description="SHELL OIL")

        result = await CalendarCorrelator().analyze_calendar_correlation(session, tx, company_id)

        assert not result.has_correlation
        assert result.confidence == pytest.approx(0.2)
        assert len(result.events) == 1
        assert (await session.execute(select(CalendarCorrelation))).first() is None

    async def test_outside_window_and_inactive(self, session, company_id, add_event, add_transaction):
        await add_event(start=datetime(2024, 3, 1, 9, 0))
        cancelled = await add_event()
        cancelled.sync_status = CalendarSyncStatus.CANCELLED.value
        await session.commit()
        tx = await add_transaction()

        events = await CalendarCorrelator().find_events(session, tx, company_id)

        assert events == []

    async def test_multi_day_event_spans_transaction(self, session, company_id, add_event, add_transaction):
        conference = await add_event(
            title="Sales conference",
            start=datetime(2024, 3, 5, 9, 0),
            end=datetime(2024, 3, 20, 17, 0),
        )
        tx = await add_transaction()

        events = await CalendarCorrelator().find_events(session, tx, company_id)

        assert [e.id for e in events] == [conference.id]

    async def test_user_filter_keeps_unassigned(self, session, company_id, add_event, add_transaction):
        mine = await add_event(user_id="alice")
        shared = await add_event(user_id=None)
        await add_event(user_id="bob")
        tx = await add_transaction()
        correlator = CalendarCorrelator()

        scoped = await correlator.find_events(session, tx, company_id, user_id="alice")
        everyone = await correlator.find_events(session, tx, company_id)

        assert {e.id for e in scoped} == {mine.id, shared.id}
        assert len(everyone) == 3

    async def test_list_correlations(self, session, company_id, add_event, add_transaction):
        await add_event(location="Nobu Malibu", estimated_cost="100.00", user_id="alice")
        tx = await add_transaction(description="NOBU MALIBU ACME")
        correlator = CalendarCorrelator()
        await correlator.analyze_calendar_correlation(session, tx, company_id)

        rows = await correlator.list_calendar_correlations(session, company_id, user_id="alice")
        none_for_bob = await correlator.list_calendar_correlations(session, company_id, user_id="bob")

        assert len(rows) == 1
        correlation, event, transaction = rows[0]
        assert transaction.id == tx.id
        assert none_for_bob == []
