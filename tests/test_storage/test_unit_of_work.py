"""
Tests for the transactional unit of work.
"""

import uuid

import pytest
from sqlalchemy import func, select

from conftest import make_receipt, make_transaction
from app.engine.errors import PersistenceFailure
from app.models.tables import Match, Transaction
from app.storage.unit_of_work import UnitOfWork


class TestUnitOfWork:

    async def test_commits_on_success(self, session, company_id):
        async with UnitOfWork(session) as uow:
            uow.add(make_transaction(company_id))

        count = (await session.execute(select(func.count(Transaction.id)))).scalar()
        assert count == 1

    async def test_rolls_back_on_error(self, session, company_id):
        with pytest.raises(RuntimeError):
            async with UnitOfWork(session) as uow:
                uow.add_all([make_transaction(company_id), make_transaction(company_id)])
                await uow.flush()
                raise RuntimeError("boom")

        count = (await session.execute(select(func.count(Transaction.id)))).scalar()
        assert count == 0

    async def test_database_error_becomes_persistence_failure(self, session, company_id):
        tx = make_transaction(company_id)
        receipt = make_receipt(company_id)
        session.add_all([tx, receipt])
        await session.commit()
        tx_id, receipt_id = tx.id, receipt.id

        with pytest.raises(PersistenceFailure):
            async with UnitOfWork(session, label="pair") as uow:
                uow.add(Match(id=uuid.uuid4(), transaction_id=tx_id, receipt_id=receipt_id))
                uow.add(Match(id=uuid.uuid4(), transaction_id=tx_id, receipt_id=receipt_id))

        count = (await session.execute(select(func.count(Match.id)))).scalar()
        assert count == 0
