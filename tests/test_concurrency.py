"""
Concurrent balance changes on one campaign, each thread with its own session.

SQLite ignores FOR UPDATE, so the file-backed engine opens every transaction
with BEGIN IMMEDIATE (the pysqlite recipe from the SQLAlchemy docs); writers
then queue on the database lock the way PostgreSQL writers queue on the row
lock. The PostgreSQL statement itself is checked by compiling it.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import sessionmaker

from database.models import Base, Campaign, Transaction, User, UserRole
from services.exceptions import InsufficientBalance
from services.ledger import BalanceLedger, campaign_for_update
from services.payout_service import PayoutOrchestrator

PAYPAL = {"paypal_email": "owner@example.com"}


class TestRowLock:

    def test_postgresql_locks_campaign_row(self):
        sql = str(campaign_for_update(1).compile(dialect=postgresql.dialect()))

        assert "FROM campaigns" in sql
        assert sql.rstrip().endswith("FOR UPDATE")

    def test_refreshes_identity_map(self):
        assert campaign_for_update(1).get_execution_options()["populate_existing"] is True


@pytest.fixture
def file_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(file_engine):
    return sessionmaker(bind=file_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def shared_campaign(session_factory):
    def _shared_campaign(balance):
        db = session_factory()
        try:
            owner = User(email="owner@example.com", full_name="Owner", role=UserRole.CAMPAIGN_OWNER)
            db.add(owner)
            db.flush()
            campaign = Campaign(
                user_id=owner.id,
                title="Shared",
                slug="shared",
                goal_amount=Decimal("10000.00"),
                current_amount=Decimal(balance),
                available_balance=Decimal(balance),
                paid_out=Decimal("0.00"),
                currency="USD",
                is_active=True,
            )
            db.add(campaign)
            db.commit()
            return campaign.id, owner.id
        finally:
            db.close()
    return _shared_campaign


def read_campaign(session_factory, campaign_id):
    db = session_factory()
    try:
        campaign = db.get(Campaign, campaign_id)
        rows = db.execute(
            select(Transaction).where(Transaction.campaign_id == campaign_id)
        ).scalars().all()
        return campaign.available_balance, len(rows)
    finally:
        db.close()


class TestConcurrentLedger:

    def test_credits_and_debits_interleave(self, session_factory, shared_campaign, settings):
        campaign_id, owner_id = shared_campaign("100.00")
        low_minimum = replace(settings, minimum_payout_amount=Decimal("5.00"))

        def donate(n):
            db = session_factory()
            try:
                BalanceLedger(db, settings.donation_fee_schedule()).credit(
                    campaign_id, Decimal("10.00"), donation_id=f"donation-{n}"
                )
            finally:
                db.close()

        def withdraw(n):
            db = session_factory()
            try:
                PayoutOrchestrator(db, low_minimum, processor=None).request_manual_payout(
                    campaign_id, owner_id, "paypal", PAYPAL, amount=Decimal("5.00")
                )
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(donate, n) for n in range(10)]
            futures += [pool.submit(withdraw, n) for n in range(10)]
            for future in futures:
                future.result()

        # 100.00 + 10 x 8.91 net - 10 x 5.00
        assert read_campaign(session_factory, campaign_id) == (Decimal("139.10"), 20)

    def test_oversubscribed_payouts(self, session_factory, shared_campaign, settings):
        campaign_id, owner_id = shared_campaign("100.00")

        def withdraw(n):
            db = session_factory()
            try:
                PayoutOrchestrator(db, settings, processor=None).request_manual_payout(
                    campaign_id, owner_id, "paypal", PAYPAL, amount=Decimal("30.00")
                )
                return True
            except InsufficientBalance:
                return False
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(withdraw, range(8)))

        assert results.count(True) == 3
        assert read_campaign(session_factory, campaign_id) == (Decimal("10.00"), 3)
