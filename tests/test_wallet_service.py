"""
Tests for wallet reconciliation and administrative resets.
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from models import Member, WalletTransaction
from models.wallet_transaction import ADMIN_RESET
from rewards_engine.context import CallerContext
from rewards_engine.errors import IntegrityViolation, ValidationFailure
from rewards_engine.events.event_bus import RewardsEvents
from rewards_engine.services.rebate_service import RebateService
from rewards_engine.services.wallet_service import WalletService

ADMIN = CallerContext(actorID=1, isAdmin=True, reason="chargeback")


@pytest_asyncio.fixture
async def credited(session, factory):
    """Sponsor credited 10.00 by one disbursed purchase."""
    sponsor, buyer = factory.chain(2)
    product = factory.product(price="100.00")
    factory.percentageConfig(product, 1, "10")
    purchase = factory.purchase(buyer, product)
    await RebateService(session).disburse(purchase.purchaseID)
    return sponsor


def balance(session, member) -> Decimal:
    return session.query(Member).filter_by(memberID=member.memberID).one().walletBalance


class TestReconcile:

    @pytest.mark.asyncio
    async def test_balance_matches_ledger(self, session, credited):
        result = await WalletService(session).reconcile(credited.memberID)

        assert result.consistent is True
        assert result.ledgerSum == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_tampered_balance_is_an_integrity_violation(self, session, credited):
        session.query(Member).filter_by(memberID=credited.memberID).update({"walletBalance": Decimal("99.00")})
        session.commit()

        with pytest.raises(IntegrityViolation) as excinfo:
            await WalletService(session).reconcile(credited.memberID)

        assert excinfo.value.details["ledgerSum"] == "10.00"

    @pytest.mark.asyncio
    async def test_sweep_reports_imbalances(self, session, factory, credited):
        other = factory.member(walletBalance=Decimal("5.00"))

        imbalances = await WalletService(session).findImbalances()

        assert [r.memberID for r in imbalances] == [other.memberID]
        assert imbalances[0].difference == Decimal("5.00")


class TestAdminReset:

    @pytest.mark.asyncio
    async def test_requires_admin_context(self, session, credited):
        with pytest.raises(ValidationFailure):
            await WalletService(session).adminReset(credited.memberID, CallerContext(actorID=5))

        assert balance(session, credited) == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_reset_writes_ledger_row(self, session, credited, bus):
        received = []
        bus.subscribe(RewardsEvents.WALLET_RESET, received.append)
        service = WalletService(session, bus=bus)

        transactionId = await service.adminReset(credited.memberID, ADMIN)

        row = session.get(WalletTransaction, transactionId)
        assert row.type == ADMIN_RESET
        assert row.amount == Decimal("-10.00")
        assert row.description == "chargeback"
        assert balance(session, credited) == Decimal("0.00")
        assert (await service.reconcile(credited.memberID)).consistent
        assert received[0]["previousBalance"] == "10.00"

    @pytest.mark.asyncio
    async def test_empty_wallet_is_a_no_op(self, session, factory):
        member = factory.member()

        assert await WalletService(session).adminReset(member.memberID, ADMIN) is None
        assert session.query(WalletTransaction).count() == 0
