"""
Tests for unilevel rebate disbursement.

Covers:
- Percentage and fixed rewards per level
- Level gaps and the level cap
- Idempotent re-invocation
- All-or-nothing rollback
- Cycle and validation failures
"""

from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from models import Member, Purchase, Rebate, RebateConfig, WalletTransaction
from models.purchase import PENDING
from models.rebate_config import FIXED, PERCENTAGE
from rewards_engine.errors import IntegrityViolation, NotFound, TransientStoreFailure, ValidationFailure
from rewards_engine.events.event_bus import RewardsEvents
from rewards_engine.services.rebate_service import (
    FixedReward, PercentageReward, RebateService, computeRebateAmount, computeRebatePV, rewardFromConfig
)
from rewards_engine.store.tree_store import TreeStore


def balance(session, member) -> Decimal:
    return session.query(Member).filter_by(memberID=member.memberID).one().walletBalance


@pytest.fixture
def upline(factory):
    """U3 <- U2 <- U1 <- buyer."""
    u3, u2, u1, buyer = factory.chain(4)
    return u3, u2, u1, buyer


class TestRewardVariants:

    def test_percentage_rounds_half_up(self):
        assert computeRebateAmount(PercentageReward(Decimal("12.5")), Decimal("0.20")) == Decimal("0.03")

    def test_fixed_ignores_total(self):
        assert computeRebateAmount(FixedReward(Decimal("20")), Decimal("500.00")) == Decimal("20.00")

    def test_pv_share(self):
        assert computeRebatePV(PercentageReward(Decimal("10")), Decimal("55.00"), Decimal("1")) == Decimal("5.50")
        assert computeRebatePV(FixedReward(Decimal("20")), Decimal("55.00"), Decimal("1")) == Decimal("0.55")

    def test_reward_from_config(self):
        percentage = rewardFromConfig(RebateConfig(rewardType=PERCENTAGE, percentage=Decimal("10")))
        fixed = rewardFromConfig(RebateConfig(rewardType=FIXED, fixedAmount=Decimal("20")))

        assert percentage == PercentageReward(Decimal("10"))
        assert fixed == FixedReward(Decimal("20.00"))

    def test_unknown_reward_type(self):
        with pytest.raises(IntegrityViolation):
            rewardFromConfig(RebateConfig(rewardType="bogus", productID=1, level=1))


class TestDisbursement:

    @pytest.mark.asyncio
    async def test_percentage_example(self, session, factory, upline):
        u3, u2, u1, buyer = upline
        product = factory.product(price="100.00")
        factory.percentageConfig(product, 1, "10")
        factory.percentageConfig(product, 2, "5")
        purchase = factory.purchase(buyer, product)

        result = await RebateService(session).disburse(purchase.purchaseID)

        assert [(r.receiverID, r.level, r.amount) for r in result.rebates] == [
            (u1.memberID, 1, Decimal("10.00")),
            (u2.memberID, 2, Decimal("5.00")),
        ]
        assert result.totalDistributed == Decimal("15.00")
        assert result.alreadyProcessed is False
        assert balance(session, u1) == Decimal("10.00")
        assert balance(session, u2) == Decimal("5.00")
        assert balance(session, u3) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_fixed_reward_at_level_six(self, session, factory):
        members = factory.chain(7)
        buyer, receiver = members[-1], members[0]
        product = factory.product(price="500.00")
        factory.fixedConfig(product, 6, "20.00")
        purchase = factory.purchase(buyer, product)

        result = await RebateService(session).disburse(purchase.purchaseID)

        assert len(result.rebates) == 1
        assert result.rebates[0].receiverID == receiver.memberID
        assert result.rebates[0].level == 6
        assert result.rebates[0].amount == Decimal("20.00")
        assert balance(session, receiver) == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_pv_rebates_recorded_next_to_money(self, session, factory, upline):
        u3, u2, u1, buyer = upline
        product = factory.product(price="100.00", pointValue="40.00")
        factory.percentageConfig(product, 1, "10")
        factory.fixedConfig(product, 2, "3.00")
        purchase = factory.purchase(buyer, product)

        result = await RebateService(session, fixedPVPercentage="1").disburse(purchase.purchaseID)

        assert [(r.amount, r.pvAmount) for r in result.rebates] == [
            (Decimal("10.00"), Decimal("4.00")),
            (Decimal("3.00"), Decimal("0.40")),
        ]
        assert result.totalPVDistributed == Decimal("4.40")
        stored = session.query(Rebate).filter_by(receiverID=u1.memberID).one()
        assert stored.pvAmount == Decimal("4.00")

    @pytest.mark.asyncio
    async def test_gap_in_levels_keeps_walking(self, session, factory, upline):
        u3, u2, u1, buyer = upline
        product = factory.product()
        factory.percentageConfig(product, 1, "10")
        factory.percentageConfig(product, 3, "2")
        purchase = factory.purchase(buyer, product)

        result = await RebateService(session).disburse(purchase.purchaseID)

        assert [r.receiverID for r in result.rebates] == [u1.memberID, u3.memberID]
        assert balance(session, u2) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_level_cap(self, session, factory, upline):
        u3, u2, u1, buyer = upline
        product = factory.product()
        for level in (1, 2, 3):
            factory.percentageConfig(product, level, "1")
        purchase = factory.purchase(buyer, product)

        result = await RebateService(session, maxLevel=2).disburse(purchase.purchaseID)

        assert [r.level for r in result.rebates] == [1, 2]

    @pytest.mark.asyncio
    async def test_ledger_matches_balances(self, session, factory, upline):
        u3, u2, u1, buyer = upline
        product = factory.product(price="80.00")
        factory.percentageConfig(product, 1, "7.5")
        factory.fixedConfig(product, 2, "3.00")
        purchase = factory.purchase(buyer, product)

        result = await RebateService(session).disburse(purchase.purchaseID)

        store = TreeStore(session)
        for rebate in result.rebates:
            member = session.query(Member).filter_by(memberID=rebate.receiverID).one()
            assert store.ledgerSum(member.memberID) == member.walletBalance
        assert sum(store.ledgerSum(m.memberID) for m in upline) == result.totalDistributed

    @pytest.mark.asyncio
    async def test_purchase_without_upline(self, session, factory):
        buyer = factory.member()
        product = factory.product()
        factory.percentageConfig(product, 1, "10")
        purchase = factory.purchase(buyer, product)

        result = await RebateService(session).disburse(purchase.purchaseID)

        assert result.rebates == []
        assert session.get(Purchase, purchase.purchaseID).isDisbursed


class TestIdempotence:

    @pytest.mark.asyncio
    async def test_second_call_returns_existing_rows(self, session, factory, upline):
        u3, u2, u1, buyer = upline
        product = factory.product()
        factory.percentageConfig(product, 1, "10")
        factory.percentageConfig(product, 2, "5")
        purchase = factory.purchase(buyer, product)
        service = RebateService(session)

        first = await service.disburse(purchase.purchaseID)
        second = await service.disburse(purchase.purchaseID)

        assert second.alreadyProcessed is True
        assert [r.rebateID for r in second.rebates] == [r.rebateID for r in first.rebates]
        assert session.query(Rebate).count() == 2
        assert session.query(WalletTransaction).count() == 2
        assert balance(session, u1) == Decimal("10.00")


class TestFailures:

    @pytest.mark.asyncio
    async def test_unknown_purchase(self, session):
        with pytest.raises(NotFound):
            await RebateService(session).disburse(999)

    @pytest.mark.asyncio
    async def test_invalid_purchase_id(self, session):
        with pytest.raises(ValidationFailure):
            await RebateService(session).disburse(0)

    @pytest.mark.asyncio
    async def test_pending_purchase_rejected(self, session, factory, upline):
        product = factory.product()
        purchase = factory.purchase(upline[-1], product, status=PENDING)

        with pytest.raises(ValidationFailure):
            await RebateService(session).disburse(purchase.purchaseID)

    @pytest.mark.asyncio
    async def test_missing_product(self, session, factory, upline):
        product = factory.product()
        purchase = factory.purchase(upline[-1], product)
        session.delete(product)
        session.commit()

        with pytest.raises(NotFound):
            await RebateService(session).disburse(purchase.purchaseID)

    @pytest.mark.asyncio
    async def test_cycle_aborts_without_writes(self, session, factory):
        a = factory.member(name="a")
        b = factory.member(upline=a, name="b")
        a.uplineID = b.memberID
        session.commit()
        buyer = factory.member(upline=b, name="buyer")
        product = factory.product()
        for level in range(1, 6):
            factory.percentageConfig(product, level, "1")
        purchase = factory.purchase(buyer, product)

        with pytest.raises(IntegrityViolation):
            await RebateService(session).disburse(purchase.purchaseID)

        assert session.query(Rebate).count() == 0
        assert session.query(WalletTransaction).count() == 0
        assert not session.get(Purchase, purchase.purchaseID).isDisbursed

    @pytest.mark.asyncio
    async def test_missing_upline_aborts_without_writes(self, session, factory, upline):
        u3, u2, u1, buyer = upline
        u2.uplineID = 999
        session.commit()
        product = factory.product()
        for level in range(1, 4):
            factory.percentageConfig(product, level, "1")
        purchase = factory.purchase(buyer, product)

        with pytest.raises(IntegrityViolation):
            await RebateService(session).disburse(purchase.purchaseID)

        assert session.query(Rebate).count() == 0
        assert balance(session, u1) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_store_failure_rolls_back_everything(self, session, factory, upline):
        u3, u2, u1, buyer = upline
        product = factory.product()
        factory.percentageConfig(product, 1, "10")
        factory.percentageConfig(product, 2, "5")
        purchase = factory.purchase(buyer, product)

        original = TreeStore.incrementWalletBalance
        calls = []

        def failOnSecond(store, memberId, amount):
            calls.append(memberId)
            if len(calls) == 2:
                raise OperationalError("UPDATE members", {}, Exception("database is locked"))
            return original(store, memberId, amount)

        with patch.object(TreeStore, "incrementWalletBalance", failOnSecond):
            with pytest.raises(TransientStoreFailure) as excinfo:
                await RebateService(session).disburse(purchase.purchaseID)

        assert excinfo.value.retryable is True
        assert session.query(Rebate).count() == 0
        assert session.query(WalletTransaction).count() == 0
        assert balance(session, u1) == Decimal("0.00")
        assert not session.get(Purchase, purchase.purchaseID).isDisbursed

        # Retry after the failure succeeds
        result = await RebateService(session).disburse(purchase.purchaseID)
        assert result.totalDistributed == Decimal("15.00")


class TestSideEffects:

    @pytest.mark.asyncio
    async def test_event_emitted_and_handler_errors_ignored(self, session, factory, upline, bus):
        received = []

        async def handler(data):
            received.append(data)

        def broken(data):
            raise RuntimeError("notification service down")

        bus.subscribe(RewardsEvents.REBATES_DISBURSED, broken)
        bus.subscribe(RewardsEvents.REBATES_DISBURSED, handler)

        product = factory.product()
        factory.percentageConfig(product, 1, "10")
        purchase = factory.purchase(upline[-1], product)

        result = await RebateService(session, bus=bus).disburse(purchase.purchaseID)

        assert len(result.rebates) == 1
        assert received[0]["purchaseID"] == purchase.purchaseID
        assert received[0]["total"] == "10.00"

    @pytest.mark.asyncio
    async def test_invalidates_cached_upline_roots(self, session, factory, upline, cache):
        u3, u2, u1, buyer = upline
        key = cache.makeKey(u3.memberID, "stats", 10)
        cache.getOrCompute(key, lambda: "stale")

        product = factory.product()
        factory.percentageConfig(product, 1, "10")
        purchase = factory.purchase(buyer, product)
        await RebateService(session, cache=cache).disburse(purchase.purchaseID)

        assert cache.getOrCompute(key, lambda: "fresh") == "fresh"
