# rewards_engine/services/rebate_service.py
"""
Unilevel rebate disbursement - replaces the old per-rebate processor.

One completed purchase fans out to at most `maxLevel` upline members. All
rebate rows, ledger rows and wallet increments for the purchase commit in a
single transaction together with the purchase's disbursement mark.
"""
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import List, Optional, Union
import logging

from sqlalchemy.orm import Session

import config
from models import Member, Purchase, Rebate, RebateConfig
from models.purchase import COMPLETED
from models.rebate_config import PERCENTAGE, FIXED
from models.wallet_transaction import REBATE
from rewards_engine.cache.genealogy_cache import GenealogyCache
from rewards_engine.context import CallerContext, SYSTEM
from rewards_engine.errors import AlreadyProcessed, IntegrityViolation, NotFound, ValidationFailure
from rewards_engine.events.event_bus import EventBus, RewardsEvents, eventBus
from rewards_engine.services.tree_walk import affectedRoots, walkUpline
from rewards_engine.store.tree_store import TreeStore
from rewards_engine.utils.money import percentOf, toDecimal, toMoney
from rewards_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

PROCESSED = "processed"


@dataclass(frozen=True)
class PercentageReward:
    percentage: Decimal

    rewardType = PERCENTAGE

    @property
    def rate(self) -> Decimal:
        return self.percentage


@dataclass(frozen=True)
class FixedReward:
    amount: Decimal

    rewardType = FIXED

    @property
    def rate(self) -> Decimal:
        return self.amount


Reward = Union[PercentageReward, FixedReward]


def rewardFromConfig(rebateConfig: RebateConfig) -> Reward:
    """Turn a stored config row into its reward variant."""
    if rebateConfig.rewardType == PERCENTAGE:
        return PercentageReward(toDecimal(rebateConfig.percentage))
    if rebateConfig.rewardType == FIXED:
        return FixedReward(toMoney(rebateConfig.fixedAmount))
    raise IntegrityViolation(
        f"Unknown reward type {rebateConfig.rewardType!r}",
        productID=rebateConfig.productID,
        level=rebateConfig.level
    )


def computeRebateAmount(reward: Reward, totalAmount) -> Decimal:
    """Amount for one level, rounded half-up to the cent."""
    if isinstance(reward, PercentageReward):
        return percentOf(totalAmount, reward.percentage)
    if isinstance(reward, FixedReward):
        return toMoney(reward.amount)
    raise TypeError(f"Unsupported reward {reward!r}")


def computeRebatePV(reward: Reward, totalPV, fixedPVPercentage) -> Decimal:
    """
    Point value credited alongside the money rebate. Percentage rewards use
    their own rate on the purchase PV; fixed rewards a flat share of it.
    """
    if isinstance(reward, PercentageReward):
        return percentOf(totalPV, reward.percentage)
    if isinstance(reward, FixedReward):
        return percentOf(totalPV, fixedPVPercentage)
    raise TypeError(f"Unsupported reward {reward!r}")


@dataclass
class RebateResult:
    rebateID: int
    receiverID: int
    level: int
    rewardType: str
    rate: Decimal
    amount: Decimal
    pvAmount: Decimal
    walletTransactionID: Optional[int]

    @classmethod
    def fromRebate(cls, rebate: Rebate) -> "RebateResult":
        return cls(
            rebateID=rebate.rebateID,
            receiverID=rebate.receiverID,
            level=rebate.level,
            rewardType=rebate.rewardType,
            rate=toDecimal(rebate.rate),
            amount=toMoney(rebate.amount),
            pvAmount=toMoney(rebate.pvAmount),
            walletTransactionID=rebate.walletTransactionID
        )


@dataclass
class DisbursementResult:
    purchaseID: int
    buyerID: int
    rebates: List[RebateResult] = field(default_factory=list)
    alreadyProcessed: bool = False

    @property
    def totalDistributed(self) -> Decimal:
        return toMoney(sum((r.amount for r in self.rebates), Decimal("0")))

    @property
    def totalPVDistributed(self) -> Decimal:
        return toMoney(sum((r.pvAmount for r in self.rebates), Decimal("0")))

    def toDict(self) -> dict:
        data = asdict(self)
        data["totalDistributed"] = self.totalDistributed
        data["totalPVDistributed"] = self.totalPVDistributed
        return data


@dataclass
class _PlannedRebate:
    level: int
    receiver: Member
    reward: Reward
    amount: Decimal
    pvAmount: Decimal


class RebateService:
    """Service for disbursing unilevel rebates on completed purchases."""

    def __init__(
            self,
            session: Session,
            maxLevel: int = None,
            fixedPVPercentage=None,
            cache: GenealogyCache = None,
            bus: EventBus = None
    ):
        self.session = session
        self.store = TreeStore(session)
        self.maxLevel = maxLevel if maxLevel is not None else config.MAX_REBATE_LEVEL
        self.fixedPVPercentage = toDecimal(
            fixedPVPercentage if fixedPVPercentage is not None else config.FIXED_REBATE_PV_PERCENTAGE
        )
        self.cache = cache
        self.bus = bus or eventBus

    async def disburse(self, purchaseId: int, context: CallerContext = SYSTEM) -> DisbursementResult:
        """
        Disburse rebates for a purchase exactly once.
        Re-invocation returns the rows written by the first call.
        """
        if not isinstance(purchaseId, int) or purchaseId <= 0:
            raise ValidationFailure(f"Invalid purchase id {purchaseId!r}")

        purchase = self.store.getPurchase(purchaseId)
        if not purchase:
            raise NotFound(f"Purchase {purchaseId} not found", purchaseID=purchaseId)

        existing = self.store.getRebatesForPurchase(purchaseId)
        if purchase.isDisbursed or existing:
            logger.info(f"Purchase {purchaseId} already disbursed, returning {len(existing)} rebates")
            return self._existingResult(purchase, existing)

        self._validatePurchase(purchase)

        buyer = self.store.getMember(purchase.buyerID)
        if not buyer:
            raise NotFound(f"Buyer {purchase.buyerID} not found", purchaseID=purchaseId)

        if not self.store.getProduct(purchase.productID):
            raise NotFound(f"Product {purchase.productID} not found", purchaseID=purchaseId)

        plan = self._planRebates(purchase, buyer)

        try:
            with self.store.transaction():
                locked = self.store.getPurchase(purchaseId, lock=True)
                if locked.isDisbursed:
                    raise AlreadyProcessed(f"Purchase {purchaseId} was disbursed concurrently")

                processedAt = timeMachine.now
                results = [
                    RebateResult.fromRebate(self._writeRebate(purchase, planned, processedAt))
                    for planned in plan
                ]
                locked.rebatesDisbursedAt = processedAt
        except AlreadyProcessed:
            logger.info(f"Purchase {purchaseId} disbursed by a concurrent call")
            return self._existingResult(purchase, self.store.getRebatesForPurchase(purchaseId))

        result = DisbursementResult(
            purchaseID=purchaseId,
            buyerID=purchase.buyerID,
            rebates=results
        )

        logger.info(
            f"Disbursed purchase {purchaseId}: "
            f"{len(result.rebates)} rebates, "
            f"total {result.totalDistributed} (actor={context.actorID})"
        )

        self._invalidate(purchase.buyerID)
        await self.bus.emit(RewardsEvents.REBATES_DISBURSED, {
            "purchaseID": purchaseId,
            "buyerID": purchase.buyerID,
            "receivers": [r.receiverID for r in result.rebates],
            "total": str(result.totalDistributed),
            "totalPV": str(result.totalPVDistributed)
        })
        return result

    def _validatePurchase(self, purchase: Purchase):
        if purchase.status != COMPLETED:
            raise ValidationFailure(
                f"Purchase {purchase.purchaseID} is {purchase.status}, only completed purchases are disbursed",
                purchaseID=purchase.purchaseID,
                status=purchase.status
            )
        if purchase.quantity is None or purchase.quantity <= 0:
            raise ValidationFailure(
                f"Purchase {purchase.purchaseID} has invalid quantity {purchase.quantity}",
                purchaseID=purchase.purchaseID
            )
        if toDecimal(purchase.totalAmount) < 0:
            raise ValidationFailure(
                f"Purchase {purchase.purchaseID} has negative total",
                purchaseID=purchase.purchaseID
            )

    def _planRebates(self, purchase: Purchase, buyer: Member) -> List[_PlannedRebate]:
        """Walk the upline and resolve one rebate per configured level."""
        configs = self.store.getRebateConfigs(purchase.productID)
        plan = []

        for level, upline in walkUpline(self.store, buyer, maxLevels=self.maxLevel):
            rebateConfig = configs.get(level)
            if rebateConfig is None:
                # Gap in configured levels: keep walking
                logger.debug(f"No rebate config for product {purchase.productID} level {level}")
                continue

            reward = rewardFromConfig(rebateConfig)
            amount = computeRebateAmount(reward, purchase.totalAmount)
            if amount <= 0:
                logger.debug(f"Zero rebate at level {level} for purchase {purchase.purchaseID}, skipped")
                continue

            pvAmount = computeRebatePV(reward, purchase.totalPV, self.fixedPVPercentage)
            plan.append(_PlannedRebate(level=level, receiver=upline, reward=reward, amount=amount, pvAmount=pvAmount))

        return plan

    def _writeRebate(self, purchase: Purchase, planned: _PlannedRebate, processedAt) -> Rebate:
        """Ledger row, wallet increment and rebate row for one level."""
        receiverId = planned.receiver.memberID

        transaction = self.store.appendWalletTransaction(
            receiverId,
            planned.amount,
            REBATE,
            description=f"Level {planned.level} rebate from purchase {purchase.purchaseID}",
            reference=f"purchase={purchase.purchaseID}"
        )
        self.store.incrementWalletBalance(receiverId, planned.amount)

        rebate = self.store.createRebate(
            purchaseID=purchase.purchaseID,
            generatorID=purchase.buyerID,
            receiverID=receiverId,
            walletTransactionID=transaction.walletTransactionID,
            level=planned.level,
            rewardType=planned.reward.rewardType,
            rate=planned.reward.rate,
            amount=planned.amount,
            pvAmount=planned.pvAmount,
            status=PROCESSED,
            processedAt=processedAt
        )

        logger.info(
            f"Level {planned.level} rebate {planned.amount} credited to member {receiverId} "
            f"for purchase {purchase.purchaseID}"
        )
        return rebate

    def _existingResult(self, purchase: Purchase, rebates: List[Rebate]) -> DisbursementResult:
        return DisbursementResult(
            purchaseID=purchase.purchaseID,
            buyerID=purchase.buyerID,
            rebates=[RebateResult.fromRebate(r) for r in rebates],
            alreadyProcessed=True
        )

    def _invalidate(self, memberId: int):
        if self.cache is None:
            return
        roots = affectedRoots(self.store, [memberId])
        if roots is None:
            self.cache.invalidateAll()
        else:
            self.cache.invalidateRoots(roots)
