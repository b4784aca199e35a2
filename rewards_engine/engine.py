# rewards_engine/engine.py
"""
RewardsEngine - the surface the API layer calls.

Wires the services to one session, one genealogy cache and one event bus.
"""
from datetime import datetime
from decimal import Decimal
from typing import List
import logging

from sqlalchemy.orm import Session

from rewards_engine.cache.genealogy_cache import GenealogyCache
from rewards_engine.context import CallerContext, SYSTEM
from rewards_engine.events.event_bus import EventBus, eventBus
from rewards_engine.services.binary_service import BinaryService, MatchingSettlement, PlacementResult
from rewards_engine.services.genealogy_service import GenealogyService
from rewards_engine.services.rank_service import RankEvaluation, RankService
from rewards_engine.services.rebate_service import DisbursementResult, RebateService
from rewards_engine.services.wallet_service import Reconciliation, WalletService

logger = logging.getLogger(__name__)


class RewardsEngine:
    """Facade over disbursement, ranks, binary placement and genealogy."""

    def __init__(self, session: Session, cache: GenealogyCache = None, bus: EventBus = None, **settings):
        self.session = session
        self.cache = cache if cache is not None else GenealogyCache.fromConfig()
        self.bus = bus or eventBus

        self.rebates = RebateService(
            session,
            maxLevel=settings.get("maxRebateLevel"),
            fixedPVPercentage=settings.get("fixedRebatePVPercentage"),
            cache=self.cache,
            bus=self.bus
        )
        self.ranks = RankService(
            session,
            windowDays=settings.get("rankWindowDays"),
            maxDownlineDepth=settings.get("rankMaxDownlineDepth"),
            qualifiedScope=settings.get("qualifiedScope"),
            maxPasses=settings.get("rankMaxPasses"),
            cache=self.cache,
            bus=self.bus
        )
        self.binary = BinaryService(
            session,
            matchingRate=settings.get("matchingRate"),
            carryForward=settings.get("carryForward"),
            cache=self.cache,
            bus=self.bus
        )
        self.genealogyService = GenealogyService(session, cache=self.cache)
        self.wallets = WalletService(session, cache=self.cache, bus=self.bus)

    async def disburse(self, purchaseId: int, context: CallerContext = SYSTEM) -> DisbursementResult:
        return await self.rebates.disburse(purchaseId, context)

    async def processCompletedPurchase(self, purchaseId: int, context: CallerContext = SYSTEM) -> dict:
        """
        Full purchase flow: disburse rebates, then re-evaluate the buyer and
        its upline until no further promotion happens.
        """
        disbursement = await self.rebates.disburse(purchaseId, context)
        promotions = await self.ranks.evaluateChain(disbursement.buyerID)
        return {
            "disbursement": disbursement,
            "rankEvaluations": promotions,
        }

    async def evaluateRank(self, memberId: int, asOf: datetime = None) -> RankEvaluation:
        return await self.ranks.evaluate(memberId, asOf)

    async def evaluateAllRanks(self, asOf: datetime = None) -> List[RankEvaluation]:
        return await self.ranks.evaluateAll(asOf)

    async def place(self, memberId: int, sponsorId: int, context: CallerContext = SYSTEM) -> PlacementResult:
        return await self.binary.place(memberId, sponsorId, context)

    async def legVolume(self, memberId: int, leg: str, startDate, endDate, unit: str = "amount") -> Decimal:
        return await self.binary.legVolume(memberId, leg, startDate, endDate, unit)

    async def settleMatching(self, memberId: int, startDate, endDate,
                             context: CallerContext = SYSTEM) -> MatchingSettlement:
        return await self.binary.settleMatching(memberId, startDate, endDate, context)

    async def genealogy(
            self,
            memberId: int,
            maxDepth: int = None,
            page: int = 1,
            pageSize: int = None,
            includeStats: bool = False
    ) -> dict:
        return await self.genealogyService.genealogy(memberId, maxDepth, page, pageSize, includeStats)

    async def reconcile(self, memberId: int) -> Reconciliation:
        return await self.wallets.reconcile(memberId)

    async def adminResetWallet(self, memberId: int, context: CallerContext) -> int:
        return await self.wallets.adminReset(memberId, context)
