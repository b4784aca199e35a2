# rewards_engine/services/rank_service.py
"""
Rank qualification service.

A member moves at most one rank per evaluation, to the next level whose
thresholds are all met. Batch and chain runs repeat passes until nothing
moves, so one purchase can cascade promotions up the upline.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy.orm import Session

import config
from models import Member, Rank, RankAdvancement
from rewards_engine.cache.genealogy_cache import GenealogyCache
from rewards_engine.config.ranks import DEFAULT_RANK_LADDER, SCOPE_DIRECT, SCOPE_SUBTREE
from rewards_engine.errors import RewardsError, ValidationFailure
from rewards_engine.events.event_bus import EventBus, RewardsEvents, eventBus
from rewards_engine.services.tree_walk import affectedRoots, collectDownlineIds, uplinePath
from rewards_engine.store.tree_store import TreeStore
from rewards_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


def rankSummary(rank: Optional[Rank]) -> Optional[dict]:
    if rank is None:
        return None
    return {"rankID": rank.rankID, "name": rank.name, "level": rank.level}


@dataclass
class RequirementCheck:
    required: Decimal
    actual: Decimal
    qualified: bool


@dataclass
class RankEvaluation:
    memberID: int
    currentRank: Optional[dict]
    eligibleRank: Optional[dict] = None
    promoted: bool = False
    newRank: Optional[dict] = None
    levelsGained: int = 0
    requirements: Dict[str, RequirementCheck] = field(default_factory=dict)
    error: Optional[dict] = None

    @classmethod
    def failed(cls, memberId: int, error: RewardsError) -> "RankEvaluation":
        return cls(memberID=memberId, currentRank=None, error=error.toDict())

    def mergedWith(self, later: "RankEvaluation") -> "RankEvaluation":
        """Combine this pass with a later pass over the same member."""
        return replace(
            later,
            currentRank=self.currentRank,
            promoted=self.promoted or later.promoted,
            newRank=later.newRank or self.newRank,
            levelsGained=self.levelsGained + later.levelsGained
        )


class RankService:
    """Service for evaluating and promoting member ranks."""

    def __init__(
            self,
            session: Session,
            windowDays: int = None,
            maxDownlineDepth: int = None,
            qualifiedScope: str = None,
            maxPasses: int = None,
            cache: GenealogyCache = None,
            bus: EventBus = None
    ):
        self.session = session
        self.store = TreeStore(session)
        self.windowDays = windowDays if windowDays is not None else config.RANK_QUALIFICATION_WINDOW_DAYS
        depth = maxDownlineDepth if maxDownlineDepth is not None else config.RANK_MAX_DOWNLINE_DEPTH
        self.maxDownlineDepth = depth or None
        self.qualifiedScope = qualifiedScope or config.QUALIFIED_DOWNLINE_SCOPE
        if self.qualifiedScope not in (SCOPE_DIRECT, SCOPE_SUBTREE):
            raise ValidationFailure(f"Unknown qualified downline scope {self.qualifiedScope!r}")
        self.maxPasses = maxPasses or config.RANK_MAX_PASSES
        self.cache = cache
        self.bus = bus or eventBus

    def ensureRankLadder(self, ladder: List[dict] = None) -> List[Rank]:
        """Seed the ranks table from a ladder definition when it is empty."""
        existing = self.store.getRanks()
        if existing:
            return existing

        ladder = ladder or DEFAULT_RANK_LADDER
        with self.store.transaction():
            byLevel = {}
            for definition in sorted(ladder, key=lambda d: d["level"]):
                fields = {k: v for k, v in definition.items() if k != "prerequisiteLevel"}
                rank = Rank(**fields)
                prerequisiteLevel = definition.get("prerequisiteLevel")
                if prerequisiteLevel is not None:
                    if prerequisiteLevel not in byLevel:
                        raise ValidationFailure(
                            f"Rank {definition['name']} requires undefined level {prerequisiteLevel}"
                        )
                    rank.prerequisiteRank = byLevel[prerequisiteLevel]
                self.session.add(rank)
                byLevel[rank.level] = rank

        logger.info(f"Seeded {len(byLevel)} ranks")
        return self.store.getRanks()

    async def checkEligibility(self, memberId: int, asOf: datetime = None) -> RankEvaluation:
        """Evaluate the next rank's thresholds without writing anything."""
        if not isinstance(memberId, int) or memberId <= 0:
            raise ValidationFailure(f"Invalid member id {memberId!r}")

        asOf = timeMachine.resolveAsOf(asOf)
        member = self.store.requireMember(memberId)
        currentRank = self.store.getRank(member.rankID)
        currentLevel = currentRank.level if currentRank else 0

        nextRank = self.store.getNextRank(currentLevel)
        if nextRank is None:
            # Already at the highest defined rank
            return RankEvaluation(memberID=memberId, currentRank=rankSummary(currentRank))

        requirements = await self._checkRequirements(member, nextRank, asOf)
        isEligible = all(check.qualified for check in requirements.values())

        return RankEvaluation(
            memberID=memberId,
            currentRank=rankSummary(currentRank),
            eligibleRank=rankSummary(nextRank) if isEligible else None,
            requirements=requirements
        )

    async def evaluate(self, memberId: int, asOf: datetime = None, method: str = "natural") -> RankEvaluation:
        """Check the next rank and promote when every threshold holds."""
        evaluation = await self.checkEligibility(memberId, asOf)
        if evaluation.eligibleRank is None:
            return evaluation

        observedRankId = evaluation.currentRank["rankID"] if evaluation.currentRank else None
        newRankId = evaluation.eligibleRank["rankID"]

        with self.store.transaction():
            member = self.store.requireMember(memberId, lock=True)
            if member.rankID != observedRankId:
                # Another evaluation moved this member first
                logger.info(
                    f"Member {memberId} rank changed during evaluation "
                    f"({observedRankId} -> {member.rankID}), not promoting"
                )
                return evaluation

            member.rankID = newRankId
            self.session.add(RankAdvancement(
                memberID=memberId,
                previousRankID=observedRankId,
                newRankID=newRankId,
                personalSales=evaluation.requirements["personalSales"].actual,
                groupSales=evaluation.requirements["groupSales"].actual,
                directDownlineCount=int(evaluation.requirements["directDownline"].actual),
                qualifiedDownlineCount=int(evaluation.requirements["qualifiedDownline"].actual),
                qualificationMethod=method
            ))

        logger.info(
            f"Member {memberId} rank updated: "
            f"{evaluation.currentRank['name'] if evaluation.currentRank else None} -> "
            f"{evaluation.eligibleRank['name']} ({method})"
        )

        self._invalidate(memberId)
        await self.bus.emit(RewardsEvents.RANK_ACHIEVED, {
            "memberID": memberId,
            "previousRank": evaluation.currentRank,
            "newRank": evaluation.eligibleRank,
            "method": method
        })

        return replace(evaluation, promoted=True, newRank=evaluation.eligibleRank, levelsGained=1)

    async def evaluateAll(self, asOf: datetime = None) -> List[RankEvaluation]:
        """Evaluate every member, repeating passes until no one advances."""
        asOf = timeMachine.resolveAsOf(asOf)
        memberIds = self.store.getMemberIds()
        results = await self._runPasses(memberIds, asOf, "batch")

        promoted = sum(1 for r in results if r.promoted)
        errors = sum(1 for r in results if r.error)
        logger.info(
            f"Rank check complete: checked={len(results)}, "
            f"promoted={promoted}, errors={errors}"
        )
        return results

    async def evaluateChain(self, memberId: int, asOf: datetime = None) -> List[RankEvaluation]:
        """Evaluate a member and its whole upline until stable."""
        asOf = timeMachine.resolveAsOf(asOf)
        member = self.store.requireMember(memberId)
        chain = uplinePath(self.store, member)
        return await self._runPasses(chain, asOf, "cascade")

    async def _runPasses(self, memberIds: List[int], asOf: datetime, method: str) -> List[RankEvaluation]:
        merged: Dict[int, RankEvaluation] = {}

        for passNumber in range(1, self.maxPasses + 1):
            promotedInPass = 0

            for memberId in memberIds:
                try:
                    evaluation = await self.evaluate(memberId, asOf, method)
                except RewardsError as e:
                    logger.error(f"Error checking rank for member {memberId}: {e}")
                    evaluation = RankEvaluation.failed(memberId, e)

                if evaluation.promoted:
                    promotedInPass += 1

                previous = merged.get(memberId)
                merged[memberId] = previous.mergedWith(evaluation) if previous else evaluation

            logger.debug(f"Rank pass {passNumber} ({method}): {promotedInPass} promoted")
            if promotedInPass == 0:
                break
        else:
            logger.warning(f"Rank evaluation ({method}) stopped after {self.maxPasses} passes")

        return [merged[memberId] for memberId in memberIds]

    async def _checkRequirements(self, member: Member, nextRank: Rank, asOf: datetime) -> Dict[str, RequirementCheck]:
        """Aggregate the member's sales and downline and compare with the rank."""
        start = timeMachine.windowStart(asOf, self.windowDays)

        downlineIds = collectDownlineIds(self.store, member.memberID, self.maxDownlineDepth)

        personalSales = self.store.sumPurchases([member.memberID], start, asOf)
        groupSales = self.store.sumPurchases(downlineIds, start, asOf)
        directDownline = self.store.countChildren(member.memberID)
        qualifiedDownline = await self._countQualifiedDownline(member, nextRank, downlineIds)

        return {
            "personalSales": RequirementCheck(
                required=nextRank.requiredPersonalSales or Decimal("0"),
                actual=personalSales,
                qualified=personalSales >= (nextRank.requiredPersonalSales or 0)
            ),
            "groupSales": RequirementCheck(
                required=nextRank.requiredGroupSales or Decimal("0"),
                actual=groupSales,
                qualified=groupSales >= (nextRank.requiredGroupSales or 0)
            ),
            "directDownline": RequirementCheck(
                required=Decimal(nextRank.requiredDirectDownline or 0),
                actual=Decimal(directDownline),
                qualified=directDownline >= (nextRank.requiredDirectDownline or 0)
            ),
            "qualifiedDownline": RequirementCheck(
                required=Decimal(nextRank.requiredQualifiedDownline or 0),
                actual=Decimal(qualifiedDownline),
                qualified=qualifiedDownline >= (nextRank.requiredQualifiedDownline or 0)
            ),
        }

    async def _countQualifiedDownline(self, member: Member, nextRank: Rank, downlineIds: List[int]) -> int:
        """Downline holding the prerequisite rank or higher."""
        if not nextRank.requiredQualifiedDownline:
            return 0

        prerequisite = self.store.getRank(nextRank.prerequisiteRankID)
        # No prerequisite configured: any ranked member counts
        level = prerequisite.level if prerequisite else 1

        if self.qualifiedScope == SCOPE_SUBTREE:
            candidates = downlineIds
        else:
            candidates = [child.memberID for child in self.store.getChildren(member.memberID)]

        return self.store.countAtOrAboveRankLevel(candidates, level)

    def _invalidate(self, memberId: int):
        if self.cache is None:
            return
        roots = affectedRoots(self.store, [memberId])
        if roots is None:
            self.cache.invalidateAll()
        else:
            self.cache.invalidateRoots(roots)
