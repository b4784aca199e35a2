# rewards_engine/services/binary_service.py
"""
Binary tree placement, leg volume and matching bonus.

The binary tree is independent of the unilevel one: a member's sponsor
decides where the breadth-first search starts, not where the member lands.
"""
from dataclasses import dataclass, asdict
from datetime import date, datetime, time
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

import config
from models import MatchingPeriod, Member
from models.member import LEFT, RIGHT, LEGS
from models.wallet_transaction import MATCHING_BONUS
from rewards_engine.cache.genealogy_cache import GenealogyCache
from rewards_engine.context import CallerContext, SYSTEM
from rewards_engine.errors import (
    AlreadyPlaced, AlreadyProcessed, IntegrityViolation, TransientStoreFailure, ValidationFailure
)
from rewards_engine.events.event_bus import EventBus, RewardsEvents, eventBus
from rewards_engine.services.tree_walk import affectedRoots, collectBinarySubtreeIds
from rewards_engine.store.tree_store import TreeStore
from rewards_engine.utils.money import percentOf, toDecimal, toMoney
from rewards_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

VOLUME_FIELDS = {
    "amount": "totalAmount",
    "pv": "totalPV",
}

PLACEMENT_ATTEMPTS = 3


@dataclass
class PlacementResult:
    memberID: int
    parentID: int
    position: str


@dataclass
class MatchingResult:
    leftVolume: Decimal
    rightVolume: Decimal
    leftCarryIn: Decimal
    rightCarryIn: Decimal
    matchedVolume: Decimal
    leftCarryOut: Decimal
    rightCarryOut: Decimal
    rate: Decimal
    commission: Decimal


@dataclass
class MatchingSettlement:
    memberID: int
    periodStart: datetime
    periodEnd: datetime
    matching: MatchingResult
    walletTransactionID: Optional[int] = None
    alreadyProcessed: bool = False

    def toDict(self) -> dict:
        return asdict(self)


def computeMatching(
        leftVolume,
        rightVolume,
        rate=None,
        leftCarryIn=None,
        rightCarryIn=None,
        carryForward: bool = None
) -> MatchingResult:
    """
    Weaker-leg matching: commission = min(left, right) * rate / 100.
    Unmatched volume carries to the next period only when carryForward is on.
    """
    rate = toDecimal(rate if rate is not None else config.MATCHING_BONUS_RATE)
    carryForward = config.BINARY_CARRY_FORWARD if carryForward is None else carryForward

    leftCarryIn = toMoney(leftCarryIn) if carryForward else toMoney(0)
    rightCarryIn = toMoney(rightCarryIn) if carryForward else toMoney(0)
    left = toMoney(leftVolume) + leftCarryIn
    right = toMoney(rightVolume) + rightCarryIn

    matched = min(left, right)

    return MatchingResult(
        leftVolume=toMoney(leftVolume),
        rightVolume=toMoney(rightVolume),
        leftCarryIn=leftCarryIn,
        rightCarryIn=rightCarryIn,
        matchedVolume=matched,
        leftCarryOut=left - matched if carryForward else toMoney(0),
        rightCarryOut=right - matched if carryForward else toMoney(0),
        rate=rate,
        commission=percentOf(matched, rate)
    )


def normalizeRange(startDate, endDate) -> Tuple[datetime, datetime]:
    """Inclusive range; bare dates cover the whole day."""
    if startDate is None or endDate is None:
        raise ValidationFailure("Both start and end dates are required")

    if not isinstance(startDate, datetime) and isinstance(startDate, date):
        startDate = datetime.combine(startDate, time.min)
    if not isinstance(endDate, datetime) and isinstance(endDate, date):
        endDate = datetime.combine(endDate, time.max)
    if not isinstance(startDate, datetime) or not isinstance(endDate, datetime):
        raise ValidationFailure(f"Invalid date range {startDate!r} - {endDate!r}")

    start = timeMachine.resolveAsOf(startDate)
    end = timeMachine.resolveAsOf(endDate)
    if start > end:
        raise ValidationFailure(f"Start {start} is after end {end}")
    return start, end


class BinaryService:
    """Service for binary placement and leg-volume aggregation."""

    def __init__(
            self,
            session: Session,
            matchingRate=None,
            carryForward: bool = None,
            cache: GenealogyCache = None,
            bus: EventBus = None
    ):
        self.session = session
        self.store = TreeStore(session)
        self.matchingRate = toDecimal(matchingRate if matchingRate is not None else config.MATCHING_BONUS_RATE)
        self.carryForward = config.BINARY_CARRY_FORWARD if carryForward is None else carryForward
        self.cache = cache
        self.bus = bus or eventBus

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------
    async def place(self, newMemberId: int, sponsorId: int, context: CallerContext = SYSTEM) -> PlacementResult:
        """Place a member in the first open slot under the sponsor, breadth-first."""
        for memberId in (newMemberId, sponsorId):
            if not isinstance(memberId, int) or memberId <= 0:
                raise ValidationFailure(f"Invalid member id {memberId!r}")
        if newMemberId == sponsorId:
            raise ValidationFailure("A member cannot be placed under itself", memberID=newMemberId)

        member = self.store.requireMember(newMemberId)
        self.store.requireMember(sponsorId)
        self._ensureNotPlaced(member)

        # Placing under its own binary descendant would close a loop
        if sponsorId in collectBinarySubtreeIds(self.store, newMemberId):
            raise IntegrityViolation(
                f"Sponsor {sponsorId} is inside the binary subtree of member {newMemberId}",
                memberID=newMemberId,
                sponsorID=sponsorId
            )

        for attempt in range(1, PLACEMENT_ATTEMPTS + 1):
            parentId, position = self._findOpenSlot(sponsorId)
            try:
                result = self._claimSlot(newMemberId, parentId, position)
                break
            except TransientStoreFailure:
                if attempt == PLACEMENT_ATTEMPTS:
                    raise
                logger.info(f"Slot {parentId}/{position} taken concurrently, retrying placement of {newMemberId}")

        logger.info(
            f"Placed member {newMemberId} on {result.position} leg of {result.parentID} "
            f"(sponsor={sponsorId}, actor={context.actorID})"
        )

        self._invalidate(newMemberId)
        await self.bus.emit(RewardsEvents.MEMBER_PLACED, {
            "memberID": newMemberId,
            "parentID": result.parentID,
            "sponsorID": sponsorId,
            "position": result.position
        })
        return result

    def _ensureNotPlaced(self, member: Member):
        if member.isPlaced or self.store.getBinaryParent(member.memberID) is not None:
            raise AlreadyPlaced(
                f"Member {member.memberID} is already placed in the binary tree",
                memberID=member.memberID
            )

    def _findOpenSlot(self, sponsorId: int) -> Tuple[int, str]:
        """Level-by-level search, left child before right child."""
        visited = set()
        frontier = [sponsorId]

        while frontier:
            nodes = {m.memberID: m for m in self.store.getMembers(frontier)}
            nextFrontier = []

            for nodeId in frontier:
                if nodeId in visited:
                    raise IntegrityViolation(
                        f"Binary tree cycle detected at member {nodeId}",
                        sponsorID=sponsorId,
                        cycleAt=nodeId
                    )
                visited.add(nodeId)

                node = nodes.get(nodeId)
                if node is None:
                    raise IntegrityViolation(
                        f"Binary leg references missing member {nodeId}",
                        sponsorID=sponsorId
                    )

                openLegs = node.openLegs
                if openLegs:
                    return nodeId, openLegs[0]

                nextFrontier.extend(node.legID(leg) for leg in LEGS)

            frontier = nextFrontier

        # Unreachable for a finite tree: the deepest level always has open slots
        raise IntegrityViolation(f"No open binary slot under sponsor {sponsorId}", sponsorID=sponsorId)

    def _claimSlot(self, newMemberId: int, parentId: int, position: str) -> PlacementResult:
        with self.store.transaction():
            member = self.store.requireMember(newMemberId, lock=True)
            self._ensureNotPlaced(member)

            parent = self.store.requireMember(parentId, lock=True)
            if parent.legID(position) is not None:
                raise TransientStoreFailure(
                    f"Slot {position} of member {parentId} was filled concurrently",
                    parentID=parentId
                )

            parent.setLegID(position, newMemberId)
            member.placementPosition = position

        return PlacementResult(memberID=newMemberId, parentID=parentId, position=position)

    async def placementOptions(self, memberId: int) -> dict:
        """Open slots on the node itself plus where a new placement would land."""
        member = self.store.requireMember(memberId)
        parentId, position = self._findOpenSlot(memberId)
        return {
            "memberID": memberId,
            "openLegs": member.openLegs,
            "nextPlacement": {"parentID": parentId, "position": position}
        }

    async def buildBinaryTree(self, memberId: int, maxDepth: int = None) -> dict:
        """Nested {memberID, left, right} structure down to maxDepth levels."""
        maxDepth = maxDepth or config.MAX_GENEALOGY_DEPTH
        if maxDepth <= 0:
            raise ValidationFailure(f"Invalid depth {maxDepth!r}")

        root = self.store.requireMember(memberId)
        rootNode = self._binaryNode(root)
        visited = {memberId}
        frontier = [(root, rootNode)]

        for _ in range(maxDepth):
            childIds = [
                (node.legID(leg), leg, parentNode)
                for node, parentNode in frontier
                for leg in LEGS
                if node.legID(leg) is not None
            ]
            if not childIds:
                break

            children = {m.memberID: m for m in self.store.getMembers([cid for cid, _, _ in childIds])}
            nextFrontier = []
            for childId, leg, parentNode in childIds:
                if childId in visited:
                    raise IntegrityViolation(
                        f"Binary tree cycle detected at member {childId}",
                        rootID=memberId,
                        cycleAt=childId
                    )
                visited.add(childId)

                child = children.get(childId)
                if child is None:
                    logger.warning(f"Binary leg {leg} of {parentNode['memberID']} references missing member {childId}")
                    continue

                childNode = self._binaryNode(child)
                parentNode[leg] = childNode
                nextFrontier.append((child, childNode))

            frontier = nextFrontier

        return rootNode

    @staticmethod
    def _binaryNode(member: Member) -> dict:
        return {
            "memberID": member.memberID,
            "name": member.name,
            "rankID": member.rankID,
            "position": member.placementPosition,
            LEFT: None,
            RIGHT: None
        }

    # ------------------------------------------------------------------
    # Volume
    # ------------------------------------------------------------------
    async def legVolume(self, memberId: int, leg: str, startDate, endDate, unit: str = "amount") -> Decimal:
        """Completed purchase volume of one leg's whole subtree, inclusive range."""
        if leg not in LEGS:
            raise ValidationFailure(f"Invalid leg {leg!r}", memberID=memberId)
        if unit not in VOLUME_FIELDS:
            raise ValidationFailure(f"Invalid volume unit {unit!r}")
        if not isinstance(memberId, int) or memberId <= 0:
            raise ValidationFailure(f"Invalid member id {memberId!r}")
        start, end = normalizeRange(startDate, endDate)

        member = self.store.requireMember(memberId)

        def compute():
            childId = member.legID(leg)
            if childId is None:
                return toMoney(0)
            subtree = collectBinarySubtreeIds(self.store, childId)
            return self.store.sumPurchases(subtree, start, end, VOLUME_FIELDS[unit])

        if self.cache is None:
            return compute()

        key = self.cache.makeKey(memberId, "legVolume", leg, unit, start.isoformat(), end.isoformat())
        return self.cache.getOrCompute(key, compute)

    async def legVolumes(self, memberId: int, startDate, endDate, unit: str = "amount") -> Dict[str, Decimal]:
        return {
            leg: await self.legVolume(memberId, leg, startDate, endDate, unit)
            for leg in LEGS
        }

    async def matchingBonus(self, memberId: int, startDate, endDate, unit: str = "amount") -> MatchingResult:
        """Read-only matching computation for a period."""
        start, end = normalizeRange(startDate, endDate)
        volumes = await self.legVolumes(memberId, start, end, unit)

        carry = self.store.getLastMatchingPeriod(memberId, start) if self.carryForward else None
        return computeMatching(
            volumes[LEFT],
            volumes[RIGHT],
            rate=self.matchingRate,
            leftCarryIn=carry.leftCarryOut if carry else None,
            rightCarryIn=carry.rightCarryOut if carry else None,
            carryForward=self.carryForward
        )

    async def settleMatching(
            self,
            memberId: int,
            startDate,
            endDate,
            context: CallerContext = SYSTEM
    ) -> MatchingSettlement:
        """Credit the period's matching bonus once; repeat calls return the stored period."""
        start, end = normalizeRange(startDate, endDate)
        self.store.requireMember(memberId)

        existing = self.store.getMatchingPeriod(memberId, start, end)
        if existing:
            logger.info(f"Matching for member {memberId} {start} - {end} already settled")
            return self._existingSettlement(existing)

        matching = await self.matchingBonus(memberId, start, end)

        try:
            with self.store.transaction():
                self.store.requireMember(memberId, lock=True)
                if self.store.getMatchingPeriod(memberId, start, end):
                    raise AlreadyProcessed(f"Matching for member {memberId} settled concurrently")

                transactionId = None
                if matching.commission > 0:
                    transaction = self.store.appendWalletTransaction(
                        memberId,
                        matching.commission,
                        MATCHING_BONUS,
                        description=f"Binary matching {start.date()} - {end.date()}",
                        reference=f"matching={memberId}:{start.isoformat()}"
                    )
                    self.store.incrementWalletBalance(memberId, matching.commission)
                    transactionId = transaction.walletTransactionID

                self.session.add(MatchingPeriod(
                    memberID=memberId,
                    walletTransactionID=transactionId,
                    periodStart=start,
                    periodEnd=end,
                    leftVolume=matching.leftVolume,
                    rightVolume=matching.rightVolume,
                    leftCarryIn=matching.leftCarryIn,
                    rightCarryIn=matching.rightCarryIn,
                    matchedVolume=matching.matchedVolume,
                    leftCarryOut=matching.leftCarryOut,
                    rightCarryOut=matching.rightCarryOut,
                    rate=matching.rate,
                    commission=matching.commission
                ))
        except AlreadyProcessed:
            return self._existingSettlement(self.store.getMatchingPeriod(memberId, start, end))

        logger.info(
            f"Matching settled for member {memberId}: matched={matching.matchedVolume}, "
            f"commission={matching.commission} (actor={context.actorID})"
        )

        if matching.commission > 0:
            self._invalidate(memberId)
        await self.bus.emit(RewardsEvents.MATCHING_SETTLED, {
            "memberID": memberId,
            "periodStart": start,
            "periodEnd": end,
            "commission": str(matching.commission)
        })

        return MatchingSettlement(
            memberID=memberId,
            periodStart=start,
            periodEnd=end,
            matching=matching,
            walletTransactionID=transactionId
        )

    @staticmethod
    def _existingSettlement(period: MatchingPeriod) -> MatchingSettlement:
        return MatchingSettlement(
            memberID=period.memberID,
            periodStart=period.periodStart,
            periodEnd=period.periodEnd,
            matching=MatchingResult(
                leftVolume=toMoney(period.leftVolume),
                rightVolume=toMoney(period.rightVolume),
                leftCarryIn=toMoney(period.leftCarryIn),
                rightCarryIn=toMoney(period.rightCarryIn),
                matchedVolume=toMoney(period.matchedVolume),
                leftCarryOut=toMoney(period.leftCarryOut),
                rightCarryOut=toMoney(period.rightCarryOut),
                rate=toDecimal(period.rate),
                commission=toMoney(period.commission)
            ),
            walletTransactionID=period.walletTransactionID,
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
