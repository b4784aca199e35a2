# rewards_engine/services/genealogy_service.py
"""
Paginated unilevel genealogy with optional subtree statistics.

Pages and statistics are cached per root; any write on a member's upline
path drops the root's entries (see GenealogyCache.invalidateRoots).
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List
import logging
import math

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from models import Member
from rewards_engine.cache.genealogy_cache import GenealogyCache, NullCacheBackend
from rewards_engine.errors import IntegrityViolation, NotFound, TransientStoreFailure, ValidationFailure
from rewards_engine.services.tree_walk import collectDownlineLevels
from rewards_engine.store.tree_store import TreeStore
from rewards_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class GenealogyService:
    """Service for genealogy pages and downline aggregates."""

    def __init__(
            self,
            session: Session,
            cache: GenealogyCache = None,
            maxDepth: int = None,
            defaultPageSize: int = None,
            maxPageSize: int = None,
            activityWindowDays: int = None
    ):
        self.session = session
        self.store = TreeStore(session)
        self.cache = cache or GenealogyCache(NullCacheBackend())
        self.maxDepth = maxDepth or config.MAX_GENEALOGY_DEPTH
        self.defaultPageSize = defaultPageSize or config.DEFAULT_PAGE_SIZE
        self.maxPageSize = maxPageSize or config.MAX_PAGE_SIZE
        self.activityWindowDays = activityWindowDays or config.ACTIVITY_WINDOW_DAYS

    async def genealogy(
            self,
            memberId: int,
            maxDepth: int = None,
            page: int = 1,
            pageSize: int = None,
            includeStats: bool = False
    ) -> dict:
        """
        One page of the member's direct downline, newest first, each entry
        expanded down to maxDepth levels below the root.

        A failing statistics query does not fail the page; the response
        carries `degraded=True` instead.
        """
        maxDepth = maxDepth if maxDepth is not None else self.maxDepth
        pageSize = pageSize if pageSize is not None else self.defaultPageSize
        self._validate(memberId, maxDepth, page, pageSize)

        key = self.cache.makeKey(memberId, "tree", maxDepth, page, pageSize)
        result = self.cache.getOrCompute(
            key, lambda: self._buildPage(memberId, maxDepth, page, pageSize)
        )

        result["statistics"] = None
        result["degraded"] = False
        if includeStats:
            try:
                result["statistics"] = await self.statistics(memberId, maxDepth)
            except (SQLAlchemyError, TransientStoreFailure) as e:
                logger.warning(f"Genealogy statistics for {memberId} unavailable: {e}")
                self.session.rollback()
                result["degraded"] = True

        return result

    def _validate(self, memberId, maxDepth, page, pageSize):
        if not isinstance(memberId, int) or memberId <= 0:
            raise ValidationFailure(f"Invalid member id {memberId!r}")
        if not isinstance(maxDepth, int) or not 1 <= maxDepth <= self.maxDepth:
            raise ValidationFailure(f"maxDepth must be between 1 and {self.maxDepth}", maxDepth=maxDepth)
        if not isinstance(page, int) or page < 1:
            raise ValidationFailure(f"Invalid page {page!r}")
        if not isinstance(pageSize, int) or not 1 <= pageSize <= self.maxPageSize:
            raise ValidationFailure(f"pageSize must be between 1 and {self.maxPageSize}", pageSize=pageSize)

    def _buildPage(self, memberId: int, maxDepth: int, page: int, pageSize: int) -> dict:
        root = self.store.requireMember(memberId)
        totalItems = self.store.countChildren(memberId)
        directPage = self.store.getChildrenPage(memberId, (page - 1) * pageSize, pageSize)

        nodes = {root.memberID: self._node(root, 0)}
        visited = {root.memberID}
        frontier = []
        for child in directPage:
            visited.add(child.memberID)
            nodes[child.memberID] = self._node(child, 1)
            frontier.append(child.memberID)

        # Expand the page's entries one level per query
        for level in range(2, maxDepth + 1):
            if not frontier:
                break
            children = self.store.getChildrenOf(frontier)
            frontier = []
            for child in children:
                if child.memberID in visited:
                    logger.error(f"Downline cycle detected under {memberId} at member {child.memberID}")
                    raise IntegrityViolation(
                        f"Downline cycle detected at member {child.memberID}",
                        rootID=memberId,
                        cycleAt=child.memberID
                    )
                visited.add(child.memberID)
                nodes[child.memberID] = self._node(child, level)
                nodes[child.uplineID]["children"].append(nodes[child.memberID])
                frontier.append(child.memberID)

        counts = self.store.countChildrenOf(nodes.keys())
        for nodeId, node in nodes.items():
            node["downlineCount"] = counts.get(nodeId, 0)
            node["hasMoreChildren"] = node["level"] >= maxDepth and node["downlineCount"] > 0

        totalPages = math.ceil(totalItems / pageSize) if totalItems else 0
        rootNode = nodes[root.memberID]
        rootNode.pop("children")

        return {
            "member": rootNode,
            "downline": [nodes[child.memberID] for child in directPage],
            "pagination": {
                "page": page,
                "pageSize": pageSize,
                "totalItems": totalItems,
                "totalPages": totalPages,
                "hasNextPage": page < totalPages,
                "hasPreviousPage": page > 1,
            },
            "maxDepth": maxDepth,
        }

    @staticmethod
    def _node(member: Member, level: int) -> dict:
        return {
            "memberID": member.memberID,
            "name": member.name,
            "email": member.email,
            "rankID": member.rankID,
            "level": level,
            "walletBalance": member.walletBalance,
            "createdAt": member.createdAt,
            "children": [],
        }

    async def downlineIds(self, memberId: int, maxDepth: int = None) -> List[int]:
        return [
            m.memberID
            for level in collectDownlineLevels(self.store, memberId, maxDepth or self.maxDepth)
            for m in level
        ]

    async def levelCounts(self, memberId: int, maxDepth: int = None) -> List[dict]:
        """[{level, count}] for levels 1..maxDepth that have members."""
        maxDepth = maxDepth or self.maxDepth
        key = self.cache.makeKey(memberId, "levels", maxDepth)

        def compute():
            self.store.requireMember(memberId)
            levels = collectDownlineLevels(self.store, memberId, maxDepth)
            return [{"level": i, "count": len(members)} for i, members in enumerate(levels, start=1)]

        return self.cache.getOrCompute(key, compute)

    async def statistics(self, memberId: int, maxDepth: int = None, asOf: datetime = None) -> dict:
        """Subtree aggregates: level counts, balance, rank distribution, activity."""
        maxDepth = maxDepth or self.maxDepth
        asOf = timeMachine.resolveAsOf(asOf)
        window = timeMachine.windowKey(asOf, self.activityWindowDays)
        key = self.cache.makeKey(memberId, "stats", maxDepth, window)

        def compute():
            self.store.requireMember(memberId)
            levels = collectDownlineLevels(self.store, memberId, maxDepth)
            ids = [m.memberID for members in levels for m in members]

            rankNames = {rank.rankID: rank.name for rank in self.store.getRanks()}
            histogram = self.store.rankHistogram(ids)
            since = timeMachine.windowStart(asOf, self.activityWindowDays)
            activeCount = len(self.store.activeBuyers(ids, since)) if since else 0
            activePercentage = (
                Decimal(activeCount * 100) / Decimal(len(ids)) if ids else Decimal("0")
            ).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

            return {
                "totalMembers": len(ids) + 1,
                "directDownlineCount": len(levels[0]) if levels else 0,
                "levelCounts": [{"level": i, "count": len(members)} for i, members in enumerate(levels, start=1)],
                "totalDownlineBalance": self.store.sumWalletBalances(ids),
                "rankDistribution": [
                    {"rankID": rankId, "rankName": rankNames.get(rankId, "Unranked"), "count": count}
                    for rankId, count in sorted(histogram.items(), key=lambda item: (item[0] is None, item[0] or 0))
                ],
                "activity": {
                    "activeMembers": activeCount,
                    "activePercentage": activePercentage,
                    "windowDays": self.activityWindowDays,
                },
                "lastUpdated": asOf,
            }

        return self.cache.getOrCompute(key, compute)

    async def warmCache(self, memberIds: List[int]) -> Dict[int, bool]:
        """Precompute first pages and statistics for frequently viewed roots."""
        warmed = {}
        for memberId in memberIds:
            try:
                await self.genealogy(memberId, includeStats=True)
                warmed[memberId] = True
            except (NotFound, IntegrityViolation) as e:
                logger.warning(f"Could not warm genealogy cache for {memberId}: {e}")
                warmed[memberId] = False
        return warmed
