# rewards_engine/store/tree_store.py
"""
Data-access contract over the relational store.

Every engine read and write goes through this adapter; `transaction()` is
the only place that commits or rolls back.
"""
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Set
import logging

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

import config
from models import MatchingPeriod, Member, Product, Purchase, Rank, Rebate, RebateConfig, WalletTransaction
from models.purchase import COMPLETED
from rewards_engine.errors import NotFound, TransientStoreFailure
from rewards_engine.utils.money import toMoney

logger = logging.getLogger(__name__)


def chunked(ids: List[int], size: int) -> Iterator[List[int]]:
    for i in range(0, len(ids), size):
        yield ids[i:i + size]


class TreeStore:
    """Thin adapter exposing the lookups and writes the engine needs."""

    def __init__(self, session: Session, batchSize: int = None):
        self.session = session
        self.batchSize = batchSize or config.QUERY_BATCH_SIZE

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self):
        """All-or-nothing unit of work."""
        try:
            yield self
            self.session.commit()
        except (OperationalError, InterfaceError, IntegrityError) as e:
            self.session.rollback()
            logger.warning(f"Store transaction rolled back: {e.__class__.__name__}: {e.orig}")
            raise TransientStoreFailure(
                f"Store transaction failed: {e.__class__.__name__}"
            ) from e
        except Exception:
            self.session.rollback()
            raise

    # ------------------------------------------------------------------
    # Point lookups
    # ------------------------------------------------------------------
    def getMember(self, memberId: int, lock: bool = False) -> Optional[Member]:
        query = self.session.query(Member).filter_by(memberID=memberId)
        if lock:
            # Re-read the row: objects already in the session may be stale
            query = query.with_for_update().populate_existing()
        return query.first()

    def requireMember(self, memberId: int, lock: bool = False) -> Member:
        member = self.getMember(memberId, lock=lock)
        if not member:
            raise NotFound(f"Member {memberId} not found", memberID=memberId)
        return member

    def getProduct(self, productId: int) -> Optional[Product]:
        return self.session.query(Product).filter_by(productID=productId).first()

    def getPurchase(self, purchaseId: int, lock: bool = False) -> Optional[Purchase]:
        query = self.session.query(Purchase).filter_by(purchaseID=purchaseId)
        if lock:
            # Re-read the row: objects already in the session may be stale
            query = query.with_for_update().populate_existing()
        return query.first()

    def getRank(self, rankId: Optional[int]) -> Optional[Rank]:
        if rankId is None:
            return None
        return self.session.query(Rank).filter_by(rankID=rankId).first()

    def getRanks(self) -> List[Rank]:
        """All ranks ordered by level."""
        return self.session.query(Rank).order_by(Rank.level.asc()).all()

    def getNextRank(self, level: int) -> Optional[Rank]:
        return self.session.query(Rank).filter(
            Rank.level > level
        ).order_by(Rank.level.asc()).first()

    def getRebateConfigs(self, productId: int) -> Dict[int, RebateConfig]:
        """All configs for a product keyed by level."""
        configs = self.session.query(RebateConfig).filter_by(productID=productId).all()
        return {c.level: c for c in configs}

    # ------------------------------------------------------------------
    # Unilevel tree
    # ------------------------------------------------------------------
    def getChildren(self, uplineId: int) -> List[Member]:
        return self.session.query(Member).filter(
            Member.uplineID == uplineId
        ).order_by(Member.createdAt.asc(), Member.memberID.asc()).all()

    def countChildren(self, uplineId: int) -> int:
        return self.session.query(func.count(Member.memberID)).filter(
            Member.uplineID == uplineId
        ).scalar() or 0

    def getChildrenPage(self, uplineId: int, offset: int, limit: int) -> List[Member]:
        """Direct downline, newest first."""
        return self.session.query(Member).filter(
            Member.uplineID == uplineId
        ).order_by(
            Member.createdAt.desc(), Member.memberID.desc()
        ).offset(offset).limit(limit).all()

    def getChildrenOf(self, uplineIds: Iterable[int]) -> List[Member]:
        """Direct downline of many members at once, batched."""
        ids = list(uplineIds)
        children = []
        for batch in chunked(ids, self.batchSize):
            children.extend(
                self.session.query(Member).filter(
                    Member.uplineID.in_(batch)
                ).order_by(Member.memberID.asc()).all()
            )
        return children

    def countChildrenOf(self, uplineIds: Iterable[int]) -> Dict[int, int]:
        ids = list(uplineIds)
        counts = {}
        for batch in chunked(ids, self.batchSize):
            rows = self.session.query(
                Member.uplineID, func.count(Member.memberID)
            ).filter(Member.uplineID.in_(batch)).group_by(Member.uplineID).all()
            counts.update({uplineId: count for uplineId, count in rows})
        return counts

    # ------------------------------------------------------------------
    # Binary tree
    # ------------------------------------------------------------------
    def getBinaryParent(self, memberId: int) -> Optional[Member]:
        return self.session.query(Member).filter(
            or_(Member.leftLegID == memberId, Member.rightLegID == memberId)
        ).first()

    def getMembers(self, memberIds: Iterable[int]) -> List[Member]:
        ids = list(memberIds)
        members = []
        for batch in chunked(ids, self.batchSize):
            members.extend(
                self.session.query(Member).filter(Member.memberID.in_(batch)).all()
            )
        return members

    # ------------------------------------------------------------------
    # Purchase aggregates
    # ------------------------------------------------------------------
    def sumPurchases(
            self,
            buyerIds: Iterable[int],
            start: Optional[datetime] = None,
            end: Optional[datetime] = None,
            field: str = "totalAmount"
    ) -> Decimal:
        """Sum of completed purchases for the buyers, start <= createdAt <= end."""
        column = getattr(Purchase, field)
        ids = list(buyerIds)
        total = Decimal("0")
        for batch in chunked(ids, self.batchSize):
            query = self.session.query(func.sum(column)).filter(
                Purchase.buyerID.in_(batch),
                Purchase.status == COMPLETED
            )
            if start is not None:
                query = query.filter(Purchase.createdAt >= start)
            if end is not None:
                query = query.filter(Purchase.createdAt <= end)
            total += toMoney(query.scalar())
        return toMoney(total)

    def activeBuyers(self, buyerIds: Iterable[int], since: datetime) -> Set[int]:
        """Buyers with at least one completed purchase since the given moment."""
        ids = list(buyerIds)
        active = set()
        for batch in chunked(ids, self.batchSize):
            rows = self.session.query(Purchase.buyerID).filter(
                Purchase.buyerID.in_(batch),
                Purchase.status == COMPLETED,
                Purchase.createdAt >= since
            ).distinct().all()
            active.update(row[0] for row in rows)
        return active

    def countAtOrAboveRankLevel(self, memberIds: Iterable[int], level: int) -> int:
        ids = list(memberIds)
        count = 0
        for batch in chunked(ids, self.batchSize):
            count += self.session.query(func.count(Member.memberID)).join(
                Rank, Member.rankID == Rank.rankID
            ).filter(
                Member.memberID.in_(batch),
                Rank.level >= level
            ).scalar() or 0
        return count

    def getMemberIds(self) -> List[int]:
        return [row[0] for row in self.session.query(Member.memberID).order_by(Member.memberID.asc()).all()]

    def sumWalletBalances(self, memberIds: Iterable[int]) -> Decimal:
        ids = list(memberIds)
        total = Decimal("0")
        for batch in chunked(ids, self.batchSize):
            total += toMoney(
                self.session.query(func.sum(Member.walletBalance)).filter(
                    Member.memberID.in_(batch)
                ).scalar()
            )
        return toMoney(total)

    def rankHistogram(self, memberIds: Iterable[int]) -> Dict[Optional[int], int]:
        ids = list(memberIds)
        histogram = {}
        for batch in chunked(ids, self.batchSize):
            rows = self.session.query(
                Member.rankID, func.count(Member.memberID)
            ).filter(Member.memberID.in_(batch)).group_by(Member.rankID).all()
            for rankId, count in rows:
                histogram[rankId] = histogram.get(rankId, 0) + count
        return histogram

    # ------------------------------------------------------------------
    # Ledger writes
    # ------------------------------------------------------------------
    def getRebatesForPurchase(self, purchaseId: int) -> List[Rebate]:
        return self.session.query(Rebate).filter_by(
            purchaseID=purchaseId
        ).order_by(Rebate.level.asc()).all()

    def createRebate(self, **fields) -> Rebate:
        rebate = Rebate(**fields)
        self.session.add(rebate)
        self.session.flush()
        return rebate

    def appendWalletTransaction(
            self,
            memberId: int,
            amount: Decimal,
            transactionType: str,
            description: str = None,
            reference: str = None
    ) -> WalletTransaction:
        transaction = WalletTransaction(
            memberID=memberId,
            amount=toMoney(amount),
            type=transactionType,
            description=description,
            reference=reference
        )
        self.session.add(transaction)
        self.session.flush()
        return transaction

    def incrementWalletBalance(self, memberId: int, amount: Decimal):
        """Atomic in-database increment, serialized per row by the store."""
        updated = self.session.query(Member).filter(
            Member.memberID == memberId
        ).update(
            {Member.walletBalance: Member.walletBalance + toMoney(amount)},
            synchronize_session=False
        )
        if not updated:
            raise NotFound(f"Member {memberId} not found for wallet credit", memberID=memberId)

    # ------------------------------------------------------------------
    # Matching periods
    # ------------------------------------------------------------------
    def getMatchingPeriod(self, memberId: int, start: datetime, end: datetime) -> Optional[MatchingPeriod]:
        return self.session.query(MatchingPeriod).filter_by(
            memberID=memberId,
            periodStart=start,
            periodEnd=end
        ).first()

    def getLastMatchingPeriod(self, memberId: int, before: datetime) -> Optional[MatchingPeriod]:
        """Most recent settled period ending no later than `before`."""
        return self.session.query(MatchingPeriod).filter(
            MatchingPeriod.memberID == memberId,
            MatchingPeriod.periodEnd <= before
        ).order_by(MatchingPeriod.periodEnd.desc()).first()

    def ledgerSum(self, memberId: int) -> Decimal:
        return toMoney(
            self.session.query(func.sum(WalletTransaction.amount)).filter(
                WalletTransaction.memberID == memberId
            ).scalar()
        )
