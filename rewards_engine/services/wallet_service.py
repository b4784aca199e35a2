# rewards_engine/services/wallet_service.py
"""
Wallet ledger checks and administrative adjustments.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy.orm import Session

from models.wallet_transaction import ADMIN_RESET
from rewards_engine.cache.genealogy_cache import GenealogyCache
from rewards_engine.context import CallerContext
from rewards_engine.errors import IntegrityViolation, ValidationFailure
from rewards_engine.events.event_bus import EventBus, RewardsEvents, eventBus
from rewards_engine.services.tree_walk import affectedRoots
from rewards_engine.store.tree_store import TreeStore
from rewards_engine.utils.money import toMoney

logger = logging.getLogger(__name__)


@dataclass
class Reconciliation:
    memberID: int
    walletBalance: Decimal
    ledgerSum: Decimal

    @property
    def difference(self) -> Decimal:
        return self.walletBalance - self.ledgerSum

    @property
    def consistent(self) -> bool:
        return self.difference == 0


class WalletService:
    """Service for wallet reconciliation and resets."""

    def __init__(self, session: Session, cache: GenealogyCache = None, bus: EventBus = None):
        self.session = session
        self.store = TreeStore(session)
        self.cache = cache
        self.bus = bus or eventBus

    async def reconcile(self, memberId: int) -> Reconciliation:
        """Balance must equal the signed sum of the member's ledger rows."""
        if not isinstance(memberId, int) or memberId <= 0:
            raise ValidationFailure(f"Invalid member id {memberId!r}")

        member = self.store.requireMember(memberId)
        result = Reconciliation(
            memberID=memberId,
            walletBalance=toMoney(member.walletBalance),
            ledgerSum=self.store.ledgerSum(memberId)
        )

        if not result.consistent:
            logger.error(
                f"Wallet of member {memberId} out of balance: "
                f"balance={result.walletBalance}, ledger={result.ledgerSum}"
            )
            raise IntegrityViolation(
                f"Wallet balance of member {memberId} does not match its ledger",
                memberID=memberId,
                walletBalance=str(result.walletBalance),
                ledgerSum=str(result.ledgerSum)
            )
        return result

    async def findImbalances(self, memberIds: Optional[List[int]] = None) -> List[Reconciliation]:
        """Non-raising sweep over many wallets, for reporting."""
        imbalances = []
        for memberId in memberIds or self.store.getMemberIds():
            try:
                await self.reconcile(memberId)
            except IntegrityViolation:
                member = self.store.requireMember(memberId)
                imbalances.append(Reconciliation(
                    memberID=memberId,
                    walletBalance=toMoney(member.walletBalance),
                    ledgerSum=self.store.ledgerSum(memberId)
                ))
        logger.info(f"Wallet sweep complete: {len(imbalances)} imbalanced wallets")
        return imbalances

    async def adminReset(self, memberId: int, context: CallerContext) -> Optional[int]:
        """Zero a wallet through an admin_reset ledger row. Returns the row id."""
        context.requireAdmin("Wallet reset")

        with self.store.transaction():
            member = self.store.requireMember(memberId, lock=True)
            balance = toMoney(member.walletBalance)
            if balance == 0:
                logger.info(f"Wallet of member {memberId} already empty, nothing to reset")
                return None

            transaction = self.store.appendWalletTransaction(
                memberId,
                -balance,
                ADMIN_RESET,
                description=context.reason or "Administrative wallet reset",
                reference=f"admin={context.actorID}"
            )
            self.store.incrementWalletBalance(memberId, -balance)
            transactionId = transaction.walletTransactionID

        logger.warning(f"Wallet of member {memberId} reset from {balance} by admin {context.actorID}")

        if self.cache is not None:
            roots = affectedRoots(self.store, [memberId])
            if roots is None:
                self.cache.invalidateAll()
            else:
                self.cache.invalidateRoots(roots)

        await self.bus.emit(RewardsEvents.WALLET_RESET, {
            "memberID": memberId,
            "previousBalance": str(balance),
            "actorID": context.actorID
        })
        return transactionId
