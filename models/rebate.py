# models/rebate.py
"""
Rebate model - write-once credit to an upline member for a downline purchase.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from decimal import Decimal
from models.base import Base, AuditMixin


class Rebate(Base, AuditMixin):
    __tablename__ = 'rebates'

    # Primary key
    rebateID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    purchaseID = Column(Integer, ForeignKey('purchases.purchaseID'), nullable=False, index=True)
    generatorID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)  # покупатель
    receiverID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)  # кто получает
    walletTransactionID = Column(Integer, ForeignKey('wallet_transactions.walletTransactionID'), nullable=True)

    # Calculation
    level = Column(Integer, nullable=False)
    rewardType = Column(String, nullable=False)  # percentage, fixed
    rate = Column(DECIMAL(12, 2), nullable=False)  # процент или фиксированная сумма из конфига
    amount = Column(DECIMAL(12, 2), nullable=False)
    pvAmount = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0"))  # PV-ребейт от totalPV

    # Status
    status = Column(String, default="pending")  # pending, processed
    processedAt = Column(DateTime, nullable=True)

    # Idempotency guard
    __table_args__ = (
        UniqueConstraint('purchaseID', 'receiverID', 'level', name='uq_rebate_purchase_receiver_level'),
    )

    # Relationships
    receiver = relationship('Member', foreign_keys=[receiverID], backref='rebates_received')
    generator = relationship('Member', foreign_keys=[generatorID], backref='rebates_generated')
    purchase = relationship('Purchase', backref='rebates')
    walletTransaction = relationship('WalletTransaction')

    def __repr__(self):
        return f"<Rebate(rebateID={self.rebateID}, receiver={self.receiverID}, amount={self.amount})>"
