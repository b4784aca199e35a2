# models/wallet_transaction.py
"""
WalletTransaction model - append-only ledger behind Member.walletBalance.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin

REBATE = "rebate"
MATCHING_BONUS = "matching_bonus"
WITHDRAWAL = "withdrawal"
ADMIN_RESET = "admin_reset"


class WalletTransaction(Base, AuditMixin):
    __tablename__ = 'wallet_transactions'

    # Primary key
    walletTransactionID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)

    # Transaction details
    amount = Column(DECIMAL(12, 2), nullable=False)  # Положительная или отрицательная
    type = Column(String, nullable=False)  # rebate, matching_bonus, withdrawal, admin_reset
    description = Column(String, nullable=True)
    reference = Column(String, nullable=True)  # purchase=123, matching=45

    # Relationships
    member = relationship('Member', backref='wallet_transactions')

    def __repr__(self):
        return f"<WalletTransaction(id={self.walletTransactionID}, member={self.memberID}, amount={self.amount})>"
