# models/mlm/matching_period.py
"""
MatchingPeriod model - settled binary matching bonus for one member and period.
"""
from sqlalchemy import Column, Integer, DECIMAL, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from models.base import Base, utcnow


class MatchingPeriod(Base):
    __tablename__ = 'matching_periods'

    periodID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, default=utcnow)

    # Relations
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    walletTransactionID = Column(Integer, ForeignKey('wallet_transactions.walletTransactionID'), nullable=True)

    # Period
    periodStart = Column(DateTime, nullable=False)
    periodEnd = Column(DateTime, nullable=False)

    # Volumes
    leftVolume = Column(DECIMAL(14, 2), default=0)
    rightVolume = Column(DECIMAL(14, 2), default=0)
    leftCarryIn = Column(DECIMAL(14, 2), default=0)
    rightCarryIn = Column(DECIMAL(14, 2), default=0)
    matchedVolume = Column(DECIMAL(14, 2), default=0)
    leftCarryOut = Column(DECIMAL(14, 2), default=0)
    rightCarryOut = Column(DECIMAL(14, 2), default=0)

    # Earnings
    rate = Column(DECIMAL(5, 2), nullable=False)
    commission = Column(DECIMAL(12, 2), default=0)

    __table_args__ = (
        UniqueConstraint('memberID', 'periodStart', 'periodEnd', name='uq_matching_member_period'),
    )

    # Relationships
    member = relationship('Member', backref='matching_periods')

    def __repr__(self):
        return f"<MatchingPeriod(member={self.memberID}, start={self.periodStart}, commission={self.commission})>"
