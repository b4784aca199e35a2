# models/mlm/rank_advancement.py
"""
RankAdvancement model - tracks rank promotions and the metrics behind them.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, utcnow


class RankAdvancement(Base):
    __tablename__ = 'rank_advancements'

    advancementID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, default=utcnow)

    # Relations
    memberID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    previousRankID = Column(Integer, ForeignKey('ranks.rankID'), nullable=True)
    newRankID = Column(Integer, ForeignKey('ranks.rankID'), nullable=False)

    # Qualification metrics at time of achievement
    personalSales = Column(DECIMAL(12, 2), nullable=False, default=0)
    groupSales = Column(DECIMAL(12, 2), nullable=False, default=0)
    directDownlineCount = Column(Integer, nullable=False, default=0)
    qualifiedDownlineCount = Column(Integer, nullable=False, default=0)
    qualificationMethod = Column(String, nullable=True)  # natural, batch, cascade

    # Relationships
    member = relationship('Member', backref='rank_advancements')
    previousRank = relationship('Rank', foreign_keys=[previousRankID])
    newRank = relationship('Rank', foreign_keys=[newRankID])

    def __repr__(self):
        return f"<RankAdvancement(member={self.memberID}, rank={self.newRankID}, date={self.createdAt})>"
