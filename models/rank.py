# models/rank.py
"""
Rank model - ordered qualification tiers.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, ForeignKey
from sqlalchemy.orm import relationship
from decimal import Decimal
from models.base import Base


class Rank(Base):
    __tablename__ = 'ranks'

    rankID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    level = Column(Integer, nullable=False, unique=True)  # 1 = entry

    # Qualification thresholds (all must hold)
    requiredPersonalSales = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0"))
    requiredGroupSales = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0"))
    requiredDirectDownline = Column(Integer, nullable=False, default=0)
    requiredQualifiedDownline = Column(Integer, nullable=False, default=0)
    prerequisiteRankID = Column(Integer, ForeignKey('ranks.rankID'), nullable=True)

    prerequisiteRank = relationship('Rank', remote_side=[rankID])

    def __repr__(self):
        return f"<Rank(rankID={self.rankID}, name={self.name}, level={self.level})>"
