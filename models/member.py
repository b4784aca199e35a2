# models/member.py
"""
Member model - central entity of both genealogy trees.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey, CheckConstraint
from decimal import Decimal
from models.base import Base, utcnow

LEFT = "left"
RIGHT = "right"
LEGS = (LEFT, RIGHT)


class Member(Base):
    __tablename__ = 'members'

    # Primary identification
    memberID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, default=utcnow, index=True)

    name = Column(String, nullable=True)
    email = Column(String, nullable=True)

    # Unilevel tree: спонсор (NULL для корня организации)
    uplineID = Column(Integer, ForeignKey('members.memberID'), nullable=True, index=True)

    # Binary tree: независимая от unilevel структура
    leftLegID = Column(Integer, ForeignKey('members.memberID'), nullable=True, unique=True)
    rightLegID = Column(Integer, ForeignKey('members.memberID'), nullable=True, unique=True)
    placementPosition = Column(String, nullable=True)  # left, right, NULL

    rankID = Column(Integer, ForeignKey('ranks.rankID'), nullable=True, index=True)

    # Denormalized running total of wallet_transactions
    walletBalance = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0.00"))

    __table_args__ = (
        CheckConstraint("walletBalance >= 0", name="ck_members_wallet_non_negative"),
    )

    def legID(self, leg: str):
        """Return the child id sitting on the given binary leg."""
        return self.leftLegID if leg == LEFT else self.rightLegID

    def setLegID(self, leg: str, memberId):
        if leg == LEFT:
            self.leftLegID = memberId
        else:
            self.rightLegID = memberId

    @property
    def openLegs(self):
        """Free binary slots, left first."""
        return [leg for leg in LEGS if self.legID(leg) is None]

    @property
    def isPlaced(self) -> bool:
        return self.placementPosition is not None

    def __repr__(self):
        return f"<Member(memberID={self.memberID}, upline={self.uplineID}, rank={self.rankID})>"
