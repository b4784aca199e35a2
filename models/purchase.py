# models/purchase.py
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from decimal import Decimal
from models.base import Base, AuditMixin

PENDING = "pending"
COMPLETED = "completed"
CANCELLED = "cancelled"


class Purchase(Base, AuditMixin):
    __tablename__ = 'purchases'

    # Primary key
    purchaseID = Column(Integer, primary_key=True, autoincrement=True)

    # Foreign keys
    buyerID = Column(Integer, ForeignKey('members.memberID'), nullable=False, index=True)
    productID = Column(Integer, ForeignKey('products.productID'), nullable=False)

    # Purchase details
    quantity = Column(Integer, nullable=False, default=1)
    totalAmount = Column(DECIMAL(12, 2), nullable=False)
    totalPV = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0"))

    status = Column(String, nullable=False, default=PENDING, index=True)  # pending, completed, cancelled

    # Set in the same transaction that writes the rebates
    rebatesDisbursedAt = Column(DateTime, nullable=True)

    # Relationships
    buyer = relationship('Member', backref='purchases')
    product = relationship('Product')

    @property
    def isDisbursed(self) -> bool:
        return self.rebatesDisbursedAt is not None

    def __repr__(self):
        return f"<Purchase(purchaseID={self.purchaseID}, buyer={self.buyerID}, amount={self.totalAmount})>"
