# models/product.py
from sqlalchemy import Column, Integer, String, DECIMAL
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Product(Base, AuditMixin):
    __tablename__ = 'products'

    productID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    price = Column(DECIMAL(12, 2), nullable=False)
    pointValue = Column(DECIMAL(12, 2), nullable=True)  # PV, вторичная единица для квалификации

    rebateConfigs = relationship('RebateConfig', back_populates='product', order_by='RebateConfig.level')

    def __repr__(self):
        return f"<Product(productID={self.productID}, price={self.price}, pv={self.pointValue})>"
