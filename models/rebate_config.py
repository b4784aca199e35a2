# models/rebate_config.py
"""
RebateConfig model - per product, per upline level reward rule.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin

PERCENTAGE = "percentage"
FIXED = "fixed"


class RebateConfig(Base, AuditMixin):
    __tablename__ = 'rebate_configs'

    rebateConfigID = Column(Integer, primary_key=True, autoincrement=True)
    productID = Column(Integer, ForeignKey('products.productID'), nullable=False)
    level = Column(Integer, nullable=False)  # 1 = прямой спонсор покупателя

    rewardType = Column(String, nullable=False, default=PERCENTAGE)  # percentage, fixed
    percentage = Column(DECIMAL(5, 2), nullable=True)  # 10.00 = 10%
    fixedAmount = Column(DECIMAL(12, 2), nullable=True)

    __table_args__ = (
        UniqueConstraint('productID', 'level', name='uq_rebate_config_product_level'),
    )

    product = relationship('Product', back_populates='rebateConfigs')

    def __repr__(self):
        return f"<RebateConfig(product={self.productID}, level={self.level}, type={self.rewardType})>"
