# models/__init__.py
"""
Database models for the rewards engine.
Import all models here for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Core models
from models.rank import Rank
from models.member import Member
from models.product import Product
from models.rebate_config import RebateConfig
from models.purchase import Purchase
from models.wallet_transaction import WalletTransaction
from models.rebate import Rebate

# MLM models
from models.mlm.rank_advancement import RankAdvancement
from models.mlm.matching_period import MatchingPeriod

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Core
    'Rank',
    'Member',
    'Product',
    'RebateConfig',
    'Purchase',
    'WalletTransaction',
    'Rebate',

    # MLM
    'RankAdvancement',
    'MatchingPeriod',
]
