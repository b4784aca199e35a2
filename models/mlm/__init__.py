# models/mlm/__init__.py
"""
Program-specific tables for ranks and the binary plan.
"""

from models.mlm.rank_advancement import RankAdvancement
from models.mlm.matching_period import MatchingPeriod

__all__ = [
    'RankAdvancement',
    'MatchingPeriod',
]
