# rewards_engine/__init__.py
"""
Rewards engine - unilevel rebates, rank qualification, binary placement
and cached genealogy.
"""

# Facade
from rewards_engine.engine import RewardsEngine

# Services
from rewards_engine.services.rebate_service import RebateService, PercentageReward, FixedReward
from rewards_engine.services.rank_service import RankService
from rewards_engine.services.binary_service import BinaryService, computeMatching
from rewards_engine.services.genealogy_service import GenealogyService
from rewards_engine.services.wallet_service import WalletService

# Infrastructure
from rewards_engine.cache.genealogy_cache import GenealogyCache
from rewards_engine.context import CallerContext, SYSTEM
from rewards_engine.errors import (
    RewardsError,
    NotFound,
    AlreadyProcessed,
    IntegrityViolation,
    AlreadyPlaced,
    TransientStoreFailure,
    ValidationFailure,
)

# Utilities
from rewards_engine.utils.time_machine import timeMachine

# Events
from rewards_engine.events.event_bus import eventBus, RewardsEvents

__all__ = [
    # Facade
    'RewardsEngine',

    # Services
    'RebateService',
    'PercentageReward',
    'FixedReward',
    'RankService',
    'BinaryService',
    'computeMatching',
    'GenealogyService',
    'WalletService',

    # Infrastructure
    'GenealogyCache',
    'CallerContext',
    'SYSTEM',
    'RewardsError',
    'NotFound',
    'AlreadyProcessed',
    'IntegrityViolation',
    'AlreadyPlaced',
    'TransientStoreFailure',
    'ValidationFailure',

    # Utils
    'timeMachine',

    # Events
    'eventBus',
    'RewardsEvents',
]
