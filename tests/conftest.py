"""Pytest configuration and shared fixtures for all tests."""

import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

# Добавить корень проекта в PYTHONPATH
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, Member, Product, Purchase, Rank, RebateConfig
from models.purchase import COMPLETED
from models.rebate_config import FIXED, PERCENTAGE
from rewards_engine.cache.genealogy_cache import GenealogyCache, InMemoryCacheBackend
from rewards_engine.events.event_bus import EventBus
from rewards_engine.utils.time_machine import timeMachine


@pytest.fixture
def engine():
    """In-memory SQLite shared by every connection of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    session = sessionmaker(bind=engine)()
    yield session
    session.close()


@pytest.fixture
def cache():
    return GenealogyCache(InMemoryCacheBackend(), ttl=300, namespace="test")


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture(autouse=True)
def realTime():
    yield
    timeMachine.resetToRealTime()


class Factory:
    """Builds committed rows with sensible defaults."""

    def __init__(self, session):
        self.session = session

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def member(self, upline: Member = None, rank: Rank = None, name: str = None, **fields) -> Member:
        return self._save(Member(
            name=name,
            uplineID=upline.memberID if upline else None,
            rankID=rank.rankID if rank else None,
            **fields
        ))

    def chain(self, length: int) -> list:
        """Unilevel line, organization root first."""
        members = []
        upline = None
        for i in range(length):
            upline = self.member(upline=upline, name=f"m{i}")
            members.append(upline)
        return members

    def rank(self, name: str, level: int, personal="0", group="0", direct=0, qualified=0,
             prerequisite: Rank = None) -> Rank:
        return self._save(Rank(
            name=name,
            level=level,
            requiredPersonalSales=Decimal(personal),
            requiredGroupSales=Decimal(group),
            requiredDirectDownline=direct,
            requiredQualifiedDownline=qualified,
            prerequisiteRankID=prerequisite.rankID if prerequisite else None
        ))

    def product(self, price="100.00", pointValue="10.00", name="Starter pack") -> Product:
        return self._save(Product(name=name, price=Decimal(price), pointValue=Decimal(pointValue)))

    def percentageConfig(self, product: Product, level: int, percentage) -> RebateConfig:
        return self._save(RebateConfig(
            productID=product.productID,
            level=level,
            rewardType=PERCENTAGE,
            percentage=Decimal(percentage)
        ))

    def fixedConfig(self, product: Product, level: int, amount) -> RebateConfig:
        return self._save(RebateConfig(
            productID=product.productID,
            level=level,
            rewardType=FIXED,
            fixedAmount=Decimal(amount)
        ))

    def purchase(self, buyer: Member, product: Product, totalAmount=None, quantity: int = 1,
                 status: str = COMPLETED, createdAt: datetime = None, totalPV=None) -> Purchase:
        fields = {}
        if createdAt is not None:
            fields["createdAt"] = createdAt
        return self._save(Purchase(
            buyerID=buyer.memberID,
            productID=product.productID,
            quantity=quantity,
            totalAmount=Decimal(str(totalAmount if totalAmount is not None else product.price)),
            totalPV=Decimal(str(totalPV if totalPV is not None else product.pointValue or 0)),
            status=status,
            **fields
        ))


@pytest.fixture
def factory(session):
    return Factory(session)
