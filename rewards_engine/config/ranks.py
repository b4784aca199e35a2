# rewards_engine/config/ranks.py
"""
Rank ladder and monetary constants.
"""
from decimal import Decimal

# Default ladder used to seed an empty ranks table.
# Entry rank has all thresholds at zero.
DEFAULT_RANK_LADDER = [
    {
        "name": "Distributor",
        "level": 1,
        "requiredPersonalSales": Decimal("0"),
        "requiredGroupSales": Decimal("0"),
        "requiredDirectDownline": 0,
        "requiredQualifiedDownline": 0,
        "prerequisiteLevel": None
    },
    {
        "name": "Bronze",
        "level": 2,
        "requiredPersonalSales": Decimal("500"),
        "requiredGroupSales": Decimal("2500"),
        "requiredDirectDownline": 2,
        "requiredQualifiedDownline": 0,
        "prerequisiteLevel": None
    },
    {
        "name": "Silver",
        "level": 3,
        "requiredPersonalSales": Decimal("1000"),
        "requiredGroupSales": Decimal("7500"),
        "requiredDirectDownline": 3,
        "requiredQualifiedDownline": 1,
        "prerequisiteLevel": 2
    },
    {
        "name": "Gold",
        "level": 4,
        "requiredPersonalSales": Decimal("2000"),
        "requiredGroupSales": Decimal("15000"),
        "requiredDirectDownline": 5,
        "requiredQualifiedDownline": 2,
        "prerequisiteLevel": 2
    },
    {
        "name": "Diamond",
        "level": 5,
        "requiredPersonalSales": Decimal("5000"),
        "requiredGroupSales": Decimal("50000"),
        "requiredDirectDownline": 8,
        "requiredQualifiedDownline": 3,
        "prerequisiteLevel": 4
    }
]

# Constants
CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# Qualified downline scopes
SCOPE_DIRECT = "direct"
SCOPE_SUBTREE = "subtree"
