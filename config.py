import os
from decimal import Decimal
from dotenv import load_dotenv

# Загрузка .env
load_dotenv()


def _getBool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# База данных
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///rewards.db")

# Cache
REDIS_URL = os.getenv("REDIS_URL")  # None -> in-process cache
GENEALOGY_CACHE_TTL = int(os.getenv("GENEALOGY_CACHE_TTL", "300"))
GENEALOGY_CACHE_NAMESPACE = os.getenv("GENEALOGY_CACHE_NAMESPACE", "genealogy")

# Unilevel rebates
MAX_REBATE_LEVEL = int(os.getenv("MAX_REBATE_LEVEL", "10"))
FIXED_REBATE_PV_PERCENTAGE = Decimal(os.getenv("FIXED_REBATE_PV_PERCENTAGE", "1"))  # PV-доля для фиксированных наград

# Genealogy queries
MAX_GENEALOGY_DEPTH = int(os.getenv("MAX_GENEALOGY_DEPTH", "10"))
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", "100"))
QUERY_BATCH_SIZE = int(os.getenv("QUERY_BATCH_SIZE", "500"))
ACTIVITY_WINDOW_DAYS = int(os.getenv("ACTIVITY_WINDOW_DAYS", "30"))

# Ranks
RANK_QUALIFICATION_WINDOW_DAYS = int(os.getenv("RANK_QUALIFICATION_WINDOW_DAYS", "0"))  # 0 = за всё время
RANK_MAX_DOWNLINE_DEPTH = int(os.getenv("RANK_MAX_DOWNLINE_DEPTH", "0"))  # 0 = без ограничения
QUALIFIED_DOWNLINE_SCOPE = os.getenv("QUALIFIED_DOWNLINE_SCOPE", "direct")  # direct, subtree
RANK_MAX_PASSES = int(os.getenv("RANK_MAX_PASSES", "50"))

# Binary plan
MATCHING_BONUS_RATE = Decimal(os.getenv("MATCHING_BONUS_RATE", "10"))  # % от слабой ноги
BINARY_CARRY_FORWARD = _getBool("BINARY_CARRY_FORWARD", False)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
