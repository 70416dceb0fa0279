"""Target stores and the promotion of canonical records into them."""

from .base import LoadResult, TargetStore
from .memory_loader import InMemoryTargetStore
from .api_loader import APITargetStore
from .promoter import Promoter, PromotionOutcome

__all__ = [
    "LoadResult",
    "TargetStore",
    "InMemoryTargetStore",
    "APITargetStore",
    "Promoter",
    "PromotionOutcome",
]
