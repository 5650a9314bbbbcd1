"""Recommendation query engine and result models."""

from sga.recommend.engine import RecommendationEngine
from sga.recommend.models import (
    Recommendation,
    PersonalizedRow,
    SimilarRow,
    TrendingRow,
    GenreRow,
    FallbackRow,
)

__all__ = [
    "RecommendationEngine",
    "Recommendation",
    "PersonalizedRow",
    "SimilarRow",
    "TrendingRow",
    "GenreRow",
    "FallbackRow",
]
