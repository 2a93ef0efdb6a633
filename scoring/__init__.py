"""
Credit Scoring Package

Provides the reputation rule table, score clamping and the credit level
classification shared by the trade services. Nothing here touches storage.
"""

from .rules import (
    ScoreRuleEngine,
    ScoringRule,
    ScoringEvent,
    ScoreChange,
    CounterField,
    CreditLevelBand,
    CREDIT_LEVEL_BANDS,
    DEFAULT_SCORE,
    classify_score,
    clamp_score,
)

__all__ = [
    "ScoreRuleEngine",
    "ScoringRule",
    "ScoringEvent",
    "ScoreChange",
    "CounterField",
    "CreditLevelBand",
    "CREDIT_LEVEL_BANDS",
    "DEFAULT_SCORE",
    "classify_score",
    "clamp_score",
]
