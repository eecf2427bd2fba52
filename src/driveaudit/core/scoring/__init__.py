"""
driveaudit Risk Scoring.

Scores a file's information-leak risk from its sharing metadata,
using an injected RiskPolicy for weights and thresholds.
"""

from .patterns import SENSITIVE_CATEGORIES, SensitiveNameMatch, detect_sensitive_name
from .scorer import (
    CONFIDENTIAL_MIME_TYPES,
    DEFAULT_SENSITIVE_NAME_WEIGHTS,
    DEFAULT_THRESHOLDS,
    DEFAULT_WEIGHTS,
    RECOMMENDATIONS,
    RULE_CATEGORIES,
    RULE_ORDER,
    RiskAssessment,
    RiskPolicy,
    has_external_editor,
    has_external_sharing,
    is_publicly_shared,
    score,
    score_to_level,
)

__all__ = [
    "score",
    "score_to_level",
    "is_publicly_shared",
    "has_external_sharing",
    "has_external_editor",
    "detect_sensitive_name",
    "RiskAssessment",
    "RiskPolicy",
    "SensitiveNameMatch",
    "CONFIDENTIAL_MIME_TYPES",
    "DEFAULT_SENSITIVE_NAME_WEIGHTS",
    "DEFAULT_THRESHOLDS",
    "DEFAULT_WEIGHTS",
    "RECOMMENDATIONS",
    "RULE_CATEGORIES",
    "RULE_ORDER",
    "SENSITIVE_CATEGORIES",
]
