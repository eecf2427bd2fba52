"""
driveaudit Risk Scoring Engine.

Computes a file's information-leak risk from its sharing metadata only.

Formula:
    score = min(100, Σ weight(rule) for every triggered rule)
    level = first level in the threshold table whose minimum <= score

Rules are evaluated in a fixed order and each contributes its configured
weight once, regardless of how many permissions trigger it:

    public_sharing      anyone-with-link permission present           40
    external_sharing    any grant outside the organization domain     20
    external_editor     an editor role held outside the organization  15
    external_owner      file owned outside the organization            0 (off)
    confidential_type   spreadsheet / document / PDF / CSV mime type  15
    sensitive_filename  name matches a sensitive category          5-25
    stale_sharing       shared and untouched for over a year          10
    many_shares         more than 10 user/group grants                 5

Weights, thresholds and rule parameters live in ``RiskPolicy`` and are
injected; the engine itself holds no policy. Scoring is pure: the only
time-dependent rule takes ``now`` as an argument.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping

from driveaudit.adapters.base import FileEntry
from driveaudit.core.scoring.patterns import detect_sensitive_name
from driveaudit.core.types import PrincipalType, RiskLevel

logger = logging.getLogger(__name__)

MAX_SCORE = 100

# =============================================================================
# DEFAULT POLICY
# =============================================================================

# Minimum score for each level, checked from most to least severe
DEFAULT_THRESHOLDS: Dict[str, int] = {
    "critical": 80,
    "high": 60,
    "medium": 40,
}

DEFAULT_WEIGHTS: Dict[str, int] = {
    "public_sharing": 40,
    "external_sharing": 20,
    "external_editor": 15,
    "external_owner": 0,
    "confidential_type": 15,
    "stale_sharing": 10,
    "many_shares": 5,
}

# sensitive_filename weight depends on the most severe matching category
DEFAULT_SENSITIVE_NAME_WEIGHTS: Dict[str, int] = {
    "critical": 25,
    "high": 15,
    "medium": 10,
    "low": 5,
}

CONFIDENTIAL_MIME_TYPES = frozenset({
    "application/vnd.google-apps.spreadsheet",
    "application/vnd.google-apps.document",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
    "text/csv",
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
})

# Rule evaluation order; also the order factors are reported in
RULE_ORDER: List[str] = [
    "public_sharing",
    "external_sharing",
    "external_editor",
    "external_owner",
    "confidential_type",
    "sensitive_filename",
    "stale_sharing",
    "many_shares",
]

# Rules that share a category produce a single recommendation
RULE_CATEGORIES: Dict[str, str] = {
    "public_sharing": "public_access",
    "external_sharing": "external_access",
    "external_editor": "external_edit",
    "external_owner": "external_access",
    "confidential_type": "sensitive_content",
    "sensitive_filename": "sensitive_content",
    "stale_sharing": "stale_access",
    "many_shares": "broad_access",
}

RECOMMENDATIONS: Dict[str, str] = {
    "public_access": (
        "Turn off 'anyone with the link' access and share with specific people instead"
    ),
    "external_access": (
        "Confirm the external sharing is still required and remove it if not"
    ),
    "external_edit": (
        "Downgrade external collaborators to viewer or remove their access"
    ),
    "sensitive_content": (
        "The file likely holds sensitive data; restrict sharing to the minimum needed"
    ),
    "stale_access": (
        "The file has not changed in over a year; check whether sharing is still needed"
    ),
    "broad_access": (
        "The file is shared with many people; review who still needs access"
    ),
}


@dataclass(frozen=True)
class RiskPolicy:
    """Injected scoring configuration."""

    weights: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    sensitive_name_weights: Mapping[str, int] = field(
        default_factory=lambda: dict(DEFAULT_SENSITIVE_NAME_WEIGHTS)
    )
    thresholds: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))
    confidential_mime_types: frozenset = CONFIDENTIAL_MIME_TYPES
    stale_days: int = 365
    many_shares_threshold: int = 10

    @classmethod
    def default(cls) -> "RiskPolicy":
        return cls()

    def weight(self, rule: str) -> int:
        return int(self.weights.get(rule, 0))

    def level_for(self, score: int) -> RiskLevel:
        return score_to_level(score, self.thresholds)


@dataclass(frozen=True)
class RiskAssessment:
    """Output of scoring one file."""

    score: int
    level: RiskLevel
    factors: tuple
    recommendations: tuple

    def to_dict(self) -> dict:
        return {
            "riskScore": self.score,
            "riskLevel": self.level.value,
            "riskFactors": list(self.factors),
            "recommendations": list(self.recommendations),
        }


def score_to_level(score: int, thresholds: Mapping[str, int] = DEFAULT_THRESHOLDS) -> RiskLevel:
    """Map score to risk level via the threshold table."""
    if score >= thresholds.get("critical", DEFAULT_THRESHOLDS["critical"]):
        return RiskLevel.CRITICAL
    elif score >= thresholds.get("high", DEFAULT_THRESHOLDS["high"]):
        return RiskLevel.HIGH
    elif score >= thresholds.get("medium", DEFAULT_THRESHOLDS["medium"]):
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


# =============================================================================
# RULE CHECKS
# =============================================================================


def is_publicly_shared(entry: FileEntry) -> bool:
    return any(p.type == PrincipalType.ANYONE for p in entry.active_permissions)


def has_external_sharing(entry: FileEntry, organization_domain: str) -> bool:
    return any(p.is_external(organization_domain) for p in entry.active_permissions)


def has_external_editor(entry: FileEntry, organization_domain: str) -> bool:
    return any(
        p.role.is_editor and p.is_external(organization_domain)
        for p in entry.active_permissions
    )


def count_direct_shares(entry: FileEntry) -> int:
    return sum(
        1 for p in entry.active_permissions
        if p.type in (PrincipalType.USER, PrincipalType.GROUP)
    )


def _stale_days(entry: FileEntry, now: datetime) -> int | None:
    if not entry.modified_time:
        return None
    modified = entry.modified_time
    if modified.tzinfo is None:
        modified = modified.replace(tzinfo=timezone.utc)
    return (now - modified).days


def _triggered_rules(
    entry: FileEntry,
    organization_domain: str,
    policy: RiskPolicy,
    now: datetime,
) -> Dict[str, int]:
    """Weights of every triggered rule, keyed by rule name in RULE_ORDER."""
    checks: Dict[str, int] = {}

    if is_publicly_shared(entry):
        checks["public_sharing"] = policy.weight("public_sharing")
    if has_external_sharing(entry, organization_domain):
        checks["external_sharing"] = policy.weight("external_sharing")
    if has_external_editor(entry, organization_domain):
        checks["external_editor"] = policy.weight("external_editor")
    if entry.owner_email and not entry.owner_is_internal(organization_domain):
        checks["external_owner"] = policy.weight("external_owner")
    if entry.mime_type in policy.confidential_mime_types:
        checks["confidential_type"] = policy.weight("confidential_type")

    name_match = detect_sensitive_name(entry.name)
    if name_match.is_sensitive:
        checks["sensitive_filename"] = int(
            policy.sensitive_name_weights.get(name_match.max_level.value, 0)
        )

    if entry.shared:
        days = _stale_days(entry, now)
        if days is not None and days > policy.stale_days:
            checks["stale_sharing"] = policy.weight("stale_sharing")

    if count_direct_shares(entry) > policy.many_shares_threshold:
        checks["many_shares"] = policy.weight("many_shares")

    # A rule weighted zero is switched off and not reported
    return {rule: checks[rule] for rule in RULE_ORDER if checks.get(rule, 0) > 0}


def score(
    entry: FileEntry,
    organization_domain: str,
    policy: RiskPolicy | None = None,
    now: datetime | None = None,
) -> RiskAssessment:
    """
    Score one file's sharing risk.

    This is the main scoring function used by the scan driver.

    Args:
        entry: File metadata and permission list
        organization_domain: Domain considered internal
        policy: Weights and thresholds (default policy if None)
        now: Reference time for the staleness rule (current time if None)

    Returns:
        RiskAssessment with score, level, factors and recommendations

    Example:
        >>> result = score(entry, "example.com")
        >>> print(f"Risk: {result.score} ({result.level.value})")
        Risk: 75 (high)
    """
    policy = policy or RiskPolicy.default()
    now = now or datetime.now(timezone.utc)

    triggered = _triggered_rules(entry, organization_domain, policy, now)
    total = min(MAX_SCORE, sum(triggered.values()))

    recommendations: List[str] = []
    seen_categories = set()
    for rule in triggered:
        category = RULE_CATEGORIES[rule]
        if category not in seen_categories:
            seen_categories.add(category)
            recommendations.append(RECOMMENDATIONS[category])

    return RiskAssessment(
        score=total,
        level=policy.level_for(total),
        factors=tuple(triggered),
        recommendations=tuple(recommendations),
    )
