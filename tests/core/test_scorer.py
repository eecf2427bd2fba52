"""
Tests for the sharing-risk scoring engine.

Covers each rule in isolation, the score cap, threshold mapping,
recommendation de-duplication and policy injection.
"""

from datetime import timedelta

import pytest

from driveaudit.core.scoring import (
    RECOMMENDATIONS,
    RiskPolicy,
    detect_sensitive_name,
    score,
    score_to_level,
)
from driveaudit.core.types import PermissionRole, PermissionStatus, PrincipalType, RiskLevel

from ..conftest import NOW, ORG_DOMAIN, anyone, make_entry, make_permission


def external_user(pid="ext", role=PermissionRole.READER):
    return make_permission(pid, role=role, email=f"{pid}@partner.org")


def internal_user(pid="int", role=PermissionRole.READER):
    return make_permission(pid, role=role, email=f"{pid}@example.com")


# ── Threshold tests ───────────────────────────────────────────────────


class TestScoreToLevel:

    @pytest.mark.parametrize(
        "value, level",
        [
            (100, RiskLevel.CRITICAL),
            (80, RiskLevel.CRITICAL),
            (79, RiskLevel.HIGH),
            (60, RiskLevel.HIGH),
            (59, RiskLevel.MEDIUM),
            (40, RiskLevel.MEDIUM),
            (39, RiskLevel.LOW),
            (0, RiskLevel.LOW),
        ],
    )
    def test_default_thresholds(self, value, level):
        assert score_to_level(value) == level

    def test_custom_thresholds(self):
        thresholds = {"critical": 50, "high": 30, "medium": 10}
        assert score_to_level(50, thresholds) == RiskLevel.CRITICAL
        assert score_to_level(10, thresholds) == RiskLevel.MEDIUM


# ── Rule tests ────────────────────────────────────────────────────────


class TestRules:

    def test_private_file_scores_zero(self):
        result = score(make_entry("f1"), ORG_DOMAIN, now=NOW)
        assert result.score == 0
        assert result.level == RiskLevel.LOW
        assert result.factors == ()
        assert result.recommendations == ()

    def test_internal_share_scores_zero(self):
        result = score(make_entry("f1", permissions=[internal_user()]), ORG_DOMAIN, now=NOW)
        assert result.score == 0

    def test_public_link_counts_as_external_too(self):
        result = score(make_entry("f1", permissions=[anyone()]), ORG_DOMAIN, now=NOW)
        assert result.factors == ("public_sharing", "external_sharing")
        assert result.score == 60
        assert result.level == RiskLevel.HIGH

    def test_external_editor(self):
        entry = make_entry("f1", permissions=[external_user(role=PermissionRole.WRITER)])
        result = score(entry, ORG_DOMAIN, now=NOW)
        assert result.factors == ("external_sharing", "external_editor")
        assert result.score == 35

    def test_external_domain_grant(self):
        grant = make_permission("d", type=PrincipalType.DOMAIN, domain="partner.org")
        result = score(make_entry("f1", permissions=[grant]), ORG_DOMAIN, now=NOW)
        assert "external_sharing" in result.factors

    def test_own_domain_grant_is_internal(self):
        grant = make_permission("d", type=PrincipalType.DOMAIN, domain="EXAMPLE.com")
        result = score(make_entry("f1", permissions=[grant]), ORG_DOMAIN, now=NOW)
        assert result.score == 0

    def test_external_owner_off_by_default(self):
        entry = make_entry("f1", owner_email="bob@partner.org")
        assert "external_owner" not in score(entry, ORG_DOMAIN, now=NOW).factors

    def test_external_owner_weight_enables_rule(self):
        policy = RiskPolicy(weights={"external_owner": 10})
        entry = make_entry("f1", owner_email="bob@partner.org")
        result = score(entry, ORG_DOMAIN, policy=policy, now=NOW)
        assert result.factors == ("external_sharing", "external_owner")
        assert result.score == 30

    def test_confidential_mime_type(self):
        entry = make_entry("f1", mime_type="application/vnd.google-apps.spreadsheet")
        result = score(entry, ORG_DOMAIN, now=NOW)
        assert result.factors == ("confidential_type",)
        assert result.score == 15

    def test_stale_sharing_requires_shared_flag(self):
        old = NOW - timedelta(days=400)
        shared = make_entry("f1", permissions=[internal_user()], modified=old)
        private = make_entry("f2", modified=old)
        assert "stale_sharing" in score(shared, ORG_DOMAIN, now=NOW).factors
        assert "stale_sharing" not in score(private, ORG_DOMAIN, now=NOW).factors

    def test_stale_boundary_is_exclusive(self):
        entry = make_entry("f1", permissions=[internal_user()], modified=NOW - timedelta(days=365))
        assert "stale_sharing" not in score(entry, ORG_DOMAIN, now=NOW).factors

    def test_many_shares_counts_users_and_groups(self):
        grants = [internal_user(f"u{i}") for i in range(11)]
        result = score(make_entry("f1", permissions=grants), ORG_DOMAIN, now=NOW)
        assert result.factors == ("many_shares",)

    def test_ten_grants_including_owner_is_not_many(self):
        grants = [internal_user(f"u{i}") for i in range(9)]
        assert score(make_entry("f1", permissions=grants), ORG_DOMAIN, now=NOW).score == 0

    def test_deleted_permissions_are_ignored(self):
        removed = anyone().with_status(PermissionStatus.DELETED, NOW.isoformat())
        result = score(make_entry("f1", permissions=[removed]), ORG_DOMAIN, now=NOW)
        assert result.score == 0

    def test_score_is_capped(self):
        grants = [anyone(), external_user(role=PermissionRole.WRITER)]
        grants += [internal_user(f"u{i}") for i in range(11)]
        entry = make_entry(
            "f1",
            name="password list.xlsx",
            permissions=grants,
            mime_type="application/vnd.google-apps.spreadsheet",
            modified=NOW - timedelta(days=500),
        )
        result = score(entry, ORG_DOMAIN, now=NOW)
        assert result.score == 100
        assert result.level == RiskLevel.CRITICAL


# ── Recommendation tests ──────────────────────────────────────────────


class TestRecommendations:

    def test_one_recommendation_per_category(self):
        entry = make_entry(
            "f1",
            name="confidential.pdf",
            mime_type="application/pdf",
        )
        result = score(entry, ORG_DOMAIN, now=NOW)
        assert result.factors == ("confidential_type", "sensitive_filename")
        assert result.recommendations == (RECOMMENDATIONS["sensitive_content"],)

    def test_recommendations_follow_rule_order(self):
        result = score(make_entry("f1", permissions=[anyone()]), ORG_DOMAIN, now=NOW)
        assert result.recommendations == (
            RECOMMENDATIONS["public_access"],
            RECOMMENDATIONS["external_access"],
        )

    def test_to_dict(self):
        data = score(make_entry("f1", permissions=[anyone()]), ORG_DOMAIN, now=NOW).to_dict()
        assert data["riskScore"] == 60
        assert data["riskLevel"] == "high"
        assert data["riskFactors"] == ["public_sharing", "external_sharing"]


# ── Sensitive filename tests ──────────────────────────────────────────


class TestSensitiveNames:

    @pytest.mark.parametrize(
        "name, category, level",
        [
            ("Passwords.txt", "credentials", RiskLevel.CRITICAL),
            ("パスワード一覧.xlsx", "credentials", RiskLevel.CRITICAL),
            ("payroll_2024.xlsx", "payroll", RiskLevel.HIGH),
            ("顧客リスト.csv", "personal_data", RiskLevel.HIGH),
            ("NDA signed.pdf", "contract", RiskLevel.MEDIUM),
            ("draft notes", "internal", RiskLevel.LOW),
        ],
    )
    def test_categories(self, name, category, level):
        match = detect_sensitive_name(name)
        assert category in match.categories
        assert match.max_level == level

    def test_weight_follows_most_severe_category(self):
        entry = make_entry("f1", name="draft password.txt")
        result = score(entry, ORG_DOMAIN, now=NOW)
        assert result.score == 25

    def test_plain_name_is_not_sensitive(self):
        assert not detect_sensitive_name("holiday photos").is_sensitive
        assert not detect_sensitive_name("").is_sensitive

    def test_word_boundaries(self):
        assert not detect_sensitive_name("classnda.txt").is_sensitive
