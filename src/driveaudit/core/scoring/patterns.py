"""
Sensitive filename patterns.

Filenames frequently reveal what a document holds ("payroll_2024.xlsx",
"パスワード一覧.txt"). Each category below carries a severity; the scorer
weights a match by the most severe category found.

Patterns are matched case-insensitively against the file name only.
Content is never inspected.
"""

import re
from dataclasses import dataclass, field

from driveaudit.core.types import RiskLevel

# (category, severity, description, patterns)
SENSITIVE_CATEGORIES: list[tuple[str, RiskLevel, str, list[str]]] = [
    (
        "credentials",
        RiskLevel.CRITICAL,
        "Passwords or access credentials",
        [r"password", r"passwd", r"パスワード", r"credential", r"secret[_ -]?key", r"api[_ -]?key"],
    ),
    (
        "national_id",
        RiskLevel.CRITICAL,
        "National identification numbers",
        [r"\bssn\b", r"social[_ -]?security", r"マイナンバー", r"個人番号", r"passport"],
    ),
    (
        "payroll",
        RiskLevel.HIGH,
        "Salary or payroll data",
        [r"salary", r"payroll", r"payslip", r"給与", r"賞与", r"給料"],
    ),
    (
        "personal_data",
        RiskLevel.HIGH,
        "Personal or customer data",
        [r"個人情報", r"customer[_ -]?list", r"顧客", r"名簿", r"resume", r"履歴書", r"\bcv\b"],
    ),
    (
        "confidential",
        RiskLevel.HIGH,
        "Marked confidential",
        [r"confidential", r"機密", r"社外秘", r"極秘", r"do[_ -]?not[_ -]?share"],
    ),
    (
        "contract",
        RiskLevel.MEDIUM,
        "Contracts or legal agreements",
        [r"contract", r"契約", r"\bnda\b", r"agreement", r"覚書"],
    ),
    (
        "financial",
        RiskLevel.MEDIUM,
        "Financial statements or invoices",
        [r"invoice", r"請求書", r"見積", r"決算", r"budget", r"予算", r"bank[_ -]?account", r"口座"],
    ),
    (
        "internal",
        RiskLevel.LOW,
        "Internal-only material",
        [r"internal[_ -]?only", r"社内", r"draft", r"下書き"],
    ),
]


@dataclass
class SensitiveNameMatch:
    """Result of matching one filename against the category table."""

    categories: list[str] = field(default_factory=list)
    descriptions: list[str] = field(default_factory=list)
    max_level: RiskLevel | None = None

    @property
    def is_sensitive(self) -> bool:
        return bool(self.categories)


_COMPILED = [
    (category, level, description, [re.compile(p, re.IGNORECASE) for p in patterns])
    for category, level, description, patterns in SENSITIVE_CATEGORIES
]


def detect_sensitive_name(name: str) -> SensitiveNameMatch:
    """Match *name* against every category, in table order."""
    match = SensitiveNameMatch()
    if not name:
        return match
    for category, level, description, patterns in _COMPILED:
        if any(p.search(name) for p in patterns):
            match.categories.append(category)
            match.descriptions.append(description)
            if match.max_level is None or level.rank > match.max_level.rank:
                match.max_level = level
    return match
