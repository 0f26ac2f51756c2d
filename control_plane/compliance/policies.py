"""Processing purposes, data categories and the erasure classification.

These tables are the platform's record of processing: which purposes need
consent, how long each category is kept, which categories are frozen for
competitive integrity, and what happens to each field on erasure.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class LegalBasis(StrEnum):
    CONTRACT = "contract"
    CONSENT = "consent"
    LEGITIMATE_INTEREST = "legitimate_interest"


class Purpose(StrEnum):
    AUTHENTICATION = "authentication"
    PROFILE_MANAGEMENT = "profile_management"
    VOTING_PARTICIPATION = "voting_participation"
    CLAN_ACTIVITIES = "clan_activities"
    ANALYTICS = "analytics"
    MARKETING = "marketing"
    PERFORMANCE_TRACKING = "performance_tracking"


@dataclass(frozen=True)
class PurposePolicy:
    description: str
    legal_basis: LegalBasis
    retention: str
    required: bool = False


PURPOSES: dict[Purpose, PurposePolicy] = {
    Purpose.AUTHENTICATION: PurposePolicy(
        "User authentication and session management", LegalBasis.CONTRACT, "2 years after last login", required=True
    ),
    Purpose.PROFILE_MANAGEMENT: PurposePolicy(
        "User profile and gaming data management", LegalBasis.CONTRACT, "Account duration + 1 year"
    ),
    Purpose.VOTING_PARTICIPATION: PurposePolicy(
        "Community voting and governance participation", LegalBasis.CONTRACT, "Account duration + 3 years"
    ),
    Purpose.CLAN_ACTIVITIES: PurposePolicy(
        "Clan membership and social features", LegalBasis.CONTRACT, "Account duration + 1 year"
    ),
    Purpose.ANALYTICS: PurposePolicy(
        "Platform improvement and analytics", LegalBasis.LEGITIMATE_INTEREST, "2 years"
    ),
    Purpose.MARKETING: PurposePolicy(
        "Marketing communications and updates", LegalBasis.CONSENT, "Until consent withdrawn"
    ),
    Purpose.PERFORMANCE_TRACKING: PurposePolicy(
        "Gaming performance and achievement tracking", LegalBasis.CONTRACT, "Account duration + 2 years"
    ),
}


class DataCategory(StrEnum):
    IDENTITY = "identity"
    TOURNAMENT = "tournament"
    CLAN = "clan"
    VOTING = "voting"
    GAMING = "gaming"
    COMMUNICATION = "communication"
    BLOCKCHAIN = "blockchain"
    ANALYTICS = "analytics"


@dataclass(frozen=True)
class CategoryPolicy:
    lawful_basis: LegalBasis
    retention_days: int
    fields: tuple[str, ...]
    # Rectification is refused for frozen categories.
    immutable: bool = False
    immutable_reason: str | None = None


CATEGORIES: dict[DataCategory, CategoryPolicy] = {
    DataCategory.IDENTITY: CategoryPolicy(
        LegalBasis.CONTRACT,
        1095,
        ("username", "display_name", "email_address", "profile_image", "contact_information", "fraud_prevention_data"),
    ),
    DataCategory.TOURNAMENT: CategoryPolicy(
        LegalBasis.LEGITIMATE_INTEREST,
        2555,
        ("tournament_results", "rankings", "competitive_integrity_data"),
        immutable=True,
        immutable_reason="Tournament results are immutable for competitive integrity",
    ),
    DataCategory.CLAN: CategoryPolicy(
        LegalBasis.CONTRACT,
        1095,
        ("membership_status", "clan_role", "clan_contributions"),
    ),
    DataCategory.VOTING: CategoryPolicy(
        LegalBasis.LEGITIMATE_INTEREST,
        1095,
        ("voting_history", "proposals_created", "governance_weight"),
        immutable=True,
        immutable_reason="Voting history is immutable for democratic transparency",
    ),
    DataCategory.GAMING: CategoryPolicy(
        LegalBasis.CONTRACT,
        730,
        ("public_achievements", "leaderboard_scores", "gameplay_statistics"),
    ),
    DataCategory.COMMUNICATION: CategoryPolicy(
        LegalBasis.LEGITIMATE_INTEREST,
        365,
        ("personal_messages", "moderation_actions"),
    ),
    DataCategory.BLOCKCHAIN: CategoryPolicy(
        LegalBasis.CONTRACT,
        1095,
        ("wallet_address", "transaction_hashes", "token_balances"),
        immutable=True,
        immutable_reason="On-chain records are immutable",
    ),
    DataCategory.ANALYTICS: CategoryPolicy(
        LegalBasis.CONSENT,
        365,
        ("analytics_preferences", "engagement_data"),
    ),
}


class ErasureAction(StrEnum):
    ERASE = "erase"
    ANONYMIZE = "anonymize"
    RETAIN = "retain"


class RetentionJustification(StrEnum):
    FRAUD_PREVENTION = "fraud_prevention"
    INTEGRITY = "integrity"
    LEGAL_HOLD = "legal_hold"


ERASE_FIELDS = frozenset(
    {"personal_messages", "email_address", "profile_image", "contact_information", "analytics_preferences"}
)
ANONYMIZE_FIELDS = frozenset(
    {"tournament_results", "voting_history", "clan_contributions", "public_achievements", "leaderboard_scores"}
)
RETAINED_FIELDS: dict[str, RetentionJustification] = {
    "fraud_prevention_data": RetentionJustification.FRAUD_PREVENTION,
    "audit_logs": RetentionJustification.LEGAL_HOLD,
    "compliance_records": RetentionJustification.LEGAL_HOLD,
    "competitive_integrity_data": RetentionJustification.INTEGRITY,
}


def classify_field(category: DataCategory, field_name: str) -> tuple[ErasureAction, RetentionJustification | None]:
    """Decide what erasure does with one field.

    Explicitly listed fields follow their list. Anything else in a frozen
    category is anonymized (on-chain records cannot be rewritten and are
    retained under legal hold); the remainder is erased.
    """
    if field_name in RETAINED_FIELDS:
        return ErasureAction.RETAIN, RETAINED_FIELDS[field_name]
    if field_name in ANONYMIZE_FIELDS:
        return ErasureAction.ANONYMIZE, None
    if field_name in ERASE_FIELDS:
        return ErasureAction.ERASE, None
    if category == DataCategory.BLOCKCHAIN:
        return ErasureAction.RETAIN, RetentionJustification.LEGAL_HOLD
    if CATEGORIES[category].immutable:
        return ErasureAction.ANONYMIZE, None
    return ErasureAction.ERASE, None


class RequestKind(StrEnum):
    ACCESS = "access"
    RECTIFICATION = "rectification"
    ERASURE = "erasure"
    PORTABILITY = "portability"


# Hours allowed to complete each request kind.
PROCESSING_DEADLINE_HOURS: dict[RequestKind, int] = {
    RequestKind.ACCESS: 720,
    RequestKind.RECTIFICATION: 168,
    RequestKind.ERASURE: 720,
    RequestKind.PORTABILITY: 720,
}
BREACH_NOTIFICATION_HOURS = 72

SUBJECT_RIGHTS = ("access", "rectification", "erasure", "portability", "objection")
