"""
Resolver: attributes a communication record to a founder (and company).

Strategies, tried in strict priority order. The first one that produces a
founder wins and nothing after it runs:

1. PARTICIPANT_EMAIL: a participant address is in the identity index
2. PARTICIPANT_NAME: a participant display name and a founder first name overlap
3. TITLE: the title mentions the founder's full or first name
4. BODY: the body mentions the founder's name or one of their emails
5. UNMATCHED: none of the above; the record is still kept

Email evidence is unambiguous. Everything from tier 2 down is text
heuristics, and first-name matching will misfire on common names
("Meeting with Alex" matches every Alex in the CRM). That trade-off is
accepted; see DESIGN.md.

The resolver is pure and synchronous and never raises: an unmatched record
is a normal outcome.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from resolution.identity_index import IdentityIndex
from resolution.records import CommunicationRecord, MatchableFields, as_text
from storage.crm_store import Founder

logger = logging.getLogger(__name__)


class MatchTier(str, Enum):
    """How a record was attributed. Declaration order is priority order."""
    PARTICIPANT_EMAIL = "participant_email"
    PARTICIPANT_NAME = "participant_name"
    TITLE = "title"
    BODY = "body"
    UNMATCHED = "unmatched"

    @property
    def rank(self) -> int:
        """0 is strongest."""
        return list(MatchTier).index(self)

    @property
    def is_match(self) -> bool:
        return self is not MatchTier.UNMATCHED


@dataclass
class ResolverConfig:
    """Which tiers are enabled. Tiers are never reordered."""
    enable_participant_email: bool = True
    enable_participant_name: bool = True
    enable_title: bool = True
    enable_body: bool = True


@dataclass(frozen=True)
class ResolvedLink:
    """A record plus the founder/company it was attributed to, if any."""
    record: CommunicationRecord
    tier: MatchTier = MatchTier.UNMATCHED
    founder_id: Optional[str] = None
    company_id: Optional[str] = None
    reason: str = ""

    @property
    def is_matched(self) -> bool:
        return self.founder_id is not None


class Resolver:
    """
    Applies the tiered strategy to records against one IdentityIndex.

    Usage:
        index = await build_identity_index(crm, user_id)
        links = Resolver().resolve_all(records, index)
    """

    def __init__(self, config: Optional[ResolverConfig] = None):
        self.config = config or ResolverConfig()

    def resolve(self, record: CommunicationRecord, index: IdentityIndex) -> ResolvedLink:
        fields = record.matchable

        match = None
        if self.config.enable_participant_email:
            match = self._match_participant_email(fields, index)
        if match is None and self.config.enable_participant_name:
            match = self._match_participant_name(fields, index)
        if match is None and self.config.enable_title:
            match = self._match_title(fields, index)
        if match is None and self.config.enable_body:
            match = self._match_body(fields, index)

        if match is None:
            return ResolvedLink(record=record, reason="no tier matched")

        tier, founder, reason = match
        company = index.company_for(founder.id)
        return ResolvedLink(
            record=record,
            tier=tier,
            founder_id=founder.id,
            company_id=company.id if company else None,
            reason=reason,
        )

    def resolve_all(
        self,
        records: Iterable[CommunicationRecord],
        index: IdentityIndex,
    ) -> List[ResolvedLink]:
        """Resolve records, keeping their input order."""
        links = [self.resolve(record, index) for record in records]

        tiers = Counter(link.tier for link in links)
        logger.info(
            f"Resolved {len(links)} records: "
            + ", ".join(f"{tier.value}={tiers.get(tier, 0)}" for tier in MatchTier)
        )
        return links

    # =========================================================================
    # TIERS
    # =========================================================================

    def _match_participant_email(
        self,
        fields: MatchableFields,
        index: IdentityIndex,
    ) -> Optional[Tuple[MatchTier, Founder, str]]:
        for participant in fields.participants:
            founder = index.lookup_email(participant.normalized_email)
            if founder is not None:
                return (
                    MatchTier.PARTICIPANT_EMAIL,
                    founder,
                    f"participant {participant.normalized_email}",
                )
        return None

    def _match_participant_name(
        self,
        fields: MatchableFields,
        index: IdentityIndex,
    ) -> Optional[Tuple[MatchTier, Founder, str]]:
        display_names = [
            as_text(p.display_name).strip().lower()
            for p in fields.participants
        ]
        display_names = [name for name in display_names if name]
        if not display_names:
            return None

        for founder in index.founders:
            first_name = founder.first_name
            if not first_name:
                continue
            for display_name in display_names:
                first_token = display_name.split()[0]
                # Either side may be truncated ("Jane D." / "Jan")
                if first_name in display_name or first_token in first_name:
                    return (
                        MatchTier.PARTICIPANT_NAME,
                        founder,
                        f"display name '{display_name}' ~ '{first_name}'",
                    )
        return None

    def _match_title(
        self,
        fields: MatchableFields,
        index: IdentityIndex,
    ) -> Optional[Tuple[MatchTier, Founder, str]]:
        title = fields.title.lower()
        if not title:
            return None

        for founder in index.founders:
            needle = _name_in_text(founder, title)
            if needle:
                return MatchTier.TITLE, founder, f"title mentions '{needle}'"
        return None

    def _match_body(
        self,
        fields: MatchableFields,
        index: IdentityIndex,
    ) -> Optional[Tuple[MatchTier, Founder, str]]:
        body = fields.body.lower()
        if not body:
            return None

        for founder in index.founders:
            needle = _name_in_text(founder, body)
            if needle:
                return MatchTier.BODY, founder, f"body mentions '{needle}'"
            for email in founder.all_emails:
                if email in body:
                    return MatchTier.BODY, founder, f"body mentions {email}"
        return None


def _name_in_text(founder: Founder, text: str) -> Optional[str]:
    """Full name first, then first name. text must already be lower-cased."""
    full_name = " ".join((founder.name or "").lower().split())
    if full_name and full_name in text:
        return full_name
    first_name = founder.first_name
    if first_name and first_name in text:
        return first_name
    return None


def count_by_tier(links: Iterable[ResolvedLink]) -> Dict[str, int]:
    counts = Counter(link.tier.value for link in links)
    return {tier.value: counts.get(tier.value, 0) for tier in MatchTier}
