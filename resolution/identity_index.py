"""
Identity Index: who does this user know, and under which email addresses.

Built once at the start of a sync run from the user's own companies, then
passed by argument to the resolver and thrown away. Only founders reachable
through one of the user's companies are included, so another tenant's
founders can never be matched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from storage.crm_store import Company, CrmStore, Founder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FounderCandidate:
    """A founder and the first company of this user that points at them."""
    founder: Founder
    company: Optional[Company]


@dataclass(frozen=True)
class EmailCollision:
    """Two founders claiming the same address (primary or alias)."""
    email: str
    kept_founder_id: str
    shadowed_founder_id: str


@dataclass(frozen=True)
class IdentityIndex:
    """Immutable lookup structure for one user's sync run."""
    user_id: str
    email_to_founder: Mapping[str, Founder]
    candidates: Tuple[FounderCandidate, ...]
    companies: Tuple[Company, ...]
    collisions: Tuple[EmailCollision, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.companies or not self.candidates

    @property
    def founders(self) -> List[Founder]:
        return [c.founder for c in self.candidates]

    def lookup_email(self, email: Optional[str]) -> Optional[Founder]:
        if not email:
            return None
        return self.email_to_founder.get(email.strip().lower())

    def company_for(self, founder_id: str) -> Optional[Company]:
        """First company in the user's list whose founder_id matches."""
        for company in self.companies:
            if company.founder_id == founder_id:
                return company
        return None

    @classmethod
    def build(
        cls,
        user_id: str,
        companies: Sequence[Company],
        founders: Sequence[Founder],
    ) -> IdentityIndex:
        """
        Build the index from already-fetched rows.

        Companies not owned by user_id are ignored, and founders that none of
        the remaining companies reference are dropped.
        """
        owned = tuple(c for c in companies if c.owner_id == user_id)
        founders_by_id = {f.id: f for f in founders}

        candidates: List[FounderCandidate] = []
        seen: set = set()
        for company in owned:
            fid = company.founder_id
            if not fid or fid in seen or fid not in founders_by_id:
                continue
            seen.add(fid)
            candidates.append(FounderCandidate(founder=founders_by_id[fid], company=company))

        email_to_founder: Dict[str, Founder] = {}
        collisions: List[EmailCollision] = []
        for candidate in candidates:
            founder = candidate.founder
            for email in founder.all_emails:
                existing = email_to_founder.get(email)
                if existing is not None and existing.id != founder.id:
                    # Later founder wins, as the map has always been built.
                    # Uniqueness is not enforced anywhere; surface it instead.
                    collisions.append(EmailCollision(
                        email=email,
                        kept_founder_id=founder.id,
                        shadowed_founder_id=existing.id,
                    ))
                email_to_founder[email] = founder

        for collision in collisions:
            logger.warning(
                f"Email {collision.email} claimed by founders "
                f"{collision.shadowed_founder_id} and {collision.kept_founder_id}; "
                f"resolving to {collision.kept_founder_id}"
            )

        return cls(
            user_id=user_id,
            email_to_founder=MappingProxyType(email_to_founder),
            candidates=tuple(candidates),
            companies=owned,
            collisions=tuple(collisions),
        )


async def build_identity_index(store: CrmStore, user_id: str) -> IdentityIndex:
    """Two queries: the user's companies, then founders by id."""
    companies = await store.get_companies_for_owner(user_id)
    founder_ids = {c.founder_id for c in companies if c.founder_id}
    founders = await store.get_founders_by_ids(founder_ids) if founder_ids else []

    index = IdentityIndex.build(user_id, companies, founders)
    logger.info(
        f"Identity index for {user_id}: {len(index.companies)} companies, "
        f"{len(index.candidates)} founders, {len(index.email_to_founder)} email addresses"
    )
    return index
