"""
Live block list management.

Adds and soft-removes domains on the user's block list. The live list only
feeds the NEXT session: a running session keeps the snapshot it was
started with.
"""

import logging
import re
from typing import List, Optional, Tuple

import config
from core.errors import DuplicateSite, InvalidDomain, SiteNotFound
from tracking.ledger import PointLedger
from tracking.models import BlockedSite, PointTransaction

logger = logging.getLogger(__name__)

_DOMAIN_RE = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,}$")


def clean_domain(site: str) -> str:
    """
    Reduce user input to a bare domain.

    Strips the scheme, a leading "www.", any path, query or port, and
    lowercases. "https://www.Example.com/page?x=1" -> "example.com".

    Raises:
        InvalidDomain: If what remains is not a plausible domain name.
    """
    cleaned = (site or "").strip().lower()
    cleaned = re.sub(r"^[a-z][a-z0-9+.-]*://", "", cleaned)
    cleaned = re.sub(r"^www\.", "", cleaned)
    cleaned = re.split(r"[/?#:]", cleaned, maxsplit=1)[0]
    if not cleaned or len(cleaned) > 253 or not _DOMAIN_RE.match(cleaned):
        raise InvalidDomain(f"Invalid domain: {site!r}", action_type=config.ACTION_ADD_SITE)
    return cleaned


class BlockListManager:
    """
    Block list operations for one user.

    Args:
        ledger: The user's point ledger (owns state, clock and rate limiter).
    """

    def __init__(self, ledger: PointLedger) -> None:
        self.ledger = ledger

    @property
    def state(self):
        return self.ledger.state

    def active_domains(self) -> List[str]:
        return self.state.active_domains()

    def add_site(self, site: str) -> Tuple[BlockedSite, Optional[PointTransaction]]:
        """
        Add a domain and award add_site points.

        A domain is unique per user: re-adding a soft-deleted one
        reactivates it without a second award.

        Returns:
            The site and its award transaction (None for a reactivation).

        Raises:
            InvalidDomain, DuplicateSite, RateLimitExceeded, AccountInactive
        """
        user_id = self.ledger.user_id
        try:
            domain = clean_domain(site)
        except InvalidDomain as e:
            e.user_id = user_id
            raise

        with self.ledger.ordered(config.ACTION_ADD_SITE):
            existing = self.state.sites.get(domain)
            if existing and existing.is_active:
                raise DuplicateSite(
                    f"{domain} is already in your block list",
                    action_type=config.ACTION_ADD_SITE,
                    user_id=user_id,
                    occurred_at=self.ledger.clock.now(),
                )

            if existing:
                with self.ledger.rate_limited(config.ACTION_ADD_SITE), self.ledger.atomic():
                    existing.is_active = True
                    existing.added_at = self.ledger.clock.now()
                    existing.version += 1
                    self.ledger.save()
                logger.info(f"Site reactivated on block list (no points): {domain}")
                return existing, None

            self.ledger.ensure_can_earn(config.ACTION_ADD_SITE)
            with self.ledger.rate_limited(config.ACTION_ADD_SITE), self.ledger.atomic():
                entry = BlockedSite(domain=domain, added_at=self.ledger.clock.now())
                self.state.sites[domain] = entry
                tx = self.ledger.award(config.ACTION_ADD_SITE, {"site": domain})

        logger.info(f"Site added to block list: {domain}")
        return entry, tx

    def remove_site(self, site: str) -> BlockedSite:
        """
        Soft-delete a domain from the live list. Awards nothing.

        Raises:
            InvalidDomain, SiteNotFound
        """
        domain = clean_domain(site)
        with self.ledger.atomic():
            entry = self.state.sites.get(domain)
            if entry is None or not entry.is_active:
                raise SiteNotFound(
                    f"{domain} is not in your block list",
                    action_type=config.ACTION_REMOVE_SITE,
                    user_id=self.ledger.user_id,
                )
            entry.is_active = False
            entry.version += 1
            self.ledger.save()
        logger.info(f"Site removed from block list: {domain}")
        return entry

    def find(self, site: str) -> Optional[BlockedSite]:
        try:
            return self.state.sites.get(clean_domain(site))
        except InvalidDomain:
            return None
