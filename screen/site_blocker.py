"""
Site-blocking enforcement collaborator.

The core never intercepts URLs itself. It hands the session's domain
snapshot to a SiteBlocker, which installs redirect rules on whatever
platform primitive is available (the browser's declarative rules, a hosts
file, a proxy) and clears them when the session ends.
"""

import logging
import threading
from typing import List, Sequence, Tuple

logger = logging.getLogger(__name__)


class SiteBlocker:
    """Interface for the platform's URL-blocking primitive."""

    def install(self, domains: Sequence[str], redirect_target: str) -> None:
        """Replace all rules with redirects for `domains`."""
        raise NotImplementedError

    def clear(self) -> None:
        """Remove every rule this blocker installed."""
        raise NotImplementedError

    def installed_domains(self) -> Tuple[str, ...]:
        return ()


class RuleSetBlocker(SiteBlocker):
    """
    Keeps the rule set in memory, one redirect rule per domain.

    Rule shape mirrors a browser declarative rule: numbered ids, a
    `*://*.<domain>/*` filter, main-frame only. Used when the host has no
    native primitive wired in, and by the CLI.
    """

    def __init__(self) -> None:
        self._rules: List[dict] = []
        self._lock = threading.Lock()

    def install(self, domains: Sequence[str], redirect_target: str) -> None:
        rules = [
            {
                "id": index + 1,
                "priority": 1,
                "action": {"type": "redirect", "redirect": f"{redirect_target}?site={domain}"},
                "condition": {"url_filter": f"*://*.{domain}/*", "resource_types": ["main_frame"]},
                "domain": domain,
            }
            for index, domain in enumerate(domains)
        ]
        with self._lock:
            self._rules = rules
        logger.info(f"Updated blocking rules for {len(rules)} sites")

    def clear(self) -> None:
        with self._lock:
            count = len(self._rules)
            self._rules = []
        logger.info(f"Cleared {count} blocking rules")

    def installed_domains(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(rule["domain"] for rule in self._rules)

    def rules(self) -> List[dict]:
        with self._lock:
            return [dict(rule) for rule in self._rules]
