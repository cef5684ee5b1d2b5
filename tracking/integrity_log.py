"""
Integrity log: an append-only, hash-chained record of point transactions.

Each entry's SHA-256 hash covers the previous entry's hash, its timestamp,
action type, points and a digest of its context. Before an entry is
accepted a nonce is searched so the hash starts with `difficulty` zeros.

This is tamper-EVIDENCE for one user's own ledger, not security: the same
process that writes the chain can rewrite all of it, and the proof-of-work
only makes bulk point spam slightly more expensive. It catches accidental
corruption, hand-edited cache files and replayed transactions; it cannot
stop a determined user with a debugger.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import config
from core.errors import PersistenceUnavailable
from tracking.models import PointTransaction, new_id

logger = logging.getLogger(__name__)

# Upper bound on the nonce search; difficulty 2 needs ~256 tries on average
_MAX_NONCE = 10_000_000


def digest_context(context: Dict[str, Any]) -> str:
    """Stable SHA-256 digest of an award context."""
    canonical = json.dumps(context, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_hash(
    previous_hash: str,
    timestamp: str,
    action_type: str,
    points_awarded: int,
    context_digest: str,
    nonce: int,
) -> str:
    """Hash of one chain entry."""
    canonical = json.dumps({
        "previous_hash": previous_hash,
        "timestamp": timestamp,
        "action_type": action_type,
        "points_awarded": points_awarded,
        "context_digest": context_digest,
        "nonce": nonce,
    }, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_entry(entry: PointTransaction) -> str:
    """Recompute the hash an entry should carry."""
    return compute_hash(
        entry.previous_hash,
        entry.occurred_at.isoformat(),
        entry.action_type,
        entry.points_awarded,
        entry.context_digest,
        entry.nonce,
    )


def meets_difficulty(digest: str, difficulty: int) -> bool:
    return digest.startswith("0" * difficulty)


@dataclass
class ChainVerification:
    """Result of verify_chain. `first_invalid_index` is None when valid."""

    valid: bool
    first_invalid_index: Optional[int] = None
    reason: str = ""
    checked: int = 0


def verify_chain(
    entries: List[PointTransaction],
    difficulty: int = config.POW_DIFFICULTY,
    skip_flagged: bool = False,
) -> ChainVerification:
    """
    Recompute every hash and check every back-link.

    Args:
        entries: Chain in append order.
        difficulty: Required leading zeros.
        skip_flagged: Treat already-flagged entries as known bad and keep
            checking the entries linked after them.

    Returns:
        ChainVerification pointing at the first bad entry, if any.
    """
    expected_previous = config.GENESIS_HASH
    for index, entry in enumerate(entries):
        if skip_flagged and entry.flagged:
            expected_previous = entry.integrity_hash
            continue
        if entry.previous_hash != expected_previous:
            return ChainVerification(False, index, "broken link", index)
        recomputed = hash_entry(entry)
        if recomputed != entry.integrity_hash:
            return ChainVerification(False, index, "hash mismatch", index)
        if not meets_difficulty(entry.integrity_hash, difficulty):
            return ChainVerification(False, index, "proof of work not met", index)
        expected_previous = entry.integrity_hash
    return ChainVerification(True, None, "", len(entries))


class IntegrityLog:
    """
    One user's chain of point transactions.

    Args:
        entries: The list to append to (owned by the user's cached state).
        save: Persists the chain; raising OSError or PersistenceUnavailable
              rejects the append.
        difficulty: Proof-of-work leading zeros.
    """

    def __init__(
        self,
        entries: List[PointTransaction],
        save: Optional[Callable[[], None]] = None,
        difficulty: int = config.POW_DIFFICULTY,
    ) -> None:
        self.entries = entries
        self.save = save
        self.difficulty = difficulty

    @property
    def head_hash(self) -> str:
        return self.entries[-1].integrity_hash if self.entries else config.GENESIS_HASH

    def __len__(self) -> int:
        return len(self.entries)

    def build_entry(
        self,
        user_id: str,
        action_type: str,
        points_awarded: int,
        occurred_at: datetime,
        context: Optional[Dict[str, Any]] = None,
    ) -> PointTransaction:
        """
        Create the next entry, linked to the current head and mined.

        The entry is not appended; call append() to accept it.
        """
        tx_id = new_id()
        context = dict(context or {})
        # The id and owner are part of the digest so copies of an entry
        # cannot be replayed under a different identity
        digest = digest_context({"id": tx_id, "user_id": user_id, **context})
        entry = PointTransaction(
            id=tx_id,
            user_id=user_id,
            action_type=action_type,
            points_awarded=points_awarded,
            occurred_at=occurred_at,
            context_digest=digest,
            previous_hash=self.head_hash,
            context=context,
        )
        self._mine(entry)
        return entry

    def _mine(self, entry: PointTransaction) -> None:
        """Find a nonce whose hash meets the difficulty."""
        timestamp = entry.occurred_at.isoformat()
        for nonce in range(_MAX_NONCE):
            digest = compute_hash(
                entry.previous_hash, timestamp, entry.action_type,
                entry.points_awarded, entry.context_digest, nonce,
            )
            if meets_difficulty(digest, self.difficulty):
                entry.nonce = nonce
                entry.integrity_hash = digest
                return
        raise RuntimeError(f"No nonce found at difficulty {self.difficulty}")

    def append(self, entry: PointTransaction) -> PointTransaction:
        """
        Accept an entry onto the chain and persist it.

        Raises:
            ValueError: If the entry does not extend the current head.
            PersistenceUnavailable: If the backing store rejected the save;
                the entry is rolled back and the caller must retry.
        """
        if entry.previous_hash != self.head_hash:
            raise ValueError("Entry does not extend the current chain head")
        if hash_entry(entry) != entry.integrity_hash or not meets_difficulty(
            entry.integrity_hash, self.difficulty
        ):
            raise ValueError("Entry hash is invalid")

        self.entries.append(entry)
        if self.save is None:
            return entry
        try:
            self.save()
        except PersistenceUnavailable:
            self.entries.pop()
            raise
        except OSError as e:
            self.entries.pop()
            raise PersistenceUnavailable(
                f"Integrity log could not be saved: {e}",
                action_type=entry.action_type,
                user_id=entry.user_id,
            ) from e
        return entry

    def verify(self, skip_flagged: bool = False) -> ChainVerification:
        return verify_chain(self.entries, self.difficulty, skip_flagged=skip_flagged)

    def flag_from(self, index: int) -> int:
        """
        Mark entries from `index` onwards as untrusted.

        Returns:
            Number of entries newly flagged.
        """
        flagged = 0
        for entry in self.entries[index:]:
            if not entry.flagged:
                entry.flagged = True
                flagged += 1
        return flagged

    def trusted_counts(self) -> Dict[str, int]:
        """Occurrence counts per action over unflagged entries."""
        counts: Dict[str, int] = {}
        for entry in self.entries:
            if not entry.flagged:
                counts[entry.action_type] = counts.get(entry.action_type, 0) + 1
        return counts

    def contains(self, transaction_id: str) -> bool:
        return any(entry.id == transaction_id for entry in self.entries)
