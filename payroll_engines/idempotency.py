"""
Idempotency key derivation.

The key is the only thing that ties a payment attempt to a payout across
retries, restarts and concurrent orchestrators, so it is a pure function of
(run id, contributor id): no clock, no randomness, no attempt number.
"""

from __future__ import annotations

import hashlib
from uuid import UUID

KEY_PREFIX = "payout"
DIGEST_LENGTH = 32


def derive_idempotency_key(run_id: UUID | str, contributor_id: str) -> str:
    """
    Deterministic payment idempotency key for one contributor in one run.

    Format: ``payout_<first 8 chars of run id>_<32 hex chars of sha256>``.
    The run prefix is for humans reading gateway dashboards; uniqueness
    comes from the digest over the full run id and contributor id.

    Raises:
        ValueError: if contributor_id is empty.
    """
    if not contributor_id:
        raise ValueError("contributor_id is required to derive an idempotency key")
    run_text = str(run_id)
    digest = hashlib.sha256(f"{run_text}:{contributor_id}".encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}_{run_text.replace('-', '')[:8]}_{digest[:DIGEST_LENGTH]}"
