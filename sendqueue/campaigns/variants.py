"""
Deterministic A/B variant assignment.
"""

import hashlib

from sendqueue.constants import DEFAULT_SPLIT_RATIO, Variant


def clamp_split_ratio(split_ratio: int | None) -> int:
    """Clamp a stored split ratio to 0..100, defaulting to an even split."""
    if split_ratio is None:
        return DEFAULT_SPLIT_RATIO
    return max(0, min(100, int(split_ratio)))


def variant_bucket(campaign_id: str, subscriber_id: str) -> int:
    """Stable bucket in 0..99 for a recipient of a campaign."""
    digest = hashlib.sha256(f"{campaign_id}:{subscriber_id}".encode()).hexdigest()
    return int(digest[:8], 16) % 100


def assign_variant(
    campaign_id: str,
    subscriber_id: str,
    split_ratio: int | None = DEFAULT_SPLIT_RATIO,
    ab_enabled: bool = True,
) -> Variant:
    """
    Assign a recipient to variant A or B.

    The same (campaign, subscriber) pair always lands in the same variant,
    and over many subscribers the share of A converges to split_ratio
    percent.

    Args:
        campaign_id: The campaign identifier.
        subscriber_id: The subscriber identifier.
        split_ratio: Percentage of recipients that get variant A.
        ab_enabled: When False every recipient gets A.

    Returns:
        The assigned variant.
    """
    if not ab_enabled:
        return Variant.A
    if variant_bucket(campaign_id, subscriber_id) < clamp_split_ratio(split_ratio):
        return Variant.A
    return Variant.B
