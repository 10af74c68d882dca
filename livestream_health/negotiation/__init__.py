"""Quality presets and constraint negotiation."""

from __future__ import annotations

from livestream_health.negotiation.negotiator import ConstraintNegotiator
from livestream_health.negotiation.presets import (
    QUALITY_PRESETS,
    higher_tier,
    lower_tier,
    preset,
    presets_for,
    tier_order,
)


__all__ = [
    "QUALITY_PRESETS",
    "ConstraintNegotiator",
    "higher_tier",
    "lower_tier",
    "preset",
    "presets_for",
    "tier_order",
]
