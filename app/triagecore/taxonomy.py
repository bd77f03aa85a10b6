"""Risk band to operational priority mapping and test-category consistency."""

from __future__ import annotations

import logging

from triagecore.schemas import OperationalContext, OpsPriority, RiskBand, RoutingMeta, TestCategory

logger = logging.getLogger(__name__)

SUGGESTED_RISK_BY_TEST: dict[str, str] = {
    "emergency": "immediate",
    "urgent": "urgent",
    "routine": "routine",
    "edge-case": "routine",
}

_BAND_RANK = {"routine": 0, "urgent": 1, "immediate": 2}


def band_rank(band: str) -> int:
    return _BAND_RANK[band]


def max_band(a: RiskBand, b: RiskBand) -> RiskBand:
    return a if _BAND_RANK[a] >= _BAND_RANK[b] else b


def compute_priority(band: RiskBand, context: OperationalContext | None = None) -> OpsPriority:
    # Rule order matters: an immediate band is never demoted by any context.
    if band == "immediate":
        return "immediate"

    context = context or OperationalContext()
    if band == "urgent" and context.system_load == "high":
        return "immediate"
    if band == "routine" and context.is_after_hours:
        return "batch"
    return band


def check_test_category(
    band: RiskBand,
    test_category: TestCategory | None,
    *,
    production: bool = False,
) -> bool:
    """Return whether the tag agrees with the band; only logs on mismatch."""
    if test_category is None:
        return True
    suggested = SUGGESTED_RISK_BY_TEST[test_category]
    consistent = suggested == band
    if not consistent and not production:
        logger.warning(
            "taxonomy_mismatch test_category=%s suggested_band=%s assigned_band=%s",
            test_category,
            suggested,
            band,
        )
    return consistent


def derive_routing(
    band: RiskBand,
    context: OperationalContext | None = None,
    *,
    production: bool = False,
) -> RoutingMeta:
    context = context or OperationalContext()
    check_test_category(band, context.test_category, production=production)
    return RoutingMeta(priority=compute_priority(band, context), test_category=context.test_category)
