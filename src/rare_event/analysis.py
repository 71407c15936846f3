"""
===============================================================================
EFFICIENCY ASSESSMENT — Reading a Naive vs. IS Comparison
===============================================================================

VRF BANDS:
    VRF > 10    → excellent   (textbook rare event, IS dominates)
    VRF > 1.5   → good        (moderately rare)
    VRF > 0.8   → degenerate  (event not rare, θ* ≈ 0, IS ≈ naive MC)
    otherwise   → inefficient (over-tilting or too few trials)

RARITY BANDS (naive estimate):
    p < 0.05    → rare
    p > 0.20    → common

===============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .batch import BatchResult, variance_reduction_factor

VRF_EXCELLENT = 10.0
VRF_GOOD = 1.5
VRF_DEGENERATE = 0.8

RARE_PROBABILITY = 0.05
COMMON_PROBABILITY = 0.20

RATING_EXCELLENT = "excellent"
RATING_GOOD = "good"
RATING_DEGENERATE = "degenerate"
RATING_INEFFICIENT = "inefficient"


@dataclass(frozen=True)
class EfficiencyAssessment:
    """Verdict on how much importance sampling helped."""
    vrf: float
    rating: str
    is_rare: bool
    is_common: bool
    summary: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vrf": self.vrf,
            "rating": self.rating,
            "is_rare": self.is_rare,
            "is_common": self.is_common,
            "summary": self.summary,
        }


def rate_vrf(vrf: float) -> str:
    if vrf > VRF_EXCELLENT:
        return RATING_EXCELLENT
    if vrf > VRF_GOOD:
        return RATING_GOOD
    if vrf > VRF_DEGENERATE:
        return RATING_DEGENERATE
    return RATING_INEFFICIENT


def assess_efficiency(
    naive: BatchResult,
    importance_sampled: BatchResult,
    theta: Optional[float] = None,
    threshold: Optional[float] = None,
) -> EfficiencyAssessment:
    vrf = variance_reduction_factor(naive, importance_sampled)
    rating = rate_vrf(vrf)
    p = naive.estimated_probability
    is_rare = p < RARE_PROBABILITY
    is_common = p > COMMON_PROBABILITY

    if rating == RATING_EXCELLENT:
        summary = (
            "High VRF: a genuinely rare event. The twisted measure produces hits "
            "cheaply and the likelihood weights keep the estimate unbiased."
        )
    elif rating == RATING_GOOD:
        summary = "Moderate VRF: the event is moderately rare; IS still beats naive Monte Carlo."
    elif rating == RATING_DEGENERATE:
        level = f"a={threshold:.2f} " if threshold is not None else ""
        tilt = f" (θ*={theta:.3f})" if theta is not None else ""
        summary = (
            f"VRF near 1: threshold {level}is not rare (p ≈ {p:.1%}). The optimal tilt{tilt} "
            "is close to 0 and IS reduces to naive Monte Carlo."
        )
    else:
        summary = (
            "VRF below 0.8: IS increased the variance. Usually sampling noise from too "
            "few trials, or a tilt that overshoots the threshold."
        )

    if naive.total_hits == 0:
        summary += " Naive MC saw no hits, so its variance estimate is zero and the VRF is not informative."

    return EfficiencyAssessment(vrf=vrf, rating=rating, is_rare=is_rare, is_common=is_common, summary=summary)
