"""
Stopping rules for Cognitive Diagnostic CAT.

Both adaptive loops stop under the same priority order:
    1. Maximum items: stop once max_items have been administered. This bound
       applies in fixed-length and fixed-precision mode alike.
    2. Precision (fixed-precision mode only):
         - parametric: the MAP pattern probability is >= precision_cut
           (Hsu, Wang, & Chen, 2013)
         - nonparametric: every attribute pseudo-posterior, reflected around
           0.5 (p -> 1 - p when p < 0.5), is > precision_cut
    3. Pool exhausted: stop when every item in the bank has been administered.
    4. Otherwise continue.

References:
    - Hsu, C. L., Wang, W. C., & Chen, S. Y. (2013). Variable-length
      computerized adaptive testing based on cognitive diagnosis models.
      Applied Psychological Measurement, 37, 563-582.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

logger = logging.getLogger(__name__)

MAX_ITEMS = 20
PRECISION_CUT = 0.80

STOP_MAX_ITEMS = "max_items"
STOP_POOL_EXHAUSTED = "pool_exhausted"
STOP_PRECISION = "precision"


@dataclass
class StoppingDecision:
    """
    Result of evaluating stopping criteria after an item is administered.

    Attributes:
        should_stop: Whether the session should terminate.
        reason: Reason for stopping (if should_stop=True), or None.
        details: Diagnostic information (num_items, max_items, precision
            statistic and cutoff where applicable).
    """

    should_stop: bool
    reason: Optional[str]
    details: Dict[str, Any]


def _check_max_items(
    num_items: int,
    max_items: int,
    details: Dict[str, Any],
) -> Optional[StoppingDecision]:
    if num_items < 0:
        raise ValueError(f"Number of items must be non-negative, got {num_items}")
    if max_items < 1:
        raise ValueError(f"max_items must be >= 1, got {max_items}")

    if num_items >= max_items:
        return StoppingDecision(should_stop=True, reason=STOP_MAX_ITEMS, details=details)
    return None


def _check_pool(items_remaining: int, details: Dict[str, Any]) -> StoppingDecision:
    if items_remaining <= 0:
        return StoppingDecision(should_stop=True, reason=STOP_POOL_EXHAUSTED, details=details)
    return StoppingDecision(should_stop=False, reason=None, details=details)


def check_stopping_criteria(
    num_items: int,
    map_probability: float,
    items_remaining: int,
    max_items: int = MAX_ITEMS,
    fixed_length: bool = True,
    precision_cut: float = PRECISION_CUT,
) -> StoppingDecision:
    """
    Stopping decision for the parametric loop.

    Args:
        num_items: Items administered so far.
        map_probability: Posterior probability of the MAP pattern.
        items_remaining: Items left in the pool.
        max_items: Hard upper bound on test length.
        fixed_length: If False, stop early once map_probability >= precision_cut.
        precision_cut: Cutoff for fixed-precision mode.

    Returns:
        StoppingDecision with should_stop flag, reason, and details.
    """
    details: Dict[str, Any] = {
        "num_items": num_items,
        "max_items": max_items,
        "map_probability": map_probability,
        "precision_cut": precision_cut,
    }

    decision = _check_max_items(num_items, max_items, details)
    if decision is not None:
        return decision

    if not fixed_length and map_probability >= precision_cut:
        return StoppingDecision(should_stop=True, reason=STOP_PRECISION, details=details)

    return _check_pool(items_remaining, details)


def reflect_probabilities(probs: np.ndarray) -> np.ndarray:
    """Map p -> max(p, 1 - p): certainty of the attribute call either way."""
    probs = np.asarray(probs, dtype=float)
    return np.where(probs < 0.5, 1.0 - probs, probs)


def check_nps_stopping_criteria(
    num_items: int,
    pseudo_probs: Optional[np.ndarray],
    items_remaining: int,
    max_items: int = MAX_ITEMS,
    fixed_length: bool = True,
    precision_cut: float = PRECISION_CUT,
) -> StoppingDecision:
    """
    Stopping decision for the nonparametric loop.

    Args:
        num_items: Items administered so far.
        pseudo_probs: (K,) attribute pseudo-posterior probabilities, or None when
            pseudo-probabilities are disabled.
        items_remaining: Items left in the pool.
        max_items: Hard upper bound on test length.
        fixed_length: If False, stop once every reflected pseudo-posterior
            exceeds precision_cut.
        precision_cut: Cutoff for fixed-precision mode.
    """
    details: Dict[str, Any] = {
        "num_items": num_items,
        "max_items": max_items,
        "precision_cut": precision_cut,
    }

    decision = _check_max_items(num_items, max_items, details)
    if decision is not None:
        return decision

    if not fixed_length and pseudo_probs is not None:
        reflected = reflect_probabilities(pseudo_probs)
        details["min_reflected_probability"] = float(reflected.min())
        if bool(np.all(reflected > precision_cut)):
            return StoppingDecision(should_stop=True, reason=STOP_PRECISION, details=details)

    return _check_pool(items_remaining, details)
