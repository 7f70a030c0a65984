"""
Item selection rules for Cognitive Diagnostic CAT.

Each rule scores the not-yet-administered items against the current posterior
over attribute patterns; the session then administers the highest-scoring
item. With P the (J_remaining, L) matrix of latent-class success probabilities
and pi the (L,) posterior weights:

    GDI   (de la Torre & Chiu, 2016; Kaplan et al., 2015)
          sum_l pi_l (P_jl - p_bar_j)^2,      p_bar_j = sum_l pi_l P_jl
    JSD   (Kang et al., 2017; Yigit et al., 2018)
          H(p_bar_j) - sum_l pi_l H(P_jl),    H = binary entropy (bits)
    PWKL  (Cheng, 2009)
          sum_l pi_l KL(P_jc || P_jl),        c = reference pattern index
    MPWKL (Kaplan et al., 2015)
          sum_d sum_l pi_d pi_l KL(P_jd || P_jl)
    random
          i.i.d. Uniform(0, 1) per item

The PWKL reference pattern is drawn uniformly at random over all L patterns at
each call, not taken from the posterior mode. Randomness always comes from the
session's ``numpy.random.Generator`` so runs are reproducible per examinee.

Ties on the maximum score go to the lowest item number.

References:
    - Cheng, Y. (2009). When cognitive diagnosis meets computerized adaptive
      testing: CD-CAT. Psychometrika, 74, 619-632.
    - Kaplan, M., de la Torre, J., & Barrada, J. R. (2015). New item selection
      methods for cognitive diagnosis computerized adaptive testing. Applied
      Psychological Measurement, 39, 167-188.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Sequence, Type

import numpy as np
from scipy.special import entr, rel_entr

from cdcat.core.cat.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Probabilities are kept away from 0 and 1 before taking logs
PROB_CLIP = 1e-10


@dataclass
class ItemCandidate:
    """An item with its computed selection score."""

    item: int  # 0-based item index in the bank
    score: float


def _clip(p: np.ndarray) -> np.ndarray:
    return np.clip(p, PROB_CLIP, 1.0 - PROB_CLIP)


def _binary_entropy_bits(p: np.ndarray) -> np.ndarray:
    return (entr(p) + entr(1.0 - p)) / np.log(2.0)


def _bernoulli_kl(p: np.ndarray, q: np.ndarray) -> np.ndarray:
    """KL(Bernoulli(p) || Bernoulli(q)), elementwise with broadcasting."""
    return rel_entr(p, q) + rel_entr(1.0 - p, 1.0 - q)


class ItemSelectionStrategy(ABC):
    """Common interface of the item selection rules."""

    name: str = ""

    @abstractmethod
    def score(
        self,
        lc_prob: np.ndarray,
        posterior: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        """Return one score per row of ``lc_prob``; higher is more informative.

        Args:
            lc_prob: (n_items, L) success probabilities of the candidate items.
            posterior: (L,) current posterior (or initial weighting) over patterns.
            rng: Session random generator.
        """

    def select(
        self,
        lc_prob: np.ndarray,
        posterior: np.ndarray,
        remaining: Sequence[int],
        rng: np.random.Generator,
    ) -> ItemCandidate:
        """Score the remaining items and return the best one.

        Args:
            lc_prob: Full (J, L) latent-class probability table of the bank.
            posterior: (L,) current posterior over patterns.
            remaining: Ascending 0-based indices of items not yet administered.
            rng: Session random generator.

        Raises:
            ValueError: If no items remain.
        """
        if len(remaining) == 0:
            raise ValueError("Cannot select an item from an empty pool")
        remaining_idx = np.asarray(remaining, dtype=int)
        scores = self.score(lc_prob[remaining_idx], np.asarray(posterior, dtype=float), rng)
        best = int(np.argmax(scores))
        return ItemCandidate(item=int(remaining_idx[best]), score=float(scores[best]))


class GDISelection(ItemSelectionStrategy):
    """Generalized discrimination index: posterior-weighted variance of P_jl."""

    name = "GDI"

    def score(self, lc_prob, posterior, rng):
        p_bar = lc_prob @ posterior
        return ((lc_prob - p_bar[:, None]) ** 2) @ posterior


class JSDSelection(ItemSelectionStrategy):
    """Jensen-Shannon divergence among the posterior-weighted response distributions."""

    name = "JSD"

    def score(self, lc_prob, posterior, rng):
        p = _clip(lc_prob)
        p_bar = p @ posterior
        return _binary_entropy_bits(p_bar) - _binary_entropy_bits(p) @ posterior


class PWKLSelection(ItemSelectionStrategy):
    """Posterior-weighted Kullback-Leibler index around a random reference pattern."""

    name = "PWKL"

    def score(self, lc_prob, posterior, rng):
        point_est = int(rng.integers(lc_prob.shape[1]))
        return self.score_at(lc_prob, posterior, point_est)

    def score_at(self, lc_prob: np.ndarray, posterior: np.ndarray, point_est: int) -> np.ndarray:
        """PWKL with an explicit reference pattern index."""
        p = _clip(lc_prob)
        return _bernoulli_kl(p[:, point_est][:, None], p) @ posterior


class MPWKLSelection(ItemSelectionStrategy):
    """Modified PWKL: KL averaged over posterior-weighted pairs of patterns."""

    name = "MPWKL"

    def score(self, lc_prob, posterior, rng):
        # sum_d sum_l pi_d pi_l KL(P_d || P_l) without building the L x L matrix:
        #   = -sum_d pi_d H(P_d) - sum_l pi_l [p_bar log P_l + (1 - p_bar) log(1 - P_l)]
        p = _clip(lc_prob)
        p_bar = p @ posterior
        neg_entropy = -(entr(p) + entr(1.0 - p)) @ posterior
        cross = (
            p_bar * (np.log(p) @ posterior) + (1.0 - p_bar) * (np.log(1.0 - p) @ posterior)
        )
        return neg_entropy - cross


class RandomSelection(ItemSelectionStrategy):
    """Uniform random scores: a no-information baseline."""

    name = "random"

    def score(self, lc_prob, posterior, rng):
        return rng.uniform(0.0, 1.0, size=lc_prob.shape[0])


SELECTION_STRATEGIES: Dict[str, Type[ItemSelectionStrategy]] = {
    cls.name: cls
    for cls in (GDISelection, JSDSelection, PWKLSelection, MPWKLSelection, RandomSelection)
}


def create_selection_strategy(name: str) -> ItemSelectionStrategy:
    """Build the selection rule registered under ``name``.

    Raises:
        ConfigurationError: If ``name`` is not a parametric selection rule.
    """
    try:
        strategy_cls = SELECTION_STRATEGIES[name]
    except KeyError:
        raise ConfigurationError(
            f"item_select must be one of {sorted(SELECTION_STRATEGIES)} for parametric CD-CAT",
            context={"item_select": name},
        ) from None
    return strategy_cls()
