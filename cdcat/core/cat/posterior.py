"""
Posterior estimation over attribute patterns for CD-CAT.

Given the responses to the administered items and their latent-class success
probabilities, the likelihood of pattern l is the Bernoulli product

    L(alpha_l) = prod_j P_jl^x_j * (1 - P_jl)^(1 - x_j)

and the posterior is the prior-weighted likelihood renormalized to sum to 1:

    pi(alpha_l | x) = L(alpha_l) * prior_l / sum_m L(alpha_m) * prior_m

Point estimates exposed per step:
    - ML pattern: argmax likelihood (with number of tied modes)
    - MAP pattern: argmax posterior (with number of tied modes)
    - EAP: posterior marginal mastery probability per attribute, and the
      0.5-thresholded mastery call

A posterior with zero total mass means the responses are impossible under
every pattern given the prior; this is surfaced, never patched.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from cdcat.core.cat.exceptions import DegeneratePosteriorError
from cdcat.core.cat.patterns import AttributePatternSpace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PosteriorEstimate:
    """Posterior and point estimates after a response update."""

    likelihood: np.ndarray  # (L,) unnormalized likelihood per pattern
    posterior: np.ndarray  # (L,) normalized posterior
    ml_index: int
    n_modes_ml: int
    map_index: int
    n_modes_map: int
    eap: np.ndarray  # (K,) marginal mastery probabilities
    mastery: np.ndarray  # (K,) 0/1 mastery call (eap > 0.5)

    @property
    def max_likelihood(self) -> float:
        return float(self.likelihood[self.ml_index])

    @property
    def map_probability(self) -> float:
        return float(self.posterior[self.map_index])


def uniform_prior(n_patterns: int) -> np.ndarray:
    return np.full(n_patterns, 1.0 / n_patterns)


def compute_likelihood(
    lc_prob_administered: np.ndarray,
    responses: Sequence[int],
) -> np.ndarray:
    """
    Likelihood of the response vector under each pattern.

    Args:
        lc_prob_administered: (n_administered, L) success probabilities, rows in
            administration order.
        responses: 0/1 responses in the same order.

    Returns:
        (L,) array of likelihoods. With no responses every pattern has likelihood 1.
    """
    p = np.asarray(lc_prob_administered, dtype=float)
    x = np.asarray(responses, dtype=float)
    if p.ndim != 2 or p.shape[0] != x.shape[0]:
        raise ValueError(
            f"Need one probability row per response, got {p.shape} for {x.shape[0]} responses"
        )
    per_item = np.where(x[:, None] == 1.0, p, 1.0 - p)
    return np.prod(per_item, axis=0)


def _argmax_with_ties(values: np.ndarray) -> tuple[int, int]:
    top = values.max()
    return int(np.argmax(values)), int(np.count_nonzero(values == top))


def update_posterior(
    prior: np.ndarray,
    lc_prob_administered: np.ndarray,
    responses: Sequence[int],
    pattern_space: AttributePatternSpace,
    examinee: Optional[int] = None,
) -> PosteriorEstimate:
    """
    Recompute the posterior from the prior and all administered responses.

    Args:
        prior: (L,) prior distribution over patterns.
        lc_prob_administered: (n_administered, L) success probabilities.
        responses: 0/1 responses to the administered items.
        pattern_space: Pattern space used to compute attribute marginals.
        examinee: Examinee index, only used for error context.

    Returns:
        PosteriorEstimate with likelihood, posterior and point estimates.

    Raises:
        DegeneratePosteriorError: If the posterior mass sums to zero or is not finite.
    """
    likelihood = compute_likelihood(lc_prob_administered, responses)
    unnormalized = likelihood * np.asarray(prior, dtype=float)
    total = float(unnormalized.sum())

    if not np.isfinite(total) or total <= 0.0:
        raise DegeneratePosteriorError(
            "Posterior mass collapsed to zero for every attribute pattern",
            examinee=examinee,
            step=len(responses),
            context={"total_mass": total},
        )

    posterior = unnormalized / total
    ml_index, n_modes_ml = _argmax_with_ties(likelihood)
    map_index, n_modes_map = _argmax_with_ties(posterior)
    eap = pattern_space.marginal_mastery(posterior)

    return PosteriorEstimate(
        likelihood=likelihood,
        posterior=posterior,
        ml_index=ml_index,
        n_modes_ml=n_modes_ml,
        map_index=map_index,
        n_modes_map=n_modes_map,
        eap=eap,
        mastery=AttributePatternSpace.mastery_call(eap),
    )
