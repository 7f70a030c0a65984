"""
Nonparametric classification (NPC) of attribute patterns.

For a conjunctive ("AND") item the ideal response of pattern alpha is 1 when
alpha masters every attribute the item requires; for a disjunctive ("OR") item
it is 1 when alpha masters at least one of them. The classification loss of a
pattern is the Hamming distance between its ideal response vector and the
observed responses, and the estimate is the pattern with the smallest loss
(Chiu & Douglas, 2013).

Patterns tied on loss are ordered by the attribute columns taken in a random
order drawn from the session generator, so the tie-break is reproducible for a
given seed but does not systematically favour any attribute.

The pseudo-posterior turns the ranked losses into attribute-level mastery
probabilities: each pattern gets weight 2^-rank (or exp(-rank)), ranks taken
ascending with ties sharing the minimum rank, and the probability for attribute
k is the share of weight on patterns that master k.

References:
    - Chiu, C.-Y., & Douglas, J. (2013). A nonparametric approach to cognitive
      diagnosis by proximity to ideal response patterns. Journal of
      Classification, 30, 225-250.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from scipy.stats import rankdata

GATES = ("AND", "OR")

# Weighting schemes of the pseudo-posterior
W_TYPE_POWER_OF_2 = 1
W_TYPE_EXPONENTIAL = 2


def ideal_responses(
    q_rows: np.ndarray,
    patterns: np.ndarray,
    gates: Sequence[str],
) -> np.ndarray:
    """
    Ideal (error-free) responses of every pattern to every item.

    Args:
        q_rows: (n_items, K) Q-matrix rows.
        patterns: (L, K) attribute patterns.
        gates: One "AND"/"OR" per item.

    Returns:
        (n_items, L) 0/1 array.

    An item with an empty Q-row is answered correctly by every pattern under
    AND and by none under OR.
    """
    q = np.asarray(q_rows, dtype=int)
    if q.ndim == 1:
        q = q[None, :]
    gates = np.asarray(gates)
    if gates.shape != (q.shape[0],):
        raise ValueError(f"Need one gate per item, got {gates.shape} for {q.shape[0]} items")
    unknown = set(gates.tolist()) - set(GATES)
    if unknown:
        raise ValueError(f"Unknown gate(s) {sorted(unknown)}; expected one of {GATES}")

    mastered_required = q @ np.asarray(patterns, dtype=int).T
    n_required = q.sum(axis=1)[:, None]
    conjunctive = mastered_required == n_required
    disjunctive = mastered_required > 0
    return np.where((gates == "AND")[:, None], conjunctive, disjunctive).astype(np.int8)


def classification_losses(
    responses: Sequence[int],
    q_rows: np.ndarray,
    patterns: np.ndarray,
    gates: Sequence[str],
) -> np.ndarray:
    """Hamming distance between the observed responses and each pattern's ideal responses."""
    y = np.asarray(responses, dtype=int)
    ideal = ideal_responses(q_rows, patterns, gates)
    if ideal.shape[0] != y.shape[0]:
        raise ValueError(f"Need one Q-row per response, got {ideal.shape[0]} for {y.shape[0]}")
    return (ideal != y[:, None]).sum(axis=0)


def rank_patterns(
    losses: np.ndarray,
    patterns: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Order pattern indices by ascending loss, breaking ties on the attribute columns.

    The columns are visited in a random order; patterns tied on loss are sorted
    ascending by the last visited column, then the one before it, and so on.

    Returns:
        (L,) pattern indices, best first.
    """
    patterns = np.asarray(patterns)
    column_order = rng.permutation(patterns.shape[1])
    keys = [patterns[:, k] for k in column_order]
    keys.append(np.asarray(losses))
    return np.lexsort(keys)


def pseudo_posterior(
    losses: np.ndarray,
    patterns: np.ndarray,
    w_type: int = W_TYPE_POWER_OF_2,
) -> np.ndarray:
    """
    Attribute-level mastery pseudo-probabilities from classification losses.

    Args:
        losses: (L,) classification losses.
        patterns: (L, K) attribute patterns.
        w_type: 1 for power-of-2 weights, 2 for exponential weights.

    Returns:
        (K,) probabilities in [0, 1].
    """
    ranks = rankdata(losses, method="min")
    if w_type == W_TYPE_POWER_OF_2:
        weights = np.power(2.0, -ranks)
    elif w_type == W_TYPE_EXPONENTIAL:
        weights = np.exp(-ranks)
    else:
        raise ValueError(f"w_type must be 1 or 2, got {w_type}")
    return (weights @ np.asarray(patterns, dtype=float)) / weights.sum()


@dataclass(frozen=True)
class NPCEstimate:
    """Ranked classification of one response vector."""

    losses: np.ndarray  # (L,) Hamming loss per pattern
    order: np.ndarray  # (L,) pattern indices, best first
    pseudo_probs: Optional[np.ndarray] = None  # (K,) when requested

    @property
    def best(self) -> int:
        return int(self.order[0])

    @property
    def second(self) -> int:
        return int(self.order[1])

    def loss_of(self, index: int) -> int:
        return int(self.losses[index])


def classify(
    responses: Sequence[int],
    q_rows: np.ndarray,
    patterns: np.ndarray,
    gates: Sequence[str],
    rng: np.random.Generator,
    pseudo_prob: bool = False,
    w_type: int = W_TYPE_POWER_OF_2,
) -> NPCEstimate:
    """Compute losses, the tie-broken ranking and, optionally, the pseudo-posterior."""
    losses = classification_losses(responses, q_rows, patterns, gates)
    order = rank_patterns(losses, patterns, rng)
    probs = pseudo_posterior(losses, patterns, w_type) if pseudo_prob else None
    return NPCEstimate(losses=losses, order=order, pseudo_probs=probs)
