"""
Calibrated item bank for CD-CAT.

Holds the Q-matrix (J x K) and, for parametric item selection, the J x L
latent-class probability table P(X_j = 1 | alpha_l) with columns in canonical
pattern order (see ``patterns.py``). The bank is read-only during a run and is
shared by all examinee sessions.

Calibrating the probabilities is done elsewhere (any CDM fitting package);
``from_reduced_probabilities`` covers fits reported per reduced latent group,
i.e. one probability per pattern of the item's required attributes.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from cdcat.core.cat.exceptions import ConfigurationError
from cdcat.core.cat.patterns import AttributePatternSpace, attribute_patterns

logger = logging.getLogger(__name__)


def _as_q_matrix(q_matrix) -> np.ndarray:
    q = np.asarray(q_matrix)
    if q.ndim != 2 or q.shape[0] == 0 or q.shape[1] == 0:
        raise ConfigurationError(
            "Q-matrix must be a non-empty 2-D array", context={"shape": q.shape}
        )
    if not np.isin(q, (0, 1)).all():
        raise ConfigurationError("Q-matrix entries must be 0 or 1")
    return q.astype(np.int8)


@dataclass(frozen=True)
class ItemBank:
    """Q-matrix plus optional latent-class success probabilities."""

    q_matrix: np.ndarray
    lc_prob: Optional[np.ndarray] = None
    model: str = "GDINA"

    def __post_init__(self):
        q = _as_q_matrix(self.q_matrix)
        q.setflags(write=False)
        object.__setattr__(self, "q_matrix", q)

        if self.lc_prob is not None:
            lc = np.array(self.lc_prob, dtype=float)
            expected = (q.shape[0], 2 ** q.shape[1])
            if lc.shape != expected:
                raise ConfigurationError(
                    "Latent-class probability matrix has the wrong shape",
                    context={"expected": expected, "got": lc.shape},
                )
            if np.isnan(lc).any():
                raise ConfigurationError("Latent-class probabilities contain NaN")
            n_clamped = int(((lc < 0.0) | (lc > 1.0)).sum())
            if n_clamped:
                logger.debug(f"Clamped {n_clamped} latent-class probabilities to [0, 1]")
            lc = np.clip(lc, 0.0, 1.0)
            lc.setflags(write=False)
            object.__setattr__(self, "lc_prob", lc)

    @property
    def n_items(self) -> int:
        return int(self.q_matrix.shape[0])

    @property
    def n_attributes(self) -> int:
        return int(self.q_matrix.shape[1])

    @property
    def n_patterns(self) -> int:
        return 2**self.n_attributes

    @property
    def is_parametric(self) -> bool:
        return self.lc_prob is not None

    def pattern_space(self) -> AttributePatternSpace:
        return AttributePatternSpace(self.n_attributes)

    def q_label(self, item_index: int) -> str:
        """Q-row of a 0-based item index as a compact string, e.g. "0110"."""
        return "".join(str(int(v)) for v in self.q_matrix[item_index])

    @classmethod
    def nonparametric(cls, q_matrix, gate: str) -> "ItemBank":
        """Bank for nonparametric selection: a Q-matrix only."""
        return cls(q_matrix=q_matrix, lc_prob=None, model=f"NP_{gate}")

    @classmethod
    def from_reduced_probabilities(
        cls,
        q_matrix,
        item_probs: Sequence[Sequence[float]],
        model: str = "GDINA",
    ) -> "ItemBank":
        """
        Build the full J x L table from per-item reduced-group probabilities.

        Item j requiring K_j* attributes has 2^K_j* reduced latent groups. Its
        probabilities must be listed in the canonical pattern order over those
        required attributes (taken in column order of the Q-matrix). Every full
        pattern is mapped to the reduced group given by its values on the
        required attributes.

        Args:
            q_matrix: J x K binary Q-matrix.
            item_probs: J sequences, the j-th of length 2^K_j*.
            model: Model label kept for provenance.

        Raises:
            ConfigurationError: If the number of items or any group count mismatches.
        """
        q = _as_q_matrix(q_matrix)
        n_items, n_attributes = q.shape
        if len(item_probs) != n_items:
            raise ConfigurationError(
                "Need one probability vector per item",
                context={"items": n_items, "got": len(item_probs)},
            )

        full_patterns = attribute_patterns(n_attributes)
        lc_prob = np.empty((n_items, 2**n_attributes), dtype=float)

        for j in range(n_items):
            required = np.flatnonzero(q[j])
            probs = np.asarray(item_probs[j], dtype=float)
            if probs.shape != (2 ** len(required),):
                raise ConfigurationError(
                    "Reduced-group probability vector has the wrong length",
                    context={
                        "item": j + 1,
                        "expected": 2 ** len(required),
                        "got": probs.shape,
                    },
                )
            if len(required) == 0:
                lc_prob[j, :] = probs[0]
                continue
            reduced = AttributePatternSpace(len(required))
            for col, pattern in enumerate(full_patterns):
                lc_prob[j, col] = probs[reduced.index_of(pattern[required])]

        return cls(q_matrix=q, lc_prob=lc_prob, model=model)
