"""
Attribute pattern space for cognitive diagnosis.

With K binary attributes there are L = 2^K mastery patterns. Every component
that indexes patterns by position (posterior vectors, latent-class probability
columns, classification losses) uses the same canonical order:

    patterns grouped by number of mastered attributes (0, 1, ..., K), and
    within a group by lexicographic order of the mastered positions.

For K = 3 this gives 000, 100, 010, 001, 110, 101, 011, 111.
"""

from functools import lru_cache
from itertools import combinations
from typing import Dict, List, Sequence

import numpy as np

MASTERY_THRESHOLD = 0.5


@lru_cache(maxsize=None)
def _pattern_matrix(n_attributes: int) -> np.ndarray:
    rows = []
    for n_mastered in range(n_attributes + 1):
        for positions in combinations(range(n_attributes), n_mastered):
            row = [0] * n_attributes
            for k in positions:
                row[k] = 1
            rows.append(row)
    matrix = np.array(rows, dtype=np.int8).reshape(len(rows), n_attributes)
    matrix.setflags(write=False)
    return matrix


def attribute_patterns(n_attributes: int) -> np.ndarray:
    """Return the L x K matrix of all attribute patterns in canonical order.

    The returned array is read-only and shared between callers.

    Raises:
        ValueError: If n_attributes is smaller than 1.
    """
    if n_attributes < 1:
        raise ValueError(f"Number of attributes must be >= 1, got {n_attributes}")
    return _pattern_matrix(n_attributes)


def pattern_label(pattern: Sequence[int]) -> str:
    """Render a pattern as a compact string label, e.g. [1, 0, 1] -> "101"."""
    return "".join(str(int(a)) for a in pattern)


class AttributePatternSpace:
    """Index <-> pattern <-> label conversions for K attributes."""

    def __init__(self, n_attributes: int):
        self.n_attributes = n_attributes
        self.patterns = attribute_patterns(n_attributes)
        self.labels: List[str] = [pattern_label(row) for row in self.patterns]
        self._index_by_label: Dict[str, int] = {
            label: i for i, label in enumerate(self.labels)
        }

    def __len__(self) -> int:
        return len(self.labels)

    @property
    def n_patterns(self) -> int:
        return len(self.labels)

    def pattern(self, index: int) -> np.ndarray:
        return self.patterns[index]

    def label(self, index: int) -> str:
        return self.labels[index]

    def index_of(self, pattern: Sequence[int] | str) -> int:
        """Return the canonical index of a pattern given as label or 0/1 sequence.

        Raises:
            KeyError: If the pattern is not a valid length-K 0/1 pattern.
        """
        label = pattern if isinstance(pattern, str) else pattern_label(pattern)
        try:
            return self._index_by_label[label]
        except KeyError:
            raise KeyError(
                f"'{label}' is not a pattern over {self.n_attributes} attributes"
            ) from None

    def marginal_mastery(self, posterior: np.ndarray) -> np.ndarray:
        """Attribute-level mastery probabilities: ``posterior @ patterns``.

        For each attribute k this is the posterior mass of all patterns with
        attribute k mastered.
        """
        posterior = np.asarray(posterior, dtype=float)
        if posterior.shape != (self.n_patterns,):
            raise ValueError(
                f"Posterior must have length {self.n_patterns}, got shape {posterior.shape}"
            )
        return posterior @ self.patterns

    @staticmethod
    def mastery_call(marginals: np.ndarray) -> np.ndarray:
        """Threshold marginal mastery probabilities at 0.5 into a 0/1 vector."""
        return (np.asarray(marginals) > MASTERY_THRESHOLD).astype(int)
