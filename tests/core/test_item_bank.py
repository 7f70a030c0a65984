"""
Tests for the ItemBank container.

Tests cover:
- Shape properties and Q-row labels
- Clamping and validation of latent-class probabilities
- Q-matrix validation
- Nonparametric banks
- Expansion of reduced-group probabilities to the full pattern table
"""
import numpy as np
import pytest

from cdcat.core.cat.exceptions import ConfigurationError
from cdcat.core.cat.item_bank import ItemBank


class TestItemBank:
    def test_properties(self, bank_k2):
        assert bank_k2.n_items == 4
        assert bank_k2.n_attributes == 2
        assert bank_k2.n_patterns == 4
        assert bank_k2.is_parametric is True
        assert bank_k2.model == "GDINA"

    def test_q_label(self, bank_k2):
        assert bank_k2.q_label(0) == "10"
        assert bank_k2.q_label(2) == "11"

    def test_probabilities_clamped(self):
        bank = ItemBank(q_matrix=[[1]], lc_prob=[[-0.1, 1.2]])
        assert list(bank.lc_prob[0]) == [0.0, 1.0]

    def test_arrays_read_only(self, bank_k2):
        with pytest.raises(ValueError):
            bank_k2.lc_prob[0, 0] = 0.5
        with pytest.raises(ValueError):
            bank_k2.q_matrix[0, 0] = 0

    def test_input_not_mutated(self):
        lc = np.array([[-0.5, 0.5]])
        ItemBank(q_matrix=[[1]], lc_prob=lc)
        assert lc[0, 0] == -0.5

    def test_wrong_lc_shape(self, q_k2):
        with pytest.raises(ConfigurationError, match="wrong shape"):
            ItemBank(q_matrix=q_k2, lc_prob=np.full((4, 3), 0.5))

    def test_nan_probabilities(self):
        with pytest.raises(ConfigurationError, match="NaN"):
            ItemBank(q_matrix=[[1]], lc_prob=[[0.1, np.nan]])

    def test_non_binary_q(self):
        with pytest.raises(ConfigurationError, match="0 or 1"):
            ItemBank(q_matrix=[[1, 2]])

    def test_one_dimensional_q(self):
        with pytest.raises(ConfigurationError, match="2-D"):
            ItemBank(q_matrix=[1, 0, 1])


class TestNonparametricBank:
    def test_nonparametric(self, q_k3):
        bank = ItemBank.nonparametric(q_k3, "AND")
        assert bank.is_parametric is False
        assert bank.lc_prob is None
        assert bank.model == "NP_AND"
        assert bank.n_items == 10


class TestFromReducedProbabilities:
    def test_expansion(self):
        q = [[1, 0], [0, 1], [1, 1], [0, 0]]
        item_probs = [
            [0.1, 0.9],
            [0.2, 0.8],
            [0.1, 0.3, 0.4, 0.9],
            [0.5],
        ]
        bank = ItemBank.from_reduced_probabilities(q, item_probs, model="Combination")

        # Columns: 00, 10, 01, 11
        assert bank.lc_prob[0] == pytest.approx([0.1, 0.9, 0.1, 0.9])
        assert bank.lc_prob[1] == pytest.approx([0.2, 0.2, 0.8, 0.8])
        assert bank.lc_prob[2] == pytest.approx([0.1, 0.3, 0.4, 0.9])
        assert bank.lc_prob[3] == pytest.approx([0.5, 0.5, 0.5, 0.5])
        assert bank.model == "Combination"

    def test_required_attributes_in_column_order(self):
        q = [[1, 0, 1]]
        # Reduced groups over (attribute 1, attribute 3): 00, 10, 01, 11
        bank = ItemBank.from_reduced_probabilities(q, [[0.1, 0.2, 0.3, 0.4]])
        full = dict(zip(bank.pattern_space().labels, bank.lc_prob[0]))
        assert full["000"] == pytest.approx(0.1)
        assert full["010"] == pytest.approx(0.1)
        assert full["100"] == pytest.approx(0.2)
        assert full["110"] == pytest.approx(0.2)
        assert full["001"] == pytest.approx(0.3)
        assert full["101"] == pytest.approx(0.4)
        assert full["111"] == pytest.approx(0.4)

    def test_wrong_group_count(self):
        with pytest.raises(ConfigurationError, match="wrong length"):
            ItemBank.from_reduced_probabilities([[1, 1]], [[0.1, 0.9]])

    def test_wrong_item_count(self):
        with pytest.raises(ConfigurationError, match="one probability vector per item"):
            ItemBank.from_reduced_probabilities([[1, 0], [0, 1]], [[0.1, 0.9]])
