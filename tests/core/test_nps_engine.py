"""
Tests for NPSSessionManager (nonparametric CD-CAT loop).

Tests cover:
- Targeted items 1..K (e_1 first, escalation only over correct answers)
- Classification after K items (pattern 101 recovered with zero loss)
- Discriminating item search and runner-up escalation
- Step snapshot history
- Fixed-length and pseudo-posterior precision termination
- Reproducibility under a fixed seed
- Pool exhaustion and malformed responses
"""
import numpy as np
import pytest

from cdcat.core.cat.engine import SessionState
from cdcat.core.cat.exceptions import ItemPoolExhaustedError, MalformedResponseError
from cdcat.core.cat.item_bank import ItemBank
from cdcat.core.cat.npc import NPCEstimate
from cdcat.core.cat.nps_engine import NPSSessionManager
from cdcat.core.cat.stopping_rules import (
    STOP_MAX_ITEMS,
    STOP_POOL_EXHAUSTED,
    STOP_PRECISION,
    reflect_probabilities,
)


@pytest.fixture
def np_bank(q_k3) -> ItemBank:
    return ItemBank.nonparametric(q_k3, "AND")


@pytest.fixture
def make_manager(np_bank):
    def _make(**kwargs) -> NPSSessionManager:
        kwargs.setdefault("max_items", 10)
        return NPSSessionManager(np_bank, gates=["AND"] * np_bank.n_items, **kwargs)

    return _make


@pytest.fixture
def responses_101(q_k3, make_ideal_responses) -> np.ndarray:
    return make_ideal_responses(q_k3, [1, 0, 1])


class TestTargetedItems:
    @pytest.mark.parametrize("seed", range(5))
    def test_first_item_targets_first_attribute(self, make_manager, responses_101, seed):
        manager = make_manager()
        session = manager.initialize(0, responses_101, seed=seed)
        item = manager.select_next_item(session)
        assert manager.item_bank.q_label(item) == "100"
        assert item in (0, 7)

    @pytest.mark.parametrize("seed", range(5))
    def test_no_escalation_after_incorrect_answers(self, make_manager, q_k3, seed):
        manager = make_manager(max_items=3)
        result = manager.run(manager.initialize(0, np.zeros(len(q_k3)), seed=seed))
        assert [r.q_row for r in result.trace] == ["100", "010", "001"]

    @pytest.mark.parametrize("seed", range(10))
    def test_escalation_only_over_correct_answers(self, make_manager, responses_101, seed):
        manager = make_manager(max_items=3)
        result = manager.run(manager.initialize(0, responses_101, seed=seed))
        rows = [r.q_row for r in result.trace]
        assert rows[0] == "100"
        assert rows[1] in ("010", "110")
        # Item 2 was answered incorrectly, so attribute 2 is never added
        assert rows[2] in ("001", "101")

    def test_missing_target_row(self):
        bank = ItemBank.nonparametric([[0, 1, 0], [0, 0, 1], [1, 1, 1]], "AND")
        manager = NPSSessionManager(bank, gates=["AND"] * 3, max_items=3)
        session = manager.initialize(2, np.ones(3), seed=1)
        with pytest.raises(ItemPoolExhaustedError) as exc_info:
            manager.run(session)
        assert exc_info.value.examinee == 2
        assert exc_info.value.step == 1


class TestClassificationAfterK:
    @pytest.mark.parametrize("seed", range(10))
    def test_recovers_pattern_101(self, make_manager, responses_101, seed):
        manager = make_manager(max_items=3)
        result = manager.run(manager.initialize(0, responses_101, seed=seed))

        assert result.trace[0].alpha is None
        assert result.trace[1].alpha is None
        third = result.trace[2]
        assert third.alpha == "101"
        assert third.loss_alpha == 0
        assert third.loss_diff == third.loss_alpha2 - third.loss_alpha
        assert len(third.pseudo_probs) == 3

    def test_trace_rows_before_k_have_empty_pseudo_columns(self, make_manager, responses_101):
        manager = make_manager(max_items=4)
        result = manager.run(manager.initialize(0, responses_101, seed=3))
        rows = result.to_records()
        assert rows[0]["pP.K1"] is None
        assert rows[0]["alpha"] is None
        assert rows[2]["pP.K1"] is not None
        assert rows[2]["HD.alpha"] == 0

    def test_without_pseudo_probabilities(self, make_manager, responses_101):
        manager = make_manager(max_items=4, pseudo_prob=False)
        result = manager.run(manager.initialize(0, responses_101, seed=3))
        rows = result.to_records()
        assert "pP.K1" not in rows[-1]
        assert rows[-1]["alpha"] == "101"


class TestDiscriminatingItems:
    def _session_after(self, manager, administered, responses, order):
        session = manager.initialize(0, np.ones(manager.item_bank.n_items), seed=8)
        session.administered = list(administered)
        session.responses = list(responses)
        session.remaining = [j for j in session.remaining if j not in administered]
        session.estimate = NPCEstimate(losses=np.zeros(8), order=np.array(order))
        return session

    def test_picks_item_separating_best_and_runner_up(self, make_manager):
        manager = make_manager()
        space = manager.pattern_space
        order = [space.index_of(label) for label in ("101", "100", "110", "111", "000", "010", "001", "011")]
        session = self._session_after(manager, [0, 2, 4, 3, 5, 6, 7, 8], [1] * 8, order)
        # Remaining: item 2 ("010", index 1) and item 10 ("001", index 9).
        session.remaining = [1, 9]
        # Only "001" separates 101 from 100 under AND
        assert manager.select_discriminating_item(session) == 9

    def test_escalates_runner_up_when_nothing_separates(self, make_manager):
        manager = make_manager()
        space = manager.pattern_space
        order = [space.index_of(label) for label in ("101", "100", "000", "001", "110", "111", "010", "011")]
        session = self._session_after(manager, [0, 2], [1, 1], order)
        # Only an attribute-2 item remains: no separation from 100, but from
        # any pattern mastering attribute 2 further down the ranking.
        session.remaining = [1]
        assert manager.select_discriminating_item(session) == 1

    def test_empty_pool_raises(self, make_manager):
        manager = make_manager()
        session = self._session_after(manager, [0, 1, 2], [1, 0, 1], list(range(8)))
        session.remaining = []
        with pytest.raises(ItemPoolExhaustedError):
            manager.select_discriminating_item(session)

    @pytest.mark.parametrize("seed", range(5))
    def test_items_after_k_separate_best_and_runner_up(self, make_manager, responses_101, seed):
        manager = make_manager(max_items=10)
        session = manager.initialize(0, responses_101, seed=seed)
        manager.run(session)
        k = manager.n_attributes
        for step in range(k + 1, session.step + 1):
            previous = session.snapshot(step - 1)
            column = manager.ideal[session.administered[step - 1]]
            if column[previous.best] != column[previous.second]:
                continue
            # The runner-up was escalated: no item left in the pool separated it
            # from the best pattern
            assert all(
                manager.ideal[j, previous.best] == manager.ideal[j, previous.second]
                for j in previous.pool
            )
            assert np.any(column != column[previous.best])


class TestHistory:
    def test_snapshots(self, make_manager, responses_101):
        manager = make_manager(max_items=6)
        session = manager.initialize(0, responses_101, seed=4)
        manager.run(session)

        assert len(session.history) == session.step == 6
        for step in range(1, 7):
            snap = session.snapshot(step)
            assert snap.step == step
            assert len(snap.administered) == step
            assert len(snap.pool) == 10 - step
            assert not set(snap.pool) & set(snap.administered)
        assert session.snapshot(2).best is None
        assert session.snapshot(3).best == manager.pattern_space.index_of("101")

    def test_snapshot_out_of_range(self, make_manager, responses_101):
        manager = make_manager(max_items=2)
        session = manager.initialize(0, responses_101, seed=4)
        manager.run(session)
        with pytest.raises(IndexError):
            session.snapshot(0)
        with pytest.raises(IndexError):
            session.snapshot(3)


class TestStopping:
    def test_fixed_length(self, make_manager, responses_101):
        manager = make_manager(max_items=5)
        result = manager.run(manager.initialize(0, responses_101, seed=1))
        assert result.items_administered == 5
        assert result.stop_reason == STOP_MAX_ITEMS
        assert len(set(result.item_usage)) == 5

    def test_max_items_below_k(self, make_manager, responses_101):
        manager = make_manager(max_items=2)
        result = manager.run(manager.initialize(0, responses_101, seed=1))
        assert result.items_administered == 2
        assert result.stop_reason == STOP_MAX_ITEMS

    @pytest.mark.parametrize("seed", range(5))
    def test_pool_exhausted(self, make_manager, responses_101, seed):
        manager = make_manager(max_items=20)
        result = manager.run(manager.initialize(0, responses_101, seed=seed))
        assert result.items_administered == 10
        assert result.stop_reason == STOP_POOL_EXHAUSTED
        assert sorted(result.item_usage) == list(range(1, 11))

    @pytest.mark.parametrize("seed", range(10))
    def test_precision_not_checked_at_k(self, make_manager, responses_101, seed):
        manager = make_manager(fixed_length=False, precision_cut=0.6)
        result = manager.run(manager.initialize(0, responses_101, seed=seed))
        k = manager.n_attributes

        # The K-th record already clears the cutoff, yet the session goes on
        at_k = reflect_probabilities(np.array(result.trace[k - 1].pseudo_probs))
        assert np.all(at_k > 0.6)
        assert result.items_administered > k
        if result.stop_reason == STOP_PRECISION:
            final = reflect_probabilities(np.array(result.trace[-1].pseudo_probs))
            assert np.all(final > 0.6)

    @pytest.mark.parametrize("seed", range(5))
    def test_precision_stops_at_first_qualifying_step(
        self, make_manager, q_k3, make_ideal_responses, seed
    ):
        manager = make_manager(fixed_length=False, precision_cut=0.75)
        responses = make_ideal_responses(q_k3, [1, 1, 0])
        result = manager.run(manager.initialize(0, responses, seed=seed))

        checked = result.trace[manager.n_attributes:]
        for record in checked[:-1]:
            assert not np.all(reflect_probabilities(np.array(record.pseudo_probs)) > 0.75)
        if result.stop_reason == STOP_PRECISION:
            assert result.items_administered > manager.n_attributes
            assert np.all(reflect_probabilities(np.array(checked[-1].pseudo_probs)) > 0.75)


class TestReproducibility:
    def test_same_seed_same_session(self, make_manager, q_k3, make_ideal_responses):
        manager = make_manager(max_items=8)
        responses = make_ideal_responses(q_k3, [0, 1, 1])
        first = manager.run(manager.initialize(0, responses, seed=99))
        second = manager.run(manager.initialize(0, responses, seed=99))
        assert first.item_usage == second.item_usage
        assert first.trace == second.trace


class TestErrors:
    def test_malformed_response(self, make_manager):
        manager = make_manager()
        session = manager.initialize(1, np.full(10, 2.0), seed=1)
        with pytest.raises(MalformedResponseError) as exc_info:
            manager.run(session)
        assert exc_info.value.step == 1
        assert session.state is SessionState.AWAITING_FIRST_ITEM
