"""
NPSSessionManager: nonparametric CD-CAT sessions.

Item selection here does not score items. It reduces the pool in two phases:

1. Targeting (items 1..K). Item k is drawn from the items whose Q-row equals a
   target row: e_1 for the first item; for k >= 2, e_k plus e_w for any subset
   of the earlier items w < k that were answered correctly (Xu, Wang, & Shang,
   2016). The target is chosen uniformly among the reachable rows present in
   the pool, then the item uniformly among the items carrying that row.

2. Discrimination (items K+1..max). After each response the administered
   items are classified with the NPC method (see ``npc.py``). The next item is
   the first one, in a random walk over the pool, whose ideal response differs
   between the best pattern and the runner-up; the item is then drawn uniformly
   among the remaining items with the same Q-row. If no item separates the two,
   the runner-up is replaced by the next pattern in a freshly tie-broken
   ranking, and so on down the list.

In fixed-precision mode the pseudo-posterior cutoff is checked from item K+1
on. The K-th item records pseudo-probabilities but never stops the session on
precision.

Every administered item leaves a snapshot (pool, administered items, best and
runner-up pattern) in the session history, indexed by step.

References:
    - Chang, Y.-P., Chiu, C.-Y., & Tsai, R.-C. (2019). Nonparametric CAT for
      CD in educational settings with small samples. Applied Psychological
      Measurement, 43, 543-561.
    - Xu, G., Wang, C., & Shang, Z. (2016). On initial item selection in
      cognitive diagnostic computerized adaptive testing. British Journal of
      Mathematical and Statistical Psychology, 69, 291-315.
"""
import logging
from dataclasses import dataclass, field
from itertools import product
from typing import List, Optional, Sequence, Tuple

import numpy as np

from cdcat.core.cat.engine import SessionState, read_response
from cdcat.core.cat.exceptions import ItemPoolExhaustedError
from cdcat.core.cat.item_bank import ItemBank
from cdcat.core.cat.npc import W_TYPE_POWER_OF_2, NPCEstimate, classify, ideal_responses
from cdcat.core.cat.results import ExamineeResult, NPSStepRecord, rounded
from cdcat.core.cat.stopping_rules import (
    MAX_ITEMS,
    PRECISION_CUT,
    STOP_POOL_EXHAUSTED,
    StoppingDecision,
    check_nps_stopping_criteria,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NPSSnapshot:
    """Session state right after the item of ``step`` was administered."""

    step: int
    pool: Tuple[int, ...]  # 0-based items still available
    administered: Tuple[int, ...]
    best: Optional[int] = None  # pattern index, None before the first classification
    second: Optional[int] = None


@dataclass
class NPSSession:
    """State of one examinee's nonparametric adaptive session."""

    examinee: int
    response_row: np.ndarray
    remaining: List[int]
    rng: np.random.Generator
    administered: List[int] = field(default_factory=list)
    responses: List[int] = field(default_factory=list)
    trace: List[NPSStepRecord] = field(default_factory=list)
    history: List[NPSSnapshot] = field(default_factory=list)
    state: SessionState = SessionState.AWAITING_FIRST_ITEM
    stop_reason: Optional[str] = None
    estimate: Optional[NPCEstimate] = None

    @property
    def step(self) -> int:
        return len(self.administered)

    def snapshot(self, step: int) -> NPSSnapshot:
        """State after the ``step``-th item (1-based)."""
        if step < 1 or step > len(self.history):
            raise IndexError(f"No snapshot for step {step}; session is at step {self.step}")
        return self.history[step - 1]

    def to_result(self) -> ExamineeResult:
        return ExamineeResult(
            examinee=self.examinee,
            trace=list(self.trace),
            item_usage=[j + 1 for j in self.administered],
            stop_reason=self.stop_reason,
        )


class NPSSessionManager:
    """
    Orchestrator for nonparametric (NPS) CD-CAT sessions.

    Holds the read-only Q-matrix, the per-item gates and the precomputed ideal
    responses of every pattern to every item; all mutable state lives on the
    NPSSession.
    """

    def __init__(
        self,
        item_bank: ItemBank,
        gates: Sequence[str],
        max_items: int = MAX_ITEMS,
        fixed_length: bool = True,
        precision_cut: float = PRECISION_CUT,
        pseudo_prob: bool = True,
        w_type: int = W_TYPE_POWER_OF_2,
    ):
        self.item_bank = item_bank
        self.q_matrix = item_bank.q_matrix
        self.gates = np.asarray(gates)
        self.max_items = max_items
        self.fixed_length = fixed_length
        self.precision_cut = precision_cut
        self.pseudo_prob = pseudo_prob
        self.w_type = w_type
        self.pattern_space = item_bank.pattern_space()
        self.patterns = self.pattern_space.patterns
        self.ideal = ideal_responses(self.q_matrix, self.patterns, self.gates)
        self.n_attributes = item_bank.n_attributes

    def initialize(
        self,
        examinee: int,
        response_row: np.ndarray,
        seed: Optional[int] = None,
    ) -> NPSSession:
        return NPSSession(
            examinee=examinee,
            response_row=np.asarray(response_row),
            remaining=list(range(self.item_bank.n_items)),
            rng=np.random.default_rng(seed),
        )

    # ------------------------------------------------------------------
    # Item selection
    # ------------------------------------------------------------------

    def _items_with_row(self, pool: Sequence[int], q_row: np.ndarray) -> List[int]:
        return [j for j in pool if np.array_equal(self.q_matrix[j], q_row)]

    def _unit_row(self, k: int) -> np.ndarray:
        row = np.zeros(self.n_attributes, dtype=self.q_matrix.dtype)
        row[k] = 1
        return row

    def select_targeted_item(self, session: NPSSession) -> int:
        """Pick item k (k = session.step + 1 <= K) by its escalating target Q-row.

        Raises:
            ItemPoolExhaustedError: If no remaining item carries a reachable target row.
        """
        k = session.step
        correct_earlier = [w for w in range(k) if session.responses[w] == 1]

        candidates: List[List[int]] = []
        for included in product((0, 1), repeat=len(correct_earlier)):
            target = self._unit_row(k)
            for w, flag in zip(correct_earlier, included):
                target[w] = target[w] | flag
            items = self._items_with_row(session.remaining, target)
            if items:
                candidates.append(items)

        if not candidates:
            raise ItemPoolExhaustedError(
                "No remaining item matches the targeted Q-row",
                examinee=session.examinee,
                step=session.step + 1,
                context={"attribute": k + 1},
            )

        items = candidates[int(session.rng.integers(len(candidates)))]
        return int(items[int(session.rng.integers(len(items)))])

    def select_discriminating_item(self, session: NPSSession) -> int:
        """Pick an item whose ideal response separates the best pattern from a runner-up.

        Raises:
            ItemPoolExhaustedError: If no remaining item separates the best pattern
                from any other pattern.
        """
        estimate = session.estimate
        best = estimate.best
        order = estimate.order
        rank = 2
        n_patterns = len(self.patterns)

        while rank <= n_patterns:
            runner_up = int(order[rank - 1])
            for j in session.rng.permutation(session.remaining):
                j = int(j)
                if self.ideal[j, best] != self.ideal[j, runner_up]:
                    same_row = self._items_with_row(session.remaining, self.q_matrix[j])
                    return int(same_row[int(session.rng.integers(len(same_row)))])

            rank += 1
            logger.debug(
                f"Examinee {session.examinee}: no item separates patterns "
                f"{self.pattern_space.label(best)} and {self.pattern_space.label(runner_up)}, "
                f"trying rank {rank}",
                extra={"step": session.step},
            )
            # Fresh tie-break for the runner-up, the best pattern stays fixed
            order = classify(
                session.responses,
                self.q_matrix[session.administered],
                self.patterns,
                self.gates[session.administered],
                session.rng,
            ).order

        raise ItemPoolExhaustedError(
            "No remaining item discriminates the best pattern from any other pattern",
            examinee=session.examinee,
            step=session.step + 1,
            context={"best": self.pattern_space.label(best)},
        )

    def select_next_item(self, session: NPSSession) -> int:
        if session.step < self.n_attributes:
            return self.select_targeted_item(session)
        return self.select_discriminating_item(session)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def process_response(self, session: NPSSession, item: int) -> StoppingDecision:
        """
        Administer ``item``, reclassify once K items are in, and check stopping.

        Raises:
            MalformedResponseError: If the examinee's response to the item is not 0/1.
        """
        if session.state is SessionState.TERMINATED:
            raise ValueError(f"Session for examinee {session.examinee} has terminated")

        response = read_response(
            session.response_row, item, session.examinee, session.step + 1
        )
        session.remaining.remove(item)
        session.administered.append(item)
        session.responses.append(response)
        session.state = SessionState.ITEM_ADMINISTERED

        record = NPSStepRecord(
            item=item + 1,
            q_row=self.item_bank.q_label(item),
            response=response,
        )

        if session.step >= self.n_attributes:
            estimate = classify(
                session.responses,
                self.q_matrix[session.administered],
                self.patterns,
                self.gates[session.administered],
                session.rng,
                pseudo_prob=self.pseudo_prob,
                w_type=self.w_type,
            )
            session.estimate = estimate
            loss_best = estimate.loss_of(estimate.best)
            loss_second = estimate.loss_of(estimate.second)
            record = NPSStepRecord(
                item=record.item,
                q_row=record.q_row,
                response=response,
                alpha=self.pattern_space.label(estimate.best),
                loss_alpha=loss_best,
                alpha2=self.pattern_space.label(estimate.second),
                loss_alpha2=loss_second,
                loss_diff=loss_second - loss_best,
                pseudo_probs=(
                    rounded(estimate.pseudo_probs) if estimate.pseudo_probs is not None else None
                ),
            )

        session.trace.append(record)
        session.history.append(
            NPSSnapshot(
                step=session.step,
                pool=tuple(session.remaining),
                administered=tuple(session.administered),
                best=None if session.estimate is None else session.estimate.best,
                second=None if session.estimate is None else session.estimate.second,
            )
        )

        # Precision is only checked once discriminating items are being given
        precision_probs = None
        if session.estimate is not None and session.step > self.n_attributes:
            precision_probs = session.estimate.pseudo_probs

        decision = check_nps_stopping_criteria(
            num_items=session.step,
            pseudo_probs=precision_probs,
            items_remaining=len(session.remaining),
            max_items=self.max_items,
            fixed_length=self.fixed_length,
            precision_cut=self.precision_cut,
        )

        logger.debug(
            f"Examinee {session.examinee}: item #{session.step} "
            f"(j={item + 1}, y={response}) -> alpha={record.alpha}, stop={decision.should_stop}",
            extra={"step": session.step, "item": item + 1},
        )

        if decision.should_stop:
            session.state = SessionState.TERMINATED
            session.stop_reason = decision.reason

        return decision

    def run(self, session: NPSSession) -> ExamineeResult:
        """Drive a session until a stopping rule fires and return its result."""
        while session.state is not SessionState.TERMINATED:
            if not session.remaining:
                session.state = SessionState.TERMINATED
                session.stop_reason = STOP_POOL_EXHAUSTED
                break
            item = self.select_next_item(session)
            self.process_response(session, item)

        return session.to_result()
