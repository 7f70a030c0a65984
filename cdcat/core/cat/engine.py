"""
CDCATSessionManager: parametric CD-CAT session orchestrator.

Runs one examinee's adaptive session against a calibrated item bank:

    AWAITING_FIRST_ITEM -> ITEM_ADMINISTERED -> ... -> TERMINATED

Each step scores the remaining items with the configured selection rule,
administers the best one (its response is read from the examinee's pre-collected
response row), recomputes the posterior over attribute patterns from all
administered responses, appends a step record and evaluates the stopping rules.

All session state lives on the CDCATSession object; the manager holds only the
read-only item bank and run configuration, so one manager can serve any number
of sessions concurrently.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np

from cdcat.core.cat.exceptions import MalformedResponseError
from cdcat.core.cat.item_bank import ItemBank
from cdcat.core.cat.item_selection import ItemSelectionStrategy
from cdcat.core.cat.patterns import pattern_label
from cdcat.core.cat.posterior import PosteriorEstimate, uniform_prior, update_posterior
from cdcat.core.cat.results import ROUND_DIGITS, ExamineeResult, StepRecord, rounded
from cdcat.core.cat.stopping_rules import (
    MAX_ITEMS,
    PRECISION_CUT,
    STOP_POOL_EXHAUSTED,
    StoppingDecision,
    check_stopping_criteria,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    AWAITING_FIRST_ITEM = "awaiting_first_item"
    ITEM_ADMINISTERED = "item_administered"
    TERMINATED = "terminated"


def read_response(
    response_row: np.ndarray,
    item: int,
    examinee: int,
    step: int,
) -> int:
    """Return the 0/1 response to a 0-based item, validating the entry.

    Raises:
        MalformedResponseError: If the entry is missing or not 0/1.
    """
    try:
        value = float(response_row[item])
    except (IndexError, TypeError, ValueError) as e:
        raise MalformedResponseError(
            "Response is missing or not numeric",
            examinee=examinee,
            step=step,
            original_error=e,
            context={"item": item + 1},
        ) from e
    if value not in (0.0, 1.0):
        raise MalformedResponseError(
            "Response must be 0 or 1",
            examinee=examinee,
            step=step,
            context={"item": item + 1, "value": value},
        )
    return int(value)


@dataclass
class CDCATSession:
    """State of one examinee's parametric adaptive session."""

    examinee: int
    response_row: np.ndarray  # full pre-collected responses, length J
    weights: np.ndarray  # weighting used to score the next item (posterior after step 1)
    remaining: List[int]  # 0-based items not yet administered, ascending
    rng: np.random.Generator
    administered: List[int] = field(default_factory=list)
    responses: List[int] = field(default_factory=list)
    trace: List[StepRecord] = field(default_factory=list)
    state: SessionState = SessionState.AWAITING_FIRST_ITEM
    stop_reason: Optional[str] = None
    estimate: Optional[PosteriorEstimate] = None

    @property
    def step(self) -> int:
        return len(self.administered)

    def to_result(self) -> ExamineeResult:
        return ExamineeResult(
            examinee=self.examinee,
            trace=list(self.trace),
            item_usage=[j + 1 for j in self.administered],
            stop_reason=self.stop_reason,
        )


@dataclass
class CATStepResult:
    """Result after processing a single response."""

    record: StepRecord
    decision: StoppingDecision

    @property
    def should_stop(self) -> bool:
        return self.decision.should_stop


class CDCATSessionManager:
    """
    Orchestrator for parametric CD-CAT sessions.

    Manages:
    - Session initialization with the initial weighting distribution
    - Item selection through the configured ItemSelectionStrategy
    - Posterior re-estimation after each response
    - Stopping criteria (max items, MAP precision, pool exhaustion)
    """

    def __init__(
        self,
        item_bank: ItemBank,
        strategy: ItemSelectionStrategy,
        max_items: int = MAX_ITEMS,
        fixed_length: bool = True,
        precision_cut: float = PRECISION_CUT,
        att_prior: Optional[np.ndarray] = None,
    ):
        if item_bank.lc_prob is None:
            raise ValueError("Parametric CD-CAT needs latent-class probabilities")
        self.item_bank = item_bank
        self.strategy = strategy
        self.max_items = max_items
        self.fixed_length = fixed_length
        self.precision_cut = precision_cut
        self.pattern_space = item_bank.pattern_space()
        self.att_prior = (
            uniform_prior(item_bank.n_patterns)
            if att_prior is None
            else np.asarray(att_prior, dtype=float)
        )

    def initialize(
        self,
        examinee: int,
        response_row: np.ndarray,
        initial_distr: Optional[np.ndarray] = None,
        seed: Optional[int] = None,
    ) -> CDCATSession:
        """
        Create a new session for one examinee.

        Args:
            examinee: 0-based examinee index.
            response_row: The examinee's responses to all J items.
            initial_distr: Weighting distribution used to pick the first item
                (defaults to uniform).
            seed: Seed of the session random generator.
        """
        weights = (
            uniform_prior(self.item_bank.n_patterns)
            if initial_distr is None
            else np.asarray(initial_distr, dtype=float)
        )
        return CDCATSession(
            examinee=examinee,
            response_row=np.asarray(response_row),
            weights=weights,
            remaining=list(range(self.item_bank.n_items)),
            rng=np.random.default_rng(seed),
        )

    def select_next_item(self, session: CDCATSession) -> int:
        """Pick the highest-scoring remaining item (lowest item number on ties)."""
        candidate = self.strategy.select(
            lc_prob=self.item_bank.lc_prob,
            posterior=session.weights,
            remaining=session.remaining,
            rng=session.rng,
        )
        return candidate.item

    def process_response(self, session: CDCATSession, item: int) -> CATStepResult:
        """
        Administer ``item`` and update the session state.

        This method mutates the session in-place:
        - Moves the item from the remaining pool to the administered list
        - Records the response
        - Re-estimates the posterior from all responses so far
        - Appends a step record and checks the stopping criteria

        Raises:
            MalformedResponseError: If the examinee's response to the item is not 0/1.
            DegeneratePosteriorError: If the posterior collapses to zero mass.
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

        estimate = update_posterior(
            prior=self.att_prior,
            lc_prob_administered=self.item_bank.lc_prob[session.administered],
            responses=session.responses,
            pattern_space=self.pattern_space,
            examinee=session.examinee,
        )
        session.estimate = estimate
        session.weights = estimate.posterior

        record = StepRecord(
            item=item + 1,
            q_row=self.item_bank.q_label(item),
            ml=self.pattern_space.label(estimate.ml_index),
            n_modes_ml=estimate.n_modes_ml,
            likelihood=round(estimate.max_likelihood, ROUND_DIGITS),
            map=self.pattern_space.label(estimate.map_index),
            n_modes_map=estimate.n_modes_map,
            posterior=round(estimate.map_probability, ROUND_DIGITS),
            eap_call=pattern_label(estimate.mastery),
            eap=rounded(estimate.eap),
        )
        session.trace.append(record)

        decision = check_stopping_criteria(
            num_items=session.step,
            map_probability=estimate.map_probability,
            items_remaining=len(session.remaining),
            max_items=self.max_items,
            fixed_length=self.fixed_length,
            precision_cut=self.precision_cut,
        )

        logger.debug(
            f"Examinee {session.examinee}: item #{session.step} "
            f"(j={item + 1}, x={response}) -> MAP={record.map} "
            f"(p={record.posterior:.3f}), stop={decision.should_stop}",
            extra={"step": session.step, "item": item + 1},
        )

        if decision.should_stop:
            session.state = SessionState.TERMINATED
            session.stop_reason = decision.reason

        return CATStepResult(record=record, decision=decision)

    def run(self, session: CDCATSession) -> ExamineeResult:
        """Drive a session until a stopping rule fires and return its result."""
        while session.state is not SessionState.TERMINATED:
            if not session.remaining:
                # Only reachable with an empty bank: nothing to administer
                session.state = SessionState.TERMINATED
                session.stop_reason = STOP_POOL_EXHAUSTED
                break
            item = self.select_next_item(session)
            self.process_response(session, item)

        return session.to_result()
