"""
Batch runner for CD-CAT simulations.

``run_cdcat`` validates the whole configuration against the inputs before any
session starts, then runs one independent adaptive session per examinee on a
thread pool and collects the results in examinee order.

Errors follow three tiers:
    - Configuration problems raise ConfigurationError and nothing runs.
    - A failing examinee session is logged, recorded on that examinee's
      result and does not affect the others.
    - Unsupported option combinations that have a safe substitute are
      substituted with a UserWarning.
"""

import logging
import os
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Literal, Optional, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from cdcat.core.cat.engine import CDCATSessionManager
from cdcat.core.cat.exceptions import ConfigurationError, SessionError
from cdcat.core.cat.item_bank import ItemBank
from cdcat.core.cat.item_selection import create_selection_strategy
from cdcat.core.cat.nps_engine import NPSSessionManager
from cdcat.core.cat.results import CDCATResult, ExamineeFailure, ExamineeResult
from cdcat.core.config import ITEM_SELECTION_RULES, settings
from cdcat.core.graceful_failure import capture_failure
from cdcat.core.logging_config import examinee_context

logger = logging.getLogger(__name__)

NONPARAMETRIC_SELECTION = "NPS"

# Tolerance on sum(att_prior) == 1
PRIOR_SUM_TOLERANCE = 1e-6

# Seeds drawn when none is given lie in 1..SEED_UPPER_BOUND
SEED_UPPER_BOUND = 1_000_000


def _to_list(value):
    if isinstance(value, np.ndarray):
        return value.tolist()
    return value


class NPSArgs(BaseModel):
    """Options of the nonparametric (NPS) selection rule."""

    model_config = ConfigDict(extra="forbid")

    gate: Optional[Literal["AND", "OR"]] = None
    pseudo_prob: bool = True
    w_type: Literal[1, 2] = 1
    seed: Optional[int] = None


class CDCATConfig(BaseModel):
    """Resolved configuration of one CD-CAT run."""

    model_config = ConfigDict(extra="forbid")

    item_select: str = Field(default_factory=lambda: settings.DEFAULT_ITEM_SELECTION)
    max_items: int = Field(default_factory=lambda: settings.DEFAULT_MAX_ITEMS, ge=1)
    fixed_length: bool = True
    att_prior: Optional[List[float]] = None
    initial_distr: Optional[Union[List[float], List[List[float]]]] = None
    precision_cut: float = Field(
        default_factory=lambda: settings.DEFAULT_PRECISION_CUT, gt=0.0, le=1.0
    )
    nps_args: NPSArgs = Field(default_factory=NPSArgs)
    seed: Optional[int] = None
    n_workers: int = Field(default_factory=lambda: settings.DEFAULT_N_WORKERS, ge=1)
    print_progress: bool = True

    @field_validator("item_select")
    @classmethod
    def validate_item_select(cls, v: str) -> str:
        if v not in ITEM_SELECTION_RULES:
            raise ValueError(f"item_select must be one of {list(ITEM_SELECTION_RULES)}")
        return v

    @field_validator("att_prior", "initial_distr", mode="before")
    @classmethod
    def convert_arrays(cls, v: Any) -> Any:
        return _to_list(v)

    @field_validator("att_prior")
    @classmethod
    def validate_att_prior(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        """att_prior must be a probability vector."""
        if v is None:
            return v
        if any(p < 0 for p in v):
            raise ValueError("att_prior must be non-negative")
        if abs(sum(v) - 1.0) > PRIOR_SUM_TOLERANCE:
            raise ValueError(f"att_prior must sum to 1, got {sum(v)}")
        return v

    @property
    def is_nonparametric(self) -> bool:
        return self.item_select == NONPARAMETRIC_SELECTION

    @classmethod
    def build(cls, **options: Any) -> "CDCATConfig":
        """Validate options into a config, raising ConfigurationError on bad values."""
        try:
            return cls(**options)
        except ValidationError as e:
            raise ConfigurationError("Invalid CD-CAT configuration", original_error=e) from e


def _draw_seed() -> int:
    return int(np.random.default_rng().integers(1, SEED_UPPER_BOUND + 1))


def _as_response_matrix(dat) -> np.ndarray:
    try:
        x = np.asarray(dat, dtype=float)
    except (TypeError, ValueError) as e:
        raise ConfigurationError("Response matrix must be numeric", original_error=e) from e
    if x.ndim == 1:
        x = x[None, :]
    if x.ndim != 2 or x.shape[0] == 0:
        raise ConfigurationError(
            "Response matrix must be a non-empty N x J array", context={"shape": x.shape}
        )
    return x


def _resolve_item_bank(
    config: CDCATConfig,
    item_bank: Optional[ItemBank],
    q_matrix,
) -> ItemBank:
    if config.is_nonparametric:
        if config.nps_args.gate is None:
            raise ConfigurationError("nps_args.gate must be 'AND' or 'OR' for item_select='NPS'")
        if q_matrix is None and item_bank is None:
            raise ConfigurationError("A Q-matrix is required for item_select='NPS'")
        q = q_matrix if q_matrix is not None else item_bank.q_matrix
        return ItemBank.nonparametric(q, config.nps_args.gate)

    if item_bank is None or not item_bank.is_parametric:
        raise ConfigurationError(
            "Latent-class probabilities are required for parametric item selection",
            context={"item_select": config.item_select},
        )
    return item_bank


def _validate_against_inputs(config: CDCATConfig, bank: ItemBank, dat: np.ndarray) -> None:
    if dat.shape[1] != bank.n_items:
        raise ConfigurationError(
            "Response matrix must have one column per item",
            context={"items": bank.n_items, "columns": dat.shape[1]},
        )

    n_patterns = bank.n_patterns
    if config.att_prior is not None and len(config.att_prior) != n_patterns:
        raise ConfigurationError(
            "att_prior must have one entry per attribute pattern",
            context={"expected": n_patterns, "got": len(config.att_prior)},
        )
    if config.initial_distr is not None:
        try:
            initial = np.asarray(config.initial_distr, dtype=float)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                "initial_distr must be a numeric L vector or N x L matrix", original_error=e
            ) from e
        if initial.shape not in ((n_patterns,), (dat.shape[0], n_patterns)):
            raise ConfigurationError(
                "initial_distr must have length L or shape N x L",
                context={"L": n_patterns, "N": dat.shape[0], "got": initial.shape},
            )
        if np.any(initial < 0):
            raise ConfigurationError("initial_distr weights must be non-negative")

    available = os.cpu_count() or 1
    if config.n_workers > available:
        raise ConfigurationError(
            "n_workers cannot be higher than the number of available CPUs",
            context={"n_workers": config.n_workers, "cpus": available},
        )


def _resolve_seeds(config: CDCATConfig) -> CDCATConfig:
    """Fill in missing seeds so the run can be reproduced from its specifications."""
    update: Dict[str, Any] = {}
    if config.is_nonparametric:
        nps_args = config.nps_args
        nps_update: Dict[str, Any] = {}
        if nps_args.seed is None:
            nps_update["seed"] = _draw_seed()
        if not config.fixed_length and not nps_args.pseudo_prob:
            message = (
                "fixed_length=False is not available with item_select='NPS' when "
                "nps_args.pseudo_prob=False; pseudo_prob=True applied instead"
            )
            warnings.warn(message, UserWarning, stacklevel=3)
            logger.warning(message)
            nps_update["pseudo_prob"] = True
        if nps_update:
            update["nps_args"] = nps_args.model_copy(update=nps_update)
    elif config.seed is None:
        update["seed"] = _draw_seed()
    return config.model_copy(update=update) if update else config


def _examinee_seed(base_seed: int, examinee: int) -> int:
    return base_seed + examinee + 1


def _failure_step(error: BaseException, administered: int) -> int:
    if isinstance(error, SessionError) and error.step is not None:
        return error.step
    return administered + 1


def run_cdcat(
    dat,
    item_bank: Optional[ItemBank] = None,
    config: Optional[CDCATConfig] = None,
    q_matrix=None,
    **options: Any,
) -> CDCATResult:
    """
    Run a CD-CAT simulation over a matrix of pre-collected responses.

    Each examinee's adaptive session picks a sub-sequence of items from their
    full response row.

    Args:
        dat: N x J matrix of 0/1 responses.
        item_bank: Calibrated bank (Q-matrix plus latent-class probabilities).
            Required for parametric selection rules.
        config: Run configuration. If omitted, one is built from ``options``.
        q_matrix: Q-matrix for item_select="NPS" when no bank is given.
        **options: CDCATConfig fields, used when ``config`` is None.

    Returns:
        CDCATResult with one ExamineeResult per row of ``dat`` plus the resolved
        specifications.

    Raises:
        ConfigurationError: If the configuration is invalid or inconsistent with
            the inputs. Raised before any session starts.
    """
    if config is None:
        config = CDCATConfig.build(**options)
    elif options:
        raise ConfigurationError("Pass either a config or keyword options, not both")

    responses = _as_response_matrix(dat)
    bank = _resolve_item_bank(config, item_bank, q_matrix)
    _validate_against_inputs(config, bank, responses)
    config = _resolve_seeds(config)

    n_examinees = responses.shape[0]
    initial_distr = (
        None if config.initial_distr is None else np.asarray(config.initial_distr, dtype=float)
    )

    if config.is_nonparametric:
        manager = NPSSessionManager(
            item_bank=bank,
            gates=[config.nps_args.gate] * bank.n_items,
            max_items=config.max_items,
            fixed_length=config.fixed_length,
            precision_cut=config.precision_cut,
            pseudo_prob=config.nps_args.pseudo_prob,
            w_type=config.nps_args.w_type,
        )
        base_seed = config.nps_args.seed
    else:
        manager = CDCATSessionManager(
            item_bank=bank,
            strategy=create_selection_strategy(config.item_select),
            max_items=config.max_items,
            fixed_length=config.fixed_length,
            precision_cut=config.precision_cut,
            att_prior=None if config.att_prior is None else np.asarray(config.att_prior),
        )
        base_seed = config.seed

    def run_examinee(i: int) -> ExamineeResult:
        token = examinee_context.set(i)
        session = None
        try:
            with capture_failure(
                "run CD-CAT session", logger, context={"examinee": i}
            ) as capture:
                seed = _examinee_seed(base_seed, i)
                if config.is_nonparametric:
                    session = manager.initialize(i, responses[i], seed=seed)
                else:
                    distr = initial_distr
                    if distr is not None and distr.ndim == 2:
                        distr = distr[i]
                    session = manager.initialize(i, responses[i], initial_distr=distr, seed=seed)
                return manager.run(session)

            error = capture.error
            result = session.to_result() if session is not None else ExamineeResult(examinee=i)
            result.failure = ExamineeFailure(
                examinee=i,
                step=_failure_step(error, 0 if session is None else session.step),
                error_type=type(error).__name__,
                message=str(error),
            )
            return result
        finally:
            examinee_context.reset(token)

    logger.info(
        f"Starting CD-CAT run: item_select={config.item_select}, N={n_examinees}, "
        f"J={bank.n_items}, K={bank.n_attributes}, max_items={config.max_items}, "
        f"fixed_length={config.fixed_length}, n_workers={config.n_workers}",
        extra={"item_select": config.item_select},
    )

    results: List[Optional[ExamineeResult]] = [None] * n_examinees
    completed = 0
    with ThreadPoolExecutor(max_workers=config.n_workers) as pool:
        futures = {pool.submit(run_examinee, i): i for i in range(n_examinees)}
        for future in as_completed(futures):
            results[futures[future]] = future.result()
            completed += 1
            if config.print_progress and (
                completed % settings.PROGRESS_LOG_EVERY == 0 or completed == n_examinees
            ):
                logger.info(f"Progress: {completed}/{n_examinees} examinees")

    n_failed = sum(1 for r in results if r is not None and not r.succeeded)
    logger.info(
        f"CD-CAT run complete: {n_examinees - n_failed}/{n_examinees} sessions succeeded"
    )

    specifications: Dict[str, Any] = {
        **config.model_dump(),
        "model": bank.model,
        "n_items": bank.n_items,
        "n_attributes": bank.n_attributes,
        "n_examinees": n_examinees,
    }
    return CDCATResult(est=list(results), specifications=specifications)
