"""
Per-step records and per-examinee results of a CD-CAT run.

A session appends one step record per administered item; once the session
terminates, its ``ExamineeResult`` is not modified again. ``CDCATResult`` holds
the results of every examinee (in examinee order) plus the resolved run
configuration for provenance.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

ROUND_DIGITS = 5


def rounded(values) -> Tuple[float, ...]:
    return tuple(round(float(v), ROUND_DIGITS) for v in values)


@dataclass(frozen=True)
class StepRecord:
    """Diagnostics after one item of a parametric session."""

    item: int  # 1-based item number
    q_row: str
    ml: str  # maximum-likelihood pattern label
    n_modes_ml: int
    likelihood: float  # likelihood of the ML pattern
    map: str  # maximum-a-posteriori pattern label
    n_modes_map: int
    posterior: float  # posterior probability of the MAP pattern
    eap_call: str  # EAP marginals thresholded at 0.5
    eap: Tuple[float, ...]

    def to_dict(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "j": self.item,
            "qj": self.q_row,
            "ML": self.ml,
            "nmodesML": self.n_modes_ml,
            "Lik": self.likelihood,
            "MAP": self.map,
            "nmodesMAP": self.n_modes_map,
            "Post": self.posterior,
            "EAP": self.eap_call,
        }
        for k, value in enumerate(self.eap, start=1):
            row[f"K{k}"] = value
        return row


@dataclass(frozen=True)
class NPSStepRecord:
    """Diagnostics after one item of a nonparametric session.

    The estimate fields are None for the first K - 1 items, which are
    administered before the first classification.
    """

    item: int  # 1-based item number
    q_row: str
    response: int
    alpha: Optional[str] = None  # best-fitting pattern
    loss_alpha: Optional[int] = None
    alpha2: Optional[str] = None  # second most plausible pattern
    loss_alpha2: Optional[int] = None
    loss_diff: Optional[int] = None
    pseudo_probs: Optional[Tuple[float, ...]] = None

    def to_dict(self, n_attributes: Optional[int] = None) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "j": self.item,
            "qj": self.q_row,
            "yj": self.response,
            "alpha": self.alpha,
            "HD.alpha": self.loss_alpha,
            "alpha2": self.alpha2,
            "HD.alpha2": self.loss_alpha2,
            "HD.diff": self.loss_diff,
        }
        if self.pseudo_probs is not None:
            for k, value in enumerate(self.pseudo_probs, start=1):
                row[f"pP.K{k}"] = value
        elif n_attributes is not None:
            for k in range(1, n_attributes + 1):
                row[f"pP.K{k}"] = None
        return row


TraceRecord = Union[StepRecord, NPSStepRecord]


@dataclass(frozen=True)
class ExamineeFailure:
    """Why and where an examinee's session failed."""

    examinee: int
    step: int  # 1-based step at which the session failed
    error_type: str
    message: str


@dataclass
class ExamineeResult:
    """Outcome of one examinee's adaptive session."""

    examinee: int  # 0-based row of the response matrix
    trace: List[TraceRecord] = field(default_factory=list)
    item_usage: List[int] = field(default_factory=list)  # 1-based, in order
    stop_reason: Optional[str] = None
    failure: Optional[ExamineeFailure] = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def items_administered(self) -> int:
        return len(self.item_usage)

    def to_records(self) -> List[Dict[str, Any]]:
        """The step trace as a list of row dicts (one per administered item)."""
        with_pseudo = any(
            isinstance(r, NPSStepRecord) and r.pseudo_probs is not None for r in self.trace
        )
        rows = []
        for record in self.trace:
            if isinstance(record, NPSStepRecord) and with_pseudo:
                n_attributes = len(record.q_row)
                rows.append(record.to_dict(n_attributes=n_attributes))
            else:
                rows.append(record.to_dict())
        return rows

    def to_dict(self) -> Dict[str, Any]:
        return {
            "examinee": self.examinee,
            "est_cat": self.to_records(),
            "item_usage": list(self.item_usage),
            "stop_reason": self.stop_reason,
            "failure": None if self.failure is None else asdict(self.failure),
        }


@dataclass
class CDCATResult:
    """All examinee results of a run plus the resolved specifications."""

    est: List[ExamineeResult]
    specifications: Dict[str, Any]

    @property
    def failures(self) -> List[ExamineeFailure]:
        return [r.failure for r in self.est if r.failure is not None]

    def __len__(self) -> int:
        return len(self.est)

    def __getitem__(self, examinee: int) -> ExamineeResult:
        return self.est[examinee]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "est": [r.to_dict() for r in self.est],
            "specifications": self.specifications,
        }
