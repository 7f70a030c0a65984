"""
CD-CAT (Cognitive Diagnostic Computerized Adaptive Testing) core.

This module provides the attribute pattern space, posterior estimation, item
selection rules, the parametric and nonparametric adaptive loops, and the batch
runner.
"""

from .engine import (
    CATStepResult,
    CDCATSession,
    CDCATSessionManager,
    SessionState,
)
from .exceptions import (
    CDCATError,
    ConfigurationError,
    DegeneratePosteriorError,
    ItemPoolExhaustedError,
    MalformedResponseError,
    SessionError,
)
from .item_bank import ItemBank
from .item_selection import (
    SELECTION_STRATEGIES,
    ItemSelectionStrategy,
    create_selection_strategy,
)
from .npc import (
    NPCEstimate,
    classification_losses,
    classify,
    ideal_responses,
    pseudo_posterior,
)
from .nps_engine import NPSSession, NPSSessionManager, NPSSnapshot
from .patterns import AttributePatternSpace, attribute_patterns, pattern_label
from .posterior import PosteriorEstimate, update_posterior
from .results import (
    CDCATResult,
    ExamineeFailure,
    ExamineeResult,
    NPSStepRecord,
    StepRecord,
)
from .runner import CDCATConfig, NPSArgs, run_cdcat
from .stopping_rules import StoppingDecision, check_stopping_criteria

__all__ = [
    "run_cdcat",
    "CDCATConfig",
    "NPSArgs",
    "ItemBank",
    "AttributePatternSpace",
    "attribute_patterns",
    "pattern_label",
    "PosteriorEstimate",
    "update_posterior",
    "ItemSelectionStrategy",
    "SELECTION_STRATEGIES",
    "create_selection_strategy",
    "CDCATSession",
    "CDCATSessionManager",
    "CATStepResult",
    "SessionState",
    "NPCEstimate",
    "classify",
    "classification_losses",
    "ideal_responses",
    "pseudo_posterior",
    "NPSSession",
    "NPSSessionManager",
    "NPSSnapshot",
    "StoppingDecision",
    "check_stopping_criteria",
    "CDCATResult",
    "ExamineeResult",
    "ExamineeFailure",
    "StepRecord",
    "NPSStepRecord",
    "CDCATError",
    "ConfigurationError",
    "SessionError",
    "MalformedResponseError",
    "DegeneratePosteriorError",
    "ItemPoolExhaustedError",
]
