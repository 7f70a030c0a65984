"""
cdcat: Cognitive Diagnostic Computerized Adaptive Testing simulation.
"""
from cdcat.core.cat import (
    CDCATConfig,
    CDCATResult,
    ConfigurationError,
    ItemBank,
    NPSArgs,
    run_cdcat,
)

__version__ = "0.1.0"

__all__ = [
    "run_cdcat",
    "CDCATConfig",
    "NPSArgs",
    "ItemBank",
    "CDCATResult",
    "ConfigurationError",
]
