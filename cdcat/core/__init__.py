"""
Core module for configuration, logging and the CD-CAT engine.
"""
from .config import settings

__all__ = ["settings"]
