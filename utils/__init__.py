"""
Utility modules for Appraisor.
"""

from .formatting import format_currency, format_percent, parse_amount
from .config import Config

__all__ = ["format_currency", "format_percent", "parse_amount", "Config"]
