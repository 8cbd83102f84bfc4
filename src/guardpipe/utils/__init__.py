"""Utility modules for guardpipe."""

from guardpipe.utils.logging import setup_logging, get_logger, StageLogger
from guardpipe.utils.usage import TokenUsage, TokenUsageSummary, extract_token_usage

__all__ = [
    "setup_logging",
    "get_logger",
    "StageLogger",
    "TokenUsage",
    "TokenUsageSummary",
    "extract_token_usage",
]
