"""
Utility functions
"""
from .logger import setup_logging
from .rate_limiter import StartRateLimiter, RedisStartRateLimiter
from .text_utils import collapse_whitespace, truncate

__all__ = [
    "setup_logging",
    "StartRateLimiter",
    "RedisStartRateLimiter",
    "collapse_whitespace",
    "truncate",
]
