"""Per-model request throttling for the Gemini API."""

from typing import Dict, Optional

from aiolimiter import AsyncLimiter

from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Requests per minute on the free tier
GEMINI_REQUESTS_PER_MINUTE: Dict[str, int] = {
    "gemini-2.5-flash": 10,
    "gemini-2.5-pro": 5,
    "gemini-2.0-flash": 15,
    "gemini-2.0-flash-lite": 30,
    "gemini-1.5-flash": 15,
    "gemini-1.5-flash-8b": 15,
    "gemini-1.5-pro": 2,
}
DEFAULT_REQUESTS_PER_MINUTE = 5

_LIMITERS: Dict[str, AsyncLimiter] = {}


def requests_per_minute_for(model: str, override: Optional[int] = None) -> int:
    if override is not None:
        return override
    return GEMINI_REQUESTS_PER_MINUTE.get(model, DEFAULT_REQUESTS_PER_MINUTE)


def get_model_limiter(model: str, requests_per_minute: Optional[int] = None) -> AsyncLimiter:
    """Limiter shared by every client of ``model`` in this process.

    The first call for a model fixes its rate.
    """
    limiter = _LIMITERS.get(model)
    if limiter is None:
        rate = requests_per_minute_for(model, requests_per_minute)
        limiter = AsyncLimiter(rate, time_period=60)
        _LIMITERS[model] = limiter
        LOGGER.info(f"Throttling {model} to {rate} requests per minute")
    return limiter
