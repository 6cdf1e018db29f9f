import json
import re
from typing import Any, Dict, List, Union

from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_json_safely(text: str) -> Union[Dict[str, Any], List[Any], None]:
    """Parse JSON from model output, tolerating common formatting slips.

    Handles:
    - Markdown code fences (```json ... ```)
    - Prose before or after the JSON value
    - Trailing commas before a closing brace/bracket

    Args:
        text: The text containing JSON

    Returns:
        Parsed JSON value or None if nothing parseable was found
    """
    if not text:
        return None

    cleaned = strip_code_fences(text)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        LOGGER.warning(f"Initial JSON parse failed: {e}, attempting repairs...")

    repaired = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError:
        pass

    # First complete value starting at the first brace or bracket
    decoder = json.JSONDecoder()
    starts = [i for i in (repaired.find("{"), repaired.find("[")) if i != -1]
    if starts:
        try:
            value, _ = decoder.raw_decode(repaired, min(starts))
            LOGGER.info("Recovered first JSON value from surrounding text")
            return value
        except json.JSONDecodeError:
            pass

    LOGGER.error("Failed to parse JSON from model output", extra={"preview": cleaned[:200]})
    return None
