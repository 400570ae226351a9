"""
Prompt construction and score parsing for LLM evaluation.
"""

import json
import re
from dataclasses import dataclass

MIN_SCORE = 1
MAX_SCORE = 7

DEFAULT_SYSTEM_PROMPT = (
    "You rate crowdsourced labeling prompts. Score how realistic the prompt is "
    "as something a real user would ask, and its overall quality, each on a "
    "scale from 1 (worst) to 7 (best). Respond only with JSON of the form "
    '{"realism": <1-7>, "quality": <1-7>}.'
)

_JSON_OBJECT = re.compile(r"\{[^{}]+\}")


class ScoreParseError(ValueError):
    """Raised when a completion does not contain usable scores."""


@dataclass(frozen=True)
class Scores:
    realism: int
    quality: int


def build_evaluation_prompt(content: str) -> str:
    return f"Please evaluate this prompt:\n\n{content}"


def clamp_score(value: float) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, round(value)))


def parse_scores(content: str) -> Scores:
    """Read realism and quality from the first JSON object in `content`."""
    match = _JSON_OBJECT.search(content or "")
    if not match:
        raise ScoreParseError(f"No JSON found in response: {content[:200]!r}")

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ScoreParseError(f"Invalid JSON in response: {e}") from e

    realism = parsed.get("realism")
    quality = parsed.get("quality")
    # bool is an int subclass; reject it explicitly
    for value in (realism, quality):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ScoreParseError(f"Invalid score format: {match.group(0)}")

    return Scores(realism=clamp_score(realism), quality=clamp_score(quality))
