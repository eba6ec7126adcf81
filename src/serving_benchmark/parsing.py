"""
Extraction of completion text and token counts from chat-completion bodies.
"""

import json
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class ParsedCompletion:
    """Result of parsing one response body."""
    well_formed: bool
    tokens: int = 0
    text: str = ""


def count_words(text: str) -> int:
    """Whitespace-delimited word count, used when usage is not reported."""
    return len(text.split())


def parse_completion(body: Union[str, bytes]) -> ParsedCompletion:
    """
    Parse a chat-completion JSON body.

    The token count comes from usage.completion_tokens when it is a positive
    integer. Otherwise the words of choices[0].message.content are counted;
    that fallback approximates tokens and is not exact.

    Args:
        body: Raw HTTP response body

    Returns:
        ParsedCompletion; well_formed is False when the body is not a JSON object
    """
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return ParsedCompletion(well_formed=False)

    if not isinstance(data, dict):
        return ParsedCompletion(well_formed=False)

    text = ""
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            text = message["content"]

    tokens = 0
    usage = data.get("usage")
    if isinstance(usage, dict):
        completion_tokens = usage.get("completion_tokens")
        # bool is an int subclass; reject it explicitly
        if isinstance(completion_tokens, int) and not isinstance(completion_tokens, bool) and completion_tokens > 0:
            tokens = completion_tokens

    if tokens == 0:
        tokens = count_words(text)

    return ParsedCompletion(well_formed=True, tokens=tokens, text=text)
