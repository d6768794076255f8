import math
from collections.abc import Iterable
from typing import Union

# Conservative: one token per three characters.
CHARS_PER_TOKEN = 3
# Inline payloads arrive base64-encoded, ~4/3 the size of the underlying bytes.
INLINE_DATA_WEIGHT = 0.75

Part = Union[str, bytes, dict]


def _part_chars(part: Part) -> float:
    if isinstance(part, str):
        return len(part)
    if isinstance(part, (bytes, bytearray)):
        return len(part) * INLINE_DATA_WEIGHT
    if isinstance(part, dict):
        chars = float(len(part.get("text") or ""))
        inline = part.get("inlineData") or part.get("inline_data")
        if inline:
            chars += len(inline.get("data") or "") * INLINE_DATA_WEIGHT
        # Gemini-style content entries nest their parts
        for nested in part.get("parts") or ():
            chars += _part_chars(nested)
        return chars
    raise TypeError(f"cannot estimate tokens for {type(part).__name__}")


def estimate_tokens(contents: Union[Part, Iterable[Part], None]) -> int:
    """Rough request size in tokens for quota bookkeeping before the real count is known.

    Accepts a string, raw bytes, a Gemini content/part dict, or an iterable of those.
    """
    if contents is None:
        return 0
    if isinstance(contents, (str, bytes, bytearray, dict)):
        contents = [contents]
    total = sum(_part_chars(p) for p in contents)
    return math.ceil(total / CHARS_PER_TOKEN)
