"""
Player name formatting.
"""

import re
from typing import Optional

_WHITESPACE = re.compile(r"(\s+)")


def _capitalize_word(word: str) -> str:
    return word[:1].upper() + word[1:]


def capitalize_player_name(name: Optional[str]) -> str:
    """
    Capitalize every word of a player name.

    Hyphenated and apostrophe parts are capitalized separately, so
    "mary-jane o'brien" becomes "Mary-Jane O'Brien". Inner whitespace is kept.

    @param name: Raw name as typed at registration
    @return: Display name, empty string for empty input
    """
    if not name:
        return ""

    parts = _WHITESPACE.split(name.strip().lower())
    formatted = []

    for word in parts:
        if not word or word.isspace():
            formatted.append(word)
        elif "-" in word:
            formatted.append("-".join(_capitalize_word(p) for p in word.split("-")))
        elif "'" in word:
            formatted.append("'".join(_capitalize_word(p) for p in word.split("'")))
        else:
            formatted.append(_capitalize_word(word))

    return "".join(formatted)
