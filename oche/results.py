"""
Reconciliation of scraped DartConnect results with scheduled matches.
"""

import re
import unicodedata
from dataclasses import dataclass, asdict
from difflib import SequenceMatcher
from typing import Any, Dict, Mapping, Optional, Sequence

_NON_ALNUM = re.compile(r"[^a-z0-9 ]+")
_SPACES = re.compile(r"\s+")


@dataclass
class MatchCandidate:
    match_id: Optional[str]
    confidence: float
    notes: str
    swapped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_name(name: Optional[str]) -> str:
    """Lower-case, strip accents and punctuation, collapse whitespace."""
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFKD", name)
    ascii_name = decomposed.encode("ascii", "ignore").decode("ascii").lower()
    return _SPACES.sub(" ", _NON_ALNUM.sub(" ", ascii_name)).strip()


def name_similarity(first: Optional[str], second: Optional[str]) -> float:
    """
    Similarity of two player names between 0 and 1.

    Word order is ignored, so "Smith John" matches "John Smith".
    """
    a, b = normalize_name(first), normalize_name(second)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    direct = SequenceMatcher(None, a, b).ratio()
    sorted_a = " ".join(sorted(a.split()))
    sorted_b = " ".join(sorted(b.split()))
    return max(direct, SequenceMatcher(None, sorted_a, sorted_b).ratio())


def match_players(
    player1_name: str,
    player2_name: str,
    matches: Sequence[Mapping[str, Any]],
    players: Mapping[str, Mapping[str, Any]],
    threshold: float = 0.6,
) -> MatchCandidate:
    """
    Find the scheduled match the scraped players are playing.

    Only matches that are not completed are considered. Names may be listed
    in either order on DartConnect.

    @param player1_name: First name shown on the DartConnect page
    @param player2_name: Second name shown on the DartConnect page
    @param matches: Tournament matches
    @param players: Player id -> player record
    @param threshold: Lowest per-player similarity accepted (0-1)
    @return: Best MatchCandidate, match_id None when nothing is close enough
    """
    best: Optional[MatchCandidate] = None
    best_score = 0.0

    for match in matches:
        if match.get("status") == "completed":
            continue

        first = players.get(match.get("player1_id"), {}).get("name")
        second = players.get(match.get("player2_id"), {}).get("name")
        if not first or not second:
            continue

        straight = min(
            name_similarity(player1_name, first),
            name_similarity(player2_name, second),
        )
        crossed = min(
            name_similarity(player1_name, second),
            name_similarity(player2_name, first),
        )
        score, swapped = (crossed, True) if crossed > straight else (straight, False)

        if score > best_score:
            best_score = score
            best = MatchCandidate(
                match_id=match["id"],
                confidence=round(score * 100, 1),
                notes=f"Matched {first} vs {second}",
                swapped=swapped,
            )

    if best is None or best_score < threshold:
        return MatchCandidate(
            match_id=None,
            confidence=round(best_score * 100, 1),
            notes=f"No scheduled match found for {player1_name} vs {player2_name}",
        )

    return best
