"""
Parsing of DartConnect TV pages.

Match history pages are turned into MatchSnapshot objects carrying the
full statistics line of both players; live pages into the small score dict
that is broadcast to the display screens.
"""

import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

_INT_RE = re.compile(r"\s*([-+]?\d+)")
_FLOAT_RE = re.compile(r"\s*([-+]?\d+(?:\.\d+)?)")
_CHECKOUT_RE = re.compile(r"(\d+)/(\d+)")

STANDARD_START = 501


def _text(soup: BeautifulSoup, selector: str) -> Optional[str]:
    element = soup.select_one(selector)
    return element.get_text().strip() if element is not None else None


def _parse_int(text: Optional[str]) -> Optional[int]:
    match = _INT_RE.match(text or "")
    return int(match.group(1)) if match else None


def _parse_float(text: Optional[str]) -> Optional[float]:
    match = _FLOAT_RE.match(text or "")
    return float(match.group(1)) if match else None


def parse_checkout(text: Optional[str]) -> Tuple[int, int, Optional[float]]:
    """
    Parse a checkout line such as "5/12".

    @param text: Element text
    @return: (completed, attempts, percentage); percentage is None when the
        text has no checkout figures and 0 when there were no attempts
    """
    match = _CHECKOUT_RE.search(text or "")
    if not match:
        return 0, 0, None

    completed, attempts = int(match.group(1)), int(match.group(2))
    percentage = round(completed / attempts * 100, 2) if attempts else 0.0
    return completed, attempts, percentage


def estimate_darts_thrown(average: Optional[float], legs: int) -> Optional[int]:
    """Rough darts count from a three-dart average, assuming 501 per leg won."""
    if not average or legs <= 0:
        return None
    return round(STANDARD_START * legs / average * 3)


@dataclass
class PlayerLine:
    name: str
    legs: int = 0
    sets: int = 0
    average: Optional[float] = None
    first_9_average: Optional[float] = None
    highest_checkout: Optional[int] = None
    checkout_attempts: int = 0
    checkouts_completed: int = 0
    checkout_percentage: Optional[float] = None
    one_eighties: int = 0
    plus_100: int = 0
    plus_120: int = 0
    plus_140: int = 0
    plus_160: int = 0
    ton_plus_finishes: int = 0
    darts_thrown: Optional[int] = None

    def columns(self, prefix: str) -> Dict[str, Any]:
        """Flatten to pending_match_results column names, e.g. player1_legs."""
        return {
            f"{prefix}_name": self.name,
            f"{prefix}_legs": self.legs,
            f"{prefix}_sets": self.sets,
            f"{prefix}_average": self.average,
            f"{prefix}_first_9_average": self.first_9_average,
            f"{prefix}_highest_checkout": self.highest_checkout,
            f"{prefix}_checkout_attempts": self.checkout_attempts,
            f"{prefix}_checkouts_completed": self.checkouts_completed,
            f"{prefix}_checkout_percentage": self.checkout_percentage,
            f"{prefix}_180s": self.one_eighties,
            f"{prefix}_100_plus": self.plus_100,
            f"{prefix}_120_plus": self.plus_120,
            f"{prefix}_140_plus": self.plus_140,
            f"{prefix}_160_plus": self.plus_160,
            f"{prefix}_ton_plus_finishes": self.ton_plus_finishes,
            f"{prefix}_darts_thrown": self.darts_thrown,
        }


@dataclass
class MatchSnapshot:
    player1: PlayerLine
    player2: PlayerLine
    is_complete: bool = False
    winner_name: Optional[str] = None

    def score_key(self) -> Tuple[int, int, int, int, bool]:
        """The fields whose change counts as a match update."""
        return (
            self.player1.legs,
            self.player2.legs,
            self.player1.sets,
            self.player2.sets,
            self.is_complete,
        )

    @property
    def total_legs(self) -> int:
        return self.player1.legs + self.player2.legs

    def columns(self) -> Dict[str, Any]:
        data = self.player1.columns("player1")
        data.update(self.player2.columns("player2"))
        return data

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_winner(
    player1: PlayerLine,
    player2: PlayerLine,
) -> Optional[str]:
    """
    Winner of a finished match: sets decide when any set was won, else legs.

    @return: Winning player name, None on a level score
    """
    if player1.sets > 0 or player2.sets > 0:
        first, second = player1.sets, player2.sets
    else:
        first, second = player1.legs, player2.legs

    if first > second:
        return player1.name
    if second > first:
        return player2.name
    return None


def _stat(soup: BeautifulSoup, player: str, selectors: List[str]) -> Optional[str]:
    return _text(soup, ", ".join(s.format(p=player) for s in selectors))


def _player_line(soup: BeautifulSoup, player: str, name: str) -> PlayerLine:
    """Extract one player's statistics; player is "player1" or "player2"."""
    number = player[-1]

    def count(*selectors: str) -> int:
        return _parse_int(_stat(soup, player, list(selectors))) or 0

    line = PlayerLine(name=name)
    line.legs = count(
        ".{p}-legs",
        f".player-{number}-score",
        '[class*="{p}"] [class*="legs"]',
    )
    line.sets = count(".{p}-sets", '[class*="{p}"] [class*="sets"]')
    line.average = _parse_float(
        _stat(soup, player, [".{p}-average", '[class*="{p}"] [class*="average"]'])
    ) or None
    line.first_9_average = _parse_float(
        _stat(
            soup,
            player,
            [
                ".{p}-first9",
                '[class*="{p}"] [class*="first-9"]',
                '[class*="{p}"] [class*="first9"]',
            ],
        )
    ) or None

    checkout_text = _stat(
        soup, player, [".{p}-checkout", '[class*="{p}"] [class*="checkout"]']
    )
    (
        line.checkouts_completed,
        line.checkout_attempts,
        line.checkout_percentage,
    ) = parse_checkout(checkout_text)

    line.highest_checkout = _parse_int(
        _stat(
            soup,
            player,
            [".{p}-highest-checkout", '[class*="{p}"] [class*="high-checkout"]'],
        )
    ) or None
    line.one_eighties = count(".{p}-180s", '[class*="{p}"] [class*="180"]')
    line.plus_100 = count(".{p}-100plus", '[class*="{p}"] [data-stat="100plus"]')
    line.plus_120 = count(".{p}-120plus", '[class*="{p}"] [data-stat="120plus"]')
    line.plus_140 = count(".{p}-140plus", '[class*="{p}"] [data-stat="140plus"]')
    line.plus_160 = count(".{p}-160plus", '[class*="{p}"] [data-stat="160plus"]')
    line.ton_plus_finishes = count(
        ".{p}-ton-plus-finish", '[class*="{p}"] [data-stat="ton-plus"]'
    )
    line.darts_thrown = _parse_int(
        _stat(soup, player, [".{p}-darts-thrown", '[class*="{p}"] [data-stat="darts"]'])
    ) or estimate_darts_thrown(line.average, line.legs)

    return line


def _is_complete(soup: BeautifulSoup) -> bool:
    element = soup.select_one('.match-status, [class*="status"], [class*="complete"]')
    if element is None:
        return False
    text = element.get_text().lower()
    return (
        "complete" in text
        or "finished" in text
        or "completed" in (element.get("class") or [])
    )


def parse_match_page(html: str) -> Optional[MatchSnapshot]:
    """
    Parse a DartConnect match history page.

    @param html: Rendered page HTML
    @return: MatchSnapshot, None until both player names are on the page
    """
    soup = BeautifulSoup(html, "html.parser")

    names = []
    for player in ("player1", "player2"):
        name = _stat(
            soup,
            player,
            [
                ".{p}-name",
                f".player-{player[-1]}-name",
                '[class*="{p}"] [class*="name"]',
            ],
        )
        if not name:
            return None
        names.append(name)

    snapshot = MatchSnapshot(
        player1=_player_line(soup, "player1", names[0]),
        player2=_player_line(soup, "player2", names[1]),
        is_complete=_is_complete(soup),
    )
    if snapshot.is_complete:
        snapshot.winner_name = resolve_winner(snapshot.player1, snapshot.player2)

    return snapshot


def _first_text(soup: BeautifulSoup, selectors: List[str], default: str) -> str:
    for selector in selectors:
        text = _text(soup, selector)
        if text:
            return text
    return default


def _live_selectors(field_name: str, number: int) -> List[str]:
    return [
        f"#p{number}_{field_name}",
        f".player-{number}-{field_name}",
        f".{field_name}-{number}",
        f'[data-player="{number}"] .{field_name}',
        f".player{number} .{field_name}",
    ]


def parse_live_page(html: str) -> Dict[str, Any]:
    """
    Parse a DartConnect live scoreboard page.

    @param html: Rendered page HTML
    @return: {"player1": {...}, "player2": {...}, "match": {...}}
    """
    soup = BeautifulSoup(html, "html.parser")
    data: Dict[str, Any] = {}

    for number in (1, 2):
        active = soup.select_one(
            f'.player{number}.active, [data-player="{number}"].active, '
            f".p{number}.active"
        )
        data[f"player{number}"] = {
            "name": _first_text(soup, _live_selectors("name", number), f"Player {number}"),
            "score": _first_text(soup, _live_selectors("score", number), "501"),
            "legs": _first_text(soup, _live_selectors("legs", number), "0"),
            "isActive": active is not None,
        }

    data["match"] = {
        "format": _text(soup, ".match-format, .game-format, .format") or "",
        "currentLeg": _text(soup, ".current-leg, .leg-number") or "1",
        "lastThrow": _text(soup, ".last-throw, .current-throw, .dart-score, .throw-score")
        or "",
    }
    return data


def has_changed(
    previous: Optional[Dict[str, Any]],
    current: Dict[str, Any],
) -> bool:
    """Compare two live payloads, ignoring their timestamps."""
    if not previous:
        return True

    def strip(payload: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in payload.items() if k != "timestamp"}

    return strip(previous) != strip(current)
