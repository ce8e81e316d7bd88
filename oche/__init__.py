"""
Oche - A desk for running local darts tournaments.

This package provides:
- Group draws with balanced sizes, board allocation and round-robin schedules
- Standings with configurable points and tiebreakers
- Seeded knockout brackets fed by the group stage
- Registration, group assignment and board call emails
- DartConnect scraping with automatic result matching and live score channels
- Process control servers for the scraper chain
"""

from .config import DeskConfig
from .database import DatabaseManager
from .desk import TournamentDesk
from .live import LiveHub, LivePublisher
from .mailer import TournamentMailer
from .supervisor import ProcessSupervisor

__version__ = "1.0.0"
__author__ = "Oche Contributors"

__all__ = [
    "DeskConfig",
    "DatabaseManager",
    "TournamentDesk",
    "LiveHub",
    "LivePublisher",
    "TournamentMailer",
    "ProcessSupervisor",
]
