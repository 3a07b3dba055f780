"""Briefings: calendar sync and analyst briefing discovery."""

__version__ = "0.1.0"
