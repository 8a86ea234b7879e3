"""Nightshift: queue coding tasks for CLI AI agents and review the results."""

__version__ = "0.1.0"
