"""Pre-limit hedged order bot for periodic Up/Down prediction markets."""

__version__ = "0.1.0"
