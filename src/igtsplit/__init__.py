"""igtsplit: in-game timer splits from speedrun recordings."""

__version__ = "0.1.0"
