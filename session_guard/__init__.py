"""Session Guard: autonomous enforcement of time-boxed, loss-limited trading sessions."""

__version__ = "0.1.0"
