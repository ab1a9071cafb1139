"""Time-gated raffle backend driven by an external randomness coordinator."""

__version__ = "0.1.0"
