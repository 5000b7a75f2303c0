"""PDA logistics core: order assignment, delivery lifecycle, commissions and confirmations."""

__version__ = "1.0.0"
