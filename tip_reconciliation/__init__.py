"""Tip payment and staff payout reconciliation over M-Pesa."""

__version__ = "1.0.0"
