"""SavoPay Relay: ForumPay crypto payment relay and reconciliation service."""

__version__ = "1.0.0"
