"""Subscription lifecycle service: plan changes, pauses, perks and gateway reconciliation."""

__version__ = "1.0.0"
