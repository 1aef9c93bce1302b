"""
Subscription and license entitlement engine.

Decides whether a user or license holder may place a trade right now, under
which plan and limits, and manages the license codes and keys that unlock
paid plans.
"""

__version__ = "1.0.0"
