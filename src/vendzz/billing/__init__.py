"""
Vendzz Billing - recurring billing and subscription lifecycle engine.

Subscriptions to tenant products are charged through pluggable payment
gateways by an idempotent billing sweep; gateway webhooks settle
asynchronous charges, and anything that cannot be reconciled
automatically lands in an operator queue.
"""

__version__ = "1.0.0"
__author__ = "Vendzz Team"


def get_version() -> str:
    """Get billing engine version."""
    return __version__


__all__ = ["__version__", "get_version"]
