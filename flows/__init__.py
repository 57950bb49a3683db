# ==== PREFECT FLOWS PACKAGE ==== #

"""
Prefect flows for OrderDesk scheduled operations.

This package contains scheduled business process flows:

- payment_reminders_flow: Daily payment reminder sweep
"""

from .payment_reminders_flow import payment_reminders_flow

__all__ = [
    "payment_reminders_flow"
]
