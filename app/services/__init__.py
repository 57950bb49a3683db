# ==== SERVICES PACKAGE ==== #

"""
Services package for business logic and external integrations.

This package contains the OrderDesk core services: the order state
machine, order tax application, invoice management, payment reminders,
payment reconciliation, outbound notifications and the audit sink.
"""
