# ==== ROUTES PACKAGE ==== #

"""
Routes package for API endpoints.

This package contains the FastAPI route modules for order lifecycle,
invoicing, configuration, payment reminders, manual completion and the
payment-provider webhook of OrderDesk.
"""
