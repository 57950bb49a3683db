# ==== BUSINESS LOGIC PACKAGE ==== #

"""
Business logic package for domain rules and policies.

This package contains the pure, I/O-free rules of the order lifecycle:
the error taxonomy, the order status state table, the jurisdiction tax
engine and the clock abstraction used to decide what "today" is.
"""
