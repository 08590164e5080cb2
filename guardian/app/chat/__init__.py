"""
chat — Per-emergency messaging.

Sub-modules:
    service     — Validate, authorize, persist then broadcast
    rate_limit  — Per-sender message throttling (memory or Redis)
"""
