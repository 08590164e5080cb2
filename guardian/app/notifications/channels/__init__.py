"""
channels — Per-channel delivery backends.

Each channel module exposes:
    async send(notification, recipient, ...) → DeliveryAttempt

Channels catch their own errors and report them in the attempt; they never
raise. Fan-out and isolation live in the dispatcher.
"""
