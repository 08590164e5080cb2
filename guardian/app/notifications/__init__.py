"""
notifications — Best-effort multi-channel fan-out.

Sub-modules:
    channels/      — Per-channel delivery backends (mobile push, web push, realtime)
    dispatcher     — Fan-out orchestration with per-channel, per-user isolation
    subscriptions  — Device token / web-push subscription storage
    models         — Data structures shared across the system
"""
