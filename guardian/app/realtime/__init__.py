"""
realtime — In-process WebSocket room registry.

Sub-modules:
    events  — event names and envelope format
    rooms   — RoomBroadcaster: connection ↔ room membership and emit
"""
