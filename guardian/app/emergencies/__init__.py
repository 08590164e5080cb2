"""
emergencies — Emergency lifecycle, participants and live locations.

Sub-modules:
    models              — ORM tables (users, contacts, emergencies, participants, locations, messages)
    store               — Emergency records and creator-only transitions
    participants        — Contact participation rows (idempotent insert, accept/reject)
    locations           — Append-only location trail
    location_validator  — Rejects unusable GPS fixes
    directory           — Read-only contact and user lookups
    service             — Coordination workflow used by the API
"""
