"""
events — Append-only history of device telemetry.

Sub-modules:
    orm    — SQLAlchemy model for the ``device_events`` table
    store  — EventStore implementations (in-memory, PostgreSQL)

Writes are best effort: the alert engine never depends on them.
"""
