"""
alerts — Device alert state machine and SMS / call escalation.

Sub-modules:
    channels/       — Telephony backends (simulation, Twilio)
    alert_engine    — Per-event classification and escalation
    call_outcome    — Call-status callbacks → call lock
    ingest          — Normalisation of loose device payloads
    state_store     — Per-device state behind per-device locks
    models          — Data structures shared across the system
"""
