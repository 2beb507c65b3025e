"""
alerts — Citizen flood alert lifecycle and sync engine.

Sub-modules:
    models          — Data structures shared across the system
    rows            — Row decoding/encoding at the store boundary
    store           — AlertStore contract + in-memory implementation
    sql_store       — Async SQLAlchemy AlertStore
    change_feed     — "Something changed" notifications (local / Redis)
    identity        — Reporter identities, phone canonicalisation, tokens
    guards          — Per-identity quota and duplicate detection
    evidence        — Photo evidence attachment
    lifecycle       — State machine: create, lazy expiry, resolve, renew
    sync            — Coalesced push + poll refresh of viewer lists
    report_service  — Submission and "my alerts" flows
"""
