"""Contexter local sync & encryption engine.

Modules:
    encryption    — AES-256-GCM envelopes (text + binary), PBKDF2 keys, blind indexes
    base          — Cursor, FetchResult, LocalDataSource / SyncSource ABCs
    upload        — Encrypt-then-upload primitives (JSON batches, multipart files)
    exporters     — SyncSource implementations driven by the scheduler
    scheduler     — Recurring per-service sync with watermarks
    backfill      — Resumable, cancellable historical import
    registry      — Per-process service registry and wiring
    config_loader — Load/validate/reload sync_defaults.yaml
    errors        — Error taxonomy
"""
