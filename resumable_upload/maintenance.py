from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from resumable_upload.logs import audit_event, engine_event
from resumable_upload.metrics import sessions_collected_total
from resumable_upload.registry import SessionRegistry
from resumable_upload.storage import ChunkStorage


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def cleanup_once(registry: SessionRegistry, storage: ChunkStorage, ttl_seconds: int) -> dict[str, int]:
    inactive_before = _utc_now() - timedelta(seconds=ttl_seconds)
    storage_errors = 0

    stale_deleted = 0
    for session_id in registry.stale_session_ids(inactive_before):
        # Metadata goes first and only if still idle and unlocked, so a finalize that
        # grabbed the lock after the scan keeps its session.
        if not registry.delete_if_stale(session_id, inactive_before):
            continue
        stale_deleted += 1
        sessions_collected_total.inc()
        audit_event({"action": "session_collected", "session_id": session_id})
        try:
            storage.purge(session_id)
        except Exception as exc:
            storage_errors += 1
            engine_event(
                {"event": "purge_failed", "session_id": session_id, "detail": str(exc), "error_class": "maintenance_error"},
                logging.WARNING,
            )

    orphan_deleted = 0
    try:
        # List the store before the registry: a session created in between is then
        # either missing from this listing or present in the registry.
        namespaces = storage.list_session_ids()
        known = registry.session_ids()
    except Exception as exc:
        storage_errors += 1
        engine_event(
            {"event": "orphan_scan_failed", "detail": str(exc), "error_class": "maintenance_error"},
            logging.WARNING,
        )
        namespaces, known = set(), set()

    for session_id in sorted(namespaces - known):
        try:
            storage.purge(session_id)
            orphan_deleted += 1
        except Exception as exc:
            storage_errors += 1
            engine_event(
                {"event": "purge_failed", "session_id": session_id, "detail": str(exc), "error_class": "maintenance_error"},
                logging.WARNING,
            )

    stats = {
        "stale_sessions_deleted": stale_deleted,
        "orphan_namespaces_deleted": orphan_deleted,
        "storage_errors": storage_errors,
    }
    engine_event({"event": "cleanup_completed", **stats})
    return stats
