from __future__ import annotations

import dataclasses
import unittest
from datetime import datetime, timezone

from utils.audit_log import REDACTED, AuditLog, compute_checksum, redact
from tests.support import memory_store


class FailingStore:
    def append_audit(self, row: dict) -> None:
        raise OSError("disk full")


class AuditLogTests(unittest.TestCase):
    def test_entry_checksum_detects_tampering(self) -> None:
        audit = AuditLog(None)
        entry = audit.record("pause", {"reason": "maintenance"}, actor="ops@api:abcd")
        self.assertTrue(entry.verify())
        self.assertEqual(entry.status, "success")

        tampered = dataclasses.replace(entry, details={"reason": "other"})
        self.assertFalse(tampered.verify())

    def test_checksum_is_stable_over_key_order(self) -> None:
        ts = "2026-01-01T00:00:00+00:00"
        self.assertEqual(
            compute_checksum("kill", {"a": 1, "b": 2}, ts),
            compute_checksum("kill", {"b": 2, "a": 1}, ts),
        )

    def test_sensitive_fields_are_redacted(self) -> None:
        payload = {"api": {"api_keys": ["k1"], "port": 8081}, "private_key": "0xabc", "rows": [{"secret": "s"}]}
        clean = redact(payload)
        self.assertEqual(clean["api"]["api_keys"], REDACTED)
        self.assertEqual(clean["api"]["port"], 8081)
        self.assertEqual(clean["private_key"], REDACTED)
        self.assertEqual(clean["rows"][0]["secret"], REDACTED)

        entry = AuditLog(None).record("settings_update", payload)
        self.assertEqual(entry.details["private_key"], REDACTED)
        self.assertTrue(entry.verify())

    def test_store_failure_goes_to_fallback_channel(self) -> None:
        audit = AuditLog(FailingStore())
        with self.assertLogs("audit_fallback", level="ERROR") as logs:
            entry = audit.record("kill", {"reason": "test"}, status="failed")
        self.assertIsNotNone(entry)
        self.assertEqual(audit.write_failures, 1)
        self.assertIn("AUDIT_WRITE_FAILED", logs.output[0])
        self.assertIn('"action":"kill"', logs.output[0])

    def test_recent_filters_by_action(self) -> None:
        audit = AuditLog(None)
        audit.record("pause")
        audit.record("resume")
        audit.record("pause")
        self.assertEqual(len(audit.recent(action="pause")), 2)
        self.assertEqual([e.action for e in audit.recent(limit=1)], ["pause"])

    def test_entries_persist_and_verify_from_store(self) -> None:
        store = memory_store()
        fixed = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        audit = AuditLog(store, clock=lambda: fixed)
        audit.record("blacklist_add", {"address": "0x" + "ab" * 20}, actor="ops@api:1234")
        rows = store.list_audit(action="blacklist_add")
        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row["timestamp"], fixed.isoformat())
        self.assertEqual(row["checksum"], compute_checksum(row["action"], row["details"], row["timestamp"]))


if __name__ == "__main__":
    unittest.main()
