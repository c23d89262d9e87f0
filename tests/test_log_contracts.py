from __future__ import annotations

import json
import os
import tempfile
import unittest

from utils import log_contracts


class LogContractsTests(unittest.TestCase):
    def test_entry_event_adds_schema_and_reason_code(self) -> None:
        row = log_contracts.entry_decision_event(
            {
                "book": "paper",
                "stage": "entry",
                "decision": "reject",
                "reason": "dip too shallow",
                "token_address": "0x1111111111111111111111111111111111111111",
                "conviction": 61.236,
                "threshold": 70,
            },
            run_tag="run_a",
        )
        self.assertEqual(row["schema_name"], log_contracts.SCHEMA_ENTRY_DECISION)
        self.assertEqual(row["schema_version"], log_contracts.LOG_SCHEMA_VERSION)
        self.assertEqual(row["run_tag"], "run_a")
        self.assertTrue(str(row.get("decision_id", "")).startswith("dec_"))
        self.assertEqual(row["reason_code"], "ENTRY_DIP_TOO_SHALLOW")
        self.assertEqual(row["reason_category"], "entry")
        self.assertEqual(row["conviction"], 61.24)

    def test_explicit_reason_code_wins(self) -> None:
        row = log_contracts.entry_decision_event(
            {"stage": "entry", "reason": "execution failed", "reason_code": "exec_retries_exhausted"}
        )
        self.assertEqual(row["reason_code"], "EXEC_RETRIES_EXHAUSTED")
        self.assertEqual(row["reason_severity"], "WARN")

    def test_unmapped_reason_falls_back_to_stage_prefix(self) -> None:
        self.assertEqual(log_contracts.reason_code_for_event(reason="Odd thing!", stage="exit"), "EXIT_ODD_THING")
        self.assertEqual(log_contracts.reason_code_for_event(reason="holders_unverifiable", stage="safety"), "SAFETY_UNVERIFIABLE")
        self.assertEqual(log_contracts.reason_code_for_event(reason=""), "UNKNOWN")
        self.assertEqual(log_contracts.reason_code_meta("EXIT_ODD_THING")["category"], "unknown")

    def test_exit_event_and_append(self) -> None:
        row = log_contracts.exit_decision_event(
            {"stage": "exit", "reason": "take profit", "position_id": "p1", "sold_amount": "20"},
        )
        self.assertEqual(row["reason_code"], "EXIT_TAKE_PROFIT")
        self.assertEqual(row["sold_amount"], 20.0)

        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "decisions.jsonl")
            log_contracts.append_event(path, row)
            log_contracts.append_event(path, row)
            with open(path, "r", encoding="utf-8") as f:
                lines = [json.loads(line) for line in f]
        self.assertEqual(len(lines), 2)
        self.assertEqual(lines[0]["position_id"], "p1")


if __name__ == "__main__":
    unittest.main()
