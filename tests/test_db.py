from __future__ import annotations

import time
import unittest

from tests.support import DEPLOYER, TOKEN_A, TOKEN_B, WALLETS, memory_store


class StoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = memory_store()

    def test_blacklist_upsert_is_keyed_by_address_and_kind(self) -> None:
        self.db.upsert_blacklist({"address": TOKEN_A, "kind": "token", "reason": "honeypot", "added_by": "safety"})
        self.db.upsert_blacklist({"address": TOKEN_A, "kind": "token", "reason": "rug", "added_by": "ops"})
        self.db.upsert_blacklist({"address": DEPLOYER, "kind": "deployer", "reason": "serial rugger"})
        rows = {(r["address"], r["kind"]): r for r in self.db.load_blacklist()}
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[(TOKEN_A, "token")]["reason"], "rug")
        self.assertTrue(rows[(TOKEN_A, "token")]["added_at"].endswith("+00:00"))

        self.assertTrue(self.db.remove_blacklist(TOKEN_A))
        self.assertFalse(self.db.remove_blacklist(TOKEN_A))

    def test_wallet_rows(self) -> None:
        self.db.save_wallet({"address": WALLETS[0], "tier": 1, "label": "alpha", "score": 88.0})
        self.db.save_wallet({"address": WALLETS[0], "tier": 2, "label": "alpha", "score": 70.0, "active": False})
        rows = self.db.load_wallets()
        self.assertEqual(len(rows), 1)
        self.assertEqual((rows[0]["tier"], rows[0]["active"]), (2, False))
        self.assertTrue(self.db.remove_wallet(WALLETS[0]))
        self.assertEqual(self.db.load_wallets(), [])

    def test_trades_are_recorded_once_and_filtered_by_book(self) -> None:
        now = time.time()
        base = {
            "position_id": "p1",
            "token_address": TOKEN_A,
            "symbol": "MEME",
            "entry_price": 1.0,
            "exit_price": 1.2,
            "amount": 100.0,
            "entry_time": now - 600,
            "exit_time": now,
            "exit_reason": "TAKE_PROFIT",
            "outcome": "WIN",
            "pnl_usd": 20.0,
            "pnl_percent": 20.0,
            "category_scores": {"smart_wallet": 70.0},
            "features": {"regime": "FULL"},
        }
        self.db.record_trade({**base, "trade_id": "t1", "book": "paper"})
        self.db.record_trade({**base, "trade_id": "t1", "book": "paper"})
        self.db.record_trade({**base, "trade_id": "t2", "book": "live", "token_address": TOKEN_B})
        self.assertEqual(len(self.db.list_trades()), 2)
        paper = self.db.list_trades("paper")
        self.assertEqual([r["trade_id"] for r in paper], ["t1"])
        self.assertEqual(paper[0]["features"], {"regime": "FULL"})

    def test_opportunity_snapshot_round_trip(self) -> None:
        snapshot = {
            "opportunity_id": "o1",
            "token_address": TOKEN_A,
            "symbol": "MEME",
            "status": "REJECTED",
            "reason": "dip too shallow",
            "reason_code": "ENTRY_DIP_TOO_SHALLOW",
            "conviction": 41.5,
            "safety": {"score": 90},
            "created_at": time.time(),
            "resolved_at": time.time(),
        }
        self.db.save_opportunity(snapshot)
        rows = self.db.list_opportunities()
        self.assertEqual(rows[0]["reason_code"], "ENTRY_DIP_TOO_SHALLOW")
        self.assertEqual(rows[0]["safety"], {"score": 90})


if __name__ == "__main__":
    unittest.main()
