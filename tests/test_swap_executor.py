from __future__ import annotations

import asyncio
import unittest
from types import SimpleNamespace

from eth_account import Account

from trading.execution_manager import ExecutionRequest, Intent
from trading.swap_executor import SwapFill, Web3SwapBackend, adverse_slippage_percent
from tests.support import TOKEN_A, ConfigPatchMixin

PRIVATE_KEY = "0x" + "11" * 32
ROUTER = "0x" + "e5" * 20
WETH = "0x" + "f6" * 20


class FakeGateway:
    def __init__(self, *, fill: SwapFill | None = None, balance_wei: int = 0) -> None:
        self.fill = fill
        self.balance_wei = balance_wei
        self.labels: list[str] = []
        self.primary = SimpleNamespace(name="primary")

    async def call(self, fn, *, timeout: float | None = None, label: str = "") -> object:
        self.labels.append(label)
        if self.fill is not None:
            return self.fill
        w3 = SimpleNamespace(eth=SimpleNamespace(get_balance=lambda _addr: self.balance_wei))
        return fn(w3)


class AdverseSlippageTests(unittest.TestCase):
    def test_direction_depends_on_side(self) -> None:
        self.assertAlmostEqual(adverse_slippage_percent(1.0, 1.03, buying=True), 3.0)
        self.assertAlmostEqual(adverse_slippage_percent(1.0, 1.03, buying=False), -3.0)
        self.assertAlmostEqual(adverse_slippage_percent(2.0, 1.9, buying=False), 5.0)
        self.assertEqual(adverse_slippage_percent(0.0, 1.0, buying=True), 0.0)


class Web3SwapBackendTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.wallet = Account.from_key(PRIVATE_KEY).address
        self.patch_cfg(
            LIVE_PRIVATE_KEY=PRIVATE_KEY,
            LIVE_WALLET_ADDRESS=self.wallet,
            LIVE_ROUTER_ADDRESS=ROUTER,
            WETH_ADDRESS=WETH,
            NATIVE_PRICE_FALLBACK_USD=3000.0,
        )

    def test_requires_matching_wallet_and_key(self) -> None:
        self.patch_cfg(LIVE_WALLET_ADDRESS=TOKEN_A)
        with self.assertRaises(ValueError):
            Web3SwapBackend(FakeGateway(), native_price_usd=lambda: 2000.0)

        self.patch_cfg(LIVE_PRIVATE_KEY="")
        with self.assertRaises(ValueError):
            Web3SwapBackend(FakeGateway(), native_price_usd=lambda: 2000.0)

    def test_native_balance_uses_feed_then_fallback(self) -> None:
        gateway = FakeGateway(balance_wei=2 * 10**18)
        backend = Web3SwapBackend(gateway, native_price_usd=lambda: 2000.0)
        self.assertEqual(asyncio.run(backend.native_balance_usd()), 4000.0)

        fallback = Web3SwapBackend(gateway, native_price_usd=lambda: None)
        self.assertEqual(asyncio.run(fallback.native_balance_usd()), 6000.0)
        self.assertEqual(gateway.labels, ["balance", "balance"])

    def test_swap_runs_through_gateway_and_tags_endpoint(self) -> None:
        fill = SwapFill(tx_hash="0xabc", token_amount=50.0, usd_amount=50.0, price_usd=1.0, slippage_percent=0.4)
        gateway = FakeGateway(fill=fill)
        backend = Web3SwapBackend(gateway, native_price_usd=lambda: 2000.0)
        request = ExecutionRequest(intent=Intent.BUY, token_address=TOKEN_A, amount=50.0, expected_price_usd=1.0)

        result = asyncio.run(backend.swap(request, slippage_percent=5.0, priority_fee_gwei=0.02, timeout=10.0))
        self.assertEqual(result.endpoint, "primary")
        self.assertEqual(result.tx_hash, "0xabc")
        self.assertEqual(gateway.labels, ["buy"])


if __name__ == "__main__":
    unittest.main()
