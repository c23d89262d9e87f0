"""On-chain swap backend for Base (UniswapV2-compatible router) behind the RPC gateway."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable

from eth_account import Account
from web3 import Web3

import config
from utils.errors import ExecutionError, SlippageExceeded, ValidationError

logger = logging.getLogger(__name__)

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactETHForTokensSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "swapExactTokensForETHSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
]


@dataclass(frozen=True)
class SwapFill:
    """Executed swap. `token_amount` is bought or sold tokens, `usd_amount` spent or received."""

    tx_hash: str
    token_amount: float
    usd_amount: float
    price_usd: float
    slippage_percent: float
    fee_usd: float = 0.0
    endpoint: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "token_amount": self.token_amount,
            "usd_amount": round(self.usd_amount, 6),
            "price_usd": self.price_usd,
            "slippage_percent": round(self.slippage_percent, 4),
            "fee_usd": round(self.fee_usd, 6),
            "endpoint": self.endpoint,
        }


def adverse_slippage_percent(expected_price: float, executed_price: float, *, buying: bool) -> float:
    """Positive when execution was worse than expected."""
    if expected_price <= 0 or executed_price <= 0:
        return 0.0
    if buying:
        return (executed_price - expected_price) / expected_price * 100.0
    return (expected_price - executed_price) / expected_price * 100.0


class Web3SwapBackend:
    def __init__(self, gateway: Any, *, native_price_usd: Callable[[], float | None]) -> None:
        if not config.LIVE_PRIVATE_KEY:
            raise ValueError("LIVE_PRIVATE_KEY is empty")
        if not config.LIVE_WALLET_ADDRESS:
            raise ValueError("LIVE_WALLET_ADDRESS is empty")
        if not config.LIVE_ROUTER_ADDRESS:
            raise ValueError("LIVE_ROUTER_ADDRESS is empty")
        if not config.WETH_ADDRESS:
            raise ValueError("WETH_ADDRESS is empty")
        self._gateway = gateway
        self._native_price_usd = native_price_usd
        self.account = Account.from_key(config.LIVE_PRIVATE_KEY)
        self.wallet = Web3.to_checksum_address(config.LIVE_WALLET_ADDRESS)
        if self.account.address.lower() != self.wallet.lower():
            raise ValueError("LIVE_WALLET_ADDRESS does not match LIVE_PRIVATE_KEY")
        self.router_address = Web3.to_checksum_address(config.LIVE_ROUTER_ADDRESS)
        self.weth = Web3.to_checksum_address(config.WETH_ADDRESS)
        self._decimals: dict[str, int] = {}

    def _native_price(self) -> float:
        price = self._native_price_usd() or config.NATIVE_PRICE_FALLBACK_USD
        if not price or price <= 0:
            raise ExecutionError("native price unavailable", code="EXEC_NO_NATIVE_PRICE")
        return float(price)

    async def native_balance_usd(self) -> float:
        wei = await self._gateway.call(lambda w3: w3.eth.get_balance(self.wallet), label="balance")
        return float(Web3.from_wei(wei, "ether")) * self._native_price()

    async def swap(
        self,
        request: Any,
        *,
        slippage_percent: float,
        priority_fee_gwei: float,
        timeout: float,
    ) -> SwapFill:
        fn = partial(
            self._swap_sync,
            buying=request.intent.value == "BUY",
            token_address=request.token_address,
            amount=float(request.amount),
            expected_price=float(request.expected_price_usd or 0.0),
            slippage_percent=float(slippage_percent),
            priority_fee_gwei=float(priority_fee_gwei),
            native_price=self._native_price(),
        )
        fill = await self._gateway.call(fn, timeout=timeout, label=request.intent.value.lower())
        primary = self._gateway.primary
        return SwapFill(**{**fill.__dict__, "endpoint": primary.name if primary else ""})

    def _token_decimals(self, w3: Web3, token: str) -> int:
        if token not in self._decimals:
            contract = w3.eth.contract(address=token, abi=ERC20_ABI)
            dec = int(contract.functions.decimals().call())
            self._decimals[token] = dec if 0 <= dec <= 36 else 18
        return self._decimals[token]

    def _swap_sync(
        self,
        w3: Web3,
        *,
        buying: bool,
        token_address: str,
        amount: float,
        expected_price: float,
        slippage_percent: float,
        priority_fee_gwei: float,
        native_price: float,
    ) -> SwapFill:
        token = w3.to_checksum_address(token_address)
        router = w3.eth.contract(address=self.router_address, abi=ROUTER_ABI)
        token_contract = w3.eth.contract(address=token, abi=ERC20_ABI)
        scale = 10 ** self._token_decimals(w3, token)
        bps = int(round(slippage_percent * 100))

        if buying:
            amount_in = int(w3.to_wei(amount / native_price, "ether"))
            if amount_in <= 0:
                raise ValidationError("buy amount rounds to zero")
            path = [self.weth, token]
        else:
            amount_in = int(amount * scale)
            if amount_in <= 0:
                raise ValidationError("sell amount rounds to zero")
            path = [token, self.weth]

        quoted_out = int(router.functions.getAmountsOut(amount_in, path).call()[-1])
        if quoted_out <= 0:
            raise ExecutionError("router quote is zero", code="EXEC_NO_ROUTE")
        if buying:
            quoted_price = amount / (quoted_out / scale)
        else:
            quoted_price = float(w3.from_wei(quoted_out, "ether")) * native_price / amount
        quoted_slip = adverse_slippage_percent(expected_price, quoted_price, buying=buying)
        if quoted_slip > slippage_percent:
            raise SlippageExceeded(
                f"quote slippage {quoted_slip:.2f}% exceeds {slippage_percent:.2f}%",
                expected=expected_price,
                actual=quoted_price,
            )
        amount_out_min = max(1, int(quoted_out * (10_000 - bps) / 10_000))

        if buying:
            before = int(token_contract.functions.balanceOf(self.wallet).call())
            tx = router.functions.swapExactETHForTokensSupportingFeeOnTransferTokens(
                amount_out_min, path, self.wallet, self._deadline()
            ).build_transaction(self._tx_params(w3, priority_fee_gwei, value_wei=amount_in))
            tx_hash, fee_wei = self._send_and_wait(w3, tx)
            after = int(token_contract.functions.balanceOf(self.wallet).call())
            tokens = max(0, after - before) / scale
            if tokens <= 0:
                raise ExecutionError(f"buy filled zero tokens tx={tx_hash}", code="EXEC_EMPTY_FILL")
            usd = amount
            price = usd / tokens
        else:
            self._ensure_allowance(w3, token_contract, amount_in, priority_fee_gwei)
            before = int(w3.eth.get_balance(self.wallet))
            tx = router.functions.swapExactTokensForETHSupportingFeeOnTransferTokens(
                amount_in, amount_out_min, path, self.wallet, self._deadline()
            ).build_transaction(self._tx_params(w3, priority_fee_gwei))
            tx_hash, fee_wei = self._send_and_wait(w3, tx)
            after = int(w3.eth.get_balance(self.wallet))
            # Balance delta is net of gas; add it back to get swap proceeds.
            received = max(0, after - before + fee_wei)
            tokens = amount
            usd = float(w3.from_wei(received, "ether")) * native_price
            price = usd / tokens if tokens else 0.0

        return SwapFill(
            tx_hash=tx_hash,
            token_amount=tokens,
            usd_amount=usd,
            price_usd=price,
            slippage_percent=adverse_slippage_percent(expected_price, price, buying=buying),
            fee_usd=float(w3.from_wei(fee_wei, "ether")) * native_price,
        )

    def _ensure_allowance(self, w3: Web3, token_contract: Any, required: int, priority_fee_gwei: float) -> None:
        allowance = int(token_contract.functions.allowance(self.wallet, self.router_address).call())
        if allowance >= required:
            return
        approve_tx = token_contract.functions.approve(self.router_address, (2**256) - 1).build_transaction(
            self._tx_params(w3, priority_fee_gwei)
        )
        self._send_and_wait(w3, approve_tx)

    @staticmethod
    def _deadline() -> int:
        return int(time.time()) + int(config.LIVE_SWAP_DEADLINE_SECONDS)

    def _tx_params(self, w3: Web3, priority_fee_gwei: float, value_wei: int = 0) -> dict[str, Any]:
        pending_nonce = w3.eth.get_transaction_count(self.wallet, "pending")
        latest = w3.eth.get_block("latest")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        priority = int(w3.to_wei(max(0.0, float(priority_fee_gwei)), "gwei"))
        cap = int(w3.to_wei(max(0.0, float(config.LIVE_MAX_GAS_GWEI)), "gwei"))
        if cap <= 0:
            cap = int(w3.to_wei(1, "gwei"))
        observed_gas_price = int(w3.eth.gas_price or 0)
        if observed_gas_price > cap:
            raise ExecutionError(
                f"gas price {float(w3.from_wei(observed_gas_price, 'gwei')):.3f} gwei above cap",
                code="EXEC_GAS_TOO_HIGH",
            )
        max_fee = min(cap, max(observed_gas_price, (base_fee * 2) + priority))
        if max_fee <= 0:
            max_fee = min(cap, int(w3.to_wei(1, "gwei")))
        return {
            "from": self.wallet,
            "chainId": int(config.LIVE_CHAIN_ID),
            "nonce": pending_nonce,
            "value": int(value_wei),
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": min(priority, max_fee),
            "type": 2,
        }

    def _send_and_wait(self, w3: Web3, tx: dict[str, Any]) -> tuple[str, int]:
        gas_limit = int(w3.eth.estimate_gas(tx) * 1.15)
        if gas_limit > int(config.LIVE_MAX_SWAP_GAS):
            raise ExecutionError(f"gas estimate {gas_limit} above cap", code="EXEC_GAS_TOO_HIGH")
        tx["gas"] = gas_limit
        balance = int(w3.eth.get_balance(self.wallet))
        worst_cost = (gas_limit * int(tx.get("maxFeePerGas") or 0)) + int(tx.get("value") or 0)
        # Base adds an L1 data fee on top.
        if int(worst_cost * 1.20) > balance:
            raise ExecutionError("insufficient native balance for swap", code="EXEC_INSUFFICIENT_BALANCE")
        signed = self.account.sign_transaction(tx)
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=int(config.LIVE_TX_TIMEOUT_SECONDS))
        if int(receipt.status) != 1:
            raise ExecutionError(f"swap reverted tx={tx_hash.hex()}", code="EXEC_REVERTED")
        fee_wei = int(receipt.get("gasUsed", 0)) * int(receipt.get("effectiveGasPrice", 0))
        return tx_hash.hex(), fee_wei
