"""Exception types shared by the trading core and the control API."""

from __future__ import annotations


class TradingError(Exception):
    """Base error carrying a machine-readable reason code."""

    code = "TRADING_ERROR"
    http_status = 500

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message or self.code)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.code

    def to_dict(self) -> dict[str, object]:
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(TradingError):
    code = "VALIDATION_FAILED"
    http_status = 400


class NotFoundError(TradingError):
    code = "NOT_FOUND"
    http_status = 404


class SafetyRejection(TradingError):
    code = "SAFETY_REJECTED"
    http_status = 422


class ExecutionError(TradingError):
    code = "EXEC_FAILED"
    http_status = 502


class SlippageExceeded(ExecutionError):
    code = "EXEC_SLIPPAGE_EXCEEDED"

    def __init__(self, message: str = "", *, expected: float = 0.0, actual: float = 0.0, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.expected = float(expected)
        self.actual = float(actual)


class RpcError(ExecutionError):
    code = "RPC_ERROR"
    http_status = 503


class ControlError(TradingError):
    code = "CONTROL_REJECTED"
    http_status = 409
