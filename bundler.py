"""
JSON-RPC clients for the ERC-4337 bundler and the execution node.

The bundler speaks the v0.7 unpacked UserOperation format
(``UserOperation.to_rpc_dict``).  The fee oracle is the bundler's
``pimlico_getUserOperationGasPrice`` extension.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from evm_protocol import GET_NONCE_SELECTOR, UserOperation, encode_hex, normalize_address
from pq_errors import EstimationError, RpcError, SubmissionError, ValidationError

log = logging.getLogger("pq_account.bundler")


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        except ValueError as exc:
            raise ValidationError(f"cannot read integer from {value!r}") from exc
    raise ValidationError(f"cannot read integer from {value!r}")


@dataclass(frozen=True)
class GasEstimate:
    verification_gas_limit: int
    call_gas_limit: int
    pre_verification_gas: int


@dataclass(frozen=True)
class FeeQuote:
    max_priority_fee_per_gas: int
    max_fee_per_gas: int


@dataclass(frozen=True)
class Receipt:
    """Mined UserOperation as reported by ``eth_getUserOperationReceipt``."""
    user_op_hash: str
    success: bool
    transaction_hash: Optional[str]
    block_number: Optional[int]
    actual_gas_used: int
    actual_gas_cost: int
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_rpc(cls, d: Dict[str, Any]) -> "Receipt":
        inner = d.get("receipt") or {}
        block = inner.get("blockNumber")
        return cls(
            user_op_hash=d.get("userOpHash", ""),
            success=bool(d.get("success", False)),
            transaction_hash=inner.get("transactionHash"),
            block_number=_to_int(block) if block is not None else None,
            actual_gas_used=_to_int(d.get("actualGasUsed", 0)),
            actual_gas_cost=_to_int(d.get("actualGasCost", 0)),
            raw=d,
        )


@dataclass(frozen=True)
class Pending:
    """Receipt polling ran out of time.  Not an error: re-poll later."""
    user_op_hash: str
    waited_seconds: float


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client over HTTP POST."""

    def __init__(self, url: str, timeout: int = 30) -> None:
        self.url = url
        self.timeout = timeout
        self._ids = itertools.count(1)

    def call(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            resp = requests.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RpcError(f"{method}: connection failed: {exc}") from exc

        if resp.status_code != 200:
            raise RpcError(f"{method}: HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise RpcError(f"{method}: response is not JSON") from exc
        if not isinstance(body, dict):
            raise RpcError(f"{method}: expected a JSON-RPC object, got {type(body).__name__}")

        if body.get("error"):
            err = body["error"]
            msg = err.get("message", "unknown error") if isinstance(err, dict) else str(err)
            raise RpcError(f"{method}: {msg}", rpc_error=err)
        return body.get("result")


class BundlerClient(JsonRpcClient):
    """ERC-4337 bundler: estimate, submit, receipt, and fee suggestions."""

    def estimate_user_operation_gas(self, op: UserOperation, entry_point: str) -> GasEstimate:
        try:
            result = self.call("eth_estimateUserOperationGas", [op.to_rpc_dict(), entry_point])
        except RpcError as exc:
            raise EstimationError(str(exc), rpc_error=exc.rpc_error) from exc
        if not isinstance(result, dict) or not result:
            raise EstimationError(f"eth_estimateUserOperationGas returned no estimate: {result!r}")
        try:
            return GasEstimate(
                verification_gas_limit=_to_int(result["verificationGasLimit"]),
                call_gas_limit=_to_int(result["callGasLimit"]),
                pre_verification_gas=_to_int(
                    result.get("preVerificationGas", op.pre_verification_gas)
                ),
            )
        except (KeyError, TypeError, ValidationError) as exc:
            raise EstimationError(f"malformed gas estimate: {result!r}") from exc

    def send_user_operation(self, op: UserOperation, entry_point: str) -> str:
        try:
            user_op_hash = self.call("eth_sendUserOperation", [op.to_rpc_dict(), entry_point])
        except RpcError as exc:
            raise SubmissionError(str(exc), rpc_error=exc.rpc_error) from exc
        if not isinstance(user_op_hash, str) or not user_op_hash:
            raise SubmissionError(
                f"eth_sendUserOperation returned no operation hash: {user_op_hash!r}"
            )
        log.info("UserOperation submitted: %s", user_op_hash)
        return user_op_hash

    def get_user_operation_receipt(self, user_op_hash: str) -> Optional[Receipt]:
        result = self.call("eth_getUserOperationReceipt", [user_op_hash])
        if not result:
            return None
        if not isinstance(result, dict):
            raise RpcError(f"malformed receipt: {result!r}")
        try:
            return Receipt.from_rpc(result)
        except (AttributeError, KeyError, TypeError, ValidationError) as exc:
            raise RpcError(f"malformed receipt: {result!r}") from exc

    def get_user_operation_gas_price(self) -> FeeQuote:
        result = self.call("pimlico_getUserOperationGasPrice", [])
        if not isinstance(result, dict) or "standard" not in result:
            raise RpcError("pimlico_getUserOperationGasPrice returned no price")
        standard = result["standard"]
        try:
            return FeeQuote(
                max_priority_fee_per_gas=_to_int(standard["maxPriorityFeePerGas"]),
                max_fee_per_gas=_to_int(standard["maxFeePerGas"]),
            )
        except (KeyError, TypeError, ValidationError) as exc:
            raise RpcError(f"malformed gas price quote: {standard!r}") from exc


class NodeClient(JsonRpcClient):
    """Execution-layer node: chain id, balances, and the account nonce."""

    def chain_id(self) -> int:
        return _to_int(self.call("eth_chainId", []))

    def get_balance(self, address: str) -> int:
        return _to_int(self.call("eth_getBalance", [normalize_address(address), "latest"]))

    def get_nonce(self, account: str) -> int:
        """``account.getNonce()`` via eth_call."""
        result = self.call("eth_call", [
            {"to": normalize_address(account), "data": encode_hex(GET_NONCE_SELECTOR)},
            "latest",
        ])
        if result in (None, "0x"):
            raise RpcError("getNonce() returned no data (account not deployed?)")
        return _to_int(result)
