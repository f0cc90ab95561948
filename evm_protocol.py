"""
ERC-4337 v0.7 UserOperation encoding and hashing
Reference: https://eips.ethereum.org/EIPS/eip-4337

The operation hash must match ``EntryPoint.getUserOpHash`` byte for byte:

    inner = keccak256(abi.encode(sender, nonce, keccak(initCode),
                                 keccak(callData), accountGasLimits,
                                 preVerificationGas, gasFees,
                                 keccak(paymasterAndData)))
    hash  = keccak256(abi.encode(inner, entryPoint, chainId))
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

from Crypto.Hash import keccak as _keccak
from eth_abi import encode as abi_encode
from eth_utils import to_checksum_address

from pq_errors import ValidationError

ENTRY_POINT_ADDRESS = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"

_HEX_RE = re.compile(r"[0-9a-fA-F]*")
_UINT128_MAX = (1 << 128) - 1
_UINT256_MAX = (1 << 256) - 1


# ---------------------------------------------------------------------------
# Hex codec
# ---------------------------------------------------------------------------

def decode_hex(value: str, expected_len: Optional[int] = None) -> bytes:
    """Strict hex -> bytes.  Accepts an optional ``0x`` prefix.

    Raises ValidationError on odd length, non-hex characters, or a byte
    length different from ``expected_len``.
    """
    if not isinstance(value, str):
        raise ValidationError(f"expected hex string, got {type(value).__name__}")
    digits = value[2:] if value[:2] in ("0x", "0X") else value
    if len(digits) % 2:
        raise ValidationError(f"odd-length hex string ({len(digits)} digits)")
    if not _HEX_RE.fullmatch(digits):
        raise ValidationError("hex string contains non-hex characters")
    raw = bytes.fromhex(digits)
    if expected_len is not None and len(raw) != expected_len:
        raise ValidationError(
            f"expected {expected_len} bytes, got {len(raw)}"
        )
    return raw


def encode_hex(data: bytes) -> str:
    """bytes -> ``0x``-prefixed lowercase hex.  Inverse of decode_hex."""
    return "0x" + bytes(data).hex()


def keccak256(data: bytes) -> bytes:
    h = _keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


# ---------------------------------------------------------------------------
# Addresses and selectors
# ---------------------------------------------------------------------------

def normalize_address(address: str) -> str:
    """Validate a 20-byte address and return its EIP-55 checksummed form."""
    return to_checksum_address(decode_hex(address, 20))


def address_from_public_key(public_key: bytes) -> str:
    """Ethereum address of an uncompressed secp256k1 key (64 B, or 65 B with 0x04)."""
    if len(public_key) == 65 and public_key[0] == 0x04:
        public_key = public_key[1:]
    if len(public_key) != 64:
        raise ValidationError(
            f"uncompressed public key must be 64 bytes, got {len(public_key)}"
        )
    return to_checksum_address(keccak256(public_key)[-20:])


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256 of a canonical function signature."""
    return keccak256(signature.encode())[:4]


EXECUTE_SELECTOR = function_selector("execute(address,uint256,bytes)")
GET_NONCE_SELECTOR = function_selector("getNonce()")


def encode_execute_call(dest: str, value: int, data: bytes = b"") -> bytes:
    """Calldata for ``account.execute(dest, value, data)``."""
    if value < 0:
        raise ValidationError("value cannot be negative")
    return EXECUTE_SELECTOR + abi_encode(
        ["address", "uint256", "bytes"],
        [decode_hex(dest, 20), value, bytes(data)],
    )


# ---------------------------------------------------------------------------
# uint128 pairs
# ---------------------------------------------------------------------------

def pack_uint128(high: int, low: int) -> bytes:
    """``bytes32(abi.encodePacked(uint128(high), uint128(low)))``."""
    for v in (high, low):
        if not 0 <= v <= _UINT128_MAX:
            raise ValidationError(f"{v} does not fit in uint128")
    return high.to_bytes(16, "big") + low.to_bytes(16, "big")


def unpack_uint128(packed: bytes) -> Tuple[int, int]:
    if len(packed) != 32:
        raise ValidationError(f"packed uint128 pair must be 32 bytes, got {len(packed)}")
    return int.from_bytes(packed[:16], "big"), int.from_bytes(packed[16:], "big")


def uint256_bytes(value: int) -> bytes:
    if not 0 <= value <= _UINT256_MAX:
        raise ValidationError(f"{value} does not fit in uint256")
    return value.to_bytes(32, "big")


# ---------------------------------------------------------------------------
# ECDSA signature container
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ECDSASignature:
    """secp256k1 signature in Ethereum ``r || s || v`` form (v is 27 or 28)."""
    r: bytes
    s: bytes
    v: int

    def __post_init__(self) -> None:
        if len(self.r) != 32 or len(self.s) != 32:
            raise ValidationError("r and s must be 32 bytes each")
        if self.v in (0, 1):
            object.__setattr__(self, "v", self.v + 27)
        if self.v not in (27, 28):
            raise ValidationError(f"invalid recovery id v={self.v}")

    @property
    def recovery_id(self) -> int:
        return self.v - 27

    @property
    def serialized(self) -> bytes:
        """65-byte ``r || s || v``."""
        return self.r + self.s + bytes([self.v])

    @classmethod
    def from_bytes(cls, data: bytes) -> "ECDSASignature":
        if len(data) != 65:
            raise ValidationError(f"ECDSA signature must be 65 bytes, got {len(data)}")
        return cls(r=bytes(data[:32]), s=bytes(data[32:64]), v=data[64])


# ---------------------------------------------------------------------------
# UserOperation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UserOperation:
    """Packed ERC-4337 v0.7 user operation.

    ``account_gas_limits`` packs (verificationGasLimit, callGasLimit) and
    ``gas_fees`` packs (maxPriorityFeePerGas, maxFeePerGas), each as two
    big-endian uint128 halves.
    """
    sender: str
    nonce: int
    init_code: bytes
    call_data: bytes
    account_gas_limits: bytes
    pre_verification_gas: int
    gas_fees: bytes
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", normalize_address(self.sender))
        if not 0 <= self.nonce <= _UINT256_MAX:
            raise ValidationError("nonce out of uint256 range")
        if not 0 <= self.pre_verification_gas <= _UINT256_MAX:
            raise ValidationError("preVerificationGas out of uint256 range")
        unpack_uint128(self.account_gas_limits)
        unpack_uint128(self.gas_fees)

    # -- gas views ------------------------------------------------------
    @property
    def verification_gas_limit(self) -> int:
        return unpack_uint128(self.account_gas_limits)[0]

    @property
    def call_gas_limit(self) -> int:
        return unpack_uint128(self.account_gas_limits)[1]

    @property
    def max_priority_fee_per_gas(self) -> int:
        return unpack_uint128(self.gas_fees)[0]

    @property
    def max_fee_per_gas(self) -> int:
        return unpack_uint128(self.gas_fees)[1]

    def with_gas(
        self,
        verification_gas_limit: int,
        call_gas_limit: int,
        pre_verification_gas: int,
    ) -> "UserOperation":
        return replace(
            self,
            account_gas_limits=pack_uint128(verification_gas_limit, call_gas_limit),
            pre_verification_gas=pre_verification_gas,
        )

    def with_signature(self, signature: bytes) -> "UserOperation":
        return replace(self, signature=bytes(signature))

    # -- bundler wire format (unpacked v0.7) ----------------------------
    def to_rpc_dict(self) -> Dict[str, Any]:
        verification_gas, call_gas = unpack_uint128(self.account_gas_limits)
        priority_fee, max_fee = unpack_uint128(self.gas_fees)
        out: Dict[str, Any] = {
            "sender": self.sender,
            "nonce": hex(self.nonce),
            "callData": encode_hex(self.call_data),
            "callGasLimit": hex(call_gas),
            "verificationGasLimit": hex(verification_gas),
            "preVerificationGas": hex(self.pre_verification_gas),
            "maxFeePerGas": hex(max_fee),
            "maxPriorityFeePerGas": hex(priority_fee),
            "signature": encode_hex(self.signature),
        }
        if self.init_code:
            out["factory"] = to_checksum_address(self.init_code[:20])
            out["factoryData"] = encode_hex(self.init_code[20:])
        if self.paymaster_and_data:
            pm = self.paymaster_and_data
            out["paymaster"] = to_checksum_address(pm[:20])
            out["paymasterVerificationGasLimit"] = hex(int.from_bytes(pm[20:36], "big"))
            out["paymasterPostOpGasLimit"] = hex(int.from_bytes(pm[36:52], "big"))
            out["paymasterData"] = encode_hex(pm[52:])
        return out

    # -- persistence ----------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "nonce": self.nonce,
            "initCode": encode_hex(self.init_code),
            "callData": encode_hex(self.call_data),
            "accountGasLimits": encode_hex(self.account_gas_limits),
            "preVerificationGas": self.pre_verification_gas,
            "gasFees": encode_hex(self.gas_fees),
            "paymasterAndData": encode_hex(self.paymaster_and_data),
            "signature": encode_hex(self.signature),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UserOperation":
        return cls(
            sender=d["sender"],
            nonce=int(d["nonce"]),
            init_code=decode_hex(d.get("initCode", "0x")),
            call_data=decode_hex(d["callData"]),
            account_gas_limits=decode_hex(d["accountGasLimits"], 32),
            pre_verification_gas=int(d["preVerificationGas"]),
            gas_fees=decode_hex(d["gasFees"], 32),
            paymaster_and_data=decode_hex(d.get("paymasterAndData", "0x")),
            signature=decode_hex(d.get("signature", "0x")),
        )


# ---------------------------------------------------------------------------
# Operation hash
# ---------------------------------------------------------------------------

def packed_fields(op: UserOperation) -> Tuple[bytes, bytes, bytes, bytes, bytes, bytes]:
    """The six 32-byte words that follow (sender, nonce) in the inner hash.

    Order: keccak(initCode), keccak(callData), accountGasLimits,
    preVerificationGas, gasFees, keccak(paymasterAndData).  The device
    clear-signing flow sends exactly these words.
    """
    return (
        keccak256(op.init_code),
        keccak256(op.call_data),
        op.account_gas_limits,
        uint256_bytes(op.pre_verification_gas),
        op.gas_fees,
        keccak256(op.paymaster_and_data),
    )


def user_operation_hash(op: UserOperation, entry_point: str, chain_id: int) -> bytes:
    """32-byte hash that both the ECDSA and the PQ key sign."""
    init_hash, call_hash, gas_limits, _, gas_fees, pm_hash = packed_fields(op)
    inner = keccak256(abi_encode(
        ["address", "uint256", "bytes32", "bytes32",
         "bytes32", "uint256", "bytes32", "bytes32"],
        [
            decode_hex(op.sender, 20),
            op.nonce,
            init_hash,
            call_hash,
            gas_limits,
            op.pre_verification_gas,
            gas_fees,
            pm_hash,
        ],
    ))
    if chain_id < 0:
        raise ValidationError("chain id cannot be negative")
    return keccak256(abi_encode(
        ["bytes32", "address", "uint256"],
        [inner, decode_hex(entry_point, 20), chain_id],
    ))
