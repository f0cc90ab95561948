"""
Hybrid ECDSA + Post-Quantum ERC-4337 Account Signer
===================================================
- secp256k1 ECDSA (libsecp256k1 via coincurve) for the classical half
- NIST FIPS-204 ML-DSA-44 or Falcon-512 for the post-quantum half
- Both halves sign the same ERC-4337 v0.7 UserOperation hash
- Keys in software (seeded, in memory) or on a Ledger secure element
- Two-phase estimate / re-sign pipeline with gas floors for PQ verification
- AES-256-GCM encrypted seed keystore

Dependencies:
    pip install coincurve pqcrypto pycryptodome dilithium-py eth-abi eth-utils requests
    pip install ledgerblue      # optional, hardware signing only

Algorithms:
    ECDSA secp256k1   Ethereum r || s || v, v in {27, 28}
    ML-DSA-44         FIPS 204, Level 2 (pk 1312 B, sig 2420 B)
    Falcon-512        ZKNOX build, Level 1 (pk 1025 B, compact sig 1064 B)

Security Model:
    - The account contract accepts an operation only if *both* signatures
      verify over the same hash.  Breaking one algorithm is not enough.
    - Hybrid signature = abi.encode(bytes ecdsaSig, bytes pqSig).
    - The ML-DSA public key is registered in the verifier's expanded form
      (A_hat, tr, t1_hat), see ``lattice_encoding``.
    - Seeds are never logged.  Only a 4-byte keccak fingerprint is.

Hardware Note:
    The Ledger app keeps the ML-DSA seed on the device.  Falcon is not
    available on the device; hardware signing is ML-DSA-44 only.

Status: Experimental / Research-Grade.
"""

from __future__ import annotations

import ctypes
import json
import logging
import os
import secrets
import time
from base64 import b64decode, b64encode
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Optional, Protocol, Tuple, Union, runtime_checkable

# ---------------------------------------------------------------------------
# PQ Crypto: ML-DSA-44 keygen/sign from a seed (dilithium-py), constant-time
# verification through the PQClean C binding (pqcrypto)
# ---------------------------------------------------------------------------
from dilithium_py.ml_dsa import ML_DSA_44
from pqcrypto.sign import ml_dsa_44

# Symmetric encryption for the keystore
from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt

# Classical half: libsecp256k1
from coincurve import PrivateKey as _Secp256k1PrivateKey
from coincurve import PublicKey as _Secp256k1PublicKey

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode

from bundler import BundlerClient, FeeQuote, GasEstimate, NodeClient, Pending, Receipt
from evm_protocol import (
    ENTRY_POINT_ADDRESS,
    ECDSASignature,
    UserOperation,
    address_from_public_key,
    decode_hex,
    encode_execute_call,
    encode_hex,
    keccak256,
    normalize_address,
    pack_uint128,
    user_operation_hash,
)
from lattice_encoding import (
    FALCON_COMPACT_SIG_BYTES,
    MLDSA44_PK_BYTES,
    compact_falcon_signature,
    expand_mldsa_public_key,
    falcon_signed_message,
)
from ledger_transport import DeviceSession
from pq_errors import EstimationError, ProtocolError, RpcError, ValidationError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
from logging.handlers import RotatingFileHandler

log = logging.getLogger("pq_account")
log.addHandler(logging.NullHandler())


def setup_logging(log_file: str = "pq_account.log") -> None:
    """
    Configure logging with rotating file + console.

    Call once at startup; safe to call multiple times (idempotent).
    """
    if getattr(setup_logging, "_done", False):
        return

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    file_handler = RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5,
    )
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(fmt)
    console_handler.setLevel(logging.WARNING)

    log.addHandler(file_handler)
    log.addHandler(console_handler)
    log.setLevel(logging.INFO)

    setup_logging._done = True  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
FALCON_LIBRARY = os.getenv("PQ_ACCOUNT_FALCON_LIB", "libzknox_falcon.so")
RECEIPT_TIMEOUT = float(os.getenv("PQ_ACCOUNT_RECEIPT_TIMEOUT", "120"))
RECEIPT_INTERVAL = float(os.getenv("PQ_ACCOUNT_RECEIPT_INTERVAL", "3"))

SEED_BYTES = 32
ECDSA_SIG_BYTES = 65
DUMMY_FILL = 0xFF

_EXPLORERS: Dict[int, str] = {
    1: "https://etherscan.io/tx/",
    11155111: "https://sepolia.etherscan.io/tx/",
    421614: "https://sepolia.arbiscan.io/tx/",
    84532: "https://sepolia.basescan.org/tx/",
}


def explorer_tx_url(chain_id: int, tx_hash: str) -> Optional[str]:
    """Block-explorer link for ``tx_hash``, or None for unknown chains."""
    base = _EXPLORERS.get(chain_id)
    return base + tx_hash if base else None


def _require_seed(seed: Union[bytes, str]) -> bytes:
    if isinstance(seed, str):
        return decode_hex(seed, SEED_BYTES)
    if not isinstance(seed, (bytes, bytearray)):
        raise ValidationError(f"seed must be bytes or hex, got {type(seed).__name__}")
    if len(seed) != SEED_BYTES:
        raise ValidationError(f"seed must be {SEED_BYTES} bytes, got {len(seed)}")
    return bytes(seed)


def seed_fingerprint(seed: bytes) -> str:
    """Short identifier safe to log: first 4 bytes of keccak256(seed)."""
    return keccak256(seed)[:4].hex()


# ============================================================
# POST-QUANTUM SCHEMES
# ============================================================

class PQScheme(Enum):
    """Post-quantum algorithms the on-chain verifiers accept."""
    ML_DSA_44  = "ML-DSA-44"    # FIPS 204, hardware and software
    FALCON_512 = "Falcon-512"   # ZKNOX Falcon, software only


# Registry: scheme -> (pk_bytes, sk_bytes, sig_bytes, public-key encoder)
_PQ_REGISTRY: Dict[PQScheme, tuple] = {
    PQScheme.ML_DSA_44:  (MLDSA44_PK_BYTES, 2560, 2420, expand_mldsa_public_key),
    PQScheme.FALCON_512: (1025, 1281, FALCON_COMPACT_SIG_BYTES, bytes),
}


def encode_pq_public_key(scheme: PQScheme, public_key: bytes) -> bytes:
    """Public key in the layout the account's PQ verifier stores.

    ML-DSA-44 keys are expanded; Falcon-512 keys pass through unchanged.
    """
    expected_pk, _, _, encoder = _PQ_REGISTRY[scheme]
    if len(public_key) != expected_pk:
        raise ValidationError(
            f"{scheme.value}: public key must be {expected_pk} B, got {len(public_key)}"
        )
    return encoder(public_key)


# ============================================================
# SIGNER CAPABILITIES
# ============================================================

@runtime_checkable
class ClassicalSigner(Protocol):
    """Signs a 32-byte hash with secp256k1 ECDSA."""

    @property
    def address(self) -> str:
        ...

    def sign(self, digest: bytes) -> ECDSASignature:
        ...


@runtime_checkable
class PostQuantumSigner(Protocol):
    """Signs arbitrary bytes with a lattice scheme."""

    scheme: PQScheme

    @property
    def public_key(self) -> bytes:
        ...

    def sign(self, message: bytes) -> bytes:
        ...


def recover_address(digest: bytes, signature: ECDSASignature) -> str:
    """Address whose key produced ``signature`` over the raw 32-byte ``digest``."""
    pub = _Secp256k1PublicKey.from_signature_and_message(
        signature.r + signature.s + bytes([signature.recovery_id]),
        bytes(digest),
        hasher=None,
    )
    return address_from_public_key(pub.format(compressed=False))


# ============================================================
# ECDSA (SOFTWARE)
# ============================================================

class ECDSAKey:
    """
    secp256k1 key backed by libsecp256k1 (via ``coincurve``).

    The 32-byte seed *is* the secret scalar, so a seed of ``00..01``
    yields the well-known address 0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf.
    Signatures are over the raw hash (no EIP-191 prefix) and are checked
    by public-key recovery before they are returned.
    """

    def __init__(self, seed: Union[bytes, str]) -> None:
        secret = _require_seed(seed)
        try:
            self._sk = _Secp256k1PrivateKey(secret)
        except ValueError as exc:
            raise ValidationError("seed is not a valid secp256k1 secret") from exc
        self._pk: bytes = self._sk.public_key.format(compressed=False)
        self._address = address_from_public_key(self._pk)
        log.debug("ECDSA key %s -> %s", seed_fingerprint(secret), self._address)

    @property
    def address(self) -> str:
        return self._address

    @property
    def public_key(self) -> bytes:
        """65-byte uncompressed SEC1 public key."""
        return self._pk

    def sign(self, digest: bytes) -> ECDSASignature:
        if len(digest) != 32:
            raise ValidationError(
                f"ECDSA sign requires a 32-byte digest, got {len(digest)} bytes"
            )
        raw = self._sk.sign_recoverable(bytes(digest), hasher=None)
        sig = ECDSASignature(r=raw[:32], s=raw[32:64], v=raw[64])
        if recover_address(digest, sig) != self._address:
            raise ProtocolError("ECDSA self-check failed: recovered a different address")
        return sig

    def verify(self, digest: bytes, signature: ECDSASignature) -> bool:
        try:
            return recover_address(digest, signature) == self._address
        except Exception:
            return False


# ============================================================
# ML-DSA-44 (SOFTWARE)
# ============================================================

@dataclass(frozen=True)
class MLDSAKeyPair:
    """
    ML-DSA-44 keypair derived from a 32-byte seed (FIPS 204 KeyGen_internal).

    Signing is deterministic with an empty context string.  Every fresh
    signature is verified through the pqcrypto C binding before it is
    handed out.
    """
    public_key: bytes
    private_key: bytes = field(repr=False)
    scheme: ClassVar[PQScheme] = PQScheme.ML_DSA_44

    def __post_init__(self) -> None:
        expected_pk, expected_sk, _, _ = _PQ_REGISTRY[self.scheme]
        if len(self.public_key) != expected_pk:
            raise ValidationError(
                f"{self.scheme.value}: public key must be {expected_pk} B, "
                f"got {len(self.public_key)}"
            )
        if len(self.private_key) != expected_sk:
            raise ValidationError(
                f"{self.scheme.value}: secret key must be {expected_sk} B, "
                f"got {len(self.private_key)}"
            )

    @classmethod
    def from_seed(cls, seed: Union[bytes, str]) -> "MLDSAKeyPair":
        seed = _require_seed(seed)
        pk, sk = ML_DSA_44.key_derive(seed)
        log.debug("ML-DSA-44 key derived from seed %s", seed_fingerprint(seed))
        return cls(public_key=pk, private_key=sk)

    def sign(self, message: bytes) -> bytes:
        sig = ML_DSA_44.sign(self.private_key, bytes(message), deterministic=True)
        if not self.verify(message, sig):
            raise ProtocolError("ML-DSA-44 self-check failed on a fresh signature")
        return sig

    def verify(self, message: bytes, signature: bytes) -> bool:
        """Constant-time verification. Returns True on success.

        pqcrypto 1.x returns None and raises on a bad signature; older
        releases return a bool.
        """
        try:
            ok = ml_dsa_44.verify(self.public_key, bytes(message), bytes(signature))
        except Exception:
            return False
        return ok is not False

    def encoded_public_key(self) -> bytes:
        return encode_pq_public_key(self.scheme, self.public_key)


# ============================================================
# FALCON-512 (SOFTWARE, ZKNOX C LIBRARY)
# ============================================================

class ZknoxFalcon:
    """
    ctypes binding to the ZKNOX Falcon-512 shared library.

    This build exposes seeded keygen and a signed-message format whose
    ``esig`` is 512 fixed-width 16-bit coefficients, which is what the
    on-chain verifier consumes.  The library path comes from
    ``PQ_ACCOUNT_FALCON_LIB``.
    """

    PK_BYTES = 1025
    SK_BYTES = 1281
    SIG_MAX_BYTES = 1067

    def __init__(self, library_path: str = FALCON_LIBRARY) -> None:
        self.library_path = library_path
        lib = ctypes.CDLL(library_path)
        u64p = ctypes.POINTER(ctypes.c_uint64)

        lib.zknox_crypto_sign_keypair_from_seed.argtypes = [
            ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p, ctypes.c_size_t,
        ]
        lib.zknox_crypto_sign_keypair_from_seed.restype = ctypes.c_int
        lib.zknox_crypto_sign.argtypes = [
            ctypes.c_char_p, u64p, ctypes.c_char_p, ctypes.c_uint64, ctypes.c_char_p,
        ]
        lib.zknox_crypto_sign.restype = ctypes.c_int
        lib.zknox_crypto_sign_open.argtypes = [
            ctypes.c_char_p, u64p, ctypes.c_char_p, ctypes.c_uint64, ctypes.c_char_p,
        ]
        lib.zknox_crypto_sign_open.restype = ctypes.c_int
        self._lib = lib

    def keypair_from_seed(self, seed: bytes) -> Tuple[bytes, bytes]:
        pk = ctypes.create_string_buffer(self.PK_BYTES)
        sk = ctypes.create_string_buffer(self.SK_BYTES)
        ret = self._lib.zknox_crypto_sign_keypair_from_seed(pk, sk, bytes(seed), len(seed))
        if ret != 0:
            raise ProtocolError(f"Falcon-512 keygen failed (code {ret})")
        return pk.raw, sk.raw

    def sign(self, private_key: bytes, message: bytes) -> bytes:
        """Raw signed message: sig_len(2) || nonce(40) || message || esig."""
        out = ctypes.create_string_buffer(2 + 40 + len(message) + self.SIG_MAX_BYTES)
        out_len = ctypes.c_uint64(0)
        ret = self._lib.zknox_crypto_sign(
            out, ctypes.byref(out_len), bytes(message), len(message), bytes(private_key),
        )
        if ret != 0:
            raise ProtocolError(f"Falcon-512 signing failed (code {ret})")
        return out.raw[:out_len.value]

    def open(self, public_key: bytes, signed_message: bytes) -> bool:
        msg = ctypes.create_string_buffer(len(signed_message))
        msg_len = ctypes.c_uint64(0)
        ret = self._lib.zknox_crypto_sign_open(
            msg, ctypes.byref(msg_len), bytes(signed_message), len(signed_message),
            bytes(public_key),
        )
        return ret == 0


class FalconKeyPair:
    """Falcon-512 keypair producing compact (nonce || packed s2) signatures."""

    scheme: ClassVar[PQScheme] = PQScheme.FALCON_512

    def __init__(self, public_key: bytes, private_key: bytes, lib: Any) -> None:
        expected_pk, expected_sk, _, _ = _PQ_REGISTRY[self.scheme]
        if len(public_key) != expected_pk or len(private_key) != expected_sk:
            raise ValidationError(
                f"{self.scheme.value}: expected pk {expected_pk} B / sk {expected_sk} B"
            )
        self.public_key = bytes(public_key)
        self._private_key = bytes(private_key)
        self._lib = lib

    def __repr__(self) -> str:
        return f"FalconKeyPair(public_key={self.public_key[:8].hex()}...)"

    @classmethod
    def from_seed(cls, seed: Union[bytes, str], lib: Any = None) -> "FalconKeyPair":
        seed = _require_seed(seed)
        lib = lib if lib is not None else ZknoxFalcon()
        pk, sk = lib.keypair_from_seed(seed)
        log.debug("Falcon-512 key derived from seed %s", seed_fingerprint(seed))
        return cls(public_key=pk, private_key=sk, lib=lib)

    def sign(self, message: bytes) -> bytes:
        message = bytes(message)
        signed = self._lib.sign(self._private_key, message)
        compact = compact_falcon_signature(signed, len(message))
        if not self.verify(message, compact):
            raise ProtocolError("Falcon-512 self-check failed on a compacted signature")
        return compact

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            return self._lib.open(self.public_key, falcon_signed_message(signature, message))
        except Exception:
            return False

    def encoded_public_key(self) -> bytes:
        return encode_pq_public_key(self.scheme, self.public_key)


def generate_pq_keypair(
    scheme: PQScheme,
    seed: Union[bytes, str],
    falcon_lib: Any = None,
) -> Union[MLDSAKeyPair, FalconKeyPair]:
    """Deterministic software PQ keypair for ``scheme``."""
    if scheme is PQScheme.ML_DSA_44:
        return MLDSAKeyPair.from_seed(seed)
    return FalconKeyPair.from_seed(seed, lib=falcon_lib)


# ============================================================
# LEDGER SIGNERS
# ============================================================

class LedgerECDSASigner:
    """ECDSA half on the device: blind-signs a 32-byte hash."""

    def __init__(self, session: DeviceSession) -> None:
        self.session = session
        self._address: Optional[str] = None

    @property
    def address(self) -> str:
        if self._address is None:
            self._address = self.session.get_address()
        return self._address

    def sign(self, digest: bytes) -> ECDSASignature:
        return self.session.sign_ecdsa_hash(digest)


class LedgerMLDSASigner:
    """ML-DSA-44 half on the device.  Derives the seed for the session's path."""

    scheme = PQScheme.ML_DSA_44

    def __init__(self, session: DeviceSession) -> None:
        self.session = session
        self.session.derive_mldsa_seed()
        self._public_key: Optional[bytes] = None

    @property
    def public_key(self) -> bytes:
        if self._public_key is None:
            self._public_key = self.session.get_mldsa_public_key()
        return self._public_key

    def sign(self, message: bytes) -> bytes:
        return self.session.sign_mldsa(message)

    def encoded_public_key(self) -> bytes:
        return encode_pq_public_key(self.scheme, self.public_key)


# ============================================================
# HYBRID SIGNATURE
# ============================================================

def encode_hybrid_signature(ecdsa_sig: bytes, pq_sig: bytes) -> bytes:
    """``abi.encode(bytes ecdsaSig, bytes pqSig)``."""
    return abi_encode(["bytes", "bytes"], [bytes(ecdsa_sig), bytes(pq_sig)])


def decode_hybrid_signature(signature: bytes) -> Tuple[bytes, bytes]:
    try:
        ecdsa_sig, pq_sig = abi_decode(["bytes", "bytes"], bytes(signature))
    except Exception as exc:
        raise ValidationError(f"not an abi-encoded (bytes, bytes) pair: {exc}") from exc
    return ecdsa_sig, pq_sig


def dummy_signature(scheme: PQScheme) -> bytes:
    """Placeholder hybrid signature with the real sizes, for gas estimation."""
    pq_len = _PQ_REGISTRY[scheme][2]
    return encode_hybrid_signature(
        bytes([DUMMY_FILL]) * ECDSA_SIG_BYTES,
        bytes([DUMMY_FILL]) * pq_len,
    )


class HybridSigner:
    """
    Pairs a classical and a post-quantum signer over one operation hash.

    Either half may live in software or on a device; the PQ backend only
    changes the signature length and public-key encoding.
    """

    def __init__(self, classical: ClassicalSigner, post_quantum: PostQuantumSigner) -> None:
        self.classical = classical
        self.post_quantum = post_quantum

    @classmethod
    def from_seeds(
        cls,
        ecdsa_seed: Union[bytes, str],
        pq_seed: Union[bytes, str],
        scheme: PQScheme = PQScheme.ML_DSA_44,
        falcon_lib: Any = None,
    ) -> "HybridSigner":
        return cls(ECDSAKey(ecdsa_seed), generate_pq_keypair(scheme, pq_seed, falcon_lib))

    @property
    def scheme(self) -> PQScheme:
        return self.post_quantum.scheme

    @property
    def address(self) -> str:
        return self.classical.address

    def encoded_public_key(self) -> bytes:
        return encode_pq_public_key(self.scheme, self.post_quantum.public_key)

    def sign(self, op: UserOperation, entry_point: str, chain_id: int) -> bytes:
        digest = user_operation_hash(op, entry_point, chain_id)
        ecdsa_sig = self.classical.sign(digest)
        pq_sig = self.post_quantum.sign(digest)
        log.info(
            "Hybrid signature for %s nonce=%d: ECDSA + %s (%d B)",
            op.sender, op.nonce, self.scheme.value, len(pq_sig),
        )
        return encode_hybrid_signature(ecdsa_sig.serialized, pq_sig)

    def dummy(self) -> bytes:
        return dummy_signature(self.scheme)


class LedgerHybridSigner:
    """
    Both halves on the device behind a single user confirmation.

    With ``clear_sign`` the device receives the operation fields and
    recomputes the hash itself, so the user sees what is being signed.
    Otherwise the device blind-signs the locally computed hash.
    """

    scheme = PQScheme.ML_DSA_44

    def __init__(self, session: DeviceSession, clear_sign: bool = True) -> None:
        self.session = session
        self.clear_sign = clear_sign
        self._address: Optional[str] = None

    @property
    def address(self) -> str:
        if self._address is None:
            self._address = self.session.get_address()
        return self._address

    def encoded_public_key(self) -> bytes:
        self.session.derive_mldsa_seed()
        return encode_pq_public_key(self.scheme, self.session.get_mldsa_public_key())

    def sign(self, op: UserOperation, entry_point: str, chain_id: int) -> bytes:
        if self.clear_sign:
            ecdsa_sig, pq_sig = self.session.sign_user_operation(op, entry_point, chain_id)
        else:
            digest = user_operation_hash(op, entry_point, chain_id)
            ecdsa_sig, pq_sig = self.session.sign_hybrid_hash(digest)
        log.info(
            "Device hybrid signature for %s nonce=%d (%s)",
            op.sender, op.nonce, "clear-signed" if self.clear_sign else "blind-signed",
        )
        return encode_hybrid_signature(ecdsa_sig.serialized, pq_sig)

    def dummy(self) -> bytes:
        return dummy_signature(self.scheme)


# ============================================================
# ENCRYPTED KEYSTORE
# ============================================================

@dataclass
class AccountKeystore:
    """The two seeds of one hybrid account, optionally with its address."""
    ecdsa_seed: bytes = field(repr=False)
    pq_seed: bytes = field(repr=False)
    scheme: PQScheme = PQScheme.ML_DSA_44
    account: Optional[str] = None

    KDF_N: ClassVar[int] = 2**15

    def __post_init__(self) -> None:
        self.ecdsa_seed = _require_seed(self.ecdsa_seed)
        self.pq_seed = _require_seed(self.pq_seed)
        if self.account is not None:
            self.account = normalize_address(self.account)

    def signer(self, falcon_lib: Any = None) -> HybridSigner:
        return HybridSigner.from_seeds(self.ecdsa_seed, self.pq_seed, self.scheme, falcon_lib)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ecdsa_seed": self.ecdsa_seed.hex(),
            "pq_seed": self.pq_seed.hex(),
            "scheme": self.scheme.value,
            "account": self.account,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AccountKeystore":
        return cls(
            ecdsa_seed=bytes.fromhex(d["ecdsa_seed"]),
            pq_seed=bytes.fromhex(d["pq_seed"]),
            scheme=PQScheme(d["scheme"]),
            account=d.get("account"),
        )

    def save_encrypted(self, filepath: str, password: str) -> None:
        """
        Write the seeds to disk encrypted with AES-256-GCM.

        KDF: scrypt(N=2^15, r=8, p=1) -> 32-byte key
        """
        plaintext = json.dumps(self.to_dict(), separators=(",", ":")).encode()

        kdf_salt = secrets.token_bytes(16)
        key = scrypt(password.encode(), kdf_salt, 32, N=self.KDF_N, r=8, p=1)
        cipher = AES.new(key, AES.MODE_GCM)
        ct, tag = cipher.encrypt_and_digest(plaintext)

        blob = {
            "v": 1,
            "kdf": "scrypt-N15-r8-p1",
            "salt": kdf_salt.hex(),
            "nonce": cipher.nonce.hex(),
            "tag": tag.hex(),
            "ct": b64encode(ct).decode(),
        }
        Path(filepath).write_text(json.dumps(blob, indent=2))
        log.info(
            "Keystore saved -> %s (ecdsa %s, %s %s)",
            filepath, seed_fingerprint(self.ecdsa_seed),
            self.scheme.value, seed_fingerprint(self.pq_seed),
        )

    @classmethod
    def load_encrypted(cls, filepath: str, password: str) -> "AccountKeystore":
        """Load and decrypt a keystore.  A wrong password raises ValueError."""
        blob = json.loads(Path(filepath).read_text())

        kdf_salt = bytes.fromhex(blob["salt"])
        key = scrypt(password.encode(), kdf_salt, 32, N=cls.KDF_N, r=8, p=1)
        cipher = AES.new(key, AES.MODE_GCM, nonce=bytes.fromhex(blob["nonce"]))

        plaintext = cipher.decrypt_and_verify(
            b64decode(blob["ct"]),
            bytes.fromhex(blob["tag"]),
        )
        keystore = cls.from_dict(json.loads(plaintext))
        log.info("Keystore loaded <- %s", filepath)
        return keystore


# ============================================================
# OPERATION BUILDER
# ============================================================

@dataclass(frozen=True)
class TransferRequest:
    """``account.execute(target, value, data)``."""
    target: str
    value: int = 0
    data: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "target", normalize_address(self.target))
        if self.value < 0:
            raise ValidationError("value cannot be negative")


@dataclass(frozen=True)
class SignedOperation:
    operation: UserOperation
    user_op_hash: bytes
    entry_point: str
    chain_id: int

    @property
    def user_op_hash_hex(self) -> str:
        return encode_hex(self.user_op_hash)


@dataclass(frozen=True)
class SendResult:
    user_op_hash: str
    outcome: Union[Receipt, Pending]

    @property
    def pending(self) -> bool:
        return isinstance(self.outcome, Pending)

    @property
    def success(self) -> bool:
        return isinstance(self.outcome, Receipt) and self.outcome.success


class OperationBuilder:
    """
    Assembles UserOperations and settles their gas.

    PQ signatures are 1-2 KB, so generic bundler estimators under-price
    both verification and calldata.  Verification gas is never allowed
    below ``MIN_VERIFICATION_GAS`` and the pre-verification estimate is
    scaled up and floored.
    """

    DEFAULT_VERIFICATION_GAS = 13_500_000
    DEFAULT_CALL_GAS = 500_000
    DEFAULT_PRE_VERIFICATION_GAS = 1_000_000
    DEFAULT_MAX_PRIORITY_FEE = 100_000_000    # 0.1 gwei
    DEFAULT_MAX_FEE = 200_000_000             # 0.2 gwei

    MIN_VERIFICATION_GAS = 13_500_000
    PRE_VERIFICATION_GAS_PCT = 120
    MIN_PRE_VERIFICATION_GAS = 100_000

    def __init__(self, bundler: BundlerClient, node: Optional[NodeClient] = None) -> None:
        self.bundler = bundler
        self.node = node

    def fetch_nonce(self, account: str) -> int:
        if self.node is None:
            log.warning("No node client; using nonce 0 for %s", account)
            return 0
        try:
            return self.node.get_nonce(account)
        except RpcError as exc:
            log.warning("Nonce lookup for %s failed (%s); using 0", account, exc)
            return 0

    def suggest_fees(self) -> FeeQuote:
        try:
            quote = self.bundler.get_user_operation_gas_price()
        except RpcError as exc:
            log.warning("Fee oracle unavailable (%s); using default fees", exc)
            return FeeQuote(self.DEFAULT_MAX_PRIORITY_FEE, self.DEFAULT_MAX_FEE)
        log.debug(
            "Fee quote: priority=%d max=%d",
            quote.max_priority_fee_per_gas, quote.max_fee_per_gas,
        )
        return quote

    def build(self, sender: str, request: TransferRequest) -> UserOperation:
        """Unsigned operation with default gas limits and suggested fees."""
        sender = normalize_address(sender)
        fees = self.suggest_fees()
        return UserOperation(
            sender=sender,
            nonce=self.fetch_nonce(sender),
            init_code=b"",
            call_data=encode_execute_call(request.target, request.value, request.data),
            account_gas_limits=pack_uint128(self.DEFAULT_VERIFICATION_GAS, self.DEFAULT_CALL_GAS),
            pre_verification_gas=self.DEFAULT_PRE_VERIFICATION_GAS,
            gas_fees=pack_uint128(fees.max_priority_fee_per_gas, fees.max_fee_per_gas),
        )

    def apply_gas_floors(
        self,
        estimate: GasEstimate,
        scale_pre_verification: bool = True,
    ) -> GasEstimate:
        vgl = estimate.verification_gas_limit
        if vgl < self.MIN_VERIFICATION_GAS:
            log.warning(
                "verificationGasLimit %d below PQ floor; raised to %d",
                vgl, self.MIN_VERIFICATION_GAS,
            )
            vgl = self.MIN_VERIFICATION_GAS

        pvg = estimate.pre_verification_gas
        if scale_pre_verification:
            pvg = -(-pvg * self.PRE_VERIFICATION_GAS_PCT // 100)
        if pvg < self.MIN_PRE_VERIFICATION_GAS:
            log.warning(
                "preVerificationGas %d below floor; raised to %d",
                pvg, self.MIN_PRE_VERIFICATION_GAS,
            )
            pvg = self.MIN_PRE_VERIFICATION_GAS

        return GasEstimate(
            verification_gas_limit=vgl,
            call_gas_limit=estimate.call_gas_limit,
            pre_verification_gas=pvg,
        )

    def estimate_gas(self, op: UserOperation, entry_point: str) -> GasEstimate:
        """Bundler estimate for ``op`` (which must carry a dummy signature), floored."""
        try:
            raw = self.bundler.estimate_user_operation_gas(op, entry_point)
        except EstimationError as exc:
            log.warning("Gas estimation failed (%s); using default limits", exc)
            fallback = GasEstimate(
                verification_gas_limit=self.DEFAULT_VERIFICATION_GAS,
                call_gas_limit=self.DEFAULT_CALL_GAS,
                pre_verification_gas=op.pre_verification_gas,
            )
            return self.apply_gas_floors(fallback, scale_pre_verification=False)
        log.info(
            "Bundler estimate: verification=%d call=%d preVerification=%d",
            raw.verification_gas_limit, raw.call_gas_limit, raw.pre_verification_gas,
        )
        return self.apply_gas_floors(raw)


# ============================================================
# USER-FACING API
# ============================================================

Signer = Union[HybridSigner, LedgerHybridSigner]


class HybridAccount:
    """
    One deployed hybrid account and the pipeline that spends from it.

    Workflow::

        account = HybridAccount(address, HybridSigner.from_seeds(s1, s2), bundler, node)
        result = account.send(TransferRequest(target, value=10**15))
        if result.pending:
            account.poll_receipt(result.user_op_hash)
    """

    def __init__(
        self,
        address: str,
        signer: Signer,
        bundler: BundlerClient,
        node: Optional[NodeClient] = None,
        chain_id: Optional[int] = None,
        entry_point: str = ENTRY_POINT_ADDRESS,
        builder: Optional[OperationBuilder] = None,
        receipt_timeout: float = RECEIPT_TIMEOUT,
        receipt_interval: float = RECEIPT_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.address = normalize_address(address)
        self.signer = signer
        self.bundler = bundler
        self.node = node
        self.entry_point = normalize_address(entry_point)
        self.builder = builder if builder is not None else OperationBuilder(bundler, node)
        self.receipt_timeout = receipt_timeout
        self.receipt_interval = receipt_interval
        self._sleep = sleep
        self._clock = clock
        self._chain_id = chain_id

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            if self.node is None:
                raise ValidationError("chain id unknown: pass chain_id or a node client")
            self._chain_id = self.node.chain_id()
        return self._chain_id

    def _warn_if_unfunded(self) -> None:
        if self.node is None:
            return
        try:
            balance = self.node.get_balance(self.address)
        except RpcError as exc:
            log.debug("Balance lookup failed: %s", exc)
            return
        if balance == 0:
            log.warning("Account %s has no balance; fund it before sending", self.address)

    # -- pipeline -------------------------------------------------------
    def build_and_sign(self, request: TransferRequest) -> SignedOperation:
        """Build, estimate against a dummy signature, then sign the final gas values."""
        chain_id = self.chain_id
        self._warn_if_unfunded()

        base = self.builder.build(self.address, request)
        estimate = self.builder.estimate_gas(
            base.with_signature(self.signer.dummy()), self.entry_point,
        )
        final = base.with_gas(
            estimate.verification_gas_limit,
            estimate.call_gas_limit,
            estimate.pre_verification_gas,
        )
        signature = self.signer.sign(final, self.entry_point, chain_id)
        digest = user_operation_hash(final, self.entry_point, chain_id)
        log.info(
            "UserOperation %s signed (%s, %d B signature)",
            encode_hex(digest), self.signer.scheme.value, len(signature),
        )
        return SignedOperation(
            operation=final.with_signature(signature),
            user_op_hash=digest,
            entry_point=self.entry_point,
            chain_id=chain_id,
        )

    def submit(self, signed: SignedOperation) -> str:
        user_op_hash = self.bundler.send_user_operation(signed.operation, signed.entry_point)
        if user_op_hash.lower() != signed.user_op_hash_hex:
            log.warning(
                "Bundler returned hash %s, local hash is %s",
                user_op_hash, signed.user_op_hash_hex,
            )
        return user_op_hash

    def poll_receipt(
        self,
        user_op_hash: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> Union[Receipt, Pending]:
        """Poll until mined or ``timeout``; running out of time returns Pending."""
        timeout = self.receipt_timeout if timeout is None else timeout
        interval = self.receipt_interval if interval is None else interval
        start = self._clock()
        deadline = start + timeout

        while True:
            try:
                receipt = self.bundler.get_user_operation_receipt(user_op_hash)
            except RpcError as exc:
                log.warning("Receipt poll for %s failed (%s); retrying", user_op_hash, exc)
                receipt = None
            if receipt is not None:
                self._log_receipt(receipt)
                return receipt
            if self._clock() + interval > deadline:
                break
            self._sleep(interval)

        waited = self._clock() - start
        log.warning("No receipt for %s after %.0fs; still pending", user_op_hash, waited)
        return Pending(user_op_hash=user_op_hash, waited_seconds=waited)

    def _log_receipt(self, receipt: Receipt) -> None:
        link = None
        if receipt.transaction_hash and self._chain_id is not None:
            link = explorer_tx_url(self._chain_id, receipt.transaction_hash)
        if receipt.success:
            log.info(
                "UserOperation mined in block %s, gas used %d: %s",
                receipt.block_number, receipt.actual_gas_used,
                link or receipt.transaction_hash,
            )
        else:
            log.warning(
                "UserOperation reverted on-chain in block %s: %s",
                receipt.block_number, link or receipt.transaction_hash,
            )

    def send(self, request: TransferRequest) -> SendResult:
        """Full pipeline: build, estimate, sign, submit, wait for the receipt."""
        signed = self.build_and_sign(request)
        user_op_hash = self.submit(signed)
        return SendResult(user_op_hash=user_op_hash, outcome=self.poll_receipt(user_op_hash))


# ============================================================
# DEMO
# ============================================================

def _run_demo() -> None:
    """Offline walk-through: derive keys, hash and sign one operation."""
    setup_logging()

    print("=" * 64)
    print("  Hybrid ECDSA + ML-DSA-44 account signer")
    print("=" * 64)

    signer = HybridSigner.from_seeds("0x" + "00" * 31 + "01", "0x" + "11" * 32)
    print(f"\n  ECDSA address:       {signer.address}")
    print(f"  ML-DSA-44 pk:        {len(signer.post_quantum.public_key)} B")
    print(f"  Expanded pk:         {len(signer.encoded_public_key())} B")

    op = UserOperation(
        sender="0x" + "ab" * 20,
        nonce=0,
        init_code=b"",
        call_data=encode_execute_call("0x" + "cd" * 20, 10**15),
        account_gas_limits=pack_uint128(
            OperationBuilder.MIN_VERIFICATION_GAS, OperationBuilder.DEFAULT_CALL_GAS,
        ),
        pre_verification_gas=OperationBuilder.DEFAULT_PRE_VERIFICATION_GAS,
        gas_fees=pack_uint128(
            OperationBuilder.DEFAULT_MAX_PRIORITY_FEE, OperationBuilder.DEFAULT_MAX_FEE,
        ),
    )
    digest = user_operation_hash(op, ENTRY_POINT_ADDRESS, 11155111)
    signature = signer.sign(op, ENTRY_POINT_ADDRESS, 11155111)
    ecdsa_sig, pq_sig = decode_hybrid_signature(signature)

    print(f"\n  UserOperation hash:  {encode_hex(digest)}")
    print(f"  Hybrid signature:    {len(signature)} B "
          f"(ECDSA {len(ecdsa_sig)} B + ML-DSA {len(pq_sig)} B)")
    print(f"  Dummy signature:     {len(signer.dummy())} B")
    recovered = recover_address(digest, ECDSASignature.from_bytes(ecdsa_sig))
    print(f"  ECDSA recovers:      {recovered}")
    print(f"  ML-DSA verifies:     {signer.post_quantum.verify(digest, pq_sig)}")


if __name__ == "__main__":
    _run_demo()
