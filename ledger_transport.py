"""
Ledger secure-element transport for ECDSA + ML-DSA-44 signing.

Requests are APDUs: ``CLA || INS || P1 || P2 || Lc || data``.  Responses
are ``data || SW1 SW2``; anything but 0x9000 raises TransportError.

Firmware handlers:
    GET_PUBLIC_KEY     (0x05)  ECDSA public key for a BIP-32 path
    KEYGEN_MLDSA       (0x0c)  generate ML-DSA keypair from the stored seed
    SIGN_MLDSA         (0x0f)  init / absorb / finalize message signing
    GET_SIG_CHUNK      (0x12)  read back a computed signature
    GET_PK_CHUNK       (0x13)  read back the ML-DSA public key
    GET_MLDSA_SEED     (0x14)  derive the ML-DSA seed on the device
    ECDSA_SIGN_HASH    (0x15)  blind-sign a 32-byte hash with ECDSA
    HYBRID_SIGN_HASH   (0x16)  one confirmation, both signatures
    HYBRID_SIGN_USEROP (0x17)  clear-sign an ERC-4337 UserOperation

The device handles one request at a time and keeps the derived seed
between requests, so a session is owned by exactly one caller.  Use
``open_session()``; it refuses a second concurrent owner and always
closes the transport.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Protocol, Tuple, runtime_checkable

from evm_protocol import (
    ECDSASignature,
    UserOperation,
    address_from_public_key,
    decode_hex,
    packed_fields,
    uint256_bytes,
)
from pq_errors import DeviceBusyError, ProtocolError, TransportError, ValidationError

log = logging.getLogger("pq_account.ledger")

DEFAULT_BIP32_PATH = os.getenv("PQ_ACCOUNT_BIP32_PATH", "m/44'/60'/0'/0/0")

CLA = 0xE0

INS_GET_PUBLIC_KEY = 0x05
INS_KEYGEN_MLDSA = 0x0C
INS_SIGN_MLDSA = 0x0F
INS_GET_SIG_CHUNK = 0x12
INS_GET_PK_CHUNK = 0x13
INS_GET_MLDSA_SEED = 0x14
INS_ECDSA_SIGN_HASH = 0x15
INS_HYBRID_SIGN_HASH = 0x16
INS_HYBRID_SIGN_USEROP = 0x17

P1_SIGN_INIT = 0x00
P1_SIGN_ABSORB = 0x01
P1_SIGN_FINALIZE = 0x80

P1_USEROP_PATH = 0x00
P1_USEROP_HEADER = 0x01
P1_USEROP_FIELDS = 0x02
P1_USEROP_CALLDATA = 0x03

SW_OK = 0x9000

MLDSA44_PK_BYTES = 1312
MLDSA44_SIG_BYTES = 2420
CHUNK_SIZE = 255
MAX_ABSORB_BYTES = 250
MAX_APDU_DATA = 255


@runtime_checkable
class Transport(Protocol):
    """Synchronous request/response byte channel to the device."""

    def exchange(self, apdu: bytes) -> bytes:
        """Send one APDU, return ``data || SW1 SW2``."""
        ...

    def close(self) -> None:
        ...


class LedgerDongleTransport:
    """HID transport backed by ``ledgerblue``.

    ledgerblue strips the status word and raises ``CommException`` on
    failure; this adapter puts the status word back so the session
    layer sees the raw response.
    """

    def __init__(self, dongle: object) -> None:
        self._dongle = dongle

    @classmethod
    def open(cls, debug: bool = False) -> "LedgerDongleTransport":
        from ledgerblue.comm import getDongle  # HID stack only needed for devices
        return cls(getDongle(debug))

    def exchange(self, apdu: bytes) -> bytes:
        from ledgerblue.commException import CommException

        try:
            data = self._dongle.exchange(bytes(apdu))
        except CommException as exc:
            body = bytes(exc.data) if exc.data else b""
            return body + int(exc.sw).to_bytes(2, "big")
        return bytes(data) + SW_OK.to_bytes(2, "big")

    def close(self) -> None:
        self._dongle.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def encode_bip32_path(path: str) -> bytes:
    """``m/44'/60'/0'/0/0`` -> count(1) || uint32 BE components."""
    if not path.startswith("m/"):
        raise ValidationError("BIP32 path must start with m/")
    elements = path[2:].split("/")
    if not 1 <= len(elements) <= 10:
        raise ValidationError("BIP32 path must have 1 to 10 components")
    out = bytes([len(elements)])
    for elt in elements:
        hardened = elt.endswith("'")
        index_str = elt[:-1] if hardened else elt
        if not index_str.isdigit():
            raise ValidationError(f"invalid BIP32 path component {elt!r}")
        index = int(index_str)
        if index >= 0x80000000:
            raise ValidationError("Invalid index in BIP32 path")
        if hardened:
            index |= 0x80000000
        out += index.to_bytes(4, "big")
    return out


def build_apdu(ins: int, p1: int = 0, p2: int = 0, data: bytes = b"") -> bytes:
    if len(data) > MAX_APDU_DATA:
        raise ValidationError(
            f"APDU payload is {len(data)} B, limit is {MAX_APDU_DATA}"
        )
    return bytes([CLA, ins, p1, p2, len(data)]) + bytes(data)


def _der_integer(der: bytes, off: int) -> Tuple[bytes, int]:
    if off + 2 > len(der) or der[off] != 0x02:
        raise ProtocolError("malformed DER signature: expected INTEGER")
    length = der[off + 1]
    start = off + 2
    end = start + length
    if end > len(der):
        raise ProtocolError("malformed DER signature: INTEGER overruns buffer")
    value = der[start:end].lstrip(b"\x00")
    if len(value) > 32:
        raise ProtocolError("malformed DER signature: INTEGER wider than 32 bytes")
    return value.rjust(32, b"\x00"), end


def parse_ecdsa_response(resp: bytes) -> ECDSASignature:
    """Parse ``der_len(1) || DER(r, s) || v(1)`` into an ECDSASignature."""
    if not resp:
        raise ProtocolError("empty ECDSA response")
    der_len = resp[0]
    if len(resp) < 2 + der_len:
        raise ProtocolError(
            f"ECDSA response is {len(resp)} B, DER length byte says {der_len}"
        )
    der = resp[1:1 + der_len]
    v = resp[1 + der_len]
    if len(der) < 2 or der[0] != 0x30:
        raise ProtocolError("malformed DER signature: expected SEQUENCE")
    r, off = _der_integer(der, 2)
    s, _ = _der_integer(der, off)
    if v not in (0, 1):
        raise ProtocolError(f"device returned recovery id {v}, expected 0 or 1")
    return ECDSASignature(r=r, s=s, v=v + 27)


# ============================================================
# DEVICE SESSION
# ============================================================

class DeviceSession:
    """One caller's exclusive conversation with the secure element.

    Holds the transport, the derivation path, and whether the ML-DSA
    seed for that path has been derived on-device yet.
    """

    def __init__(self, transport: Transport, bip32_path: str = DEFAULT_BIP32_PATH) -> None:
        self.transport = transport
        self.bip32_path = bip32_path
        self._path_bytes = encode_bip32_path(bip32_path)
        self._seed_derived = False
        self._closed = False

    # ---- raw APDU ----------------------------------------------------
    def send(self, ins: int, p1: int = 0, p2: int = 0, data: bytes = b"") -> bytes:
        """Send one APDU and return the response payload without SW."""
        if self._closed:
            raise ProtocolError("device session is closed")
        apdu = build_apdu(ins, p1, p2, data)
        log.debug("APDU -> ins=0x%02x p1=0x%02x p2=0x%02x lc=%d", ins, p1, p2, len(data))
        resp = bytes(self.transport.exchange(apdu))
        if len(resp) < 2:
            raise ProtocolError(f"response too short ({len(resp)} B) for a status word")
        sw = int.from_bytes(resp[-2:], "big")
        log.debug("APDU <- ins=0x%02x sw=0x%04x len=%d", ins, sw, len(resp) - 2)
        if sw != SW_OK:
            raise TransportError(sw, f"INS 0x{ins:02x} P1 0x{p1:02x}")
        return resp[:-2]

    def read_chunked(self, ins: int, total_bytes: int) -> bytes:
        """Read ``total_bytes`` in CHUNK_SIZE pieces, P1 = chunk index, P2 = size."""
        chunks: List[bytes] = []
        index = 0
        offset = 0
        while offset < total_bytes:
            want = min(total_bytes - offset, CHUNK_SIZE)
            chunk = self.send(ins, index, want)
            if len(chunk) < want:
                raise ProtocolError(
                    f"chunk {index} of INS 0x{ins:02x}: got {len(chunk)} B, expected {want}"
                )
            chunks.append(chunk[:want])
            offset += want
            index += 1
        return b"".join(chunks)

    # ---- ECDSA -------------------------------------------------------
    def get_ecdsa_public_key(self) -> bytes:
        """65-byte uncompressed secp256k1 key for this session's path."""
        resp = self.send(INS_GET_PUBLIC_KEY, 0, 0, self._path_bytes)
        if len(resp) < 66 or resp[0] != 65 or resp[1] != 0x04:
            raise ProtocolError("unexpected GET_PUBLIC_KEY response layout")
        return resp[1:66]

    def get_address(self) -> str:
        return address_from_public_key(self.get_ecdsa_public_key())

    def sign_ecdsa_hash(self, digest: bytes) -> ECDSASignature:
        _require_digest(digest)
        resp = self.send(INS_ECDSA_SIGN_HASH, 0, 0, self._path_bytes + bytes(digest))
        return parse_ecdsa_response(resp)

    # ---- ML-DSA ------------------------------------------------------
    def derive_mldsa_seed(self) -> None:
        """Derive and keep the ML-DSA seed for this path on the device."""
        self.send(INS_GET_MLDSA_SEED, 0, 0, self._path_bytes)
        self._seed_derived = True
        log.info("ML-DSA seed derived on device for %s", self.bip32_path)

    def _require_seed(self) -> None:
        if not self._seed_derived:
            raise ProtocolError("derive_mldsa_seed() must run before keygen or signing")

    def get_mldsa_public_key(self) -> bytes:
        self._require_seed()
        self.send(INS_KEYGEN_MLDSA)
        return self.read_chunked(INS_GET_PK_CHUNK, MLDSA44_PK_BYTES)

    def sign_mldsa(self, message: bytes) -> bytes:
        """Init -> Absorb* -> Finalize(len) -> chunked signature read."""
        self._require_seed()
        if len(message) > 0xFFFF:
            raise ValidationError("message longer than 65535 bytes")
        self.send(INS_SIGN_MLDSA, P1_SIGN_INIT, 0)
        for off in range(0, len(message), MAX_ABSORB_BYTES):
            self.send(INS_SIGN_MLDSA, P1_SIGN_ABSORB, 0, message[off:off + MAX_ABSORB_BYTES])
        self.send(INS_SIGN_MLDSA, P1_SIGN_FINALIZE, 0, len(message).to_bytes(2, "big"))
        return self.read_chunked(INS_GET_SIG_CHUNK, MLDSA44_SIG_BYTES)

    # ---- hybrid ------------------------------------------------------
    def sign_hybrid_hash(self, digest: bytes) -> Tuple[ECDSASignature, bytes]:
        """Blind-sign ``digest`` with both keys after one on-device confirmation."""
        _require_digest(digest)
        resp = self.send(INS_HYBRID_SIGN_HASH, 0, 0, self._path_bytes + bytes(digest))
        ecdsa = parse_ecdsa_response(resp)
        return ecdsa, self.read_chunked(INS_GET_SIG_CHUNK, MLDSA44_SIG_BYTES)

    def sign_user_operation(
        self,
        op: UserOperation,
        entry_point: str,
        chain_id: int,
    ) -> Tuple[ECDSASignature, bytes]:
        """Clear-sign ``op``: the device recomputes the hash and shows the call."""
        ins = INS_HYBRID_SIGN_USEROP
        self.send(ins, P1_USEROP_PATH, 0, self._path_bytes)
        self.send(ins, P1_USEROP_HEADER, 0, (
            uint256_bytes(chain_id)
            + decode_hex(entry_point, 20)
            + decode_hex(op.sender, 20)
            + uint256_bytes(op.nonce)
        ))
        self.send(ins, P1_USEROP_FIELDS, 0, b"".join(packed_fields(op)))
        call_data = op.call_data if len(op.call_data) <= CHUNK_SIZE else b""
        if len(op.call_data) > CHUNK_SIZE:
            log.info("callData is %d B; device will display the hash only", len(op.call_data))
        # Blocks until the user approves or rejects on the device.
        resp = self.send(ins, P1_USEROP_CALLDATA, 0, call_data)
        ecdsa = parse_ecdsa_response(resp)
        return ecdsa, self.read_chunked(INS_GET_SIG_CHUNK, MLDSA44_SIG_BYTES)

    # ---- lifecycle ---------------------------------------------------
    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._seed_derived = False
        self.transport.close()


def _require_digest(digest: bytes) -> None:
    if len(digest) != 32:
        raise ValidationError(f"hash must be 32 bytes, got {len(digest)}")


_SESSION_LOCK = threading.Lock()


@contextmanager
def open_session(
    transport_factory: Optional[Callable[[], Transport]] = None,
    bip32_path: str = DEFAULT_BIP32_PATH,
) -> Iterator[DeviceSession]:
    """Open the device for exclusive use; the transport is closed on every exit."""
    encode_bip32_path(bip32_path)
    if not _SESSION_LOCK.acquire(blocking=False):
        raise DeviceBusyError("device session already held by another caller")
    try:
        factory = transport_factory or LedgerDongleTransport.open
        session = DeviceSession(factory(), bip32_path)
        try:
            yield session
        finally:
            session.close()
    finally:
        _SESSION_LOCK.release()
