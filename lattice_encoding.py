"""
On-chain encodings for lattice public keys and signatures
=========================================================

The on-chain verifiers do not re-derive anything expensive.  Instead the
account stores an *expanded* ML-DSA-44 public key and receives Falcon-512
signatures with their ``s2`` coefficients already packed into uint256
words.  Both layouts must match the Solidity side bit for bit.

ML-DSA-44 (FIPS 204, k = l = 4):
    pk = rho(32) || t1 (4 x 320 B, 10-bit little-endian coefficients)
    tr = SHAKE256(pk, 64)
    A_hat[i][j] = RejectionSample(SHAKE128(rho || j || i))
    t1_hat[i]   = NTT(t1[i] << 13)
    expanded    = abi.encode(bytes(abi.encode(uint256[][][] A_hat)),
                             bytes(tr),
                             bytes(abi.encode(uint256[][] t1_hat)))

Falcon-512 (ZKNOX signed-message layout):
    sm      = sig_len(2, BE) || nonce(40) || message || esig
    esig    = 0x29 || 512 x int16 BE (s2)
    compact = nonce(40) || 32 big-endian uint256 words of packed s2
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from Crypto.Hash import SHAKE128, SHAKE256
from eth_abi import encode as abi_encode

from pq_errors import ProtocolError, ValidationError

# ---------------------------------------------------------------------------
# ML-DSA-44 parameters
# ---------------------------------------------------------------------------
N = 256
Q = 8380417
D = 13
K = 4
L = 4
ROOT_OF_UNITY = 1753

RHO_BYTES = 32
T1_POLY_BYTES = 320
TR_BYTES = 64
MLDSA44_PK_BYTES = RHO_BYTES + K * T1_POLY_BYTES   # 1312

# ---------------------------------------------------------------------------
# Falcon-512 parameters
# ---------------------------------------------------------------------------
FALCON_NONCE_BYTES = 40
FALCON_ESIG_HEADER = 0x29          # 0x20 + logn (9)
FALCON_COEFFS = 512
FALCON_ESIG_BYTES = 1 + 2 * FALCON_COEFFS      # 1025
FALCON_COMPACT_SIG_BYTES = FALCON_NONCE_BYTES + FALCON_COEFFS * 2   # 1064


def _bit_reverse(x: int, bits: int) -> int:
    out = 0
    for _ in range(bits):
        out = (out << 1) | (x & 1)
        x >>= 1
    return out


# zeta_k = 1753^brv8(k) mod q
_ZETAS = [pow(ROOT_OF_UNITY, _bit_reverse(i, 8), Q) for i in range(N)]


# ============================================================
# NTT + SAMPLING
# ============================================================

def ntt(poly: Sequence[int]) -> List[int]:
    """Forward NTT over Z_q[X]/(X^256 + 1), coefficients returned in [0, q)."""
    if len(poly) != N:
        raise ValidationError(f"polynomial must have {N} coefficients, got {len(poly)}")
    r = [c % Q for c in poly]
    k = 1
    length = 128
    while length > 0:
        for start in range(0, N, 2 * length):
            zeta = _ZETAS[k]
            k += 1
            for j in range(start, start + length):
                t = zeta * r[j + length] % Q
                r[j + length] = (r[j] - t) % Q
                r[j] = (r[j] + t) % Q
        length >>= 1
    return r


def rejection_sample_poly(rho: bytes, i: int, j: int) -> List[int]:
    """Sample A_hat[i][j] in the NTT domain from SHAKE128(rho || j || i).

    Reads 3-byte little-endian groups, keeps the low 23 bits, and accepts
    values below q until 256 coefficients are collected.
    """
    xof = SHAKE128.new(bytes(rho) + bytes([j, i]))
    coeffs: List[int] = []
    while len(coeffs) < N:
        buf = xof.read(3 * 64)
        for off in range(0, len(buf), 3):
            t = int.from_bytes(buf[off:off + 3], "little") & 0x7FFFFF
            if t < Q:
                coeffs.append(t)
                if len(coeffs) == N:
                    break
    return coeffs


def recover_a_hat(rho: bytes, k: int = K, l: int = L) -> List[List[List[int]]]:
    return [[rejection_sample_poly(rho, i, j) for j in range(l)] for i in range(k)]


def _decode_10bit_poly(data: bytes) -> List[int]:
    packed = int.from_bytes(data, "little")
    return [(packed >> (10 * i)) & 0x3FF for i in range(N)]


def decode_mldsa_public_key(public_key: bytes) -> Tuple[bytes, List[List[int]], bytes]:
    """Split an ML-DSA-44 public key into (rho, t1, tr)."""
    if len(public_key) != MLDSA44_PK_BYTES:
        raise ValidationError(
            f"ML-DSA-44 public key must be {MLDSA44_PK_BYTES} B, got {len(public_key)}"
        )
    rho = bytes(public_key[:RHO_BYTES])
    t1 = []
    for i in range(K):
        off = RHO_BYTES + i * T1_POLY_BYTES
        t1.append(_decode_10bit_poly(public_key[off:off + T1_POLY_BYTES]))
    tr = SHAKE256.new(bytes(public_key)).read(TR_BYTES)
    return rho, t1, tr


# ============================================================
# COEFFICIENT PACKING
# ============================================================

def compact_poly(coeffs: Sequence[int], m: int) -> List[int]:
    """Pack m-bit coefficients into uint256 words.

    Word ``i*m // 256`` receives coefficient ``i`` shifted left by
    ``(i % (256 // m)) * m``.  Matches ``compact_poly_256`` on-chain.
    """
    if not 0 < m < 256 or 256 % m:
        raise ValidationError(f"m must be a divisor of 256 below 256, got {m}")
    if (len(coeffs) * m) % 256:
        raise ValidationError("total bit length must be a multiple of 256")
    per_word = 256 // m
    limit = 1 << m
    words = [0] * (len(coeffs) * m // 256)
    for i, c in enumerate(coeffs):
        if not 0 <= c < limit:
            raise ValidationError(f"coefficient {c} does not fit in {m} bits")
        words[(i * m) // 256] |= c << ((i % per_word) * m)
    return words


def expand_poly(words: Sequence[int], m: int) -> List[int]:
    """Inverse of compact_poly."""
    if not 0 < m < 256 or 256 % m:
        raise ValidationError(f"m must be a divisor of 256 below 256, got {m}")
    mask = (1 << m) - 1
    per_word = 256 // m
    return [(w >> (s * m)) & mask for w in words for s in range(per_word)]


def compact_module(polys: Sequence[Sequence[Sequence[int]]], m: int) -> List[List[List[int]]]:
    return [[compact_poly(p, m) for p in row] for row in polys]


def words_to_bytes(words: Sequence[int]) -> bytes:
    """Serialize uint256 words most-significant byte first."""
    return b"".join(w.to_bytes(32, "big") for w in words)


def bytes_to_words(data: bytes) -> List[int]:
    if len(data) % 32:
        raise ValidationError("word buffer length must be a multiple of 32")
    return [int.from_bytes(data[i:i + 32], "big") for i in range(0, len(data), 32)]


# ============================================================
# ML-DSA-44 EXPANDED PUBLIC KEY
# ============================================================

def expand_mldsa_public_key(public_key: bytes) -> bytes:
    """Encode an ML-DSA-44 public key in the verifier's expanded layout."""
    rho, t1, tr = decode_mldsa_public_key(public_key)
    t1_hat = [ntt([c << D for c in poly]) for poly in t1]
    a_hat = recover_a_hat(rho)

    a_hat_encoded = abi_encode(["uint256[][][]"], [compact_module(a_hat, 32)])
    t1_encoded = abi_encode(["uint256[][]"], [compact_module([t1_hat], 32)[0]])
    return abi_encode(["bytes", "bytes", "bytes"], [a_hat_encoded, tr, t1_encoded])


# ============================================================
# FALCON-512 SIGNATURE COMPACTION
# ============================================================

def compact_falcon_signature(signed_message: bytes, message_len: int) -> bytes:
    """Turn a raw Falcon signed message into nonce(40) || packed s2 (1024 B).

    Raises ProtocolError if the esig header byte is not 0x29 or the
    buffer is too short to hold 512 coefficients.
    """
    esig_off = 2 + FALCON_NONCE_BYTES + message_len
    esig = signed_message[esig_off:]
    if len(esig) < FALCON_ESIG_BYTES:
        raise ProtocolError(
            f"Falcon esig truncated: {len(esig)} B, need {FALCON_ESIG_BYTES}"
        )
    if esig[0] != FALCON_ESIG_HEADER:
        raise ProtocolError(
            f"unexpected Falcon esig header 0x{esig[0]:02x} "
            f"(expected 0x{FALCON_ESIG_HEADER:02x})"
        )
    nonce = signed_message[2:2 + FALCON_NONCE_BYTES]
    s2 = [
        int.from_bytes(esig[1 + 2 * i:3 + 2 * i], "big")
        for i in range(FALCON_COEFFS)
    ]
    return bytes(nonce) + words_to_bytes(compact_poly(s2, 16))


def expand_falcon_signature(compact: bytes) -> Tuple[bytes, List[int]]:
    """Split a compact Falcon signature back into (nonce, s2 coefficients)."""
    if len(compact) != FALCON_COMPACT_SIG_BYTES:
        raise ValidationError(
            f"compact Falcon signature must be {FALCON_COMPACT_SIG_BYTES} B, "
            f"got {len(compact)}"
        )
    nonce = compact[:FALCON_NONCE_BYTES]
    words = bytes_to_words(compact[FALCON_NONCE_BYTES:])
    return nonce, expand_poly(words, 16)


def falcon_signed_message(compact: bytes, message: bytes) -> bytes:
    """Rebuild the signed-message buffer that ``crypto_sign_open`` accepts."""
    nonce, s2 = expand_falcon_signature(compact)
    esig = bytes([FALCON_ESIG_HEADER]) + b"".join(c.to_bytes(2, "big") for c in s2)
    return len(esig).to_bytes(2, "big") + nonce + bytes(message) + esig
