# Copyright (c) 2026 Emiliano G Solazzi
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
#
# Commercial licenses available. Contact: emiliano.arlington@gmail.com
import hashlib
import logging

import pytest
from coincurve import PrivateKey, PublicKey

from evm_protocol import (
    ENTRY_POINT_ADDRESS,
    UserOperation,
    address_from_public_key,
    encode_execute_call,
    keccak256,
    pack_uint128,
    user_operation_hash,
)
from ledger_transport import *
from pq_errors import DeviceBusyError, ProtocolError, TransportError, ValidationError

_KEY_ONE_ADDRESS = "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"
_SW_OK = b"\x90\x00"


def _der(r: bytes, s: bytes) -> bytes:
    def integer(x: bytes) -> bytes:
        x = x.lstrip(b"\x00") or b"\x00"
        if x[0] & 0x80:
            x = b"\x00" + x
        return b"\x02" + bytes([len(x)]) + x
    body = integer(r) + integer(s)
    return b"\x30" + bytes([len(body)]) + body


def _ecdsa_response(key: PrivateKey, digest: bytes) -> bytes:
    raw = key.sign_recoverable(digest, hasher=None)
    der = _der(raw[:32], raw[32:64])
    return bytes([len(der)]) + der + bytes([raw[64]])


def _recover(digest: bytes, sig) -> str:
    pub = PublicKey.from_signature_and_message(
        sig.r + sig.s + bytes([sig.recovery_id]), digest, hasher=None,
    )
    return address_from_public_key(pub.format(compressed=False))


class FakeDevice:
    """In-process secure element speaking the APDU protocol."""

    def __init__(self, reject: bool = False, short_chunks: bool = False) -> None:
        self.key = PrivateKey((1).to_bytes(32, "big"))
        self.mldsa_pk = bytes((i * 7) & 0xFF for i in range(MLDSA44_PK_BYTES))
        self.reject = reject
        self.short_chunks = short_chunks
        self.apdus = []
        self.closed = False
        self.seed_path = None
        self.keygen_done = False
        self.sign_buffer = b""
        self.pending_sig = b""
        self.userop = {}
        self.device_hash = None

    def mldsa_sig(self, message: bytes) -> bytes:
        stream = hashlib.shake_256(b"mldsa" + message).digest(MLDSA44_SIG_BYTES)
        return stream

    def exchange(self, apdu: bytes) -> bytes:
        cla, ins, p1, p2, lc = apdu[:5]
        data = apdu[5:]
        assert cla == CLA
        assert lc == len(data)
        self.apdus.append((ins, p1, p2, data))

        if ins == INS_GET_PUBLIC_KEY:
            pub = self.key.public_key.format(compressed=False)
            return bytes([65]) + pub + bytes([40]) + b"0" * 40 + _SW_OK

        if ins == INS_GET_MLDSA_SEED:
            self.seed_path = data
            return _SW_OK

        if ins == INS_KEYGEN_MLDSA:
            if self.seed_path is None:
                return b"\x69\x86"
            self.keygen_done = True
            return _SW_OK

        if ins in (INS_GET_PK_CHUNK, INS_GET_SIG_CHUNK):
            source = self.mldsa_pk if ins == INS_GET_PK_CHUNK else self.pending_sig
            chunk = source[p1 * CHUNK_SIZE:p1 * CHUNK_SIZE + p2]
            if self.short_chunks:
                chunk = chunk[:-1]
            return chunk + _SW_OK

        if ins == INS_SIGN_MLDSA:
            if p1 == P1_SIGN_INIT:
                self.sign_buffer = b""
            elif p1 == P1_SIGN_ABSORB:
                self.sign_buffer += data
            elif p1 == P1_SIGN_FINALIZE:
                assert int.from_bytes(data, "big") == len(self.sign_buffer)
                self.pending_sig = self.mldsa_sig(self.sign_buffer)
            return _SW_OK

        if ins in (INS_ECDSA_SIGN_HASH, INS_HYBRID_SIGN_HASH):
            digest = data[-32:]
            if self.reject:
                return b"\x69\x85"
            if ins == INS_HYBRID_SIGN_HASH:
                self.pending_sig = self.mldsa_sig(digest)
            return _ecdsa_response(self.key, digest) + _SW_OK

        if ins == INS_HYBRID_SIGN_USEROP:
            self.userop[p1] = data
            if p1 != P1_USEROP_CALLDATA:
                return _SW_OK
            if self.reject:
                return b"\x69\x85"
            header = self.userop[P1_USEROP_HEADER]
            chain, entry, sender, nonce = header[:32], header[32:52], header[52:72], header[72:104]
            inner = keccak256(b"\x00" * 12 + sender + nonce + self.userop[P1_USEROP_FIELDS])
            self.device_hash = keccak256(inner + b"\x00" * 12 + entry + chain)
            self.pending_sig = self.mldsa_sig(self.device_hash)
            return _ecdsa_response(self.key, self.device_hash) + _SW_OK

        return b"\x6d\x00"

    def close(self) -> None:
        self.closed = True


def _op(call_data: bytes = b"") -> UserOperation:
    return UserOperation(
        sender="0x" + "ab" * 20,
        nonce=3,
        init_code=b"",
        call_data=call_data,
        account_gas_limits=pack_uint128(13_500_000, 500_000),
        pre_verification_gas=1_000_000,
        gas_fees=pack_uint128(100_000_000, 200_000_000),
    )


class TestApduFraming:
    """CLA || INS || P1 || P2 || Lc || data."""

    def test_layout(self):
        assert build_apdu(0x12, 3, 37) == bytes([0xE0, 0x12, 3, 37, 0])
        assert build_apdu(0x0F, 1, 0, b"\xaa\xbb") == bytes([0xE0, 0x0F, 1, 0, 2, 0xAA, 0xBB])

    def test_oversized_payload_raises(self):
        build_apdu(0x0F, 1, 0, b"\x00" * MAX_APDU_DATA)
        with pytest.raises(ValidationError, match="limit is 255"):
            build_apdu(0x0F, 1, 0, b"\x00" * (MAX_APDU_DATA + 1))

    def test_default_path_encoding(self):
        assert encode_bip32_path("m/44'/60'/0'/0/0") == bytes.fromhex(
            "05" "8000002c" "8000003c" "80000000" "00000000" "00000000"
        )

    @pytest.mark.parametrize("path", [
        "44'/60'", "m/", "m/44'/x", "m/2147483648", "m/" + "/".join(["0"] * 11),
    ])
    def test_invalid_path_raises(self, path):
        with pytest.raises(ValidationError):
            encode_bip32_path(path)


class TestEcdsaResponseParsing:
    """der_len || DER(r, s) || v."""

    def test_parses_and_recovers(self):
        key = PrivateKey((1).to_bytes(32, "big"))
        digest = keccak256(b"payload")
        sig = parse_ecdsa_response(_ecdsa_response(key, digest))
        assert sig.v in (27, 28)
        assert _recover(digest, sig) == _KEY_ONE_ADDRESS

    def test_short_integers_left_padded(self):
        der = _der(b"\x01", b"\x7f" * 32)
        sig = parse_ecdsa_response(bytes([len(der)]) + der + b"\x00")
        assert sig.r == b"\x00" * 31 + b"\x01"
        assert sig.s == b"\x7f" * 32
        assert sig.v == 27

    def test_bad_recovery_id_raises(self):
        der = _der(b"\x01" * 32, b"\x02" * 32)
        with pytest.raises(ProtocolError, match="recovery id 2"):
            parse_ecdsa_response(bytes([len(der)]) + der + b"\x02")

    def test_not_a_sequence_raises(self):
        der = b"\x31" + _der(b"\x01", b"\x02")[1:]
        with pytest.raises(ProtocolError, match="SEQUENCE"):
            parse_ecdsa_response(bytes([len(der)]) + der + b"\x00")

    def test_truncated_raises(self):
        der = _der(b"\x01" * 32, b"\x02" * 32)
        with pytest.raises(ProtocolError):
            parse_ecdsa_response(bytes([len(der)]) + der[:-4])

    def test_empty_raises(self):
        with pytest.raises(ProtocolError, match="empty"):
            parse_ecdsa_response(b"")


class TestDeviceSession:
    """Status words, session state, ECDSA operations."""

    def test_status_word_raises_transport_error(self):
        session = DeviceSession(FakeDevice())
        with pytest.raises(TransportError) as info:
            session.send(0x7F)
        assert info.value.status_word == 0x6D00
        assert not info.value.is_user_rejection
        assert "0x6d00" in str(info.value)

    def test_short_response_raises(self):
        class Mute:
            def exchange(self, apdu):
                return b"\x90"

            def close(self):
                pass

        with pytest.raises(ProtocolError, match="status word"):
            DeviceSession(Mute()).send(INS_GET_PUBLIC_KEY)

    def test_fake_is_a_transport(self):
        assert isinstance(FakeDevice(), Transport)

    def test_address(self):
        assert DeviceSession(FakeDevice()).get_address() == _KEY_ONE_ADDRESS

    def test_ecdsa_sign_hash(self):
        device = FakeDevice()
        session = DeviceSession(device)
        digest = keccak256(b"blind")
        sig = session.sign_ecdsa_hash(digest)
        assert _recover(digest, sig) == _KEY_ONE_ADDRESS
        ins, _, _, data = device.apdus[-1]
        assert ins == INS_ECDSA_SIGN_HASH
        assert data == encode_bip32_path(DEFAULT_BIP32_PATH) + digest

    def test_ecdsa_sign_rejects_wrong_digest_size(self):
        with pytest.raises(ValidationError, match="32 bytes"):
            DeviceSession(FakeDevice()).sign_ecdsa_hash(b"\x00" * 31)

    def test_closed_session_refuses(self):
        device = FakeDevice()
        session = DeviceSession(device)
        session.close()
        assert device.closed and session.closed
        with pytest.raises(ProtocolError, match="closed"):
            session.get_address()


class TestChunkedRead:
    """Fixed 255-byte chunks addressed by index."""

    def test_public_key_1312_bytes(self):
        """1312 = 5 x 255 + 37; no dropped or duplicated bytes."""
        device = FakeDevice()
        session = DeviceSession(device)
        session.derive_mldsa_seed()
        pk = session.get_mldsa_public_key()
        assert pk == device.mldsa_pk
        reads = [(p1, p2) for ins, p1, p2, _ in device.apdus if ins == INS_GET_PK_CHUNK]
        assert reads == [(0, 255), (1, 255), (2, 255), (3, 255), (4, 255), (5, 37)]

    def test_exact_multiple(self):
        device = FakeDevice()
        device.pending_sig = bytes(range(255)) * 2
        assert DeviceSession(device).read_chunked(INS_GET_SIG_CHUNK, 510) == device.pending_sig

    def test_short_chunk_raises(self):
        session = DeviceSession(FakeDevice(short_chunks=True))
        session.derive_mldsa_seed()
        with pytest.raises(ProtocolError, match="chunk 0"):
            session.get_mldsa_public_key()


class TestMLDSASigning:
    """Init -> Absorb* -> Finalize -> chunked read."""

    def test_keygen_requires_seed(self):
        with pytest.raises(ProtocolError, match="derive_mldsa_seed"):
            DeviceSession(FakeDevice()).get_mldsa_public_key()

    def test_sign_requires_seed(self):
        with pytest.raises(ProtocolError, match="derive_mldsa_seed"):
            DeviceSession(FakeDevice()).sign_mldsa(b"m")

    def test_seed_keyed_to_path(self):
        device = FakeDevice()
        DeviceSession(device, "m/44'/60'/1'/0/7").derive_mldsa_seed()
        assert device.seed_path == encode_bip32_path("m/44'/60'/1'/0/7")

    def test_absorb_chunks(self):
        device = FakeDevice()
        session = DeviceSession(device)
        session.derive_mldsa_seed()
        message = bytes(range(256)) * 2 + b"\x01" * 88      # 600 bytes
        sig = session.sign_mldsa(message)

        assert sig == device.mldsa_sig(message)
        assert len(sig) == MLDSA44_SIG_BYTES
        phases = [(p1, len(data)) for ins, p1, _, data in device.apdus if ins == INS_SIGN_MLDSA]
        assert phases == [(P1_SIGN_INIT, 0), (P1_SIGN_ABSORB, 250), (P1_SIGN_ABSORB, 250),
                          (P1_SIGN_ABSORB, 100), (P1_SIGN_FINALIZE, 2)]
        finalize = [d for ins, p1, _, d in device.apdus if ins == INS_SIGN_MLDSA and p1 == 0x80]
        assert finalize == [b"\x02\x58"]

    def test_empty_message(self):
        device = FakeDevice()
        session = DeviceSession(device)
        session.derive_mldsa_seed()
        session.sign_mldsa(b"")
        phases = [p1 for ins, p1, _, _ in device.apdus if ins == INS_SIGN_MLDSA]
        assert phases == [P1_SIGN_INIT, P1_SIGN_FINALIZE]

    def test_message_too_long(self):
        session = DeviceSession(FakeDevice())
        session.derive_mldsa_seed()
        with pytest.raises(ValidationError, match="65535"):
            session.sign_mldsa(b"\x00" * 0x10000)


class TestHybridSigning:

    def test_hybrid_hash(self):
        device = FakeDevice()
        digest = keccak256(b"op")
        ecdsa, pq_sig = DeviceSession(device).sign_hybrid_hash(digest)
        assert _recover(digest, ecdsa) == _KEY_ONE_ADDRESS
        assert pq_sig == device.mldsa_sig(digest)

    def test_hybrid_hash_rejected_by_user(self):
        with pytest.raises(TransportError) as info:
            DeviceSession(FakeDevice(reject=True)).sign_hybrid_hash(keccak256(b"op"))
        assert info.value.is_user_rejection


class TestClearSigning:
    """Four-phase UserOperation exchange."""

    def test_device_recomputes_operation_hash(self):
        device = FakeDevice()
        op = _op(encode_execute_call("0x" + "cd" * 20, 10**15))
        ecdsa, pq_sig = DeviceSession(device).sign_user_operation(op, ENTRY_POINT_ADDRESS, 11155111)

        expected = user_operation_hash(op, ENTRY_POINT_ADDRESS, 11155111)
        assert device.device_hash == expected
        assert _recover(expected, ecdsa) == _KEY_ONE_ADDRESS
        assert pq_sig == device.mldsa_sig(expected)

    def test_phase_payloads(self):
        device = FakeDevice()
        op = _op(b"\x12\x34")
        DeviceSession(device).sign_user_operation(op, ENTRY_POINT_ADDRESS, 1)
        phases = [(p1, len(d)) for ins, p1, _, d in device.apdus if ins == INS_HYBRID_SIGN_USEROP]
        assert phases == [(0, 21), (1, 104), (2, 192), (3, 2)]
        assert device.userop[P1_USEROP_CALLDATA] == b"\x12\x34"

    def test_large_call_data_sent_empty(self):
        device = FakeDevice()
        op = _op(b"\x00" * 256)
        ecdsa, _ = DeviceSession(device).sign_user_operation(op, ENTRY_POINT_ADDRESS, 1)
        assert device.userop[P1_USEROP_CALLDATA] == b""
        assert _recover(user_operation_hash(op, ENTRY_POINT_ADDRESS, 1), ecdsa) == _KEY_ONE_ADDRESS

    @pytest.mark.parametrize("size,hash_only", [(0, False), (2, False), (255, False), (256, True)])
    def test_hash_only_notice_only_when_oversized(self, caplog, size, hash_only):
        caplog.set_level(logging.INFO, logger="pq_account.ledger")
        DeviceSession(FakeDevice()).sign_user_operation(
            _op(b"\x01" * size), ENTRY_POINT_ADDRESS, 1,
        )
        notices = [r for r in caplog.records if "display the hash only" in r.getMessage()]
        assert bool(notices) is hash_only

    def test_rejection_surfaces_as_transport_error(self):
        with pytest.raises(TransportError) as info:
            DeviceSession(FakeDevice(reject=True)).sign_user_operation(_op(), ENTRY_POINT_ADDRESS, 1)
        assert info.value.status_word == 0x6985
        assert info.value.is_user_rejection


class TestOpenSession:
    """Exclusive ownership and guaranteed release."""

    def test_closes_on_exit(self):
        device = FakeDevice()
        with open_session(lambda: device) as session:
            assert session.get_address() == _KEY_ONE_ADDRESS
        assert device.closed
        assert session.closed

    def test_closes_on_user_rejection(self):
        device = FakeDevice(reject=True)
        with pytest.raises(TransportError):
            with open_session(lambda: device) as session:
                session.sign_user_operation(_op(), ENTRY_POINT_ADDRESS, 1)
        assert device.closed
        with open_session(FakeDevice) as again:
            assert again.get_address() == _KEY_ONE_ADDRESS

    def test_second_owner_refused(self):
        with open_session(FakeDevice):
            with pytest.raises(DeviceBusyError):
                with open_session(FakeDevice):
                    pass
        with open_session(FakeDevice):
            pass

    def test_invalid_path_never_opens(self):
        opened = []

        def factory():
            opened.append(1)
            return FakeDevice()

        with pytest.raises(ValidationError):
            with open_session(factory, "44'/60'"):
                pass
        assert opened == []


class TestLedgerDongleTransport:
    """Status word re-attached around ledgerblue's exchange()."""

    class Dongle:
        def __init__(self, exc=None):
            self.exc = exc
            self.sent = []
            self.closed = False

        def exchange(self, apdu):
            self.sent.append(apdu)
            if self.exc is not None:
                raise self.exc
            return bytearray(b"\x01\x02")

        def close(self):
            self.closed = True

    def test_success_appends_9000(self):
        pytest.importorskip("ledgerblue")
        dongle = self.Dongle()
        transport = LedgerDongleTransport(dongle)
        assert transport.exchange(b"\xe0\x05\x00\x00\x00") == b"\x01\x02\x90\x00"
        transport.close()
        assert dongle.closed

    def test_comm_exception_becomes_status_word(self):
        comm = pytest.importorskip("ledgerblue.commException")
        dongle = self.Dongle(comm.CommException("denied", 0x6985))
        session = DeviceSession(LedgerDongleTransport(dongle))
        with pytest.raises(TransportError) as info:
            session.sign_ecdsa_hash(b"\x00" * 32)
        assert info.value.is_user_rejection
