"""
Bitcoin primitives shared by the Ark core
Reference: https://github.com/bitcoin/bips/blob/master/bip-0341.mediawiki
           https://github.com/bitcoin/bips/blob/master/bip-0350.mediawiki
"""

import hashlib
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from Crypto.Hash import RIPEMD160


def compact_size(n: int) -> bytes:
    """Bitcoin CompactSize encoding."""
    if n < 0xfd:
        return struct.pack("<B", n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack("<H", n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack("<I", n)
    else:
        return b'\xff' + struct.pack("<Q", n)


def read_compact_size(data: bytes, pos: int) -> Tuple[int, int]:
    """Decode a CompactSize at ``pos``. Returns (value, new_pos)."""
    if pos >= len(data):
        raise ValueError("unexpected end of data reading compact size")
    b0 = data[pos]
    if b0 < 0xfd:
        return b0, pos + 1
    elif b0 == 0xfd:
        return struct.unpack_from("<H", data, pos + 1)[0], pos + 3
    elif b0 == 0xfe:
        return struct.unpack_from("<I", data, pos + 1)[0], pos + 5
    else:
        return struct.unpack_from("<Q", data, pos + 1)[0], pos + 9


def read_bytes(data: bytes, pos: int, n: int) -> Tuple[bytes, int]:
    if pos + n > len(data):
        raise ValueError(f"unexpected end of data: wanted {n} bytes at {pos}")
    return data[pos:pos + n], pos + n


def tagged_hash(tag: str, msg: bytes) -> bytes:
    """BIP-340 tagged hash: SHA-256(SHA-256(tag) || SHA-256(tag) || msg)"""
    tag_hash = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_hash + tag_hash + msg).digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD-160(SHA-256(data))"""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


# ---------------------------------------------------------------------------
# Bech32m (BIP-350)
# ---------------------------------------------------------------------------

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32M_CONST = 0x2bc830a3


def _bech32_polymod(values: List[int]) -> int:
    gen = [0x3b6a57b2, 0x26508e6d, 0x1ea119fa, 0x3d4233dd, 0x2a1462b3]
    chk = 1
    for v in values:
        top = chk >> 25
        chk = (chk & 0x1ffffff) << 5 ^ v
        for i in range(5):
            chk ^= gen[i] if ((top >> i) & 1) else 0
    return chk


def _bech32_hrp_expand(hrp: str) -> List[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def convertbits(data: Sequence[int], frombits: int, tobits: int, pad: bool = True) -> Optional[List[int]]:
    """General power-of-2 base conversion."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1
    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None
    return ret


def bech32m_encode(hrp: str, data: Sequence[int]) -> str:
    """Encode 5-bit ``data`` under ``hrp`` with a Bech32m checksum."""
    values = _bech32_hrp_expand(hrp) + list(data)
    polymod = _bech32_polymod(values + [0] * 6) ^ BECH32M_CONST
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(BECH32_CHARSET[d] for d in list(data) + checksum)


def bech32m_decode(bech: str, max_length: Optional[int] = 90) -> Tuple[str, List[int]]:
    """Decode a Bech32m string into (hrp, 5-bit data).

    ``max_length=None`` lifts the BIP-173 length cap; Ark addresses carry
    65 bytes of payload and are longer than 90 characters.
    """
    if any(ord(x) < 33 or ord(x) > 126 for x in bech):
        raise ValueError("bech32m: invalid character")
    if bech.lower() != bech and bech.upper() != bech:
        raise ValueError("bech32m: mixed case")
    bech = bech.lower()
    pos = bech.rfind("1")
    if pos < 1 or pos + 7 > len(bech):
        raise ValueError("bech32m: bad separator position")
    if max_length is not None and len(bech) > max_length:
        raise ValueError("bech32m: string too long")
    if not all(x in BECH32_CHARSET for x in bech[pos + 1:]):
        raise ValueError("bech32m: invalid data character")
    hrp = bech[:pos]
    data = [BECH32_CHARSET.find(x) for x in bech[pos + 1:]]
    if _bech32_polymod(_bech32_hrp_expand(hrp) + data) != BECH32M_CONST:
        raise ValueError("bech32m: checksum mismatch")
    return hrp, data[:-6]


def encode_segwit_address(hrp: str, witver: int, witprog: bytes) -> str:
    return bech32m_encode(hrp, [witver] + convertbits(witprog, 8, 5))


def decode_segwit_address(hrp: str, address: str) -> Tuple[int, bytes]:
    got_hrp, data = bech32m_decode(address)
    if got_hrp != hrp:
        raise ValueError(f"Expected hrp {hrp!r}, got {got_hrp!r}")
    if not data:
        raise ValueError("empty witness data")
    prog = convertbits(data[1:], 5, 8, False)
    if prog is None or not 2 <= len(prog) <= 40:
        raise ValueError("invalid witness program")
    return data[0], bytes(prog)


def p2tr_script(xonly: bytes) -> bytes:
    """OP_1 <32-byte x-only pubkey>"""
    if len(xonly) != 32:
        raise ValueError(f"P2TR program must be 32 bytes, got {len(xonly)}")
    return b"\x51\x20" + xonly


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

SEQUENCE_FINAL = 0xFFFFFFFF


@dataclass(frozen=True)
class OutPoint:
    """Previous output reference; ``txid`` is kept in internal byte order."""
    txid: bytes
    vout: int

    def __post_init__(self) -> None:
        if len(self.txid) != 32:
            raise ValueError(f"txid must be 32 bytes, got {len(self.txid)}")

    @classmethod
    def from_hex(cls, txid_hex: str, vout: int) -> "OutPoint":
        return cls(bytes.fromhex(txid_hex)[::-1], vout)

    @property
    def txid_hex(self) -> str:
        return self.txid[::-1].hex()

    def serialize(self) -> bytes:
        return self.txid + struct.pack("<I", self.vout)

    def __str__(self) -> str:
        return f"{self.txid_hex}:{self.vout}"


@dataclass
class TxIn:
    prevout: OutPoint
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: List[bytes] = field(default_factory=list)


@dataclass
class TxOut:
    amount: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (struct.pack("<q", self.amount)
                + compact_size(len(self.script_pubkey)) + self.script_pubkey)

    @classmethod
    def parse(cls, data: bytes, pos: int = 0) -> Tuple["TxOut", int]:
        amount = struct.unpack_from("<q", data, pos)[0]
        spk_len, pos = read_compact_size(data, pos + 8)
        spk, pos = read_bytes(data, pos, spk_len)
        return cls(amount, spk), pos


@dataclass
class Transaction:
    version: int = 2
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness
        raw = struct.pack("<I", self.version)
        if segwit:
            raw += b"\x00\x01"
        raw += compact_size(len(self.inputs))
        for inp in self.inputs:
            raw += inp.prevout.serialize()
            raw += compact_size(len(inp.script_sig)) + inp.script_sig
            raw += struct.pack("<I", inp.sequence)
        raw += compact_size(len(self.outputs))
        for out in self.outputs:
            raw += out.serialize()
        if segwit:
            for inp in self.inputs:
                raw += compact_size(len(inp.witness))
                for item in inp.witness:
                    raw += compact_size(len(item)) + item
        raw += struct.pack("<I", self.locktime)
        return raw

    def txid(self) -> bytes:
        """Double-SHA256 of the non-witness serialization (internal order)."""
        return hashlib.sha256(hashlib.sha256(self.serialize(False)).digest()).digest()

    @property
    def txid_hex(self) -> str:
        return self.txid()[::-1].hex()

    @classmethod
    def deserialize(cls, data: bytes) -> "Transaction":
        tx = cls(version=struct.unpack_from("<I", data, 0)[0])
        pos = 4
        segwit = data[pos:pos + 2] == b"\x00\x01"
        if segwit:
            pos += 2
        n_in, pos = read_compact_size(data, pos)
        for _ in range(n_in):
            txid, pos = read_bytes(data, pos, 32)
            vout = struct.unpack_from("<I", data, pos)[0]
            script_len, pos = read_compact_size(data, pos + 4)
            script_sig, pos = read_bytes(data, pos, script_len)
            seq = struct.unpack_from("<I", data, pos)[0]
            pos += 4
            tx.inputs.append(TxIn(OutPoint(txid, vout), script_sig, seq))
        n_out, pos = read_compact_size(data, pos)
        for _ in range(n_out):
            out, pos = TxOut.parse(data, pos)
            tx.outputs.append(out)
        if segwit:
            for inp in tx.inputs:
                n_items, pos = read_compact_size(data, pos)
                for _ in range(n_items):
                    item_len, pos = read_compact_size(data, pos)
                    item, pos = read_bytes(data, pos, item_len)
                    inp.witness.append(item)
        tx.locktime = struct.unpack_from("<I", data, pos)[0]
        if pos + 4 != len(data):
            raise ValueError("trailing bytes after transaction")
        return tx


# ---------------------------------------------------------------------------
# BIP-341 signature hash
# ---------------------------------------------------------------------------

class BIP341Sighash:
    """Full BIP-341 Taproot signature hash calculator."""

    SIGHASH_DEFAULT = 0x00
    SIGHASH_ALL = 0x01
    SIGHASH_NONE = 0x02
    SIGHASH_SINGLE = 0x03
    SIGHASH_ANYONECANPAY = 0x80

    _VALID_TYPES = (0x00, 0x01, 0x02, 0x03, 0x81, 0x82, 0x83)

    def __init__(self, tx: Transaction, prevouts: Sequence[TxOut], input_index: int):
        if len(prevouts) != len(tx.inputs):
            raise ValueError(
                f"prevout count ({len(prevouts)}) != input count ({len(tx.inputs)})"
            )
        if not 0 <= input_index < len(tx.inputs):
            raise ValueError(f"input index {input_index} out of range")
        self.tx = tx
        self.prevouts = list(prevouts)
        self.input_index = input_index

    def compute(
        self,
        hash_type: int = SIGHASH_DEFAULT,
        annex: bytes = b'',
        leaf_hash: Optional[bytes] = None,
    ) -> bytes:
        """
        Compute the BIP-341 signature hash.

        Args:
            hash_type: SIGHASH type (default: 0x00)
            annex: Optional annex data (starts with 0x50)
            leaf_hash: TapLeaf hash for script-path spending; ``None`` for key-path

        Returns:
            32-byte signature hash
        """
        if hash_type not in self._VALID_TYPES:
            raise ValueError(f"invalid taproot sighash type 0x{hash_type:02x}")
        if annex and annex[0] != 0x50:
            raise ValueError("annex must start with 0x50")

        ext_flag = 1 if leaf_hash is not None else 0
        spend_type = (ext_flag << 1) | (1 if annex else 0)
        base_type = hash_type & 0x03
        anyone_can_pay = bool(hash_type & self.SIGHASH_ANYONECANPAY)

        msg = bytearray()
        msg += b'\x00'  # epoch
        msg += bytes([hash_type])
        msg += struct.pack("<I", self.tx.version)
        msg += struct.pack("<I", self.tx.locktime)

        if not anyone_can_pay:
            msg += self._sha_prevouts()
            msg += self._sha_amounts()
            msg += self._sha_scriptpubkeys()
            msg += self._sha_sequences()

        if base_type not in (self.SIGHASH_NONE, self.SIGHASH_SINGLE):
            msg += self._sha_outputs()

        msg += bytes([spend_type])

        if anyone_can_pay:
            inp = self.tx.inputs[self.input_index]
            prev = self.prevouts[self.input_index]
            msg += inp.prevout.serialize()
            msg += struct.pack("<q", prev.amount)
            msg += compact_size(len(prev.script_pubkey)) + prev.script_pubkey
            msg += struct.pack("<I", inp.sequence)
        else:
            msg += struct.pack("<I", self.input_index)

        if annex:
            msg += sha256(compact_size(len(annex)) + annex)

        if base_type == self.SIGHASH_SINGLE:
            if self.input_index >= len(self.tx.outputs):
                raise ValueError("SIGHASH_SINGLE without a matching output")
            msg += sha256(self.tx.outputs[self.input_index].serialize())

        if ext_flag == 1:
            if len(leaf_hash) != 32:
                raise ValueError("leaf hash must be 32 bytes")
            msg += leaf_hash
            msg += b'\x00'  # key_version
            msg += struct.pack("<I", 0xFFFFFFFF)  # codesep_pos

        return tagged_hash("TapSighash", bytes(msg))

    # === Helper methods for hashing transaction data ===

    def _sha_prevouts(self) -> bytes:
        return sha256(b''.join(inp.prevout.serialize() for inp in self.tx.inputs))

    def _sha_amounts(self) -> bytes:
        return sha256(b''.join(struct.pack("<q", p.amount) for p in self.prevouts))

    def _sha_scriptpubkeys(self) -> bytes:
        return sha256(b''.join(
            compact_size(len(p.script_pubkey)) + p.script_pubkey for p in self.prevouts
        ))

    def _sha_sequences(self) -> bytes:
        return sha256(b''.join(struct.pack("<I", inp.sequence) for inp in self.tx.inputs))

    def _sha_outputs(self) -> bytes:
        return sha256(b''.join(out.serialize() for out in self.tx.outputs))
