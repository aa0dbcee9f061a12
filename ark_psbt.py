"""
Ark PSBT container (BIP-174 v0)
===============================
A partially signed transaction carrying the taproot fields the Ark
protocol needs, plus the Ark-specific unknown-type fields:

    0xDE "cosigner" <index>   33-byte compressed MuSig2 cosigner key
    0xDE "taptree"            encoded tapscript leaves of the spent VTXO
    0xDE "expiry"             CScriptNum relative expiry of a tree output
    0xDE "condition"          extra witness items for a conditional leaf

Batch-tree nodes and intent proofs are both exchanged in this format.
"""

from __future__ import annotations

import logging
import struct
from base64 import b64decode, b64encode
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ark_scripts import (
    TAPSCRIPT_LEAF_VERSION, TapLeaf, decode_scriptnum, encode_scriptnum,
)
from bitcoin_protocol import (
    BIP341Sighash, Transaction, TxOut, compact_size, read_bytes, read_compact_size,
)

log = logging.getLogger("ark.psbt")
log.addHandler(logging.NullHandler())

PSBT_MAGIC = b"psbt\xff"

# BIP-174 key types
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_SCRIPT_SIG = 0x14
PSBT_IN_TAP_LEAF_SCRIPT = 0x15
PSBT_IN_TAP_INTERNAL_KEY = 0x17
PSBT_IN_TAP_MERKLE_ROOT = 0x18

# Ark unknown-type fields
ARK_FIELD_KEY_TYPE = 0xDE
ARK_COSIGNER = b"cosigner"
ARK_TAPTREE = b"taptree"
ARK_EXPIRY = b"expiry"
ARK_CONDITION = b"condition"


def encode_witness(items: Sequence[bytes]) -> bytes:
    raw = compact_size(len(items))
    for item in items:
        raw += compact_size(len(item)) + item
    return raw


def decode_witness(data: bytes) -> List[bytes]:
    n, pos = read_compact_size(data, 0)
    items = []
    for _ in range(n):
        size, pos = read_compact_size(data, pos)
        item, pos = read_bytes(data, pos, size)
        items.append(item)
    return items


def encode_taptree(leaves: Sequence[TapLeaf]) -> bytes:
    """``{<depth=1> <version> <varint len> <script>}*`` with no count prefix."""
    out = b""
    for leaf in leaves:
        out += bytes([1, leaf.version]) + compact_size(len(leaf.script)) + leaf.script
    return out


def decode_taptree(data: bytes) -> List[TapLeaf]:
    leaves = []
    pos = 0
    while pos < len(data):
        depth, version = data[pos], data[pos + 1] if pos + 1 < len(data) else -1
        if depth != 1:
            raise ValueError("Invalid depth")
        if version != TAPSCRIPT_LEAF_VERSION:
            raise ValueError("Invalid leaf version")
        size, pos = read_compact_size(data, pos + 2)
        script, pos = read_bytes(data, pos, size)
        leaves.append(TapLeaf(script, version))
    return leaves


def _kv(key: bytes, value: bytes) -> bytes:
    """Encode one BIP-174 key-value pair: <key-len><key><value-len><value>."""
    return compact_size(len(key)) + key + compact_size(len(value)) + value


def _read_kv(data: bytes, pos: int) -> Tuple[Optional[bytes], Optional[bytes], int]:
    """Read one key-value pair. Returns (None, None, pos) at a separator."""
    key_len, pos = read_compact_size(data, pos)
    if key_len == 0:
        return None, None, pos
    key, pos = read_bytes(data, pos, key_len)
    val_len, pos = read_compact_size(data, pos)
    val, pos = read_bytes(data, pos, val_len)
    return key, val, pos


@dataclass
class CosignerKey:
    index: int
    key: bytes


@dataclass
class PSBTInput:
    witness_utxo: Optional[TxOut] = None
    tap_internal_key: Optional[bytes] = None
    tap_merkle_root: Optional[bytes] = None
    tap_key_sig: Optional[bytes] = None
    tap_script_sigs: Dict[Tuple[bytes, bytes], bytes] = field(default_factory=dict)
    tap_leaf_scripts: Dict[bytes, TapLeaf] = field(default_factory=dict)
    final_script_witness: Optional[List[bytes]] = None
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    # ---- Ark fields ---------------------------------------------------
    def cosigners(self) -> List[CosignerKey]:
        """Cosigner keys ordered by their field index."""
        prefix = bytes([ARK_FIELD_KEY_TYPE]) + ARK_COSIGNER
        found = [
            CosignerKey(key[-1], value)
            for key, value in self.unknown.items()
            if key.startswith(prefix) and len(key) == len(prefix) + 1
        ]
        return sorted(found, key=lambda c: c.index)

    def set_cosigner(self, index: int, pubkey: bytes) -> None:
        if len(pubkey) != 33:
            raise ValueError("cosigner key must be 33-byte compressed")
        key = bytes([ARK_FIELD_KEY_TYPE]) + ARK_COSIGNER + bytes([index])
        self.unknown[key] = pubkey

    def _ark_get(self, name: bytes) -> Optional[bytes]:
        return self.unknown.get(bytes([ARK_FIELD_KEY_TYPE]) + name)

    def _ark_set(self, name: bytes, value: bytes) -> None:
        self.unknown[bytes([ARK_FIELD_KEY_TYPE]) + name] = value

    @property
    def taptree(self) -> Optional[List[TapLeaf]]:
        raw = self._ark_get(ARK_TAPTREE)
        return None if raw is None else decode_taptree(raw)

    def set_taptree(self, leaves: Sequence[TapLeaf]) -> None:
        self._ark_set(ARK_TAPTREE, encode_taptree(leaves))

    @property
    def expiry(self) -> Optional[int]:
        raw = self._ark_get(ARK_EXPIRY)
        if raw is None:
            return None
        return 0xFFFFFFFF if not raw else decode_scriptnum(raw, 6)

    def set_expiry(self, sequence: int) -> None:
        self._ark_set(ARK_EXPIRY, encode_scriptnum(sequence))

    @property
    def condition_witness(self) -> Optional[List[bytes]]:
        raw = self._ark_get(ARK_CONDITION)
        return None if raw is None else decode_witness(raw)

    def set_condition_witness(self, items: Sequence[bytes]) -> None:
        self._ark_set(ARK_CONDITION, encode_witness(items))

    # ---- BIP-174 ------------------------------------------------------
    def serialize(self) -> bytes:
        buf = b""
        if self.witness_utxo is not None:
            buf += _kv(bytes([PSBT_IN_WITNESS_UTXO]), self.witness_utxo.serialize())
        if self.final_script_witness is not None:
            buf += _kv(bytes([PSBT_IN_FINAL_SCRIPTWITNESS]),
                       encode_witness(self.final_script_witness))
        if self.tap_key_sig is not None:
            buf += _kv(bytes([PSBT_IN_TAP_KEY_SIG]), self.tap_key_sig)
        for (xonly, leaf_hash), sig in sorted(self.tap_script_sigs.items()):
            buf += _kv(bytes([PSBT_IN_TAP_SCRIPT_SIG]) + xonly + leaf_hash, sig)
        for control_block, leaf in sorted(self.tap_leaf_scripts.items()):
            buf += _kv(bytes([PSBT_IN_TAP_LEAF_SCRIPT]) + control_block,
                       leaf.script + bytes([leaf.version]))
        if self.tap_internal_key is not None:
            buf += _kv(bytes([PSBT_IN_TAP_INTERNAL_KEY]), self.tap_internal_key)
        if self.tap_merkle_root is not None:
            buf += _kv(bytes([PSBT_IN_TAP_MERKLE_ROOT]), self.tap_merkle_root)
        for key, value in sorted(self.unknown.items()):
            buf += _kv(key, value)
        return buf + b"\x00"

    def _load(self, key: bytes, val: bytes) -> None:
        key_type = key[0]
        if key_type == PSBT_IN_WITNESS_UTXO:
            self.witness_utxo, _ = TxOut.parse(val)
        elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
            self.final_script_witness = decode_witness(val)
        elif key_type == PSBT_IN_TAP_KEY_SIG:
            self.tap_key_sig = val
        elif key_type == PSBT_IN_TAP_SCRIPT_SIG and len(key) == 65:
            self.tap_script_sigs[(key[1:33], key[33:65])] = val
        elif key_type == PSBT_IN_TAP_LEAF_SCRIPT:
            self.tap_leaf_scripts[key[1:]] = TapLeaf(val[:-1], val[-1])
        elif key_type == PSBT_IN_TAP_INTERNAL_KEY:
            self.tap_internal_key = val
        elif key_type == PSBT_IN_TAP_MERKLE_ROOT:
            self.tap_merkle_root = val
        else:
            self.unknown[key] = val


@dataclass
class PSBTOutput:
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    def serialize(self) -> bytes:
        return b"".join(_kv(k, v) for k, v in sorted(self.unknown.items())) + b"\x00"


@dataclass
class ArkPSBT:
    """Unsigned transaction plus per-input / per-output PSBT maps."""
    tx: Transaction
    inputs: List[PSBTInput] = field(default_factory=list)
    outputs: List[PSBTOutput] = field(default_factory=list)

    def __post_init__(self) -> None:
        while len(self.inputs) < len(self.tx.inputs):
            self.inputs.append(PSBTInput())
        while len(self.outputs) < len(self.tx.outputs):
            self.outputs.append(PSBTOutput())
        if len(self.inputs) != len(self.tx.inputs) or len(self.outputs) != len(self.tx.outputs):
            raise ValueError("PSBT maps do not match the unsigned transaction")

    @property
    def txid(self) -> bytes:
        return self.tx.txid()

    @property
    def txid_hex(self) -> str:
        return self.tx.txid_hex

    def prevouts(self) -> List[TxOut]:
        missing = [i for i, inp in enumerate(self.inputs) if inp.witness_utxo is None]
        if missing:
            raise ValueError(f"inputs {missing} have no witness_utxo")
        return [inp.witness_utxo for inp in self.inputs]

    def sighash(self, input_index: int, leaf_hash: Optional[bytes] = None,
                hash_type: int = BIP341Sighash.SIGHASH_DEFAULT) -> bytes:
        calc = BIP341Sighash(self.tx, self.prevouts(), input_index)
        return calc.compute(hash_type=hash_type, leaf_hash=leaf_hash)

    # ---- finalise ------------------------------------------------------
    def extract(self) -> Transaction:
        """Copy final witnesses into a network-serializable transaction."""
        unsigned = [i for i, inp in enumerate(self.inputs) if not inp.final_script_witness]
        if unsigned:
            raise ValueError(f"inputs {unsigned} are not finalized")
        tx = Transaction.deserialize(self.tx.serialize(include_witness=False))
        for txin, psbt_in in zip(tx.inputs, self.inputs):
            txin.witness = list(psbt_in.final_script_witness)
        log.info("PSBT %s extracted: %d inputs", self.txid_hex, len(tx.inputs))
        return tx

    # ---- serialisation ------------------------------------------------
    def serialize(self) -> bytes:
        buf = PSBT_MAGIC
        buf += _kv(bytes([PSBT_GLOBAL_UNSIGNED_TX]), self.tx.serialize(include_witness=False))
        buf += b"\x00"
        for inp in self.inputs:
            buf += inp.serialize()
        for out in self.outputs:
            buf += out.serialize()
        return buf

    def to_base64(self) -> str:
        return b64encode(self.serialize()).decode()

    @classmethod
    def parse(cls, data: bytes) -> "ArkPSBT":
        if data[:5] != PSBT_MAGIC:
            raise ValueError("Not a valid BIP-174 PSBT (bad magic)")
        pos = 5
        tx: Optional[Transaction] = None
        while True:
            key, val, pos = _read_kv(data, pos)
            if key is None:
                break
            if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                tx = Transaction.deserialize(val)
        if tx is None:
            raise ValueError("PSBT has no unsigned transaction")
        inputs = []
        for _ in tx.inputs:
            inp = PSBTInput()
            while True:
                key, val, pos = _read_kv(data, pos)
                if key is None:
                    break
                inp._load(key, val)
            inputs.append(inp)
        outputs = []
        for _ in tx.outputs:
            out = PSBTOutput()
            while True:
                key, val, pos = _read_kv(data, pos)
                if key is None:
                    break
                out.unknown[key] = val
            outputs.append(out)
        return cls(tx, inputs, outputs)

    @classmethod
    def from_base64(cls, b64: str) -> "ArkPSBT":
        return cls.parse(b64decode(b64))
