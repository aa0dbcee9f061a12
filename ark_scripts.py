"""
Ark Tapscript Builder
=====================
Composable script fragments used to express Ark spending paths:

- hash-lock (SHA256 / HASH160 preimage reveal)
- absolute timelock (CLTV) and relative timelock (CSV)
- N-of-N multisig as a CHECKSIGVERIFY chain
- collaborative path (server co-signature) and unilateral exit path
- verify / raw-script / composite wrappers for externally supplied scripts

Fragments are immutable.  ``build()`` returns the ordered operations,
``script()`` the serialized bytes and ``leaf()`` the tapleaf (version 0xc0).
An operation is either an ``int`` opcode or ``bytes`` to be pushed.
"""

from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

from coincurve import PublicKey

from bitcoin_protocol import compact_size, hash160, sha256, tagged_hash

Operation = Union[int, bytes]

# ---------------------------------------------------------------------------
# Opcodes
# ---------------------------------------------------------------------------
OP_0 = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_1NEGATE = 0x4f
OP_1 = 0x51
OP_16 = 0x60
OP_VERIFY = 0x69
OP_RETURN = 0x6a
OP_DROP = 0x75
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_SHA256 = 0xa8
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac
OP_CHECKSIGVERIFY = 0xad
OP_CHECKLOCKTIMEVERIFY = 0xb1
OP_CHECKSEQUENCEVERIFY = 0xb2

TAPSCRIPT_LEAF_VERSION = 0xc0

# BIP-68 relative locktime encoding
SEQUENCE_DISABLE_FLAG = 1 << 31
SEQUENCE_TYPE_FLAG = 1 << 22
SEQUENCE_MASK = 0x0000ffff
SEQUENCE_GRANULARITY = 9  # seconds-based locks count 512 s units

LOCKTIME_THRESHOLD = 500_000_000


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def encode_scriptnum(n: int) -> bytes:
    """Minimal CScriptNum encoding (little-endian, sign bit in the top byte)."""
    if n == 0:
        return b""
    neg = n < 0
    n = abs(n)
    result = bytearray()
    while n:
        result.append(n & 0xff)
        n >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if neg else 0x00)
    elif neg:
        result[-1] |= 0x80
    return bytes(result)


def decode_scriptnum(data: bytes, max_size: int = 5) -> int:
    if len(data) > max_size:
        raise ValueError(f"script number longer than {max_size} bytes")
    if not data:
        return 0
    if data[-1] & 0x7f == 0 and (len(data) == 1 or not data[-2] & 0x80):
        raise ValueError("non-minimally encoded script number")
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def push_int(n: int) -> Operation:
    """Small integers become OP_N, everything else a minimal scriptnum push."""
    if n == 0:
        return OP_0
    if n == -1:
        return OP_1NEGATE
    if 1 <= n <= 16:
        return OP_1 + n - 1
    return encode_scriptnum(n)


def op_to_int(op: Operation) -> int:
    if isinstance(op, bytes):
        return decode_scriptnum(op)
    if op == OP_0:
        return 0
    if op == OP_1NEGATE:
        return -1
    if OP_1 <= op <= OP_16:
        return op - OP_1 + 1
    raise ValueError(f"opcode 0x{op:02x} is not a number push")


def _push_data(data: bytes) -> bytes:
    n = len(data)
    if n == 0:
        return bytes([OP_0])
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    elif n <= 0xff:
        return bytes([OP_PUSHDATA1, n]) + data
    elif n <= 0xffff:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", n) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", n) + data


def serialize_ops(ops: Sequence[Operation]) -> bytes:
    out = bytearray()
    for op in ops:
        if isinstance(op, bytes):
            out += _push_data(op)
        else:
            out.append(op)
    return bytes(out)


def parse_script(script: bytes) -> List[Operation]:
    """Split raw script bytes into operations (pushes become ``bytes``)."""
    ops: List[Operation] = []
    i = 0
    while i < len(script):
        op = script[i]
        i += 1
        if 0x01 <= op < OP_PUSHDATA1:
            n = op
        elif op == OP_PUSHDATA1:
            n = script[i] if i < len(script) else 0
            i += 1
        elif op == OP_PUSHDATA2:
            n = struct.unpack_from("<H", script, i)[0]
            i += 2
        elif op == OP_PUSHDATA4:
            n = struct.unpack_from("<I", script, i)[0]
            i += 4
        else:
            ops.append(op)
            continue
        if i + n > len(script):
            raise ValueError("push past end of script")
        ops.append(script[i:i + n])
        i += n
    return ops


def parse_xonly(key: Union[bytes, str]) -> bytes:
    """Validate an x-only (32 B) or compressed (33 B) key; return 32-byte x-only."""
    if isinstance(key, str):
        key = bytes.fromhex(key)
    if len(key) == 33:
        try:
            PublicKey(key)
        except ValueError as exc:
            raise ValueError(f"invalid public key {key.hex()}") from exc
        return key[1:]
    if len(key) != 32:
        raise ValueError(f"x-only public key must be 32 bytes, got {len(key)}")
    try:
        PublicKey(b"\x02" + key)
    except ValueError as exc:
        raise ValueError(f"{key.hex()} is not a valid x-only public key") from exc
    return key


# ---------------------------------------------------------------------------
# Timelocks
# ---------------------------------------------------------------------------

class TimelockUnit(Enum):
    BLOCKS = "blocks"
    SECONDS = "seconds"


@dataclass(frozen=True)
class RelativeLocktime:
    """BIP-68 relative timelock.  Seconds must be whole 512 s units."""
    value: int
    unit: TimelockUnit = TimelockUnit.BLOCKS

    def __post_init__(self) -> None:
        if self.value <= 0:
            raise ValueError(f"relative timelock must be positive, got {self.value}")
        if self.unit is TimelockUnit.SECONDS:
            if self.value % 512 != 0 or self.value < 512:
                raise ValueError(
                    f"seconds timelock must be a multiple of 512 and at least 512, "
                    f"got {self.value}"
                )
            if (self.value >> SEQUENCE_GRANULARITY) > SEQUENCE_MASK:
                raise ValueError(f"seconds timelock {self.value} out of range")
        elif self.value > SEQUENCE_MASK:
            raise ValueError(f"block timelock {self.value} out of range")

    @property
    def sequence(self) -> int:
        if self.unit is TimelockUnit.SECONDS:
            return SEQUENCE_TYPE_FLAG | (self.value >> SEQUENCE_GRANULARITY)
        return self.value

    @classmethod
    def from_sequence(cls, sequence: int) -> "RelativeLocktime":
        if sequence & SEQUENCE_DISABLE_FLAG:
            raise ValueError(f"sequence 0x{sequence:08x} has relative locktime disabled")
        if sequence & ~(SEQUENCE_TYPE_FLAG | SEQUENCE_MASK):
            raise ValueError(f"non-canonical relative locktime 0x{sequence:08x}")
        if sequence & SEQUENCE_TYPE_FLAG:
            return cls((sequence & SEQUENCE_MASK) << SEQUENCE_GRANULARITY, TimelockUnit.SECONDS)
        return cls(sequence & SEQUENCE_MASK, TimelockUnit.BLOCKS)

    @classmethod
    def from_descriptor(cls, d: dict) -> "RelativeLocktime":
        """Build from a ``{"type": "seconds"|"blocks", "value": n}`` descriptor."""
        return cls(int(d["value"]), TimelockUnit(d["type"]))

    def to_descriptor(self) -> dict:
        return {"type": self.unit.value, "value": self.value}


def validate_locktime(locktime: int) -> int:
    if not 0 < locktime <= 0xFFFFFFFF:
        raise ValueError(f"absolute locktime must be in 1..2^32-1, got {locktime}")
    return locktime


# ---------------------------------------------------------------------------
# Leaf
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TapLeaf:
    script: bytes
    version: int = TAPSCRIPT_LEAF_VERSION

    def __post_init__(self) -> None:
        if self.version & 1:
            raise ValueError(f"leaf version 0x{self.version:02x} has parity bit set")

    @property
    def leaf_hash(self) -> bytes:
        return tagged_hash(
            "TapLeaf", bytes([self.version]) + compact_size(len(self.script)) + self.script
        )

    def __repr__(self) -> str:
        return f"TapLeaf(0x{self.version:02x}, {self.script.hex()})"


# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------

class ScriptFragment(ABC):
    """A piece of tapscript.  Subclasses are frozen dataclasses."""

    @abstractmethod
    def build(self) -> Tuple[Operation, ...]:
        ...

    def script(self) -> bytes:
        return serialize_ops(self.build())

    def leaf(self) -> TapLeaf:
        return TapLeaf(self.script())

    @property
    def sequence(self) -> Optional[int]:
        """nSequence the spending input must carry, if any."""
        return None

    @property
    def locktime(self) -> Optional[int]:
        """nLockTime the spending transaction must carry, if any."""
        return None


class HashKind(Enum):
    SHA256 = "SHA256"
    HASH160 = "HASH160"

    @property
    def digest_size(self) -> int:
        return 32 if self is HashKind.SHA256 else 20

    def digest(self, preimage: bytes) -> bytes:
        return sha256(preimage) if self is HashKind.SHA256 else hash160(preimage)


@dataclass(frozen=True)
class HashLock(ScriptFragment):
    hash: bytes
    kind: HashKind = HashKind.HASH160

    def __post_init__(self) -> None:
        if len(self.hash) != self.kind.digest_size:
            raise ValueError(
                f"{self.kind.value} hash must be {self.kind.digest_size} bytes, "
                f"got {len(self.hash)}"
            )

    def build(self) -> Tuple[Operation, ...]:
        op = OP_SHA256 if self.kind is HashKind.SHA256 else OP_HASH160
        return (op, self.hash, OP_EQUAL)


@dataclass(frozen=True)
class AbsoluteTimelock(ScriptFragment):
    value: int

    def __post_init__(self) -> None:
        validate_locktime(self.value)

    def build(self) -> Tuple[Operation, ...]:
        return (push_int(self.value), OP_CHECKLOCKTIMEVERIFY, OP_DROP)

    @property
    def locktime(self) -> Optional[int]:
        return self.value


@dataclass(frozen=True)
class RelativeTimelock(ScriptFragment):
    """``[condition OP_VERIFY] <sequence> OP_CSV OP_DROP``"""
    timeout: RelativeLocktime
    condition: Optional[ScriptFragment] = None

    def build(self) -> Tuple[Operation, ...]:
        ops: Tuple[Operation, ...] = ()
        if self.condition is not None:
            ops += self.condition.build() + (OP_VERIFY,)
        return ops + (push_int(self.timeout.sequence), OP_CHECKSEQUENCEVERIFY, OP_DROP)

    @property
    def sequence(self) -> Optional[int]:
        return self.timeout.sequence

    @property
    def locktime(self) -> Optional[int]:
        return self.condition.locktime if self.condition is not None else None


@dataclass(frozen=True)
class NofNMultisig(ScriptFragment):
    """Every owner signs: ``<k_1> OP_CHECKSIGVERIFY ... <k_n> OP_CHECKSIGVERIFY``"""
    owners: Tuple[bytes, ...]
    threshold: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.owners:
            raise ValueError("multisig requires at least one owner")
        if self.threshold is not None and self.threshold != len(self.owners):
            raise ValueError(
                f"only N-of-N multisig is supported "
                f"(threshold {self.threshold} of {len(self.owners)})"
            )
        object.__setattr__(self, "owners", tuple(parse_xonly(k) for k in self.owners))

    def build(self) -> Tuple[Operation, ...]:
        ops: List[Operation] = []
        for key in self.owners:
            ops += [key, OP_CHECKSIGVERIFY]
        return tuple(ops)

    def build_checksig(self) -> Tuple[Operation, ...]:
        """Same chain, but the final check leaves its result on the stack."""
        return self.build()[:-1] + (OP_CHECKSIG,)


@dataclass(frozen=True)
class CollaborativePath(ScriptFragment):
    """``[condition] <server> OP_CHECKSIG``"""
    server: bytes
    condition: Optional[ScriptFragment] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "server", parse_xonly(self.server))

    def build(self) -> Tuple[Operation, ...]:
        ops: Tuple[Operation, ...] = ()
        if self.condition is not None:
            ops += self.condition.build()
        return ops + (self.server, OP_CHECKSIG)

    @property
    def sequence(self) -> Optional[int]:
        return self.condition.sequence if self.condition is not None else None

    @property
    def locktime(self) -> Optional[int]:
        return self.condition.locktime if self.condition is not None else None


@dataclass(frozen=True)
class UnilateralPath(ScriptFragment):
    """Owners may exit alone once the relative timeout has elapsed."""
    timeout: RelativeLocktime
    owners: NofNMultisig
    condition: Optional[ScriptFragment] = None

    def build(self) -> Tuple[Operation, ...]:
        lock = RelativeTimelock(self.timeout, self.condition)
        return lock.build() + self.owners.build_checksig()

    @property
    def sequence(self) -> Optional[int]:
        return self.timeout.sequence

    @property
    def locktime(self) -> Optional[int]:
        return self.condition.locktime if self.condition is not None else None


@dataclass(frozen=True)
class Verify(ScriptFragment):
    def build(self) -> Tuple[Operation, ...]:
        return (OP_VERIFY,)


@dataclass(frozen=True)
class RawScript(ScriptFragment):
    """Wraps an externally supplied script verbatim."""
    raw: bytes

    def build(self) -> Tuple[Operation, ...]:
        return tuple(parse_script(self.raw))

    def script(self) -> bytes:
        return self.raw


@dataclass(frozen=True)
class Composite(ScriptFragment):
    parts: Tuple[ScriptFragment, ...]

    def __init__(self, *parts: ScriptFragment) -> None:
        object.__setattr__(self, "parts", tuple(parts))

    def build(self) -> Tuple[Operation, ...]:
        ops: Tuple[Operation, ...] = ()
        for part in self.parts:
            ops += part.build()
        return ops

    @property
    def sequence(self) -> Optional[int]:
        return next((p.sequence for p in self.parts if p.sequence is not None), None)

    @property
    def locktime(self) -> Optional[int]:
        return next((p.locktime for p in self.parts if p.locktime is not None), None)


# ---------------------------------------------------------------------------
# Leaf inspection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LeafRequirements:
    """What a spender must supply for a leaf built from the fragments above."""
    keys: Tuple[bytes, ...]
    hash_locks: Tuple[Tuple[HashKind, bytes], ...]
    sequence: Optional[int]
    locktime: Optional[int]


def leaf_requirements(script: bytes) -> LeafRequirements:
    """Recover signers, hash-locks and timelocks from a fragment-built script."""
    ops = parse_script(script)
    keys: List[bytes] = []
    locks: List[Tuple[HashKind, bytes]] = []
    sequence = locktime = None
    for i, op in enumerate(ops):
        nxt = ops[i + 1] if i + 1 < len(ops) else None
        if isinstance(op, bytes) and len(op) == 32 and nxt in (OP_CHECKSIG, OP_CHECKSIGVERIFY):
            keys.append(op)
        elif op in (OP_SHA256, OP_HASH160) and isinstance(nxt, bytes):
            kind = HashKind.SHA256 if op == OP_SHA256 else HashKind.HASH160
            locks.append((kind, nxt))
        elif nxt == OP_CHECKSEQUENCEVERIFY:
            sequence = op_to_int(op)
        elif nxt == OP_CHECKLOCKTIMEVERIFY:
            locktime = op_to_int(op)
    return LeafRequirements(tuple(keys), tuple(locks), sequence, locktime)
