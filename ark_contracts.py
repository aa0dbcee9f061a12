"""
Ark Contracts
=============
Each contract variant is a frozen record of its parameters that knows how
to lay out its spending paths as tapscript leaves.  All variants share the
unspendable internal key, so an output can only ever be spent through one
of its leaves.

Variants are dispatched by a stable type tag at the persistence boundary:

    serialize_contract(c)          -> ("HTLC", {"server": ..., ...})
    parse_contract("HTLC", fields) -> VHTLCContract(...)

Two contracts are equal when they lock to the same output script,
regardless of how they were constructed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import cached_property
from typing import ClassVar, Dict, List, Optional, Tuple, Type

from coincurve import PublicKey

from ark_scripts import (
    AbsoluteTimelock, CollaborativePath, Composite, HashKind, HashLock,
    NofNMultisig, RawScript, RelativeLocktime, ScriptFragment, TapLeaf,
    UnilateralPath, Verify, parse_xonly, validate_locktime,
)
from ark_taproot import UNSPENDABLE_KEY_XONLY, ControlBlock, TaprootSpendInfo
from bitcoin_protocol import (
    bech32m_decode, bech32m_encode, convertbits, hash160, p2tr_script,
)

log = logging.getLogger("ark.contracts")
log.addHandler(logging.NullHandler())


class ContractError(ValueError):
    """Contract parameters are semantically invalid."""


class UnknownContractError(ValueError):
    """Type tag not registered, or persisted fields are incomplete."""


# ============================================================
# ARK ADDRESS
# ============================================================

ARK_HRP = {"mainnet": "ark", "testnet": "tark", "signet": "tark",
           "regtest": "tark", "mutinynet": "tark"}


@dataclass(frozen=True)
class ArkAddress:
    """Bech32m ``version || server x-only || tweaked output key``."""
    server_key: bytes
    tweaked_key: bytes
    version: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "server_key", parse_xonly(self.server_key))
        object.__setattr__(self, "tweaked_key", parse_xonly(self.tweaked_key))
        if not 0 <= self.version <= 0xff:
            raise ValueError(f"address version {self.version} out of range")

    @property
    def script_pubkey(self) -> bytes:
        return p2tr_script(self.tweaked_key)

    def encode(self, network: str = "mainnet") -> str:
        payload = bytes([self.version]) + self.server_key + self.tweaked_key
        return bech32m_encode(ARK_HRP[network], convertbits(payload, 8, 5))

    @classmethod
    def parse(cls, address: str) -> "ArkAddress":
        hrp, data = bech32m_decode(address.lower(), max_length=None)
        if hrp not in ("ark", "tark"):
            raise ValueError(f"Invalid Ark address: {address}")
        payload = convertbits(data, 5, 8, False)
        if payload is None or len(payload) != 65:
            raise ValueError(f"Invalid Ark address: {address}")
        payload = bytes(payload)
        return cls(payload[1:33], payload[33:], payload[0])


# ============================================================
# CONTRACT BASE + REGISTRY
# ============================================================

_CONTRACT_REGISTRY: Dict[str, Type["ArkContract"]] = {}


def register_contract(cls: Type["ArkContract"]) -> Type["ArkContract"]:
    if cls.TYPE in _CONTRACT_REGISTRY:
        raise ValueError(f"contract type {cls.TYPE!r} already registered")
    _CONTRACT_REGISTRY[cls.TYPE] = cls
    return cls


def registered_contract_types() -> Tuple[str, ...]:
    return tuple(_CONTRACT_REGISTRY)


@dataclass(frozen=True)
class PathSpendInfo:
    name: str
    fragment: ScriptFragment
    leaf: TapLeaf
    control_block: ControlBlock

    @property
    def sequence(self) -> Optional[int]:
        return self.fragment.sequence

    @property
    def locktime(self) -> Optional[int]:
        return self.fragment.locktime


class ArkContract(ABC):
    TYPE: ClassVar[str]
    # Server-backed contracts must offer both a cooperative and an exit path
    REQUIRES_EXIT_PATHS: ClassVar[bool] = True

    server: Optional[bytes]

    @abstractmethod
    def paths(self) -> Dict[str, ScriptFragment]:
        """Named spending paths, in declaration order."""

    @abstractmethod
    def fields(self) -> Dict[str, str]:
        """Flat string map sufficient to rebuild the contract."""

    @classmethod
    @abstractmethod
    def from_fields(cls, fields: Dict[str, str]) -> "ArkContract":
        ...

    # ---- taproot ------------------------------------------------------
    def leaves(self) -> List[TapLeaf]:
        fragments = list(self.paths().values())
        if self.REQUIRES_EXIT_PATHS:
            if not any(isinstance(f, CollaborativePath) for f in fragments):
                raise ContractError("At least one collaborative path is required")
            if not any(isinstance(f, UnilateralPath) for f in fragments):
                raise ContractError("At least one unilateral path is required")
            if not all(isinstance(f, (CollaborativePath, UnilateralPath)) for f in fragments):
                raise ContractError("Only collaborative and unilateral paths are allowed")
        return [f.leaf() for f in fragments]

    @cached_property
    def spend_info(self) -> TaprootSpendInfo:
        return TaprootSpendInfo(UNSPENDABLE_KEY_XONLY, self.leaves())

    @property
    def script_pubkey(self) -> bytes:
        return self.spend_info.script_pubkey

    def get_spend_info(self, path: str) -> PathSpendInfo:
        paths = self.paths()
        if path not in paths:
            raise ContractError(
                f"{self.TYPE} has no path {path!r} (known: {', '.join(paths)})"
            )
        fragment = paths[path]
        leaf = fragment.leaf()
        return PathSpendInfo(path, fragment, leaf, self.spend_info.control_block(leaf))

    def address(self) -> ArkAddress:
        if self.server is None:
            raise ContractError(f"{self.TYPE} has no server key and no Ark address")
        return ArkAddress(self.server, self.spend_info.output_key)

    # ---- identity -----------------------------------------------------
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ArkContract):
            return NotImplemented
        return self.script_pubkey == other.script_pubkey

    def __hash__(self) -> int:
        return hash(self.script_pubkey)

    def __str__(self) -> str:
        data = "&".join(f"{k}={v}" for k, v in self.fields().items())
        return f"arkcontract={self.TYPE}&{data}"


def serialize_contract(contract: ArkContract) -> Tuple[str, Dict[str, str]]:
    return contract.TYPE, contract.fields()


def parse_contract(type_tag: str, fields: Dict[str, str]) -> ArkContract:
    cls = _CONTRACT_REGISTRY.get(type_tag)
    if cls is None:
        raise UnknownContractError(f"unknown contract type {type_tag!r}")
    try:
        return cls.from_fields(fields)
    except KeyError as exc:
        raise UnknownContractError(
            f"incomplete {type_tag} contract: missing field {exc.args[0]!r}"
        ) from exc


def contract_from_string(text: str) -> ArkContract:
    """Parse the ``arkcontract=<type>&k=v&...`` form."""
    if not text.startswith("arkcontract"):
        raise UnknownContractError("Invalid contract format. Must start with 'arkcontract'")
    data: Dict[str, str] = {}
    for part in text.split("&"):
        key, sep, value = part.partition("=")
        if not sep:
            raise UnknownContractError(f"malformed contract segment {part!r}")
        data[key] = value
    type_tag = data.pop("arkcontract")
    if not type_tag:
        raise UnknownContractError("Contract type is missing in the contract data")
    return parse_contract(type_tag, data)


def _sequence_field(fields: Dict[str, str], name: str) -> RelativeLocktime:
    return RelativeLocktime.from_sequence(int(fields[name]))


def _key(value) -> bytes:
    try:
        return parse_xonly(value)
    except ValueError as exc:
        raise ContractError(str(exc)) from exc


def _tweak_xonly(key: bytes, tweak: bytes) -> bytes:
    """x-only of ``lift_x(key) + tweak·G``."""
    try:
        tweaked = PublicKey(b"\x02" + key).add(tweak)
    except ValueError as exc:
        raise ContractError(f"invalid key tweak: {exc}") from exc
    return tweaked.format(compressed=True)[1:]


# ============================================================
# VARIANTS
# ============================================================

@register_contract
@dataclass(frozen=True, eq=False)
class PaymentContract(ArkContract):
    """Plain VTXO: server+user cooperatively, or user alone after ``exit_delay``."""
    TYPE: ClassVar[str] = "Payment"

    server: bytes
    user: bytes
    exit_delay: RelativeLocktime

    def __post_init__(self) -> None:
        object.__setattr__(self, "server", _key(self.server))
        object.__setattr__(self, "user", _key(self.user))

    @property
    def owner_key(self) -> bytes:
        return self.user

    def paths(self) -> Dict[str, ScriptFragment]:
        owner = NofNMultisig((self.owner_key,))
        return {
            "collaborative": CollaborativePath(self.server, owner),
            "unilateral": UnilateralPath(self.exit_delay, owner),
        }

    def fields(self) -> Dict[str, str]:
        return {
            "exit_delay": str(self.exit_delay.sequence),
            "user": self.user.hex(),
            "server": self.server.hex(),
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> "PaymentContract":
        return cls(
            server=bytes.fromhex(fields["server"]),
            user=bytes.fromhex(fields["user"]),
            exit_delay=_sequence_field(fields, "exit_delay"),
        )


@register_contract
@dataclass(frozen=True, eq=False)
class TweakedPaymentContract(PaymentContract):
    """
    Payment to ``user + tweak·G``.

    The persisted ``user`` is the untweaked key, so the wallet holding its
    secret can re-derive the spending key from ``tweak``.
    """
    TYPE: ClassVar[str] = "TweakedPayment"

    tweak: bytes

    def __post_init__(self) -> None:
        super().__post_init__()
        if len(self.tweak) != 32:
            raise ContractError(f"tweak must be 32 bytes, got {len(self.tweak)}")
        _tweak_xonly(self.user, self.tweak)

    @property
    def owner_key(self) -> bytes:
        return _tweak_xonly(self.user, self.tweak)

    def fields(self) -> Dict[str, str]:
        return {
            "exit_delay": str(self.exit_delay.sequence),
            "user": self.user.hex(),
            "tweak": self.tweak.hex(),
            "server": self.server.hex(),
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> "TweakedPaymentContract":
        return cls(
            server=bytes.fromhex(fields["server"]),
            user=bytes.fromhex(fields["user"]),
            exit_delay=_sequence_field(fields, "exit_delay"),
            tweak=bytes.fromhex(fields["tweak"]),
        )


@register_contract
@dataclass(frozen=True, eq=False)
class HashLockPaymentContract(ArkContract):
    """Payment whose cooperative path also requires revealing ``preimage``."""
    TYPE: ClassVar[str] = "HashLockPaymentContract"

    server: bytes
    user: bytes
    exit_delay: RelativeLocktime
    preimage: bytes
    hash_lock_type: HashKind = HashKind.SHA256

    def __post_init__(self) -> None:
        object.__setattr__(self, "server", _key(self.server))
        object.__setattr__(self, "user", _key(self.user))
        if not self.preimage:
            raise ContractError("preimage must not be empty")

    @property
    def hash(self) -> bytes:
        return self.hash_lock_type.digest(self.preimage)

    def paths(self) -> Dict[str, ScriptFragment]:
        owner = NofNMultisig((self.user,))
        claim = Composite(HashLock(self.hash, self.hash_lock_type), Verify(), owner)
        return {
            "claim": CollaborativePath(self.server, claim),
            "unilateral": UnilateralPath(self.exit_delay, owner),
        }

    def fields(self) -> Dict[str, str]:
        return {
            "exit_delay": str(self.exit_delay.sequence),
            "user": self.user.hex(),
            "preimage": self.preimage.hex(),
            "server": self.server.hex(),
            "hash_lock_type": self.hash_lock_type.value,
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> "HashLockPaymentContract":
        return cls(
            server=bytes.fromhex(fields["server"]),
            user=bytes.fromhex(fields["user"]),
            exit_delay=_sequence_field(fields, "exit_delay"),
            preimage=bytes.fromhex(fields["preimage"]),
            hash_lock_type=HashKind(fields["hash_lock_type"]),
        )


@register_contract
@dataclass(frozen=True, eq=False)
class VHTLCContract(ArkContract):
    """
    Virtual HTLC for submarine swaps.

    Six leaves: claim, cooperative refund and refund-without-receiver
    go through the server; the three unilateral variants each wait out
    their own relative delay.
    """
    TYPE: ClassVar[str] = "HTLC"

    server: bytes
    sender: bytes
    receiver: bytes
    hash: bytes
    refund_locktime: int
    unilateral_claim_delay: RelativeLocktime
    unilateral_refund_delay: RelativeLocktime
    unilateral_refund_without_receiver_delay: RelativeLocktime
    preimage: Optional[bytes] = None

    def __post_init__(self) -> None:
        for name in ("server", "sender", "receiver"):
            object.__setattr__(self, name, _key(getattr(self, name)))
        if len(self.hash) != 20:
            raise ContractError(f"HTLC hash must be 20 bytes (HASH160), got {len(self.hash)}")
        if self.refund_locktime <= 0:
            raise ContractError("refundLocktime must be greater than 0")
        validate_locktime(self.refund_locktime)
        if self.preimage is not None and hash160(self.preimage) != self.hash:
            raise ContractError("preimage does not match hash")

    @classmethod
    def from_preimage(cls, server: bytes, sender: bytes, receiver: bytes,
                      preimage: bytes, refund_locktime: int,
                      unilateral_claim_delay: RelativeLocktime,
                      unilateral_refund_delay: RelativeLocktime,
                      unilateral_refund_without_receiver_delay: RelativeLocktime,
                      ) -> "VHTLCContract":
        return cls(server, sender, receiver, hash160(preimage), refund_locktime,
                   unilateral_claim_delay, unilateral_refund_delay,
                   unilateral_refund_without_receiver_delay, preimage)

    def paths(self) -> Dict[str, ScriptFragment]:
        hash_lock = HashLock(self.hash, HashKind.HASH160)
        receiver = NofNMultisig((self.receiver,))
        sender = NofNMultisig((self.sender,))
        both = NofNMultisig((self.sender, self.receiver))
        return {
            "claim": CollaborativePath(self.server, Composite(hash_lock, Verify(), receiver)),
            "cooperative": CollaborativePath(self.server, both),
            "refundWithoutReceiver": CollaborativePath(
                self.server, Composite(AbsoluteTimelock(self.refund_locktime), sender)),
            "unilateralClaim": UnilateralPath(self.unilateral_claim_delay, receiver, hash_lock),
            "unilateralRefund": UnilateralPath(self.unilateral_refund_delay, both),
            "unilateralRefundWithoutReceiver": UnilateralPath(
                self.unilateral_refund_without_receiver_delay, sender),
        }

    def claim_witness(self) -> List[bytes]:
        """Condition witness for the hash-locked paths."""
        if self.preimage is None:
            raise ContractError("preimage unknown; cannot build claim witness")
        return [self.preimage]

    def fields(self) -> Dict[str, str]:
        data = {
            "server": self.server.hex(),
            "sender": self.sender.hex(),
            "receiver": self.receiver.hex(),
            # uint160 display order (byte-reversed)
            "hash": self.hash[::-1].hex(),
            "refundLocktime": str(self.refund_locktime),
            "unilateralClaimDelay": str(self.unilateral_claim_delay.sequence),
            "unilateralRefundDelay": str(self.unilateral_refund_delay.sequence),
            "unilateralRefundWithoutReceiverDelay":
                str(self.unilateral_refund_without_receiver_delay.sequence),
        }
        if self.preimage is not None:
            data["preimage"] = self.preimage.hex()
        return data

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> "VHTLCContract":
        preimage = fields.get("preimage")
        return cls(
            server=bytes.fromhex(fields["server"]),
            sender=bytes.fromhex(fields["sender"]),
            receiver=bytes.fromhex(fields["receiver"]),
            hash=bytes.fromhex(fields["hash"])[::-1],
            refund_locktime=int(fields["refundLocktime"]),
            unilateral_claim_delay=_sequence_field(fields, "unilateralClaimDelay"),
            unilateral_refund_delay=_sequence_field(fields, "unilateralRefundDelay"),
            unilateral_refund_without_receiver_delay=_sequence_field(
                fields, "unilateralRefundWithoutReceiverDelay"),
            preimage=bytes.fromhex(preimage) if preimage is not None else None,
        )


@register_contract
@dataclass(frozen=True, eq=False)
class ArkNoteContract(ArkContract):
    """Bearer note: anyone revealing the SHA256 preimage may spend."""
    TYPE: ClassVar[str] = "arknote"
    REQUIRES_EXIT_PATHS: ClassVar[bool] = False

    preimage: bytes
    server: Optional[bytes] = None

    def __post_init__(self) -> None:
        if not self.preimage:
            raise ContractError("preimage must not be empty")

    @property
    def hash(self) -> bytes:
        return HashKind.SHA256.digest(self.preimage)

    def paths(self) -> Dict[str, ScriptFragment]:
        return {"redeem": HashLock(self.hash, HashKind.SHA256)}

    def fields(self) -> Dict[str, str]:
        return {"preimage": self.preimage.hex()}

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> "ArkNoteContract":
        return cls(preimage=bytes.fromhex(fields["preimage"]))



@register_contract
@dataclass(frozen=True, eq=False)
class GenericArkContract(ArkContract):
    """
    Arbitrary named leaves under a server key, for layouts this module has
    no variant for.  ``data`` is carried through persistence untouched.

    Leaves are persisted as raw scripts, so a parsed contract holds
    ``RawScript`` fragments; the collaborative/unilateral shape check
    cannot apply to those and is skipped for this variant.
    """
    TYPE: ClassVar[str] = "generic"
    REQUIRES_EXIT_PATHS: ClassVar[bool] = False
    RESERVED: ClassVar[Tuple[str, ...]] = ("arkcontract", "server", "tapscripts")

    server: bytes
    scripts: Dict[str, ScriptFragment]
    data: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "server", _key(self.server))
        if not self.scripts:
            raise ContractError("generic contract needs at least one leaf")
        for name in self.scripts:
            if not name or ":" in name or "," in name:
                raise ContractError(f"invalid path name {name!r}")
        clash = sorted(set(self.data) & set(self.RESERVED))
        if clash:
            raise ContractError(f"reserved contract data field(s): {', '.join(clash)}")
        object.__setattr__(self, "scripts", dict(self.scripts))
        object.__setattr__(self, "data", dict(self.data))

    def paths(self) -> Dict[str, ScriptFragment]:
        return dict(self.scripts)

    def fields(self) -> Dict[str, str]:
        out = dict(self.data)
        out["tapscripts"] = ",".join(
            f"{name}:{fragment.script().hex()}" for name, fragment in self.scripts.items()
        )
        out["server"] = self.server.hex()
        return out

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> "GenericArkContract":
        scripts: Dict[str, ScriptFragment] = {}
        for entry in fields["tapscripts"].split(","):
            name, _, script = entry.partition(":")
            scripts[name] = RawScript(bytes.fromhex(script))
        data = {k: v for k, v in fields.items() if k not in cls.RESERVED}
        return cls(bytes.fromhex(fields["server"]), scripts, data)
