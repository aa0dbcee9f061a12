"""
Intent proofs
=============
An intent is a signed, never-broadcast transaction that binds a holder's
VTXOs to a register/delete request for a batch round.  The layout follows
the BIP-322 "full" proof:

    to_spend  v0   in:  0000..00:ffffffff  scriptSig OP_0 <H(message)>
                   out: 0 sat -> P2TR(message key)
    to_sign   v2   in0: to_spend:0          (key-path sig by message key)
                   in1..n: the VTXOs        (tapscript witnesses)
                   out: OP_RETURN, or the intent's declared outputs

``H`` is the tagged hash ``ark-intent-proof-message``.  The message key
commits directly (no taproot tweak), so input 0's signature verifies
against it as-is.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from ark_config import NETWORKS
from ark_contracts import ArkContract, PathSpendInfo
from ark_psbt import ArkPSBT, PSBTInput
from ark_scripts import (
    OP_0, OP_RETURN, LOCKTIME_THRESHOLD, SEQUENCE_DISABLE_FLAG, SEQUENCE_MASK,
    SEQUENCE_TYPE_FLAG, TapLeaf, leaf_requirements, parse_xonly,
)
from ark_signer import ArkSigner, verify_schnorr
from ark_taproot import ControlBlock
from bitcoin_protocol import (
    SEQUENCE_FINAL, BIP341Sighash, OutPoint, Transaction, TxIn, TxOut, p2tr_script,
    tagged_hash,
)

log = logging.getLogger("ark.intent")
log.addHandler(logging.NullHandler())

INTENT_MESSAGE_TAG = "ark-intent-proof-message"

# Lets an absolute timelock take effect on an input without a relative lock.
SEQUENCE_LOCKTIME_ENABLED = 0xFFFFFFFE


class IntentError(ValueError):
    pass


# ============================================================
# MESSAGES
# ============================================================

def _dumps(payload: Dict) -> str:
    return json.dumps(payload, separators=(",", ":"))


@dataclass(frozen=True)
class RegisterIntentMessage:
    input_tap_trees: Tuple[str, ...]
    onchain_output_indexes: Tuple[int, ...]
    valid_at: int
    expire_at: int
    cosigners_public_keys: Tuple[str, ...]

    TYPE = "register"

    def __post_init__(self) -> None:
        if self.expire_at and self.expire_at <= self.valid_at:
            raise IntentError("expire_at must be after valid_at")

    def to_json(self) -> str:
        return _dumps({
            "type": self.TYPE,
            "input_tap_trees": list(self.input_tap_trees),
            "onchain_output_indexes": list(self.onchain_output_indexes),
            "valid_at": self.valid_at,
            "expire_at": self.expire_at,
            "cosigners_public_keys": list(self.cosigners_public_keys),
        })

    @classmethod
    def from_json(cls, text: str) -> "RegisterIntentMessage":
        d = json.loads(text)
        if d.get("type") != cls.TYPE:
            raise IntentError(f"not a register intent: {d.get('type')!r}")
        return cls(
            tuple(d.get("input_tap_trees", ())),
            tuple(d.get("onchain_output_indexes", ())),
            int(d["valid_at"]),
            int(d["expire_at"]),
            tuple(d.get("cosigners_public_keys", ())),
        )


@dataclass(frozen=True)
class DeleteIntentMessage:
    expire_at: int

    TYPE = "delete"

    def to_json(self) -> str:
        return _dumps({"type": self.TYPE, "expire_at": self.expire_at})

    @classmethod
    def from_json(cls, text: str) -> "DeleteIntentMessage":
        d = json.loads(text)
        if d.get("type") != cls.TYPE:
            raise IntentError(f"not a delete intent: {d.get('type')!r}")
        return cls(int(d["expire_at"]))


IntentMessage = Union[RegisterIntentMessage, DeleteIntentMessage]


def message_hash(message: Union[str, bytes]) -> bytes:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return tagged_hash(INTENT_MESSAGE_TAG, message)


# ============================================================
# INPUTS / OUTPUTS
# ============================================================

@dataclass
class SpendableCoin:
    """A VTXO plus everything needed to spend it through one named path."""
    outpoint: OutPoint
    amount: int
    contract: ArkContract
    path: str
    signer: Optional[ArkSigner] = None
    condition_witness: List[bytes] = field(default_factory=list)

    @property
    def spend(self) -> PathSpendInfo:
        return self.contract.get_spend_info(self.path)

    @property
    def txout(self) -> TxOut:
        return TxOut(self.amount, self.contract.script_pubkey)

    @property
    def sequence(self) -> int:
        spend = self.spend
        if spend.sequence is not None:
            return spend.sequence
        if spend.locktime is not None:
            return SEQUENCE_LOCKTIME_ENABLED
        return SEQUENCE_FINAL


@dataclass(frozen=True)
class IntentOutput:
    amount: int
    script_pubkey: bytes
    onchain: bool = False

    @property
    def txout(self) -> TxOut:
        return TxOut(self.amount, self.script_pubkey)


# ============================================================
# BUILD
# ============================================================

def build_to_spend(message: Union[str, bytes], message_key: bytes) -> Transaction:
    """BIP-322 virtual funding transaction committing to ``message``."""
    script_sig = bytes([OP_0, 32]) + message_hash(message)
    return Transaction(
        version=0,
        inputs=[TxIn(OutPoint(bytes(32), 0xFFFFFFFF), script_sig, 0)],
        outputs=[TxOut(0, p2tr_script(message_key))],
        locktime=0,
    )


def _witness_for(inp: PSBTInput, control_block: bytes, keys: Sequence[bytes],
                 condition: Sequence[bytes]) -> Optional[List[bytes]]:
    """Stack for a script-path spend, or None while a signature is missing."""
    leaf = inp.tap_leaf_scripts[control_block]
    sigs = []
    for key in keys:
        sig = inp.tap_script_sigs.get((key, leaf.leaf_hash))
        if sig is None:
            return None
        sigs.append(sig)
    # the first key in the script checks the topmost signature
    return list(reversed(sigs)) + list(condition) + [leaf.script, control_block]


async def build_intent(
    message: Union[str, IntentMessage],
    network: str,
    coins: Sequence[SpendableCoin],
    outputs: Optional[Sequence[IntentOutput]] = None,
    message_signer: Optional[ArkSigner] = None,
) -> ArkPSBT:
    """
    Assemble and sign the to_sign proof for ``message`` over ``coins``.

    The message key defaults to the first coin's signer.  Coin inputs whose
    leaf needs a key nobody here holds (e.g. the server's) keep their
    partial signatures but stay unfinalized.
    """
    if network not in NETWORKS:
        raise IntentError(f"unknown network {network!r}")
    if not coins:
        raise IntentError("an intent needs at least one input")
    if message_signer is None:
        message_signer = coins[0].signer
    if message_signer is None:
        raise IntentError("no signer available for the message key")
    text = message if isinstance(message, str) else message.to_json()

    signer_key = await message_signer.get_public_key()
    message_key = signer_key[1:]
    to_spend = build_to_spend(text, message_key)

    spends = [coin.spend for coin in coins]
    locktimes = [s.locktime for s in spends if s.locktime is not None]
    if locktimes and len({lt >= LOCKTIME_THRESHOLD for lt in locktimes}) > 1:
        raise IntentError("cannot mix height and time based locktimes in one intent")

    tx = Transaction(
        version=2,
        inputs=[TxIn(OutPoint(to_spend.txid(), 0), sequence=0)]
        + [TxIn(coin.outpoint, sequence=coin.sequence) for coin in coins],
        outputs=[o.txout for o in outputs] if outputs else [TxOut(0, bytes([OP_RETURN]))],
        locktime=max(locktimes, default=0),
    )
    psbt = ArkPSBT(tx)
    psbt.inputs[0].witness_utxo = to_spend.outputs[0]
    psbt.inputs[0].tap_internal_key = message_key

    for inp, coin, spend in zip(psbt.inputs[1:], coins, spends):
        inp.witness_utxo = coin.txout
        inp.tap_internal_key = coin.contract.spend_info.internal_key
        inp.tap_merkle_root = coin.contract.spend_info.merkle_root
        inp.tap_leaf_scripts[spend.control_block.serialize()] = spend.leaf
        inp.set_taptree(coin.contract.leaves())
        if coin.condition_witness:
            inp.set_condition_witness(coin.condition_witness)

    for index, (inp, coin, spend) in enumerate(zip(psbt.inputs[1:], coins, spends), start=1):
        keys = leaf_requirements(spend.leaf.script).keys
        if coin.signer is not None and keys:
            digest = psbt.sighash(index, leaf_hash=spend.leaf.leaf_hash)
            sig, xonly = await coin.signer.sign(digest)
            if xonly not in keys:
                raise IntentError(
                    f"signer for {coin.outpoint} is not a key of path {coin.path!r}"
                )
            inp.tap_script_sigs[(xonly, spend.leaf.leaf_hash)] = sig
        witness = _witness_for(inp, spend.control_block.serialize(), keys, coin.condition_witness)
        if witness is not None:
            inp.final_script_witness = witness
        else:
            log.info("Input %s (%s path) awaits cosigner signatures", coin.outpoint, coin.path)

    sig, _ = await message_signer.sign(psbt.sighash(0))
    psbt.inputs[0].tap_key_sig = sig
    psbt.inputs[0].final_script_witness = [sig]
    log.info("Built %s intent proof %s over %d inputs",
             getattr(message, "TYPE", "raw"), psbt.txid_hex, len(coins))
    return psbt


def onchain_indexes(outputs: Optional[Sequence[IntentOutput]]) -> Tuple[int, ...]:
    return tuple(i for i, o in enumerate(outputs or ()) if o.onchain)


async def build_register_intent(
    network: str,
    coins: Sequence[SpendableCoin],
    cosigners: Sequence[bytes],
    valid_at: int,
    expire_at: int,
    outputs: Optional[Sequence[IntentOutput]] = None,
    message_signer: Optional[ArkSigner] = None,
) -> Tuple[ArkPSBT, RegisterIntentMessage]:
    message = RegisterIntentMessage(
        input_tap_trees=tuple(c.outpoint.txid_hex for c in coins),
        onchain_output_indexes=onchain_indexes(outputs),
        valid_at=valid_at,
        expire_at=expire_at,
        cosigners_public_keys=tuple(k.hex() for k in cosigners),
    )
    psbt = await build_intent(message, network, coins, outputs, message_signer)
    return psbt, message


async def build_delete_intent(
    network: str,
    coins: Sequence[SpendableCoin],
    expire_at: int,
    message_signer: Optional[ArkSigner] = None,
) -> Tuple[ArkPSBT, DeleteIntentMessage]:
    message = DeleteIntentMessage(expire_at)
    psbt = await build_intent(message, network, coins, None, message_signer)
    return psbt, message


async def build_intent_pair(
    network: str,
    coins: Sequence[SpendableCoin],
    cosigners: Sequence[bytes],
    valid_at: int,
    expire_at: int,
    outputs: Optional[Sequence[IntentOutput]] = None,
    message_signer: Optional[ArkSigner] = None,
) -> Tuple[Tuple[ArkPSBT, RegisterIntentMessage], Tuple[ArkPSBT, DeleteIntentMessage]]:
    """Register and matching delete intent, signed over the same inputs."""
    register = await build_register_intent(network, coins, cosigners, valid_at,
                                           expire_at, outputs, message_signer)
    delete = await build_delete_intent(network, coins, expire_at, message_signer)
    return register, delete


# ============================================================
# VERIFY
# ============================================================

def _sequence_satisfies(actual: int, required: int) -> bool:
    if actual & SEQUENCE_DISABLE_FLAG or required & SEQUENCE_DISABLE_FLAG:
        return False
    if (actual & SEQUENCE_TYPE_FLAG) != (required & SEQUENCE_TYPE_FLAG):
        return False
    return (actual & SEQUENCE_MASK) >= (required & SEQUENCE_MASK)


def _locktime_satisfies(tx: Transaction, sequence: int, required: int) -> bool:
    if sequence == SEQUENCE_FINAL:
        return False
    if (tx.locktime >= LOCKTIME_THRESHOLD) != (required >= LOCKTIME_THRESHOLD):
        return False
    return tx.locktime >= required



def _script_spend(inp: PSBTInput, index: int) -> Tuple[TapLeaf, bytes, Dict[bytes, bytes], List[bytes]]:
    """Leaf, control block, signatures by key and condition items of one coin input."""
    if inp.final_script_witness:
        witness = inp.final_script_witness
        if len(witness) < 2:
            raise IntentError(f"input {index}: witness is not a script-path spend")
        control_block, script = witness[-1], witness[-2]
        leaf = TapLeaf(script, control_block[0] & 0xfe)
        keys = leaf_requirements(script).keys
        body = witness[:-2]
        if len(body) < len(keys):
            raise IntentError(f"input {index}: witness has too few signatures")
        signed = dict(zip(keys, reversed(body[:len(keys)])))
        return leaf, control_block, signed, body[len(keys):]

    if len(inp.tap_leaf_scripts) != 1:
        raise IntentError(f"input {index}: expected exactly one leaf script")
    control_block, leaf = next(iter(inp.tap_leaf_scripts.items()))
    signed = {key: sig for (key, leaf_hash), sig in inp.tap_script_sigs.items()
              if leaf_hash == leaf.leaf_hash}
    return leaf, control_block, signed, inp.condition_witness or []


def _verify_coin_input(proof: ArkPSBT, index: int, prevouts: Sequence[TxOut],
                       pending_keys: Sequence[bytes]) -> None:
    script_pubkey = prevouts[index].script_pubkey
    if len(script_pubkey) != 34 or script_pubkey[:2] != b"\x51\x20":
        raise IntentError(f"input {index}: previous output is not taproot")

    leaf, cb_bytes, signed, condition = _script_spend(proof.inputs[index], index)
    if not ControlBlock.parse(cb_bytes).verify(script_pubkey[2:], leaf):
        raise IntentError(f"input {index}: leaf is not committed to by the spent output")

    req = leaf_requirements(leaf.script)
    digest = BIP341Sighash(proof.tx, prevouts, index).compute(leaf_hash=leaf.leaf_hash)
    for key in req.keys:
        sig = signed.get(key)
        if sig is None:
            if key in pending_keys:
                continue
            raise IntentError(f"input {index}: missing signature for {key.hex()}")
        if not verify_schnorr(key, digest, sig):
            raise IntentError(f"input {index}: invalid signature for {key.hex()}")

    for kind, expected in req.hash_locks:
        if not any(kind.digest(item) == expected for item in condition):
            raise IntentError(f"input {index}: hash lock {expected.hex()} not satisfied")

    txin = proof.tx.inputs[index]
    if req.sequence is not None and not _sequence_satisfies(txin.sequence, req.sequence):
        raise IntentError(f"input {index}: sequence does not meet the relative timelock")
    if req.locktime is not None and not _locktime_satisfies(proof.tx, txin.sequence, req.locktime):
        raise IntentError(f"input {index}: locktime does not meet the absolute timelock")


def verify_intent(
    proof: ArkPSBT,
    message: Union[str, IntentMessage],
    message_key: Union[bytes, str],
    prevouts: Optional[Sequence[TxOut]] = None,
    outputs: Optional[Sequence[TxOut]] = None,
    pending_keys: Sequence[bytes] = (),
) -> bool:
    """
    Check an intent proof against the message and the committed coins.

    ``prevouts`` are the coin outputs (input 1 onwards) the verifier
    expects; when omitted the PSBT's own ``witness_utxo`` fields are used.
    ``outputs``, when given, must match the proof's outputs exactly.
    ``pending_keys`` may be left unsigned (the operator signs later).
    """
    text = message if isinstance(message, str) else message.to_json()
    try:
        xonly = parse_xonly(message_key)
        to_spend = build_to_spend(text, xonly)
        tx = proof.tx
        if len(tx.inputs) < 2:
            raise IntentError("proof spends no coins")
        if tx.inputs[0].prevout != OutPoint(to_spend.txid(), 0):
            raise IntentError("input 0 does not spend the message commitment")

        psbt_prevouts = [inp.witness_utxo for inp in proof.inputs[1:]]
        if prevouts is None:
            if any(p is None for p in psbt_prevouts):
                raise IntentError("coin inputs carry no witness_utxo")
            prevouts = psbt_prevouts
        if len(prevouts) != len(tx.inputs) - 1:
            raise IntentError("prevout count does not match the proof's inputs")
        for i, (known, committed) in enumerate(zip(psbt_prevouts, prevouts), start=1):
            if known is not None and known != committed:
                raise IntentError(f"input {i}: witness_utxo differs from the committed prevout")
        if outputs is not None and list(outputs) != tx.outputs:
            raise IntentError("proof outputs differ from the committed outputs")

        all_prevouts = [to_spend.outputs[0]] + list(prevouts)
        first = proof.inputs[0]
        sig = first.final_script_witness[0] if first.final_script_witness else first.tap_key_sig
        if sig is None:
            raise IntentError("input 0 is unsigned")
        digest = BIP341Sighash(tx, all_prevouts, 0).compute()
        if not verify_schnorr(xonly, digest, sig):
            raise IntentError("message signature is invalid")

        for index in range(1, len(tx.inputs)):
            _verify_coin_input(proof, index, all_prevouts, pending_keys)
    except ValueError as exc:
        log.warning("Intent proof %s rejected: %s", proof.txid_hex, exc)
        return False
    return True
