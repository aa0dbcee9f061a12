"""
Batch Tree Signing
==================
A batch round settles into a tree of transactions rooted at one shared
output.  Every node's single input is a MuSig2 key-path spend by the
node's cosigner set (listed in the input's Ark ``cosigner`` fields),
tweaked with the round's sweep-script merkle root.

- ``TxTree``            flat arena of nodes keyed by txid, parent lookup by id
- ``TreeSignerSession`` one participant's MuSig2 state machine over the tree
- ``TreeCoordinator``   aggregates nonces / partial signatures for a round

Session lifecycle::

    CREATED -> CONTEXTS_BUILT -> NONCES_GENERATED -> NONCES_VERIFIED -> SIGNED
                                        \\-> ABORTED (tampered aggregate nonce)

A session is single-owner and sequential; run one per participant.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ark_musig import MusigContext, key_agg, nonce_agg, partial_sig_verify_internal
from ark_psbt import ArkPSBT
from ark_signer import ArkSigner, verify_schnorr
from ark_taproot import taproot_output_key
from bitcoin_protocol import BIP341Sighash, TxOut, p2tr_script

log = logging.getLogger("ark.batch")
log.addHandler(logging.NullHandler())


class SessionStateError(RuntimeError):
    """Operation invoked out of order for the session's state."""


class SessionNotReadyError(SessionStateError):
    """A precondition for the requested step has not been met."""

    def __init__(self, missing: str, txid: Optional[str] = None,
                 message: Optional[str] = None) -> None:
        where = f" for tx {txid}" if txid else ""
        super().__init__((message or f"missing {missing}") + where)
        self.missing = missing
        self.txid = txid


class ProtocolIntegrityError(RuntimeError):
    """The round data is inconsistent or tampered with; abort the round."""


class NonceMismatchError(ProtocolIntegrityError):
    pass


# ============================================================
# TX TREE (arena)
# ============================================================

@dataclass
class TxTreeNode:
    tx: ArkPSBT
    children: Dict[int, str] = field(default_factory=dict)   # output index -> txid

    @property
    def txid(self) -> str:
        return self.tx.txid_hex

    @property
    def parent_txid(self) -> str:
        return self.tx.tx.inputs[0].prevout.txid_hex

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "tx": self.tx.to_base64(),
            "children": {str(k): v for k, v in self.children.items()},
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TxTreeNode":
        node = cls(ArkPSBT.from_base64(d["tx"]),
                   {int(k): v for k, v in d.get("children", {}).items()})
        if d.get("txid") and d["txid"] != node.txid:
            raise ProtocolIntegrityError(
                f"node txid {d['txid']} does not match its transaction ({node.txid})"
            )
        return node


class TxTree:
    """Settlement tree stored as ``txid -> node`` with id-based relations."""

    def __init__(self, nodes: Iterable[TxTreeNode]) -> None:
        self._nodes: Dict[str, TxTreeNode] = {}
        for node in nodes:
            if node.txid in self._nodes:
                raise ProtocolIntegrityError(f"duplicate tree node {node.txid}")
            self._nodes[node.txid] = node
        if not self._nodes:
            raise ProtocolIntegrityError("empty transaction tree")

        self._parent: Dict[str, str] = {}
        for txid, node in self._nodes.items():
            for index, child_txid in node.children.items():
                child = self._nodes.get(child_txid)
                if child is None:
                    raise ProtocolIntegrityError(f"child tx not found: {child_txid}")
                prevout = child.tx.tx.inputs[0].prevout
                if prevout.txid_hex != txid or prevout.vout != index:
                    raise ProtocolIntegrityError(
                        f"child {child_txid} does not spend {txid}:{index}"
                    )
                if index >= len(node.tx.tx.outputs):
                    raise ProtocolIntegrityError(f"parent output not found: {txid}:{index}")
                if child_txid in self._parent:
                    raise ProtocolIntegrityError(f"tx {child_txid} has two parents")
                self._parent[child_txid] = txid

        roots = [t for t in self._nodes if t not in self._parent]
        if len(roots) != 1:
            raise ProtocolIntegrityError(f"tree must have exactly one root, found {len(roots)}")
        self._root = roots[0]
        if sum(1 for _ in self) != len(self._nodes):
            raise ProtocolIntegrityError("transaction tree is not connected")

    @classmethod
    def from_psbts(cls, psbts: Sequence[ArkPSBT]) -> "TxTree":
        """Derive child links from each transaction's first input."""
        by_id = {p.txid_hex: TxTreeNode(p) for p in psbts}
        for node in by_id.values():
            prevout = node.tx.tx.inputs[0].prevout
            parent = by_id.get(prevout.txid_hex)
            if parent is not None:
                parent.children[prevout.vout] = node.txid
        return cls(by_id.values())

    @property
    def root(self) -> TxTreeNode:
        return self._nodes[self._root]

    def find(self, txid: str) -> Optional[TxTreeNode]:
        return self._nodes.get(txid)

    def parent(self, txid: str) -> Optional[TxTreeNode]:
        parent_id = self._parent.get(txid)
        return self._nodes[parent_id] if parent_id is not None else None

    def leaves(self) -> List[TxTreeNode]:
        return [n for n in self if not n.children]

    def __iter__(self) -> Iterator[TxTreeNode]:
        """Breadth-first from the root, children in output order."""
        seen = set()
        queue = deque([self._root])
        while queue:
            txid = queue.popleft()
            if txid in seen:
                continue
            seen.add(txid)
            node = self._nodes[txid]
            yield node
            queue.extend(node.children[i] for i in sorted(node.children))

    def __len__(self) -> int:
        return len(self._nodes)

    def to_list(self) -> List[Dict[str, Any]]:
        return [n.to_dict() for n in self]

    @classmethod
    def from_list(cls, chunks: List[Dict[str, Any]]) -> "TxTree":
        return cls(TxTreeNode.from_dict(c) for c in chunks)


# ============================================================
# NODE SIGNING DATA
# ============================================================

@dataclass(frozen=True)
class NodeSigningData:
    txid: str
    cosigners: Tuple[bytes, ...]
    prevout: TxOut
    sighash: bytes


def node_cosigners(node: TxTreeNode) -> Tuple[bytes, ...]:
    cosigners = node.tx.inputs[0].cosigners()
    if not cosigners:
        raise ProtocolIntegrityError(f"tx {node.txid} carries no cosigner keys")
    return tuple(c.key for c in cosigners)


def node_signing_data(tree: TxTree, node: TxTreeNode, merkle_root: bytes,
                      root_amount: int) -> NodeSigningData:
    """Cosigners, previous output and key-path sighash for one tree node."""
    cosigners = node_cosigners(node)
    internal = key_agg(cosigners).Q.format(compressed=True)[1:]
    output_key, _ = taproot_output_key(internal, merkle_root)
    script = p2tr_script(output_key)

    if node.txid == tree.root.txid:
        amount = root_amount
    else:
        prevout = node.tx.tx.inputs[0].prevout
        parent = tree.find(prevout.txid_hex)
        if parent is None:
            raise ProtocolIntegrityError(f"parent tx not found: {prevout.txid_hex}")
        if prevout.vout >= len(parent.tx.tx.outputs):
            raise ProtocolIntegrityError(f"parent output not found: {prevout}")
        amount = parent.tx.tx.outputs[prevout.vout].amount

    prev = TxOut(amount, script)
    sighash = BIP341Sighash(node.tx.tx, [prev], 0).compute(BIP341Sighash.SIGHASH_DEFAULT)
    return NodeSigningData(node.txid, cosigners, prev, sighash)


# ============================================================
# SIGNER SESSION
# ============================================================

class SessionState(Enum):
    CREATED = "created"
    CONTEXTS_BUILT = "contexts_built"
    NONCES_GENERATED = "nonces_generated"
    NONCES_VERIFIED = "nonces_verified"
    SIGNED = "signed"
    ABORTED = "aborted"


class TreeSignerSession:
    """One participant's MuSig2 signing of every tree node it cosigns."""

    def __init__(self, signer: ArkSigner, tree: TxTree, tapscript_merkle_root: bytes,
                 root_shared_amount: int) -> None:
        if len(tapscript_merkle_root) != 32:
            raise ValueError("tapscript merkle root must be 32 bytes")
        self._signer = signer
        self._tree = tree
        self._merkle_root = tapscript_merkle_root
        self._root_amount = root_shared_amount
        self._state = SessionState.CREATED
        self._contexts: Dict[str, MusigContext] = {}
        self._nonces: Dict[str, Tuple[bytearray, bytes]] = {}
        self._my_key: Optional[bytes] = None

    @property
    def state(self) -> SessionState:
        return self._state

    async def get_public_key(self) -> bytes:
        if self._my_key is None:
            self._my_key = await self._signer.get_public_key()
        return self._my_key

    def _require(self, *allowed: SessionState) -> None:
        if self._state is SessionState.ABORTED:
            raise ProtocolIntegrityError("session aborted after a protocol violation")
        if self._state not in allowed:
            raise SessionStateError(
                f"invalid in state {self._state.value} "
                f"(expected {', '.join(s.value for s in allowed)})"
            )

    # ---- contexts -----------------------------------------------------
    async def build_contexts(self) -> None:
        if self._state is not SessionState.CREATED:
            raise SessionStateError("musig contexts already created")
        my_key = await self.get_public_key()
        for node in self._tree:
            cosigners = node_cosigners(node)
            if my_key not in cosigners:
                continue
            data = node_signing_data(self._tree, node, self._merkle_root, self._root_amount)
            self._contexts[node.txid] = MusigContext(
                data.cosigners, data.sighash, my_key, self._merkle_root
            )
        self._state = SessionState.CONTEXTS_BUILT
        log.info("Built %d MuSig2 contexts over %d tree nodes",
                 len(self._contexts), len(self._tree))

    @property
    def participating_txids(self) -> List[str]:
        return list(self._contexts)

    # ---- nonces -------------------------------------------------------
    async def generate_nonces(self) -> Dict[str, bytes]:
        """Create one nonce pair per cosigned node; return the public halves."""
        if self._state is SessionState.CREATED:
            await self.build_contexts()
        if self._state is not SessionState.CONTEXTS_BUILT:
            self._require(SessionState.CONTEXTS_BUILT)
        for txid, ctx in self._contexts.items():
            self._nonces[txid] = ctx.generate_nonce()
        self._state = SessionState.NONCES_GENERATED
        return self.public_nonces

    @property
    def public_nonces(self) -> Dict[str, bytes]:
        return {txid: pair[1] for txid, pair in self._nonces.items()}

    def aggregate_nonces(self, txid: str, pubnonces: Sequence[bytes]) -> bytes:
        """Aggregate every cosigner's public nonce for ``txid`` locally."""
        if self._state in (SessionState.CREATED, SessionState.CONTEXTS_BUILT):
            raise SessionNotReadyError("nonces", txid)
        self._require(SessionState.NONCES_GENERATED)
        ctx = self._contexts.get(txid)
        if ctx is None:
            raise SessionNotReadyError("musig context", txid)
        if txid not in self._nonces:
            raise SessionNotReadyError("private nonce", txid)
        if self._nonces[txid][1] not in pubnonces:
            raise ProtocolIntegrityError(f"missing my nonce for tx {txid}")
        return ctx.process_nonces(pubnonces)

    def verify_aggregated_nonces(self, expected: Dict[str, bytes]) -> None:
        """Compare coordinator-supplied aggregates with the local ones."""
        if self._state in (SessionState.CREATED, SessionState.CONTEXTS_BUILT):
            raise SessionNotReadyError("nonces")
        self._require(SessionState.NONCES_GENERATED)
        for txid, ctx in self._contexts.items():
            if ctx.aggregate_nonce is None:
                raise SessionNotReadyError("aggregate nonce", txid)
            if expected.get(txid) != ctx.aggregate_nonce:
                self._state = SessionState.ABORTED
                log.error("Aggregated nonce mismatch on tx %s; aborting session", txid)
                raise NonceMismatchError("aggregated nonces do not match")
        self._state = SessionState.NONCES_VERIFIED

    # ---- signing ------------------------------------------------------
    async def sign(self) -> Dict[str, bytes]:
        """Partial signatures for every cosigned node, in tree order."""
        if self._state in (SessionState.CREATED, SessionState.CONTEXTS_BUILT):
            raise SessionNotReadyError("nonces", message="nonce not generated")
        if self._state is SessionState.NONCES_GENERATED:
            raise SessionNotReadyError("verified aggregate nonce")
        self._require(SessionState.NONCES_VERIFIED)
        my_key = await self.get_public_key()
        sigs: Dict[str, bytes] = {}
        for node in self._tree:
            if my_key not in node_cosigners(node):
                continue
            txid = node.txid
            if txid not in self._nonces:
                raise SessionNotReadyError("private nonce", txid)
            ctx = self._contexts.get(txid)
            if ctx is None:
                raise SessionNotReadyError("musig context", txid)
            if ctx.aggregate_nonce is None:
                raise SessionNotReadyError("aggregate nonce", txid)
            sigs[txid] = await self._signer.sign_musig(ctx, self._nonces[txid][0])
        self._state = SessionState.SIGNED
        log.info("Produced %d partial signatures", len(sigs))
        return sigs


# ============================================================
# COORDINATOR
# ============================================================

class TreeCoordinator:
    """Operator side of a round: collects nonces and partial signatures."""

    def __init__(self, tree: TxTree, tapscript_merkle_root: bytes, root_shared_amount: int) -> None:
        self.tree = tree
        self.merkle_root = tapscript_merkle_root
        self.signing_data: Dict[str, NodeSigningData] = {
            node.txid: node_signing_data(tree, node, tapscript_merkle_root, root_shared_amount)
            for node in tree
        }

    def aggregate_nonces(self, nonces: Dict[bytes, Dict[str, bytes]]) -> Dict[str, bytes]:
        """``nonces`` maps cosigner key -> {txid: pubnonce}."""
        aggregated = {}
        for txid, data in self.signing_data.items():
            try:
                ordered = [nonces[key][txid] for key in data.cosigners]
            except KeyError as exc:
                raise ProtocolIntegrityError(f"missing nonce for tx {txid}") from exc
            aggregated[txid] = nonce_agg(ordered)
        return aggregated

    def aggregate_signatures(
        self,
        nonces: Dict[bytes, Dict[str, bytes]],
        aggregated: Dict[str, bytes],
        partial_sigs: Dict[bytes, Dict[str, bytes]],
    ) -> Dict[str, bytes]:
        """Verify every partial signature, combine, and set each node's key-path sig."""
        final = {}
        for txid, data in self.signing_data.items():
            ctx = MusigContext(data.cosigners, data.sighash, data.cosigners[0], self.merkle_root)
            ctx.aggregate_nonce = aggregated[txid]
            session = ctx.session()
            psigs = []
            for key in data.cosigners:
                psig = partial_sigs.get(key, {}).get(txid)
                if psig is None:
                    raise ProtocolIntegrityError(f"missing partial signature for tx {txid}")
                pubnonce = nonces.get(key, {}).get(txid)
                if pubnonce is None:
                    raise ProtocolIntegrityError(f"missing nonce from {key.hex()} on tx {txid}")
                try:
                    valid = partial_sig_verify_internal(psig, pubnonce, key, session)
                except ValueError as exc:
                    raise ProtocolIntegrityError(
                        f"malformed partial signature data from {key.hex()} on tx {txid}"
                    ) from exc
                if not valid:
                    raise ProtocolIntegrityError(
                        f"invalid partial signature from {key.hex()} on tx {txid}"
                    )
                psigs.append(psig)
            sig = ctx.aggregate_signatures(psigs)
            if not verify_schnorr(ctx.aggregate_pubkey, data.sighash, sig):
                raise ProtocolIntegrityError(f"aggregate signature invalid for tx {txid}")
            self.tree.find(txid).tx.inputs[0].tap_key_sig = sig
            final[txid] = sig
        log.info("Aggregated key-path signatures for %d nodes", len(final))
        return final

    async def run(self, sessions: Sequence[TreeSignerSession]) -> Dict[str, bytes]:
        """Drive all participant sessions through one signing round."""
        keys = await asyncio.gather(*(s.get_public_key() for s in sessions))
        nonce_sets = await asyncio.gather(*(s.generate_nonces() for s in sessions))
        nonces = dict(zip(keys, nonce_sets))
        aggregated = self.aggregate_nonces(nonces)
        for key, session in zip(keys, sessions):
            for txid in session.participating_txids:
                data = self.signing_data[txid]
                session.aggregate_nonces(txid, [nonces[k][txid] for k in data.cosigners])
            session.verify_aggregated_nonces(aggregated)
        sig_sets = await asyncio.gather(*(s.sign() for s in sessions))
        return self.aggregate_signatures(nonces, aggregated, dict(zip(keys, sig_sets)))
