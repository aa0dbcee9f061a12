"""
Taproot Tree Assembly (BIP-341)
===============================
Builds a balanced script tree from an ordered list of tapleaves, tweaks
the internal key with the resulting merkle root and hands out a control
block per leaf.

Leaves are paired in the order given, the same way the operator and the
other Ark clients assemble a VTXO script tree:

    [a, b, c, d, e]  ->  (a b), ((c d) e)  ->  ((a b) ((c d) e))

Neighbouring leaves are paired first, with an odd trailing leaf folded
into the last pair.  The resulting branches are then merged front to
back, each new branch going to the end of the queue.  Branch hashes sort
their children, so swapping the two members of a pair changes nothing,
but moving a leaf to another pair does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from coincurve import PublicKey

from ark_scripts import TapLeaf, parse_xonly
from bitcoin_protocol import encode_segwit_address, p2tr_script, tagged_hash

log = logging.getLogger("ark.taproot")
log.addHandler(logging.NullHandler())

# Secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# NUMS point H with unknown discrete log; the Ark internal key for
# script-only outputs (compressed form, x-only is the trailing 32 bytes).
UNSPENDABLE_KEY = bytes.fromhex(
    "0250929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0"
)
UNSPENDABLE_KEY_XONLY = UNSPENDABLE_KEY[1:]


def tap_branch(a: bytes, b: bytes) -> bytes:
    if b < a:
        a, b = b, a
    return tagged_hash("TapBranch", a + b)


def tap_tweak(internal_key: bytes, merkle_root: Optional[bytes]) -> bytes:
    return tagged_hash("TapTweak", internal_key + (merkle_root or b""))


def taproot_output_key(internal_key: bytes, merkle_root: Optional[bytes]) -> Tuple[bytes, int]:
    """Q = P + int(TapTweak(P || root))·G.  Returns (x-only Q, parity of Q)."""
    internal_key = parse_xonly(internal_key)
    tweak = tap_tweak(internal_key, merkle_root)
    if int.from_bytes(tweak, "big") >= CURVE_ORDER:
        raise ValueError("taproot tweak exceeds curve order")
    q = PublicKey(b"\x02" + internal_key).add(tweak).format(compressed=True)
    return q[1:], q[0] & 1


@dataclass(frozen=True)
class ControlBlock:
    leaf_version: int
    parity: int
    internal_key: bytes
    path: Tuple[bytes, ...]

    def serialize(self) -> bytes:
        return (bytes([self.leaf_version | self.parity]) + self.internal_key
                + b"".join(self.path))

    @classmethod
    def parse(cls, data: bytes) -> "ControlBlock":
        if len(data) < 33 or (len(data) - 33) % 32 != 0 or len(data) > 33 + 32 * 128:
            raise ValueError(f"control block has invalid length {len(data)}")
        path = tuple(data[i:i + 32] for i in range(33, len(data), 32))
        return cls(data[0] & 0xfe, data[0] & 1, data[1:33], path)

    def merkle_root(self, leaf: TapLeaf) -> bytes:
        node = leaf.leaf_hash
        for sibling in self.path:
            node = tap_branch(node, sibling)
        return node

    def verify(self, output_key: bytes, leaf: TapLeaf) -> bool:
        """Check that ``leaf`` is committed to by ``output_key``."""
        if leaf.version != self.leaf_version:
            return False
        try:
            key, parity = taproot_output_key(self.internal_key, self.merkle_root(leaf))
        except ValueError:
            return False
        return key == output_key and parity == self.parity


class TaprootSpendInfo:
    """Output key plus per-leaf merkle proofs for one taproot output."""

    def __init__(self, internal_key: bytes, leaves: Iterable[TapLeaf]) -> None:
        self.internal_key = parse_xonly(internal_key)
        # first occurrence wins; a leaf can only hold one proof
        self.leaves: Tuple[TapLeaf, ...] = tuple(dict.fromkeys(leaves))
        if not self.leaves:
            raise ValueError("taproot tree needs at least one leaf")
        self.merkle_root, self._paths = self._assemble(self.leaves)
        self.output_key, self.parity = taproot_output_key(self.internal_key, self.merkle_root)

    @staticmethod
    def _assemble(leaves: Tuple[TapLeaf, ...]) -> Tuple[bytes, Dict[TapLeaf, List[bytes]]]:
        paths: Dict[TapLeaf, List[bytes]] = {leaf: [] for leaf in leaves}

        # node = (hash, leaves below)
        def combine(a, b):
            (ha, la), (hb, lb) = a, b
            for leaf in la:
                paths[leaf].append(hb)
            for leaf in lb:
                paths[leaf].append(ha)
            return tap_branch(ha, hb), la + lb

        nodes = [(leaf.leaf_hash, (leaf,)) for leaf in leaves]
        if len(nodes) == 1:
            return nodes[0][0], paths

        branches: List[Tuple[bytes, Tuple[TapLeaf, ...]]] = []
        for i in range(0, len(nodes), 2):
            if i == len(nodes) - 1:
                branches[-1] = combine(branches[-1], nodes[i])
            else:
                branches.append(combine(nodes[i], nodes[i + 1]))

        while len(branches) > 1:
            branches = branches[2:] + [combine(branches[0], branches[1])]
        return branches[0][0], paths

    @property
    def script_pubkey(self) -> bytes:
        return p2tr_script(self.output_key)

    def address(self, network: str = "mainnet") -> str:
        hrp = {"mainnet": "bc", "testnet": "tb", "signet": "tb", "mutinynet": "tb",
               "regtest": "bcrt"}[network]
        return encode_segwit_address(hrp, 1, self.output_key)

    def control_block(self, leaf: TapLeaf) -> ControlBlock:
        if leaf not in self._paths:
            raise KeyError(f"leaf {leaf.leaf_hash.hex()} is not part of this tree")
        return ControlBlock(leaf.version, self.parity, self.internal_key,
                            tuple(self._paths[leaf]))

    def __repr__(self) -> str:
        return (f"TaprootSpendInfo(output={self.output_key.hex()}, "
                f"leaves={len(self.leaves)})")
