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
import asyncio
import pytest
from ark_batch import *
from ark_psbt import ArkPSBT
from ark_signer import MemoryWalletSigner, verify_schnorr
from bitcoin_protocol import OutPoint, Transaction, TxIn, TxOut, p2tr_script, sha256

SWEEP_ROOT = sha256(b"sweep leaf")
ROOT_AMOUNT = 100_000
BATCH_OUTPOINT = OutPoint(sha256(b"commitment tx"), 0)
DUMMY_SPK = p2tr_script(bytes.fromhex(
    "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"))


def _signers():
    return [MemoryWalletSigner((i + 21).to_bytes(32, "big")) for i in range(3)]


def _node(prevout, amounts, cosigners) -> ArkPSBT:
    tx = Transaction(inputs=[TxIn(prevout)], outputs=[TxOut(a, DUMMY_SPK) for a in amounts])
    psbt = ArkPSBT(tx)
    for i, key in enumerate(cosigners):
        psbt.inputs[0].set_cosigner(i, key)
    return psbt


def _tree(signers) -> TxTree:
    """Root cosigned by all; left leaf by A+B, right leaf by B+C."""
    a, b, c = (s.public_key for s in signers)
    root = _node(BATCH_OUTPOINT, [60_000, 40_000], [a, b, c])
    left = _node(OutPoint(root.txid, 0), [60_000], [a, b])
    right = _node(OutPoint(root.txid, 1), [40_000], [b, c])
    return TxTree.from_psbts([right, root, left])


def _sessions(signers, tree):
    return [TreeSignerSession(s, tree, SWEEP_ROOT, ROOT_AMOUNT) for s in signers]


class TestTxTree:
    """Arena construction and validation."""

    def test_structure(self):
        tree = _tree(_signers())
        assert len(tree) == 3
        root = tree.root
        assert sorted(root.children) == [0, 1]
        nodes = list(tree)
        assert nodes[0] is root
        assert [n.txid for n in nodes[1:]] == [root.children[0], root.children[1]]
        assert {n.txid for n in tree.leaves()} == set(root.children.values())
        assert tree.parent(root.children[1]) is root
        assert tree.parent(root.txid) is None

    def test_list_roundtrip(self):
        tree = _tree(_signers())
        again = TxTree.from_list(tree.to_list())
        assert [n.txid for n in again] == [n.txid for n in tree]

    def test_tampered_txid(self):
        chunk = _tree(_signers()).to_list()[0]
        chunk["txid"] = "00" * 32
        with pytest.raises(ProtocolIntegrityError, match="does not match"):
            TxTreeNode.from_dict(chunk)

    def test_empty(self):
        with pytest.raises(ProtocolIntegrityError, match="empty"):
            TxTree([])

    def test_duplicate(self):
        node = _tree(_signers()).root
        with pytest.raises(ProtocolIntegrityError, match="duplicate"):
            TxTree([node, node])

    def test_missing_child(self):
        node = TxTreeNode(_node(BATCH_OUTPOINT, [1_000], []), {0: "ab" * 32})
        with pytest.raises(ProtocolIntegrityError, match="child tx not found"):
            TxTree([node])

    def test_child_on_wrong_output(self):
        root = _node(BATCH_OUTPOINT, [500, 500], [])
        child = _node(OutPoint(root.txid, 0), [500], [])
        nodes = [TxTreeNode(root, {1: child.txid_hex}), TxTreeNode(child)]
        with pytest.raises(ProtocolIntegrityError, match="does not spend"):
            TxTree(nodes)

    def test_two_roots(self):
        first = _node(BATCH_OUTPOINT, [500], [])
        second = _node(OutPoint(sha256(b"other"), 0), [500], [])
        with pytest.raises(ProtocolIntegrityError, match="exactly one root"):
            TxTree.from_psbts([first, second])


class TestSigningData:

    def test_prevout_amounts(self):
        tree = _tree(_signers())
        root = tree.root
        assert node_signing_data(tree, root, SWEEP_ROOT, ROOT_AMOUNT).prevout.amount == ROOT_AMOUNT
        right = tree.find(root.children[1])
        assert node_signing_data(tree, right, SWEEP_ROOT, ROOT_AMOUNT).prevout.amount == 40_000

    def test_cosigners_required(self):
        node = TxTreeNode(_node(BATCH_OUTPOINT, [1_000], []))
        with pytest.raises(ProtocolIntegrityError, match="no cosigner keys"):
            node_cosigners(node)


class TestTreeSigning:
    """Full MuSig2 round over the tree."""

    def test_round_produces_valid_key_path_signatures(self):
        signers = _signers()
        tree = _tree(signers)
        coordinator = TreeCoordinator(tree, SWEEP_ROOT, ROOT_AMOUNT)
        sessions = _sessions(signers, tree)
        sigs = asyncio.run(coordinator.run(sessions))

        assert set(sigs) == {n.txid for n in tree}
        for txid, sig in sigs.items():
            data = coordinator.signing_data[txid]
            output_key = data.prevout.script_pubkey[2:]
            assert verify_schnorr(output_key, data.sighash, sig)
            assert tree.find(txid).tx.inputs[0].tap_key_sig == sig
        assert all(s.state is SessionState.SIGNED for s in sessions)

    def test_non_participant_nodes_skipped(self):
        signers = _signers()
        tree = _tree(signers)
        session = _sessions(signers, tree)[0]
        asyncio.run(session.build_contexts())
        right = tree.root.children[1]
        assert right not in session.participating_txids
        assert len(session.participating_txids) == 2

    def test_sign_before_nonces(self):
        signers = _signers()
        session = _sessions(signers, _tree(signers))[0]
        with pytest.raises(SessionNotReadyError, match="nonce not generated"):
            asyncio.run(session.sign())

    def test_contexts_built_once(self):
        signers = _signers()
        session = _sessions(signers, _tree(signers))[0]
        asyncio.run(session.build_contexts())
        assert session.state is SessionState.CONTEXTS_BUILT
        with pytest.raises(SessionStateError, match="already created"):
            asyncio.run(session.build_contexts())

    def test_nonces_generated_once(self):
        signers = _signers()
        session = _sessions(signers, _tree(signers))[0]
        nonces = asyncio.run(session.generate_nonces())
        assert set(nonces) == set(session.participating_txids)
        assert session.state is SessionState.NONCES_GENERATED
        with pytest.raises(SessionStateError):
            asyncio.run(session.generate_nonces())

    def test_aggregate_before_nonces(self):
        signers = _signers()
        tree = _tree(signers)
        session = _sessions(signers, tree)[0]
        with pytest.raises(SessionNotReadyError, match="missing nonces"):
            session.aggregate_nonces(tree.root.txid, [])

    def test_sign_without_aggregate_nonce(self):
        signers = _signers()
        session = _sessions(signers, _tree(signers))[0]
        asyncio.run(session.generate_nonces())
        with pytest.raises(SessionNotReadyError, match="missing verified aggregate nonce"):
            asyncio.run(session.sign())

    def test_sign_requires_verified_aggregate_nonce(self):
        signers = _signers()
        tree = _tree(signers)
        coordinator = TreeCoordinator(tree, SWEEP_ROOT, ROOT_AMOUNT)
        sessions = _sessions(signers, tree)
        nonces = {s.public_key: asyncio.run(sess.generate_nonces())
                  for s, sess in zip(signers, sessions)}
        session = sessions[0]
        for txid in session.participating_txids:
            cosigners = coordinator.signing_data[txid].cosigners
            session.aggregate_nonces(txid, [nonces[k][txid] for k in cosigners])
        # aggregated locally but never checked against the coordinator
        with pytest.raises(SessionNotReadyError, match="verified aggregate nonce"):
            asyncio.run(session.sign())
        assert session.state is SessionState.NONCES_GENERATED

        session.verify_aggregated_nonces(coordinator.aggregate_nonces(nonces))
        assert set(asyncio.run(session.sign())) == set(session.participating_txids)

    def test_own_nonce_must_be_included(self):
        signers = _signers()
        tree = _tree(signers)
        sessions = _sessions(signers, tree)
        asyncio.run(sessions[0].generate_nonces())
        others = asyncio.run(sessions[1].generate_nonces())
        with pytest.raises(ProtocolIntegrityError, match="missing my nonce"):
            sessions[0].aggregate_nonces(tree.root.txid, [others[tree.root.txid]])

    def test_tampered_aggregate_nonce_aborts(self):
        signers = _signers()
        tree = _tree(signers)
        coordinator = TreeCoordinator(tree, SWEEP_ROOT, ROOT_AMOUNT)
        sessions = _sessions(signers, tree)
        nonces = {s.public_key: asyncio.run(sess.generate_nonces())
                  for s, sess in zip(signers, sessions)}
        aggregated = coordinator.aggregate_nonces(nonces)

        session = sessions[0]
        for txid in session.participating_txids:
            cosigners = coordinator.signing_data[txid].cosigners
            session.aggregate_nonces(txid, [nonces[k][txid] for k in cosigners])

        forged = dict(aggregated)
        forged[tree.root.txid] = aggregated[tree.root.children[0]]
        with pytest.raises(NonceMismatchError, match="do not match"):
            session.verify_aggregated_nonces(forged)
        assert session.state is SessionState.ABORTED
        with pytest.raises(ProtocolIntegrityError, match="aborted"):
            asyncio.run(session.sign())

    def test_invalid_partial_signature_rejected(self):
        signers = _signers()
        tree = _tree(signers)
        coordinator = TreeCoordinator(tree, SWEEP_ROOT, ROOT_AMOUNT)
        sessions = _sessions(signers, tree)
        keys = [s.public_key for s in signers]
        nonces = {k: asyncio.run(sess.generate_nonces()) for k, sess in zip(keys, sessions)}
        aggregated = coordinator.aggregate_nonces(nonces)
        for sess in sessions:
            for txid in sess.participating_txids:
                cosigners = coordinator.signing_data[txid].cosigners
                sess.aggregate_nonces(txid, [nonces[k][txid] for k in cosigners])
            sess.verify_aggregated_nonces(aggregated)
        psigs = {k: asyncio.run(sess.sign()) for k, sess in zip(keys, sessions)}
        root = tree.root.txid
        psigs[keys[0]][root] = psigs[keys[1]][root]
        with pytest.raises(ProtocolIntegrityError, match="invalid partial signature"):
            coordinator.aggregate_signatures(nonces, aggregated, psigs)

    def test_malformed_nonce_is_integrity_error(self):
        signers = _signers()
        tree = _tree(signers)
        coordinator = TreeCoordinator(tree, SWEEP_ROOT, ROOT_AMOUNT)
        sessions = _sessions(signers, tree)
        keys = [s.public_key for s in signers]
        nonces = {k: asyncio.run(sess.generate_nonces()) for k, sess in zip(keys, sessions)}
        aggregated = coordinator.aggregate_nonces(nonces)
        for sess in sessions:
            for txid in sess.participating_txids:
                cosigners = coordinator.signing_data[txid].cosigners
                sess.aggregate_nonces(txid, [nonces[k][txid] for k in cosigners])
            sess.verify_aggregated_nonces(aggregated)
        psigs = {k: asyncio.run(sess.sign()) for k, sess in zip(keys, sessions)}
        root = tree.root.txid

        garbled = {k: dict(v) for k, v in nonces.items()}
        garbled[keys[0]][root] = b"\x05" + nonces[keys[0]][root][1:]
        with pytest.raises(ProtocolIntegrityError, match="invalid partial signature"):
            coordinator.aggregate_signatures(garbled, aggregated, psigs)

        del garbled[keys[0]][root]
        with pytest.raises(ProtocolIntegrityError, match="missing nonce"):
            coordinator.aggregate_signatures(garbled, aggregated, psigs)
