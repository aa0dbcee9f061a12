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
import pytest
from ark_psbt import *
from ark_scripts import TapLeaf
from bitcoin_protocol import OutPoint, Transaction, TxIn, TxOut, p2tr_script, sha256
from coincurve import PrivateKey

OWNER = PrivateKey((7).to_bytes(32, "big")).public_key.format()
SCRIPT_PUBKEY = p2tr_script(OWNER[1:])


def _psbt(n_inputs: int = 1) -> ArkPSBT:
    tx = Transaction(
        inputs=[TxIn(OutPoint(sha256(bytes([i])), i)) for i in range(n_inputs)],
        outputs=[TxOut(10_000, SCRIPT_PUBKEY), TxOut(0, b"\x6a")],
    )
    psbt = ArkPSBT(tx)
    for inp in psbt.inputs:
        inp.witness_utxo = TxOut(12_000, SCRIPT_PUBKEY)
    return psbt


class TestArkFields:
    """0xDE unknown-type fields."""

    def test_cosigners_ordered_by_index(self):
        inp = PSBTInput()
        other = PrivateKey((8).to_bytes(32, "big")).public_key.format()
        inp.set_cosigner(1, other)
        inp.set_cosigner(0, OWNER)
        assert [c.key for c in inp.cosigners()] == [OWNER, other]
        assert [c.index for c in inp.cosigners()] == [0, 1]

    def test_cosigner_must_be_compressed(self):
        with pytest.raises(ValueError, match="33-byte"):
            PSBTInput().set_cosigner(0, OWNER[1:])

    def test_taptree(self):
        leaves = [TapLeaf(b"\x51"), TapLeaf(b"\x00" * 300)]
        inp = PSBTInput()
        assert inp.taptree is None
        inp.set_taptree(leaves)
        assert inp.taptree == leaves

    def test_taptree_rejects_bad_depth(self):
        with pytest.raises(ValueError, match="Invalid depth"):
            decode_taptree(b"\x02\xc0\x01\x51")

    def test_taptree_rejects_bad_version(self):
        with pytest.raises(ValueError, match="Invalid leaf version"):
            decode_taptree(b"\x01\xc2\x01\x51")

    def test_expiry(self):
        inp = PSBTInput()
        inp.set_expiry(144)
        assert inp.expiry == 144
        inp.set_expiry((1 << 22) | 1)
        assert inp.expiry == (1 << 22) | 1

    def test_condition_witness(self):
        inp = PSBTInput()
        inp.set_condition_witness([b"preimage", b""])
        assert inp.condition_witness == [b"preimage", b""]


class TestArkPSBT:

    def test_maps_match_transaction(self):
        psbt = _psbt(2)
        assert len(psbt.inputs) == 2
        assert len(psbt.outputs) == 2

    def test_base64_roundtrip_keeps_fields(self):
        psbt = _psbt(2)
        leaf = TapLeaf(b"\x51")
        psbt.inputs[0].set_cosigner(0, OWNER)
        psbt.inputs[0].set_taptree([leaf])
        psbt.inputs[1].tap_leaf_scripts[b"\xc0" + OWNER[1:]] = leaf
        psbt.inputs[1].tap_script_sigs[(OWNER[1:], leaf.leaf_hash)] = b"\x01" * 64
        psbt.inputs[1].set_condition_witness([b"secret"])

        parsed = ArkPSBT.from_base64(psbt.to_base64())
        assert parsed.serialize() == psbt.serialize()
        assert parsed.txid == psbt.txid
        assert parsed.inputs[0].cosigners()[0].key == OWNER
        assert parsed.inputs[0].taptree == [leaf]
        assert parsed.inputs[1].tap_leaf_scripts[b"\xc0" + OWNER[1:]] == leaf
        assert parsed.inputs[1].condition_witness == [b"secret"]

    def test_bad_magic(self):
        with pytest.raises(ValueError, match="bad magic"):
            ArkPSBT.parse(b"psbx\xff\x00")

    def test_sighash_needs_prevouts(self):
        psbt = _psbt()
        psbt.inputs[0].witness_utxo = None
        with pytest.raises(ValueError, match="no witness_utxo"):
            psbt.sighash(0)

    def test_sighash_commits_to_leaf(self):
        psbt = _psbt()
        key_path = psbt.sighash(0)
        script_path = psbt.sighash(0, TapLeaf(b"\x51").leaf_hash)
        assert len(key_path) == 32
        assert key_path != script_path

    def test_extract_requires_final_witness(self):
        psbt = _psbt(2)
        psbt.inputs[0].final_script_witness = [b"\x00" * 64]
        with pytest.raises(ValueError, match=r"inputs \[1\] are not finalized"):
            psbt.extract()

    def test_extract(self):
        psbt = _psbt()
        psbt.inputs[0].final_script_witness = [b"\x00" * 64]
        tx = psbt.extract()
        assert tx.inputs[0].witness == [b"\x00" * 64]
        assert tx.txid() == psbt.txid
