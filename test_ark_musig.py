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
from ark_musig import *
from ark_signer import MemoryWalletSigner, verify_schnorr
from ark_taproot import taproot_output_key
from bitcoin_protocol import sha256

MSG = sha256(b"ark round 42")


def _signers(n: int):
    return [MemoryWalletSigner((i + 1).to_bytes(32, "big")) for i in range(n)]


def _run_session(signers, msg=MSG, merkle_root=None):
    pubkeys = [s.public_key for s in signers]
    contexts = [MusigContext(pubkeys, msg, s.public_key, merkle_root) for s in signers]
    nonces = [ctx.generate_nonce() for ctx in contexts]
    pubnonces = [pub for _, pub in nonces]
    for ctx in contexts:
        ctx.process_nonces(pubnonces)
    psigs = [
        asyncio.run(s.sign_musig(ctx, sec))
        for s, ctx, (sec, _) in zip(signers, contexts, nonces)
    ]
    return contexts, pubnonces, psigs


class TestKeyAggregation:
    """BIP-327 key aggregation."""

    PKS = [
        bytes.fromhex("02F9308A019258C31049344F85F89D5229B531C845836F99B08601F113BCE036F9"),
        bytes.fromhex("03DFF1D77F2A671C5F36183726DB2341BE58FEAE1DA2DECED843240F7B502BA659"),
        bytes.fromhex("023590A94E768F8E1815C2F24B4D80A8E3149316C3518CE7B7AD338368D038CA66"),
    ]

    def test_bip327_vector(self):
        Q = key_agg(self.PKS).Q
        assert Q.format()[1:].hex().upper() == \
            "90539EEDE565F5D054F32CC0C220126889ED1E5D193BAF15AEF344FE59D4610C"

    def test_order_matters(self):
        forward = key_agg(self.PKS).Q.format()
        assert key_agg(self.PKS[::-1]).Q.format() != forward
        assert key_agg(self.PKS).Q.format() == forward

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            key_agg([])

    def test_invalid_key_reports_index(self):
        with pytest.raises(InvalidContributionError) as err:
            key_agg([self.PKS[0], b"\x02" + b"\xff" * 32])
        assert err.value.signer == 1


class TestMusigContext:
    """Full sign-and-aggregate round with in-memory signers."""

    @pytest.mark.parametrize("n", [1, 2, 3])
    def test_aggregate_signature_verifies(self, n):
        contexts, _, psigs = _run_session(_signers(n))
        sig = contexts[0].aggregate_signatures(psigs)
        assert verify_schnorr(contexts[0].aggregate_pubkey, MSG, sig)

    def test_tweaked_key_is_taproot_output_key(self):
        root = sha256(b"sweep leaf")
        contexts, _, psigs = _run_session(_signers(2), merkle_root=root)
        ctx = contexts[0]
        output_key, _ = taproot_output_key(ctx.internal_key, root)
        assert ctx.aggregate_pubkey == output_key
        assert verify_schnorr(output_key, MSG, ctx.aggregate_signatures(psigs))

    def test_all_participants_agree(self):
        contexts, _, _ = _run_session(_signers(3))
        assert len({c.aggregate_pubkey for c in contexts}) == 1
        assert len({c.aggregate_nonce for c in contexts}) == 1

    def test_partial_signatures_verify(self):
        signers = _signers(2)
        contexts, pubnonces, psigs = _run_session(signers)
        for s, nonce, psig in zip(signers, pubnonces, psigs):
            assert contexts[0].verify_partial(psig, nonce, s.public_key)

    def test_tampered_partial_signature_fails(self):
        signers = _signers(2)
        contexts, pubnonces, psigs = _run_session(signers)
        bad = ((int.from_bytes(psigs[0], "big") + 1) % N).to_bytes(32, "big")
        assert not contexts[0].verify_partial(bad, pubnonces[0], signers[0].public_key)
        sig = contexts[0].aggregate_signatures([bad, psigs[1]])
        assert not verify_schnorr(contexts[0].aggregate_pubkey, MSG, sig)

    def test_malformed_nonce_or_key_is_not_valid(self):
        signers = _signers(2)
        contexts, pubnonces, psigs = _run_session(signers)
        pk = signers[0].public_key
        bad_prefix = b"\x05" + pubnonces[0][1:]
        assert contexts[0].verify_partial(psigs[0], bad_prefix, pk) is False
        assert contexts[0].verify_partial(psigs[0], pubnonces[0][:65], pk) is False
        assert contexts[0].verify_partial(psigs[0], pubnonces[0], b"\x04" + pk[1:]) is False

    def test_nonces_processed_once(self):
        signer = _signers(1)[0]
        ctx = MusigContext([signer.public_key], MSG, signer.public_key)
        _, pub = ctx.generate_nonce()
        ctx.process_nonces([pub])
        with pytest.raises(RuntimeError, match="already set"):
            ctx.process_nonces([pub])

    def test_sign_requires_aggregate_nonce(self):
        signer = _signers(1)[0]
        ctx = MusigContext([signer.public_key], MSG, signer.public_key)
        sec, _ = ctx.generate_nonce()
        with pytest.raises(RuntimeError, match="missing aggregate nonce"):
            ctx.sign(sec, (1).to_bytes(32, "big"))

    def test_secret_nonce_single_use(self):
        signer = _signers(1)[0]
        ctx = MusigContext([signer.public_key], MSG, signer.public_key)
        sec, pub = ctx.generate_nonce()
        ctx.process_nonces([pub])
        ctx.sign(sec, (1).to_bytes(32, "big"))
        with pytest.raises(ValueError, match="out of range"):
            ctx.sign(sec, (1).to_bytes(32, "big"))

    def test_signer_must_be_cosigner(self):
        a, b = _signers(2)
        with pytest.raises(ValueError, match="not among the cosigners"):
            MusigContext([a.public_key], MSG, b.public_key)

    def test_message_must_be_digest(self):
        a = _signers(1)[0]
        with pytest.raises(ValueError, match="32-byte digest"):
            MusigContext([a.public_key], b"short", a.public_key)
