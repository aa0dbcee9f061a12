"""
MuSig2 (BIP-327) over libsecp256k1
==================================
Key aggregation, nonce generation/aggregation, partial signing and
signature aggregation, following the BIP-327 reference algorithms with
point arithmetic delegated to ``coincurve``.

``MusigContext`` bundles one signing job: an ordered cosigner key list,
the 32-byte message and an optional taproot tweak applied to the
aggregate key so the final signature spends a P2TR key path.
"""

from __future__ import annotations

import secrets
from typing import List, NamedTuple, Optional, Sequence, Tuple

from coincurve import PrivateKey, PublicKey

from bitcoin_protocol import tagged_hash

N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
G = PublicKey.from_secret((1).to_bytes(32, "big"))

INFINITY_BYTES = bytes(33)

Point = Optional[PublicKey]   # None is the point at infinity


class InvalidContributionError(ValueError):
    """A cosigner supplied a malformed key, nonce or partial signature."""

    def __init__(self, signer: Optional[int], contrib: str) -> None:
        super().__init__(f"invalid {contrib} from signer {signer}")
        self.signer = signer
        self.contrib = contrib


# ---------------------------------------------------------------------------
# Point helpers
# ---------------------------------------------------------------------------

def _int(b: bytes) -> int:
    return int.from_bytes(b, "big")


def _bytes(x: int) -> bytes:
    return x.to_bytes(32, "big")


def _has_even_y(P: PublicKey) -> bool:
    return P.format(compressed=True)[0] == 2


def _xbytes(P: PublicKey) -> bytes:
    return P.format(compressed=True)[1:]


def _cbytes_ext(P: Point) -> bytes:
    return INFINITY_BYTES if P is None else P.format(compressed=True)


def _cpoint(data: bytes) -> PublicKey:
    if len(data) != 33 or data[0] not in (2, 3):
        raise ValueError("not a compressed point")
    return PublicKey(data)


def _cpoint_ext(data: bytes) -> Point:
    return None if data == INFINITY_BYTES else _cpoint(data)


def _negate(P: PublicKey) -> PublicKey:
    c = P.format(compressed=True)
    return PublicKey(bytes([c[0] ^ 1]) + c[1:])


def _add(P: Point, Q: Point) -> Point:
    if P is None:
        return Q
    if Q is None:
        return P
    try:
        return PublicKey.combine_keys([P, Q])
    except ValueError:
        return None   # P == -Q


def _mul(P: Point, k: int) -> Point:
    k %= N
    if P is None or k == 0:
        return None
    return P.multiply(_bytes(k))


def _base_mul(k: int) -> Point:
    k %= N
    return None if k == 0 else PublicKey.from_secret(_bytes(k))


# ---------------------------------------------------------------------------
# Key aggregation
# ---------------------------------------------------------------------------

class KeyAggContext(NamedTuple):
    Q: PublicKey
    gacc: int
    tacc: int


def _hash_keys(pubkeys: Sequence[bytes]) -> bytes:
    return tagged_hash("KeyAgg list", b"".join(pubkeys))


def _second_key(pubkeys: Sequence[bytes]) -> bytes:
    for pk in pubkeys[1:]:
        if pk != pubkeys[0]:
            return pk
    return INFINITY_BYTES


def key_agg_coeff(pubkeys: Sequence[bytes], pk: bytes) -> int:
    if pk == _second_key(pubkeys):
        return 1
    return _int(tagged_hash("KeyAgg coefficient", _hash_keys(pubkeys) + pk)) % N


def key_agg(pubkeys: Sequence[bytes]) -> KeyAggContext:
    """Aggregate compressed public keys in the given order."""
    if not pubkeys:
        raise ValueError("key aggregation needs at least one key")
    Q: Point = None
    for i, pk in enumerate(pubkeys):
        try:
            P = _cpoint(pk)
        except ValueError:
            raise InvalidContributionError(i, "pubkey")
        Q = _add(Q, _mul(P, key_agg_coeff(pubkeys, pk)))
    if Q is None:
        raise ValueError("aggregate key is infinity")
    return KeyAggContext(Q, 1, 0)


def apply_tweak(ctx: KeyAggContext, tweak: bytes, is_xonly: bool) -> KeyAggContext:
    if len(tweak) != 32:
        raise ValueError("The tweak must be a 32-byte array.")
    Q, gacc, tacc = ctx
    g = N - 1 if is_xonly and not _has_even_y(Q) else 1
    t = _int(tweak)
    if t >= N:
        raise ValueError("The tweak must be less than n.")
    Q_ = _add(_negate(Q) if g != 1 else Q, _base_mul(t))
    if Q_ is None:
        raise ValueError("The result of tweaking cannot be infinity.")
    return KeyAggContext(Q_, g * gacc % N, (t + g * tacc) % N)


def key_agg_and_tweak(pubkeys: Sequence[bytes], tweaks: Sequence[bytes],
                      is_xonly: Sequence[bool]) -> KeyAggContext:
    if len(tweaks) != len(is_xonly):
        raise ValueError("The `tweaks` and `is_xonly` arrays must have the same length.")
    ctx = key_agg(pubkeys)
    for tweak, xonly in zip(tweaks, is_xonly):
        ctx = apply_tweak(ctx, tweak, xonly)
    return ctx


# ---------------------------------------------------------------------------
# Nonces
# ---------------------------------------------------------------------------

def _nonce_hash(rand: bytes, pk: bytes, aggpk: bytes, i: int,
                msg_prefixed: bytes, extra_in: bytes) -> int:
    buf = rand
    buf += len(pk).to_bytes(1, "big") + pk
    buf += len(aggpk).to_bytes(1, "big") + aggpk
    buf += msg_prefixed
    buf += len(extra_in).to_bytes(4, "big") + extra_in
    buf += i.to_bytes(1, "big")
    return _int(tagged_hash("MuSig/nonce", buf))


def nonce_gen(sk: Optional[bytes], pk: bytes, aggpk: Optional[bytes],
              msg: Optional[bytes], extra_in: Optional[bytes] = None,
              rand: Optional[bytes] = None) -> Tuple[bytearray, bytes]:
    """Return (secnonce, pubnonce).  ``secnonce`` is 97 bytes: k1 || k2 || pk."""
    if sk is not None and len(sk) != 32:
        raise ValueError("The optional byte array sk must have length 32.")
    if aggpk is not None and len(aggpk) != 32:
        raise ValueError("The optional byte array aggpk must have length 32.")
    rand_ = rand if rand is not None else secrets.token_bytes(32)
    if sk is not None:
        rand_ = bytes(a ^ b for a, b in zip(sk, tagged_hash("MuSig/aux", rand_)))
    if msg is None:
        msg_prefixed = b"\x00"
    else:
        msg_prefixed = b"\x01" + len(msg).to_bytes(8, "big") + msg
    k1 = _nonce_hash(rand_, pk, aggpk or b"", 0, msg_prefixed, extra_in or b"") % N
    k2 = _nonce_hash(rand_, pk, aggpk or b"", 1, msg_prefixed, extra_in or b"") % N
    if k1 == 0 or k2 == 0:
        raise ValueError("nonce derivation produced zero")
    pubnonce = _cbytes_ext(_base_mul(k1)) + _cbytes_ext(_base_mul(k2))
    secnonce = bytearray(_bytes(k1) + _bytes(k2) + pk)
    return secnonce, pubnonce


def nonce_agg(pubnonces: Sequence[bytes]) -> bytes:
    aggnonce = b""
    for j in (0, 1):
        R_j: Point = None
        for i, pubnonce in enumerate(pubnonces):
            try:
                R_ij = _cpoint(pubnonce[j * 33:(j + 1) * 33])
            except ValueError:
                raise InvalidContributionError(i, "pubnonce")
            R_j = _add(R_j, R_ij)
        aggnonce += _cbytes_ext(R_j)
    return aggnonce


# ---------------------------------------------------------------------------
# Signing session
# ---------------------------------------------------------------------------

class SessionContext(NamedTuple):
    aggnonce: bytes
    pubkeys: List[bytes]
    tweaks: List[bytes]
    is_xonly: List[bool]
    msg: bytes


def get_session_values(ctx: SessionContext) -> Tuple[PublicKey, int, int, int, PublicKey, int]:
    Q, gacc, tacc = key_agg_and_tweak(ctx.pubkeys, ctx.tweaks, ctx.is_xonly)
    b = _int(tagged_hash("MuSig/noncecoef", ctx.aggnonce + _xbytes(Q) + ctx.msg)) % N
    try:
        R_1 = _cpoint_ext(ctx.aggnonce[0:33])
        R_2 = _cpoint_ext(ctx.aggnonce[33:66])
    except ValueError:
        raise InvalidContributionError(None, "aggnonce")
    R_ = _add(R_1, _mul(R_2, b))
    R = R_ if R_ is not None else G
    e = _int(tagged_hash("BIP0340/challenge", _xbytes(R) + _xbytes(Q) + ctx.msg)) % N
    return Q, gacc, tacc, b, R, e


def _session_key_agg_coeff(ctx: SessionContext, pk: bytes) -> int:
    if pk not in ctx.pubkeys:
        raise ValueError("The signer's pubkey must be included in the list of pubkeys.")
    return key_agg_coeff(ctx.pubkeys, pk)


def sign(secnonce: bytearray, sk: bytes, ctx: SessionContext) -> bytes:
    """Produce a 32-byte partial signature.  ``secnonce`` is zeroed on use."""
    Q, gacc, _, b, R, e = get_session_values(ctx)
    k1_ = _int(secnonce[0:32])
    k2_ = _int(secnonce[32:64])
    secnonce[:64] = bytes(64)
    if not 0 < k1_ < N:
        raise ValueError("first secnonce value is out of range.")
    if not 0 < k2_ < N:
        raise ValueError("second secnonce value is out of range.")
    k1 = k1_ if _has_even_y(R) else N - k1_
    k2 = k2_ if _has_even_y(R) else N - k2_
    d_ = _int(sk)
    if not 0 < d_ < N:
        raise ValueError("secret key value is out of range.")
    pk = PrivateKey(sk).public_key.format(compressed=True)
    if pk != bytes(secnonce[64:97]):
        raise ValueError("Public key does not match nonce_gen argument")
    a = _session_key_agg_coeff(ctx, pk)
    g = 1 if _has_even_y(Q) else N - 1
    d = g * gacc * d_ % N
    s = (k1 + b * k2 + e * a * d) % N
    psig = _bytes(s)
    pubnonce = _cbytes_ext(_base_mul(k1_)) + _cbytes_ext(_base_mul(k2_))
    if not partial_sig_verify_internal(psig, pubnonce, pk, ctx):
        raise RuntimeError("partial signature failed self-verification")
    return psig


def partial_sig_verify_internal(psig: bytes, pubnonce: bytes, pk: bytes,
                                ctx: SessionContext) -> bool:
    Q, gacc, _, b, R, e = get_session_values(ctx)
    s = _int(psig)
    if s >= N:
        return False
    if len(pubnonce) != 66:
        return False
    try:
        R_s1 = _cpoint(pubnonce[0:33])
        R_s2 = _cpoint(pubnonce[33:66])
        P = _cpoint(pk)
    except ValueError:
        return False
    Re_s_ = _add(R_s1, _mul(R_s2, b))
    Re_s = Re_s_ if _has_even_y(R) or Re_s_ is None else _negate(Re_s_)
    a = _session_key_agg_coeff(ctx, pk)
    g = 1 if _has_even_y(Q) else N - 1
    g_ = g * gacc % N
    lhs = _base_mul(s)
    rhs = _add(Re_s, _mul(P, e * a * g_))
    return _cbytes_ext(lhs) == _cbytes_ext(rhs)


def partial_sig_agg(psigs: Sequence[bytes], ctx: SessionContext) -> bytes:
    Q, _, tacc, _, R, e = get_session_values(ctx)
    s = 0
    for i, psig in enumerate(psigs):
        s_i = _int(psig)
        if s_i >= N:
            raise InvalidContributionError(i, "psig")
        s = (s + s_i) % N
    g = 1 if _has_even_y(Q) else N - 1
    s = (s + e * g * tacc) % N
    return _xbytes(R) + _bytes(s)


# ---------------------------------------------------------------------------
# High-level context
# ---------------------------------------------------------------------------

class MusigContext:
    """
    One MuSig2 signing job.

    Cosigner keys are 33-byte compressed keys in protocol order (never
    re-sorted).  With ``taproot_merkle_root`` set the aggregate key is
    taproot-tweaked, so the final signature verifies against the P2TR
    output key of the aggregate.
    """

    def __init__(
        self,
        pubkeys: Sequence[bytes],
        msg: bytes,
        signer_pubkey: bytes,
        taproot_merkle_root: Optional[bytes] = None,
    ) -> None:
        if len(msg) != 32:
            raise ValueError(f"MuSig2 message must be a 32-byte digest, got {len(msg)}")
        self.pubkeys: List[bytes] = list(pubkeys)
        if signer_pubkey not in self.pubkeys:
            raise ValueError("signer key is not among the cosigners")
        self.msg = msg
        self.signer_pubkey = signer_pubkey
        self.internal_key = _xbytes(key_agg(self.pubkeys).Q)
        if taproot_merkle_root is not None:
            self.tweaks = [tagged_hash("TapTweak", self.internal_key + taproot_merkle_root)]
            self.is_xonly = [True]
        else:
            self.tweaks, self.is_xonly = [], []
        self._keyagg = key_agg_and_tweak(self.pubkeys, self.tweaks, self.is_xonly)
        self.aggregate_nonce: Optional[bytes] = None

    @property
    def aggregate_pubkey(self) -> bytes:
        """x-only key the final signature verifies against."""
        return _xbytes(self._keyagg.Q)

    def generate_nonce(self, extra_in: Optional[bytes] = None) -> Tuple[bytearray, bytes]:
        return nonce_gen(None, self.signer_pubkey, self.aggregate_pubkey, self.msg, extra_in)

    def process_nonces(self, pubnonces: Sequence[bytes]) -> bytes:
        if self.aggregate_nonce is not None:
            raise RuntimeError("aggregate nonce already set")
        self.aggregate_nonce = nonce_agg(pubnonces)
        return self.aggregate_nonce

    def session(self) -> SessionContext:
        if self.aggregate_nonce is None:
            raise RuntimeError("missing aggregate nonce")
        return SessionContext(self.aggregate_nonce, self.pubkeys, self.tweaks,
                              self.is_xonly, self.msg)

    def sign(self, secnonce: bytearray, secret_key: bytes) -> bytes:
        return sign(secnonce, secret_key, self.session())

    def verify_partial(self, psig: bytes, pubnonce: bytes, pubkey: bytes) -> bool:
        return partial_sig_verify_internal(psig, pubnonce, pubkey, self.session())

    def aggregate_signatures(self, psigs: Sequence[bytes]) -> bytes:
        return partial_sig_agg(psigs, self.session())
