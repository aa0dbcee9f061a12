"""
Signer capability
=================
The core never touches key material directly; it asks an ``ArkSigner``
for its public key, a BIP-340 signature over a 32-byte digest, or a
MuSig2 partial signature.  Every method is a coroutine so a hardware or
remote signer can suspend.

``MemoryWalletSigner`` is the in-process implementation backed by
libsecp256k1 (via ``coincurve``).
"""

from __future__ import annotations

import json
import logging
import secrets
from abc import ABC, abstractmethod
from base64 import b64decode, b64encode
from pathlib import Path
from typing import Optional, Tuple

from coincurve import PrivateKey, PublicKeyXOnly
from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt

from ark_musig import MusigContext

log = logging.getLogger("ark.signer")
log.addHandler(logging.NullHandler())

# Fixed BIP-340 auxiliary randomness: signatures are a pure function of
# (key, digest).
_ZERO_AUX = bytes(32)


def verify_schnorr(xonly: bytes, digest: bytes, signature: bytes) -> bool:
    """Verify a BIP-340 Schnorr signature against a 32-byte x-only key."""
    if len(signature) != 64 or len(digest) != 32:
        return False
    try:
        return PublicKeyXOnly(xonly).verify(signature, digest)
    except (ValueError, TypeError):
        return False


class ArkSigner(ABC):

    @abstractmethod
    async def get_public_key(self) -> bytes:
        """33-byte compressed public key."""

    @abstractmethod
    async def sign(self, digest: bytes) -> Tuple[bytes, bytes]:
        """Return (64-byte Schnorr signature, 32-byte x-only key)."""

    @abstractmethod
    async def sign_musig(self, context: MusigContext, secnonce: bytearray) -> bytes:
        """Return a 32-byte MuSig2 partial signature for ``context``."""


class MemoryWalletSigner(ArkSigner):
    """
    In-memory secp256k1 key.

    * ``sign()`` -> deterministic 64-byte BIP-340 signature
    * ``sign_musig()`` -> BIP-327 partial signature
    """

    def __init__(self, secret: Optional[bytes] = None) -> None:
        self._sk = PrivateKey(secret if secret else secrets.token_bytes(32))
        self._pk_compressed: bytes = self._sk.public_key.format(compressed=True)

    @property
    def public_key(self) -> bytes:
        return self._pk_compressed

    @property
    def public_key_xonly(self) -> bytes:
        return self._pk_compressed[1:]

    async def get_public_key(self) -> bytes:
        return self._pk_compressed

    async def sign(self, digest: bytes) -> Tuple[bytes, bytes]:
        if len(digest) != 32:
            raise ValueError(
                f"BIP-340 Schnorr sign requires a 32-byte digest, "
                f"got {len(digest)} bytes"
            )
        signature = self._sk.sign_schnorr(digest, _ZERO_AUX)
        return signature, self.public_key_xonly

    async def sign_musig(self, context: MusigContext, secnonce: bytearray) -> bytes:
        if context.signer_pubkey != self._pk_compressed:
            raise ValueError("MuSig2 context was built for a different signer")
        psig = context.sign(secnonce, self._sk.secret)
        log.debug("MuSig2 partial signature over %s", context.msg.hex())
        return psig

    # ---- encrypted persistence ----------------------------------------
    def save_encrypted(self, filepath: str, password: str, kdf_n: int = 2**20) -> None:
        """
        Write the signing key to disk encrypted with AES-256-GCM.

        KDF: scrypt(N=kdf_n, r=8, p=1) -> 32-byte key
        """
        kdf_salt = secrets.token_bytes(16)
        key = scrypt(password.encode(), kdf_salt, 32, N=kdf_n, r=8, p=1)
        cipher = AES.new(key, AES.MODE_GCM)
        ct, tag = cipher.encrypt_and_digest(self._sk.secret)

        blob = {
            "v": 1,
            "kdf": "scrypt",
            "n": kdf_n,
            "salt": kdf_salt.hex(),
            "nonce": cipher.nonce.hex(),
            "tag": tag.hex(),
            "ct": b64encode(ct).decode(),
            "pubkey": self._pk_compressed.hex(),
        }
        Path(filepath).write_text(json.dumps(blob, indent=2))
        log.info("Signer key saved -> %s", filepath)

    @classmethod
    def load_encrypted(cls, filepath: str, password: str) -> "MemoryWalletSigner":
        """Load and decrypt a key written by ``save_encrypted``."""
        blob = json.loads(Path(filepath).read_text())

        kdf_salt = bytes.fromhex(blob["salt"])
        key = scrypt(password.encode(), kdf_salt, 32, N=blob["n"], r=8, p=1)
        cipher = AES.new(key, AES.MODE_GCM, nonce=bytes.fromhex(blob["nonce"]))

        secret = cipher.decrypt_and_verify(
            b64decode(blob["ct"]),
            bytes.fromhex(blob["tag"]),
        )
        signer = cls(secret)
        if signer.public_key.hex() != blob["pubkey"]:
            raise ValueError("decrypted key does not match the stored public key")
        log.info("Signer key loaded <- %s", filepath)
        return signer
