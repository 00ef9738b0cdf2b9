"""Encryption-at-rest codec for secret and pool key values.

Values are sealed with AES-256-GCM envelopes before they reach the database
and opened after loading. The storage adapters are the only callers; domain
entities always carry plaintext.
"""
import binascii
import hashlib
import json
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from keyrotor.settings import Settings

ALGORITHM_AES_256_GCM = "aes-256-gcm"
ENVELOPE_VERSION = "v1"
DEV_MASTER_KEY = "dev-master-key-change-in-prod"

_HEX = re.compile(r"^[0-9a-f]*$")


class DecryptError(ValueError):
    """Stored value could not be opened with the loaded keys."""


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Sealed value. Binary fields are lowercase hex."""
    kek_id: str
    iv: str          # 24 hex chars (12 bytes)
    ciphertext: str
    tag: str         # 32 hex chars (16 bytes)
    alg: str = ALGORITHM_AES_256_GCM
    v: str = ENVELOPE_VERSION

    def __post_init__(self):
        if len(self.iv) != 24 or not _HEX.match(self.iv):
            raise DecryptError(f"Invalid IV: must be 24 hex characters. Got len={len(self.iv)}")
        if len(self.tag) != 32 or not _HEX.match(self.tag):
            raise DecryptError(f"Invalid Tag: must be 32 hex characters. Got len={len(self.tag)}")
        if not _HEX.match(self.ciphertext):
            raise DecryptError("Invalid Ciphertext: must be a hex string.")
        if self.alg != ALGORITHM_AES_256_GCM:
            raise DecryptError(f"Unsupported algorithm: {self.alg}")

    def dumps(self) -> str:
        return json.dumps(
            {"v": self.v, "alg": self.alg, "kek_id": self.kek_id,
             "iv": self.iv, "ciphertext": self.ciphertext, "tag": self.tag},
            separators=(",", ":"),
        )

    @staticmethod
    def loads(raw: str) -> "EncryptedEnvelope":
        try:
            data = json.loads(raw)
            return EncryptedEnvelope(
                kek_id=data["kek_id"],
                iv=data["iv"],
                ciphertext=data["ciphertext"],
                tag=data["tag"],
                alg=data.get("alg", ALGORITHM_AES_256_GCM),
                v=data.get("v", ENVELOPE_VERSION),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise DecryptError(f"Malformed envelope: {e}") from e


class KekProvider(ABC):
    """Key Encryption Key provider."""

    @property
    @abstractmethod
    def key_id(self) -> str:
        ...

    @abstractmethod
    def encrypt(self, plaintext: bytes, aad: Optional[bytes] = None) -> EncryptedEnvelope:
        ...

    @abstractmethod
    def decrypt(self, envelope: EncryptedEnvelope, aad: Optional[bytes] = None) -> bytes:
        ...


class LocalKekProvider(KekProvider):
    """KEK provider backed by a master key held in configuration.

    A 64-char hex master key is used as-is; anything else is hashed into a
    32-byte key.
    """

    def __init__(self, master_key: str, key_id: str = "v1"):
        if len(master_key) == 64 and _HEX.match(master_key.lower()):
            self._key = binascii.unhexlify(master_key.lower())
        else:
            self._key = hashlib.sha256(master_key.encode("utf-8")).digest()
        self._key_id = key_id
        self._aesgcm = AESGCM(self._key)

    @property
    def key_id(self) -> str:
        return self._key_id

    def encrypt(self, plaintext: bytes, aad: Optional[bytes] = None) -> EncryptedEnvelope:
        iv = os.urandom(12)
        sealed = self._aesgcm.encrypt(iv, plaintext, aad)
        return EncryptedEnvelope(
            kek_id=self._key_id,
            iv=iv.hex(),
            ciphertext=sealed[:-16].hex(),
            tag=sealed[-16:].hex(),
        )

    def decrypt(self, envelope: EncryptedEnvelope, aad: Optional[bytes] = None) -> bytes:
        if envelope.kek_id != self._key_id:
            raise DecryptError(f"Key mismatch: envelope uses {envelope.kek_id}, provider has {self._key_id}")
        try:
            return self._aesgcm.decrypt(
                bytes.fromhex(envelope.iv),
                bytes.fromhex(envelope.ciphertext) + bytes.fromhex(envelope.tag),
                aad,
            )
        except InvalidTag as e:
            raise DecryptError("DECRYPT_FAILED") from e


class MultiKekProvider(KekProvider):
    """Encrypts with the primary KEK, decrypts with any loaded KEK."""

    def __init__(self, primary: KekProvider, secondaries: Dict[str, KekProvider]):
        self.primary = primary
        self.secondaries = secondaries

    @property
    def key_id(self) -> str:
        return self.primary.key_id

    def encrypt(self, plaintext: bytes, aad: Optional[bytes] = None) -> EncryptedEnvelope:
        return self.primary.encrypt(plaintext, aad)

    def decrypt(self, envelope: EncryptedEnvelope, aad: Optional[bytes] = None) -> bytes:
        if envelope.kek_id == self.primary.key_id:
            return self.primary.decrypt(envelope, aad)
        if provider := self.secondaries.get(envelope.kek_id):
            return provider.decrypt(envelope, aad)
        raise DecryptError(f"No provider found for KEK ID {envelope.kek_id}")


def get_kek_provider(settings: Settings) -> KekProvider:
    """Build the KEK provider from settings.

    Retired keys are read from ``KEYROTOR_MASTER_KEY_OLD_<n>`` /
    ``KEYROTOR_KEK_ID_OLD_<n>`` (n = 1..3) so values sealed before a master
    key change stay readable.
    """
    master_key = settings.master_key
    if not master_key:
        if not settings.dev_mode:
            raise RuntimeError("KEYROTOR_MASTER_KEY must be set outside dev mode.")
        master_key = DEV_MASTER_KEY

    primary = LocalKekProvider(master_key, settings.kek_id)
    secondaries: Dict[str, KekProvider] = {}
    for i in range(1, 4):
        old_key = os.getenv(f"KEYROTOR_MASTER_KEY_OLD_{i}")
        old_id = os.getenv(f"KEYROTOR_KEK_ID_OLD_{i}")
        if old_key and old_id:
            secondaries[old_id] = LocalKekProvider(old_key, old_id)

    if not secondaries:
        return primary
    return MultiKekProvider(primary, secondaries)


class ValueCodec:
    """Seals values for storage, binding each to its row context as AAD."""

    def __init__(self, kek: KekProvider):
        self._kek = kek

    def encode(self, plaintext: str, context: str) -> str:
        envelope = self._kek.encrypt(plaintext.encode("utf-8"), aad=context.encode("utf-8"))
        return envelope.dumps()

    def decode(self, stored: str, context: str) -> str:
        envelope = EncryptedEnvelope.loads(stored)
        return self._kek.decrypt(envelope, aad=context.encode("utf-8")).decode("utf-8")

    def encode_optional(self, plaintext: Optional[str], context: str) -> Optional[str]:
        return None if plaintext is None else self.encode(plaintext, context)

    def decode_optional(self, stored: Optional[str], context: str) -> Optional[str]:
        return None if stored is None else self.decode(stored, context)


def secret_context(key: str) -> str:
    return f"keyrotor.secret.v1:{key}"


def pool_context(secret_key: str) -> str:
    return f"keyrotor.pool.v1:{secret_key}"
