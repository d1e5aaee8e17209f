"""Encryption at rest for backend credentials.

Backend configs (access keys, connection strings) are stored as Fernet tokens.
The key comes from ``STORESHIFT_CONFIG_ENCRYPTION_KEY``; when it is not set a
key is generated once and kept under the state root.
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
from collections.abc import Mapping
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from storeshift.core.config import Settings

_KDF_SALT = b"storeshift-backend-config"


class ConfigDecryptionError(ValueError):
    pass


def _derive_fernet_key(passphrase: str) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=_KDF_SALT, iterations=100_000)
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


def _load_or_create_key(settings: Settings) -> bytes:
    if settings.config_encryption_key:
        raw = settings.config_encryption_key.strip()
        try:
            Fernet(raw.encode("ascii"))
            return raw.encode("ascii")
        except (ValueError, UnicodeEncodeError):
            return _derive_fernet_key(raw)

    key_path = settings.config_key_path
    if key_path.exists():
        return key_path.read_bytes().strip()

    key = Fernet.generate_key()
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    try:
        os.write(fd, key)
    except BaseException:
        os.close(fd)
        key_path.unlink(missing_ok=True)
        raise
    os.close(fd)
    return key


def canonical_config(config: Mapping[str, Any] | None) -> str:
    return json.dumps(dict(config or {}), sort_keys=True, separators=(",", ":"), default=str)


def config_fingerprint(provider: str, config: Mapping[str, Any] | None) -> str:
    material = f"{provider.strip().lower()}|{canonical_config(config)}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()


class ConfigCipher:
    def __init__(self, settings: Settings):
        self._fernet = Fernet(_load_or_create_key(settings))

    def encrypt(self, config: Mapping[str, Any] | None) -> str:
        return self._fernet.encrypt(canonical_config(config).encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> dict[str, Any]:
        try:
            plaintext = self._fernet.decrypt(token.encode("ascii"))
        except InvalidToken as exc:
            raise ConfigDecryptionError("Stored backend config cannot be decrypted with the configured key") from exc
        return json.loads(plaintext.decode("utf-8"))
