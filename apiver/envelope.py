"""
Crypto Envelope

Every artifact on disk (snapshot, patch, hotfix) goes through the same
envelope:

    artifact = IV || AES-256-CBC(key, gzip(payload))

The key is SHA-256 of the configured secret, so the secret can be any
string of at least MIN_SECRET_LENGTH characters. A fresh random IV is
generated per seal, so sealing the same payload twice never yields the
same bytes.

The secret is looked up lazily: constructing an Envelope without one is
fine, and the ConfigurationError only surfaces when something actually
needs to be encrypted or decrypted.
"""

import gzip
import logging
import os
import zlib

from Cryptodome.Cipher import AES
from Cryptodome.Hash import SHA256
from Cryptodome.Random import get_random_bytes
from Cryptodome.Util.Padding import pad, unpad

from .config import DEFAULT_SECRET_ENV, StoreConfig
from .errors import ConfigurationError, CorruptArtifactError

logger = logging.getLogger(__name__)

IV_LENGTH = AES.block_size  # 16
MIN_SECRET_LENGTH = 32


class Envelope:
    """Symmetric seal/open of opaque byte buffers."""

    def __init__(self, secret: str | bytes | None, secret_env: str = DEFAULT_SECRET_ENV):
        self._secret = secret
        self._secret_env = secret_env
        self._key: bytes | None = None

    @classmethod
    def from_config(cls, config: StoreConfig | None = None) -> "Envelope":
        """Build an envelope whose secret comes from the environment, then config."""
        config = config or StoreConfig()
        secret = os.environ.get(config.secret_env) or config.secret
        return cls(secret, secret_env=config.secret_env)

    def _derive_key(self) -> bytes:
        if self._key is not None:
            return self._key
        secret = self._secret
        if not secret:
            raise ConfigurationError(
                f"{self._secret_env} is not set.\n"
                f"  Export a secret of at least {MIN_SECRET_LENGTH} characters, e.g.\n"
                f"    export {self._secret_env}=$(openssl rand -hex 32)"
            )
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if len(secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"{self._secret_env} must be at least {MIN_SECRET_LENGTH} characters "
                f"(got {len(secret)})"
            )
        self._key = SHA256.new(secret).digest()
        return self._key

    def seal(self, data: bytes) -> bytes:
        """Compress, encrypt and prefix with a fresh IV."""
        key = self._derive_key()
        iv = get_random_bytes(IV_LENGTH)
        compressed = gzip.compress(data)
        cipher = AES.new(key, AES.MODE_CBC, iv)
        logger.debug("Sealing %d bytes (%d compressed)", len(data), len(compressed))
        return iv + cipher.encrypt(pad(compressed, AES.block_size))

    def open(self, blob: bytes, artifact_id: str | None = None) -> bytes:
        """Split off the IV, decrypt and decompress.

        Raises CorruptArtifactError for truncated or tampered input and for
        input sealed with a different secret.
        """
        key = self._derive_key()
        if len(blob) < IV_LENGTH + AES.block_size:
            raise CorruptArtifactError(
                f"Artifact too short ({len(blob)} bytes)", artifact_id=artifact_id
            )
        iv, ciphertext = blob[:IV_LENGTH], blob[IV_LENGTH:]
        if len(ciphertext) % AES.block_size:
            raise CorruptArtifactError(
                "Artifact length is not a whole number of cipher blocks",
                artifact_id=artifact_id,
            )
        cipher = AES.new(key, AES.MODE_CBC, iv)
        try:
            compressed = unpad(cipher.decrypt(ciphertext), AES.block_size)
        except ValueError as e:
            logger.debug("Failed to open %s: %s", artifact_id or "artifact", e)
            raise CorruptArtifactError(
                f"Decryption failed (wrong secret or damaged data): {e}",
                artifact_id=artifact_id,
            ) from e
        try:
            return gzip.decompress(compressed)
        except (OSError, EOFError, zlib.error) as e:
            raise CorruptArtifactError(
                f"Decompression failed: {e}", artifact_id=artifact_id
            ) from e
