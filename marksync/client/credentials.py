"""
client/credentials.py - Encrypted storage for source tokens
OAuth and API tokens never touch disk in plain text.
"""

import json
import os
import secrets
from pathlib import Path
from typing import Dict, Optional
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..sources.base import Credentials

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16


class TokenCipher:
    """AES-256-GCM with a key derived from the device secret via HKDF"""

    def __init__(self, secret: bytes):
        self.key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=b'marksync-credentials',
        ).derive(secret)

    def encrypt(self, plaintext: bytes) -> bytes:
        """Returns nonce + tag + ciphertext"""
        nonce = secrets.token_bytes(NONCE_SIZE)
        encryptor = Cipher(algorithms.AES(self.key), modes.GCM(nonce)).encryptor()
        ciphertext = encryptor.update(plaintext) + encryptor.finalize()
        return nonce + encryptor.tag + ciphertext

    def decrypt(self, bundle: bytes) -> bytes:
        nonce = bundle[:NONCE_SIZE]
        tag = bundle[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = bundle[NONCE_SIZE + TAG_SIZE:]
        decryptor = Cipher(algorithms.AES(self.key), modes.GCM(nonce, tag)).decryptor()
        return decryptor.update(ciphertext) + decryptor.finalize()


class CredentialStore:
    """
    Persists Credentials per source id.
    The device secret lives next to the encrypted file, both mode 0600.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.data_dir, 0o700)

        self.secret_file = self.data_dir / "device.key"
        self.credentials_file = self.data_dir / "credentials.bin"
        self.cipher = TokenCipher(self._load_or_create_secret())

    def _load_or_create_secret(self) -> bytes:
        if self.secret_file.exists():
            return self.secret_file.read_bytes()

        secret = secrets.token_bytes(32)
        with open(self.secret_file, 'wb') as f:
            f.write(secret)
        os.chmod(self.secret_file, 0o600)
        logger.info(f"Created device secret at {self.secret_file}")
        return secret

    def _load_all(self) -> Dict[str, dict]:
        if not self.credentials_file.exists():
            return {}

        try:
            plaintext = self.cipher.decrypt(self.credentials_file.read_bytes())
        except InvalidTag:
            logger.error("Stored credentials cannot be decrypted; sign in again")
            return {}
        return json.loads(plaintext.decode('utf-8'))

    def _save_all(self, data: Dict[str, dict]):
        bundle = self.cipher.encrypt(json.dumps(data).encode('utf-8'))
        tmp_file = self.credentials_file.with_suffix('.tmp')
        with open(tmp_file, 'wb') as f:
            f.write(bundle)
        os.chmod(tmp_file, 0o600)
        os.replace(tmp_file, self.credentials_file)

    def load(self, source_id: str) -> Optional[Credentials]:
        data = self._load_all().get(source_id)
        return Credentials.from_dict(data) if data else None

    def save(self, source_id: str, credentials: Credentials):
        data = self._load_all()
        data[source_id] = credentials.to_dict()
        self._save_all(data)
        logger.debug(f"Stored credentials for {source_id}")

    def delete(self, source_id: str):
        data = self._load_all()
        if data.pop(source_id, None) is not None:
            self._save_all(data)

    def clear(self):
        """Forget every token (logout)"""
        if self.credentials_file.exists():
            self.credentials_file.unlink()
        logger.info("Cleared all stored credentials")
