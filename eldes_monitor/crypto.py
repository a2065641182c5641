#
# Copyright 2025 The TadoLocal and AmpScm contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""Encryption at rest for stored ELDES passwords."""

import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .database import connect
from .exceptions import CredentialError

logger = logging.getLogger(__name__)

SECRET_KEY_ENV = 'ELDES_SECRET_KEY'
SECRET_KEY_NAME = 'fernet_key'


def get_or_create_key(db_path: str) -> bytes:
    """Return the Fernet key, generating and storing one on first use.

    ELDES_SECRET_KEY takes precedence over the stored key. Changing it makes
    previously stored passwords undecryptable.
    """
    env_key = os.environ.get(SECRET_KEY_ENV, '').strip()
    if env_key:
        return env_key.encode()

    conn = connect(db_path)
    try:
        row = conn.execute(
            "SELECT value FROM app_secrets WHERE name = ?", (SECRET_KEY_NAME,)
        ).fetchone()
        if row:
            return row[0].encode()

        key = Fernet.generate_key()
        conn.execute(
            "INSERT INTO app_secrets (name, value) VALUES (?, ?)",
            (SECRET_KEY_NAME, key.decode())
        )
        conn.commit()
        logger.info("Generated new encryption key for stored credentials")
        return key
    finally:
        conn.close()


class SecretCipher:
    """Symmetric encryption for credential secrets."""

    def __init__(self, key: bytes):
        self._fernet = Fernet(key)

    @classmethod
    def for_database(cls, db_path: str) -> 'SecretCipher':
        return cls(get_or_create_key(db_path))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode('utf-8')).decode('ascii')

    def decrypt(self, token: Optional[str]) -> str:
        if not token:
            raise CredentialError("No encrypted secret stored")
        try:
            return self._fernet.decrypt(token.encode('ascii')).decode('utf-8')
        except InvalidToken as e:
            raise CredentialError("Stored secret cannot be decrypted with the current key") from e
