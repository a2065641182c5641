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

"""Storage of ELDES Cloud login credentials."""

import logging
from typing import Any, Dict, List, Optional

from .crypto import SecretCipher
from .database import DEFAULT_USER_ID, connect
from .exceptions import CredentialError

logger = logging.getLogger(__name__)


class Credential:
    """One stored ELDES login. The secret stays encrypted until asked for."""

    def __init__(self, id: int, user_id: int, login: str, secret_encrypted: str,
                 label: Optional[str], cipher: SecretCipher):
        self.id = id
        self.user_id = user_id
        self.login = login
        self.label = label
        self._secret_encrypted = secret_encrypted
        self._cipher = cipher

    def decrypt_secret(self) -> str:
        return self._cipher.decrypt(self._secret_encrypted)

    def __repr__(self) -> str:
        return f"<Credential {self.id}: {self.login} secret=***>"


class CredentialStore:
    """CRUD access to the eldes_credentials table."""

    def __init__(self, db_path: str, cipher: SecretCipher):
        self.db_path = db_path
        self.cipher = cipher

    def add(self, login: str, password: str, label: Optional[str] = None,
            user_id: int = DEFAULT_USER_ID) -> int:
        conn = connect(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO eldes_credentials (user_id, username, password_encrypted, device_name)
                VALUES (?, ?, ?, ?)
            """, (user_id, login, self.cipher.encrypt(password), label))
            conn.commit()
            credential_id = cursor.lastrowid
        finally:
            conn.close()

        logger.info(f"Stored credentials {credential_id} for {login}")
        return credential_id

    def _from_row(self, row) -> Credential:
        credential_id, user_id, login, secret, label = row
        return Credential(credential_id, user_id, login, secret, label, self.cipher)

    def get(self, credential_id: int) -> Credential:
        conn = connect(self.db_path)
        try:
            row = conn.execute("""
                SELECT id, user_id, username, password_encrypted, device_name
                FROM eldes_credentials WHERE id = ?
            """, (credential_id,)).fetchone()
        finally:
            conn.close()

        if not row:
            raise CredentialError(f"Credential {credential_id} not found")
        return self._from_row(row)

    def find_by_login(self, login: str, user_id: int = DEFAULT_USER_ID) -> Optional[Credential]:
        conn = connect(self.db_path)
        try:
            row = conn.execute("""
                SELECT id, user_id, username, password_encrypted, device_name
                FROM eldes_credentials
                WHERE username = ? AND user_id = ?
                ORDER BY id LIMIT 1
            """, (login, user_id)).fetchone()
        finally:
            conn.close()
        return self._from_row(row) if row else None

    def ids(self) -> List[int]:
        conn = connect(self.db_path)
        try:
            return [row[0] for row in conn.execute("SELECT id FROM eldes_credentials ORDER BY id")]
        finally:
            conn.close()

    def list(self, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """List credential metadata. Secrets are never included."""
        query = "SELECT id, username, device_name, created_at, updated_at FROM eldes_credentials"
        params: tuple = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        query += " ORDER BY id"

        conn = connect(self.db_path)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        return [
            {
                'id': row[0],
                'username': row[1],
                'device_name': row[2],
                'created_at': row[3],
                'updated_at': row[4],
            }
            for row in rows
        ]

    def delete(self, credential_id: int, user_id: int = DEFAULT_USER_ID) -> bool:
        """Delete a credential. Devices and their history cascade."""
        conn = connect(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM eldes_credentials WHERE id = ? AND user_id = ?",
                (credential_id, user_id)
            )
            conn.commit()
            deleted = cursor.rowcount > 0
        finally:
            conn.close()

        if deleted:
            logger.info(f"Deleted credentials {credential_id}")
        return deleted
