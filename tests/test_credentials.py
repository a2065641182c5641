import sqlite3

import pytest
from cryptography.fernet import Fernet

from eldes_monitor.credentials import CredentialStore
from eldes_monitor.crypto import SECRET_KEY_ENV, SecretCipher, get_or_create_key
from eldes_monitor.database import ensure_schema_and_migrate
from eldes_monitor.exceptions import CredentialError
from eldes_monitor.history import HistoryWriter


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    monkeypatch.delenv(SECRET_KEY_ENV, raising=False)
    path = str(tmp_path / "creds.db")
    ensure_schema_and_migrate(path)
    return path


def test_key_is_generated_once_and_reused(db_path):
    key = get_or_create_key(db_path)
    assert get_or_create_key(db_path) == key
    Fernet(key)


def test_env_key_takes_precedence(db_path, monkeypatch):
    env_key = Fernet.generate_key().decode()
    monkeypatch.setenv(SECRET_KEY_ENV, env_key)
    assert get_or_create_key(db_path) == env_key.encode()


def test_secret_is_encrypted_at_rest(db_path):
    store = CredentialStore(db_path, SecretCipher.for_database(db_path))
    credential_id = store.add("user@example.com", "hunter2", label="Cottage")

    conn = sqlite3.connect(db_path)
    stored = conn.execute("SELECT password_encrypted FROM eldes_credentials").fetchone()[0]
    conn.close()
    assert "hunter2" not in stored

    credential = store.get(credential_id)
    assert credential.login == "user@example.com"
    assert credential.label == "Cottage"
    assert credential.decrypt_secret() == "hunter2"
    assert "hunter2" not in repr(credential)


def test_wrong_key_cannot_decrypt(db_path):
    credential_id = CredentialStore(db_path, SecretCipher(Fernet.generate_key())).add("user@example.com", "pw")
    other = CredentialStore(db_path, SecretCipher(Fernet.generate_key()))
    with pytest.raises(CredentialError):
        other.get(credential_id).decrypt_secret()


def test_list_find_and_delete(db_path):
    store = CredentialStore(db_path, SecretCipher.for_database(db_path))
    first = store.add("a@example.com", "pw1")
    second = store.add("b@example.com", "pw2", label="Office")

    listed = store.list(user_id=1)
    assert [c['username'] for c in listed] == ["a@example.com", "b@example.com"]
    assert all('password_encrypted' not in c for c in listed)
    assert store.ids() == [first, second]
    assert store.find_by_login("b@example.com").id == second
    assert store.find_by_login("c@example.com") is None

    assert store.delete(first) is True
    assert store.delete(first) is False
    assert store.ids() == [second]
    with pytest.raises(CredentialError):
        store.get(first)


def test_delete_cascades_to_devices(db_path):
    store = CredentialStore(db_path, SecretCipher.for_database(db_path))
    credential_id = store.add("a@example.com", "pw")
    HistoryWriter(db_path).upsert_device(credential_id, {"imei": "111", "deviceName": "Home"})

    store.delete(credential_id)

    conn = sqlite3.connect(db_path)
    assert conn.execute("SELECT COUNT(*) FROM devices").fetchone()[0] == 0
    conn.close()
