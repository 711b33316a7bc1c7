"""Pytest configuration and shared fixtures."""

import base64

import pytest

import crypto as crypto_module
from config import AppConfig
from crypto import CryptoManager
from models import Algorithm, Authenticator, AuthenticatorType
from repository import AuthenticatorRepository
from storage import AuthenticatorCategoryStore, AuthenticatorStore, CategoryStore, VaultDatabase


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    """Full-strength PBKDF2 makes every unlock take a noticeable fraction of a second."""
    monkeypatch.setattr(crypto_module, "KDF_ITERATIONS", 1_000)


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "data")


@pytest.fixture
def config(data_dir):
    return AppConfig(data_dir)


@pytest.fixture
def crypto(config):
    return CryptoManager(config)


@pytest.fixture
def db(config, crypto):
    database = VaultDatabase(config, crypto)
    database.open()
    yield database
    database.close()


@pytest.fixture
def auth_store(db):
    return AuthenticatorStore(db)


@pytest.fixture
def category_store(db):
    return CategoryStore(db)


@pytest.fixture
def binding_store(db):
    return AuthenticatorCategoryStore(db)


@pytest.fixture
def repository(auth_store, category_store, binding_store):
    repo = AuthenticatorRepository(auth_store, category_store, binding_store)
    repo.load()
    return repo


def secret_for(label: str) -> str:
    """A distinct valid base32 secret derived from *label*."""
    return base64.b32encode(label.encode("utf-8").ljust(10, b"#")).decode("ascii").rstrip("=")


@pytest.fixture
def make_auth():
    def _make(issuer, username="", **kwargs):
        kwargs.setdefault("secret", secret_for(issuer + username))
        kwargs.setdefault("type", AuthenticatorType.TOTP)
        kwargs.setdefault("algorithm", Algorithm.SHA1)
        return Authenticator(issuer=issuer, username=username, **kwargs)

    return _make
