"""Tests for the vault database and the three stores."""

import json
import os
import threading

import pytest

from errors import DuplicateError, NotFoundError, PersistenceError, ValidationError
from models import Algorithm, Authenticator, AuthenticatorCategory, AuthenticatorType, Category
from storage import AuthenticatorCategoryStore, AuthenticatorStore, VaultDatabase


def test_create_and_get_all_orders_by_ranking_then_issuer(auth_store, make_auth):
    auth_store.create(make_auth("Zeta", ranking=0))
    auth_store.create(make_auth("beta", ranking=1))
    auth_store.create(make_auth("Alpha", ranking=1))

    assert [a.issuer for a in auth_store.get_all()] == ["Zeta", "Alpha", "beta"]


def test_create_normalises_the_secret(auth_store, make_auth):
    stored = auth_store.create(make_auth("GitHub", secret="jbsw y3dp ehpk 3pxp"))
    assert stored.secret == "JBSWY3DPEHPK3PXP"
    assert auth_store.get("JBSWY3DPEHPK3PXP").issuer == "GitHub"


def test_create_rejects_duplicate_secret(auth_store, make_auth):
    auth_store.create(make_auth("GitHub"))
    with pytest.raises(DuplicateError):
        auth_store.create(make_auth("GitHub"))


def test_create_rejects_invalid_record(auth_store, make_auth):
    with pytest.raises(ValidationError):
        auth_store.create(make_auth("GitHub", digits=12))
    with pytest.raises(ValidationError):
        auth_store.create(make_auth("", secret="JBSWY3DPEHPK3PXP"))
    assert auth_store.get_all() == []


def test_update_replaces_and_requires_existing(auth_store, make_auth):
    stored = auth_store.create(make_auth("GitHub"))
    stored.issuer = "GitHub Enterprise"
    stored.digits = 8
    auth_store.update(stored)
    assert auth_store.get(stored.secret).issuer == "GitHub Enterprise"
    assert auth_store.get(stored.secret).digits == 8

    with pytest.raises(NotFoundError):
        auth_store.update(make_auth("Unknown"))


def test_returned_records_are_copies(auth_store, make_auth):
    stored = auth_store.create(make_auth("GitHub"))
    fetched = auth_store.get(stored.secret)
    fetched.issuer = "changed"
    assert auth_store.get(stored.secret).issuer == "GitHub"


def test_delete_cascades_to_bindings(auth_store, category_store, binding_store, make_auth):
    a = auth_store.create(make_auth("Google"))
    b = auth_store.create(make_auth("GitHub"))
    work = category_store.create(Category(id=None, name="Work"))
    binding_store.create(AuthenticatorCategory(a.secret, work.id))
    binding_store.create(AuthenticatorCategory(b.secret, work.id))

    auth_store.delete(a)

    assert binding_store.get_all_for_authenticator(a) == []
    assert [x.authenticator_secret for x in binding_store.get_all_for_category(work)] == [b.secret]
    with pytest.raises(NotFoundError):
        auth_store.delete(a)


def test_category_delete_cascades_to_bindings(auth_store, category_store, binding_store, make_auth):
    a = auth_store.create(make_auth("Google"))
    work = category_store.create(Category(id=None, name="Work"))
    home = category_store.create(Category(id=None, name="Home", ranking=1))
    binding_store.create(AuthenticatorCategory(a.secret, work.id))
    binding_store.create(AuthenticatorCategory(a.secret, home.id))

    category_store.delete(work)

    assert [b.category_id for b in binding_store.get_all_for_authenticator(a)] == [home.id]
    assert [c.name for c in category_store.get_all()] == ["Home"]


def test_bindings_are_not_deduplicated_and_refuse_orphans(auth_store, category_store, binding_store, make_auth):
    a = auth_store.create(make_auth("Google"))
    work = category_store.create(Category(id=None, name="Work"))
    binding = AuthenticatorCategory(a.secret, work.id)
    binding_store.create(binding)
    binding_store.create(binding)
    assert len(binding_store.get_all_for_category(work)) == 2

    with pytest.raises(NotFoundError):
        binding_store.create(AuthenticatorCategory("MISSINGSECRET", work.id))
    with pytest.raises(NotFoundError):
        binding_store.create(AuthenticatorCategory(a.secret, "missing-category"))

    binding_store.delete_all_for_category(work)
    assert binding_store.get_all() == []


def test_mutations_are_durable_across_reopen(config, crypto, auth_store, category_store, binding_store, make_auth):
    a = auth_store.create(make_auth("Google", username="me@example.com"))
    work = category_store.create(Category(id=None, name="Work"))
    binding_store.create(AuthenticatorCategory(a.secret, work.id))

    reopened = VaultDatabase(config, crypto)
    reopened.open()
    assert [x.username for x in AuthenticatorStore(reopened).get_all()] == ["me@example.com"]
    assert len(AuthenticatorCategoryStore(reopened).get_all_for_authenticator(a)) == 1
    assert os.path.exists(config.vault_path)
    assert not os.path.exists(config.vault_enc_path)


def test_failed_write_rolls_back(monkeypatch, auth_store, make_auth):
    auth_store.create(make_auth("Google"))

    def fail(path, data):
        raise PersistenceError("disk full")

    monkeypatch.setattr(VaultDatabase, "_atomic_write", staticmethod(fail))

    with pytest.raises(PersistenceError):
        auth_store.create(make_auth("GitHub"))
    assert [a.issuer for a in auth_store.get_all()] == ["Google"]


def test_exception_inside_transaction_rolls_back_everything(db, auth_store, make_auth):
    with pytest.raises(RuntimeError):
        with db.transaction():
            auth_store.create(make_auth("Google"))
            raise RuntimeError("boom")
    assert auth_store.get_all() == []


def test_swallowed_inner_failure_aborts_the_whole_transaction(db, auth_store, make_auth):
    google = auth_store.create(make_auth("Google"))

    with pytest.raises(PersistenceError):
        with db.transaction():
            try:
                auth_store.create(make_auth("Google"))
            except DuplicateError:
                pass
            auth_store.create(make_auth("GitHub"))

    assert [a.issuer for a in auth_store.get_all()] == ["Google"]
    assert auth_store.get(google.secret).issuer == "Google"


def test_caught_lookup_miss_does_not_abort_the_transaction(db, auth_store, make_auth):
    with db.transaction():
        try:
            auth_store.get("MISSING")
        except NotFoundError:
            pass
        auth_store.create(make_auth("GitHub"))

    assert [a.issuer for a in auth_store.get_all()] == ["GitHub"]


def test_update_many_is_all_or_nothing(auth_store, make_auth):
    a = auth_store.create(make_auth("Google"))
    a.ranking = 7
    with pytest.raises(NotFoundError):
        auth_store.update_many([a, make_auth("Missing")])
    assert auth_store.get(a.secret).ranking == 0


def test_string_type_and_algorithm_are_coerced(auth_store):
    stored = auth_store.create(
        Authenticator(secret="JBSWY3DPEHPK3PXP", issuer="Bank", type="hotp", algorithm="sha256")
    )
    assert stored.type == AuthenticatorType.HOTP
    assert stored.algorithm == Algorithm.SHA256
    assert auth_store.get(stored.secret).algorithm == Algorithm.SHA256


@pytest.mark.parametrize("kwargs,field", [
    ({"type": "steam"}, "type"),
    ({"algorithm": "MD5"}, "algorithm"),
])
def test_unknown_type_or_algorithm_is_a_validation_error(kwargs, field):
    with pytest.raises(ValidationError) as excinfo:
        Authenticator(secret="JBSWY3DPEHPK3PXP", issuer="Bank", **kwargs)
    assert excinfo.value.field == field


def test_increment_counter(auth_store, make_auth):
    hotp = auth_store.create(make_auth("Bank", type=AuthenticatorType.HOTP, counter=3))
    assert auth_store.increment_counter(hotp.secret).counter == 4
    assert auth_store.get(hotp.secret).counter == 4

    totp = auth_store.create(make_auth("Mail"))
    with pytest.raises(ValidationError):
        auth_store.increment_counter(totp.secret)
    with pytest.raises(NotFoundError):
        auth_store.increment_counter("MISSING")


def test_concurrent_counter_increments_are_not_lost(auth_store, make_auth):
    hotp = auth_store.create(make_auth("Bank", type=AuthenticatorType.HOTP))

    def worker():
        for _ in range(5):
            auth_store.increment_counter(hotp.secret)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert auth_store.get(hotp.secret).counter == 20


def test_closed_database_refuses_work(db, auth_store, make_auth):
    db.close()
    with pytest.raises(PersistenceError):
        auth_store.create(make_auth("Google"))
    with pytest.raises(PersistenceError):
        auth_store.get_all()


def test_encrypted_vault(config, crypto, make_auth):
    crypto.setup_master_password("hunter2")
    db = VaultDatabase(config, crypto)
    db.open()
    AuthenticatorStore(db).create(make_auth("Google"))

    assert os.path.exists(config.vault_enc_path)
    assert not os.path.exists(config.vault_path)
    with open(config.vault_enc_path, "rb") as fh:
        assert b"Google" not in fh.read()

    crypto.lock()
    locked = VaultDatabase(config, crypto)
    with pytest.raises(PersistenceError):
        locked.open()
    with pytest.raises(PersistenceError):
        AuthenticatorStore(db).create(make_auth("GitHub"))

    crypto.unlock("hunter2")
    locked.open()
    assert [a.issuer for a in AuthenticatorStore(locked).get_all()] == ["Google"]


def test_corrupt_vault_raises_persistence_error(config, crypto):
    with open(config.vault_path, "w", encoding="utf-8") as fh:
        json.dump({"authenticators": [{"issuer": "no secret"}]}, fh)
    with pytest.raises(PersistenceError):
        VaultDatabase(config, crypto).open()
