"""End-to-end tests through AppContext: unlock, persistence and export."""

import io
import os

import pytest
from openpyxl import load_workbook

from app import create_app
from errors import InvalidPasswordError, PersistenceError
from export import HEADER
from models import SortMode


def test_plain_vault_round_trip(data_dir, make_auth):
    with create_app(data_dir) as app:
        assert not app.needs_password
        app.open(start_scheduler=False)
        app.repository.add(make_auth("Google"))
        app.repository.sort(SortMode.CUSTOM)

    with create_app(data_dir) as app:
        app.open(start_scheduler=False)
        assert [a.issuer for a in app.repository.authenticators] == ["Google"]
        assert app.repository.sort_mode == SortMode.CUSTOM


def test_password_set_on_first_open_encrypts_the_vault(data_dir, make_auth):
    with create_app(data_dir) as app:
        app.open("correct horse", start_scheduler=False)
        app.repository.add(make_auth("Google"))
        assert os.path.exists(app.config.vault_enc_path)
        assert not os.path.exists(app.config.vault_path)

    app = create_app(data_dir)
    assert app.needs_password
    with pytest.raises(InvalidPasswordError):
        app.open(start_scheduler=False)
    with pytest.raises(InvalidPasswordError):
        app.open("wrong", start_scheduler=False)

    app.open("correct horse", start_scheduler=False)
    assert [a.issuer for a in app.repository.authenticators] == ["Google"]
    app.close()


def test_protecting_an_existing_plain_vault(data_dir, make_auth):
    with create_app(data_dir) as app:
        app.open(start_scheduler=False)
        app.repository.add(make_auth("Google"))
        app.set_master_password("s3cret")
        assert os.path.exists(app.config.vault_enc_path)
        assert not os.path.exists(app.config.vault_path)


def test_change_master_password(data_dir, make_auth):
    with create_app(data_dir) as app:
        app.open("old", start_scheduler=False)
        app.repository.add(make_auth("Google"))
        with pytest.raises(InvalidPasswordError):
            app.change_master_password("nope", "new")
        app.change_master_password("old", "new")
        app.repository.add(make_auth("GitHub"))

    app = create_app(data_dir)
    with pytest.raises(InvalidPasswordError):
        app.open("old", start_scheduler=False)
    app.open("new", start_scheduler=False)
    assert sorted(a.issuer for a in app.repository.authenticators) == ["GitHub", "Google"]
    app.close()


def test_closed_context_refuses_mutations(data_dir, make_auth):
    app = create_app(data_dir)
    app.open(start_scheduler=False)
    app.close()
    with pytest.raises(PersistenceError):
        app.repository.add(make_auth("Google"))


def test_selected_category_is_persisted(data_dir):
    with create_app(data_dir) as app:
        app.open(start_scheduler=False)
        work = app.repository.add_category("Work")
        assert app.select_category(work) == work

    with create_app(data_dir) as app:
        app.open(start_scheduler=False)
        assert app.selected_category.name == "Work"
        app.repository.delete_category(app.selected_category)
        assert app.selected_category.is_all


def test_visible_authenticators_uses_the_selected_category(data_dir, make_auth):
    with create_app(data_dir) as app:
        app.open(start_scheduler=False)
        google = app.repository.add(make_auth("Google"))
        app.repository.add(make_auth("GitHub"))
        work = app.repository.add_category("Work")
        app.repository.assign_categories(google, [work.id])

        assert len(app.visible_authenticators()) == 2
        app.select_category(work)
        assert [a.issuer for a in app.visible_authenticators()] == ["Google"]
        assert app.visible_authenticators("hub") == []


def test_plain_export(data_dir, tmp_path, make_auth):
    with create_app(data_dir) as app:
        app.open(start_scheduler=False)
        app.repository.add(make_auth("Google", "me@example.com"))
        written = app.export_backup(str(tmp_path / "out" / "backup.xlsx"))

    assert written.endswith("backup.xlsx")
    ws = load_workbook(written)["Authenticators"]
    rows = list(ws.iter_rows(values_only=True))
    assert list(rows[0]) == HEADER
    assert rows[1][:3] == ("Google", "me@example.com", "totp")
    assert rows[1][7].startswith("otpauth://totp/")


def test_encrypted_export(data_dir, tmp_path, make_auth):
    with create_app(data_dir) as app:
        app.open("pw", start_scheduler=False)
        app.repository.add(make_auth("Google"))
        written = app.export_backup(str(tmp_path / "backup.xlsx"))
        assert written.endswith(".xlsx.enc")

        with open(written, "rb") as fh:
            data = app.crypto.decrypt_bytes(fh.read())

    ws = load_workbook(io.BytesIO(data))["Authenticators"]
    assert ws.cell(row=2, column=1).value == "Google"


def test_scheduler_runs_while_open(data_dir, make_auth):
    batches = []
    with create_app(data_dir) as app:
        app.open()
        app.repository.add(make_auth("Google"))
        app.scheduler.subscribe(batches.append)
        assert app.scheduler.is_running
        app.scheduler.tick()
    assert not app.scheduler.is_running
    assert batches
