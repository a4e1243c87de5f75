from __future__ import annotations

import json

from typer.testing import CliRunner

from rsvpdesk import cli, database
from rsvpdesk.models import User
from rsvpdesk.users import get_user_by_email, verify_password

runner = CliRunner()


def test_ensure_admin_creates_then_updates():
    result = runner.invoke(
        cli.app, ["ensure-admin", "--email", "boss@example.com", "--password", "s3cret!"]
    )
    assert result.exit_code == 0, result.output
    assert "Created admin account boss@example.com" in result.output

    result = runner.invoke(
        cli.app, ["ensure-admin", "--email", "boss@example.com", "--password", "n3w-pass"]
    )
    assert result.exit_code == 0, result.output
    assert "Updated admin account boss@example.com" in result.output

    session = database.SessionLocal()
    admin = get_user_by_email(session, "boss@example.com")
    assert admin.role == "admin"
    assert verify_password(admin.password_hash, "n3w-pass")
    session.close()


def test_ensure_admin_without_credentials_fails(monkeypatch):
    monkeypatch.setattr(cli, "bootstrap_admin", lambda **kwargs: None)
    result = runner.invoke(cli.app, ["ensure-admin"])
    assert result.exit_code == 1


def test_rotate_token_prints_new_token(user):
    old_token = user.api_token

    result = runner.invoke(cli.app, ["rotate-token", user.email])

    assert result.exit_code == 0, result.output
    new_token = result.output.strip()
    assert new_token and new_token != old_token
    session = database.SessionLocal()
    assert session.get(User, user.id).api_token == new_token
    session.close()


def test_rotate_token_unknown_email():
    result = runner.invoke(cli.app, ["rotate-token", "ghost@example.com"])
    assert result.exit_code == 1


def test_config_show_masks_secrets(tmp_path):
    target = tmp_path / "rsvpdesk.toml"
    result = runner.invoke(cli.app, ["config", "--config-path", str(target)])

    assert result.exit_code == 0, result.output
    shown = json.loads(result.output)
    assert shown["config_path"] == str(target)
    assert "smtp_password" in shown
