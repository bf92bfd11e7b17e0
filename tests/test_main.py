import base64
import re

import pytest

import main as cli

RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()
PASSWORD = "Sup3rSecret"


@pytest.fixture(autouse=True)
def quiet_env(monkeypatch):
    monkeypatch.setenv("AUTHVAULT_LOG_FILE", "")
    monkeypatch.delenv("AUTHVAULT_PASSWORD", raising=False)
    monkeypatch.delenv("AUTHVAULT_DB_PATH", raising=False)


@pytest.fixture
def run(db_path, capsys):
    def _run(*argv):
        code = cli.main(["--db", db_path, *argv])
        return code, capsys.readouterr().out
    return _run


def account_ids(output):
    return re.findall(r"ID: (\S+)", output)


def test_init_and_status(run):
    code, out = run("init")
    assert code == 0
    assert "Vault created" in out

    code, out = run("init")
    assert code == 1

    code, out = run("status")
    assert "initialized: True" in out
    assert "has_password: False" in out


def test_add_list_code(run):
    code, out = run("add", "alice", RFC_SECRET, "--issuer", "Example", "--digits", "8")
    assert code == 0

    _, out = run("list")
    assert "Example (alice)" in out
    [account_id] = account_ids(out)

    code, out = run("code", account_id)
    assert code == 0
    assert re.match(r"\d{4} \d{4}  \(\d+s\)", out)


def test_hotp_next(run):
    run("add", "counter", RFC_SECRET, "--type", "HOTP")
    [account_id] = account_ids(run("list")[1])

    assert run("code", account_id)[1].strip() == "755 224"
    assert run("code", account_id, "--next")[1].strip() == "287 082"
    assert run("code", account_id)[1].strip() == "287 082"


def test_code_for_unknown_account(run):
    run("init")
    code, out = run("code", "missing")
    assert code == 1
    assert "------" in out


def test_import_export_delete(run, tmp_path):
    code, out = run("import", "otpauth://totp/Acme:bob?secret=JBSWY3DPEHPK3PXP&issuer=Acme")
    assert code == 0
    assert "Added account: bob" in out

    [account_id] = account_ids(run("list")[1])
    qr_file = tmp_path / "export.png"
    code, out = run("export", account_id, "--qr", str(qr_file), "--size", "128")
    assert code == 0
    assert out.startswith("otpauth-migration://offline?data=")
    assert qr_file.read_bytes().startswith(b"\x89PNG")

    code, out = run("delete", account_id, "missing")
    assert "Deleted 1 accounts" in out
    assert "No accounts found." in run("list")[1]


def test_import_rejects_unknown_scheme(run):
    code, out = run("import", "https://example.com")
    assert code == 1
    assert "Unsupported URI format" in out


def test_password_commands(run, monkeypatch):
    run("add", "alice", RFC_SECRET)
    monkeypatch.setattr(cli, "getpass", lambda prompt: PASSWORD)

    code, out = run("set-password")
    assert code == 0
    assert "Password set." in out

    monkeypatch.setattr(cli, "getpass", lambda prompt: "wrong")
    code, _ = run("list")
    assert code == 1

    monkeypatch.setenv("AUTHVAULT_PASSWORD", PASSWORD)
    code, out = run("list")
    assert code == 0
    assert "alice" in out

    code, out = run("remove-password")
    assert code == 0
    assert "Password removed." in out

    monkeypatch.delenv("AUTHVAULT_PASSWORD")
    assert "alice" in run("list")[1]


def test_lock_timeout(run):
    code, out = run("lock-timeout", "-1")
    assert code == 0
    assert "0 minutes" in out


def test_shell(run, monkeypatch):
    lines = iter([
        "add alice " + RFC_SECRET,
        "",
        "bogus-command",
        "list",
        "quit",
    ])
    monkeypatch.setattr("builtins.input", lambda prompt: next(lines))

    code, out = run("shell")
    assert code == 0
    assert "Account added" in out
    assert "alice" in out


def test_shell_stops_at_eof(run, monkeypatch):
    def eof(prompt):
        raise EOFError

    monkeypatch.setattr("builtins.input", eof)
    assert run("shell")[0] == 0
