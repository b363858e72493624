"""Unit tests for host command helpers using mocks (no real SSH)."""
import base64
import os
import shutil
from unittest.mock import MagicMock, patch

import pytest
from invoke import Context

from vpskit.config import ServerConfig
from vpskit.connection import (
    CommandError, HostContext, PrivilegeError,
    check_privileges, connect, make_host_context, ping_server, probe, run_command,
    validate_domain, validate_port, validate_port_range, write_file,
)

def _result(ok=True, stdout="", stderr=""):
    r = MagicMock()
    r.ok = ok
    r.stdout = stdout
    r.stderr = stderr
    r.exited = 0 if ok else 1
    return r

# run_command / probe

def test_run_command_returns_stdout():
    host = MagicMock()
    host.run.return_value = _result(stdout="line1\nline2")
    assert run_command(host, "ls /tmp") == "line1\nline2"
    kwargs = host.run.call_args.kwargs
    assert kwargs["warn"] is True
    assert kwargs["hide"] is True
    assert kwargs["timeout"] is None

def test_run_command_failure_carries_stderr():
    host = MagicMock()
    host.run.return_value = _result(ok=False, stderr="E: Unable to locate package nope")
    with pytest.raises(CommandError, match="Unable to locate package") as exc:
        run_command(host, "apt-get install -y nope")
    assert exc.value.command == "apt-get install -y nope"
    assert exc.value.exited == 1

def test_run_command_uses_sudo_for_non_root_users():
    host = MagicMock()
    host.sudo.return_value = _result(stdout="ok")
    run_command(host, "systemctl reload nginx", HostContext(name="h", needs_sudo=True, local=False))
    host.sudo.assert_called_once()
    host.run.assert_not_called()
    assert host.sudo.call_args.args[0] == "bash -c 'systemctl reload nginx'"

# sudo against a real invoke Context
#
# A fake ``sudo`` on PATH logs the argv it was given and runs it without
# elevation, the way real sudo would: only the program named in its argv.

_SUDO_SHIM = """\
#!/bin/sh
echo "$@" >> "$SUDO_LOG"
while [ $# -gt 0 ]; do
  case "$1" in
    -S|-H) shift ;;
    -p|-u) shift 2 ;;
    *) break ;;
  esac
done
exec env "$@"
"""

_SUDO_CTX = HostContext(name="h", needs_sudo=True, local=False)

@pytest.fixture
def sudo_log(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    shim = bin_dir / "sudo"
    shim.write_text(_SUDO_SHIM)
    shim.chmod(0o755)
    log = tmp_path / "sudo.log"
    monkeypatch.setenv("PATH", f"{bin_dir}:{os.environ['PATH']}")
    monkeypatch.setenv("SUDO_LOG", str(log))
    return log

@pytest.mark.skipif(shutil.which("bash") is None, reason="needs bash")
def test_sudo_write_file_runs_tee_elevated(sudo_log, tmp_path):
    target = tmp_path / "site.conf"
    write_file(Context(), str(target), "server {}\n", _SUDO_CTX)
    assert target.read_text() == "server {}\n"
    assert "tee" in sudo_log.read_text()

@pytest.mark.skipif(shutil.which("bash") is None, reason="needs bash")
def test_sudo_runs_whole_command_line(sudo_log):
    assert probe(Context(), "command -v sh >/dev/null && echo found", _SUDO_CTX) == (True, "found")
    assert run_command(Context(), "echo one && echo two", _SUDO_CTX).split() == ["one", "two"]
    logged = sudo_log.read_text()
    assert "echo one && echo two" in logged
    assert "command -v sh" in logged

def test_probe_never_raises():
    host = MagicMock()
    host.run.return_value = _result(ok=False, stdout="  inactive\n")
    assert probe(host, "systemctl is-active nginx") == (False, "inactive")

# write_file

def test_write_file_pipes_content_through_tee():
    host = MagicMock()
    host.run.return_value = _result()
    write_file(host, "/etc/fail2ban/jail.local", "[DEFAULT]\nbantime = 1h\n")
    cmd = host.run.call_args.args[0]
    assert cmd.endswith("| base64 -d | tee /etc/fail2ban/jail.local > /dev/null")
    encoded = cmd.split("'")[1]
    assert base64.b64decode(encoded).decode() == "[DEFAULT]\nbantime = 1h\n"

def test_write_file_failure():
    host = MagicMock()
    host.run.return_value = _result(ok=False, stderr="tee: /etc/x: Permission denied")
    with pytest.raises(CommandError, match="Permission denied"):
        write_file(host, "/etc/x", "data")

# Validation

@pytest.mark.parametrize("domain", ["app.example.com", "localhost", "a-b.example.co.uk"])
def test_validate_domain_ok(domain):
    assert validate_domain(domain) == domain

@pytest.mark.parametrize("domain", ["", "-bad.com", "bad-.com", "a..b", "app.example.com/path", "x" * 254])
def test_validate_domain_rejects(domain):
    with pytest.raises(ValueError):
        validate_domain(domain)

def test_validate_port():
    assert validate_port("3000") == 3000
    assert validate_port(" 8080 ") == 8080
    for bad in ("0", "65536", "http", "-1"):
        with pytest.raises(ValueError):
            validate_port(bad)

def test_validate_port_range():
    assert validate_port_range("3000:3010") == (3000, 3010)
    for bad in ("3000-3010", "3010:3000", "3000"):
        with pytest.raises(ValueError):
            validate_port_range(bad)

# HostContext / privileges

def test_make_host_context():
    assert make_host_context(None) == HostContext()
    ctx = make_host_context(ServerConfig(host="1.2.3.4", ssh_user="deploy"))
    assert ctx.name == "1.2.3.4"
    assert ctx.needs_sudo is True
    assert ctx.local is False
    assert make_host_context(ServerConfig(host="1.2.3.4")).needs_sudo is False

def test_check_privileges_root():
    host = MagicMock()
    host.run.return_value = _result(stdout="0\n")
    check_privileges(host)

def test_check_privileges_non_root_local():
    host = MagicMock()
    host.run.return_value = _result(stdout="1000\n")
    with pytest.raises(PrivilegeError, match="must be run as root"):
        check_privileges(host)

def test_check_privileges_remote_without_sudo():
    host = MagicMock()
    host.sudo.return_value = _result(ok=False, stderr="sudo: a password is required")
    ctx = HostContext(name="1.2.3.4", needs_sudo=True, local=False)
    with pytest.raises(PrivilegeError, match="1.2.3.4"):
        check_privileges(host, ctx)

# connect

def test_connect_local_yields_invoke_context():
    with connect(None) as host:
        assert isinstance(host, Context)

def test_connect_gives_up_after_retries():
    conn = MagicMock()
    conn.open.side_effect = OSError("Connection refused")
    with patch("vpskit.connection.Connection", return_value=conn), \
         patch("vpskit.connection.time.sleep") as sleep:
        with pytest.raises(ConnectionError, match="root@1.2.3.4"):
            with connect(ServerConfig(host="1.2.3.4"), retries=2):
                pass
    assert conn.open.call_count == 2
    sleep.assert_called_once()

def test_connect_closes_connection():
    conn = MagicMock()
    with patch("vpskit.connection.Connection", return_value=conn):
        with connect(ServerConfig(host="1.2.3.4")) as host:
            assert host is conn
    conn.close.assert_called_once()

def test_ping_server():
    conn = MagicMock()
    conn.run.return_value = _result(stdout="ok")
    with patch("vpskit.connection.Connection", return_value=conn):
        assert ping_server(ServerConfig(host="1.2.3.4")) is True

    conn.open.side_effect = OSError("timed out")
    with patch("vpskit.connection.Connection", return_value=conn):
        assert ping_server(ServerConfig(host="1.2.3.4")) is False
