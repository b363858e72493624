"""Target connections and host command helpers.

A *host* is anything with invoke's ``run``/``sudo`` interface: a
``fabric.Connection`` for a remote server, or an ``invoke.Context`` for
the local machine. Every helper here works on either.
"""
import base64
import re
import shlex
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from fabric import Connection
from invoke import Context

from vpskit.config import ServerConfig

# Errors

class CommandError(RuntimeError):
    """An external command exited non-zero."""

    def __init__(self, command: str, exited: int | None = None, stdout: str = "", stderr: str = ""):
        self.command = command
        self.exited = exited
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        msg = f"Command failed (exit {exited}): {command}"
        if detail:
            msg += f"\n{detail}"
        super().__init__(msg)

class PrivilegeError(RuntimeError):
    """The target session does not have root privileges."""

# HostContext
#
# Per-target settings: a display name and whether privileged commands
# need to go through sudo (non-root SSH users).

@dataclass
class HostContext:
    """Per-target context for host operations."""
    name: str = "localhost"
    needs_sudo: bool = False  # auto-detected from ssh_user != "root"
    local: bool = True

def make_host_context(server: ServerConfig | None) -> HostContext:
    """Create a HostContext for *server*, or for the local machine."""
    if server is None:
        return HostContext()
    return HostContext(
        name=server.host,
        needs_sudo=(server.ssh_user != "root"),
        local=False,
    )

# Input validation

_DOMAIN_RE = re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?)*\Z')
_PORT_RANGE_RE = re.compile(r'^(\d+):(\d+)\Z')

def validate_domain(domain: str) -> str:
    """Validate a domain name."""
    if not _DOMAIN_RE.match(domain) or len(domain) > 253:
        raise ValueError(f"Invalid domain '{domain}'")
    return domain

def validate_port(port: int | str) -> int:
    """Validate a TCP port number, accepting its string form."""
    try:
        value = int(str(port).strip())
    except ValueError:
        raise ValueError(f"Invalid port '{port}': must be a number")
    if not 1 <= value <= 65535:
        raise ValueError(f"Invalid port '{port}': must be between 1 and 65535")
    return value

def validate_port_range(value: str) -> tuple[int, int]:
    """Validate a ``LOW:HIGH`` port range."""
    m = _PORT_RANGE_RE.match(value.strip())
    if not m:
        raise ValueError(f"Invalid port range '{value}': expected LOW:HIGH")
    low, high = validate_port(m.group(1)), validate_port(m.group(2))
    if low > high:
        raise ValueError(f"Invalid port range '{value}': LOW must not exceed HIGH")
    return low, high

# Connecting

def _make_connection(server: ServerConfig, connect_timeout: int) -> Connection:
    ssh_key = str(Path(server.ssh_key).expanduser())
    return Connection(
        server.host,
        user=server.ssh_user,
        port=server.ssh_port,
        connect_timeout=connect_timeout,
        connect_kwargs={"key_filename": ssh_key},
    )

@contextmanager
def connect(server: ServerConfig | None, connect_timeout: int = 30, retries: int = 1):
    """Context manager that yields a host for *server*.

    ``None`` yields an ``invoke.Context`` that runs commands on this
    machine. Otherwise an SSH connection is opened; *retries* > 1 waits
    for a freshly booted server that is not accepting SSH yet.

    Usage::

        with connect(server_config) as host:
            run_command(host, "hostname")
    """
    if server is None:
        yield Context()
        return

    conn = _make_connection(server, connect_timeout)
    last_err = None
    for attempt in range(retries):
        try:
            conn.open()
            last_err = None
            break
        except Exception as e:
            last_err = e
            if attempt < retries - 1:
                time.sleep(5)
    if last_err is not None:
        raise ConnectionError(
            f"Failed to connect to {server.ssh_user}@{server.host}: {last_err}"
        ) from last_err

    try:
        yield conn
    finally:
        conn.close()

# Running commands

def _execute(host, cmd: str, ctx: HostContext | None, **kwargs):
    if ctx and ctx.needs_sudo:
        # sudo runs one program; compound commands need a root shell around them
        return host.sudo(f"bash -c {shlex.quote(cmd)}", **kwargs)
    return host.run(cmd, **kwargs)

def run_command(host, cmd: str, ctx: HostContext | None = None, timeout: int | None = None) -> str:
    """Run a shell command on the host and return stdout.

    Raises ``CommandError`` on a non-zero exit status.
    """
    result = _execute(host, cmd, ctx, hide=True, warn=True, in_stream=False, timeout=timeout)
    if not result.ok:
        raise CommandError(cmd, result.exited, result.stdout, result.stderr)
    return result.stdout

def probe(host, cmd: str, ctx: HostContext | None = None) -> tuple[bool, str]:
    """Run a read-only check. Returns ``(ok, stdout)`` and never raises on exit status."""
    result = _execute(host, cmd, ctx, hide=True, warn=True, in_stream=False)
    return result.ok, (result.stdout or "").strip()

# File helpers
#
# Content travels base64-encoded through ``tee`` so the same code path
# works locally, over SSH, and under sudo.

def write_file(host, path: str, content: str, ctx: HostContext | None = None) -> None:
    """Write text content to *path* on the host, replacing any existing file."""
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    run_command(host, f"echo '{encoded}' | base64 -d | tee {shlex.quote(path)} > /dev/null", ctx)

# Privilege check

def check_privileges(host, ctx: HostContext | None = None) -> None:
    """Raise ``PrivilegeError`` unless commands on the host run as root."""
    ok, uid = probe(host, "id -u", ctx)
    if not ok or uid != "0":
        where = ctx.name if ctx else "localhost"
        if ctx is None or ctx.local:
            raise PrivilegeError("This command must be run as root (try: sudo vpskit ...)")
        raise PrivilegeError(f"Cannot get root privileges on {where}; is passwordless sudo configured?")

def ping_server(server: ServerConfig) -> bool:
    """Test SSH connectivity to a server. Returns True if reachable."""
    try:
        with connect(server) as host:
            run_command(host, "echo ok")
        return True
    except (ConnectionError, CommandError):
        return False
