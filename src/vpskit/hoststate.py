"""Host state detection.

``HostState`` is a read-only snapshot of the facts the provisioning
steps decide on. It is gathered with read-only commands and refreshed
only by calling ``detect_host_state`` again.
"""
import json
import shlex
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from vpskit.connection import HostContext, probe

@dataclass(frozen=True)
class HostState:
    os_id: str | None = None
    os_version: str | None = None
    versions: Mapping[str, str] = field(default_factory=dict)
    packages: frozenset[str] = frozenset()
    services: frozenset[str] = frozenset()
    firewall_active: bool = False
    firewall_rules: frozenset[str] = frozenset()
    files: frozenset[str] = frozenset()
    pm2_processes: frozenset[str] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, "versions", MappingProxyType(dict(self.versions)))

    def has_packages(self, *names: str) -> bool:
        return all(n in self.packages for n in names)

    def version(self, tool: str) -> str | None:
        return self.versions.get(tool)

# Parsers
#
# Pure functions over command output, kept separate so they can be
# tested without a host.

def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``/etc/os-release`` into a dict."""
    data = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        try:
            parts = shlex.split(value)
        except ValueError:
            parts = [value]
        data[key] = parts[0] if parts else ""
    return data

def parse_ufw_status(text: str) -> tuple[bool, frozenset[str]]:
    """Parse ``ufw status`` into ``(active, allow_rules)``.

    IPv6 duplicates of IPv4 rules are folded together.
    """
    active = False
    rules = set()
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("Status:"):
            active = line.split(":", 1)[1].strip() == "active"
            continue
        tokens = line.split()
        if len(tokens) >= 2 and "ALLOW" in tokens and "(v6)" not in tokens:
            rules.add(tokens[0])
    return active, frozenset(rules)

def parse_dpkg_status(text: str) -> frozenset[str]:
    """Return the installed package names from ``dpkg-query`` output."""
    installed = set()
    for line in text.splitlines():
        parts = line.split(None, 1)
        if len(parts) == 2 and parts[1].strip() == "install ok installed":
            installed.add(parts[0].split(":", 1)[0])  # drop :arch suffix
    return frozenset(installed)

def parse_pm2_jlist(text: str) -> frozenset[str]:
    """Return process names from ``pm2 jlist`` output."""
    start = text.find("[")
    if start < 0:
        return frozenset()
    try:
        procs = json.loads(text[start:])
    except json.JSONDecodeError:
        return frozenset()
    return frozenset(p["name"] for p in procs if isinstance(p, dict) and "name" in p)

def _python_version(out: str) -> str:
    return out.split()[-1]          # "Python 3.12.3"

def _nginx_version(out: str) -> str:
    return out.split("/", 1)[-1].split()[0]   # "nginx version: nginx/1.24.0 (Ubuntu)"

def _docker_version(out: str) -> str:
    return out.split()[2].rstrip(",")     # "Docker version 27.0.3, build 7d4bcd8"

def _last_token(out: str) -> str:
    return out.split()[-1]

# tool -> (command, parser)
VERSION_PROBES = {
    "node": ("node --version", str.strip),
    "npm": ("npm --version", str.strip),
    "pm2": ("pm2 --version", _last_token),
    "python3": ("python3 --version", _python_version),
    "nginx": ("nginx -v 2>&1", _nginx_version),
    "docker": ("docker --version", _docker_version),
    "certbot": ("certbot --version 2>&1", _last_token),
}

# Detection

def detect_versions(host, ctx: HostContext | None = None) -> dict[str, str]:
    versions = {}
    for tool, (cmd, parse) in VERSION_PROBES.items():
        ok, out = probe(host, f"command -v {tool} >/dev/null && {cmd}", ctx)
        if ok and out:
            try:
                versions[tool] = parse(out.splitlines()[-1])
            except IndexError:
                continue
    return versions

def detect_host_state(
    host,
    ctx: HostContext | None = None,
    *,
    packages: tuple[str, ...] = (),
    services: tuple[str, ...] = (),
    files: tuple[str, ...] = (),
) -> HostState:
    """Gather a fresh ``HostState`` snapshot from the host.

    *packages*, *services* and *files* name what to look for; everything
    else (OS identity, tool versions, firewall, pm2) is always probed.
    """
    os_id = os_version = None
    ok, out = probe(host, "cat /etc/os-release", ctx)
    if ok:
        release = parse_os_release(out)
        os_id = release.get("ID")
        os_version = release.get("VERSION_ID")

    installed = frozenset()
    if packages:
        names = " ".join(shlex.quote(p) for p in packages)
        # dpkg-query exits non-zero when any name is unknown but still lists the rest
        _, out = probe(host, f"dpkg-query -W -f='${{Package}} ${{Status}}\\n' {names} 2>/dev/null", ctx)
        installed = parse_dpkg_status(out)

    active = set()
    for unit in services:
        ok, out = probe(host, f"systemctl is-active {shlex.quote(unit)}", ctx)
        if ok and out == "active":
            active.add(unit)

    fw_active, fw_rules = False, frozenset()
    ok, out = probe(host, "command -v ufw >/dev/null && ufw status", ctx)
    if ok:
        fw_active, fw_rules = parse_ufw_status(out)

    present = set()
    for path in files:
        ok, _ = probe(host, f"test -e {shlex.quote(path)}", ctx)
        if ok:
            present.add(path)

    pm2_procs = frozenset()
    ok, out = probe(host, "command -v pm2 >/dev/null && pm2 jlist", ctx)
    if ok:
        pm2_procs = parse_pm2_jlist(out)

    return HostState(
        os_id=os_id,
        os_version=os_version,
        versions=detect_versions(host, ctx),
        packages=installed,
        services=frozenset(active),
        firewall_active=fw_active,
        firewall_rules=fw_rules,
        files=frozenset(present),
        pm2_processes=pm2_procs,
    )
