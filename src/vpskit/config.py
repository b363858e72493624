"""Local configuration management for vpskit.

Stores server definitions and provisioning options in
``~/.config/vpskit/config.toml``.
"""
import os
import tomllib
from dataclasses import dataclass, field, asdict
from pathlib import Path

import tomli_w

# Data classes

@dataclass
class ProvisionConfig:
    """Per-target provisioning options."""
    node_major: int = 20
    project_root: str = "/home/projects"
    app_ports: str = "3000:3010"
    certbot_email: str | None = None
    skip: list[str] = field(default_factory=list)

@dataclass
class ServerConfig:
    """Configuration for a single remote server."""
    host: str
    ssh_user: str = "root"
    ssh_key: str = "~/.ssh/id_rsa"  # path, ~ expanded on use
    ssh_port: int = 22
    provision: ProvisionConfig = field(default_factory=ProvisionConfig)

@dataclass
class VpskitConfig:
    """Top-level vpskit configuration."""
    default_server: str | None = None
    servers: dict[str, ServerConfig] = field(default_factory=dict)
    provision: ProvisionConfig = field(default_factory=ProvisionConfig)  # local machine

# Config file paths

def config_dir() -> Path:
    """Return the vpskit config directory, creating it if needed."""
    d = Path.home() / ".config" / "vpskit"
    d.mkdir(parents=True, exist_ok=True)
    return d

def config_path() -> Path:
    """Return the path to the config file."""
    return config_dir() / "config.toml"

# Load / Save

def _check_keys(table: dict, cls, where: str) -> None:
    valid_keys = set(cls.__dataclass_fields__)
    unknown = set(table) - valid_keys
    if unknown:
        raise ValueError(
            f"Unknown key(s) in [{where}]: {', '.join(sorted(unknown))}. "
            f"Valid keys: {', '.join(sorted(valid_keys))}"
        )

def _parse_provision(data: dict | None, where: str) -> ProvisionConfig:
    if not data:
        return ProvisionConfig()
    _check_keys(data, ProvisionConfig, where)
    return ProvisionConfig(**data)

def load_config(path: Path | None = None) -> VpskitConfig:
    """Load configuration from TOML. Returns empty config if file is missing."""
    p = path or config_path()
    if not p.exists():
        return VpskitConfig()

    with open(p, "rb") as f:
        raw = tomllib.load(f)

    servers = {}
    for name, sdata in raw.get("servers", {}).items():
        sdata = dict(sdata)  # copy so we can pop
        prov = _parse_provision(sdata.pop("provision", None), f"servers.{name}.provision")
        _check_keys(sdata, ServerConfig, f"servers.{name}")
        if "host" not in sdata:
            raise ValueError(f"Missing 'host' in [servers.{name}]")
        servers[name] = ServerConfig(**sdata, provision=prov)

    return VpskitConfig(
        default_server=raw.get("default_server"),
        servers=servers,
        provision=_parse_provision(raw.get("provision"), "provision"),
    )

def _provision_table(prov: ProvisionConfig) -> dict:
    """Only keys that differ from the defaults, for a cleaner TOML file."""
    defaults = asdict(ProvisionConfig())
    d = asdict(prov)
    return {k: v for k, v in d.items() if v is not None and v != defaults[k]}

def save_config(config: VpskitConfig, path: Path | None = None) -> None:
    """Write configuration to TOML."""
    p = path or config_path()
    p.parent.mkdir(parents=True, exist_ok=True)

    raw: dict = {}
    if config.default_server is not None:
        raw["default_server"] = config.default_server

    prov = _provision_table(config.provision)
    if prov:
        raw["provision"] = prov

    if config.servers:
        raw["servers"] = {}
        for name, srv in config.servers.items():
            d = asdict(srv)
            d.pop("provision")
            sprov = _provision_table(srv.provision)
            if sprov:
                d["provision"] = sprov
            raw["servers"][name] = d

    with open(p, "wb") as f:
        tomli_w.dump(raw, f)
    os.chmod(p, 0o600)

# Server lookup

def get_server(config: VpskitConfig, name: str | None = None) -> tuple[str, ServerConfig] | None:
    """Look up a server by name, falling back to the default server.

    Returns a ``(name, ServerConfig)`` tuple, or ``None`` when no name is
    given and no default is configured (meaning: the local machine).
    """
    if name is None:
        name = config.default_server
    if name is None:
        return None
    if name not in config.servers:
        raise ValueError(f"Server '{name}' not found in configuration")
    return name, config.servers[name]

def provision_options(config: VpskitConfig, server: ServerConfig | None) -> ProvisionConfig:
    """Return the provisioning options for a target (local when *server* is None)."""
    return server.provision if server is not None else config.provision
