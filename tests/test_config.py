"""Unit tests for local configuration management."""
import pytest

from vpskit.config import (
    ProvisionConfig, ServerConfig, VpskitConfig,
    get_server, load_config, provision_options, save_config,
)

# Load / Save round-trip

def test_load_missing_config(tmp_path):
    """Missing config file returns empty config."""
    cfg = load_config(tmp_path / "config.toml")
    assert cfg.default_server is None
    assert cfg.servers == {}
    assert cfg.provision == ProvisionConfig()

def test_save_load_roundtrip(tmp_path):
    """Save then load produces the same config."""
    p = tmp_path / "config.toml"
    cfg = VpskitConfig(
        default_server="playground",
        servers={
            "playground": ServerConfig(
                host="203.0.113.10",
                ssh_user="deploy",
                provision=ProvisionConfig(node_major=22, skip=["docker"]),
            ),
        },
    )
    save_config(cfg, p)
    loaded = load_config(p)
    assert loaded.default_server == "playground"
    srv = loaded.servers["playground"]
    assert srv.host == "203.0.113.10"
    assert srv.ssh_user == "deploy"
    assert srv.ssh_port == 22
    assert srv.provision.node_major == 22
    assert srv.provision.skip == ["docker"]
    assert srv.provision.project_root == "/home/projects"

def test_save_omits_default_provision_options(tmp_path):
    """Default provisioning options are not written out."""
    p = tmp_path / "config.toml"
    cfg = VpskitConfig(servers={"s1": ServerConfig(host="1.2.3.4")})
    save_config(cfg, p)
    text = p.read_text()
    assert "provision" not in text
    assert "certbot_email" not in text

def test_save_sets_private_permissions(tmp_path):
    p = tmp_path / "config.toml"
    save_config(VpskitConfig(), p)
    assert (p.stat().st_mode & 0o777) == 0o600

def test_local_provision_table(tmp_path):
    """Top-level [provision] applies to the local machine."""
    p = tmp_path / "config.toml"
    p.write_text('[provision]\ncertbot_email = "ops@example.com"\napp_ports = "4000:4005"\n')
    cfg = load_config(p)
    assert cfg.provision.certbot_email == "ops@example.com"
    assert cfg.provision.app_ports == "4000:4005"

# Validation

def test_unknown_server_key_rejected(tmp_path):
    p = tmp_path / "config.toml"
    p.write_text('[servers.s1]\nhost = "1.2.3.4"\nhcloud_name = "vm"\n')
    with pytest.raises(ValueError, match="Unknown key.*hcloud_name"):
        load_config(p)

def test_unknown_provision_key_rejected(tmp_path):
    p = tmp_path / "config.toml"
    p.write_text('[servers.s1]\nhost = "1.2.3.4"\n\n[servers.s1.provision]\nruby = true\n')
    with pytest.raises(ValueError, match=r"servers\.s1\.provision"):
        load_config(p)

def test_missing_host_rejected(tmp_path):
    p = tmp_path / "config.toml"
    p.write_text('[servers.s1]\nssh_user = "root"\n')
    with pytest.raises(ValueError, match="Missing 'host'"):
        load_config(p)

# Server lookup

def _config():
    return VpskitConfig(
        default_server="a",
        servers={"a": ServerConfig(host="10.0.0.1"), "b": ServerConfig(host="10.0.0.2")},
    )

def test_get_server_by_name():
    name, srv = get_server(_config(), "b")
    assert name == "b"
    assert srv.host == "10.0.0.2"

def test_get_server_default():
    name, srv = get_server(_config())
    assert name == "a"

def test_get_server_without_default_means_local():
    assert get_server(VpskitConfig()) is None

def test_get_server_unknown():
    with pytest.raises(ValueError, match="not found"):
        get_server(_config(), "nope")

def test_provision_options_per_target():
    cfg = _config()
    cfg.provision = ProvisionConfig(node_major=18)
    cfg.servers["a"].provision = ProvisionConfig(node_major=22)
    assert provision_options(cfg, None).node_major == 18
    assert provision_options(cfg, cfg.servers["a"]).node_major == 22
