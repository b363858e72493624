"""Integration test fixtures.

Provisions a real, disposable Ubuntu server given in a `.env` file in the
repo root (see `.env.sample`). Everything on it may be overwritten.
"""
import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

from vpskit.config import ProvisionConfig, ServerConfig
from vpskit.provision import provision_server

# Load .env from repo root
_env_path = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_env_path)

@pytest.fixture(scope="session")
def test_server() -> ServerConfig:
    host = os.environ.get("VPSKIT_TEST_HOST")
    if not host:
        pytest.skip("VPSKIT_TEST_HOST not set")
    return ServerConfig(
        host=host,
        ssh_user=os.environ.get("VPSKIT_TEST_SSH_USER", "root"),
        ssh_key=os.environ.get("VPSKIT_TEST_SSH_KEY_PATH", "~/.ssh/id_rsa"),
        ssh_port=int(os.environ.get("VPSKIT_TEST_SSH_PORT", "22")),
    )

@pytest.fixture(scope="session")
def provisioned_server(test_server):
    """Run provision_server once (non-interactive, no Docker) and yield the report."""
    report = provision_server(test_server, ProvisionConfig(), interactive=False, with_docker=False)
    assert report is not None and report.ok, report
    return test_server, report
