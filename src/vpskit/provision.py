"""Server provisioning.

Prepares a fresh Ubuntu server for web hosting, in this order:

1. System updates + base packages
2. Node.js (NodeSource)
3. PM2 (registered with systemd)
4. Python 3 + pip + venv
5. Nginx
6. Docker (optional)
7. UFW firewall
8. fail2ban
9. Certbot
10. Project directory with its readme files
11. Hello-world app running under PM2

The order matters: PM2 comes from npm, and the SSH rule must be in place
before the firewall is enabled.
"""
import shlex
from dataclasses import replace
from functools import partial

from vpskit import output
from vpskit.config import ProvisionConfig, ServerConfig
from vpskit.connection import (
    HostContext, check_privileges, connect, make_host_context,
    probe, run_command, validate_port_range, write_file,
)
from vpskit.hoststate import HostState, detect_host_state
from vpskit.sequencer import DefaultPrompter, Prompter, run_steps
from vpskit.sites import read_template, render_template
from vpskit.steps import FailurePolicy, RunReport, Step

class UnsupportedHostError(RuntimeError):
    """The target's OS could not be identified."""

# Constants

BASE_PACKAGES = ("curl", "wget", "git", "build-essential", "software-properties-common")
PYTHON_PACKAGES = ("python3", "python3-pip", "python3-venv")
CERTBOT_PACKAGES = ("certbot", "python3-certbot-nginx")
WATCHED_PACKAGES = BASE_PACKAGES + PYTHON_PACKAGES + CERTBOT_PACKAGES + ("nginx", "ufw", "fail2ban")
WATCHED_SERVICES = ("nginx", "fail2ban", "docker")

FAIL2BAN_JAIL_PATH = "/etc/fail2ban/jail.local"
PROJECT_DOCS = ("README.md", "CLAUDE.md", "QUICKSTART.md")
TEST_APP_NAME = "hello-world"
BASE_FIREWALL_RULES = ("22/tcp", "80/tcp", "443/tcp")

STEP_NAMES = (
    "system", "nodejs", "pm2", "python", "nginx", "docker",
    "firewall", "fail2ban", "certbot", "projects", TEST_APP_NAME,
)

def _run(host, ctx: HostContext | None, cmd: str, label: str) -> str:
    """Run a command on the host, printing a status label."""
    output.step_label(label)
    return run_command(host, cmd, ctx)

def _apt_install(host, ctx, packages, label: str | None = None) -> None:
    names = " ".join(packages)
    _run(host, ctx, f"DEBIAN_FRONTEND=noninteractive apt-get install -y -qq {names}",
         label or f"Installing {names}")

def firewall_rules(opts: ProvisionConfig) -> frozenset[str]:
    """The exact set of allow rules the firewall step converges to."""
    low, high = validate_port_range(opts.app_ports)
    app_rule = f"{low}/tcp" if low == high else f"{low}:{high}/tcp"
    return frozenset(BASE_FIREWALL_RULES + (app_rule,))

def project_doc_paths(opts: ProvisionConfig) -> tuple[str, ...]:
    return tuple(f"{opts.project_root}/{name}" for name in PROJECT_DOCS)

# Actions

def _install_system(host, ctx):
    _run(host, ctx, "apt-get update -qq && DEBIAN_FRONTEND=noninteractive apt-get upgrade -y -qq",
         "Updating system packages")
    _apt_install(host, ctx, BASE_PACKAGES, "Installing base packages")

def _install_nodejs(opts: ProvisionConfig, host, ctx):
    _run(host, ctx,
         f"curl -fsSL https://deb.nodesource.com/setup_{opts.node_major}.x -o /tmp/nodesource_setup.sh && "
         "bash /tmp/nodesource_setup.sh",
         f"Adding NodeSource repository (Node.js {opts.node_major}.x)")
    _apt_install(host, ctx, ("nodejs",))

def _install_pm2(host, ctx):
    _run(host, ctx, "npm install -g pm2", "Installing PM2")
    _run(host, ctx, "pm2 startup systemd -u root --hp /root", "Registering PM2 with systemd")

def _install_python(host, ctx):
    _apt_install(host, ctx, PYTHON_PACKAGES)

def _install_nginx(host, ctx):
    _apt_install(host, ctx, ("nginx",))
    _run(host, ctx, "systemctl enable nginx && systemctl start nginx", "Starting nginx")

def _install_docker(host, ctx):
    _run(host, ctx, "curl -fsSL https://get.docker.com -o /tmp/get-docker.sh && sh /tmp/get-docker.sh",
         "Installing Docker")
    _run(host, ctx, "systemctl enable docker && systemctl start docker", "Starting Docker")

def _configure_firewall(opts: ProvisionConfig, host, ctx):
    _apt_install(host, ctx, ("ufw",))
    _run(host, ctx, "ufw --force reset", "Resetting firewall rules")
    _run(host, ctx, "ufw default deny incoming && ufw default allow outgoing", "Setting default policies")
    # SSH first: enabling without it locks out the current session
    for rule in sorted(firewall_rules(opts), key=lambda r: int(r.split(":")[0].split("/")[0])):
        _run(host, ctx, f"ufw allow {rule}", f"Allowing {rule}")
    _run(host, ctx, "ufw --force enable", "Enabling firewall")

def _install_fail2ban(host, ctx):
    _apt_install(host, ctx, ("fail2ban",))
    write_file(host, FAIL2BAN_JAIL_PATH, read_template("jail.local"), ctx)
    output.step_label(f"Wrote {FAIL2BAN_JAIL_PATH}")
    _run(host, ctx, "systemctl enable fail2ban && systemctl restart fail2ban", "Starting fail2ban")

def _install_certbot(host, ctx):
    _apt_install(host, ctx, CERTBOT_PACKAGES)

def _create_project_structure(opts: ProvisionConfig, host, ctx):
    _run(host, ctx, f"mkdir -p {shlex.quote(opts.project_root)}", "Creating project directory")
    for name, path in zip(PROJECT_DOCS, project_doc_paths(opts)):
        content = render_template(f"projects/{name}.j2",
                                  project_root=opts.project_root, app_ports=opts.app_ports)
        write_file(host, path, content, ctx)
        output.step_label(f"Wrote {path}")

def _create_test_app(opts: ProvisionConfig, host, ctx):
    app_dir = f"{opts.project_root}/{TEST_APP_NAME}"
    qdir = shlex.quote(app_dir)
    _run(host, ctx, f"mkdir -p {qdir}", "Creating hello-world app")
    for name in ("package.json", "server.js"):
        write_file(host, f"{app_dir}/{name}", read_template(f"{TEST_APP_NAME}/{name}"), ctx)
    _run(host, ctx, f"cd {qdir} && npm install --silent", "Installing app dependencies")
    _run(host, ctx, f"cd {qdir} && pm2 start server.js --name {TEST_APP_NAME} && pm2 save",
         "Starting hello-world under PM2")

# Step list

def _node_matches(opts: ProvisionConfig, state: HostState) -> bool:
    node = state.version("node") or ""
    return node.lstrip("v").split(".")[0] == str(opts.node_major)

def _node_observed(state: HostState) -> str | None:
    if not state.version("node"):
        return None
    return f"node {state.version('node')}, npm {state.version('npm') or '?'}"

def build_steps(opts: ProvisionConfig) -> list[Step]:
    """Return the ordered provisioning steps for *opts*."""
    rules = firewall_rules(opts)
    docs = project_doc_paths(opts)
    return [
        Step(
            name="system", label="Updating system packages",
            check=lambda s: s.has_packages(*BASE_PACKAGES),
            action=_install_system,
        ),
        Step(
            name="nodejs", label=f"Installing Node.js {opts.node_major}",
            check=partial(_node_matches, opts),
            action=partial(_install_nodejs, opts),
            reinstall=f"Node.js {opts.node_major} is already installed. Reinstall?",
            observe=_node_observed,
        ),
        Step(
            name="pm2", label="Installing PM2",
            check=lambda s: s.version("pm2") is not None,
            action=_install_pm2,
            observe=lambda s: s.version("pm2"),
        ),
        Step(
            name="python", label="Installing Python",
            check=lambda s: s.has_packages(*PYTHON_PACKAGES),
            action=_install_python,
            observe=lambda s: s.version("python3"),
        ),
        Step(
            name="nginx", label="Installing Nginx",
            check=lambda s: s.has_packages("nginx") and "nginx" in s.services,
            action=_install_nginx,
            observe=lambda s: s.version("nginx"),
        ),
        Step(
            name="docker", label="Installing Docker",
            check=lambda s: s.version("docker") is not None,
            action=_install_docker,
            policy=FailurePolicy.WARN,
            confirm="Install Docker?",
            observe=lambda s: s.version("docker"),
        ),
        Step(
            name="firewall", label="Configuring UFW firewall",
            check=lambda s: s.firewall_active and s.firewall_rules == rules,
            action=partial(_configure_firewall, opts),
            observe=lambda s: ", ".join(sorted(s.firewall_rules)) or None,
        ),
        Step(
            name="fail2ban", label="Installing fail2ban",
            check=lambda s: (s.has_packages("fail2ban") and "fail2ban" in s.services
                             and FAIL2BAN_JAIL_PATH in s.files),
            action=_install_fail2ban,
        ),
        Step(
            name="certbot", label="Installing Certbot",
            check=lambda s: s.has_packages(*CERTBOT_PACKAGES),
            action=_install_certbot,
            observe=lambda s: s.version("certbot"),
        ),
        Step(
            name="projects", label="Creating project directory structure",
            check=lambda s: all(p in s.files for p in docs),
            action=partial(_create_project_structure, opts),
        ),
        Step(
            name=TEST_APP_NAME, label="Creating hello-world test app",
            check=lambda s: TEST_APP_NAME in s.pm2_processes,
            action=partial(_create_test_app, opts),
        ),
    ]

def make_detector(opts: ProvisionConfig, ctx: HostContext | None = None):
    """Return ``detect(host) -> HostState`` watching everything the steps check."""
    return partial(
        detect_host_state, ctx=ctx,
        packages=WATCHED_PACKAGES,
        services=WATCHED_SERVICES,
        files=(FAIL2BAN_JAIL_PATH,) + project_doc_paths(opts),
    )

def validate_skip(skip) -> set[str]:
    skip = set(skip)
    unknown = skip - set(STEP_NAMES)
    if unknown:
        raise ValueError(
            f"Unknown step(s): {', '.join(sorted(unknown))}. "
            f"Valid steps: {', '.join(STEP_NAMES)}"
        )
    return skip

# Summary

def _summary_versions(state: HostState) -> dict[str, str | None]:
    return {
        "Node.js": state.version("node"),
        "npm": state.version("npm"),
        "Python": state.version("python3"),
        "PM2": state.version("pm2"),
        "Nginx": state.version("nginx"),
        "Docker": state.version("docker"),
    }

def _open_ports(opts: ProvisionConfig) -> list[str]:
    low, high = validate_port_range(opts.app_ports)
    return ["22 (SSH)", "80 (HTTP)", "443 (HTTPS)", f"{low}-{high} (Dev apps)"]

def _public_address(host, ctx: HostContext) -> str:
    if not ctx.local:
        return ctx.name
    ok, out = probe(host, "curl -s --max-time 5 ifconfig.me", ctx)
    return out if ok and out else "localhost"

# provision_server

def provision_server(
    server: ServerConfig | None,
    opts: ProvisionConfig,
    *,
    prompter: Prompter | None = None,
    interactive: bool = True,
    with_docker: bool | None = None,
    skip=(),
) -> RunReport | None:
    """Provision *server* (or this machine when ``None``).

    Returns the run report, or ``None`` when the operator declines to
    continue. *with_docker* answers the Docker prompt up front.
    """
    prompter = prompter or DefaultPrompter()
    skip = validate_skip(set(opts.skip) | set(skip))
    steps = build_steps(opts)
    if with_docker is True:
        steps = [replace(s, confirm=None) if s.name == "docker" else s for s in steps]
    elif with_docker is False:
        skip.add("docker")

    ctx = make_host_context(server)
    output.banner("VPS SETUP")

    with connect(server) as host:
        check_privileges(host, ctx)
        detect = make_detector(opts, ctx)
        state = detect(host)

        if state.os_id is None:
            raise UnsupportedHostError(f"Cannot detect OS on {ctx.name}: /etc/os-release is missing")
        output.info(f"Detected OS: {state.os_id} {state.os_version or ''}".rstrip())
        if state.os_id != "ubuntu":
            output.warn("vpskit is designed for Ubuntu. Proceeding anyway...")

        output.console.print("\nThis will install:")
        for step in steps:
            if step.name not in skip:
                output.console.print(f"  - {step.label.removeprefix('Installing ')}")
        output.console.print()
        if interactive and not prompter.confirm("Continue?", True):
            output.info("Setup cancelled")
            return None

        report = run_steps(
            host, steps,
            detect=detect, prompter=prompter, interactive=interactive,
            ctx=ctx, skip=skip, state=state,
        )
        output.print_report(report)
        if report.ok:
            final = report.state or state
            output.print_summary(
                _summary_versions(final), _open_ports(opts),
                f"http://{_public_address(host, ctx)}:3000", opts.project_root,
            )
        else:
            output.error(f"Setup stopped at step '{report.failed.name}'")
    return report
