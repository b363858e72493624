"""Typer-based CLI for provisioning servers and registering nginx sites."""
from typing import Optional

import typer
from rich.table import Table

from vpskit import __version__
from vpskit.config import (
    ServerConfig, config_path, get_server, load_config, provision_options, save_config,
)
from vpskit.connection import (
    CommandError, PrivilegeError, check_privileges, connect, make_host_context, ping_server,
)
from vpskit.output import console, error, info, success
from vpskit.provision import (
    STEP_NAMES, UnsupportedHostError, make_detector, provision_server,
)
from vpskit.sequencer import DefaultPrompter, TerminalPrompter
from vpskit.sites import (
    SiteConfig, issue_certificate, list_sites, register_site, remove_site,
)

app = typer.Typer(
    name="vpskit",
    help="Provision Ubuntu servers for web hosting and register nginx sites.",
    no_args_is_help=True,
)

def _fail(msg: str) -> None:
    error(msg)
    raise typer.Exit(code=1)

def _resolve_target(name: str | None):
    """Return ``(config, server_or_None)`` for --server NAME (local when unset)."""
    try:
        cfg = load_config()
        found = get_server(cfg, name)
    except ValueError as e:
        _fail(str(e))
    return cfg, (found[1] if found else None)

# Version command

@app.command()
def version():
    """Show the vpskit version."""
    typer.echo(f"vpskit {__version__}")

# setup

@app.command()
def setup(
    server: Optional[str] = typer.Option(None, "--server", "-s", help="Server name (local machine if omitted)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask; use default answers"),
    docker: Optional[bool] = typer.Option(None, "--docker/--no-docker", help="Install Docker without asking"),
    skip: Optional[list[str]] = typer.Option(None, "--skip", help=f"Step to skip (repeatable): {', '.join(STEP_NAMES)}"),
):
    """Provision a fresh Ubuntu server (Node.js, PM2, nginx, UFW, fail2ban, certbot)."""
    cfg, srv = _resolve_target(server)
    opts = provision_options(cfg, srv)
    prompter = DefaultPrompter() if yes else TerminalPrompter()
    try:
        report = provision_server(
            srv, opts,
            prompter=prompter, interactive=not yes,
            with_docker=docker, skip=skip or (),
        )
    except (ValueError, PrivilegeError, UnsupportedHostError, ConnectionError) as e:
        _fail(str(e))
    if report is not None and not report.ok:
        raise typer.Exit(code=1)

# add-site

@app.command("add-site")
def add_site(
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Domain name (e.g. app.example.com)"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Local port the app listens on (e.g. 3000)"),
    ssl: Optional[bool] = typer.Option(None, "--ssl/--no-ssl", help="Request a certificate without asking"),
    server: Optional[str] = typer.Option(None, "--server", "-s", help="Server name (local machine if omitted)"),
):
    """Register an nginx reverse-proxy site and optionally get a certificate."""
    console.rule("[bold blue]Add New Site[/bold blue]")
    if domain is None:
        domain = typer.prompt("Domain name (e.g., app.example.com)", default="", show_default=False)
    if port is None:
        port = typer.prompt("Local port (e.g., 3000)", default="", show_default=False)
    try:
        site = SiteConfig.parse(domain, port)
    except ValueError as e:
        _fail(str(e))

    cfg, srv = _resolve_target(server)
    opts = provision_options(cfg, srv)
    ctx = make_host_context(srv)
    try:
        with connect(srv) as host:
            check_privileges(host, ctx)
            result = register_site(host, site, ctx=ctx)
            if ssl is None:
                console.print()
                ssl = typer.confirm(f"Get SSL certificate for {site.domain}?", default=False)
            if ssl:
                issue_certificate(host, result, ctx=ctx, certbot_email=opts.certbot_email)
    except (PrivilegeError, ConnectionError, CommandError) as e:
        _fail(str(e))

    console.rule("[bold green]Done![/bold green]")
    console.print("Your site should now be accessible at:")
    for url in result.urls:
        console.print(f"  {url}")
    if result.certificate_error:
        raise typer.Exit(code=1)

# status

@app.command()
def status(
    server: Optional[str] = typer.Option(None, "--server", "-s", help="Server name (local machine if omitted)"),
):
    """Show what is installed on a server."""
    cfg, srv = _resolve_target(server)
    opts = provision_options(cfg, srv)
    ctx = make_host_context(srv)
    try:
        with connect(srv) as host:
            state = make_detector(opts, ctx)(host)
    except ConnectionError as e:
        _fail(str(e))

    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("OS", f"{state.os_id or '?'} {state.os_version or ''}".strip())
    for tool, ver in sorted(state.versions.items()):
        table.add_row(tool, ver)
    table.add_row("Services", ", ".join(sorted(state.services)) or "-")
    fw = "active" if state.firewall_active else "inactive"
    table.add_row("Firewall", f"{fw} ({', '.join(sorted(state.firewall_rules)) or 'no rules'})")
    table.add_row("PM2 apps", ", ".join(sorted(state.pm2_processes)) or "-")
    console.print(table)

# Sites subcommand group

sites_app = typer.Typer(
    name="sites",
    help="Manage registered nginx sites.",
    no_args_is_help=True,
)
app.add_typer(sites_app, name="sites")

@sites_app.command("list")
def sites_list(
    server: Optional[str] = typer.Option(None, "--server", "-s", help="Server name"),
):
    """List nginx sites and whether they are enabled."""
    cfg, srv = _resolve_target(server)
    ctx = make_host_context(srv)
    try:
        with connect(srv) as host:
            sites = list_sites(host, ctx)
    except (ConnectionError, CommandError) as e:
        _fail(str(e))

    if not sites:
        console.print("No sites registered.")
        raise typer.Exit()

    table = Table()
    table.add_column("Domain")
    table.add_column("Enabled")
    for domain, enabled in sites:
        table.add_row(domain, "yes" if enabled else "no")
    console.print(table)

@sites_app.command("remove")
def sites_remove(
    domain: str = typer.Argument(help="Domain of the site to remove"),
    server: Optional[str] = typer.Option(None, "--server", "-s", help="Server name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Disable and delete an nginx site."""
    if not yes:
        confirm = typer.confirm(f"Remove site '{domain}'?")
        if not confirm:
            raise typer.Abort()

    cfg, srv = _resolve_target(server)
    ctx = make_host_context(srv)
    try:
        with connect(srv) as host:
            check_privileges(host, ctx)
            remove_site(host, domain, ctx)
    except (ValueError, PrivilegeError, ConnectionError, CommandError) as e:
        _fail(str(e))
    success(f"Site {domain} removed and nginx reloaded")

# Server subcommand group

server_app = typer.Typer(
    name="server",
    help="Manage configured servers.",
    no_args_is_help=True,
)
app.add_typer(server_app, name="server")

@server_app.command("add")
def server_add(
    name: str = typer.Argument(help="Name for this server"),
    host: str = typer.Option(..., help="Server IP or hostname"),
    ssh_user: str = typer.Option("root", help="SSH user"),
    ssh_key: str = typer.Option("~/.ssh/id_rsa", help="Path to SSH private key"),
    ssh_port: int = typer.Option(22, help="SSH port"),
):
    """Add a server to the configuration."""
    cfg = load_config()
    cfg.servers[name] = ServerConfig(host=host, ssh_user=ssh_user, ssh_key=ssh_key, ssh_port=ssh_port)
    if cfg.default_server is None:
        cfg.default_server = name
    save_config(cfg)
    console.print(f"Server [bold]{name}[/bold] added.")

@server_app.command("list")
def server_list():
    """List configured servers."""
    cfg = load_config()
    if not cfg.servers:
        console.print("No servers configured.")
        raise typer.Exit()

    table = Table()
    table.add_column("Name")
    table.add_column("Host")
    table.add_column("User")
    table.add_column("Default")

    for name, srv in cfg.servers.items():
        default_marker = "*" if name == cfg.default_server else ""
        table.add_row(name, f"{srv.host}:{srv.ssh_port}", srv.ssh_user, default_marker)

    console.print(table)

@server_app.command("remove")
def server_remove(
    name: str = typer.Argument(help="Name of the server to remove"),
):
    """Remove a server from the configuration."""
    cfg = load_config()
    if name not in cfg.servers:
        _fail(f"Server '{name}' not found.")

    del cfg.servers[name]
    if cfg.default_server == name:
        cfg.default_server = next(iter(cfg.servers), None)
    save_config(cfg)
    console.print(f"Server [bold]{name}[/bold] removed.")

@server_app.command("default")
def server_default(
    name: str = typer.Argument(help="Name of the server to set as default"),
):
    """Set the default server."""
    cfg = load_config()
    if name not in cfg.servers:
        _fail(f"Server '{name}' not found.")

    cfg.default_server = name
    save_config(cfg)
    console.print(f"Default server set to [bold]{name}[/bold].")

@server_app.command("ping")
def server_ping(
    name: Optional[str] = typer.Argument(None, help="Server name (uses default if omitted)"),
):
    """Test SSH connectivity to a server."""
    cfg, srv = _resolve_target(name)
    if srv is None:
        _fail("No server specified and no default server configured")
    if ping_server(srv):
        success(f"Server '{srv.host}' is reachable.")
    else:
        _fail(f"Server '{srv.host}' is not reachable.")

# Config subcommand group

config_app = typer.Typer(
    name="config",
    help="View configuration.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")

@config_app.command("show")
def config_show():
    """Print the current configuration file."""
    p = config_path()
    if not p.exists():
        info("No configuration file found.")
        raise typer.Exit()
    console.print(p.read_text(), markup=False)

# Entry point

def app_main() -> None:
    """Entry point for the vpskit CLI."""
    app()
