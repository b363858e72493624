"""Nginx site registration.

Renders a reverse-proxy server block for one domain, enables it, checks
the nginx configuration, reloads nginx and optionally asks certbot for
a certificate.

Nothing is reverted on failure: a written file or enabled symlink stays
in place until the operator fixes or removes it.
"""
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from vpskit import output
from vpskit.connection import (
    CommandError, HostContext,
    probe, run_command, validate_domain, validate_port, write_file,
)

SITES_AVAILABLE_DIR = "/etc/nginx/sites-available"
SITES_ENABLED_DIR = "/etc/nginx/sites-enabled"
TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_jinja_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)

# Template rendering helpers

def render_template(template_name: str, **kwargs) -> str:
    """Render a Jinja2 template by name from the templates directory."""
    tmpl = _jinja_env.get_template(template_name)
    return tmpl.render(**kwargs)

def read_template(template_name: str) -> str:
    """Return a template file's text unrendered."""
    return (TEMPLATES_DIR / template_name).read_text()

# SiteConfig

@dataclass(frozen=True)
class SiteConfig:
    domain: str
    port: int

    @classmethod
    def parse(cls, domain: str | None, port: str | int | None) -> "SiteConfig":
        """Build a SiteConfig from raw user input, raising ``ValueError`` on bad input."""
        domain = (domain or "").strip()
        port_str = "" if port is None else str(port).strip()
        if not domain or not port_str:
            raise ValueError("Domain and port are required")
        return cls(domain=validate_domain(domain.lower()), port=validate_port(port_str))

@dataclass
class SiteResult:
    domain: str
    port: int
    config_path: str
    port_in_use: bool
    certificate_requested: bool = False
    certificate_issued: bool = False
    certificate_error: str | None = None
    urls: list[str] = field(default_factory=list)

def site_config_path(domain: str) -> str:
    return f"{SITES_AVAILABLE_DIR}/{domain}"

def site_enabled_path(domain: str) -> str:
    return f"{SITES_ENABLED_DIR}/{domain}"

def generate_site_config(site: SiteConfig) -> str:
    """Render the nginx server block for *site*."""
    return render_template("nginx-site.conf.j2", domain=site.domain, port=site.port)

# Port probe

def port_in_use(host, port: int, ctx: HostContext | None = None) -> bool:
    """Return True if something listens on TCP *port* on any interface."""
    ok, out = probe(host, f"ss -Hltn 'sport = :{port}'", ctx)
    return ok and bool(out)

# nginx helpers

def check_nginx_config(host, ctx: HostContext | None = None) -> None:
    """Run ``nginx -t``. Raises ``CommandError`` with nginx's output on failure."""
    run_command(host, "nginx -t", ctx)

def reload_nginx(host, ctx: HostContext | None = None) -> None:
    run_command(host, "systemctl reload nginx", ctx)

def _certbot_command(domain: str, email: str | None) -> str:
    cmd = f"certbot --nginx -d {shlex.quote(domain)} --non-interactive --agree-tos"
    if email:
        return f"{cmd} -m {shlex.quote(email)}"
    return f"{cmd} --register-unsafely-without-email"

# register_site

def register_site(
    host,
    site: SiteConfig,
    *,
    request_certificate: bool = False,
    ctx: HostContext | None = None,
    certbot_email: str | None = None,
) -> SiteResult:
    """Write, enable and activate the nginx site for *site*.

    An existing file for the same domain is overwritten. ``nginx -t`` and
    reload failures raise ``CommandError``; a certbot failure is only
    recorded on the result.
    """
    in_use = port_in_use(host, site.port, ctx)
    if in_use:
        output.success(f"Port {site.port} is already in use (good - your app is running)")
    else:
        output.warn(f"Nothing is running on port {site.port} yet")

    config_path = site_config_path(site.domain)
    write_file(host, config_path, generate_site_config(site), ctx)
    output.success(f"Created nginx config: {config_path}")

    run_command(host, f"ln -sf {shlex.quote(config_path)} {shlex.quote(SITES_ENABLED_DIR)}/", ctx)
    check_nginx_config(host, ctx)
    reload_nginx(host, ctx)
    output.success("Site enabled and nginx reloaded")

    result = SiteResult(
        domain=site.domain, port=site.port,
        config_path=config_path, port_in_use=in_use,
        urls=[f"http://{site.domain}"],
    )

    if request_certificate:
        issue_certificate(host, result, ctx=ctx, certbot_email=certbot_email)
    return result

def issue_certificate(
    host,
    result: SiteResult,
    *,
    ctx: HostContext | None = None,
    certbot_email: str | None = None,
) -> SiteResult:
    """Ask certbot for a certificate for an already registered site.

    Failure is recorded on *result* and reported, never raised.
    """
    result.certificate_requested = True
    output.info("Running certbot...")
    try:
        run_command(host, _certbot_command(result.domain, certbot_email), ctx)
    except CommandError as e:
        result.certificate_error = str(e)
        output.warn(f"Certificate request for {result.domain} failed")
        output.console.print(str(e), markup=False, highlight=False)
    else:
        result.certificate_issued = True
        result.urls.append(f"https://{result.domain}")
        output.success(f"Certificate installed for {result.domain}")
    return result

# remove_site / list_sites

def remove_site(host, domain: str, ctx: HostContext | None = None) -> None:
    """Disable and delete a site, then check and reload nginx."""
    domain = validate_domain(domain)
    run_command(host, f"rm -f {shlex.quote(site_enabled_path(domain))} "
                      f"{shlex.quote(site_config_path(domain))}", ctx)
    check_nginx_config(host, ctx)
    reload_nginx(host, ctx)

def list_sites(host, ctx: HostContext | None = None) -> list[tuple[str, bool]]:
    """Return ``(domain, enabled)`` for each available site, skipping nginx's default."""
    available = run_command(host, f"ls -1 {SITES_AVAILABLE_DIR}", ctx).split()
    _, enabled_out = probe(host, f"ls -1 {SITES_ENABLED_DIR}", ctx)
    enabled = set(enabled_out.split())
    return [(name, name in enabled) for name in sorted(available) if name != "default"]
