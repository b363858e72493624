"""Console output: colored status lines, run reports and summaries."""
from rich.console import Console
from rich.table import Table

from vpskit.steps import Outcome, RunReport

console = Console()

# Status lines

def info(msg: str) -> None:
    console.print(f"[blue]\\[INFO][/blue] {msg}")

def success(msg: str) -> None:
    console.print(f"[green]\\[SUCCESS][/green] {msg}")

def warn(msg: str) -> None:
    console.print(f"[yellow]\\[WARN][/yellow] {msg}")

def error(msg: str) -> None:
    console.print(f"[red]\\[ERROR][/red] {msg}")

def step_label(label: str) -> None:
    """Print a dim progress label for an individual command."""
    console.print(f"  [dim]{label}[/dim]")

def banner(title: str, style: str = "bold") -> None:
    console.print()
    console.rule(f"[{style}]{title}[/{style}]")
    console.print()

# Run report

_OUTCOME_STYLE = {
    Outcome.SUCCEEDED: "green",
    Outcome.SKIPPED: "dim",
    Outcome.WARNED: "yellow",
    Outcome.FAILED: "red",
}

def print_report(report: RunReport) -> None:
    """Print the ordered (step, outcome) list as a table."""
    table = Table(title="Provisioning report")
    table.add_column("Step")
    table.add_column("Outcome")
    table.add_column("Detail")
    for r in report.results:
        style = _OUTCOME_STYLE[r.outcome]
        table.add_row(r.name, f"[{style}]{r.outcome.value}[/{style}]", r.detail or "")
    console.print(table)

def print_summary(versions: dict[str, str | None], open_ports: list[str],
                  test_app_url: str, project_root: str) -> None:
    """Print the closing block shown after a successful provisioning run."""
    banner("VPS SETUP COMPLETE", "bold green")
    console.print("Installed Components:")
    for name, version in versions.items():
        console.print(f"  - {name} {version or 'Not installed'}")
    console.print("  - UFW Firewall (enabled)")
    console.print("  - fail2ban (enabled)")
    console.print("  - Certbot (ready)")
    console.print()
    console.print("Open Ports:")
    for port in open_ports:
        console.print(f"  - {port}")
    console.print()
    console.print("Test App:")
    console.print(f"  - {test_app_url}")
    console.print()
    console.print("Project Directory:")
    console.print(f"  - {project_root}/")
    console.print()
    console.print("Next Steps:")
    console.print("  1. Point your domain to this server's IP")
    console.print("  2. Run: vpskit add-site")
    console.print("  3. Deploy your projects!")
    console.rule()
