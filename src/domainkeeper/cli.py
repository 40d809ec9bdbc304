"""Domainkeeper CLI - Command line interface."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from domainkeeper.core.config import (
    DomainKeeperConfig,
    flatten_config,
    get_config,
    load_config,
    set_config,
)
from domainkeeper.core.exceptions import DomainKeeperError, format_error_for_user
from domainkeeper.domains.orchestrator import (
    BindingRequestResult,
    ProvisioningOrchestrator,
    StatusResponse,
)
from domainkeeper.domains.storage import BindingStatus

console = Console()

STATUS_COLORS = {
    BindingStatus.NONE: "dim",
    BindingStatus.PENDING: "yellow",
    BindingStatus.ACTIVE: "green",
    BindingStatus.FAILED: "red",
}


def _print_error(e: BaseException) -> None:
    if isinstance(e, DomainKeeperError):
        console.print(
            Panel(
                f"[red]{e.message}[/red]",
                title=f"Error: {e.code}",
                border_style="red",
            )
        )
    else:
        console.print(
            Panel(
                f"[red]{format_error_for_user(e)}[/red]",
                title="Error",
                border_style="red",
            )
        )


def _run(action: Callable[[ProvisioningOrchestrator], Awaitable[Any]]) -> Any:
    """Run an async action against an orchestrator built from the active config."""

    async def runner() -> Any:
        orchestrator = ProvisioningOrchestrator.from_config(get_config())
        try:
            return await action(orchestrator)
        finally:
            await orchestrator.close()

    try:
        return asyncio.run(runner())
    except DomainKeeperError as e:
        _print_error(e)
        sys.exit(1)


def _format_dt(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "N/A"


def _check_mark(ok: bool) -> str:
    return "[green]Valid[/green]" if ok else "[red]Missing[/red]"


@click.group()
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Config file (YAML or TOML)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="warning",
    help="Log level",
)
def main(config_file: str | None, verbose: bool, log_level: str):
    """Domainkeeper - custom domain verification and provisioning.

    Tenants bind a custom domain, publish a TXT record proving ownership
    and an A or CNAME record routing traffic to the platform. Once both
    records are seen the domain is provisioned and becomes active.

    Examples:

        domainkeeper bind tenant-123 shop.example.com

        domainkeeper verify tenant-123

        domainkeeper list --status PENDING

    Settings come from DOMAINKEEPER_* environment variables, a .env file,
    or a config file passed with --config.
    """
    effective_log_level = "debug" if verbose else log_level
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, effective_log_level.upper())
        ),
    )

    if config_file:
        try:
            set_config(load_config(config_file))
        except Exception as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)


def _print_binding_result(result: BindingRequestResult, title: str) -> None:
    if result.token is None:
        console.print(
            Panel(
                f"[green]{result.domain} is already active for {result.tenant_id}[/green]",
                title=title,
                border_style="green",
            )
        )
        return

    console.print(
        Panel(
            f"[green]Verification token issued[/green]\n\n"
            f"[bold]Tenant:[/bold] {result.tenant_id}\n"
            f"[bold]Domain:[/bold] {result.domain}\n"
            f"[bold]Status:[/bold] {result.status.value}\n"
            f"[bold]Token expires:[/bold] {_format_dt(result.expires_at)} UTC\n\n"
            f"[yellow]{result.instructions.render()}[/yellow]\n\n"
            f"After configuring DNS, run:\n"
            f"  [cyan]domainkeeper verify {result.tenant_id}[/cyan]",
            title=title,
            border_style="green",
        )
    )


def _print_status(response: StatusResponse) -> None:
    color = STATUS_COLORS.get(response.status, "white")

    if response.status == BindingStatus.NONE:
        console.print(f"[dim]No custom domain configured for {response.tenant_id}[/dim]")
        return

    content = (
        f"[bold]Domain:[/bold] {response.domain}\n"
        f"[bold]Status:[/bold] [{color}]{response.status.value}[/{color}]\n"
        f"[bold]Last checked:[/bold] {_format_dt(response.last_checked_at)}"
    )
    if response.provisioned_at:
        content += f"\n[bold]Active since:[/bold] {_format_dt(response.provisioned_at)}"
    if response.status == BindingStatus.PENDING:
        expired = " [red](expired)[/red]" if response.is_verification_expired else ""
        content += f"\n[bold]Token expires:[/bold] {_format_dt(response.verification_expiry)}{expired}"

    dns = response.dns_status
    if dns is not None and response.status != BindingStatus.ACTIVE:
        content += (
            f"\n\n[bold]Ownership (TXT):[/bold] {_check_mark(dns.txt_verified)}\n"
            f"[bold]Routing (A/CNAME):[/bold] {_check_mark(dns.routing_verified)}"
        )
        for detail in dns.details:
            content += f"\n  [dim]- {detail}[/dim]"

    if response.message:
        content += f"\n\n{response.message}"
    if response.error:
        content += f"\n[red]Error:[/red] {response.error}"
    if response.instructions and not response.instructions.complete:
        content += f"\n\n[yellow]DNS Setup Required:[/yellow]\n{response.instructions.render()}"

    console.print(
        Panel(
            content,
            title=f"Domain Status: {response.tenant_id}",
            border_style=color,
        )
    )


@main.command()
@click.argument("tenant_id")
@click.argument("domain_name")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def bind(tenant_id: str, domain_name: str, json_output: bool):
    """Bind a custom domain to a tenant.

    You'll receive a verification token and the DNS records to configure.
    """
    result = _run(lambda o: o.request_binding(tenant_id, domain_name))

    if json_output:
        console.print_json(data=result.to_dict())
        return
    _print_binding_result(result, "Domain Binding")


@main.command()
@click.argument("tenant_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(tenant_id: str, json_output: bool):
    """Show a tenant's domain status.

    Pending domains are checked against live DNS.
    """
    response = _run(lambda o: o.get_status(tenant_id))

    if json_output:
        console.print_json(data=response.to_dict())
        return
    _print_status(response)


@main.command()
@click.argument("tenant_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def verify(tenant_id: str, json_output: bool):
    """Check DNS now and activate the domain if both records are in place."""
    if not json_output:
        console.print(f"Verifying DNS records for [cyan]{tenant_id}[/cyan]...", style="yellow")
    response = _run(lambda o: o.trigger_verification(tenant_id))

    if json_output:
        console.print_json(data=response.to_dict())
    else:
        _print_status(response)

    if response.status == BindingStatus.FAILED:
        sys.exit(1)


@main.command()
@click.argument("tenant_id")
def reissue(tenant_id: str):
    """Issue a fresh verification token for the tenant's domain."""
    result = _run(lambda o: o.reissue_token(tenant_id))
    _print_binding_result(result, "New Verification Token")


@main.command()
@click.argument("tenant_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def remove(tenant_id: str, yes: bool):
    """Remove a tenant's custom domain."""
    if not yes and not click.confirm(f"Are you sure you want to remove the domain of '{tenant_id}'?"):
        console.print("[dim]Cancelled[/dim]")
        return

    removed = _run(lambda o: o.remove_binding(tenant_id))

    if removed:
        console.print(f"[green]Domain removed for:[/green] {tenant_id}")
    else:
        console.print(f"[red]No custom domain for:[/red] {tenant_id}")
        sys.exit(1)


@main.command("list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in BindingStatus if s != BindingStatus.NONE], case_sensitive=False),
    help="Only show bindings in this state",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def list_bindings(status_filter: str | None, json_output: bool):
    """List all domain bindings."""
    status_enum = BindingStatus(status_filter.upper()) if status_filter else None

    async def collect(o: ProvisioningOrchestrator):
        return await o.list_bindings(status_enum), await o.status_counts()

    bindings, counts = _run(collect)

    if json_output:
        data = {"bindings": [b.to_dict() for b in bindings], "counts": counts}
        console.print_json(data=data, default=str)
        return

    if not bindings:
        console.print("[dim]No domains bound[/dim]")
        return

    table = Table(title="Domain Bindings")
    table.add_column("Tenant", style="dim")
    table.add_column("Domain", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Last Checked")
    table.add_column("Error")

    for binding in bindings:
        color = STATUS_COLORS.get(binding.status, "white")
        table.add_row(
            binding.tenant_id[:16] + "..." if len(binding.tenant_id) > 16 else binding.tenant_id,
            binding.domain,
            f"[{color}]{binding.status.value}[/{color}]",
            _format_dt(binding.last_checked_at),
            binding.last_error or "",
        )

    console.print(table)
    console.print(
        f"[bold]Total:[/bold] {counts['all']}  "
        f"[yellow]Pending:[/yellow] {counts['PENDING']}  "
        f"[green]Active:[/green] {counts['ACTIVE']}  "
        f"[red]Failed:[/red] {counts['FAILED']}"
    )


@main.command()
@click.option("--loop", "loop_forever", is_flag=True, help="Keep sweeping at the configured interval")
@click.option("--interval", type=float, default=None, help="Seconds between sweeps (with --loop)")
def sweep(loop_forever: bool, interval: float | None):
    """Verify every pending binding.

    Runs once by default; with --loop keeps running until interrupted.
    """
    if loop_forever:
        from domainkeeper.domains.sweeper import run_sweep_loop

        try:
            _run(lambda o: run_sweep_loop(o, interval))
        except KeyboardInterrupt:
            console.print("\n[yellow]Sweep stopped.[/yellow]")
        return

    summary = _run(lambda o: o.sweep_pending())
    console.print(
        f"[bold]Checked:[/bold] {summary['checked']}  "
        f"[green]Activated:[/green] {summary['activated']}  "
        f"[red]Failed:[/red] {summary['failed']}  "
        f"[bold]Errors:[/bold] {summary['errors']}"
    )


@main.group()
def config():
    """View and validate configuration settings.

    All settings can be configured via environment variables with the
    DOMAINKEEPER_ prefix. Use these commands to see current values.

    Examples:

        domainkeeper config show            # Show all config settings

        domainkeeper config show -s dns     # Show one section

        domainkeeper config validate        # Warn about unusual settings
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option(
    "--section",
    "-s",
    help="Show only specific section (verification, dns, provisioning, storage, orchestrator)",
)
def config_show(json_output: bool, section: str | None):
    """Show current configuration settings.

    Values come from the config file, environment variables or defaults.
    """
    cfg = get_config()
    display = cfg.to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        console.print_json(data=display)
        return

    console.print("[bold]Current Configuration[/bold]\n")

    for section_name, settings in display.items():
        table = Table(title=section_name.title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in flatten_config(settings, section_name).items():
            env_var = f"DOMAINKEEPER_{key.upper()}"
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key[len(section_name) + 1 :], value_str, env_var)

        console.print(table)
        console.print()


@config.command("validate")
def config_validate():
    """Check the configuration for unusual settings."""
    cfg: DomainKeeperConfig = get_config()
    warnings = cfg.validate_settings()

    if not warnings:
        console.print("[green]Configuration OK[/green]")
        return

    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


if __name__ == "__main__":
    main()
