"""
Command-line interface for GeoGate.
"""

import asyncio
import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .core.config import DEFAULT_DATASET_URL, EngineSettings
from .core.credentials import credential_manager
from .core.errors import ActivationError, ConcurrentReconciliationRejected, GeoGateError
from .core.logging_config import get_logger, setup_logging
from .core.objects import AddressFamily
from .core.policy import DeclaredPolicySet, PolicyMetadata, ScopePolicy
from .datasets.loader import DatasetSource, DirectoryDatasetSource, HttpDatasetSource
from .devices.base import KernelBackend
from .devices.linux_iptables import LinuxIptables
from .devices.memory import InMemoryKernel
from .devices.transport import LocalTransport, SSHTransport
from .enforcement.builder import is_engine_set
from .enforcement.driver import ActivationDriver
from .enforcement.engine import ApplyResult, ReconcileResult, Reconciler

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"GeoGate version {__version__}")
        raise typer.Exit()


app = typer.Typer(
    help="GeoGate - Country-based inbound traffic filtering with ipset and iptables",
    no_args_is_help=True,
)
logger = get_logger(__name__)


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version information",
    ),
):
    """
    GeoGate - Country-based inbound traffic filtering with ipset and iptables
    """


@app.command()
def start(
    policy_file: Path = typer.Argument(..., help="Path to policy file (YAML or JSON)"),
    dry_run: bool = typer.Option(False, help="Record kernel commands without running them"),
    strict: bool = typer.Option(False, help="Exit non-zero if any scope fails"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Fail if another run holds the lock"),
    dataset_dir: Optional[Path] = typer.Option(None, help="Directory of country lists"),
    dataset_url: Optional[str] = typer.Option(None, help="Base URL of country lists"),
    ipv6: Optional[str] = typer.Option(None, help="Filter IPv6: auto, true, false"),
    sudo: bool = typer.Option(False, "--sudo", help="Run kernel commands through sudo"),
    host: Optional[str] = typer.Option(None, help="Apply on a remote host over SSH"),
    user: Optional[str] = typer.Option(None, help="SSH username"),
    key: Optional[str] = typer.Option(None, help="SSH private key file"),
    port: int = typer.Option(22, help="SSH port"),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive",
        help="Fail instead of prompting for credentials (can also set GEO_GATE_NONINTERACTIVE=1)",
    ),
    ssh_agent: Optional[bool] = typer.Option(
        None,
        "--ssh-agent/--no-ssh-agent",
        help="Enable/disable SSH agent usage (default: auto-detect)",
    ),
    verbose: int = typer.Option(
        0, "-v", "--verbose", count=True, help="Increase verbosity (-v, -vv)"
    ),
):
    """Apply a country filtering policy (filter start)."""
    setup_logging(min(verbose, 2))
    configure_credentials(non_interactive, ssh_agent)

    declared, settings = load_configuration(
        policy_file, dataset_dir, dataset_url, ipv6, sudo
    )
    backend = build_backend(settings, host, user, key, port, dry_run)
    driver = ActivationDriver(
        build_reconciler(settings, backend), declared, settings.capabilities(), strict
    )

    console.print(f"[bold green]Applying policy {declared.metadata.name}...[/bold green]")
    result = run_locked(settings, dry_run, no_wait, driver.start(wait=not no_wait))
    display_result(result)
    if dry_run:
        display_commands(backend)


@app.command()
def stop(
    policy_file: Optional[Path] = typer.Argument(
        None, help="Only remove the scopes of this policy file"
    ),
    dry_run: bool = typer.Option(False, help="Record kernel commands without running them"),
    strict: bool = typer.Option(False, help="Exit non-zero if any scope fails"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Fail if another run holds the lock"),
    ipv6: Optional[str] = typer.Option(None, help="Filter IPv6: auto, true, false"),
    sudo: bool = typer.Option(False, "--sudo", help="Run kernel commands through sudo"),
    host: Optional[str] = typer.Option(None, help="Remove from a remote host over SSH"),
    user: Optional[str] = typer.Option(None, help="SSH username"),
    key: Optional[str] = typer.Option(None, help="SSH private key file"),
    port: int = typer.Option(22, help="SSH port"),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive",
        help="Fail instead of prompting for credentials (can also set GEO_GATE_NONINTERACTIVE=1)",
    ),
    verbose: int = typer.Option(
        0, "-v", "--verbose", count=True, help="Increase verbosity (-v, -vv)"
    ),
):
    """Remove installed filtering (filter stop)."""
    setup_logging(min(verbose, 2))
    configure_credentials(non_interactive, None)

    if policy_file is not None:
        declared, settings = load_configuration(policy_file, None, None, ipv6, sudo)
    else:
        declared, settings = None, load_settings(None, None, None, ipv6, sudo)

    backend = build_backend(settings, host, user, key, port, dry_run)
    reconciler = build_reconciler(settings, backend)
    capabilities = settings.capabilities()

    console.print("[bold yellow]Removing country filtering...[/bold yellow]")
    if declared is None:
        driver = ActivationDriver(reconciler, DeclaredPolicySet(), capabilities, strict)
        result = run_locked(settings, dry_run, no_wait, driver.stop(wait=not no_wait))
    else:
        result = run_locked(
            settings,
            dry_run,
            no_wait,
            reconciler.teardown(declared, capabilities, wait=not no_wait),
        )
        if strict and not result.is_successful:
            display_result(result)
            raise typer.Exit(1)

    display_result(result)
    if dry_run:
        display_commands(backend)


@app.command()
def refresh(
    policy_file: Path = typer.Argument(..., help="Path to policy file (YAML or JSON)"),
    dry_run: bool = typer.Option(False, help="Record kernel commands without running them"),
    strict: bool = typer.Option(False, help="Exit non-zero if any scope fails"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Fail if another run holds the lock"),
    dataset_dir: Optional[Path] = typer.Option(None, help="Directory of country lists"),
    dataset_url: Optional[str] = typer.Option(None, help="Base URL of country lists"),
    ipv6: Optional[str] = typer.Option(None, help="Filter IPv6: auto, true, false"),
    sudo: bool = typer.Option(False, "--sudo", help="Run kernel commands through sudo"),
    host: Optional[str] = typer.Option(None, help="Refresh a remote host over SSH"),
    user: Optional[str] = typer.Option(None, help="SSH username"),
    key: Optional[str] = typer.Option(None, help="SSH private key file"),
    port: int = typer.Option(22, help="SSH port"),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive",
        help="Fail instead of prompting for credentials (can also set GEO_GATE_NONINTERACTIVE=1)",
    ),
    verbose: int = typer.Option(
        0, "-v", "--verbose", count=True, help="Increase verbosity (-v, -vv)"
    ),
):
    """Re-apply a policy after the country datasets were updated."""
    setup_logging(min(verbose, 2))
    configure_credentials(non_interactive, None)

    declared, settings = load_configuration(
        policy_file, dataset_dir, dataset_url, ipv6, sudo
    )
    backend = build_backend(settings, host, user, key, port, dry_run)
    driver = ActivationDriver(
        build_reconciler(settings, backend), declared, settings.capabilities(), strict
    )

    console.print("[bold green]Refreshing country sets...[/bold green]")
    result = run_locked(settings, dry_run, no_wait, driver.refresh(wait=not no_wait))
    display_result(result)
    if dry_run:
        display_commands(backend)


@app.command()
def plan(
    policy_file: Path = typer.Argument(..., help="Path to policy file (YAML or JSON)"),
    dataset_dir: Optional[Path] = typer.Option(None, help="Directory of country lists"),
    dataset_url: Optional[str] = typer.Option(None, help="Base URL of country lists"),
    ipv6: Optional[str] = typer.Option(None, help="Filter IPv6: auto, true, false"),
    verbose: int = typer.Option(
        0, "-v", "--verbose", count=True, help="Increase verbosity (-v, -vv)"
    ),
):
    """Show the chains and sets a policy compiles to, without touching the kernel."""
    setup_logging(min(verbose, 2))

    declared, settings = load_configuration(policy_file, dataset_dir, dataset_url, ipv6, False)
    kernel = InMemoryKernel()
    reconciler = build_reconciler(settings, kernel)

    result = run_or_exit(reconciler.apply(declared, settings.capabilities()))

    for entry in reconciler.installed.values():
        for family, program in sorted(entry.programs.items(), key=lambda i: i[0].version):
            console.print(f"\n[bold cyan]{program.chain}[/bold cyan] ({family})")
            for line in program.render():
                console.print(f"  {line}", markup=False)

    table = Table(title="Country sets")
    table.add_column("Set", style="cyan")
    table.add_column("Entries", style="white")
    for name, size in sorted(result.set_sizes.items()):
        table.add_row(name, "unavailable" if size is None else str(size))
    console.print(table)

    display_errors(result)


@app.command()
def check(
    policy_file: Path = typer.Argument(..., help="Path to policy file (YAML or JSON)"),
    address: str = typer.Argument(..., help="Source address of the inbound packet"),
    interface: Optional[str] = typer.Option(None, help="Inbound interface of the packet"),
    dataset_dir: Optional[Path] = typer.Option(None, help="Directory of country lists"),
    dataset_url: Optional[str] = typer.Option(None, help="Base URL of country lists"),
    ipv6: Optional[str] = typer.Option(None, help="Filter IPv6: auto, true, false"),
    verbose: int = typer.Option(
        0, "-v", "--verbose", count=True, help="Increase verbosity (-v, -vv)"
    ),
):
    """Simulate the verdict for an inbound packet from ADDRESS."""
    setup_logging(min(verbose, 2))

    declared, settings = load_configuration(policy_file, dataset_dir, dataset_url, ipv6, False)
    kernel = InMemoryKernel()
    result = run_or_exit(build_reconciler(settings, kernel).apply(declared, settings.capabilities()))
    display_errors(result)

    try:
        verdict = kernel.evaluate(address, interface=interface)
    except ValueError as e:
        console.print(f"[red]Invalid address: {e}[/red]")
        raise typer.Exit(1)

    color = "green" if verdict == "ACCEPT" else "red"
    where = f" on {interface}" if interface else ""
    console.print(f"{address}{where}: [bold {color}]{verdict}[/bold {color}]")


@app.command()
def status(
    sudo: bool = typer.Option(False, "--sudo", help="Run kernel commands through sudo"),
    host: Optional[str] = typer.Option(None, help="Inspect a remote host over SSH"),
    user: Optional[str] = typer.Option(None, help="SSH username"),
    key: Optional[str] = typer.Option(None, help="SSH private key file"),
    port: int = typer.Option(22, help="SSH port"),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive",
        help="Fail instead of prompting for credentials (can also set GEO_GATE_NONINTERACTIVE=1)",
    ),
    verbose: int = typer.Option(
        0, "-v", "--verbose", count=True, help="Increase verbosity (-v, -vv)"
    ),
):
    """List installed scopes, chains and country sets."""
    setup_logging(min(verbose, 2))
    configure_credentials(non_interactive, None)

    settings = load_settings(None, None, None, None, sudo)
    backend = build_backend(settings, host, user, key, port, False)
    reconciler = build_reconciler(settings, backend)

    installed = run_or_exit(reconciler.snapshot())
    sets = run_or_exit(backend.list_sets())

    if not installed:
        console.print("No country filtering installed")
    else:
        table = Table(title=f"Installed scopes ({backend})")
        table.add_column("Scope", style="cyan")
        table.add_column("Family", style="white")
        table.add_column("Chain", style="white")
        table.add_column("Default", style="white")
        table.add_column("Sets", style="white")
        for scope_id, entry in installed.items():
            for family, program in sorted(entry.programs.items(), key=lambda i: i[0].version):
                table.add_row(
                    scope_id,
                    family.value,
                    program.chain,
                    program.default_target or "-",
                    ", ".join(program.referenced_sets) or "-",
                )
        console.print(table)

    engine_sets = [name for name in sets if is_engine_set(name)]
    if engine_sets:
        console.print(f"Country sets: {', '.join(engine_sets)}")


@app.command()
def validate(
    policy_file: Path = typer.Argument(..., help="Path to policy file (YAML or JSON)"),
):
    """Validate a country filtering policy."""

    console.print("[bold green]Validating Policy...[/bold green]")

    try:
        declared = DeclaredPolicySet.from_file(policy_file)
    except Exception as e:
        console.print(f"[red]Error loading policy: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"✓ Loaded policy: {declared.metadata.name}")
    validation_result = declared.validate_policy()

    if validation_result.is_valid:
        console.print("[green]✓ Policy is valid![/green]")
    else:
        console.print("[red]✗ Policy validation failed[/red]")
        console.print("\n[red]Errors:[/red]")
        for error in validation_result.errors:
            console.print(f"  - {error}")

    if validation_result.warnings:
        console.print("\n[yellow]Warnings:[/yellow]")
        for warning in validation_result.warnings:
            console.print(f"  - {warning}")

    display_policy_summary(declared)

    if not validation_result.is_valid:
        raise typer.Exit(1)


@app.command()
def fetch_datasets(
    destination: Path = typer.Argument(..., help="Directory to write country lists to"),
    country: List[str] = typer.Option(
        [], "--country", "-c", help="Country code to fetch (repeatable)"
    ),
    policy_file: Optional[Path] = typer.Option(
        None, "--policy", help="Fetch every country referenced by this policy"
    ),
    dataset_url: str = typer.Option(DEFAULT_DATASET_URL, help="Base URL of country lists"),
    ipv6: bool = typer.Option(True, help="Also fetch IPv6 lists"),
    timeout: float = typer.Option(30.0, help="HTTP timeout in seconds"),
    verbose: int = typer.Option(
        0, "-v", "--verbose", count=True, help="Increase verbosity (-v, -vv)"
    ),
):
    """Download per-country CIDR lists into a local directory."""
    setup_logging(min(verbose, 2))

    countries = list(country)
    if policy_file is not None:
        declared = load_policy(policy_file)
        for scope, _ in declared.enabled_scopes():
            try:
                countries.extend(declared.resolve_scope(scope).country_codes)
            except GeoGateError as e:
                console.print(f"[yellow]Skipping {scope}: {e}[/yellow]")

    if not countries:
        console.print("[red]No countries given; use --country or --policy[/red]")
        raise typer.Exit(1)

    families = [AddressFamily.IPV4] + ([AddressFamily.IPV6] if ipv6 else [])
    source = HttpDatasetSource(dataset_url, timeout=timeout)

    try:
        written = source.download(sorted(set(countries)), families, destination)
    except (GeoGateError, ValueError) as e:
        console.print(f"[red]Error fetching datasets: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Country lists in {destination}")
    table.add_column("Country", style="cyan")
    table.add_column("Family", style="white")
    table.add_column("Prefixes", style="white")
    for (code, family), count in sorted(written.items(), key=lambda i: (i[0][0], i[0][1].version)):
        table.add_row(code, family.value, str(count))
    console.print(table)


@app.command()
def create_example(
    output_file: Path = typer.Argument(..., help="Output file path for example policy"),
    output_format: str = typer.Option("yaml", help="Output format: yaml, json"),
):
    """Create an example country filtering policy."""

    console.print("Creating example policy...")

    declared = DeclaredPolicySet(
        metadata=PolicyMetadata(
            name="example-country-filter",
            description="Allow inbound traffic from Argentina and Germany only",
            author="GeoGate",
        ),
        global_policy=ScopePolicy(enabled=True, mode="allowlist", countries=["AR", "DE"]),
        settings={"dataset_dir": "/usr/share/geoip-countrylist", "ipv6": "auto"},
    )
    declared.add_interface("eth1", ["CN", "RU"], mode="blocklist")
    declared.add_interface("wg0", ["AR"], enabled=False)

    if output_format.lower() == "yaml":
        content = declared.export_to_yaml()
    else:
        content = declared.export_to_json()

    output_file.write_text(content)
    console.print(f"✓ Example policy created: {output_file}")

    display_policy_summary(declared)


def configure_credentials(non_interactive: bool, ssh_agent: Optional[bool]) -> None:
    if non_interactive or os.environ.get("GEO_GATE_NONINTERACTIVE") == "1":
        credential_manager.set_non_interactive(True)

    if ssh_agent is not None:
        credential_manager.set_allow_ssh_agent(ssh_agent)


def load_policy(policy_file: Path) -> DeclaredPolicySet:
    """Load a policy from file, exiting with an error message on failure."""
    try:
        return DeclaredPolicySet.from_file(policy_file)
    except Exception as e:
        console.print(f"[red]Error loading policy: {e}[/red]")
        logger.error("Error loading policy %s: %s", policy_file, e)
        raise typer.Exit(1)


def load_settings(
    declared: Optional[DeclaredPolicySet],
    dataset_dir: Optional[Path],
    dataset_url: Optional[str],
    ipv6: Optional[str],
    sudo: bool,
) -> EngineSettings:
    overrides = {
        "dataset_dir": dataset_dir,
        "dataset_url": dataset_url,
        "ipv6": ipv6,
        "use_sudo": sudo or None,
    }
    try:
        return EngineSettings.load(declared.settings if declared else None, overrides)
    except ValueError as e:
        console.print(f"[red]Invalid settings: {e}[/red]")
        raise typer.Exit(1)


def load_configuration(
    policy_file: Path,
    dataset_dir: Optional[Path],
    dataset_url: Optional[str],
    ipv6: Optional[str],
    sudo: bool,
):
    declared = load_policy(policy_file)
    console.print(f"✓ Loaded policy: {declared.metadata.name}")
    return declared, load_settings(declared, dataset_dir, dataset_url, ipv6, sudo)


def build_dataset(settings: EngineSettings) -> DatasetSource:
    if settings.dataset_url:
        return HttpDatasetSource(settings.dataset_url, timeout=settings.dataset_timeout)
    return DirectoryDatasetSource(settings.dataset_dir)


def build_backend(
    settings: EngineSettings,
    host: Optional[str],
    user: Optional[str],
    key: Optional[str],
    port: int,
    dry_run: bool,
) -> KernelBackend:
    if host:
        transport = SSHTransport(
            host,
            user or os.environ.get("USER", "root"),
            private_key=key,
            port=port,
            use_sudo=True,
        )
    else:
        transport = LocalTransport(use_sudo=settings.use_sudo)

    return LinuxIptables(
        transport,
        hashsize=settings.ipset_hashsize,
        maxelem=settings.ipset_maxelem,
        dry_run=dry_run,
    )


def build_reconciler(settings: EngineSettings, backend: KernelBackend) -> Reconciler:
    return Reconciler(
        backend,
        build_dataset(settings),
        dataset_timeout=settings.dataset_timeout,
        dataset_workers=settings.dataset_workers,
    )


@contextmanager
def process_lock(lock_file: Path, wait: bool):
    """Exclusive lock shared by every GeoGate process on the host."""
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_file, "a") as handle:
        flags = fcntl.LOCK_EX if wait else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(handle, flags)
        except BlockingIOError:
            raise ConcurrentReconciliationRejected(
                f"Another GeoGate run holds {lock_file}"
            )
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


def run_or_exit(coro):
    """Run a coroutine, turning engine errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except ActivationError as e:
        display_result(e.result)
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except GeoGateError as e:
        console.print(f"[red]Error: {e}[/red]")
        logger.error("%s", e)
        raise typer.Exit(1)


def run_locked(settings: EngineSettings, dry_run: bool, no_wait: bool, coro):
    """Run a reconciliation under the host lock; dry runs do not lock."""
    if dry_run:
        return run_or_exit(coro)

    try:
        with process_lock(settings.lock_file, wait=not no_wait):
            return run_or_exit(coro)
    except ConcurrentReconciliationRejected as e:
        coro.close()
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except OSError as e:
        coro.close()
        console.print(f"[red]Cannot take lock {settings.lock_file}: {e}[/red]")
        raise typer.Exit(1)


def display_result(result: ReconcileResult):
    """Display the outcome of an apply or teardown pass."""
    table = Table(title=f"{result.operation.capitalize()} summary")
    table.add_column("Item", style="cyan")
    table.add_column("Value", style="white")

    if isinstance(result, ApplyResult):
        table.add_row("Applied scopes", ", ".join(result.applied_scopes) or "-")
    table.add_row("Removed scopes", ", ".join(result.removed_scopes) or "-")
    table.add_row("Destroyed sets", ", ".join(result.destroyed_sets) or "-")
    table.add_row("Scope errors", str(len(result.scope_errors)))
    console.print(table)

    display_errors(result)

    if result.is_successful:
        console.print("[green]✓ Completed successfully[/green]")
    else:
        console.print("[yellow]⚠ Completed with errors[/yellow]")


def display_errors(result: ReconcileResult):
    for error in result.scope_errors:
        console.print(f"[red]✗ {error.scope or 'sets'}: {error.message}[/red]")
    if isinstance(result, ApplyResult):
        for error in result.dataset_errors:
            console.print(
                f"[yellow]⚠ Dataset {error.country}/{error.family.value} "
                f"unavailable: {error.reason}[/yellow]"
            )


def display_commands(backend: KernelBackend):
    """Show the commands a dry run recorded."""
    if not isinstance(backend, LinuxIptables):
        return
    console.print("\n[bold]Commands (dry run):[/bold]")
    for entry in backend.history:
        if entry.output.startswith("DRY RUN"):
            console.print(f"  {entry.command}", markup=False)


def display_policy_summary(declared: DeclaredPolicySet):
    """Display policy summary."""
    console.print("\n[bold]Policy Summary[/bold]")

    table = Table()
    table.add_column("Scope", style="cyan")
    table.add_column("Enabled", style="white")
    table.add_column("Mode", style="white")
    table.add_column("Countries", style="white")

    for scope, policy in declared.scopes():
        mode = policy.mode or f"{declared.default_mode_for(scope).value} (inherited)"
        table.add_row(
            scope.scope_id,
            "yes" if policy.enabled else "no",
            mode,
            ", ".join(str(c) for c in policy.countries) or "-",
        )

    console.print(table)


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
