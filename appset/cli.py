"""appset CLI — operate the directory-discovery reconciliation engine."""

import logging
import os
import threading
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from appset import __version__

console = Console()

_STATE_STYLES = {
    "Synced": "green",
    "OutOfSync": "yellow",
    "Pending": "cyan",
    "Pruning": "magenta",
    "Error": "red",
    "Absent": "dim",
}

_HEALTH_STYLES = {
    "Healthy": "green",
    "Progressing": "cyan",
    "Degraded": "red",
    "Unknown": "yellow",
}


def _styled(value: str | None, styles: dict[str, str]) -> str:
    if not value:
        return "-"
    style = styles.get(value)
    return f"[{style}]{value}[/]" if style else value


def _setup_logging(level: str) -> None:
    root = logging.getLogger()
    root.handlers = [
        RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    ]
    root.setLevel(level.upper())


def _load(config_path: str | None):
    from appset.config.loader import load_config
    from appset.errors import ConfigError

    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/] {e.filename}")
    except ConfigError as e:
        console.print("[red]Configuration is invalid:[/]")
        for issue in e.issues or [str(e)]:
            console.print(f"  [red]x[/] {issue}")
    except Exception as e:
        console.print(f"[red]Failed to parse config:[/] {e}")
    raise SystemExit(1)


def _build_controller(config, local_source: str | None, kube_context: str | None, in_memory: bool):
    from appset.controller import Controller
    from appset.models.application import DEFAULT_CLUSTER
    from appset.source.tree import LocalSourceProvider
    from appset.sync.target import InMemoryTarget, KubectlTarget, Targets

    timeout = config.settings.operation_timeout_seconds
    if in_memory:
        targets = Targets.single(InMemoryTarget())
    elif kube_context:
        targets = Targets(factory=lambda cluster: KubectlTarget(
            context=kube_context if cluster == DEFAULT_CLUSTER else cluster,
            timeout=timeout,
        ))
    else:
        targets = Targets.kubectl(timeout=timeout)

    source = LocalSourceProvider(local_source) if local_source else None
    return Controller(config, source=source, targets=targets)


def _print_applications(snapshots) -> None:
    table = Table(title=f"Applications ({len(snapshots)})")
    table.add_column("Name", style="cyan")
    table.add_column("Rule")
    table.add_column("Wave", justify="right")
    table.add_column("State")
    table.add_column("Health")
    table.add_column("Revision", style="dim")
    table.add_column("Cause / Message")

    for snap in snapshots:
        result = snap.last_result
        detail = (result.cause or result.message) if result else ""
        table.add_row(
            snap.name,
            snap.descriptor.rule_name,
            str(snap.descriptor.wave),
            _styled(snap.state.value, _STATE_STYLES),
            _styled(result.health.value if result else None, _HEALTH_STYLES),
            (result.revision[:12] if result else "") or "-",
            detail[:80],
        )
    console.print(table)


def _print_rule_status(rule_status) -> None:
    for rule in rule_status:
        if rule.error:
            marker = "[yellow]![/]" if rule.stale else "[red]x[/]"
            console.print(f"  {marker} rule [cyan]{rule.name}[/]: {rule.error}")


local_source_option = click.option(
    "--local-source",
    default=None,
    type=click.Path(exists=True, file_okay=False),
    help="Read every rule's repository from this directory instead of Git",
)


def source_options(func):
    """--local-source, --kube-context and --in-memory."""
    func = click.option(
        "--in-memory", is_flag=True, help="Apply to an in-memory target (dry run)"
    )(func)
    func = click.option(
        "--kube-context", default=None, help="kubectl context for the in-cluster destination"
    )(func)
    return local_source_option(func)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", default=None, envvar="APPSET_CONFIG",
              help="Controller config file (default: ./appset.yaml)")
@click.option("--log-level", default="warning",
              type=click.Choice(["debug", "info", "warning", "error"]), help="Log verbosity")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, log_level: str):
    """appset — directory-discovery GitOps reconciliation.

    Watches Git trees, generates one application per matching directory and
    keeps every application synced with its destination cluster.
    """
    _setup_logging(log_level)
    ctx.obj = {"config_path": config_path}


# ── Validate ─────────────────────────────────────────────────────────


@main.command()
@click.pass_context
def validate(ctx: click.Context):
    """Validate the controller configuration."""
    console.print("\n[bold blue]appset[/] — Validating configuration\n")
    config = _load(ctx.obj["config_path"])
    console.print("  [green]v[/] Schema validation passed")
    console.print("  [green]v[/] Templates parsed")
    console.print(
        f"\n[green]Valid![/] {len(config.rules)} rule(s), {len(config.projects)} project(s)"
    )


# ── Preview ──────────────────────────────────────────────────────────


@main.command()
@local_source_option
@click.pass_context
def preview(ctx: click.Context, local_source: str | None):
    """Show the applications each rule would generate, without applying."""
    config = _load(ctx.obj["config_path"])
    controller = _build_controller(config, local_source, None, in_memory=True)
    try:
        results = controller.preview()
    finally:
        controller.shutdown()

    failed = False
    for rule_name, (descriptors, error) in results.items():
        if error:
            failed = True
            console.print(f"[red]Rule {rule_name}:[/] {error}")
            continue
        table = Table(title=f"Rule {rule_name} ({len(descriptors)} application(s))")
        table.add_column("Name", style="cyan")
        table.add_column("Wave", justify="right")
        table.add_column("Path")
        table.add_column("Destination")
        table.add_column("Project")
        for d in descriptors:
            table.add_row(
                d.name,
                str(d.wave),
                d.source.path,
                f"{d.destination.cluster}/{d.destination.namespace}",
                d.project,
            )
        console.print(table)
    if failed:
        raise SystemExit(1)


# ── Reconcile ────────────────────────────────────────────────────────


@main.command()
@source_options
@click.option("--timeout", default=None, type=float, help="Give up waiting after this many seconds")
@click.pass_context
def reconcile(
    ctx: click.Context,
    local_source: str | None,
    kube_context: str | None,
    in_memory: bool,
    timeout: float | None,
):
    """Run a single reconciliation pass and print the result."""
    from appset.reconciler.state import AppState

    config = _load(ctx.obj["config_path"])
    console.print(f"\n[bold blue]appset[/] — Reconciling {len(config.rules)} rule(s)\n")

    controller = _build_controller(config, local_source, kube_context, in_memory)
    try:
        snapshots = controller.run_once(timeout=timeout)
        _print_rule_status(controller.rule_status())
    finally:
        controller.shutdown()

    _print_applications(snapshots)
    errors = [s for s in snapshots if s.state == AppState.ERROR]
    if errors:
        console.print(f"\n[red]{len(errors)} application(s) in Error[/]")
        raise SystemExit(1)


# ── Watch ────────────────────────────────────────────────────────────


@main.command()
@source_options
@click.option("--interval", default=None, type=float, help="Override the poll interval (seconds)")
@click.pass_context
def watch(
    ctx: click.Context,
    local_source: str | None,
    kube_context: str | None,
    in_memory: bool,
    interval: float | None,
):
    """Reconcile continuously until interrupted.

    The config file is re-read when it changes on disk.
    """
    from dataclasses import replace

    import yaml

    from appset.config.loader import CONFIG_ENV_VAR, load_config
    from appset.errors import ConfigError

    config_path = ctx.obj["config_path"]
    config = _load(config_path)
    if interval is not None:
        config = replace(config, settings=replace(config.settings, poll_interval_seconds=interval))

    controller = _build_controller(config, local_source, kube_context, in_memory)
    thread = threading.Thread(target=controller.run_forever, name="appset-poll", daemon=True)
    thread.start()

    path = Path(config_path or os.environ.get(CONFIG_ENV_VAR, "appset.yaml"))
    mtime = path.stat().st_mtime if path.exists() else 0.0

    console.print(
        f"[bold blue]appset[/] — Watching {len(config.rules)} rule(s) "
        f"every {config.settings.poll_interval_seconds}s (Ctrl-C to stop)"
    )
    try:
        while thread.is_alive():
            thread.join(timeout=2.0)
            current = path.stat().st_mtime if path.exists() else 0.0
            if current != mtime:
                mtime = current
                try:
                    new_config = load_config(path)
                except (ConfigError, OSError, yaml.YAMLError) as e:
                    console.print(f"[red]Config reload failed, keeping previous config:[/] {e}")
                    continue
                if interval is not None:
                    new_config = replace(
                        new_config,
                        settings=replace(new_config.settings, poll_interval_seconds=interval),
                    )
                console.print(f"[cyan]Config changed, reloading {path}[/]")
                controller.reload(new_config)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping...[/]")
    finally:
        controller.shutdown()


# ── Status / History ─────────────────────────────────────────────────


def _history(config):
    from appset.sync.history import SyncHistory

    if not config.settings.history_dir:
        console.print("[yellow]No history_dir configured; sync history is disabled.[/]")
        raise SystemExit(1)
    return SyncHistory(config.settings.history_dir)


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Show the latest recorded result for every application."""
    config = _load(ctx.obj["config_path"])
    latest = _history(config).latest_per_app()
    if not latest:
        console.print("[yellow]No sync results recorded yet.[/]")
        return

    table = Table(title=f"Latest results ({len(latest)})")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Health")
    table.add_column("Revision", style="dim")
    table.add_column("When", style="dim")
    table.add_column("Cause / Message")
    for name in sorted(latest):
        result = latest[name]
        table.add_row(
            name,
            _styled(result.status.value, {"Synced": "green", "OutOfSync": "yellow", "Error": "red"}),
            _styled(result.health.value, _HEALTH_STYLES),
            result.revision[:12] or "-",
            result.timestamp[:19],
            (result.cause or result.message)[:80],
        )
    console.print(table)


@main.command()
@click.argument("name")
@click.option("--limit", "-n", default=20, help="Number of entries to show")
@click.pass_context
def history(ctx: click.Context, name: str, limit: int):
    """Show the sync history of one application."""
    config = _load(ctx.obj["config_path"])
    results = _history(config).get_history(name, limit=limit)
    if not results:
        console.print(f"[yellow]No history for {name}.[/]")
        return

    for result in results:
        lines = [
            f"Status: {result.status.value}   Health: {result.health.value}",
            f"Revision: {result.revision or '-'}",
        ]
        if result.cause:
            lines.append(f"[red]Cause:[/] {result.cause}")
        if result.message:
            lines.append(f"Message: {result.message}")
        if result.applied:
            lines.append(f"Applied: {', '.join(result.applied)}")
        if result.pruned:
            lines.append(f"Pruned: {', '.join(result.pruned)}")
        if result.drifted:
            lines.append(f"Drifted: {', '.join(result.drifted)}")
        console.print(Panel("\n".join(lines), title=f"{name} @ {result.timestamp}"))


# ── Projects / Rules ─────────────────────────────────────────────────


@main.command()
@click.pass_context
def projects(ctx: click.Context):
    """List projects and what they allow."""
    config = _load(ctx.obj["config_path"])
    table = Table(title=f"Projects ({len(config.projects)})")
    table.add_column("Name", style="cyan")
    table.add_column("Source repos")
    table.add_column("Destinations")
    table.add_column("Cluster kinds")
    table.add_column("Namespaced kinds")

    for name in sorted(config.projects):
        project = config.projects[name]
        allowed = ", ".join(_gk(g) for g in project.namespace_resource_whitelist)
        denied = ", ".join(_gk(g) for g in project.namespace_resource_blacklist)
        table.add_row(
            name,
            ", ".join(project.source_repos),
            ", ".join(f"{d.cluster}/{d.namespace}" for d in project.destinations),
            ", ".join(_gk(g) for g in project.cluster_resource_whitelist) or "-",
            allowed + (f" (not {denied})" if denied else ""),
        )
    console.print(table)


@main.command()
@click.pass_context
def rules(ctx: click.Context):
    """List generator rules."""
    config = _load(ctx.obj["config_path"])
    table = Table(title=f"Rules ({len(config.rules)})")
    table.add_column("Name", style="cyan")
    table.add_column("Repository")
    table.add_column("Revision")
    table.add_column("Directories")
    table.add_column("Name template")
    table.add_column("Policy")

    for rule in config.rules:
        policy = rule.template.sync_policy
        flags = [
            flag for flag, on in (
                ("prune", policy.auto_prune),
                ("self-heal", policy.self_heal),
                ("create-ns", policy.create_namespace),
            ) if on
        ]
        table.add_row(
            rule.name,
            rule.repo_url,
            rule.revision,
            ", ".join(("!" if d.exclude else "") + d.path for d in rule.directories),
            rule.template.name.source,
            ", ".join(flags) or "-",
        )
    console.print(table)


def _gk(group_kind) -> str:
    return f"{group_kind.kind}.{group_kind.group}" if group_kind.group else group_kind.kind


if __name__ == "__main__":
    main()
