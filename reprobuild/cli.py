"""Thin CLI wrapper for reprobuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from reprobuild import __version__
from reprobuild.config import get_settings, print_settings_json
from reprobuild.errors import ConfigurationError
from reprobuild.log import configure_logging

app = typer.Typer(
    name="reprobuild",
    help="Reproducible multi-target build orchestrator",
    no_args_is_help=True,
)
console = Console()

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "running": "blue",
    "pending": "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"reprobuild version {__version__}")
        raise typer.Exit()


def _print_json(data: Any) -> None:
    console.print(
        json.dumps(data, indent=2, default=str),
        soft_wrap=True,
        markup=False,
        highlight=False,
    )


def _fail(message: str, code: str, json_output: bool) -> NoReturn:
    """Report an error and exit with status 1."""
    if json_output:
        _print_json({"error": {"code": code, "message": message}})
    else:
        console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(code=1)


def _format_size(size_bytes: int) -> str:
    size = float(size_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size_bytes} B"


def _format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s"


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Reproducible multi-target build orchestrator."""
    configure_logging(get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
        return

    registry_display = (
        str(settings.registry_path) if settings.registry_path else "(built-in)"
    )
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Source directory:    {settings.source_dir}")
    console.print(f"  Target registry:     {registry_display}")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Container runtime:   {settings.container_runtime}")
    console.print(f"  Pin mode:            {settings.pin_mode}")
    console.print(f"  Package name:        {settings.package_name}")
    console.print(f"  Configure flags:     {' '.join(settings.configure_flags)}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Concurrency:[/bold]")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print(f"  Jobs per build:      {settings.jobs or '(CPU count)'}")
    console.print()
    console.print("[bold]Compiler cache:[/bold]")
    console.print(f"  Enabled:             {settings.ccache_enabled}")
    console.print(f"  Max size:            {settings.ccache_max_size}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Build step timeout:  {settings.build_timeout}")
    console.print(f"  Git timeout:         {settings.git_timeout}")


@app.command()
def run(
    targets: Annotated[
        list[str] | None,
        typer.Argument(help="Target ids to build, or 'all' (default: all)"),
    ] = None,
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Rebuild dependencies and bypass ccache"),
    ] = False,
    commit: Annotated[
        str,
        typer.Option("--commit", "-c", help="Git ref to build"),
    ] = "HEAD",
    parallel: Annotated[
        bool,
        typer.Option("--parallel/--sequential", help="Build targets concurrently"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the selected targets at a pinned commit.

    Exits with status 1 if any target fails.
    """
    from reprobuild.builds.service import Orchestrator, RunOptions, record_run
    from reprobuild.db import history_session

    settings = get_settings()
    try:
        orchestrator = Orchestrator(settings)
        if not json_output:
            selected = orchestrator.registry.select(targets)
            console.print(
                f"[blue]Building {len(selected)} target(s) at {commit}...[/blue]"
            )
        report = orchestrator.run(
            targets,
            RunOptions(parallel=parallel, no_cache=no_cache, commit=commit),
        )
    except ConfigurationError as e:
        _fail(str(e), e.code, json_output)

    with history_session(settings.db_url) as session:
        record_run(session, report)

    if json_output:
        _print_json(report.to_json_dict())
    else:
        console.print()
        console.print(
            f"[bold]Build Summary[/bold] (run {report.run_id[:8]}, "
            f"commit {report.commit[:12]})"
        )
        table = Table()
        table.add_column("Target")
        table.add_column("Status")
        table.add_column("Duration", justify="right")
        table.add_column("Deps cache")
        table.add_column("Archive / failure")
        for job in report.jobs:
            color = STATUS_COLORS.get(job.status.value, "white")
            if job.archive_path:
                detail = Path(job.archive_path).name
            else:
                stage = job.failed_stage.value if job.failed_stage else "unknown"
                detail = f"{stage}: {job.error_code}"
            table.add_row(
                job.target_id,
                f"[{color}]{job.status.value}[/{color}]",
                _format_duration(job.duration_seconds),
                "hit" if job.cache_hit else "miss",
                detail,
            )
        console.print(table)

        for job in report.failed:
            if job.output_tail:
                console.print(f"[red]Output tail for {job.target_id}:[/red]")
                console.print(job.output_tail, markup=False, highlight=False)

        if report.manifest_path:
            console.print()
            console.print(f"Manifest:  {report.manifest_path}")
            console.print(f"Checksums: {report.checksums_path}")

    if report.exit_code != 0:
        raise typer.Exit(code=report.exit_code)


@app.command()
def verify(
    target: Annotated[str, typer.Argument(help="Target id to verify")],
    commit: Annotated[
        str,
        typer.Option("--commit", "-c", help="Git ref to verify"),
    ] = "HEAD",
    warm: Annotated[
        bool,
        typer.Option(
            "--warm", help="Reuse caches for the second build (cache-independence)"
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a target twice and compare archive hashes.

    Exits with status 1 on a mismatch or a failed build.
    """
    from reprobuild.builds.service import Orchestrator
    from reprobuild.types import VerificationResult
    from reprobuild.verify.verifier import ReproducibilityVerifier

    settings = get_settings()
    try:
        verifier = ReproducibilityVerifier(Orchestrator(settings))
        if not json_output:
            console.print(f"[blue]Verifying {target} at {commit}...[/blue]")
        report = verifier.verify(commit, target, warm=warm)
    except ConfigurationError as e:
        _fail(str(e), e.code, json_output)

    if json_output:
        data = report.model_dump(mode="json")
        data["exit_code"] = report.exit_code
        _print_json(data)
    elif report.result == VerificationResult.MATCH:
        console.print(f"[green]✓ {target} is reproducible[/green]")
        console.print(f"  sha256: {report.first_hash}")
    elif report.result == VerificationResult.MISMATCH:
        console.print(f"[red]✗ {target} is NOT reproducible[/red]")
        console.print(f"  first:  {report.first_hash}  {report.first_path}")
        console.print(f"  second: {report.second_hash}  {report.second_path}")
        if report.differing_members:
            console.print("  Differing members:")
            for name in report.differing_members:
                console.print(f"    {name}", markup=False)
        else:
            console.print("  Contents match; archive metadata differs")
    else:
        console.print(f"[red]✗ Verification build failed: {report.failure}[/red]")

    if report.exit_code != 0:
        raise typer.Exit(code=report.exit_code)


@app.command("clean-cache")
def clean_cache(
    target: Annotated[
        str | None,
        typer.Argument(help="Target id (default: every target)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Evict dependency cache entries and compiler caches."""
    from reprobuild.builds.service import Orchestrator

    settings = get_settings()
    try:
        orchestrator = Orchestrator(settings)
        target_ids = [t.id for t in orchestrator.registry.select([target] if target else None)]
    except ConfigurationError as e:
        _fail(str(e), e.code, json_output)

    results = []
    for target_id in target_ids:
        entries = orchestrator.dependency_cache.evict_target(target_id)
        ccache_cleared = orchestrator.object_cache.clear(target_id)
        results.append(
            {
                "target_id": target_id,
                "dependency_entries_removed": entries,
                "object_cache_cleared": ccache_cleared,
            }
        )

    if json_output:
        _print_json(results)
        return
    for r in results:
        console.print(
            f"  {r['target_id']}: removed {r['dependency_entries_removed']} "
            f"dependency cache entr{'y' if r['dependency_entries_removed'] == 1 else 'ies'}"
            f"{', cleared compiler cache' if r['object_cache_cleared'] else ''}"
        )
    console.print("[green]Cache cleaned[/green]")


@app.command()
def attest(
    run_id: Annotated[
        str | None,
        typer.Option("--run", "-r", help="Run id (default: latest run)"),
    ] = None,
    gpg_key: Annotated[
        str | None,
        typer.Option("--gpg-key", help="GPG key to sign the manifest with"),
    ] = None,
    sign_url: Annotated[
        str | None,
        typer.Option("--sign-url", help="Remote signing service endpoint"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Generate (and optionally sign) the manifest of a recorded run."""
    from reprobuild.attest.manifest import (
        CHECKSUMS_FILENAME,
        MANIFEST_FILENAME,
        describe_archive,
        generate_manifest,
        remove_attestation,
        sign_manifest,
        write_checksums,
        write_manifest,
    )
    from reprobuild.attest.signing import SigningError, create_signer
    from reprobuild.builds.service import (
        ArchiveMissingError,
        RunNotFoundError,
        get_latest_run,
        get_run,
        run_archives,
    )
    from reprobuild.db import history_session

    settings = get_settings()
    token = settings.signing_token.get_secret_value() if settings.signing_token else None
    signer = create_signer(
        gpg_key or settings.signing_key, sign_url or settings.signing_url, token
    )

    with history_session(settings.db_url) as session:
        try:
            record = get_run(session, run_id) if run_id else get_latest_run(session)
        except RunNotFoundError as e:
            _fail(str(e), e.code, json_output)

        archives = []
        recorded = {job.target_id: job.archive_sha256 for job in record.jobs}
        try:
            for target_id, path in run_archives(record):
                info = describe_archive(target_id, path)
                if info.sha256 != recorded.get(target_id):
                    _fail(
                        f"Archive {path} changed since run {record.run_id[:8]}",
                        "archive_modified",
                        json_output,
                    )
                archives.append(info)
        except ArchiveMissingError as e:
            _fail(f"{e} (run {record.run_id[:8]})", e.code, json_output)
        if not archives:
            _fail(
                f"Run {record.run_id[:8]} has no archives to attest",
                "no_archives",
                json_output,
            )

        manifest = generate_manifest(
            record.commit,
            archives,
            timestamp=record.commit_timestamp,
            signer_identity=signer.identity if signer else None,
        )
        output_root = Path(record.output_root)
        remove_attestation(output_root)
        manifest_path = write_manifest(manifest, output_root / MANIFEST_FILENAME)
        checksums_path = write_checksums(manifest, output_root / CHECKSUMS_FILENAME)

        signature_path: Path | None = None
        if signer is not None:
            try:
                signature_path = sign_manifest(manifest_path, signer)
            except SigningError as e:
                _fail(str(e), e.code, json_output)

        record.manifest_path = str(manifest_path)

    if json_output:
        _print_json(
            {
                "run_id": record.run_id,
                "manifest_path": str(manifest_path),
                "checksums_path": str(checksums_path),
                "signature_path": str(signature_path) if signature_path else None,
                "manifest": manifest.model_dump(mode="json"),
            }
        )
        return

    console.print(f"[green]Manifest written to {manifest_path}[/green]")
    console.print(f"  Commit:    {manifest.commit}")
    console.print(f"  Timestamp: {manifest.timestamp}")
    for target_id, checksum in manifest.per_target_checksum.items():
        console.print(f"  {target_id}: {checksum}")
    if signature_path:
        console.print(f"  Signed by {manifest.signer_identity}: {signature_path}")


targets_app = typer.Typer(help="Inspect the target registry")
app.add_typer(targets_app, name="targets")


@targets_app.command("list")
def targets_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List registered build targets."""
    from reprobuild.targets.registry import load_registry

    settings = get_settings()
    try:
        registry = load_registry(settings.registry_path)
    except ConfigurationError as e:
        _fail(str(e), e.code, json_output)

    if json_output:
        _print_json([t.model_dump(mode="json") for t in registry])
        return

    table = Table(title="Build targets")
    table.add_column("ID")
    table.add_column("Host triple")
    table.add_column("Image")
    table.add_column("Archive")
    for t in registry:
        table.add_row(t.id, t.host_triple, t.container_image, t.archive_kind.value)
    console.print(table)


@targets_app.command("show")
def targets_show(
    target_id: Annotated[str, typer.Argument(help="Target id")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a single build target."""
    from reprobuild.targets.registry import load_registry

    settings = get_settings()
    try:
        target = load_registry(settings.registry_path).get(target_id)
    except ConfigurationError as e:
        _fail(str(e), e.code, json_output)

    if json_output:
        _print_json(target.model_dump(mode="json"))
        return

    console.print(f"[bold]{target.display_name}[/bold] ({target.id})")
    console.print(f"  Host triple:  {target.host_triple}")
    console.print(f"  Image:        {target.container_image}")
    console.print(f"  Toolchain:    {target.toolchain or '-'}")
    console.print(f"  Strip:        {target.strip_tool} {' '.join(target.strip_flags)}")
    console.print(f"  Strip glob:   {target.strip_glob}")
    console.print(f"  Archive:      {target.archive_kind.value}")
    console.print(f"  Extra flags:  {' '.join(target.extra_flags) or '-'}")
    console.print(f"  Depends:      {' '.join(target.depends_flags) or '-'}")


cache_app = typer.Typer(help="Inspect the dependency and compiler caches")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Filter by target id"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List published dependency cache entries."""
    from reprobuild.builds.service import DEPENDS_CACHE_DIR
    from reprobuild.cache.store import DependencyCacheManager

    settings = get_settings()
    entries = DependencyCacheManager(settings.cache_dir / DEPENDS_CACHE_DIR).list_entries(
        target
    )

    if json_output:
        _print_json(
            [
                {
                    "target_id": e.key.target_id,
                    "fingerprint": e.key.fingerprint,
                    "location": str(e.location),
                    "size_bytes": e.size_bytes,
                    "created_at": e.created_at.isoformat(),
                }
                for e in entries
            ]
        )
        return

    if not entries:
        console.print("[yellow]No dependency cache entries[/yellow]")
        return
    table = Table(title="Dependency cache")
    table.add_column("Target")
    table.add_column("Fingerprint")
    table.add_column("Size", justify="right")
    table.add_column("Created")
    for e in entries:
        table.add_row(
            e.key.target_id,
            e.key.digest[:16],
            _format_size(e.size_bytes),
            e.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cache_app.command("info")
def cache_info(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show cache locations and sizes."""
    from reprobuild.builds.service import CCACHE_DIR, DEPENDS_CACHE_DIR
    from reprobuild.cache.store import DependencyCacheManager, tree_size

    settings = get_settings()
    depends = DependencyCacheManager(settings.cache_dir / DEPENDS_CACHE_DIR)
    ccache_root = settings.cache_dir / CCACHE_DIR
    info = {
        "cache_dir": str(settings.cache_dir),
        "dependency_entries": len(depends.list_entries()),
        "dependency_cache_bytes": depends.total_size(),
        "object_cache_bytes": tree_size(ccache_root) if ccache_root.exists() else 0,
    }

    if json_output:
        _print_json(info)
        return
    console.print("[bold]Cache:[/bold]")
    console.print(f"  Directory:          {info['cache_dir']}")
    console.print(f"  Dependency entries: {info['dependency_entries']}")
    console.print(f"  Dependency cache:   {_format_size(info['dependency_cache_bytes'])}")
    console.print(f"  Compiler cache:     {_format_size(info['object_cache_bytes'])}")


runs_app = typer.Typer(help="Inspect the run history")
app.add_typer(runs_app, name="runs")


def _run_to_dict(record: Any) -> dict[str, Any]:
    return {
        "run_id": record.run_id,
        "requested_ref": record.requested_ref,
        "commit": record.commit,
        "parallel": record.parallel,
        "no_cache": record.no_cache,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
        "output_root": record.output_root,
        "manifest_path": record.manifest_path,
        "exit_code": record.exit_code,
        "jobs": [
            {
                "target_id": j.target_id,
                "status": j.status,
                "failed_stage": j.failed_stage,
                "error_code": j.error_code,
                "error_message": j.error_message,
                "duration_seconds": j.duration_seconds,
                "archive_path": j.archive_path,
                "sha256": j.archive_sha256,
                "cache_hit": j.cache_hit,
            }
            for j in record.jobs
        ],
    }


@runs_app.command("list")
def runs_list(
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of runs to return"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recent runs."""
    from reprobuild.builds.service import list_runs
    from reprobuild.db import history_session

    settings = get_settings()

    with history_session(settings.db_url) as session:
        runs = list_runs(session, limit=limit)
        if json_output:
            _print_json([_run_to_dict(r) for r in runs])
            return
        if not runs:
            console.print("[yellow]No runs recorded[/yellow]")
            return
        for r in runs:
            color = "green" if r.exit_code == 0 else "red"
            succeeded = len(r.succeeded_jobs())
            console.print(
                f"  [{color}]{r.run_id[:8]}[/{color}] {r.commit[:12]} "
                f"({r.requested_ref}) {succeeded}/{len(r.jobs)} succeeded"
            )


@runs_app.command("show")
def runs_show(
    run_id: Annotated[str, typer.Argument(help="Run id or unique prefix")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a recorded run."""
    from reprobuild.builds.service import RunNotFoundError, get_run
    from reprobuild.db import history_session

    settings = get_settings()

    with history_session(settings.db_url) as session:
        try:
            record = get_run(session, run_id)
        except RunNotFoundError as e:
            _fail(str(e), e.code, json_output)

        data = _run_to_dict(record)
        if json_output:
            _print_json(data)
            return

        console.print(f"[bold]Run {record.run_id}[/bold]")
        console.print(f"  Ref:      {record.requested_ref}")
        console.print(f"  Commit:   {record.commit}")
        console.print(f"  Mode:     {'parallel' if record.parallel else 'sequential'}")
        console.print(f"  Manifest: {record.manifest_path or '-'}")
        for j in data["jobs"]:
            color = STATUS_COLORS.get(j["status"], "white")
            line = f"  [{color}]{j['target_id']}: {j['status']}[/{color}]"
            if j["failed_stage"]:
                line += f" at {j['failed_stage']} ({j['error_code']})"
            console.print(line)
            if j["sha256"]:
                console.print(f"      {j['sha256']}  {j['archive_path']}")


if __name__ == "__main__":
    app()
