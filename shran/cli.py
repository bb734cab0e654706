#!/usr/bin/env python3
# shran/cli.py
"""
shran CLI

Subcommands:
- build     run the full pipeline for a build specification
- plan      load + resolve only, print the build order (optionally Graphviz DOT)
- generate  write a default build specification
- fetch     list remote tags / local manifest, download a release archive
- auth      store a GitHub token

Exit codes: 0 ok, 1 unexpected error, 2 ConfigError, 3 ResolutionError,
4 pipeline Failed, 5 source fetch / GitHub failure, 130 cancelled.
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from shran import __version__
from shran import config as config_mod
from shran.engine import BuildEngine
from shran.errors import ConfigError, FetchError, GitHubError, ManifestEntryError, ResolutionError, ShranError
from shran.fetcher import Fetcher
from shran.github import GitHubClient, write_token
from shran.logging import get_logger, reload_config, set_level
from shran.manifest import ManifestEntry, ManifestManager, description_for
from shran.report import BuildReport, StageStatus
from shran.specloader import load_file, write_default

logger = get_logger("cli")
console = Console()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_RESOLUTION = 3
EXIT_FAILED = 4
EXIT_SOURCE = 5
EXIT_CANCELLED = 130

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")

def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")

def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")

def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")

# -----------------------
# Helper: spinner / run wrapper
# -----------------------
def run_with_spinner(func: Callable[..., Any], args: Optional[List[Any]] = None,
                     kwargs: Optional[Dict[str, Any]] = None, text: str = "working",
                     disable_spinner: bool = False):
    """Run func in a worker thread; the main thread stays free for signal handlers."""
    args = args or []
    kwargs = kwargs or {}
    result: Dict[str, Any] = {"result": None, "exception": None}

    def target():
        try:
            result["result"] = func(*args, **kwargs)
        except BaseException as e:  # re-raised in the main thread below
            result["exception"] = e

    th = threading.Thread(target=target, name="shran-task")
    th.start()
    if disable_spinner or not console.is_terminal:
        while th.is_alive():
            th.join(0.1)
    else:
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                      TimeElapsedColumn(), console=console, transient=True) as prog:
            prog.add_task(description=text, total=None)
            while th.is_alive():
                th.join(0.1)
    if result["exception"] is not None:
        raise result["exception"]
    return result["result"]

# -----------------------
# Rendering
# -----------------------
_STATUS_STYLE = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "red",
    StageStatus.SKIPPED: "dim",
    StageStatus.RUNNING: "yellow",
    StageStatus.PENDING: "dim",
}

def render_report(report: BuildReport) -> Table:
    table = Table(title=f"Build report: {report.outcome}")
    table.add_column("target")
    table.add_column("stage")
    table.add_column("status")
    table.add_column("exit", justify="right")
    table.add_column("time", justify="right")
    table.add_column("detail")
    table.add_column("output")
    for r in report.results:
        style = _STATUS_STYLE.get(r.status, "")
        table.add_row(
            r.target,
            r.stage.value,
            f"[{style}]{r.status.value}[/{style}]" if style else r.status.value,
            "" if r.exit_code is None else str(r.exit_code),
            f"{r.duration:.1f}s",
            (r.reason.value + (f": {r.detail}" if r.detail else "")) if r.reason else (r.detail or ""),
            r.output_ref or "",
        )
    for name in report.targets:
        blocked = report.blocked_by(name)
        if blocked and not report.results_for(name):
            table.add_row(name, "-", "[red]Failed[/red]", "", "", f"blocked by {blocked}", "")
    return table

# -----------------------
# Commands
# -----------------------
def cmd_build(args) -> int:
    engine = BuildEngine.from_file(args.strategy, work_root=args.work_root,
                                   source_dir=args.source_dir, jobs=args.jobs)

    def _on_sigint(signum, frame):
        print_warn("interrupt received, cancelling running stages...")
        engine.cancel()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        report = run_with_spinner(engine.run, text=f"building {engine.spec.target} {engine.spec.source_ref}",
                                  disable_spinner=args.no_spinner)
    finally:
        signal.signal(signal.SIGINT, previous)

    console.print(render_report(report))
    if args.report:
        path = report.write_json(args.report)
        print_info(f"report written to {path}")
    if report.cancelled:
        print_warn("build cancelled")
        return EXIT_CANCELLED
    if report.succeeded:
        print_ok(f"{engine.spec.target} built successfully")
        return EXIT_OK
    print_err(f"build failed: {', '.join(report.failed_targets)}")
    return EXIT_FAILED


def cmd_plan(args) -> int:
    engine = BuildEngine(load_file(args.strategy))
    targets = engine.plan()
    table = Table(title=f"Build order for {engine.spec.target} @ {engine.spec.source_ref}")
    table.add_column("#", justify="right")
    table.add_column("target")
    table.add_column("kind")
    table.add_column("depends on")
    for i, t in enumerate(targets, 1):
        table.add_row(str(i), t.name, t.kind, ", ".join(t.dependencies))
    console.print(table)
    flags = engine.spec.options.configure_flags()
    if flags:
        print_info(f"configure flags: {' '.join(flags)}")
    if args.dot:
        Path(args.dot).write_text(engine.graph().to_dot() + "\n", encoding="utf-8")
        print_ok(f"dependency graph written to {args.dot}")
    return EXIT_OK


def cmd_generate(args) -> int:
    if args.ltc:
        print_err("litecoin is not supported yet; only --btc is available")
        return EXIT_ERROR
    path = write_default(args.output, source_ref=args.ref, force=args.force)
    print_ok(f"default build specification written to {path}")
    return EXIT_OK


def _download_release(client: GitHubClient, tag: str, published: Optional[str], no_spinner: bool) -> Path:
    manifest = ManifestManager()
    key = description_for(tag)
    entry = manifest.find(key)
    if entry and Path(entry.installation_location).is_file():
        print_info(f"{key} already downloaded at {entry.installation_location}")
        return Path(entry.installation_location)
    resolved = client.resolve_ref(tag)
    fetcher = Fetcher()
    out = fetcher.cache_dir / f"{tag}.tar.gz"
    run_with_spinner(fetcher.download, args=[resolved.archive_url, out], text=f"downloading {tag}",
                     disable_spinner=no_spinner)
    if entry:
        manifest.remove_entry(key)
    manifest.add_entry(key, ManifestEntry(
        version=tag,
        published_date=published or time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        installation_location=str(out),
    ))
    print_ok(f"{key} downloaded to {out}")
    return out


def cmd_fetch(args) -> int:
    if args.list_local:
        entries = ManifestManager().entries()
        table = Table(title="Downloaded sources")
        table.add_column("description")
        table.add_column("version")
        table.add_column("published")
        table.add_column("location")
        for key, e in sorted(entries.items()):
            table.add_row(key, e.version, e.published_date, e.installation_location)
        console.print(table)
        return EXIT_OK
    client = GitHubClient()
    if args.list_remote:
        tags = run_with_spinner(client.list_tags, text="listing tags", disable_spinner=args.no_spinner)
        for tag in tags:
            console.print(tag)
        return EXIT_OK
    if args.latest:
        release = client.latest_release()
        print_info(f"latest release: {release.tag_name} ({release.published_at})")
        _download_release(client, release.tag_name, release.published_at, args.no_spinner)
        return EXIT_OK
    _download_release(client, args.tag, None, args.no_spinner)
    return EXIT_OK


def cmd_auth(args) -> int:
    path = write_token(args.token)
    print_ok(f"token stored in {path}")
    return EXIT_OK

# -----------------------
# Argparse wiring
# -----------------------
def make_parser():
    ap = argparse.ArgumentParser(prog="shran", description="Build customized cryptocurrency node binaries")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("--config", help="explicit shran configuration file")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging on the console")
    ap.add_argument("--no-spinner", action="store_true", help="Disable spinner animations")
    sub = ap.add_subparsers(dest="cmd")

    p_build = sub.add_parser("build", help="run the build pipeline")
    p_build.add_argument("-s", "--strategy", default="build.yaml", help="build specification file")
    p_build.add_argument("--source-dir", help="use an existing source tree instead of fetching source_ref")
    p_build.add_argument("--work-root", help="workspace root directory")
    p_build.add_argument("-j", "--jobs", type=int, help="parallel make jobs")
    p_build.add_argument("--report", help="write the JSON build report to this path")
    p_build.add_argument("--config", default=argparse.SUPPRESS, help="explicit shran configuration file")
    p_build.add_argument("--no-spinner", action="store_true", default=argparse.SUPPRESS, help="Disable spinner animations")

    p_plan = sub.add_parser("plan", help="resolve and print the build order")
    p_plan.add_argument("-s", "--strategy", default="build.yaml", help="build specification file")
    p_plan.add_argument("--dot", help="write the dependency graph in Graphviz DOT format")
    p_plan.add_argument("--config", default=argparse.SUPPRESS, help="explicit shran configuration file")

    p_gen = sub.add_parser("generate", help="write a default build specification")
    chain = p_gen.add_mutually_exclusive_group(required=True)
    chain.add_argument("--btc", action="store_true", help="bitcoin core")
    chain.add_argument("--ltc", action="store_true", help="litecoin (not supported yet)")
    p_gen.add_argument("-o", "--output", default="build.yaml")
    p_gen.add_argument("--ref", default="v25.0", help="source_ref written to the file")
    p_gen.add_argument("--force", action="store_true", help="overwrite an existing file")

    p_fetch = sub.add_parser("fetch", help="query and download node releases")
    what = p_fetch.add_mutually_exclusive_group(required=True)
    what.add_argument("--list-remote", action="store_true", help="list every tag on GitHub")
    what.add_argument("--list-local", action="store_true", help="list downloaded sources")
    what.add_argument("--latest", action="store_true", help="download the latest release")
    what.add_argument("--tag", help="download a specific tag")

    p_auth = sub.add_parser("auth", help="store a GitHub token")
    p_auth.add_argument("--token", required=True)

    return ap

_COMMANDS = {
    "build": cmd_build,
    "plan": cmd_plan,
    "generate": cmd_generate,
    "fetch": cmd_fetch,
    "auth": cmd_auth,
}

def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return EXIT_ERROR

    if args.config:
        config_mod.reload(args.config)
    reload_config()
    if args.verbose:
        set_level("DEBUG")

    try:
        return _COMMANDS[args.cmd](args)
    except ConfigError as e:
        print_err(str(e))
        return EXIT_CONFIG
    except ResolutionError as e:
        print_err(f"{e.kind}: {e}")
        return EXIT_RESOLUTION
    except (FetchError, GitHubError) as e:
        print_err(str(e))
        return EXIT_SOURCE
    except (ManifestEntryError, FileExistsError) as e:
        print_err(str(e))
        return EXIT_ERROR
    except ShranError as e:
        logger.exception("command failed")
        print_err(f"Command failed: {e}")
        return EXIT_ERROR

if __name__ == "__main__":
    sys.exit(main())
