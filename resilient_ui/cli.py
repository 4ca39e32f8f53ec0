# resilient_ui/cli.py
from __future__ import annotations

"""Command-line interface
------------------------
Commands to list/validate/run scenarios and view effective config.
Thin wrapper around the scenario loader and runner for local and CI runs.
"""

import asyncio
import json
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

import click

from resilient_ui.core.scenario_loader import Scenario, find_scenario_files, load_scenarios_file
from resilient_ui.utils.config import Settings, get_settings
from resilient_ui.utils.logger import bind, get_logger, set_log_level, unbind


# -------- helpers --------


def _echo_json(obj) -> None:
    click.echo(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _collect_files(targets: Tuple[str, ...], scenarios_dir: Optional[str], recursive: bool) -> List[Path]:
    paths: List[Path] = []
    if targets:
        for p in (Path(t).resolve() for t in targets):
            if p.is_dir():
                paths.extend(find_scenario_files(p, recursive=True))
            else:
                paths.append(p)
    elif scenarios_dir:
        paths.extend(find_scenario_files(Path(scenarios_dir), recursive=recursive))
    return paths


# -------- CLI root --------


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override LOG_LEVEL from settings",
)
@click.version_option(package_name="resilient-ui")
def cli(log_level: Optional[str]):
    _ = get_settings()
    if log_level:
        set_log_level(log_level.upper())


# -------- commands --------


@cli.command("config")
def cmd_config():
    """Print effective configuration (after .env & env vars)."""
    s = get_settings()
    data = {k: (str(v) if isinstance(v, Path) else v) for k, v in s.model_dump().items()}
    if data.get("PROXY_PASSWORD"):
        data["PROXY_PASSWORD"] = "***"
    _echo_json(data)


@cli.command("list")
@click.option(
    "--dir", "scenarios_dir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=lambda: str(get_settings().SCENARIOS_DIR),
    show_default="SCENARIOS_DIR",
    help="Directory containing scenario YAML files",
)
@click.option("--recursive/--no-recursive", default=True, show_default=True)
@click.option("--app", "filter_app", type=str, default=None, help="Filter by app key")
@click.option("--tag", "tags", multiple=True, help="Only scenarios carrying any of these tags")
def cmd_list(scenarios_dir: str, recursive: bool, filter_app: Optional[str], tags: Tuple[str, ...]):
    """List scenarios available in a directory."""
    log = get_logger(__name__)
    rows = []
    for fp in find_scenario_files(Path(scenarios_dir), recursive=recursive):
        try:
            loaded = load_scenarios_file(fp)
        except (ValueError, FileNotFoundError) as e:
            # details are what `validate` is for
            log.debug(f"Skipping {fp}: {e}")
            continue
        rows.extend((fp, sc) for sc in loaded if sc.matches(filter_app, tags))

    if not rows:
        click.echo("No scenarios found.")
        return

    click.echo(f"Found {len(rows)} scenario(s):\n")
    for fp, sc in rows:
        tag_s = f"  tags={','.join(sc.tags)}" if sc.tags else ""
        click.echo(f" - [{sc.app}] {sc.name}  ({len(sc.steps)} steps){tag_s}  <- {fp}")


@cli.command("validate")
@click.argument("targets", nargs=-1, required=False)
@click.option("--dir", "scenarios_dir", type=click.Path(file_okay=False, dir_okay=True, exists=True), help="Validate all scenarios under this directory")
@click.option("--recursive/--no-recursive", default=True, show_default=True)
def cmd_validate(targets: Tuple[str, ...], scenarios_dir: Optional[str], recursive: bool):
    """Validate scenarios from files or a directory (supports multi-doc YAML)."""
    paths = _collect_files(targets, scenarios_dir, recursive)
    if not targets and not scenarios_dir:
        click.echo("Provide file(s) or --dir to validate.")
        sys.exit(2)

    ok = True
    for fp in paths:
        try:
            for sc in load_scenarios_file(fp):
                click.echo(f"OK  {fp}  ->  [{sc.app}] {sc.name} ({len(sc.steps)} steps)")
        except (ValueError, FileNotFoundError) as e:
            ok = False
            click.echo(f"ERR {fp}  ->  {e}")

    sys.exit(0 if ok else 1)


@cli.command("run")
@click.argument("targets", nargs=-1, required=False)
@click.option("--dir", "scenarios_dir", type=click.Path(file_okay=False, dir_okay=True, exists=True),
              help="Run all scenarios found under this directory (filtered by --app/--tag)")
@click.option("--recursive/--no-recursive", default=True, show_default=True)
@click.option("--app", "filter_app", type=str, default=None, help="Filter by app key")
@click.option("--tag", "tags", multiple=True, help="Only scenarios carrying any of these tags")
@click.option("--parallel/--no-parallel", default=None, help="Override PARALLEL_EXECUTION from settings")
@click.option("--max-workers", type=int, default=None, help="Override MAX_WORKERS from settings")
@click.option("--headed", is_flag=True, default=False, help="Show the browser (overrides HEADLESS)")
@click.option("--json-out", type=click.Path(dir_okay=False), default=None, help="Write a JSON summary to this file")
def cmd_run(
    targets: Tuple[str, ...],
    scenarios_dir: Optional[str],
    recursive: bool,
    filter_app: Optional[str],
    tags: Tuple[str, ...],
    parallel: Optional[bool],
    max_workers: Optional[int],
    headed: bool,
    json_out: Optional[str],
):
    """
    Run one or more scenarios, each in its own isolated browser session.

    Examples:
      resilient-ui run scenarios/people/add_person.yaml
      resilient-ui run --dir scenarios --tag smoke --parallel
    """
    settings: Settings = get_settings()
    if headed:
        settings = settings.model_copy(update={"HEADLESS": False})

    if not targets and not scenarios_dir:
        click.echo("Nothing to run. Provide file(s) or --dir.")
        sys.exit(2)

    scenarios: List[Tuple[Path, Scenario]] = []
    load_errors = 0
    for fp in _collect_files(targets, scenarios_dir, recursive):
        try:
            scenarios.extend((fp, sc) for sc in load_scenarios_file(fp) if sc.matches(filter_app, tags))
        except (ValueError, FileNotFoundError) as e:
            load_errors += 1
            click.echo(f"ERR {fp}  ->  {e}")

    if not scenarios:
        click.echo("No scenarios matched.")
        sys.exit(1)

    run_parallel = settings.PARALLEL_EXECUTION if parallel is None else bool(parallel)
    workers = settings.MAX_WORKERS if max_workers is None else int(max_workers)

    bind(run_id=datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ"))
    click.echo(f"Running {len(scenarios)} scenario(s){' in parallel' if run_parallel else ''}...")

    from resilient_ui.core.engine import ScenarioRunner  # late import so tests can substitute the engine

    def _run_one(sc: Scenario) -> dict:
        # own event loop and browser per worker; nothing shared between scenarios
        return asyncio.run(ScenarioRunner(settings=settings).run(sc))

    if run_parallel and len(scenarios) > 1:
        with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="scenario") as ex:
            results = list(ex.map(_run_one, [sc for _, sc in scenarios]))
    else:
        results = [_run_one(sc) for _, sc in scenarios]

    for (fp, sc), res in zip(scenarios, results):
        if res.get("ok"):
            click.echo(f"OK  [{sc.app}] {sc.name} -> run_dir={res.get('run_dir', '-')}")
        else:
            reason = res.get("error", "unknown error")
            err_type = res.get("error_type")
            failed = res.get("failed_step") or {}
            step_desc = ""
            if failed:
                step_desc = f" [step {failed.get('index', '?')} {failed.get('action', '')} {failed.get('name') or ''}]"
            prefix = f"{err_type}: " if err_type else ""
            click.echo(f"ERR [{sc.app}] {sc.name}{step_desc} -> {prefix}{reason}")

    ok_count = sum(1 for r in results if r.get("ok"))
    fail_count = len(results) - ok_count + load_errors
    click.echo(f"Done. OK={ok_count}  FAIL={fail_count}")

    if json_out:
        outp = Path(json_out).resolve()
        outp.parent.mkdir(parents=True, exist_ok=True)
        outp.write_text(json.dumps({"results": results}, indent=2, default=str), encoding="utf-8")
        click.echo(f"Wrote summary: {outp}")

    unbind("run_id")
    sys.exit(0 if fail_count == 0 else 1)


def main() -> None:
    cli(prog_name="resilient-ui")


if __name__ == "__main__":
    main()
