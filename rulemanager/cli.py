"""
CLI interface for the rulemanager pipeline scheduler.

Provides commands to run the scheduler, execute a single job on a compute
node, inspect and clear the pipeline lock, show job status and load
analysis/rule definitions and input ids into the pipeline database.

Configuration is read from --config or $RULEMANAGER_HOME/config.yaml.
"""

from pathlib import Path
from typing import Optional

import click
from rich.table import Table

from rulemanager import __version__
from rulemanager.config import RuleManagerConfig, RunOptions, load_config
from rulemanager.errors import (
    AlreadyLockedError,
    ConfigError,
    RuleManagerError,
    SanityCheckError,
)
from rulemanager.schemas import Analysis, JobStatus
from rulemanager.state_store import SqliteStateStore, seed_input_ids
from rulemanager.utils import console, read_idlist_file, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="rulemanager")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to config.yaml (default: $RULEMANAGER_HOME/config.yaml)",
)
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level")
@click.pass_context
def main(ctx, config_path: Optional[Path], verbose: bool):
    """
    rulemanager - Rule-driven pipeline job scheduler.

    Runs every analysis whose rule conditions are met for each input id,
    submitting jobs to a batch system and retrying failures.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _load(ctx, log_file: bool = False) -> RuleManagerConfig:
    """Load config and set up logging, exiting 1 on a config error."""
    try:
        config = load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    level = "DEBUG" if ctx.obj.get("verbose") else config.logging.level
    setup_logging(
        config.logging.log_file_path() if log_file else None,
        level,
        config.logging.format,
        config.logging.console,
    )
    return config


def _open_store(config: RuleManagerConfig) -> SqliteStateStore:
    return SqliteStateStore(config.database.path)


# =============================================================================
# Scheduler
# =============================================================================

@main.command("run")
@click.option("--local", is_flag=True, help="Run jobs in this process instead of the batch system")
@click.option("--once", is_flag=True, help="Make one full pass, then exit")
@click.option("--shuffle", is_flag=True, help="Process input ids of each type in random order")
@click.option("--analysis", "analyses", multiple=True, help="Only run this goal analysis (name or id; repeatable)")
@click.option("--input-id-type", "input_id_types", multiple=True, help="Only check input ids of this type (repeatable)")
@click.option("--start-from", "start_from", multiple=True, help="Take input ids from this analysis's completions (repeatable)")
@click.option(
    "--idlist-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Take input ids from a file of 'input_id input_id_type' lines",
)
@click.option("--accumulators/--no-accumulators", default=True, show_default=True, help="Run accumulator analyses")
@click.option(
    "--rename-on-retry/--no-rename-on-retry",
    default=True,
    show_default=True,
    help="Archive stdout/stderr of failed jobs before resubmitting",
)
@click.option("--db-sanity/--no-db-sanity", default=True, show_default=True, help="Check the pipeline database first")
@click.pass_context
def run_command(ctx, local, once, shuffle, analyses, input_id_types, start_from, idlist_file,
                accumulators, rename_on_retry, db_sanity):
    """Run the scheduler until terminated (SIGTERM/SIGINT; SIGUSR1 reloads rules).

    Examples:

        rulemanager run

        rulemanager run --local --once --analysis Genscan
    """
    from rulemanager.admission import AdmissionController
    from rulemanager.batch import create_submitter
    from rulemanager.control import ControlChannel
    from rulemanager.job_manager import JobLifecycleManager
    from rulemanager.lock import SingletonLock
    from rulemanager.rule_store import RuleStore
    from rulemanager.scheduler import RuleScheduler

    config = _load(ctx, log_file=True)
    options = RunOptions(
        local=local,
        once=once,
        shuffle=shuffle,
        analyses=tuple(analyses),
        input_id_types=tuple(input_id_types),
        start_from=tuple(start_from),
        idlist_file=idlist_file,
        accumulators=accumulators,
        rename_on_retry=rename_on_retry,
        db_sanity=db_sanity,
    )

    store = _open_store(config)
    try:
        if options.db_sanity:
            problems = store.sanity_problems()
            if problems:
                raise SanityCheckError(problems)

        channel = ControlChannel()
        submitter = create_submitter(
            config.batch, local=options.local, max_job_time=config.scheduler.max_job_time
        )
        jobs = JobLifecycleManager(
            store,
            submitter,
            config.scheduler,
            output_dir=config.batch.output_dir,
            rename_on_retry=options.rename_on_retry,
        )
        admission = AdmissionController(
            submitter,
            config.batch.max_pending_jobs,
            config.scheduler.overload_sleep,
            channel=channel,
        )
        scheduler = RuleScheduler(
            store, RuleStore(store), jobs, admission, channel, options, config.scheduler
        )
        scheduler.prepare()

        with SingletonLock(store, config.database.label):
            channel.install_signal_handlers()
            summary = scheduler.run()

    except (ConfigError, SanityCheckError, AlreadyLockedError) as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        store.close()

    if summary.stopped_by == "error":
        click.echo("✗ Scheduler pass failed, see the log for details", err=True)
        raise SystemExit(1)

    click.echo(
        f"✓ Scheduler stopped ({summary.stopped_by}) after {summary.passes} passes, "
        f"{summary.started} jobs started"
    )


@main.command("run-job")
@click.argument("job_ids", nargs=-1, type=int, required=True)
@click.pass_context
def run_job_command(ctx, job_ids):
    """Execute jobs on this host and report their status.

    This is the command a batch system runs for each submitted job.

    Example:

        rulemanager run-job 42
    """
    from rulemanager.batch import LocalSubmitter
    from rulemanager.job_manager import JobLifecycleManager
    from rulemanager.runner import CommandRunner

    config = _load(ctx)
    store = _open_store(config)
    runner = CommandRunner(default_timeout=config.scheduler.max_job_time)
    jobs = JobLifecycleManager(store, LocalSubmitter(runner), config.scheduler)

    failed = 0
    try:
        for job_id in job_ids:
            try:
                job = jobs.apply_status(job_id, JobStatus.RUNNING)
                status = runner.run(job)
                jobs.apply_status(job_id, status)
            except RuleManagerError as e:
                click.echo(f"✗ Job {job_id}: {e}", err=True)
                failed += 1
                continue

            if status == JobStatus.SUCCESSFUL:
                click.echo(f"✓ Job {job_id} ({job.logic_name} on {job.input_id}) SUCCESSFUL")
            else:
                click.echo(f"✗ Job {job_id} ({job.logic_name} on {job.input_id}) {status.value}", err=True)
                failed += 1
    finally:
        store.close()

    if failed:
        raise SystemExit(1)


# =============================================================================
# Lock
# =============================================================================

@main.group("lock")
def lock_group():
    """Inspect or clear the pipeline lock."""
    pass


@lock_group.command("show")
@click.pass_context
def lock_show(ctx):
    """Show which scheduler holds the pipeline lock."""
    config = _load(ctx)
    store = _open_store(config)
    try:
        lock = store.get_lock()
    finally:
        store.close()

    if lock is None:
        click.echo("No pipeline lock held")
        return
    click.echo(f"Locked by {lock.owner}@{lock.host} pid {lock.pid} since {lock.started_at:%Y-%m-%d %H:%M:%S %Z}")


@lock_group.command("release")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def lock_release(ctx, yes: bool):
    """Remove a stale pipeline lock.

    Only do this when the process named by `rulemanager lock show` no
    longer exists.
    """
    from rulemanager.lock import SingletonLock

    config = _load(ctx)
    store = _open_store(config)
    try:
        lock = store.get_lock()
        if lock is None:
            click.echo("No pipeline lock held")
            return
        if not yes:
            click.confirm(
                f"Remove lock held by {lock.owner}@{lock.host} pid {lock.pid}?",
                abort=True,
            )
        SingletonLock(store, config.database.label).release(force=True)
    finally:
        store.close()
    click.echo("✓ Pipeline lock released")


# =============================================================================
# Status
# =============================================================================

@main.command("status")
@click.pass_context
def status_command(ctx):
    """Show job counts per analysis and status."""
    config = _load(ctx)
    store = _open_store(config)
    try:
        counts = store.job_status_counts()
        lock = store.get_lock()
    finally:
        store.close()

    if not counts:
        click.echo("No jobs recorded")
    else:
        statuses = [s.value for s in JobStatus if any(k[1] == s.value for k in counts)]
        table = Table(title="Jobs by analysis and status", header_style="bold yellow")
        table.add_column("Analysis", style="cyan")
        for status in statuses:
            table.add_column(status, justify="right")
        for logic_name in sorted({k[0] for k in counts}):
            table.add_row(logic_name, *(str(counts.get((logic_name, s), 0)) for s in statuses))
        console.print(table)

    if lock is not None:
        click.echo(f"Scheduler running: {lock.owner}@{lock.host} pid {lock.pid}")


# =============================================================================
# Pipeline definition
# =============================================================================

@main.command("load-rules")
@click.argument("rule_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def load_rules_command(ctx, rule_file: Path):
    """Load analyses and rules from a YAML file.

    Example:

        rulemanager load-rules pipeline.yaml
    """
    from rulemanager.rule_store import load_definitions

    config = _load(ctx)
    store = _open_store(config)
    try:
        analyses, rules = load_definitions(store, rule_file)
        problems = store.sanity_problems()
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        store.close()

    click.echo(f"✓ Loaded {analyses} analyses and {rules} rules")
    for problem in problems:
        click.echo(f"  warning: {problem}", err=True)


@main.command("submit-ids")
@click.argument("idlist_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--analysis", "logic_name", required=True, help="Seed analysis the input ids are recorded against")
@click.pass_context
def submit_ids_command(ctx, idlist_file: Path, logic_name: str):
    """Add input ids to the pipeline.

    Each line of IDLIST_FILE is 'input_id input_id_type'. The ids are
    recorded as completed for the seed analysis, which rules use as a
    condition. The seed analysis is created if it does not exist.

    Example:

        rulemanager submit-ids slices.txt --analysis SubmitSlice
    """
    config = _load(ctx)
    store = _open_store(config)
    try:
        grouped = read_idlist_file(idlist_file)
        total = 0
        for input_id_type, input_ids in sorted(grouped.items()):
            analysis = store.fetch_analysis(logic_name)
            if analysis is None:
                next_id = max((a.analysis_id for a in store.fetch_analyses()), default=0) + 1
                analysis = Analysis(next_id, logic_name, input_id_type)
                store.store_analysis(analysis)
                click.echo(f"Created seed analysis {logic_name} ({input_id_type})")
            elif analysis.input_id_type != input_id_type:
                raise ConfigError(
                    f"Analysis {logic_name} takes {analysis.input_id_type} input ids, "
                    f"not {input_id_type}"
                )
            total += seed_input_ids(store, analysis, input_ids)
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        store.close()

    click.echo(f"✓ Submitted {total} input ids as {logic_name}")
