from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

from ralph.agents import AgentBackend, build_agent
from ralph.config import AGENT_NAMES, EFFORT_LEVELS, RalphConfig, load_config, save_config
from ralph.daemon import DAEMON_FLAG, DaemonInvocation, DaemonSupervisor, ProcessControl
from ralph.engine import IterationEngine, RunSummary, Verdict, load_prompt
from ralph.registry import FileDaemonRegistry, registry_key
from ralph.run_state import RunPaths, RunStateManager, utc_timestamp
from ralph.tasklist import RalphError, load_task_list
from ralph.workspace import Workspace, WorkspaceProvisioner

RULE = "═" * 55


class DefaultCommandGroup(click.Group):
    """A group that runs ``default_command`` when no subcommand is named."""

    def __init__(self, *args: Any, default_command: str = "run", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.default_command = default_command

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        if not args or (args[0] not in self.commands and args[0] not in ctx.help_option_names):
            args = [self.default_command, *args]
        return super().parse_args(ctx, args)


@dataclass(slots=True)
class EventSink:
    """Echoes events to the console and records them once a run root is known."""

    recorder: RunStateManager | None = None
    pending: list[dict[str, Any]] = field(default_factory=list)

    def attach(self, recorder: RunStateManager) -> None:
        self.recorder = recorder
        for event in self.pending:
            recorder.record_event(event)
        self.pending.clear()

    def __call__(self, event: dict[str, Any]) -> None:
        _render_event(event)
        stamped = {**event, "at": event.get("at") or utc_timestamp()}
        if self.recorder is None:
            self.pending.append(stamped)
        else:
            self.recorder.record_event(stamped)


def _warn(message: str) -> None:
    click.secho(message, fg="yellow")


def _render_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "workspace_resolved":
        click.echo("Worktree mode enabled")
        click.echo(f"  Branch: {event['branch']}")
        click.echo(f"  Worktree: {event['path']}")
    elif name == "workspace_reset":
        click.echo("  Force mode: removing existing worktree...")
    elif name == "workspace_branch_deleted":
        click.echo(f"  Force mode: deleting branch {event['branch']}...")
    elif name == "workspace_reused":
        click.echo("  Worktree already exists, reusing...")
    elif name == "workspace_branch_created":
        click.echo(f"  Creating branch {event['branch']}...")
    elif name == "workspace_created":
        click.echo("  Creating worktree...")
    elif name == "task_list_reused":
        click.echo(f"  Reusing existing task list (branch matches: {event['branch']})")
    elif name == "task_list_branch_mismatch":
        click.echo(
            f"  Branch mismatch! Worktree has: {event['workspace_branch']}, "
            f"need: {event['branch']}"
        )
        click.echo("  Copying new task list...")
    elif name == "task_list_copied":
        click.echo("  Copying task list to worktree...")
    elif name == "run_archived":
        click.echo(f"Archiving previous run: {event['previous_branch']}")
        click.echo(f"   Archived to: {event['archive']}")
    elif name == "archive_skipped":
        _warn(f"  Skipped archiving {event['path']}: {event['error']}")
    elif name == "run_started":
        click.echo(
            f"Starting Ralph ({event['agent']}) - Max iterations: {event['max_iterations']}"
        )
        click.echo(f"Working directory: {event['root']}")
        click.echo(f"Logs directory: {event['log_dir']}")
    elif name == "priority_order_mismatch":
        _warn(
            "Note: stories are worked in document order, which differs from their "
            f"priority order ({', '.join(event['order'])})."
        )
    elif name == "iteration_started":
        click.echo("")
        click.echo(RULE)
        click.echo(f"  Ralph Iteration {event['iteration']} of {event['max_iterations']}")
        click.echo(RULE)
        click.echo(f"  Story: {event['story_id']}")
    elif name == "iteration_finished":
        click.echo(f"  Log: {event['log_path']}")
        click.secho(f"  ✓ Story {event['story_id']} completed successfully", fg="green")
    elif name == "iteration_failed":
        click.echo(f"  Log: {event['log_path']}")
        click.secho(
            f"  ✗ Story {event['story_id']} exited with error (check {event['log_path']})",
            fg="red",
        )
    elif name == "log_missing":
        _warn("  ⚠ Warning: Log file was not created")
    elif name == "task_list_unreadable":
        _warn(f"  ⚠ Warning: task list could not be read: {event['error']}")
    elif name == "passes_regressed":
        _warn(
            f"  ⚠ Warning: completed stories dropped from {event['before']} "
            f"to {event['after']}"
        )
    elif name == "iteration_delay":
        click.echo(f"  Waiting {event['seconds']:g} seconds before next iteration...")
    elif name == "retrospective_started":
        kind = "partial retrospective" if event["partial"] else "retrospective"
        click.echo("")
        click.echo(f"Running {kind}...")
        click.echo(f"  Log: {event['log_path']}")
    elif name == "retrospective_finished":
        click.secho(f"  ✓ Retrospective written to {event['report']}", fg="green")
    elif name == "retrospective_failed":
        _warn(f"  ⚠ Retrospective exited with error (check {event['log_path']})")
    elif name == "daemon_stale_purged":
        _warn(f"Removed stale registry entry {event['key']} (PID {event['pid']})")


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_agent(
    config: RalphConfig, event_hook: Callable[[dict[str, Any]], None]
) -> AgentBackend:
    return build_agent(
        config.agent.name,
        binary=config.agent.binary or None,
        model=config.agent.model or None,
        effort=config.agent.effort or None,
        event_hook=event_hook,
    )


def _build_daemon_supervisor(
    config: RalphConfig, event_hook: Callable[[dict[str, Any]], None] | None = None
) -> DaemonSupervisor:
    return DaemonSupervisor(
        FileDaemonRegistry(config.daemon.resolved_registry_dir()),
        process_control=ProcessControl(extra_env={"PYTHONUNBUFFERED": "1"}),
        startup_grace_seconds=config.daemon.startup_grace_seconds,
        stop_timeout_seconds=config.daemon.stop_timeout_seconds,
        stop_poll_interval=config.daemon.stop_poll_interval,
        event_hook=event_hook,
    )


def _daemon_key(
    repo_root: Path, config: RalphConfig, project: str | None, branch: str | None
) -> tuple[str, str, str]:
    project_name = project or repo_root.name
    if branch is None:
        branch = load_task_list(repo_root / config.files.task_list).require_branch()
    return registry_key(project_name, branch), project_name, branch


def _child_argv(
    iterations: int,
    config: RalphConfig,
    config_path: Path,
    *,
    worktree: bool,
    force: bool,
) -> list[str]:
    argv = [sys.executable, "-m", "ralph", "run", str(iterations)]
    argv.extend(["--agent", config.agent.name])
    if config.agent.model:
        argv.extend(["--model", config.agent.model])
    if config.agent.effort:
        argv.extend(["--effort", config.agent.effort])
    if worktree:
        argv.append("--worktree")
    if force:
        argv.append("--force")
    argv.extend(["--config", str(config_path)])
    return argv


def _echo_workspace_summary(summary: RunSummary, workspace: Workspace, paths: RunPaths) -> None:
    work_dir = workspace.path
    branch = workspace.branch
    complete = summary.outcome is Verdict.COMPLETE
    click.echo("")
    click.echo(RULE)
    click.echo("  Worktree Summary" if complete else "  Worktree Summary (Incomplete)")
    click.echo(RULE)
    click.echo(f"  Location: {work_dir}")
    click.echo(f"  Branch:   {branch}")
    click.echo("")
    if not complete:
        click.echo("  The work is incomplete but progress has been made.")
        click.echo("  Check the worktree for details.")
        click.echo("")
    click.echo("  Files available:")
    click.echo(f"    - {paths.task_list.name:<14}(story status)")
    click.echo(f"    - {paths.progress.name:<14}(learnings from each iteration)")
    click.echo(f"    - {paths.log_dir.name + '/':<14}(detailed logs from each story)")
    click.echo("")
    click.echo("  Next steps:")
    click.echo("    1. Review the work:")
    click.echo(f"       cd {work_dir}")
    click.echo(f"       cat {paths.progress.name}")
    click.echo("")
    if complete:
        click.echo("    2. Push the branch:")
        click.echo(f"       git -C {work_dir} push origin {branch}")
        click.echo("")
        click.echo("    3. Or merge locally:")
        click.echo(f"       cd {workspace.source_root}")
        click.echo(f"       git merge {branch}")
        click.echo("")
        step = 4
    else:
        click.echo("    2. Or run ralph again with more iterations:")
        click.echo(f"       cd {workspace.source_root}")
        click.echo("       ralph --worktree [higher_number]")
        click.echo("")
        click.echo("    3. Push partial progress:")
        click.echo(f"       git -C {work_dir} push origin {branch}")
        click.echo("")
        step = 4
    click.echo(f"    {step}. Clean up when done:")
    click.echo(f"       git worktree remove {work_dir}")
    click.echo(f"       rm -rf {work_dir}")
    click.echo(RULE)


def _echo_summary(summary: RunSummary, paths: RunPaths, workspace: Workspace | None) -> None:
    click.echo("")
    if summary.outcome is Verdict.COMPLETE:
        click.secho(f"✅ All stories complete! ({summary.iterations} iterations)", fg="green")
    else:
        click.echo(
            f"Ralph reached max iterations ({summary.max_iterations}) "
            "without completing all tasks."
        )
        click.echo(f"Incomplete stories: {', '.join(summary.incomplete_ids) or 'unknown'}")
        click.echo(f"Check {paths.progress} for status.")
    if workspace is not None:
        _echo_workspace_summary(summary, workspace, paths)


@click.group(cls=DefaultCommandGroup, default_command="run")
def cli() -> None:
    """Ralph: run a coding agent over prd.json until every story passes."""


@cli.command("init")
@click.option("--agent", type=click.Choice(AGENT_NAMES), default=None)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def init_command(agent: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if agent:
        config.agent.name = agent  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.name}")


@cli.command("run")
@click.argument("iterations", type=click.IntRange(min=1), required=False)
@click.option("--agent", type=click.Choice(AGENT_NAMES), default=None, help="Agent CLI to drive.")
@click.option("--model", default=None, help="Model passed to the agent.")
@click.option(
    "--effort", type=click.Choice(EFFORT_LEVELS), default=None, help="Reasoning effort level."
)
@click.option(DAEMON_FLAG, "daemon", is_flag=True, default=False, help="Run in the background.")
@click.option("--worktree", is_flag=True, default=False, help="Run in an isolated git worktree.")
@click.option("--force", is_flag=True, default=False, help="Recreate the worktree and branch.")
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    iterations: int | None,
    agent: str | None,
    model: str | None,
    effort: str | None,
    daemon: bool,
    worktree: bool,
    force: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if agent:
        config.agent.name = agent  # type: ignore[assignment]
    if model:
        config.agent.model = model
    if effort:
        config.agent.effort = effort
    max_iterations = iterations or config.loop.max_iterations
    if max_iterations < 1:
        raise click.ClickException(
            f"max iterations must be at least 1 (loop.max_iterations = {max_iterations})."
        )

    if force and not worktree:
        click.secho("--force only applies together with --worktree; ignoring it.", fg="yellow")
        force = False

    if daemon:
        try:
            key, project, branch = _daemon_key(repo_root, config, None, None)
            supervisor = _build_daemon_supervisor(config, event_hook=_render_event)
            status = supervisor.start(
                key,
                DaemonInvocation(
                    argv=_child_argv(
                        max_iterations, config, config_path, worktree=worktree, force=force
                    ),
                    cwd=repo_root,
                    project=project,
                    branch=branch,
                ),
            )
        except RalphError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Ralph started in background for {project} ({branch})")
        click.echo(f"  PID: {status.pid}")
        click.echo(f"  Log: {status.log_path}")
        click.echo("  Check progress: ralph status")
        click.echo("  Stop:           ralph stop")
        return

    sink = EventSink()
    try:
        workspace: Workspace | None = None
        root = repo_root
        if worktree:
            provisioner = WorkspaceProvisioner(
                repo_root,
                config.workspace.resolved_root(),
                task_list_name=config.files.task_list,
                event_hook=sink,
            )
            workspace = provisioner.provision(force=force)
            root = workspace.path
            click.echo("  Switched to worktree")
            click.echo("")
        else:
            load_task_list(repo_root / config.files.task_list)

        paths = RunPaths.for_root(root, config.files)
        run_state = RunStateManager(paths, event_hook=sink)
        run_state.prepare()
        sink.attach(run_state)

        engine = IterationEngine(
            _build_agent(config, sink),
            paths,
            max_iterations=max_iterations,
            iteration_delay_seconds=config.loop.iteration_delay_seconds,
            prompt=load_prompt("prompt.md", config.loop.prompt_file or None),
            retrospective_prompt=load_prompt(
                "retrospective.md", config.loop.retrospective_prompt_file or None
            ),
            retrospective_report=config.loop.retrospective_report,
            event_hook=sink,
        )
        summary = asyncio.run(engine.run())
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_summary(summary, paths, workspace)
    ctx.exit(summary.exit_code)


def _daemon_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = click.option("--config", "config_value", default="ralph.toml", show_default=True)(func)
    func = click.option("--branch", default=None, help="Branch (default: from prd.json).")(func)
    func = click.option("--project", default=None, help="Project (default: directory name).")(
        func
    )
    return func


@cli.command("status")
@_daemon_options
@click.option("--json", "as_json", is_flag=True, default=False, help="Print status as JSON.")
@click.pass_context
def status_command(
    ctx: click.Context,
    project: str | None,
    branch: str | None,
    config_value: str,
    as_json: bool,
) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    try:
        key, project_name, branch_name = _daemon_key(repo_root, config, project, branch)
        supervisor = _build_daemon_supervisor(
            config, event_hook=None if as_json else _render_event
        )
        status = supervisor.status(key)
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(status.to_dict(), ensure_ascii=False, indent=2))
        ctx.exit(0 if status.running else 1)
    if not status.running:
        click.echo(f"Ralph is not running for {project_name} ({branch_name}).")
        ctx.exit(1)
    click.echo(f"Ralph is running for {status.project} ({status.branch})")
    click.echo(f"  PID:     {status.pid}")
    click.echo(f"  Started: {status.started_at}")
    click.echo(f"  Log:     {status.log_path}")


@cli.command("stop")
@_daemon_options
@click.pass_context
def stop_command(
    ctx: click.Context, project: str | None, branch: str | None, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    try:
        key, project_name, branch_name = _daemon_key(repo_root, config, project, branch)
        report = _build_daemon_supervisor(config, event_hook=_render_event).stop(key)
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc

    if not report.was_running:
        click.echo(f"Ralph is not running for {project_name} ({branch_name}).")
        ctx.exit(1)
    if report.confirmed:
        click.echo(f"Stopped Ralph (PID {report.pid}) for {project_name} ({branch_name}).")
    else:
        click.secho(
            f"Sent SIGTERM to PID {report.pid} but it had not exited after "
            f"{config.daemon.stop_timeout_seconds:g}s; registry entry removed.",
            fg="yellow",
        )


@cli.command("list")
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def list_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    try:
        running = _build_daemon_supervisor(config, event_hook=_render_event).list()
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc

    if not running:
        click.echo("No Ralph daemons running.")
        return
    for status in running:
        click.echo(f"{status.pid:>8}  {status.project}  {status.branch}  {status.log_path}")
