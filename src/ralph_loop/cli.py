"""Command line entry point for the build loop."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path

from . import __version__
from .agents import AgentDriver, AgentRegistry
from .cancellation import install_signal_handlers
from .config import ProjectConfig, get_settings, load_project_config, write_project_config
from .errors import ConfigError, RalphError
from .gates import GateRunner
from .logs import follow, tail_lines
from .loop import EXIT_FAILURE, EXIT_OK, BuildLoopController, LoopResult
from .paths import ProjectPaths
from .plan import current_task
from .process import ProcessRunner
from .storage import FileSessionBackend, Session, SessionNotFoundError, SessionStore

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2

PLAN_TEMPLATE = """# Implementation Plan

## In Progress
<!-- List the spec being worked on, e.g. - specs/01-project-setup.md -->

## Backlog

## Completed
"""


def configure_logging(level: str) -> None:
    """Configure root logging for the command line."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _paths(args: argparse.Namespace) -> ProjectPaths:
    return ProjectPaths.for_root(args.project_dir)


def _store(paths: ProjectPaths) -> SessionStore:
    return SessionStore(FileSessionBackend(paths.sessions_dir))


def _registry(paths: ProjectPaths) -> AgentRegistry:
    search_paths = list(get_settings().agent_profile_paths)
    project_agents = paths.ralph_dir / "agents"
    if project_agents not in search_paths:
        search_paths.append(project_agents)
    return AgentRegistry(search_paths)


def _find_session(store: SessionStore, paths: ProjectPaths, session_id: str | None) -> Session:
    if session_id:
        return store.get(session_id)
    session = store.latest(paths.project_id)
    if session is None:
        raise SessionNotFoundError(f"No sessions recorded for {paths.root}")
    return session


def _format_session(session: Session) -> str:
    lines = [
        f"Session:    {session.id}",
        f"Status:     {session.status}",
        f"Mode:       {session.mode}",
        f"Agent:      {session.agent}" + (f" ({session.model})" if session.model else ""),
        f"Iteration:  {session.iteration}",
        f"Started:    {session.started_at.isoformat()}",
    ]
    if session.task:
        lines.append(f"Task:       {session.task}")
    if session.pid is not None:
        lines.append(f"PID:        {session.pid}")
    if session.paused_at:
        lines.append(f"Paused:     {session.paused_at.isoformat()}")
    if session.stopped_at:
        lines.append(f"Stopped:    {session.stopped_at.isoformat()}")
    if session.stop_reason:
        lines.append(f"Reason:     {session.stop_reason}")
    lines.append(f"Log:        {session.log_file}")
    return "\n".join(lines)


def cmd_init(args: argparse.Namespace) -> int:
    paths = _paths(args)
    if paths.config_file.exists() and not args.force:
        print(f"Already initialized: {paths.config_file} (use --force to overwrite)")
        return EXIT_OK

    config = ProjectConfig(
        project_name=paths.root.name,
        agent=args.agent,
        model=args.model,
        max_iterations=args.max_iterations,
        quality_gates=args.gate or [],
    )
    registry = _registry(paths)
    definition = registry.get(config.agent)
    if not registry.is_installed(config.agent):
        print(
            f"Warning: {definition.name} ('{definition.command}') is not on PATH"
            + (f"; install with: {definition.install_hint}" if definition.install_hint else ""),
            file=sys.stderr,
        )

    for directory in (paths.specs_dir, paths.logs_dir, paths.sessions_dir):
        directory.mkdir(parents=True, exist_ok=True)
    target = write_project_config(paths, config)
    if not paths.plan_file.exists():
        paths.plan_file.write_text(PLAN_TEMPLATE, encoding="utf-8")

    print(f"Initialized {paths.ralph_dir}")
    print(f"  config: {target}")
    print(f"  plan:   {paths.plan_file}")
    print(f"  agent:  {config.agent}" + (f" ({config.model})" if config.model else ""))
    return EXIT_OK


async def _run_controller(args: argparse.Namespace, paths: ProjectPaths, config: ProjectConfig) -> LoopResult:
    settings = get_settings()
    invocation = _registry(paths).resolve(config.agent, model=config.model, verbose=args.verbose)
    runner = ProcessRunner(kill_grace=settings.kill_grace)
    controller = BuildLoopController(
        paths=paths,
        config=config,
        settings=settings,
        invocation=invocation,
        store=_store(paths),
        agent_driver=AgentDriver(runner, timeout=config.agent_timeout or settings.agent_timeout),
        gate_runner=GateRunner(runner, timeout=config.gate_timeout or settings.gate_timeout),
        mode=args.mode,
    )
    remove_handlers = install_signal_handlers(controller.token)
    try:
        return await controller.run()
    finally:
        remove_handlers()


def cmd_start(args: argparse.Namespace) -> int:
    paths = _paths(args)
    config = load_project_config(paths)
    if args.agent:
        config.agent = args.agent.strip().lower()
    if args.model:
        config.model = args.model
    if args.max_iterations is not None:
        config.max_iterations = args.max_iterations

    if args.mode == "build" and current_task(paths) is None:
        print(
            f"No task in progress in {paths.plan_file}; run 'ralph-loop start plan' "
            "or list a spec under '## In Progress'",
            file=sys.stderr,
        )
        return EXIT_FAILURE

    result = asyncio.run(_run_controller(args, paths, config))
    session = result.session
    print(
        f"Session {session.id} {session.status} after {session.iteration} iteration(s)"
        + (f": {session.stop_reason}" if session.stop_reason else "")
    )
    print(f"Log: {session.log_file}")
    return result.exit_code


def _signal_active(args: argparse.Namespace, signum: signal.Signals, verb: str) -> int:
    paths = _paths(args)
    store = _store(paths)
    active = store.active(paths.project_id)
    if args.session:
        active = [session for session in active if session.id == args.session]
    if not active:
        print(f"No active session for {paths.root}", file=sys.stderr)
        return EXIT_FAILURE

    session = active[0]
    if session.pid is None:
        print(f"Session {session.id} has no recorded controller process", file=sys.stderr)
        return EXIT_FAILURE
    try:
        os.kill(session.pid, signum)
    except ProcessLookupError:
        print(f"Controller process {session.pid} for session {session.id} is gone", file=sys.stderr)
        return EXIT_FAILURE
    logger.debug("Signal sent", extra={"session_id": session.id, "pid": session.pid, "signal": signum.name})
    print(f"{verb} session {session.id} (pid {session.pid})")
    return EXIT_OK


def cmd_stop(args: argparse.Namespace) -> int:
    return _signal_active(args, signal.SIGTERM, "Stopping")


def cmd_pause(args: argparse.Namespace) -> int:
    return _signal_active(args, signal.SIGUSR1, "Pausing (after the current iteration)")


def cmd_resume(args: argparse.Namespace) -> int:
    return _signal_active(args, signal.SIGUSR2, "Resuming")


def cmd_status(args: argparse.Namespace) -> int:
    paths = _paths(args)
    store = _store(paths)
    # reap sessions whose controller died before reporting
    store.active(paths.project_id)
    try:
        session = _find_session(store, paths, args.session)
    except SessionNotFoundError as exc:
        print(str(exc))
        return EXIT_FAILURE
    if args.json:
        print(session.model_dump_json(indent=2))
    else:
        print(_format_session(session))
    return EXIT_OK


def cmd_list(args: argparse.Namespace) -> int:
    paths = _paths(args)
    store = _store(paths)
    store.active(paths.project_id)
    sessions = store.list_sessions(None if args.all else paths.project_id)
    if args.limit is not None and args.limit > 0:
        sessions = sessions[: args.limit]
    if args.json:
        print(json.dumps([session.model_dump(mode="json") for session in sessions], indent=2))
        return EXIT_OK
    if not sessions:
        print("No sessions recorded")
        return EXIT_OK
    for session in sessions:
        print(
            f"{session.id} [{session.status}] {session.mode} {session.agent} "
            f"iter={session.iteration} started={session.started_at.isoformat()}"
            + (f" task={session.task}" if session.task else "")
        )
    return EXIT_OK


def cmd_logs(args: argparse.Namespace) -> int:
    paths = _paths(args)
    store = _store(paths)
    try:
        session = _find_session(store, paths, args.session)
    except SessionNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_FAILURE

    log_path = Path(session.log_file)
    if not log_path.exists():
        print(f"Log file not found: {log_path}", file=sys.stderr)
        return EXIT_FAILURE

    if not args.follow:
        for line in tail_lines(log_path, args.lines):
            print(line)
        return EXIT_OK

    def _finished() -> bool:
        return store.get(session.id).is_terminal

    try:
        for line in follow(log_path, lines=args.lines, should_stop=_finished):
            print(line, flush=True)
    except KeyboardInterrupt:
        pass
    return EXIT_OK


def cmd_agents(args: argparse.Namespace) -> int:
    paths = _paths(args)
    registry = _registry(paths)
    agents = registry.load_all()
    rows = [
        {
            "id": definition.id,
            "name": definition.name,
            "command": definition.command,
            "installed": registry.is_installed(definition.id),
            "install_hint": definition.install_hint,
        }
        for definition in sorted(agents.values(), key=lambda item: item.id)
    ]
    if args.json:
        print(json.dumps(rows, indent=2))
        return EXIT_OK
    for row in rows:
        state = "installed" if row["installed"] else "missing"
        print(f"{row['id']:<10} {row['name']:<16} {row['command']:<10} {state}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph-loop",
        description="Drive a coding agent through a plan, one verified task at a time",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-C",
        "--project-dir",
        default=".",
        help="Project root containing .ralph-wiggum/ (default: current directory)",
    )
    parser.add_argument("--log-level", help="Override RALPH_LOG_LEVEL")
    sub = parser.add_subparsers(dest="cmd")

    p_init = sub.add_parser("init", help="Create .ralph-wiggum/ with a config and plan template")
    p_init.add_argument("--agent", default="claude", help="Agent id (default: claude)")
    p_init.add_argument("--model")
    p_init.add_argument("--max-iterations", type=int, default=0, help="0 means no cap")
    p_init.add_argument(
        "--gate",
        action="append",
        help="Quality gate command; repeat for several (run in order)",
    )
    p_init.add_argument("--force", action="store_true", help="Overwrite an existing config")
    p_init.set_defaults(func=cmd_init)

    p_start = sub.add_parser("start", help="Run the loop in the foreground")
    p_start.add_argument("mode", nargs="?", choices=("plan", "build"), default="build")
    p_start.add_argument("--agent", help="Override the configured agent")
    p_start.add_argument("--model", help="Override the configured model")
    p_start.add_argument("--max-iterations", type=int, help="Override the iteration cap")
    p_start.add_argument("--verbose", action="store_true", help="Ask the agent for verbose output")
    p_start.set_defaults(func=cmd_start)

    for name, func, help_text in (
        ("stop", cmd_stop, "Stop the active session"),
        ("pause", cmd_pause, "Pause the active session after its current iteration"),
        ("resume", cmd_resume, "Resume a paused session"),
    ):
        p_signal = sub.add_parser(name, help=help_text)
        p_signal.add_argument("-s", "--session", help="Session id (default: the active one)")
        p_signal.set_defaults(func=func)

    p_status = sub.add_parser("status", help="Show the latest (or a given) session")
    p_status.add_argument("-s", "--session")
    p_status.add_argument("--json", action="store_true", help="Output JSON")
    p_status.set_defaults(func=cmd_status)

    p_list = sub.add_parser("list", help="List recorded sessions, newest first")
    p_list.add_argument("--all", action="store_true", help="Include sessions of other projects")
    p_list.add_argument("--limit", type=int, default=None, help="Show only the latest N sessions")
    p_list.add_argument("--json", action="store_true", help="Output JSON")
    p_list.set_defaults(func=cmd_list)

    p_logs = sub.add_parser("logs", help="Print a session log")
    p_logs.add_argument("-s", "--session", help="Session id (default: the latest)")
    p_logs.add_argument("-n", "--lines", type=int, default=50)
    p_logs.add_argument("-f", "--follow", action="store_true", help="Keep printing until the session ends")
    p_logs.set_defaults(func=cmd_logs)

    p_agents = sub.add_parser("agents", help="List known agents and whether they are installed")
    p_agents.add_argument("--json", action="store_true", help="Output JSON")
    p_agents.set_defaults(func=cmd_agents)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_OK

    try:
        level = (args.log_level or get_settings().log_level).upper()
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    configure_logging(level)

    try:
        return args.func(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except RalphError as exc:
        logger.error("Command failed", extra={"command": args.cmd, "error": str(exc)})
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except OSError as exc:
        logger.error("Command failed", extra={"command": args.cmd, "error": str(exc)})
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
