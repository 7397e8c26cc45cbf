#!/usr/bin/env python
"""shellquest CLI entry point.

Run the training shell with: python -m shellquest
Or after installation: shellquest

Usage:
    shellquest [OPTIONS]                   Start the local training shell
    shellquest serve                       Serve the training shell over SSH
    shellquest adventures list             List bundled adventures
    shellquest progress show <id>          Show saved progress for an adventure
    shellquest progress reset <id>         Delete saved progress for an adventure

Options:
    --adventure PATH    Adventure JSON file or id (default: bundled training adventure)
    --log-level LEVEL   Logging level (default: WARNING for the shell, INFO for serve)
    --fresh             Ignore saved progress and start from the first mission
    --version           Show version and exit
    --help              Show this message and exit
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import pydoc
import shlex
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import List, Optional

from colorama import Fore, Style, init as colorama_init

from .config import get_config, get_logging_config, get_metrics_config, get_ssh_config

__version__ = "0.1.0"


def setup_logging(level: str) -> None:
    """Configure logging for the application."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    log_config = get_logging_config()
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_config.file is not None:
        log_config.file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_config.file, encoding="utf-8"))
    logging.basicConfig(level=numeric_level, format=log_config.format, handlers=handlers)


def print_banner() -> None:
    """Print the shellquest startup banner."""
    banner = r"""
         _          _ _                        _
     ___| |__   ___| | | __ _ _   _  ___  ___| |_
    / __| '_ \ / _ \ | |/ _` | | | |/ _ \/ __| __|
    \__ \ | | |  __/ | | (_| | |_| |  __/\__ \ |_
    |___/_| |_|\___|_|_|\__, |\__,_|\___||___/\__|
                           |_|
    Learn the Linux shell, one mission at a time. v{}
    """.format(__version__)
    print(Fore.CYAN + banner + Style.RESET_ALL)


def resolve_adventure_path(value: Optional[str]) -> Path:
    """Map --adventure (a file path or an adventure id) to a JSON file."""
    config = get_config()
    if not value:
        return Path(config.default_adventure)
    path = Path(value)
    if path.exists():
        return path
    candidate = config.adventures_dir / f"{value}.json"
    if candidate.exists():
        return candidate
    for item in sorted(config.adventures_dir.glob("*.json")):
        try:
            if json.loads(item.read_text(encoding="utf-8")).get("id") == value:
                return item
        except (OSError, ValueError, AttributeError):
            continue
    return path


# =============================================================================
# Local REPL
# =============================================================================


def _edit_locally(intent) -> Optional[str]:
    """Open intent.path's content in $VISUAL/$EDITOR, or a line editor when unset."""
    editor = os.environ.get("VISUAL") or os.environ.get("EDITOR")
    if editor:
        with tempfile.NamedTemporaryFile("w", suffix=Path(intent.path).suffix or ".txt", delete=False) as handle:
            handle.write(intent.content)
            temp_path = Path(handle.name)
        try:
            before = temp_path.stat().st_mtime_ns
            if subprocess.call(shlex.split(editor) + [str(temp_path)]) != 0:
                return None
            if temp_path.stat().st_mtime_ns == before:
                return None
            return temp_path.read_text(encoding="utf-8")
        finally:
            temp_path.unlink()

    print(Style.BRIGHT + f"  {intent.editor} (line mode)  {intent.path}" + Style.RESET_ALL)
    for number, line in enumerate(intent.content.splitlines(), 1):
        print(f"{number:>4}  {line}")
    print("Type the new contents. '.' on its own line saves, ':q' cancels.")
    lines: List[str] = []
    while True:
        try:
            line = input()
        except EOFError:
            return None
        if line == ".":
            return "".join(item + "\n" for item in lines)
        if line == ":q":
            return None
        lines.append(line)


def _render(session, response):
    """Print a response and drive pager/editor/confirm intents to completion."""
    from .engine import describe_event
    from .interceptor import Cancelled, ConfirmCommand, Confirmed, OpenEditor, OpenPager, Saved

    while True:
        if response.stdout:
            print(response.stdout.rstrip("\n"))
        if response.stderr:
            print(Fore.RED + response.stderr.rstrip("\n") + Style.RESET_ALL)
        for event in response.events:
            print(Fore.GREEN + describe_event(event) + Style.RESET_ALL)

        intent = response.intent
        if intent is None or session.pending_intent is None:
            return response
        if isinstance(intent, OpenPager):
            pydoc.pager(intent.content)
            response = session.resolve(Cancelled())
        elif isinstance(intent, OpenEditor):
            content = _edit_locally(intent)
            response = session.resolve(Saved(content) if content is not None else Cancelled())
        elif isinstance(intent, ConfirmCommand):
            print(Fore.YELLOW + intent.check.title + Style.RESET_ALL)
            print(intent.check.message)
            try:
                answer = input(f"{intent.check.confirm_label}? [y/N] ")
            except EOFError:
                answer = ""
            confirmed = answer.strip().lower() in ("y", "yes")
            response = session.resolve(Confirmed() if confirmed else Cancelled())
        else:  # pragma: no cover
            raise TypeError(f"unhandled intent {intent!r}")


def run_repl(adventure_path: Path, fresh: bool) -> int:
    """Run the training shell on this terminal."""
    from .engine import TrainingSession
    from .mission import AdventureError, load_adventure
    from .progress_store import ProgressStore

    try:
        adventure = load_adventure(adventure_path)
    except AdventureError as exc:
        print(Fore.RED + f"Error: {exc}" + Style.RESET_ALL)
        return 1

    store = ProgressStore(get_config().progress_dir)
    resumed = not fresh and store.load(adventure.id) is not None
    session = TrainingSession(adventure, store=store, resume=not fresh)

    print_banner()
    print(Style.BRIGHT + adventure.title + Style.RESET_ALL)
    if adventure.description:
        print(adventure.description)
    if resumed:
        print(Fore.CYAN + "Continuing saved progress (use --fresh to start over)." + Style.RESET_ALL)
    print()
    print(session.describe_task())
    print("Meta-commands: :hint [level], :task, :progress, :reset, :quit")
    print()

    try:
        while True:
            try:
                if session.awaiting_password:
                    line = getpass.getpass(session.prompt)
                    response = session.submit(line)
                else:
                    line = input(session.prompt)
                    response = session.handle_meta(line.strip()) or session.submit(line)
            except KeyboardInterrupt:
                print("^C")
                continue
            except EOFError:
                print()
                break
            response = _render(session, response)
            if response.exit_requested:
                break
    finally:
        session.close()
    return 0


# =============================================================================
# Server
# =============================================================================


def cmd_serve(args: argparse.Namespace) -> int:
    """Serve the training shell over SSH."""
    from .metrics import start_metrics_server
    from .mission import AdventureError
    from .server import TrainingServer

    ssh_config, metrics_config = get_ssh_config(), get_metrics_config()
    host = args.host or ssh_config.host
    port = args.port or ssh_config.port
    print_banner()

    if args.metrics_port or metrics_config.enabled:
        start_metrics_server(port=args.metrics_port or metrics_config.port, host=metrics_config.host)

    try:
        server = TrainingServer(host=host, port=port, adventure_path=str(resolve_adventure_path(args.adventure)))
    except AdventureError as exc:
        print(Fore.RED + f"Error: {exc}" + Style.RESET_ALL)
        return 1

    print(f"\nshellquest listening on {host}:{port}")
    print(f"Connect with: ssh student@{host if host != '0.0.0.0' else '127.0.0.1'} -p {port}")
    print("Press Ctrl+C to stop\n")

    try:
        server.run()
    except OSError:
        return 1
    except KeyboardInterrupt:
        logging.info("Received interrupt signal, shutting down...")
        server.shutdown()
    return 0


# =============================================================================
# Adventures and Progress CLI Commands
# =============================================================================


def cmd_adventures_list(args: argparse.Namespace) -> int:
    """List adventure files in the adventures directory."""
    from .mission import AdventureError, load_adventure

    adventures_dir = get_config().adventures_dir
    files = sorted(adventures_dir.glob("*.json")) if adventures_dir.is_dir() else []
    if not files:
        print(f"No adventures found in: {adventures_dir}")
        return 1

    print()
    print(f"{'ID':<24} {'MISSIONS':<10} {'TASKS':<8} TITLE")
    print("-" * 70)
    for path in files:
        try:
            adventure = load_adventure(path)
        except AdventureError as exc:
            print(f"{path.stem:<24} {'-':<10} {'-':<8} (invalid: {exc})")
            continue
        print(f"{adventure.id:<24} {len(adventure.missions):<10} {adventure.total_tasks:<8} {adventure.title}")
    print()
    return 0


def cmd_progress_show(args: argparse.Namespace) -> int:
    """Show saved progress for an adventure."""
    from .progress_store import ProgressStore

    store = ProgressStore(get_config().progress_dir)
    data = store.load_raw(args.adventure_id)
    if data is None:
        print(f"No saved progress for: {args.adventure_id}")
        return 1
    print(json.dumps(data, indent=2))
    return 0


def cmd_progress_reset(args: argparse.Namespace) -> int:
    """Delete saved progress for an adventure."""
    from .progress_store import ProgressStore

    store = ProgressStore(get_config().progress_dir)
    if store.clear(args.adventure_id):
        print(f"Progress reset for: {args.adventure_id}")
    else:
        print(f"No saved progress for: {args.adventure_id}")
    return 0


# =============================================================================
# Main CLI
# =============================================================================


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="shellquest",
        description="shellquest - mission-driven Linux shell trainer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    shellquest                             Start the training shell
    shellquest --fresh                     Start over from the first mission
    shellquest serve --port 2222           Serve the shell over SSH
    shellquest adventures list             List available adventures
    shellquest progress reset shell-basics Forget saved progress

Environment variables:
    SHELLQUEST_USERNAME          Learner user name (default: student)
    SHELLQUEST_SUDO_PASSWORD     Password for the sudo prompt
    SHELLQUEST_SSH_PORT          SSH port for 'serve'
    SHELLQUEST_LOG_LEVEL         Logging level
        """,
    )

    parser.add_argument("--adventure", "-a", default=None, help="Adventure JSON file or id")
    parser.add_argument(
        "--log-level",
        "-l",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: SHELLQUEST_LOG_LEVEL)",
    )
    parser.add_argument("--fresh", action="store_true", help="Ignore saved progress")
    parser.add_argument("--version", "-v", action="version", version=f"shellquest {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Serve the training shell over SSH")
    serve_parser.add_argument("--host", default=None, help="SSH bind address (default: SHELLQUEST_SSH_HOST)")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="SSH port (default: 2222)")
    serve_parser.add_argument(
        "--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port"
    )
    serve_parser.set_defaults(func=cmd_serve)

    # adventures
    adventures_parser = subparsers.add_parser("adventures", help="Inspect adventures")
    adventures_subparsers = adventures_parser.add_subparsers(dest="adventures_command")
    list_parser = adventures_subparsers.add_parser("list", help="List available adventures")
    list_parser.set_defaults(func=cmd_adventures_list)

    # progress
    progress_parser = subparsers.add_parser("progress", help="Manage saved progress")
    progress_subparsers = progress_parser.add_subparsers(dest="progress_command")
    show_parser = progress_subparsers.add_parser("show", help="Show saved progress")
    show_parser.add_argument("adventure_id", help="Adventure id")
    show_parser.set_defaults(func=cmd_progress_show)
    reset_parser = progress_subparsers.add_parser("reset", help="Delete saved progress")
    reset_parser.add_argument("adventure_id", help="Adventure id")
    reset_parser.set_defaults(func=cmd_progress_reset)

    args = parser.parse_args(argv)
    colorama_init(autoreset=True)

    if args.command == "serve":
        setup_logging(args.log_level or get_logging_config().level)
        return args.func(args)
    setup_logging(args.log_level or "WARNING")

    if args.command == "adventures" and args.adventures_command is None:
        adventures_parser.print_help()
        return 0
    if args.command == "progress" and args.progress_command is None:
        progress_parser.print_help()
        return 0
    if args.command is not None:
        return args.func(args)

    return run_repl(resolve_adventure_path(args.adventure), args.fresh)


if __name__ == "__main__":
    sys.exit(main())
