"""TrainingSession: one learner's shell.

submit() takes one raw input line and runs it through the whole pipeline:

    mode routing (password / heredoc / blocked on an intent)
    -> history and $VAR expansion
    -> redirection parsing
    -> session interceptor (ssh, less, nano, env, ...)
    -> destructive-command guard
    -> command dispatcher, against the local filesystem or the ssh view
    -> sudo password gate
    -> output redirection
    -> validation and progress

and returns a Response for the front-end to render. Pager, editor and
confirmation work comes back as an Intent; the front-end answers through
resolve().
"""

from __future__ import annotations

import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from . import paths
from .command_handler import (
    EXIT_FAILURE,
    CommandResult,
    ExecutionContext,
    execute_argv,
    tokenize,
)
from .config import get_shell_config
from .destructive import detect_destructive_command
from .environment import ShellEnvironment
from .interceptor import (
    ConfirmCommand,
    Confirmed,
    HeredocMode,
    Intent,
    NormalMode,
    PasswordMode,
    Resolution,
    ResolutionMode,
    SessionInterceptor,
    SessionState,
    should_intercept,
)
from .metrics import get_metrics_collector
from .mission import (
    Adventure,
    AdventureCompleted,
    MissionCompleted,
    MissionTracker,
    ProgressEvent,
    ProgressState,
    TaskCompleted,
)
from .progress_store import ProgressStore
from .redirection import (
    Redirection,
    RedirectType,
    apply_output_redirection,
    heredoc_body,
    parse_redirection,
    read_input_redirection,
)
from .validation import ValidationContext
from .vfs import VirtualFS

LOGGER = logging.getLogger(__name__)

HEREDOC_PROMPT = "> "
SUDO_FAILURE = "sudo: 3 incorrect password attempts"


@dataclass
class Response:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    prompt: str = ""
    mask_input: bool = False
    intent: Optional[Intent] = None
    events: List[ProgressEvent] = field(default_factory=list)
    exit_requested: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "prompt": self.prompt,
            "mask_input": self.mask_input,
            "intent": self.intent.to_dict() if self.intent is not None else None,
            "events": [{"kind": event.kind, **event.__dict__} for event in self.events],
            "exit_requested": self.exit_requested,
        }


def describe_event(event: ProgressEvent) -> str:
    """One-line announcement of a progress event for the front-ends."""
    if isinstance(event, TaskCompleted):
        return f"[+] Task complete: {event.description}"
    if isinstance(event, MissionCompleted):
        text = f"[*] Mission complete: {event.title}"
        return f"{text}\n    {event.message}" if event.message else text
    return f"[*] Adventure complete! Final score: {event.score}"


class TrainingSession:
    """Virtual shell plus mission progression for a single learner."""

    def __init__(
        self,
        adventure: Optional[Adventure] = None,
        *,
        username: Optional[str] = None,
        hostname: Optional[str] = None,
        sudo_password: Optional[str] = None,
        remote_hosts: Optional[Iterable[str]] = None,
        confirm_destructive: Optional[bool] = None,
        history_limit: Optional[int] = None,
        store: Optional[ProgressStore] = None,
        resume: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        shell = get_shell_config()
        self.adventure = adventure
        self.username = username or shell.username
        self.hostname = hostname or shell.hostname
        self._sudo_password = shell.sudo_password if sudo_password is None else sudo_password
        self._confirm_destructive = shell.confirm_destructive if confirm_destructive is None else confirm_destructive
        self._history_limit = shell.history_limit if history_limit is None else history_limit
        self._store = store
        self._clock = clock
        self._interceptor = SessionInterceptor(
            shell.remote_hosts if remote_hosts is None else remote_hosts, clock=clock
        )
        self._metrics = get_metrics_collector()

        progress: Optional[ProgressState] = None
        if adventure is not None and store is not None and resume:
            progress = store.load(adventure.id)
            if progress is not None:
                LOGGER.info("Resuming saved progress for %s", adventure.id)
        self.tracker: Optional[MissionTracker] = (
            MissionTracker(adventure, progress) if adventure is not None else None
        )
        self._build_world()
        self.started_at = clock()
        self._closed = False
        self._metrics.record_session_start()

    def close(self) -> None:
        """End the session: flush progress and close out session metrics."""
        if self._closed:
            return
        self._closed = True
        self._save_progress()
        self._metrics.record_session_end(self._clock() - self.started_at)

    # ---------- State ----------

    def _build_world(self) -> None:
        if self.adventure is not None:
            self.fs = self.adventure.build_filesystem(default_owner=self.username)
        else:
            self.fs = VirtualFS(default_owner=self.username)
        home = paths.home_directory(self.username)
        if not self.fs.is_dir(home):
            self.fs.mkdir_tree(home, owner=self.username)
        self.context = ExecutionContext(current_path=home, username=self.username, is_sudo=False)
        extra = self.adventure.environment if self.adventure is not None else {}
        self.state = SessionState(environment=ShellEnvironment(self.username, home, home, extra))

    def reset_exercise(self) -> None:
        """Return to the exact state of a fresh session, discarding saved progress."""
        self._build_world()
        if self.tracker is not None:
            self.tracker.reset()
            if self._store is not None and self.adventure is not None:
                self._store.clear(self.adventure.id)
        self._metrics.record_reset()
        LOGGER.info("Exercise reset for %s", self.username)

    @property
    def awaiting_password(self) -> bool:
        return isinstance(self.state.mode, PasswordMode)

    @property
    def pending_intent(self) -> Optional[Intent]:
        mode = self.state.mode
        return mode.intent if isinstance(mode, ResolutionMode) else None

    @property
    def prompt(self) -> str:
        mode = self.state.mode
        if isinstance(mode, HeredocMode):
            return HEREDOC_PROMPT
        if isinstance(mode, PasswordMode):
            return f"[sudo] password for {self._active_context().username}: "
        remote = self.state.remote
        if remote is not None:
            return f"{remote.user}@{remote.host}:{paths.display_path(remote.cwd, remote.user)}$ "
        return f"{self.username}@{self.hostname}:{paths.display_path(self.context.current_path, self.username)}$ "

    def _active_context(self) -> ExecutionContext:
        if self.state.remote is not None:
            return self.state.remote.context()
        return ExecutionContext(current_path=self.context.current_path, username=self.username)

    def _view(self) -> VirtualFS:
        if self.state.remote is not None:
            return self.fs.subtree(self.state.remote.base_path)
        return self.fs

    def _change_directory(self, new_path: str) -> None:
        if self.state.remote is not None:
            self.state.remote.cwd = new_path
            return
        self.context.current_path = new_path
        self.state.environment.update_pwd(new_path)

    def _critical_paths(self) -> List[str]:
        return self.adventure.critical_paths if self.adventure is not None else []

    # ---------- Input ----------

    def submit(self, line: str) -> Response:
        """Feed one line of learner input to the session."""
        line = line.rstrip("\r\n")
        mode = self.state.mode
        if isinstance(mode, PasswordMode):
            return self._submit_password(line, mode)
        if isinstance(mode, HeredocMode):
            return self._submit_heredoc_line(line, mode)
        if isinstance(mode, ResolutionMode):
            return Response(
                stderr=f"shellquest: waiting for the {mode.intent.kind} to close",
                exit_code=EXIT_FAILURE,
                prompt=self.prompt,
                intent=mode.intent,
            )
        return self._submit_command(line)

    def _submit_command(self, line: str) -> Response:
        stripped = line.strip()
        if not stripped:
            return Response(prompt=self.prompt)
        self.state.record_history(stripped, self._history_limit)

        expanded = self.state.environment.expand(stripped)
        redirection = parse_redirection(expanded)
        if redirection.error:
            return self._finish(stripped, CommandResult(stderr=redirection.error, exit_code=2))
        argv = tokenize(redirection.command)
        if not argv:
            return self._finish(stripped, CommandResult())

        ctx = self._active_context()
        if self._confirm_destructive:
            check = detect_destructive_command(
                expanded,
                current_path=ctx.current_path,
                username=ctx.username,
                critical_paths=self._critical_paths(),
                fs=self._view(),
            )
            if check is not None:
                intent = ConfirmCommand(command=stripped, check=check)
                self.state.mode = ResolutionMode(
                    intent=intent, context=ctx, command=stripped, argv=argv, redirection=redirection
                )
                self._metrics.record_destructive_prompt(check.level.value, "prompted")
                return Response(prompt=self.prompt, intent=intent)

        return self._run(argv, redirection, stripped, ctx)

    def _run(self, argv: List[str], redirection: Redirection, command: str, ctx: ExecutionContext) -> Response:
        if redirection.type is RedirectType.HEREDOC:
            self.state.mode = HeredocMode(
                marker=redirection.marker or "EOF",
                argv=argv,
                redirection=redirection,
                command=command,
            )
            return Response(prompt=self.prompt)

        view = self._view()
        stdin: Optional[str] = None
        if redirection.type is RedirectType.INPUT:
            stdin, error = read_input_redirection(redirection, view, ctx)
            if error is not None:
                return self._finish(command, error)

        if argv == ["cd", "-"] and self.state.remote is None:
            previous = self.state.environment.get("OLDPWD")
            if not previous:
                return self._finish(command, CommandResult(stderr="cd: OLDPWD not set", exit_code=EXIT_FAILURE))
            argv = ["cd", previous]
            result, intent, exit_requested = self._dispatch(argv, ctx, view, stdin)
            if result.ok:
                result.stdout = previous
        else:
            result, intent, exit_requested = self._dispatch(argv, ctx, view, stdin)

        if result.requires_password:
            self.state.mode = PasswordMode(argv=result.pending_argv, redirection=redirection, command=command)
            return Response(prompt=self.prompt, mask_input=True)

        if intent is not None:
            self.state.mode = ResolutionMode(intent=intent, context=ctx, command=command)

        result = apply_output_redirection(redirection, result, view, ctx)
        return self._finish(command, result, intent=intent, exit_requested=exit_requested)

    def _dispatch(
        self,
        argv: List[str],
        ctx: ExecutionContext,
        view: VirtualFS,
        stdin: Optional[str],
    ) -> Tuple[CommandResult, Optional[Intent], bool]:
        if ctx.is_sudo:
            while argv and argv[0] == "sudo":
                argv = argv[1:]
        if should_intercept(argv):
            outcome = self._interceptor.intercept(argv, ctx, self.state, self.fs, view)
            return outcome.result, outcome.intent, outcome.exit_requested
        result = execute_argv(argv, ctx, view, stdin)
        if result.new_path is not None:
            self._change_directory(result.new_path)
        return result, None, False

    def _submit_password(self, line: str, mode: PasswordMode) -> Response:
        self.state.mode = NormalMode()
        ctx = self._active_context()
        if not hmac.compare_digest(line.encode("utf-8"), self._sudo_password.encode("utf-8")):
            LOGGER.warning("sudo authentication failed for %s", ctx.username)
            self._metrics.record_sudo_attempt(False)
            return self._finish(mode.command, CommandResult(stderr=SUDO_FAILURE, exit_code=EXIT_FAILURE))

        self._metrics.record_sudo_attempt(True)
        LOGGER.info("sudo authenticated for %s: %s", ctx.username, " ".join(mode.argv))
        elevated = ctx.elevated()
        view = self._view()
        stdin = mode.stdin
        if mode.redirection.type is RedirectType.INPUT:
            stdin, error = read_input_redirection(mode.redirection, view, elevated)
            if error is not None:
                return self._finish(mode.command, error)

        result, intent, exit_requested = self._dispatch(mode.argv, elevated, view, stdin)
        if intent is not None:
            self.state.mode = ResolutionMode(intent=intent, context=elevated, command=mode.command)
        # the shell opens the redirect target, not sudo
        result = apply_output_redirection(mode.redirection, result, view, ctx, confirmation=mode.confirmation)
        return self._finish(mode.command, result, intent=intent, exit_requested=exit_requested)

    def _submit_heredoc_line(self, line: str, mode: HeredocMode) -> Response:
        if line != mode.marker:
            mode.lines.append(line)
            return Response(prompt=self.prompt)

        self.state.mode = NormalMode()
        body = heredoc_body(mode.lines)
        confirmation = None
        if mode.redirection.target is not None:
            confirmation = f"Heredoc input captured: {len(mode.lines)} lines written to {mode.redirection.target}"
        ctx = self._active_context()
        view = self._view()
        result, intent, exit_requested = self._dispatch(mode.argv, ctx, view, body)
        if result.requires_password:
            self.state.mode = PasswordMode(
                argv=result.pending_argv,
                redirection=mode.redirection,
                command=mode.command,
                stdin=body,
                confirmation=confirmation,
            )
            return Response(prompt=self.prompt, mask_input=True)
        if intent is not None:
            self.state.mode = ResolutionMode(intent=intent, context=ctx, command=mode.command)
        result = apply_output_redirection(mode.redirection, result, view, ctx, confirmation=confirmation)
        return self._finish(mode.command, result, intent=intent, exit_requested=exit_requested)

    # ---------- Intents ----------

    def resolve(self, resolution: Resolution) -> Response:
        """Answer the pending Intent (pager closed, editor saved, command confirmed)."""
        mode = self.state.mode
        if not isinstance(mode, ResolutionMode):
            LOGGER.warning("resolve() called with nothing pending: %r", resolution)
            return Response(stderr="shellquest: nothing to resolve", exit_code=EXIT_FAILURE, prompt=self.prompt)
        self.state.mode = NormalMode()
        intent = mode.intent

        if isinstance(intent, ConfirmCommand):
            level = intent.check.level.value
            if isinstance(resolution, Confirmed) and mode.redirection is not None:
                self._metrics.record_destructive_prompt(level, "confirmed")
                LOGGER.info("Destructive command confirmed: %s", intent.command)
                return self._run(mode.argv, mode.redirection, intent.command, mode.context)
            self._metrics.record_destructive_prompt(level, "cancelled")
            LOGGER.info("Destructive command cancelled: %s", intent.command)
            return Response(stdout="Command cancelled.", prompt=self.prompt)

        result = self._interceptor.resolve_intent(intent, resolution, self._view(), mode.context)
        return self._finish(mode.command, result)

    # ---------- Progress ----------

    def request_hint(self, level: int = 1) -> Optional[str]:
        if self.tracker is None:
            return None
        text = self.tracker.request_hint(level)
        if text is not None:
            self._metrics.record_hint(level)
            self._save_progress()
        return text

    def describe_task(self) -> str:
        if self.tracker is None:
            return "No adventure loaded."
        mission, task = self.tracker.current_mission, self.tracker.current_task
        if mission is None or task is None:
            return "Adventure complete. Type :reset to play again."
        lines = [f"Mission: {mission.title}"]
        if mission.story:
            lines.append(mission.story)
        lines.append(f"Task: {task.description}")
        return "\n".join(lines)

    def describe_progress(self) -> str:
        if self.tracker is None or self.adventure is None:
            return "No adventure loaded."
        progress = self.tracker.progress
        return (
            f"{self.adventure.title}: {self.tracker.completion_percentage()}% complete\n"
            f"Missions: {len(progress.completed_missions)}/{len(self.adventure.missions)}  "
            f"Tasks: {len(progress.completed_tasks)}/{self.adventure.total_tasks}  "
            f"Score: {self.tracker.score()}"
        )

    def handle_meta(self, line: str) -> Optional[Response]:
        """Run a ':' meta-command (:hint, :task, :progress, :reset, :quit); None if line is not one."""
        if not line.startswith(":") or not isinstance(self.state.mode, NormalMode):
            return None
        parts = line[1:].split()
        name, args = (parts[0].lower(), parts[1:]) if parts else ("", [])
        if name == "hint":
            if args and not args[0].isdigit():
                return Response(stderr=":hint takes a level from 1 to 3", exit_code=EXIT_FAILURE, prompt=self.prompt)
            text = self.request_hint(int(args[0]) if args else 1)
            return Response(stdout=text or "No hint available.", prompt=self.prompt)
        if name == "task":
            return Response(stdout=self.describe_task(), prompt=self.prompt)
        if name == "progress":
            return Response(stdout=self.describe_progress(), prompt=self.prompt)
        if name == "reset":
            self.reset_exercise()
            return Response(stdout="Exercise reset.", prompt=self.prompt)
        if name in ("quit", "q"):
            return Response(prompt=self.prompt, exit_requested=True)
        return Response(
            stderr=f"unknown meta-command ':{name}' (try :hint, :task, :progress, :reset, :quit)",
            exit_code=EXIT_FAILURE,
            prompt=self.prompt,
        )

    def _finish(
        self,
        command: str,
        result: CommandResult,
        intent: Optional[Intent] = None,
        exit_requested: bool = False,
    ) -> Response:
        self.state.environment.last_status = result.exit_code
        argv = tokenize(command)
        if argv and argv[0] == "sudo" and len(argv) > 1:
            argv = argv[1:]
        self._metrics.record_command(argv[0] if argv else "", result.exit_code)

        events = self._validate(command, result)
        return Response(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            prompt=self.prompt,
            intent=intent,
            events=events,
            exit_requested=exit_requested,
        )

    def _validate(self, command: str, result: CommandResult) -> List[ProgressEvent]:
        if self.tracker is None:
            return []
        ctx = self._active_context()
        vctx = ValidationContext(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            fs=self.fs,
            command=command,
            env=self.state.environment.exported(),
            current_path=ctx.current_path,
            username=ctx.username,
        )
        events = self.tracker.record(vctx)
        for event in events:
            if isinstance(event, TaskCompleted):
                self._metrics.record_task_completed()
            elif isinstance(event, MissionCompleted):
                self._metrics.record_mission_completed()
            elif isinstance(event, AdventureCompleted):
                self._metrics.record_adventure_completed()
        if events:
            self._save_progress()
        return events

    def _save_progress(self) -> None:
        if self._store is not None and self.tracker is not None and self.adventure is not None:
            self._store.save(self.adventure.id, self.tracker.progress)
