"""Session-level commands and interaction modes.

Some commands are not plain filesystem operations: they change who or where
the learner is (ssh, exit), touch session state (env, export, history) or
need a full-screen collaborator (less, nano). The SessionInterceptor claims
those before the dispatcher sees them.

Full-screen work is expressed as an Intent (OpenPager, OpenEditor,
ConfirmCommand). The engine parks the session in ResolutionMode until the
front-end answers with a Resolution (Saved, Cancelled, Confirmed).

SessionState holds the interaction mode (exactly one of NormalMode,
HeredocMode, PasswordMode, ResolutionMode), the optional remote session and
the command history.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from . import paths
from .command_handler import (
    EXIT_FAILURE,
    ROOT_USER,
    SESSION_COMMAND_NAMES,
    CommandResult,
    ExecutionContext,
    nearest_existing,
)
from .destructive import DestructiveCheck
from .environment import ShellEnvironment
from .redirection import Redirection
from .vfs import VFSError, VirtualFS

LOGGER = logging.getLogger(__name__)

REMOTES_ROOT = "/remotes"
EDITORS = frozenset({"nano", "vi", "vim"})
PAGERS = frozenset({"less", "more"})

_REMOTE_TARGET = re.compile(r"^(?:([^@/:]+)@)?([^:/]+):(.*)$")


# ---------- Intents and resolutions ----------


@dataclass(frozen=True)
class OpenPager:
    path: str
    content: str
    command: str = "less"

    kind = "pager"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "path": self.path, "command": self.command}


@dataclass(frozen=True)
class OpenEditor:
    path: str
    content: str
    editor: str = "nano"
    as_root: bool = False
    is_new: bool = False

    kind = "editor"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "path": self.path,
            "editor": self.editor,
            "as_root": self.as_root,
            "is_new": self.is_new,
        }


@dataclass(frozen=True)
class ConfirmCommand:
    command: str
    check: DestructiveCheck

    kind = "confirm"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "command": self.command, **self.check.to_dict()}


Intent = Union[OpenPager, OpenEditor, ConfirmCommand]


@dataclass(frozen=True)
class Saved:
    content: str


@dataclass(frozen=True)
class Cancelled:
    pass


@dataclass(frozen=True)
class Confirmed:
    pass


Resolution = Union[Saved, Cancelled, Confirmed]


# ---------- Session state ----------


class ModeKind(Enum):
    NORMAL = "normal"
    HEREDOC = "heredoc"
    PASSWORD = "password"
    RESOLUTION = "resolution"


@dataclass
class NormalMode:
    kind = ModeKind.NORMAL


@dataclass
class HeredocMode:
    marker: str
    argv: List[str]
    redirection: Redirection
    command: str
    lines: List[str] = field(default_factory=list)

    kind = ModeKind.HEREDOC


@dataclass
class PasswordMode:
    argv: List[str]
    redirection: Redirection
    command: str
    stdin: Optional[str] = None
    confirmation: Optional[str] = None

    kind = ModeKind.PASSWORD


@dataclass
class ResolutionMode:
    intent: Intent
    context: ExecutionContext
    command: str
    argv: List[str] = field(default_factory=list)
    redirection: Optional[Redirection] = None

    kind = ModeKind.RESOLUTION


Mode = Union[NormalMode, HeredocMode, PasswordMode, ResolutionMode]


@dataclass
class RemoteSession:
    host: str
    user: str
    cwd: str
    started_at: float

    @property
    def base_path(self) -> str:
        return remote_base(self.user)

    def context(self) -> ExecutionContext:
        return ExecutionContext(current_path=self.cwd, username=self.user)


@dataclass
class SessionState:
    environment: ShellEnvironment
    mode: Mode = field(default_factory=NormalMode)
    remote: Optional[RemoteSession] = None
    history: List[str] = field(default_factory=list)

    @property
    def mode_kind(self) -> ModeKind:
        return self.mode.kind

    def record_history(self, line: str, limit: int = 1000) -> None:
        self.history.append(line)
        if limit > 0 and len(self.history) > limit:
            del self.history[: len(self.history) - limit]


def remote_base(user: str) -> str:
    return f"{REMOTES_ROOT}/{user}/filesystem"


@dataclass
class InterceptResult:
    result: CommandResult
    intent: Optional[Intent] = None
    exit_requested: bool = False


def should_intercept(argv: List[str]) -> bool:
    return bool(argv) and argv[0] in SESSION_COMMAND_NAMES


# ---------- Interceptor ----------


class SessionInterceptor:
    """Runs the session-level commands against the session state.

    fs is always the full filesystem; view is what the learner currently
    sees (the same object locally, a subtree while connected over ssh).
    """

    def __init__(self, remote_hosts: Iterable[str], clock: Callable[[], float] = time.time):
        self.remote_hosts = frozenset(remote_hosts)
        self._clock = clock

    def intercept(
        self,
        argv: List[str],
        ctx: ExecutionContext,
        state: SessionState,
        fs: VirtualFS,
        view: VirtualFS,
    ) -> InterceptResult:
        name, args = argv[0], argv[1:]
        if name == "ssh":
            return InterceptResult(self._ssh(args, ctx, state, fs))
        if name == "scp":
            return InterceptResult(self._scp(args, ctx, state, fs, view))
        if name in PAGERS:
            return self._pager(name, args, ctx, view)
        if name in EDITORS:
            return self._editor(name, args, ctx, view)
        if name == "env":
            return InterceptResult(state.environment.run_env(args))
        if name == "export":
            return InterceptResult(state.environment.run_export(args))
        if name == "unset":
            return InterceptResult(state.environment.run_unset(args))
        if name == "history":
            return InterceptResult(self._history(args, state))
        if name in ("exit", "logout"):
            return self._exit(state)
        raise ValueError(f"not a session command: {name}")

    # -- remote access --

    def _ssh(self, args: List[str], ctx: ExecutionContext, state: SessionState, fs: VirtualFS) -> CommandResult:
        operands: List[str] = []
        skip = False
        for arg in args:
            if skip:
                skip = False
            elif arg in ("-p", "-l", "-i"):
                skip = True
            elif not arg.startswith("-"):
                operands.append(arg)
        if not operands:
            return CommandResult(stderr="usage: ssh [user@]host", exit_code=EXIT_FAILURE)
        if state.remote is not None:
            return CommandResult(
                stderr=f"Already connected to {state.remote.host}. Disconnect first.",
                exit_code=EXIT_FAILURE,
            )
        user, _, host = operands[0].rpartition("@")
        user = user or ctx.username
        if host not in self.remote_hosts:
            return CommandResult(stderr=f"ssh: connect to host {host} port 22: No route to host", exit_code=255)

        home = paths.home_directory(user)
        fs.mkdir_tree(remote_base(user) + home, owner=user)
        state.remote = RemoteSession(host=host, user=user, cwd=home, started_at=self._clock())
        LOGGER.info("Remote session opened: %s@%s", user, host)
        return CommandResult(stdout=f"Connected to {host} as {user}")

    def _exit(self, state: SessionState) -> InterceptResult:
        remote = state.remote
        if remote is None:
            return InterceptResult(CommandResult(stdout="logout"), exit_requested=True)
        duration = int(self._clock() - remote.started_at)
        state.remote = None
        LOGGER.info("Remote session closed: %s@%s after %ds", remote.user, remote.host, duration)
        return InterceptResult(
            CommandResult(stdout=f"logout\nConnection to {remote.host} closed (session duration: {duration}s)")
        )

    def _scp(
        self,
        args: List[str],
        ctx: ExecutionContext,
        state: SessionState,
        fs: VirtualFS,
        view: VirtualFS,
    ) -> CommandResult:
        operands = [arg for arg in args if not arg.startswith("-")]
        if len(operands) != 2:
            return CommandResult(stderr="usage: scp source target", exit_code=EXIT_FAILURE)
        source, target = operands
        source_remote, target_remote = _REMOTE_TARGET.match(source), _REMOTE_TARGET.match(target)
        if bool(source_remote) == bool(target_remote):
            return CommandResult(stderr="scp: only local<->remote transfers supported", exit_code=EXIT_FAILURE)

        remote = source_remote or target_remote
        assert remote is not None
        user = remote.group(1) or ctx.username
        host = remote.group(2)
        if host not in self.remote_hosts:
            return CommandResult(stderr=f"ssh: connect to host {host} port 22: No route to host", exit_code=255)
        remote_path = paths.resolve(paths.home_directory(user), remote.group(3) or "~", user)
        remote_full = remote_base(user) + (remote_path if remote_path != "/" else "")
        fs.mkdir_tree(remote_base(user) + paths.home_directory(user), owner=user)

        if target_remote:
            src_fs, src_path, src_label = view, ctx.resolve(source), source
            dst_fs, dst_path = fs, remote_full
        else:
            src_fs, src_path, src_label = fs, remote_full, remote.group(3)
            dst_fs, dst_path = view, ctx.resolve(target)

        node = src_fs.stat(src_path)
        if node is None:
            return CommandResult(stderr=f"scp: {src_label}: No such file or directory", exit_code=EXIT_FAILURE)
        if node.is_dir:
            return CommandResult(stderr=f"scp: {src_label}: not a regular file", exit_code=EXIT_FAILURE)
        if node.owner == ROOT_USER and not ctx.is_sudo and target_remote:
            return CommandResult(stderr=f"scp: {src_label}: Permission denied", exit_code=EXIT_FAILURE)

        name = paths.basename(src_path)
        if dst_fs.is_dir(dst_path):
            dst_path = paths.join(dst_path, name)
        data = src_fs.read_file(src_path)
        owner = user if target_remote else ctx.effective_user
        try:
            dst_fs.mkdir_tree(paths.dirname(dst_path), owner=owner)
            dst_fs.write_file(dst_path, data, owner=owner)
        except VFSError as exc:
            return CommandResult(stderr=f"scp: {exc.path}: {exc.strerror}", exit_code=EXIT_FAILURE)

        size = len(data)
        LOGGER.info("scp copied %d bytes %s -> %s", size, source, target)
        return CommandResult(stdout=f"{name}    100%  {size}B  {size / 1024:.1f}KB/s  00:00")

    # -- full-screen collaborators --

    def _pager(self, name: str, args: List[str], ctx: ExecutionContext, view: VirtualFS) -> InterceptResult:
        operands = [arg for arg in args if not arg.startswith("-")]
        if not operands:
            return InterceptResult(CommandResult(stderr=f"usage: {name} <filename>", exit_code=EXIT_FAILURE))
        target = operands[0]
        full = ctx.resolve(target)
        node = view.stat(full)
        if node is None:
            return InterceptResult(
                CommandResult(stderr=f"{name}: {target}: No such file or directory", exit_code=EXIT_FAILURE)
            )
        if node.is_dir:
            return InterceptResult(CommandResult(stderr=f"{name}: {target}: Is a directory", exit_code=EXIT_FAILURE))
        if node.owner == ROOT_USER and not ctx.is_sudo:
            return InterceptResult(
                CommandResult(stderr=f"{name}: {target}: Permission denied", exit_code=EXIT_FAILURE)
            )
        return InterceptResult(CommandResult(), intent=OpenPager(path=full, content=view.read_text(full), command=name))

    def _editor(self, name: str, args: List[str], ctx: ExecutionContext, view: VirtualFS) -> InterceptResult:
        operands = [arg for arg in args if not arg.startswith("-")]
        if not operands:
            return InterceptResult(CommandResult(stderr=f"usage: {name} <filename>", exit_code=EXIT_FAILURE))
        target = operands[0]
        full = ctx.resolve(target)
        node = view.stat(full)
        if node is not None and node.is_dir:
            return InterceptResult(CommandResult(stderr=f"{name}: {target}: Is a directory", exit_code=EXIT_FAILURE))
        owner_node = node if node is not None else nearest_existing(paths.dirname(full), view)
        if owner_node is not None and owner_node.owner == ROOT_USER and not ctx.is_sudo:
            return InterceptResult(
                CommandResult(stderr=f"{name}: {target}: Permission denied", exit_code=EXIT_FAILURE)
            )
        content = view.read_text(full) if node is not None else ""
        intent = OpenEditor(path=full, content=content, editor=name, as_root=ctx.is_sudo, is_new=node is None)
        return InterceptResult(CommandResult(), intent=intent)

    def resolve_intent(
        self,
        intent: Intent,
        resolution: Resolution,
        view: VirtualFS,
        ctx: ExecutionContext,
    ) -> CommandResult:
        """Apply the front-end's answer to a pager or editor intent."""
        if isinstance(intent, OpenEditor) and isinstance(resolution, Saved):
            owner = ROOT_USER if intent.as_root else ctx.username
            try:
                view.write_file(intent.path, resolution.content, owner=owner)
            except VFSError as exc:
                return CommandResult(
                    stderr=f"[ Error writing {intent.path}: {exc.strerror} ]",
                    exit_code=EXIT_FAILURE,
                )
            line_count = len(resolution.content.splitlines())
            LOGGER.debug("Editor saved %s (%d lines)", intent.path, line_count)
            return CommandResult(stdout=f"[ Wrote {line_count} lines ]")
        if isinstance(resolution, Saved):
            LOGGER.warning("Ignoring saved content for %s intent", intent.kind)
        return CommandResult()

    # -- history --

    def _history(self, args: List[str], state: SessionState) -> CommandResult:
        if args == ["-c"]:
            state.history.clear()
            return CommandResult()
        entries = list(enumerate(state.history, 1))
        if args:
            if not args[0].isdigit():
                return CommandResult(stderr=f"history: {args[0]}: numeric argument required", exit_code=EXIT_FAILURE)
            entries = entries[-int(args[0]):] if int(args[0]) else []
        return CommandResult(stdout="\n".join(f"{number:>5}  {line}" for number, line in entries))
