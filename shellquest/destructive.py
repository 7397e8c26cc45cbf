"""Destructive-command detection.

Before a command reaches the dispatcher the engine asks this module whether
it could wipe out something the learner will regret losing: protected
system directories, adventure-critical paths, or files that look like
mission evidence. A positive check becomes a confirmation prompt.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import paths
from .command_handler import tokenize
from .redirection import RedirectType, parse_redirection
from .vfs import VirtualFS

LOGGER = logging.getLogger(__name__)

PROTECTED_PATHS = ("/", "/home", "/var", "/etc", "/usr", "/bin", "/lib", "/root")

CRITICAL_PATHS = ("/var/log", "/etc/hosts", "/remotes")

IMPORTANT_PATTERNS = [
    re.compile(r"\.txt$", re.IGNORECASE),
    re.compile(r"\.log$", re.IGNORECASE),
    re.compile(r"\.json$", re.IGNORECASE),
    re.compile(r"evidence", re.IGNORECASE),
    re.compile(r"report", re.IGNORECASE),
    re.compile(r"data", re.IGNORECASE),
    re.compile(r"backup", re.IGNORECASE),
    re.compile(r"mission", re.IGNORECASE),
]

DISK_COMMANDS = frozenset({"dd", "mkfs", "fdisk", "shred"})


class WarningLevel(Enum):
    WARNING = "warning"
    DANGER = "danger"
    CRITICAL = "critical"


_TITLES = {
    WarningLevel.WARNING: "Confirm Action",
    WarningLevel.DANGER: "Dangerous Operation",
    WarningLevel.CRITICAL: "CRITICAL: Destructive Operation",
}

_CONFIRM_LABELS = {
    WarningLevel.WARNING: "Continue",
    WarningLevel.DANGER: "Yes, proceed",
    WarningLevel.CRITICAL: "I understand the risk",
}


@dataclass
class DestructiveCheck:
    level: WarningLevel
    reason: str
    command: str
    affected_paths: List[str] = field(default_factory=list)
    can_recover: bool = False

    @property
    def title(self) -> str:
        return _TITLES[self.level]

    @property
    def confirm_label(self) -> str:
        return _CONFIRM_LABELS[self.level]

    @property
    def message(self) -> str:
        lines = [self.reason]
        if self.affected_paths:
            lines.append("Affected: " + ", ".join(self.affected_paths))
        if not self.can_recover:
            lines.append("This cannot be undone.")
        alternative = safer_alternative(self.command)
        if alternative:
            lines.append(f"Safer alternative: {alternative}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "title": self.title,
            "reason": self.reason,
            "message": self.message,
            "confirm_label": self.confirm_label,
            "affected_paths": list(self.affected_paths),
            "can_recover": self.can_recover,
        }


def _is_important(path: str) -> bool:
    return any(pattern.search(path) for pattern in IMPORTANT_PATTERNS)


def _touches_critical(path: str, critical: Iterable[str]) -> bool:
    """True when path is, contains, or lies inside a critical path."""
    return any(paths.is_within(path, item) or (path != "/" and paths.is_within(item, path)) for item in critical)


def _split_flags(args: List[str]) -> Tuple[str, List[str]]:
    flags = "".join(arg[1:] for arg in args if arg.startswith("-") and arg != "-")
    operands = [arg for arg in args if not arg.startswith("-") or arg == "-"]
    return flags, operands


def detect_destructive_command(
    command: str,
    current_path: str = "/",
    username: str = "student",
    critical_paths: Iterable[str] = (),
    fs: Optional[VirtualFS] = None,
) -> Optional[DestructiveCheck]:
    """Classify command; returns None when it is safe to run unprompted.

    When fs is given, targets that do not exist are ignored so that
    creating new files never prompts.
    """
    redirection = parse_redirection(command)
    argv = tokenize(redirection.command)
    if argv and argv[0] == "sudo":
        argv = argv[1:]
    if not argv:
        return None

    name, args = argv[0], argv[1:]
    critical = tuple(CRITICAL_PATHS) + tuple(critical_paths)
    protected = PROTECTED_PATHS + (paths.home_directory(username),)

    def resolve(target: str) -> str:
        return paths.resolve(current_path, target, username)

    def present(targets: List[str]) -> List[str]:
        if fs is None:
            return targets
        return [target for target in targets if fs.exists(target)]

    check: Optional[DestructiveCheck] = None

    if name in DISK_COMMANDS:
        check = DestructiveCheck(
            level=WarningLevel.CRITICAL,
            reason=f"'{name}' can destroy entire disks or filesystems.",
            command=command,
        )

    elif name == "rm":
        flags, operands = _split_flags(args)
        recursive = "r" in flags or "R" in flags
        targets = present([resolve(op) for op in operands])
        if not targets:
            return None
        if any(target in protected for target in targets):
            check = DestructiveCheck(
                WarningLevel.CRITICAL,
                "Attempting to delete a protected system directory.",
                command,
                targets,
            )
        elif any(_touches_critical(target, critical) for target in targets):
            check = DestructiveCheck(
                WarningLevel.CRITICAL,
                "This would delete mission-critical files.",
                command,
                targets,
            )
        elif recursive and any(_is_important(target) for target in targets):
            check = DestructiveCheck(
                WarningLevel.DANGER,
                "Recursive deletion of important files.",
                command,
                targets,
            )
        elif recursive and (fs is None or any(fs.is_dir(target) for target in targets)):
            check = DestructiveCheck(
                WarningLevel.WARNING,
                "Recursive deletion will remove every file in the listed directories.",
                command,
                targets,
            )
        elif any(_is_important(target) for target in targets):
            check = DestructiveCheck(
                WarningLevel.WARNING,
                "Deleting files that look important.",
                command,
                targets,
            )

    elif name == "rmdir":
        _, operands = _split_flags(args)
        targets = present([resolve(op) for op in operands])
        if any(target in protected for target in targets):
            check = DestructiveCheck(
                WarningLevel.CRITICAL,
                "Attempting to remove a protected system directory.",
                command,
                targets,
            )
        elif any(_touches_critical(target, critical) for target in targets):
            check = DestructiveCheck(
                WarningLevel.DANGER,
                "Removing a mission-critical directory.",
                command,
                targets,
                can_recover=True,
            )

    elif name == "mv":
        _, operands = _split_flags(args)
        if len(operands) >= 2:
            sources = present([resolve(op) for op in operands[:-1]])
            destination = resolve(operands[-1])
            if any(source in protected for source in sources):
                check = DestructiveCheck(
                    WarningLevel.CRITICAL,
                    "Moving a protected system directory.",
                    command,
                    sources,
                )
            elif any(_touches_critical(source, critical) for source in sources):
                check = DestructiveCheck(
                    WarningLevel.WARNING,
                    "Moving mission-critical files out of place.",
                    command,
                    sources,
                    can_recover=True,
                )
            elif fs is not None and fs.is_file(destination) and _is_important(destination):
                check = DestructiveCheck(
                    WarningLevel.WARNING,
                    "This move overwrites an existing file.",
                    command,
                    [destination],
                )

    if check is None and redirection.type is RedirectType.OUTPUT and redirection.target:
        target = resolve(redirection.target)
        exists = fs.is_file(target) if fs is not None else True
        if exists and (_is_important(target) or _touches_critical(target, critical)):
            check = DestructiveCheck(
                WarningLevel.WARNING,
                "Redirecting with '>' replaces the existing contents of this file.",
                command,
                [target],
            )

    if check is not None:
        LOGGER.info("Destructive command flagged (%s): %s", check.level.value, command)
    return check


def safer_alternative(command: str) -> Optional[str]:
    """Suggest a less dangerous way to do the same thing, if there is one."""
    argv = tokenize(parse_redirection(command).command)
    if argv and argv[0] == "sudo":
        argv = argv[1:]
    if not argv:
        return None
    name = argv[0]
    flags, operands = _split_flags(argv[1:])
    if name == "rm" and ("r" in flags or "R" in flags):
        target = operands[0] if operands else "<dir>"
        return f"ls -R {target} first to review what will be removed"
    if name == "rm":
        return "mv the file into a backup directory instead of deleting it"
    if name == "mv":
        return "cp the file first so the original stays in place"
    if ">" in command and ">>" not in command:
        return "use '>>' to append instead of overwriting"
    return None
