"""Shell redirection: ``>``, ``>>``, ``<`` and ``<<MARKER`` heredocs.

parse_redirection() splits a raw line into the bare command and at most one
redirection, scanning outside quotes with the priority heredoc, append,
overwrite, input. The apply/read helpers then perform the file side of the
redirection against the VirtualFS.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from . import paths
from .command_handler import (
    EXIT_FAILURE,
    ROOT_USER,
    CommandResult,
    ExecutionContext,
    nearest_existing,
    tokenize,
)
from .vfs import VFSError, VirtualFS

LOGGER = logging.getLogger(__name__)

_HEREDOC_MARKER = re.compile(r"""^<<\s*['"]?(\w+)['"]?""")


class RedirectType(Enum):
    NONE = "none"
    OUTPUT = ">"
    APPEND = ">>"
    INPUT = "<"
    HEREDOC = "<<"


@dataclass
class Redirection:
    command: str
    type: RedirectType = RedirectType.NONE
    target: Optional[str] = None
    marker: Optional[str] = None
    append: bool = False
    error: Optional[str] = None

    @property
    def writes_file(self) -> bool:
        return self.type in (RedirectType.OUTPUT, RedirectType.APPEND) or (
            self.type is RedirectType.HEREDOC and self.target is not None
        )


def _scan_operators(line: str) -> List[Tuple[int, str]]:
    """Return (index, operator) for every redirection operator outside quotes."""
    found: List[Tuple[int, str]] = []
    quote: Optional[str] = None
    index = 0
    while index < len(line):
        char = line[index]
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "\\":
            index += 1
        elif line.startswith("<<", index) or line.startswith(">>", index):
            found.append((index, line[index:index + 2]))
            index += 2
            continue
        elif char in "<>":
            found.append((index, char))
        index += 1
    return found


def _split_target(rest: str) -> Tuple[Optional[str], str]:
    """Pull the first word off rest: (target, remainder)."""
    stripped = rest.lstrip()
    if not stripped:
        return None, ""
    match = re.match(r"""("[^"]*"|'[^']*'|\S+)""", stripped)
    word = match.group(1) if match else stripped
    tokens = tokenize(word)
    return (tokens[0] if tokens else None), stripped[len(word):]


def _syntax_error(line: str) -> Redirection:
    return Redirection(command=line, error="bash: syntax error near unexpected token `newline'")


def parse_redirection(line: str) -> Redirection:
    line = line.strip()
    operators = _scan_operators(line)
    if not operators:
        return Redirection(command=line)

    heredocs = [item for item in operators if item[1] == "<<"]
    if heredocs:
        position = heredocs[0][0]
        match = _HEREDOC_MARKER.match(line[position:])
        if not match:
            return _syntax_error(line)
        # the output target may sit before the heredoc or after its marker
        rest = line[:position] + " " + line[position + match.end():]
        target: Optional[str] = None
        append = False
        outputs = [item for item in _scan_operators(rest) if item[1] in (">", ">>")]
        if outputs:
            out_position, operator = outputs[-1]
            target, remainder = _split_target(rest[out_position + len(operator):])
            if target is None:
                return _syntax_error(line)
            append = operator == ">>"
            rest = rest[:out_position] + " " + remainder
        command = " ".join(rest.split()) or "cat"
        return Redirection(
            command=command,
            type=RedirectType.HEREDOC,
            target=target,
            marker=match.group(1),
            append=append,
        )

    for operator, kind in ((">>", RedirectType.APPEND), (">", RedirectType.OUTPUT), ("<", RedirectType.INPUT)):
        candidates = [item for item in operators if item[1] == operator]
        if not candidates:
            continue
        position = candidates[-1][0] if kind is not RedirectType.INPUT else candidates[0][0]
        target, remainder = _split_target(line[position + len(operator):])
        if target is None:
            return _syntax_error(line)
        command = (line[:position] + " " + remainder).strip()
        return Redirection(command=command, type=kind, target=target, append=kind is RedirectType.APPEND)

    return Redirection(command=line)


def heredoc_body(lines: List[str]) -> str:
    """Join collected heredoc lines, each terminated by a newline."""
    return "".join(line + "\n" for line in lines)


def write_redirect(
    redirection: Redirection,
    output: str,
    fs: VirtualFS,
    ctx: ExecutionContext,
) -> Optional[CommandResult]:
    """Write or append output to the redirection target.

    Missing parent directories are created. Returns an error result, or
    None when the write succeeded.
    """
    target = redirection.target or ""
    full = ctx.resolve(target)
    node = fs.stat(full)
    if node is not None and node.is_dir:
        return CommandResult(stderr=f"bash: {target}: Is a directory", exit_code=EXIT_FAILURE)
    owner_node = node if node is not None else nearest_existing(paths.dirname(full), fs)
    if owner_node is not None and owner_node.owner == ROOT_USER and not ctx.is_sudo:
        return CommandResult(stderr=f"bash: {target}: Permission denied", exit_code=EXIT_FAILURE)
    try:
        parent = paths.dirname(full)
        if not fs.exists(parent):
            fs.mkdir_tree(parent, owner=ctx.effective_user)
        data = output
        if redirection.append and node is not None:
            existing = fs.read_text(full)
            if existing and not existing.endswith("\n"):
                existing += "\n"
            data = existing + output
        fs.write_file(full, data, owner=ctx.effective_user)
    except VFSError as exc:
        return CommandResult(stderr=f"bash: {target}: {exc.strerror}", exit_code=EXIT_FAILURE)
    LOGGER.debug("Redirected %d bytes to %s (append=%s)", len(data), full, redirection.append)
    return None


def apply_output_redirection(
    redirection: Redirection,
    result: CommandResult,
    fs: VirtualFS,
    ctx: ExecutionContext,
    confirmation: Optional[str] = None,
) -> CommandResult:
    """Send a command's stdout into the redirection target.

    stderr is left on the terminal; a successful command gets a short
    confirmation line in place of its stdout.
    """
    if not redirection.writes_file:
        return result
    error = write_redirect(redirection, result.stdout, fs, ctx)
    if error is not None:
        stderr = "\n".join(part for part in (result.stderr, error.stderr) if part)
        return CommandResult(stderr=stderr, exit_code=error.exit_code, new_path=result.new_path)
    stdout = ""
    if result.ok:
        if confirmation is None:
            suffix = " (append)" if redirection.append else ""
            confirmation = f"Output redirected to {redirection.target}{suffix}"
        stdout = confirmation
    return CommandResult(
        stdout=stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        new_path=result.new_path,
    )


def read_input_redirection(
    redirection: Redirection,
    fs: VirtualFS,
    ctx: ExecutionContext,
) -> Tuple[Optional[str], Optional[CommandResult]]:
    """Load the '<' source file: (text, None) or (None, error result)."""
    target = redirection.target or ""
    full = ctx.resolve(target)
    node = fs.stat(full)
    if node is None:
        return None, CommandResult(stderr=f"bash: {target}: No such file or directory", exit_code=EXIT_FAILURE)
    if node.is_dir:
        return None, CommandResult(stderr=f"bash: {target}: Is a directory", exit_code=EXIT_FAILURE)
    if node.owner == ROOT_USER and not ctx.is_sudo:
        return None, CommandResult(stderr=f"bash: {target}: Permission denied", exit_code=EXIT_FAILURE)
    return fs.read_text(full), None
