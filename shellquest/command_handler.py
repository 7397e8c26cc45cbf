"""Command dispatcher for the shellquest virtual shell.

A command line is tokenized into argv (quotes consumed, whitespace split),
argv[0] is looked up in the Command enum and the matching handler runs
against a VirtualFS, resolving every operand through shellquest.paths.

Handlers never raise for user mistakes: every outcome, including errors, is
a CommandResult carrying coreutils-style stdout/stderr text and an exit
code. Only cd sets new_path; only sudo sets requires_password.

Nodes owned by "root" are off limits without sudo: reading, listing or
modifying them yields "Permission denied" with exit code 1.
"""

from __future__ import annotations

import difflib
import fnmatch
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from . import paths
from .vfs import FSStat, VFSError, VirtualFS

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_NOT_FOUND = 127

CLEAR_SCREEN = "\x1b[2J\x1b[H"
DEFAULT_LINE_COUNT = 10
ROOT_USER = "root"

# Options that consume the following token as their value.
VALUE_OPTIONS: FrozenSet[str] = frozenset({"-n", "-name", "-iname", "-type", "-maxdepth"})

# Commands claimed by the session layer; only used for "did you mean" hints.
SESSION_COMMAND_NAMES: FrozenSet[str] = frozenset(
    {"ssh", "scp", "less", "more", "env", "export", "unset", "nano", "vi", "vim", "history", "exit", "logout"}
)

_NUMERIC_SHORTHAND = re.compile(r"^-(\d+)$")
_OCTAL_MODE = re.compile(r"^[0-7]{3,4}$")
_SYMBOLIC_MODE = re.compile(r"^([ugoa]*)([+\-=])([rwx]*)$")


class Command(Enum):
    CD = "cd"
    PWD = "pwd"
    LS = "ls"
    CAT = "cat"
    MKDIR = "mkdir"
    TOUCH = "touch"
    RM = "rm"
    RMDIR = "rmdir"
    CP = "cp"
    MV = "mv"
    ECHO = "echo"
    GREP = "grep"
    FIND = "find"
    HEAD = "head"
    TAIL = "tail"
    WC = "wc"
    CLEAR = "clear"
    WHOAMI = "whoami"
    CHMOD = "chmod"
    CHOWN = "chown"
    STAT = "stat"
    SUDO = "sudo"

    @classmethod
    def lookup(cls, name: str) -> Optional["Command"]:
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass
class ExecutionContext:
    """Who is running a command, and where."""

    current_path: str = "/home/student"
    username: str = "student"
    is_sudo: bool = False

    @property
    def home(self) -> str:
        return paths.home_directory(self.username)

    @property
    def effective_user(self) -> str:
        return ROOT_USER if self.is_sudo else self.username

    def elevated(self) -> "ExecutionContext":
        return replace(self, is_sudo=True)

    def resolve(self, target: str) -> str:
        return paths.resolve(self.current_path, target, self.username)


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = EXIT_OK
    new_path: Optional[str] = None
    requires_password: bool = False
    pending_argv: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "new_path": self.new_path,
            "requires_password": self.requires_password,
            "pending_argv": list(self.pending_argv),
        }


class UsageError(Exception):
    """Unknown flag or missing option value; reported with exit code 2."""


@dataclass
class ParsedArgs:
    flags: Set[str] = field(default_factory=set)
    options: Dict[str, str] = field(default_factory=dict)
    operands: List[str] = field(default_factory=list)
    count: Optional[int] = None

    def has(self, *letters: str) -> bool:
        return any(letter in self.flags for letter in letters)


Handler = Callable[[List[str], ExecutionContext, VirtualFS, Optional[str]], CommandResult]


# ---------- Tokenizing and argument parsing ----------


def tokenize(line: str) -> List[str]:
    """Split a command line on whitespace, honouring quotes and backslashes.

    Quotes are consumed; a quoted empty string still yields an empty token.
    """
    tokens: List[str] = []
    current: List[str] = []
    in_token = False
    quote: Optional[str] = None
    index = 0
    while index < len(line):
        char = line[index]
        if quote:
            if char == quote:
                quote = None
            elif char == "\\" and quote == '"' and index + 1 < len(line) and line[index + 1] in '"\\$':
                index += 1
                current.append(line[index])
            else:
                current.append(char)
        elif char in ("'", '"'):
            quote = char
            in_token = True
        elif char == "\\" and index + 1 < len(line):
            index += 1
            current.append(line[index])
            in_token = True
        elif char in (" ", "\t"):
            if in_token:
                tokens.append("".join(current))
                current = []
                in_token = False
        else:
            current.append(char)
            in_token = True
        index += 1
    if in_token:
        tokens.append("".join(current))
    return tokens


def parse_args(
    args: Iterable[str],
    allowed: str = "",
    value_options: Iterable[str] = (),
    numeric_count: bool = False,
) -> ParsedArgs:
    """Split args into flag letters, valued options and operands.

    Bundled short flags ("-la") are expanded; "--" ends option parsing;
    "-N" is accepted as a line count when numeric_count is set.
    """
    value_options = frozenset(value_options) & VALUE_OPTIONS
    parsed = ParsedArgs()
    tokens = list(args)
    index = 0
    options_done = False
    while index < len(tokens):
        token = tokens[index]
        index += 1
        if options_done or token == "-" or not token.startswith("-"):
            parsed.operands.append(token)
            continue
        if token == "--":
            options_done = True
            continue
        if token in value_options:
            if index >= len(tokens):
                raise UsageError(f"option requires an argument -- '{token.lstrip('-')}'")
            parsed.options[token] = tokens[index]
            index += 1
            continue
        if len(token) > 2 and token[:2] in value_options:
            parsed.options[token[:2]] = token[2:]
            continue
        if numeric_count:
            match = _NUMERIC_SHORTHAND.match(token)
            if match:
                parsed.count = int(match.group(1))
                continue
        for letter in token[1:]:
            if letter not in allowed:
                raise UsageError(f"invalid option -- '{letter}'")
            parsed.flags.add(letter)
    return parsed


# ---------- Shared helpers ----------


def _split_lines(text: str) -> List[str]:
    if not text:
        return []
    lines = text.split("\n")
    if text.endswith("\n"):
        lines.pop()
    return lines


def _concat(chunks: Iterable[str]) -> str:
    output = ""
    for chunk in chunks:
        if output and not output.endswith("\n"):
            output += "\n"
        output += chunk
    return output


def _denied(node: Optional[FSStat], ctx: ExecutionContext) -> bool:
    return node is not None and node.owner == ROOT_USER and not ctx.is_sudo


def nearest_existing(path: str, fs: VirtualFS) -> Optional[FSStat]:
    current = path
    while True:
        node = fs.stat(current)
        if node is not None:
            return node
        if current == "/":
            return None
        current = paths.dirname(current)


def _parent_denied(path: str, ctx: ExecutionContext, fs: VirtualFS) -> bool:
    return _denied(nearest_existing(paths.dirname(path), fs), ctx)


def _tree_denied(path: str, ctx: ExecutionContext, fs: VirtualFS) -> bool:
    if ctx.is_sudo:
        return False
    return any(node.owner == ROOT_USER for _, node in fs.walk(path))


def _expand_operands(operands: List[str], ctx: ExecutionContext, fs: VirtualFS) -> List[str]:
    """Expand '*' and '?' globs in the last path segment; unmatched globs stay literal."""
    expanded: List[str] = []
    for operand in operands:
        if "*" not in operand and "?" not in operand:
            expanded.append(operand)
            continue
        if "/" in operand:
            directory, pattern = operand.rsplit("/", 1)
            directory = directory or "/"
        else:
            directory, pattern = "", operand
        search = ctx.resolve(directory or ".")
        try:
            names = fs.readdir(search)
        except VFSError:
            names = []
        matches = sorted(
            name
            for name in names
            if fnmatch.fnmatchcase(name, pattern) and (pattern.startswith(".") or not name.startswith("."))
        )
        if not matches:
            expanded.append(operand)
            continue
        expanded.extend(paths.join(directory, name) if directory else name for name in matches)
    return expanded


def _result(lines: List[str], errors: List[str], exit_code: int = EXIT_OK) -> CommandResult:
    if errors and exit_code == EXIT_OK:
        exit_code = EXIT_FAILURE
    return CommandResult(stdout="\n".join(lines), stderr="\n".join(errors), exit_code=exit_code)


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%b %d %H:%M")


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("", "K", "M", "G"):
        if value < 1024 or unit == "G":
            if unit == "":
                return str(int(value))
            return f"{value:.1f}{unit}"
        value /= 1024
    return str(size)


# ---------- Navigation ----------


def _handle_cd(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    if len(args) > 1:
        return CommandResult(stderr="cd: too many arguments", exit_code=EXIT_FAILURE)
    target = args[0] if args else "~"
    new_path = ctx.resolve(target)
    node = fs.stat(new_path)
    if node is None:
        return CommandResult(stderr=f"cd: {target}: No such file or directory", exit_code=EXIT_FAILURE)
    if not node.is_dir:
        return CommandResult(stderr=f"cd: {target}: Not a directory", exit_code=EXIT_FAILURE)
    if _denied(node, ctx):
        return CommandResult(stderr=f"cd: {target}: Permission denied", exit_code=EXIT_FAILURE)
    return CommandResult(new_path=new_path)


def _handle_pwd(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    return CommandResult(stdout=ctx.current_path)


def _long_line(node: FSStat, name: str, human: bool) -> str:
    size = _human_size(node.size) if human else str(node.size)
    return f"{node.mode_string} 1 {node.owner} {node.owner} {size:>8} {_format_time(node.modified_at)} {name}"


def _handle_ls(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args, allowed="lah1")
    targets = _expand_operands(parsed.operands, ctx, fs) or ["."]
    long_format = parsed.has("l")
    human = parsed.has("h")
    separator = "\n" if parsed.has("1") else "  "

    blocks: List[str] = []
    errors: List[str] = []
    exit_code = EXIT_OK
    for target in targets:
        full = ctx.resolve(target)
        node = fs.stat(full)
        if node is None:
            errors.append(f"ls: cannot access '{target}': No such file or directory")
            exit_code = EXIT_USAGE
            continue
        if not node.is_dir:
            if _denied(node, ctx):
                errors.append(f"ls: cannot access '{target}': Permission denied")
                exit_code = exit_code or EXIT_FAILURE
                continue
            blocks.append(_long_line(node, target, human) if long_format else target)
            continue
        if _denied(node, ctx):
            errors.append(f"ls: cannot open directory '{target}': Permission denied")
            exit_code = exit_code or EXIT_FAILURE
            continue

        entries: List[Tuple[str, FSStat]] = []
        if parsed.has("a"):
            parent = fs.stat(paths.dirname(full))
            entries.append((".", node))
            entries.append(("..", parent or node))
        for name in fs.readdir(full):
            if name.startswith(".") and not parsed.has("a"):
                continue
            child = fs.stat(paths.join(full, name))
            if child is not None:
                entries.append((name, child))

        if long_format:
            lines = [f"total {len(entries) * 4}"]
            lines.extend(_long_line(child, name, human) for name, child in entries)
            body = "\n".join(lines)
        else:
            body = separator.join(name for name, _ in entries)
        if len(targets) > 1:
            body = f"{target}:\n{body}"
        blocks.append(body)

    joiner = "\n\n" if len(targets) > 1 else "\n"
    return CommandResult(stdout=joiner.join(blocks), stderr="\n".join(errors), exit_code=exit_code)


# ---------- Reading files ----------


def _read_operand(
    command: str, operand: str, ctx: ExecutionContext, fs: VirtualFS
) -> Tuple[Optional[str], Optional[str]]:
    """Return (text, None) or (None, error message) for a file operand."""
    full = ctx.resolve(operand)
    node = fs.stat(full)
    if node is None:
        return None, f"{command}: {operand}: No such file or directory"
    if node.is_dir:
        return None, f"{command}: {operand}: Is a directory"
    if _denied(node, ctx):
        return None, f"{command}: {operand}: Permission denied"
    return fs.read_text(full), None


def _handle_cat(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args, allowed="n")
    operands = _expand_operands(parsed.operands, ctx, fs)
    chunks: List[str] = []
    errors: List[str] = []
    if not operands:
        if stdin is None:
            return CommandResult(stderr="cat: missing operand", exit_code=EXIT_FAILURE)
        chunks.append(stdin)
    for operand in operands:
        text, error = _read_operand("cat", operand, ctx, fs)
        if error:
            errors.append(error)
        else:
            chunks.append(text or "")
    output = _concat(chunks)
    if parsed.has("n"):
        output = "\n".join(f"{number:>6}\t{line}" for number, line in enumerate(_split_lines(output), 1))
    result = _result([], errors)
    result.stdout = output
    return result


def _line_window(
    command: str, args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]
) -> CommandResult:
    parsed = parse_args(args, value_options=("-n",), numeric_count=True)
    count = DEFAULT_LINE_COUNT
    from_start = False
    if parsed.count is not None:
        count = parsed.count
    elif "-n" in parsed.options:
        raw = parsed.options["-n"]
        if command == "tail" and raw.startswith("+"):
            from_start = True
            raw = raw[1:]
        if not raw.isdigit():
            return CommandResult(
                stderr=f"{command}: invalid number of lines: '{parsed.options['-n']}'",
                exit_code=EXIT_FAILURE,
            )
        count = int(raw)

    def window(text: str) -> str:
        lines = _split_lines(text)
        if command == "head":
            picked = lines[:count]
        elif from_start:
            picked = lines[max(count - 1, 0):]
        else:
            picked = lines[-count:] if count else []
        return "\n".join(picked)

    operands = _expand_operands(parsed.operands, ctx, fs)
    if not operands:
        if stdin is None:
            return CommandResult(stderr=f"{command}: missing operand", exit_code=EXIT_FAILURE)
        return CommandResult(stdout=window(stdin))

    blocks: List[str] = []
    errors: List[str] = []
    for operand in operands:
        full = ctx.resolve(operand)
        node = fs.stat(full)
        if node is None:
            errors.append(f"{command}: cannot open '{operand}' for reading: No such file or directory")
            continue
        if node.is_dir:
            errors.append(f"{command}: error reading '{operand}': Is a directory")
            continue
        if _denied(node, ctx):
            errors.append(f"{command}: cannot open '{operand}' for reading: Permission denied")
            continue
        body = window(fs.read_text(full))
        blocks.append(f"==> {operand} <==\n{body}" if len(operands) > 1 else body)
    return CommandResult(
        stdout="\n\n".join(blocks),
        stderr="\n".join(errors),
        exit_code=EXIT_FAILURE if errors else EXIT_OK,
    )


def _handle_head(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    return _line_window("head", args, ctx, fs, stdin)


def _handle_tail(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    return _line_window("tail", args, ctx, fs, stdin)


def _handle_wc(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args, allowed="lwc")
    selected = [letter for letter in "lwc" if parsed.has(letter)] or ["l", "w", "c"]

    def counts(text: str) -> Dict[str, int]:
        return {"l": len(_split_lines(text)), "w": len(text.split()), "c": len(text.encode("utf-8"))}

    def render(values: Dict[str, int], label: str) -> str:
        columns = " ".join(f"{values[letter]:>7}" for letter in selected)
        return f"{columns} {label}".rstrip()

    operands = _expand_operands(parsed.operands, ctx, fs)
    if not operands:
        if stdin is None:
            return CommandResult(stderr="wc: missing operand", exit_code=EXIT_FAILURE)
        return CommandResult(stdout=render(counts(stdin), ""))

    lines: List[str] = []
    errors: List[str] = []
    totals = {"l": 0, "w": 0, "c": 0}
    for operand in operands:
        text, error = _read_operand("wc", operand, ctx, fs)
        if error:
            errors.append(error)
            continue
        values = counts(text or "")
        for key in totals:
            totals[key] += values[key]
        lines.append(render(values, operand))
    if len(operands) > 1:
        lines.append(render(totals, "total"))
    return _result(lines, errors)


def _handle_grep(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args, allowed="invclrRw")
    if not parsed.operands:
        return CommandResult(stderr="grep: missing pattern or file", exit_code=EXIT_USAGE)
    pattern, files = parsed.operands[0], _expand_operands(parsed.operands[1:], ctx, fs)
    if parsed.has("w"):
        pattern = rf"\b(?:{pattern})\b"
    try:
        regex = re.compile(pattern, re.IGNORECASE if parsed.has("i") else 0)
    except re.error:
        return CommandResult(stderr=f"grep: invalid regular expression: {parsed.operands[0]}", exit_code=EXIT_USAGE)

    recursive = parsed.has("r", "R")
    sources: List[Tuple[str, str]] = []
    errors: List[str] = []
    if not files:
        if recursive:
            files = ["."]
        elif stdin is not None:
            sources.append(("(standard input)", stdin))
        else:
            return CommandResult(stderr="grep: missing pattern or file", exit_code=EXIT_USAGE)

    for operand in files:
        full = ctx.resolve(operand)
        node = fs.stat(full)
        if node is None:
            errors.append(f"grep: {operand}: No such file or directory")
        elif node.is_dir and not recursive:
            errors.append(f"grep: {operand}: Is a directory")
        elif node.is_dir:
            for child_path, child in fs.walk(full):
                if not child.is_file:
                    continue
                label = paths.join(operand.rstrip("/") or "/", child_path[len(full):].lstrip("/"))
                if _denied(child, ctx):
                    errors.append(f"grep: {label}: Permission denied")
                else:
                    sources.append((label, fs.read_text(child_path)))
        elif _denied(node, ctx):
            errors.append(f"grep: {operand}: Permission denied")
        else:
            sources.append((operand, fs.read_text(full)))

    show_names = len(sources) > 1 or recursive
    invert = parsed.has("v")
    output: List[str] = []
    found = False
    for label, text in sources:
        matches = [
            (number, line)
            for number, line in enumerate(_split_lines(text), 1)
            if bool(regex.search(line)) != invert
        ]
        found = found or bool(matches)
        if parsed.has("l"):
            if matches:
                output.append(label)
            continue
        if parsed.has("c"):
            output.append(f"{label}:{len(matches)}" if show_names else str(len(matches)))
            continue
        for number, line in matches:
            prefix = f"{label}:" if show_names else ""
            if parsed.has("n"):
                prefix += f"{number}:"
            output.append(prefix + line)

    if errors:
        exit_code = EXIT_USAGE
    else:
        exit_code = EXIT_OK if found else EXIT_FAILURE
    return CommandResult(stdout="\n".join(output), stderr="\n".join(errors), exit_code=exit_code)


def _handle_find(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    starts: List[str] = []
    index = 0
    while index < len(args) and not args[index].startswith("-"):
        starts.append(args[index])
        index += 1
    starts = starts or ["."]

    predicates: Dict[str, str] = {}
    while index < len(args):
        token = args[index]
        if token not in VALUE_OPTIONS or token == "-n":
            return CommandResult(stderr=f"find: unknown predicate '{token}'", exit_code=EXIT_FAILURE)
        if index + 1 >= len(args):
            return CommandResult(stderr=f"find: missing argument to '{token}'", exit_code=EXIT_FAILURE)
        predicates[token] = args[index + 1]
        index += 2

    kind = predicates.get("-type")
    if kind is not None and kind not in ("f", "d"):
        return CommandResult(stderr=f"find: Unknown argument to -type: {kind}", exit_code=EXIT_FAILURE)
    max_depth: Optional[int] = None
    if "-maxdepth" in predicates:
        if not predicates["-maxdepth"].isdigit():
            return CommandResult(
                stderr=f"find: invalid argument '{predicates['-maxdepth']}' to '-maxdepth'",
                exit_code=EXIT_FAILURE,
            )
        max_depth = int(predicates["-maxdepth"])
    name_pattern = predicates.get("-name")
    iname_pattern = predicates.get("-iname")

    def matches(display: str, node: FSStat) -> bool:
        name = paths.basename(display)
        if name_pattern is not None and not fnmatch.fnmatchcase(name, name_pattern):
            return False
        if iname_pattern is not None and not fnmatch.fnmatchcase(name.lower(), iname_pattern.lower()):
            return False
        if kind == "f" and not node.is_file:
            return False
        if kind == "d" and not node.is_dir:
            return False
        return True

    results: List[str] = []
    errors: List[str] = []

    def visit(full: str, display: str, node: FSStat, depth: int) -> None:
        if matches(display, node):
            results.append(display)
        if not node.is_dir or (max_depth is not None and depth >= max_depth):
            return
        if _denied(node, ctx):
            errors.append(f"find: '{display}': Permission denied")
            return
        for name in fs.readdir(full):
            child_full = paths.join(full, name)
            child = fs.stat(child_full)
            if child is not None:
                visit(child_full, paths.join(display, name), child, depth + 1)

    for start in starts:
        full = ctx.resolve(start)
        node = fs.stat(full)
        if node is None:
            errors.append(f"find: '{start}': No such file or directory")
            continue
        visit(full, start, node, 0)
    return _result(results, errors)


# ---------- Modifying the tree ----------


def _handle_mkdir(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args, allowed="p")
    if not parsed.operands:
        return CommandResult(stderr="mkdir: missing operand", exit_code=EXIT_FAILURE)
    errors: List[str] = []
    for operand in parsed.operands:
        full = ctx.resolve(operand)
        if _parent_denied(full, ctx, fs):
            errors.append(f"mkdir: cannot create directory '{operand}': Permission denied")
            continue
        try:
            if parsed.has("p"):
                fs.mkdir_tree(full, owner=ctx.effective_user)
            else:
                fs.mkdir(full, owner=ctx.effective_user)
        except VFSError as exc:
            errors.append(f"mkdir: cannot create directory '{operand}': {exc.strerror}")
    return _result([], errors)


def _handle_touch(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args)
    if not parsed.operands:
        return CommandResult(stderr="touch: missing file operand", exit_code=EXIT_FAILURE)
    errors: List[str] = []
    for operand in parsed.operands:
        full = ctx.resolve(operand)
        node = fs.stat(full)
        if _denied(node, ctx) or (node is None and _parent_denied(full, ctx, fs)):
            errors.append(f"touch: cannot touch '{operand}': Permission denied")
            continue
        try:
            fs.touch(full, owner=ctx.effective_user)
        except VFSError as exc:
            errors.append(f"touch: cannot touch '{operand}': {exc.strerror}")
    return _result([], errors)


def _handle_rm(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args, allowed="rRf")
    force = parsed.has("f")
    recursive = parsed.has("r", "R")
    operands = _expand_operands(parsed.operands, ctx, fs)
    if not operands:
        if force:
            return CommandResult()
        return CommandResult(stderr="rm: missing operand", exit_code=EXIT_FAILURE)

    errors: List[str] = []
    for operand in operands:
        full = ctx.resolve(operand)
        if full == "/" and recursive:
            errors.append("rm: it is dangerous to operate recursively on '/'")
            continue
        node = fs.stat(full)
        if node is None:
            if not force:
                errors.append(f"rm: cannot remove '{operand}': No such file or directory")
            continue
        if node.is_dir and not recursive:
            errors.append(f"rm: cannot remove '{operand}': Is a directory")
            continue
        if _parent_denied(full, ctx, fs) or _tree_denied(full, ctx, fs):
            errors.append(f"rm: cannot remove '{operand}': Permission denied")
            continue
        try:
            if node.is_dir:
                fs.remove_tree(full)
            else:
                fs.unlink(full)
        except VFSError as exc:
            errors.append(f"rm: cannot remove '{operand}': {exc.strerror}")
    return _result([], errors)


def _handle_rmdir(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args)
    if not parsed.operands:
        return CommandResult(stderr="rmdir: missing operand", exit_code=EXIT_FAILURE)
    errors: List[str] = []
    for operand in parsed.operands:
        full = ctx.resolve(operand)
        if _denied(fs.stat(full), ctx) or _parent_denied(full, ctx, fs):
            errors.append(f"rmdir: failed to remove '{operand}': Permission denied")
            continue
        try:
            fs.rmdir(full)
        except VFSError as exc:
            errors.append(f"rmdir: failed to remove '{operand}': {exc.strerror}")
    return _result([], errors)


def _split_transfer(
    command: str, parsed: ParsedArgs, ctx: ExecutionContext, fs: VirtualFS
) -> Tuple[List[str], str, bool, Optional[str]]:
    """Common operand checks for cp/mv: (sources, destination, dest_is_dir, error)."""
    operands = _expand_operands(parsed.operands, ctx, fs)
    if not operands:
        return [], "", False, f"{command}: missing file operand"
    if len(operands) == 1:
        return [], "", False, f"{command}: missing destination file operand after '{operands[0]}'"
    sources, destination = operands[:-1], operands[-1]
    dest_is_dir = fs.is_dir(ctx.resolve(destination))
    if len(sources) > 1 and not dest_is_dir:
        return [], "", False, f"{command}: target '{destination}' is not a directory"
    return sources, destination, dest_is_dir, None


def _handle_cp(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args, allowed="rRf")
    sources, destination, dest_is_dir, error = _split_transfer("cp", parsed, ctx, fs)
    if error:
        return CommandResult(stderr=error, exit_code=EXIT_FAILURE)
    dest_full = ctx.resolve(destination)
    errors: List[str] = []
    for source in sources:
        source_full = ctx.resolve(source)
        node = fs.stat(source_full)
        if node is None:
            errors.append(f"cp: cannot stat '{source}': No such file or directory")
            continue
        if node.is_dir and not parsed.has("r", "R"):
            errors.append(f"cp: -r not specified; omitting directory '{source}'")
            continue
        if _tree_denied(source_full, ctx, fs):
            errors.append(f"cp: cannot open '{source}' for reading: Permission denied")
            continue
        target = paths.join(dest_full, paths.basename(source_full)) if dest_is_dir else dest_full
        if node.is_dir and paths.is_within(target, source_full):
            errors.append(f"cp: cannot copy a directory, '{source}', into itself, '{destination}'")
            continue
        existing = fs.stat(target)
        if _denied(existing, ctx) or (existing is None and _parent_denied(target, ctx, fs)):
            errors.append(f"cp: cannot create regular file '{destination}': Permission denied")
            continue
        if node.is_dir and existing is not None and not existing.is_dir:
            errors.append(f"cp: cannot overwrite non-directory '{destination}' with directory '{source}'")
            continue
        try:
            if node.is_dir:
                fs.copy_tree(source_full, target, owner=ctx.effective_user)
            else:
                fs.copy_file(source_full, target, owner=ctx.effective_user)
        except VFSError as exc:
            errors.append(f"cp: cannot create regular file '{destination}': {exc.strerror}")
    return _result([], errors)


def _handle_mv(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args, allowed="f")
    sources, destination, dest_is_dir, error = _split_transfer("mv", parsed, ctx, fs)
    if error:
        return CommandResult(stderr=error, exit_code=EXIT_FAILURE)
    dest_full = ctx.resolve(destination)
    errors: List[str] = []
    for source in sources:
        source_full = ctx.resolve(source)
        node = fs.stat(source_full)
        if node is None:
            if not parsed.has("f"):
                errors.append(f"mv: cannot stat '{source}': No such file or directory")
            continue
        target = paths.join(dest_full, paths.basename(source_full)) if dest_is_dir else dest_full
        if node.is_dir and target != source_full and paths.is_within(target, source_full):
            errors.append(f"mv: cannot move '{source}' to a subdirectory of itself, '{destination}'")
            continue
        if (
            _denied(node, ctx)
            or _parent_denied(source_full, ctx, fs)
            or _denied(fs.stat(target), ctx)
            or _parent_denied(target, ctx, fs)
        ):
            errors.append(f"mv: cannot move '{source}' to '{destination}': Permission denied")
            continue
        try:
            fs.rename(source_full, target)
        except VFSError as exc:
            errors.append(f"mv: cannot move '{source}' to '{destination}': {exc.strerror}")
    return _result([], errors)


def _parse_mode(spec: str, current: int) -> Optional[int]:
    if _OCTAL_MODE.match(spec):
        return int(spec, 8) & 0o777
    mode = current
    for clause in spec.split(","):
        match = _SYMBOLIC_MODE.match(clause)
        if not match:
            return None
        who, op, perms = match.groups()
        shifts = [{"u": 6, "g": 3, "o": 0}[w] for w in (who.replace("a", "ugo") or "ugo")]
        bits = 0
        for shift in shifts:
            for perm in perms:
                bits |= {"r": 4, "w": 2, "x": 1}[perm] << shift
        if op == "+":
            mode |= bits
        elif op == "-":
            mode &= ~bits
        else:
            for shift in shifts:
                mode &= ~(0o7 << shift)
            mode |= bits
    return mode & 0o777


def _handle_chmod(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    # Symbolic modes such as "-x" look like flags, so parse by hand.
    recursive = bool(args) and args[0] == "-R"
    operands = args[1:] if recursive else list(args)
    if len(operands) < 2:
        return CommandResult(stderr="chmod: missing operand", exit_code=EXIT_FAILURE)
    spec, targets = operands[0], _expand_operands(operands[1:], ctx, fs)
    if _parse_mode(spec, 0) is None:
        return CommandResult(stderr=f"chmod: invalid mode: '{spec}'", exit_code=EXIT_FAILURE)

    errors: List[str] = []
    for target in targets:
        full = ctx.resolve(target)
        node = fs.stat(full)
        if node is None:
            errors.append(f"chmod: cannot access '{target}': No such file or directory")
            continue
        affected = [path for path, _ in fs.walk(full)] if recursive else [full]
        if any(_denied(fs.stat(path), ctx) for path in affected):
            errors.append(f"chmod: changing permissions of '{target}': Operation not permitted")
            continue
        for path in affected:
            current = fs.stat(path)
            fs.chmod(path, _parse_mode(spec, current.permissions if current else 0) or 0)
    return _result([], errors)


def _handle_chown(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args, allowed="R")
    if len(parsed.operands) < 2:
        return CommandResult(stderr="chown: missing operand", exit_code=EXIT_FAILURE)
    owner = parsed.operands[0].split(":", 1)[0]
    targets = _expand_operands(parsed.operands[1:], ctx, fs)
    if not owner:
        return CommandResult(stderr=f"chown: invalid user: '{parsed.operands[0]}'", exit_code=EXIT_FAILURE)
    errors: List[str] = []
    for target in targets:
        full = ctx.resolve(target)
        if not fs.exists(full):
            errors.append(f"chown: cannot access '{target}': No such file or directory")
            continue
        if not ctx.is_sudo:
            errors.append(f"chown: changing ownership of '{target}': Operation not permitted")
            continue
        affected = [path for path, _ in fs.walk(full)] if parsed.has("R") else [full]
        for path in affected:
            fs.chown(path, owner)
    return _result([], errors)


# ---------- Output and misc ----------


def _handle_echo(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    words = list(args)
    interpret = False
    while words and words[0] in ("-n", "-e", "-E", "-ne", "-en"):
        interpret = interpret or "e" in words[0]
        words.pop(0)
    text = " ".join(words)
    if interpret:
        text = text.replace("\\n", "\n").replace("\\t", "\t").replace("\\\\", "\\")
    return CommandResult(stdout=text)


def _handle_clear(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    return CommandResult(stdout=CLEAR_SCREEN)


def _handle_whoami(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    return CommandResult(stdout=ctx.effective_user)


def _handle_stat(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    parsed = parse_args(args)
    if not parsed.operands:
        return CommandResult(stderr="stat: missing operand", exit_code=EXIT_FAILURE)
    blocks: List[str] = []
    errors: List[str] = []
    for operand in _expand_operands(parsed.operands, ctx, fs):
        node = fs.stat(ctx.resolve(operand))
        if node is None:
            errors.append(f"stat: cannot statx '{operand}': No such file or directory")
            continue
        kind = "directory" if node.is_dir else "regular file"
        modified = datetime.fromtimestamp(node.modified_at).strftime("%Y-%m-%d %H:%M:%S")
        blocks.append(
            f"  File: {operand}\n"
            f"  Size: {node.size}\tType: {kind}\n"
            f"Access: ({node.permissions:04o}/{node.mode_string})  Owner: {node.owner}\n"
            f"Modify: {modified}"
        )
    return _result(blocks, errors)


def _handle_sudo(args: List[str], ctx: ExecutionContext, fs: VirtualFS, stdin: Optional[str]) -> CommandResult:
    if not args:
        return CommandResult(stderr="sudo: a command must be specified", exit_code=EXIT_FAILURE)
    if ctx.is_sudo:
        return execute_argv(args, ctx, fs, stdin)
    return CommandResult(requires_password=True, pending_argv=list(args))


_HANDLERS: Dict[Command, Handler] = {
    Command.CD: _handle_cd,
    Command.PWD: _handle_pwd,
    Command.LS: _handle_ls,
    Command.CAT: _handle_cat,
    Command.MKDIR: _handle_mkdir,
    Command.TOUCH: _handle_touch,
    Command.RM: _handle_rm,
    Command.RMDIR: _handle_rmdir,
    Command.CP: _handle_cp,
    Command.MV: _handle_mv,
    Command.ECHO: _handle_echo,
    Command.GREP: _handle_grep,
    Command.FIND: _handle_find,
    Command.HEAD: _handle_head,
    Command.TAIL: _handle_tail,
    Command.WC: _handle_wc,
    Command.CLEAR: _handle_clear,
    Command.WHOAMI: _handle_whoami,
    Command.CHMOD: _handle_chmod,
    Command.CHOWN: _handle_chown,
    Command.STAT: _handle_stat,
    Command.SUDO: _handle_sudo,
}

_missing = [command.value for command in Command if command not in _HANDLERS]
if _missing:  # pragma: no cover
    raise RuntimeError(f"commands without a handler: {', '.join(_missing)}")


# ---------- Entry points ----------


def known_command_names() -> List[str]:
    return sorted({command.value for command in Command} | SESSION_COMMAND_NAMES)


def command_not_found(name: str) -> CommandResult:
    message = f"bash: {name}: command not found"
    suggestion = difflib.get_close_matches(name, known_command_names(), n=1, cutoff=0.75)
    if suggestion:
        message += f"\nDid you mean '{suggestion[0]}'?"
    return CommandResult(stderr=message, exit_code=EXIT_NOT_FOUND)


def execute_argv(
    argv: List[str],
    ctx: ExecutionContext,
    fs: VirtualFS,
    stdin: Optional[str] = None,
) -> CommandResult:
    """Run an already-tokenized command."""
    if not argv:
        return CommandResult()
    name = argv[0]
    command = Command.lookup(name)
    if command is None:
        LOGGER.debug("Unknown command %r", name)
        return command_not_found(name)

    handler = _HANDLERS[command]
    try:
        result = handler(argv[1:], ctx, fs, stdin)
    except UsageError as exc:
        return CommandResult(stderr=f"{name}: {exc}", exit_code=EXIT_USAGE)
    except VFSError as exc:
        return CommandResult(stderr=f"{name}: {exc.path}: {exc.strerror}", exit_code=EXIT_FAILURE)
    except Exception:
        LOGGER.exception("Handler for %s failed on %r", name, argv)
        return CommandResult(stderr=f"bash: {name}: internal error", exit_code=EXIT_FAILURE)

    LOGGER.debug("%s exited with %d", name, result.exit_code)
    return result


def execute(
    line: str,
    ctx: ExecutionContext,
    fs: VirtualFS,
    stdin: Optional[str] = None,
) -> CommandResult:
    """Tokenize and run a single command line (no redirection handling)."""
    return execute_argv(tokenize(line), ctx, fs, stdin)
