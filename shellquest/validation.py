"""Task validators.

Every validator is a named predicate registered under a Validator enum
member. Three shapes exist:

- output validators:     (output, params) -> bool, over stdout + stderr
- filesystem validators: (fs, params) -> bool, over the VirtualFS
- context validators:    (ValidationContext, params) -> bool

run_validator() looks a name up, runs it and turns any exception into a
logged "not satisfied" so a broken adventure never stalls the shell.
evaluate_task() combines a task's outputPattern, outputCheck and
requireOutput checks.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from . import paths
from .metrics import get_metrics_collector
from .vfs import VirtualFS

LOGGER = logging.getLogger(__name__)


class Validator(Enum):
    # output
    CONTAINS = "contains"
    NOT_EMPTY = "notEmpty"
    IS_EMPTY = "isEmpty"
    HAS_ERROR = "hasError"
    NO_ERROR = "noError"
    GREP_FOUND = "grepFound"
    VALID_PATH = "validPath"
    VALID_FLAG = "validFlag"
    LINE_COUNT = "lineCount"
    WORD_COUNT = "wordCount"
    SUDO_EXECUTED = "sudoExecuted"
    SUDO_PASSWORD_PROMPT = "sudoPasswordPrompt"
    SSH_CONNECTED = "sshConnected"
    SSH_FAILED = "sshFailed"
    SCP_SUCCESS = "scpSuccess"
    SCP_TO_REMOTE = "scpToRemote"
    SCP_FROM_REMOTE = "scpFromRemote"
    ENV_VAR_SET = "envVarSet"
    ENV_VAR_EXPORTED = "envVarExported"
    VALID_ENV_OUTPUT = "validEnvOutput"
    REDIRECTION_SUCCESS = "redirectionSuccess"
    HEREDOC_CAPTURED = "heredocCaptured"
    PING_SUCCESS = "pingSuccess"
    PING_FAILED = "pingFailed"
    HTTP_SUCCESS = "httpSuccess"
    NETSTAT_LISTENING = "netstatListening"
    DIG_RESOLVED = "digResolved"
    NETWORK_INTERFACES = "networkInterfaces"
    MATCHES_PATTERN = "matchesPattern"
    MATCHES_ALL_PATTERNS = "matchesAllPatterns"
    MATCHES_ANY_PATTERN = "matchesAnyPattern"
    CONTAINS_IP = "containsIP"
    CONTAINS_DOMAIN = "containsDomain"
    CONTAINS_TIMESTAMP = "containsTimestamp"
    CONTAINS_FILE_PATH = "containsFilePath"
    COMMAND_SUCCESS = "commandSuccess"
    LISTING_CONTAINS_FILE = "listingContainsFile"
    LESS_USED = "lessUsed"
    # filesystem
    FILE_EXISTS = "fileExists"
    DIR_EXISTS = "dirExists"
    FILE_CONTAINS = "fileContains"
    FILE_SIZE = "fileSize"
    FILE_MODIFIED = "fileModified"
    DIR_HAS_FILES = "dirHasFiles"
    FILE_CREATED = "fileCreated"
    FILE_DELETED = "fileDeleted"
    FILE_NOT_EXISTS = "fileNotExists"
    PATH_NOT_EXISTS = "pathNotExists"
    DIR_IS_EMPTY = "dirIsEmpty"
    REMOTE_FILE_EXISTS = "remoteFileExists"
    FILE_COPIED = "fileCopied"
    FILE_READABLE = "fileReadable"
    # context
    SUDO_AND_FILE_CHECK = "sudoAndFileCheck"
    SCP_WITH_REMOTE_CHECK = "scpWithRemoteCheck"
    ENV_VAR_SET_AND_EXPORTED = "envVarSetAndExported"
    REDIRECTION_WITH_FILE_CHECK = "redirectionWithFileCheck"
    COMMAND_CHAIN_SUCCESS = "commandChainSuccess"
    CRITICAL_FILE_OPERATION = "criticalFileOperation"

    @classmethod
    def lookup(cls, name: Union[str, "Validator"]) -> Optional["Validator"]:
        if isinstance(name, Validator):
            return name
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass
class ValidationContext:
    """Everything a validator may look at after one command."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    fs: Optional[VirtualFS] = None
    command: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    current_path: str = "/"
    username: str = "student"

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


# ---------- Output validators ----------

_ERROR_PATTERNS = [
    re.compile(r"error", re.IGNORECASE),
    re.compile(r"cannot", re.IGNORECASE),
    re.compile(r"failed", re.IGNORECASE),
    re.compile(r"not found", re.IGNORECASE),
    re.compile(r"permission denied", re.IGNORECASE),
    re.compile(r"no such file", re.IGNORECASE),
]
_IP = re.compile(r"\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}")


def _as_list(params: Any) -> List[Any]:
    if params is None:
        return []
    return list(params) if isinstance(params, (list, tuple)) else [params]


def _within_bounds(value: int, params: Optional[Dict[str, Any]]) -> bool:
    params = params or {}
    if params.get("exact") is not None:
        return value == params["exact"]
    if params.get("min") is not None and value < params["min"]:
        return False
    if params.get("max") is not None and value > params["max"]:
        return False
    return True


def _has_error(output: str, params: Any = None) -> bool:
    return any(pattern.search(output) for pattern in _ERROR_PATTERNS)


def _no_error(output: str, params: Any = None) -> bool:
    return not _has_error(output)


def _contains(output: str, params: Any) -> bool:
    lowered = output.lower()
    return all(str(text).lower() in lowered for text in _as_list(params))


def _grep_found(output: str, params: Any = None) -> bool:
    return bool(output.strip()) and "No such file" not in output


def _valid_path(output: str, params: Any = None) -> bool:
    path = output.strip()
    return len(path) > 1 and re.fullmatch(r"/[\w\-/]*", path) is not None


def _line_count(output: str, params: Any) -> bool:
    return _within_bounds(len([line for line in output.split("\n") if line.strip()]), params)


def _word_count(output: str, params: Any) -> bool:
    return _within_bounds(len(output.split()), params)


def _sudo_executed(output: str, params: Any = None) -> bool:
    return not any(
        marker in output
        for marker in ("sudo: command not found", "not in the sudoers file", "incorrect password")
    )


def _sudo_password_prompt(output: str, params: Any = None) -> bool:
    return any(marker in output for marker in ("[sudo] password", "Password:", "Enter password"))


def _ssh_connected(output: str, params: Any = None) -> bool:
    if "Connected to" in output or "connection established" in output:
        return True
    return "ssh" in output and "connection refused" not in output and "No route to host" not in output


def _ssh_failed(output: str, params: Any = None) -> bool:
    return any(
        marker in output
        for marker in ("connection refused", "Connection refused", "No route to host", "Host key verification failed")
    )


def _scp_success(output: str, params: Any = None) -> bool:
    transferred = any(marker in output for marker in ("100%", "uploaded", "transferred"))
    return transferred and "error" not in output and "failed" not in output


def _scp_to_remote(output: str, params: Any) -> bool:
    return "uploaded" in output or "copied to" in output or (bool(params) and str(params) in output)


def _scp_from_remote(output: str, params: Any) -> bool:
    return "downloaded" in output or "copied from" in output or (bool(params) and str(params) in output)


def _env_var_set(output: str, params: Any) -> bool:
    match = re.search(rf"{re.escape(params['name'])}=(.+)", output, re.IGNORECASE)
    if not match:
        return False
    if params.get("value"):
        return match.group(1).strip() == params["value"]
    return True


def _env_var_exported(output: str, params: Any) -> bool:
    name = params or ""
    return (
        f"declare -x {name}=" in output
        or f"export {name}=" in output
        or re.search(rf"{re.escape(name)}=.*\[exported\]", output) is not None
    )


def _valid_env_output(output: str, params: Any = None) -> bool:
    lines = [line for line in output.split("\n") if line.strip()]
    return bool(lines) and all(re.match(r"^[A-Z_][A-Z0-9_]*=", line) for line in lines)


def _redirection_success(output: str, params: Any = None) -> bool:
    return "Output redirected" in output or "redirected to" in output or not output.strip()


def _heredoc_captured(output: str, params: Any = None) -> bool:
    return "Heredoc input captured" in output or "lines" in output or not output.strip()


def _ping_success(output: str, params: Any = None) -> bool:
    reached = any(marker in output for marker in ("bytes from", "packets transmitted", "0% packet loss"))
    return reached and "100% packet loss" not in output and "Network unreachable" not in output


def _ping_failed(output: str, params: Any = None) -> bool:
    return any(
        marker in output
        for marker in (
            "100% packet loss",
            "Network unreachable",
            "Destination Host Unreachable",
            "Name or service not known",
        )
    )


def _http_success(output: str, params: Any = None) -> bool:
    return bool(output) and "error" not in output and "failed" not in output


def _netstat_listening(output: str, params: Any = None) -> bool:
    return any(marker in output for marker in ("LISTEN", "tcp", "udp"))


def _dig_resolved(output: str, params: Any = None) -> bool:
    has_ip = _IP.search(output) is not None
    if params:
        return has_ip and str(params) in output
    return has_ip


def _network_interfaces(output: str, params: Any = None) -> bool:
    listed = any(marker in output for marker in ("eth0", "wlan0", "lo", "inet ", "inet6"))
    return listed and "not found" not in output


def _matches_pattern(output: str, params: Any) -> bool:
    return re.search(params, output) is not None


def _matches_all_patterns(output: str, params: Any) -> bool:
    return all(re.search(pattern, output) for pattern in _as_list(params))


def _matches_any_pattern(output: str, params: Any) -> bool:
    return any(re.search(pattern, output) for pattern in _as_list(params))


def _command_success(output: str, params: Any = None) -> bool:
    return _no_error(output) and bool(output.strip())


def _listing_contains_file(output: str, params: Any) -> bool:
    lines = output.split("\n")
    return all(any(str(name) in line for line in lines) for name in _as_list(params))


_OUTPUT_VALIDATORS: Dict[Validator, Callable[[str, Any], bool]] = {
    Validator.CONTAINS: _contains,
    Validator.NOT_EMPTY: lambda output, params=None: bool(output.strip()),
    Validator.IS_EMPTY: lambda output, params=None: not output.strip(),
    Validator.HAS_ERROR: _has_error,
    Validator.NO_ERROR: _no_error,
    Validator.GREP_FOUND: _grep_found,
    Validator.VALID_PATH: _valid_path,
    Validator.VALID_FLAG: lambda output, params=None: re.search(r"FLAG\{[A-Z0-9_]+\}", output) is not None,
    Validator.LINE_COUNT: _line_count,
    Validator.WORD_COUNT: _word_count,
    Validator.SUDO_EXECUTED: _sudo_executed,
    Validator.SUDO_PASSWORD_PROMPT: _sudo_password_prompt,
    Validator.SSH_CONNECTED: _ssh_connected,
    Validator.SSH_FAILED: _ssh_failed,
    Validator.SCP_SUCCESS: _scp_success,
    Validator.SCP_TO_REMOTE: _scp_to_remote,
    Validator.SCP_FROM_REMOTE: _scp_from_remote,
    Validator.ENV_VAR_SET: _env_var_set,
    Validator.ENV_VAR_EXPORTED: _env_var_exported,
    Validator.VALID_ENV_OUTPUT: _valid_env_output,
    Validator.REDIRECTION_SUCCESS: _redirection_success,
    Validator.HEREDOC_CAPTURED: _heredoc_captured,
    Validator.PING_SUCCESS: _ping_success,
    Validator.PING_FAILED: _ping_failed,
    Validator.HTTP_SUCCESS: _http_success,
    Validator.NETSTAT_LISTENING: _netstat_listening,
    Validator.DIG_RESOLVED: _dig_resolved,
    Validator.NETWORK_INTERFACES: _network_interfaces,
    Validator.MATCHES_PATTERN: _matches_pattern,
    Validator.MATCHES_ALL_PATTERNS: _matches_all_patterns,
    Validator.MATCHES_ANY_PATTERN: _matches_any_pattern,
    Validator.CONTAINS_IP: lambda output, params=None: _IP.search(output) is not None,
    Validator.CONTAINS_DOMAIN: lambda output, params=None: re.search(r"[a-zA-Z0-9-]+\.[a-zA-Z]{2,}", output)
    is not None,
    Validator.CONTAINS_TIMESTAMP: lambda output, params=None: re.search(
        r"\d{4}-\d{2}-\d{2}|\d{2}:\d{2}:\d{2}", output
    )
    is not None,
    Validator.CONTAINS_FILE_PATH: lambda output, params=None: re.search(r"/[\w\-./]+", output) is not None,
    Validator.COMMAND_SUCCESS: _command_success,
    Validator.LISTING_CONTAINS_FILE: _listing_contains_file,
    Validator.LESS_USED: lambda output, params=None: bool(output),
}


# ---------- Filesystem validators ----------


def _read(fs: VirtualFS, path: str) -> Optional[str]:
    if not fs.is_file(path):
        return None
    return fs.read_text(path)


def _file_contains(fs: VirtualFS, params: Any) -> bool:
    content = _read(fs, params["path"])
    if content is None:
        return False
    return all(str(text) in content for text in _as_list(params.get("text")))


def _file_size(fs: VirtualFS, params: Any) -> bool:
    content = _read(fs, params["path"])
    return content is not None and _within_bounds(len(content), params)


def _file_modified(fs: VirtualFS, params: Any) -> bool:
    content = _read(fs, params)
    return bool(content)


def _dir_has_files(fs: VirtualFS, params: Any) -> bool:
    if not fs.is_dir(params["path"]):
        return False
    names = fs.readdir(params["path"])
    if params.get("count") is not None and len(names) != params["count"]:
        return False
    if params.get("files"):
        return all(name in names for name in params["files"])
    return bool(names)


def _dir_is_empty(fs: VirtualFS, params: Any) -> bool:
    return fs.is_dir(params) and not fs.readdir(params)


def _remote_file_exists(fs: VirtualFS, params: Any) -> bool:
    return fs.exists(f"/remotes/{params['user']}/filesystem{paths.normalize(params['path'])}")


def _file_copied(fs: VirtualFS, params: Any) -> bool:
    source, dest = _read(fs, params["source"]), _read(fs, params["dest"])
    return source is not None and source == dest


def _file_readable(fs: VirtualFS, params: Any) -> bool:
    node = fs.stat(params)
    return node is not None and node.is_file and node.owner != "root"


_FS_VALIDATORS: Dict[Validator, Callable[[VirtualFS, Any], bool]] = {
    Validator.FILE_EXISTS: lambda fs, params: fs.exists(params),
    Validator.DIR_EXISTS: lambda fs, params: fs.is_dir(params),
    Validator.FILE_CONTAINS: _file_contains,
    Validator.FILE_SIZE: _file_size,
    Validator.FILE_MODIFIED: _file_modified,
    Validator.DIR_HAS_FILES: _dir_has_files,
    Validator.FILE_CREATED: lambda fs, params: fs.exists(params),
    Validator.FILE_DELETED: lambda fs, params: not fs.exists(params),
    Validator.FILE_NOT_EXISTS: lambda fs, params: not fs.exists(params),
    Validator.PATH_NOT_EXISTS: lambda fs, params: not fs.exists(params),
    Validator.DIR_IS_EMPTY: _dir_is_empty,
    Validator.REMOTE_FILE_EXISTS: _remote_file_exists,
    Validator.FILE_COPIED: _file_copied,
    Validator.FILE_READABLE: _file_readable,
}


# ---------- Context validators ----------


def _sudo_and_file_check(ctx: ValidationContext, params: Any) -> bool:
    output = ctx.output
    sudo_ok = "permission denied" not in output.lower() and "not in the sudoers" not in output
    sudo_ok = sudo_ok and "incorrect password" not in output
    path = params.get("path") if isinstance(params, dict) else params
    file_ok = ctx.fs.exists(path) if (path and ctx.fs is not None) else _no_error(output)
    return sudo_ok and file_ok


def _scp_with_remote_check(ctx: ValidationContext, params: Any) -> bool:
    if not _scp_success(ctx.output):
        return False
    match = re.search(r"scp\s+(\S+)\s+(\w+)@([^:\s]+):(\S*)", ctx.command)
    if not match or ctx.fs is None:
        return True
    local, user, _, remote = match.groups()
    remote_path = paths.resolve(paths.home_directory(user), remote or "~", user)
    candidates = [remote_path, paths.join(remote_path, paths.basename(local))]
    return any(_remote_file_exists(ctx.fs, {"user": user, "path": path}) for path in candidates)


def _env_var_set_and_exported(ctx: ValidationContext, params: Any) -> bool:
    match = re.search(r"export\s+([A-Za-z_][A-Za-z0-9_]*)=", ctx.command)
    if match:
        return match.group(1) in ctx.env
    return _env_var_exported(ctx.output, params or "")


def _redirection_with_file_check(ctx: ValidationContext, params: Any) -> bool:
    match = re.search(r">\s*(\S+)", ctx.command)
    if not match or ctx.fs is None:
        return _redirection_success(ctx.output)
    target = paths.resolve(ctx.current_path, match.group(1), ctx.username)
    return _file_modified(ctx.fs, target)


def _command_chain_success(ctx: ValidationContext, params: Any) -> bool:
    return ctx.exit_code == 0 and _no_error(ctx.output) and bool(ctx.output)


def _critical_file_operation(ctx: ValidationContext, params: Any) -> bool:
    path = params.get("path") if isinstance(params, dict) else params
    if path and ctx.fs is not None and not ctx.fs.exists(path):
        return False
    return _no_error(ctx.output)


_CONTEXT_VALIDATORS: Dict[Validator, Callable[[ValidationContext, Any], bool]] = {
    Validator.SUDO_AND_FILE_CHECK: _sudo_and_file_check,
    Validator.SCP_WITH_REMOTE_CHECK: _scp_with_remote_check,
    Validator.ENV_VAR_SET_AND_EXPORTED: _env_var_set_and_exported,
    Validator.REDIRECTION_WITH_FILE_CHECK: _redirection_with_file_check,
    Validator.COMMAND_CHAIN_SUCCESS: _command_chain_success,
    Validator.CRITICAL_FILE_OPERATION: _critical_file_operation,
}

_unregistered = [
    member.value
    for member in Validator
    if sum(member in table for table in (_OUTPUT_VALIDATORS, _FS_VALIDATORS, _CONTEXT_VALIDATORS)) != 1
]
if _unregistered:  # pragma: no cover
    raise RuntimeError(f"validators not registered exactly once: {', '.join(_unregistered)}")


# ---------- Entry points ----------


def is_known_validator(name: Union[str, Validator]) -> bool:
    return Validator.lookup(name) is not None


def run_validator(name: Union[str, Validator], ctx: ValidationContext, params: Any = None) -> bool:
    """Run one named validator; unknown names and exceptions count as failure."""
    validator = Validator.lookup(name)
    if validator is None:
        LOGGER.error("Unknown validator %r", name)
        return False
    try:
        if validator in _OUTPUT_VALIDATORS:
            return bool(_OUTPUT_VALIDATORS[validator](ctx.output, params))
        if validator in _FS_VALIDATORS:
            if ctx.fs is None:
                LOGGER.warning("Validator %s needs a filesystem; none supplied", validator.value)
                return False
            return bool(_FS_VALIDATORS[validator](ctx.fs, params))
        return bool(_CONTEXT_VALIDATORS[validator](ctx, params))
    except Exception:
        LOGGER.exception("Validator %s raised with params %r", validator.value, params)
        get_metrics_collector().record_validator_error(validator.value)
        return False


def evaluate_task(task: Any, ctx: ValidationContext) -> bool:
    """True when every check configured on task passes for this command.

    task needs id, output_pattern, output_check, output_check_params and
    require_output attributes. A task with no check at all never passes.
    """
    checks = 0
    if task.output_pattern:
        checks += 1
        try:
            if re.search(task.output_pattern, ctx.stdout, re.IGNORECASE | re.DOTALL) is None:
                return False
        except re.error:
            LOGGER.error("Task %s has an invalid outputPattern %r", task.id, task.output_pattern)
            return False
    if task.output_check:
        checks += 1
        if not run_validator(task.output_check, ctx, task.output_check_params):
            return False
    if task.require_output:
        checks += 1
        if not ctx.stdout.strip():
            return False
    if checks == 0:
        LOGGER.warning("Task %s has no completion check", task.id)
        return False
    return True
