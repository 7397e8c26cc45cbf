"""Shell environment variables for a learner session.

Holds the variables the engine expands ($VAR, ${VAR}, $?) and implements
the env, export and unset builtins. USER, HOME and SHELL are read-only.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Set

from .command_handler import EXIT_FAILURE, CommandResult

LOGGER = logging.getLogger(__name__)

READONLY_VARIABLES = frozenset({"USER", "HOME", "SHELL"})
DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"

_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_REFERENCE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*)|(\?))")


class VariableError(Exception):
    """Invalid, read-only or otherwise rejected variable assignment."""


class ShellEnvironment:
    """Variables, their export flags and the last exit status."""

    def __init__(self, username: str, home: str, cwd: Optional[str] = None, extra: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = {
            "USER": username,
            "HOME": home,
            "SHELL": "/bin/sh",
            "PATH": DEFAULT_PATH,
            "PWD": cwd or home,
            "TERM": "xterm-256color",
            "LANG": "en_US.UTF-8",
        }
        self._exported: Set[str] = set(self._values)
        self.last_status = 0
        for name, value in (extra or {}).items():
            if _NAME.match(name) and name not in READONLY_VARIABLES:
                self._values[name] = str(value)
                self._exported.add(name)

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def set(self, name: str, value: str, export: bool = False) -> None:
        if not _NAME.match(name):
            raise VariableError(f"`{name}': not a valid identifier")
        if name in READONLY_VARIABLES and name in self._values:
            raise VariableError(f"{name}: readonly variable")
        self._values[name] = value
        if export:
            self._exported.add(name)

    def unset(self, name: str) -> None:
        if name in READONLY_VARIABLES:
            raise VariableError(f"{name}: cannot unset: readonly variable")
        self._values.pop(name, None)
        self._exported.discard(name)

    def is_exported(self, name: str) -> bool:
        return name in self._exported and name in self._values

    def exported(self) -> Dict[str, str]:
        return {name: value for name, value in self._values.items() if name in self._exported}

    def update_pwd(self, new_path: str) -> None:
        current = self._values.get("PWD")
        if current == new_path:
            return
        if current is not None:
            self._values["OLDPWD"] = current
            self._exported.add("OLDPWD")
        self._values["PWD"] = new_path

    def expand(self, text: str) -> str:
        """Substitute variable references outside single quotes; unknown names become empty."""

        def substitute(match: re.Match) -> str:
            if match.group(3):
                return str(self.last_status)
            name = match.group(1) or match.group(2)
            return self._values.get(name, "")

        pieces: List[str] = []
        start = 0
        in_double = False
        index = 0
        while index < len(text):
            char = text[index]
            if char == '"':
                in_double = not in_double
            elif char == "\\" and index + 1 < len(text):
                # an escaped character is copied as is
                pieces.append(_REFERENCE.sub(substitute, text[start:index]))
                pieces.append(text[index:index + 2])
                index += 2
                start = index
                continue
            elif char == "'" and not in_double:
                end = text.find("'", index + 1)
                if end == -1:
                    break
                pieces.append(_REFERENCE.sub(substitute, text[start:index]))
                pieces.append(text[index:end + 1])
                index = end + 1
                start = index
                continue
            index += 1
        pieces.append(_REFERENCE.sub(substitute, text[start:]))
        return "".join(pieces)

    # ---------- Builtins ----------

    def run_env(self, args: List[str]) -> CommandResult:
        """env: list exported variables, assign NAME=value, or print one NAME."""
        if not args:
            lines = [f"{name}={value}" for name, value in sorted(self.exported().items())]
            return CommandResult(stdout="\n".join(lines))
        output: List[str] = []
        errors: List[str] = []
        for arg in args:
            name, has_value, value = arg.partition("=")
            if has_value:
                try:
                    self.set(name, value, export=True)
                except VariableError as exc:
                    errors.append(f"env: {exc}")
                    continue
                output.append(f"{name}={value}")
            elif self.is_exported(name):
                output.append(f"{name}={self._values[name]}")
            else:
                errors.append(f"env: '{name}': No such file or directory")
        return CommandResult(
            stdout="\n".join(output),
            stderr="\n".join(errors),
            exit_code=127 if errors else 0,
        )

    def run_export(self, args: List[str]) -> CommandResult:
        if not args or args == ["-p"]:
            lines = [f'declare -x {name}="{value}"' for name, value in sorted(self.exported().items())]
            return CommandResult(stdout="\n".join(lines))
        errors: List[str] = []
        for arg in args:
            name, has_value, value = arg.partition("=")
            try:
                if has_value:
                    self.set(name, value, export=True)
                elif not _NAME.match(name):
                    raise VariableError(f"`{arg}': not a valid identifier")
                elif name in self._values:
                    self._exported.add(name)
                else:
                    self.set(name, "", export=True)
            except VariableError as exc:
                errors.append(f"export: {exc}")
                continue
            LOGGER.debug("Exported %s", name)
        return CommandResult(stderr="\n".join(errors), exit_code=EXIT_FAILURE if errors else 0)

    def run_unset(self, args: List[str]) -> CommandResult:
        errors: List[str] = []
        for name in args:
            try:
                self.unset(name)
            except VariableError as exc:
                errors.append(f"unset: {exc}")
        return CommandResult(stderr="\n".join(errors), exit_code=EXIT_FAILURE if errors else 0)

    def to_dict(self) -> Dict[str, str]:
        return dict(self._values)
