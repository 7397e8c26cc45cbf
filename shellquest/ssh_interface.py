"""Paramiko-based SSH server interface for shellquest.

This module defines the TrainingSSHServer class that authenticates learners
and provides an interactive shell channel over which the training shell
runs. It also remembers the terminal size so the pager can page output.
"""

from __future__ import annotations

import hmac
import logging
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import paramiko

LOGGER = logging.getLogger(__name__)

DEFAULT_TERMINAL_HEIGHT = 24


@dataclass
class TerminalInfo:
    """PTY parameters requested by the client."""

    term: str = "xterm"
    width: int = 80
    height: int = DEFAULT_TERMINAL_HEIGHT

    def to_dict(self) -> Dict[str, Any]:
        return {"term": self.term, "width": self.width, "height": self.height}


def get_or_create_host_key(path: Path) -> paramiko.PKey:
    """Return the persisted RSA host key, creating it on first start.

    Keeping the key between runs stops learners' clients from warning about
    a changed host identity on every restart.
    """
    if path.exists():
        try:
            return paramiko.RSAKey(filename=str(path))
        except (paramiko.SSHException, OSError) as exc:
            LOGGER.error("Failed to load host key %s, regenerating: %s", path, exc)

    key = paramiko.RSAKey.generate(3072)
    path.parent.mkdir(parents=True, exist_ok=True)
    key.write_private_key_file(str(path))
    LOGGER.info("Generated new 3072-bit RSA host key at %s", path)
    return key


class TrainingSSHServer(paramiko.ServerInterface):
    """Paramiko ServerInterface for learner logins.

    With no shared password configured every username/password pair is
    accepted; otherwise the password must match. The accepted username
    becomes the learner's shell user.
    """

    def __init__(self, password: str = "") -> None:
        super().__init__()
        self._password = password
        self.username: Optional[str] = None
        self.terminal = TerminalInfo()
        self.auth_failures = 0

    def check_channel_request(self, kind: str, chanid: int) -> int:
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_auth_password(self, username: str, password: str) -> int:
        if self._password and not hmac.compare_digest(password.encode("utf-8"), self._password.encode("utf-8")):
            self.auth_failures += 1
            LOGGER.info("Login rejected: user=%s (bad password)", username)
            return paramiko.AUTH_FAILED
        self.username = username
        LOGGER.info("Login accepted: user=%s", username)
        return paramiko.AUTH_SUCCESSFUL

    def get_allowed_auths(self, username: str) -> str:
        return "password"

    def check_channel_pty_request(
        self,
        channel: paramiko.Channel,
        term: bytes,
        width: int,
        height: int,
        pixelwidth: int,
        pixelheight: int,
        modes: bytes,
    ) -> bool:
        term_str = term.decode("utf-8", errors="replace") if isinstance(term, bytes) else str(term)
        self.terminal = TerminalInfo(term=term_str, width=width, height=height or DEFAULT_TERMINAL_HEIGHT)
        LOGGER.debug("PTY request: term=%s size=%dx%d", term_str, width, height)
        return True

    def check_channel_window_change_request(
        self,
        channel: paramiko.Channel,
        width: int,
        height: int,
        pixelwidth: int,
        pixelheight: int,
    ) -> bool:
        self.terminal.width = width
        self.terminal.height = height or DEFAULT_TERMINAL_HEIGHT
        return True

    def check_channel_shell_request(self, channel: paramiko.Channel) -> bool:
        return True


def create_listening_socket(host: str, port: int) -> socket.socket:
    """Open the listening TCP socket for the SSH front-end.

    The server closes it on shutdown.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    sock.bind((host, port))
    sock.listen(100)
    return sock


__all__ = [
    "TrainingSSHServer",
    "TerminalInfo",
    "get_or_create_host_key",
    "create_listening_socket",
]
