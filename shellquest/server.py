"""SSH training server for shellquest.

This module wires together:
- SSH transport (Paramiko)
- One TrainingSession per connection
- A small line editor (echo, backspace, Ctrl+C/Ctrl+D, masked passwords)
- Pager, editor and confirmation prompts driven by session Intents
- Per-session JSON transcripts under SESSIONS_DIR
"""

from __future__ import annotations

import codecs
import json
import logging
import socket
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import paramiko
from colorama import Fore, Style

from .config import get_config, get_ssh_config
from .engine import Response, TrainingSession, describe_event
from .interceptor import Cancelled, ConfirmCommand, Confirmed, OpenEditor, OpenPager, Saved
from .mission import Adventure, load_adventure
from .progress_store import ProgressStore
from .ssh_interface import TrainingSSHServer, create_listening_socket, get_or_create_host_key

LOGGER = logging.getLogger(__name__)

CTRL_C = "\x03"
CTRL_D = "\x04"
BACKSPACES = ("\x7f", "\x08")
ESCAPE = "\x1b"


class ChannelClosed(Exception):
    """The client went away or hit Ctrl+D on an empty line."""


class ChannelTerminal:
    """Line-oriented terminal on top of a Paramiko channel."""

    def __init__(self, channel: paramiko.Channel, height: int = 24):
        self.channel = channel
        self.height = height
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending: List[str] = []

    def write(self, text: str) -> None:
        if text:
            self.channel.send(text.replace("\r\n", "\n").replace("\n", "\r\n").encode("utf-8"))

    def writeln(self, text: str = "") -> None:
        self.write(text + "\n")

    def _next_char(self) -> str:
        while not self._pending:
            data = self.channel.recv(1024)
            if not data:
                raise ChannelClosed()
            self._pending.extend(self._decoder.decode(data))
        return self._pending.pop(0)

    def _skip_escape(self) -> None:
        char = self._next_char()
        if char not in "[O":
            return
        while True:
            char = self._next_char()
            if char.isalpha() or char == "~":
                return

    def read_line(self, prompt: str = "", mask: bool = False) -> str:
        """Read one line; Ctrl+C abandons it (returns ''), Ctrl+D on an empty line closes."""
        self.write(prompt)
        buffer: List[str] = []
        while True:
            char = self._next_char()
            if char in ("\r", "\n"):
                if char == "\r" and self._pending and self._pending[0] == "\n":
                    self._pending.pop(0)
                self.write("\n")
                return "".join(buffer)
            if char == CTRL_C:
                self.write("^C\n")
                return ""
            if char == CTRL_D:
                if not buffer:
                    raise ChannelClosed()
                continue
            if char in BACKSPACES:
                if buffer:
                    buffer.pop()
                    self.write("\b \b")
                continue
            if char == ESCAPE:
                self._skip_escape()
                continue
            if char < " " and char != "\t":
                continue
            buffer.append(char)
            self.write("*" if mask else char)


# ---------- Transcript ----------


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _new_transcript(client_ip: str, client_port: int, username: str, adventure_id: Optional[str]) -> Dict[str, Any]:
    session_id = f"session_{int(time.time() * 1000)}_{threading.get_ident()}"
    return {
        "session_id": session_id,
        "client_ip": client_ip,
        "client_port": client_port,
        "username": username,
        "adventure": adventure_id,
        "login_time": _utc_now(),
        "logout_time": None,
        "duration_seconds": None,
        "commands": [],
        "events": [],
    }


def _save_transcript(transcript: Dict[str, Any], directory: Path) -> None:
    path = directory / f"{transcript['session_id']}.json"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(transcript, indent=2), encoding="utf-8")
    except OSError as exc:
        LOGGER.error("Failed to write session transcript %s: %s", path, exc)


# ---------- Session driver ----------


class SessionDriver:
    """Runs one TrainingSession against a ChannelTerminal."""

    def __init__(self, session: TrainingSession, terminal: ChannelTerminal, transcript: Dict[str, Any]):
        self.session = session
        self.terminal = terminal
        self.transcript = transcript

    def run(self) -> None:
        prompt = self.session.prompt
        mask = False
        while True:
            line = self.terminal.read_line(prompt, mask=mask)
            if mask:
                # never record what was typed at the password prompt
                self.transcript["commands"].append({"timestamp": _utc_now(), "input": "[password]"})
                response = self.session.submit(line)
            else:
                response = self.session.handle_meta(line.strip()) or self.session.submit(line)
                self.transcript["commands"].append({"timestamp": _utc_now(), "input": line})
            response = self.render(response)
            if response.exit_requested:
                return
            prompt, mask = response.prompt, response.mask_input

    def render(self, response: Response) -> Response:
        """Print a response, drive any Intent to completion and return the final response."""
        while True:
            self._print(response)
            intent = response.intent
            if intent is None or self.session.pending_intent is None:
                return response
            if isinstance(intent, OpenPager):
                self._page(intent)
                response = self.session.resolve(Cancelled())
            elif isinstance(intent, OpenEditor):
                content = self._edit(intent)
                response = self.session.resolve(Saved(content) if content is not None else Cancelled())
            elif isinstance(intent, ConfirmCommand):
                self.terminal.writeln(Fore.YELLOW + intent.check.title + Style.RESET_ALL)
                self.terminal.writeln(intent.check.message)
                answer = self.terminal.read_line(f"{intent.check.confirm_label}? [y/N] ")
                confirmed = answer.strip().lower() in ("y", "yes")
                response = self.session.resolve(Confirmed() if confirmed else Cancelled())
            else:  # pragma: no cover
                raise TypeError(f"unhandled intent {intent!r}")

    def _print(self, response: Response) -> None:
        if response.stdout:
            self.terminal.writeln(response.stdout.rstrip("\n"))
        if response.stderr:
            self.terminal.writeln(response.stderr.rstrip("\n"))
        for event in response.events:
            self.terminal.writeln(Fore.GREEN + describe_event(event) + Style.RESET_ALL)
            self.transcript["events"].append({"timestamp": _utc_now(), "kind": event.kind, **event.__dict__})

    def _page(self, intent: OpenPager) -> None:
        lines = intent.content.splitlines()
        page = max(self.terminal.height - 1, 1)
        for start in range(0, len(lines), page):
            for line in lines[start:start + page]:
                self.terminal.writeln(line)
            if start + page < len(lines):
                answer = self.terminal.read_line(Style.BRIGHT + "--More--" + Style.RESET_ALL)
                if answer.strip().lower() == "q":
                    return

    def _edit(self, intent: OpenEditor) -> Optional[str]:
        """Line-mode editor: '.' on its own line saves, ':q' cancels."""
        title = "New File" if intent.is_new else intent.path
        self.terminal.writeln(Style.BRIGHT + f"  {intent.editor} (line mode)  {title}" + Style.RESET_ALL)
        for number, line in enumerate(intent.content.splitlines(), 1):
            self.terminal.writeln(f"{number:>4}  {line}")
        self.terminal.writeln("Type the new contents. '.' on its own line saves, ':q' cancels.")
        lines: List[str] = []
        while True:
            line = self.terminal.read_line()
            if line == ".":
                return "".join(item + "\n" for item in lines)
            if line == ":q":
                return None
            lines.append(line)


def _handle_client(
    client: socket.socket,
    addr,
    host_key: paramiko.PKey,
    adventure: Optional[Adventure],
    store: ProgressStore,
) -> None:
    client_ip, client_port = addr[0], addr[1]
    config, ssh_config = get_config(), get_ssh_config()
    LOGGER.info("New connection from %s:%s", client_ip, client_port)

    try:
        client.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        client.settimeout(60)
    except OSError as exc:
        LOGGER.warning("Failed to configure client socket: %s", exc)

    transport = paramiko.Transport(client)
    transport.local_version = ssh_config.banner
    transport.set_keepalive(30)
    transport.add_server_key(host_key)
    server = TrainingSSHServer(password=ssh_config.password)

    try:
        transport.start_server(server=server)
    except (paramiko.SSHException, EOFError, OSError) as exc:
        LOGGER.error("SSH negotiation failed with %s:%s - %s", client_ip, client_port, exc)
        transport.close()
        return

    chan = transport.accept(20)
    if chan is None:
        LOGGER.warning("No channel received from %s:%s within 20 seconds", client_ip, client_port)
        transport.close()
        return
    if ssh_config.idle_timeout > 0:
        chan.settimeout(ssh_config.idle_timeout)

    username = server.username or config.shell.username
    session = TrainingSession(adventure, username=username, store=store.for_user(username))
    terminal = ChannelTerminal(chan, height=server.terminal.height)
    transcript = _new_transcript(client_ip, client_port, username, adventure.id if adventure else None)
    start_time = time.time()

    try:
        terminal.writeln(Fore.CYAN + "Welcome to shellquest" + Style.RESET_ALL)
        if adventure is not None:
            terminal.writeln(Style.BRIGHT + adventure.title + Style.RESET_ALL)
            if adventure.description:
                terminal.writeln(adventure.description)
        terminal.writeln(session.describe_task())
        terminal.writeln("Meta-commands: :hint [level], :task, :progress, :reset, :quit")
        terminal.writeln()
        SessionDriver(session, terminal, transcript).run()
        terminal.writeln("Goodbye.")
    except ChannelClosed:
        LOGGER.info("Session closed by client %s", client_ip)
    except socket.timeout:
        LOGGER.info("Session with %s idle for %.0fs, closing", client_ip, ssh_config.idle_timeout)
    except Exception:
        LOGGER.exception("Error in session with %s", client_ip)
    finally:
        session.close()
        transcript["logout_time"] = _utc_now()
        transcript["duration_seconds"] = round(time.time() - start_time, 2)
        _save_transcript(transcript, config.sessions_dir)
        try:
            chan.close()
        except (OSError, EOFError):
            pass
        transport.close()
        LOGGER.info(
            "Session with %s ended (duration: %.1fs, commands: %d)",
            client_ip,
            transcript["duration_seconds"],
            len(transcript["commands"]),
        )


class TrainingServer:
    """Object-oriented wrapper for the SSH training server."""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, adventure_path: Optional[str] = None):
        """Initialize the training server.

        Args:
            host: Address to bind to (default: SSHConfig.host)
            port: Port to listen on (default: SSHConfig.port)
            adventure_path: Adventure JSON to serve (default: Config.default_adventure)
        """
        config, ssh_config = get_config(), get_ssh_config()
        self.host = host or ssh_config.host
        self.port = port or ssh_config.port
        self.adventure = load_adventure(adventure_path or config.default_adventure)
        self.store = ProgressStore(config.progress_dir)
        self._socket: Optional[socket.socket] = None
        self._running = False
        self._host_key = get_or_create_host_key(ssh_config.host_key_path)
        self._threads: List[threading.Thread] = []

    def run(self) -> None:
        """Start the server and block until stopped."""
        try:
            self._socket = create_listening_socket(self.host, self.port)
        except OSError as exc:
            LOGGER.error("Failed to bind to %s:%d - %s", self.host, self.port, exc)
            raise

        self._running = True
        LOGGER.info("shellquest listening on %s:%d (adventure: %s)", self.host, self.port, self.adventure.id)

        try:
            while self._running:
                try:
                    self._socket.settimeout(1.0)
                    client, addr = self._socket.accept()
                except socket.timeout:
                    continue
                thread = threading.Thread(
                    target=_handle_client,
                    args=(client, addr, self._host_key, self.adventure, self.store),
                    daemon=True,
                )
                thread.start()
                self._threads = [t for t in self._threads if t.is_alive()] + [thread]
                LOGGER.debug("Started handler thread for %s:%s", addr[0], addr[1])
        except KeyboardInterrupt:
            LOGGER.info("Received interrupt signal")
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Stop accepting connections."""
        self._running = False
        if self._socket:
            try:
                self._socket.close()
            except OSError:
                pass
            self._socket = None
        LOGGER.info("shellquest server stopped")


__all__ = ["TrainingServer", "SessionDriver", "ChannelTerminal", "ChannelClosed"]
