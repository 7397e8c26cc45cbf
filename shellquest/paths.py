"""Path resolution for the virtual shell.

Turns whatever the learner typed (relative, absolute, "~", "..") into a
normalized absolute path. Resolution is purely textual: it never consults
the filesystem and never raises.
"""

from __future__ import annotations

from typing import List


def home_directory(username: str) -> str:
    return f"/home/{username}"


def normalize(path: str) -> str:
    """Collapse '.', '..' and repeated slashes; '..' at the root stays at the root."""
    segments: List[str] = []
    for part in path.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if segments:
                segments.pop()
            continue
        segments.append(part)
    return "/" + "/".join(segments)


def resolve(current_path: str, target: str, username: str) -> str:
    """Resolve target against current_path for the given user.

    >>> resolve("/home/student", "../..", "student")
    '/'
    >>> resolve("/tmp", "~/notes", "student")
    '/home/student/notes'
    """
    if target is None:
        target = ""
    target = str(target)
    if not target:
        return normalize(current_path or "/")
    if target == "~":
        return home_directory(username)
    if target.startswith("~/"):
        return normalize(home_directory(username) + target[1:])
    if target.startswith("/"):
        return normalize(target)
    return normalize((current_path or "/") + "/" + target)


def dirname(path: str) -> str:
    normalized = normalize(path)
    if normalized == "/":
        return "/"
    return normalized.rsplit("/", 1)[0] or "/"


def basename(path: str) -> str:
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def join(base: str, name: str) -> str:
    """Join a display path and a child name without doubling slashes."""
    if not base:
        return name
    if base.endswith("/"):
        return base + name
    return base + "/" + name


def is_within(path: str, ancestor: str) -> bool:
    """True when path equals ancestor or lies below it."""
    path = normalize(path)
    ancestor = normalize(ancestor)
    if ancestor == "/":
        return True
    return path == ancestor or path.startswith(ancestor + "/")


def display_path(path: str, username: str) -> str:
    """Abbreviate the user's home directory to '~' for prompts."""
    home = home_directory(username)
    if path == home:
        return "~"
    if path.startswith(home + "/"):
        return "~" + path[len(home):]
    return path
