"""In-memory virtual filesystem for shellquest.

Every command the learner types reads and writes through a VirtualFS. The
tree is rooted at "/", directories keep their entries in insertion order and
each node carries a POSIX-style mode (type bits + permission bits), an owner
name and a modification time.

Failures raise VFSError carrying a POSIX error code (ENOENT, EEXIST, ...)
and the offending path, so command handlers can translate them into the
familiar coreutils messages.

Adventures describe their starting tree with a nested structure:

    {"root": {"home": {"type": "directory", "children": {...}},
              "notes.txt": {"type": "file", "content": "..."}}}

which VirtualFS.from_structure() turns into a live filesystem.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from .paths import normalize

LOGGER = logging.getLogger(__name__)

S_IFMT = 0o170000
S_IFDIR = 0o040000
S_IFREG = 0o100000
PERMISSION_BITS = 0o777

DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644
DIRECTORY_SIZE = 4096

_ERROR_MESSAGES = {
    "ENOENT": "No such file or directory",
    "ENOTDIR": "Not a directory",
    "EISDIR": "Is a directory",
    "EEXIST": "File exists",
    "ENOTEMPTY": "Directory not empty",
    "EBUSY": "Device or resource busy",
    "EINVAL": "Invalid argument",
}


class VFSError(Exception):
    """A filesystem operation failed with a POSIX error code."""

    def __init__(self, code: str, path: str):
        self.code = code
        self.path = path
        super().__init__(f"{code}: {self.strerror}, '{path}'")

    @property
    def strerror(self) -> str:
        return _ERROR_MESSAGES.get(self.code, self.code)


# ---------- Nodes ----------


@dataclass(eq=False)
class FSNode:
    name: str
    mode: int
    owner: str
    modified_at: float
    parent: Optional["DirectoryNode"] = field(default=None, repr=False)

    @property
    def is_dir(self) -> bool:
        return (self.mode & S_IFMT) == S_IFDIR

    @property
    def is_file(self) -> bool:
        return (self.mode & S_IFMT) == S_IFREG

    @property
    def permissions(self) -> int:
        return self.mode & PERMISSION_BITS

    @property
    def size(self) -> int:
        return 0


@dataclass(eq=False)
class FileNode(FSNode):
    contents: bytes = b""

    @property
    def size(self) -> int:
        return len(self.contents)


@dataclass(eq=False)
class DirectoryNode(FSNode):
    entries: Dict[str, FSNode] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return DIRECTORY_SIZE


@dataclass
class FSStat:
    """Snapshot of a node's metadata, returned by VirtualFS.stat()."""

    path: str
    name: str
    mode: int
    owner: str
    size: int
    modified_at: float

    @property
    def is_dir(self) -> bool:
        return (self.mode & S_IFMT) == S_IFDIR

    @property
    def is_file(self) -> bool:
        return (self.mode & S_IFMT) == S_IFREG

    @property
    def permissions(self) -> int:
        return self.mode & PERMISSION_BITS

    @property
    def mode_string(self) -> str:
        return format_mode(self.mode)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "type": "directory" if self.is_dir else "file",
            "permissions": self.mode_string,
            "owner": self.owner,
            "size": self.size,
            "modified_at": self.modified_at,
        }


# ---------- Mode helpers ----------


def format_mode(mode: int) -> str:
    """Render a mode as ls does, e.g. 0o040755 -> 'drwxr-xr-x'."""
    kind = "d" if (mode & S_IFMT) == S_IFDIR else "-"
    chars = []
    for shift in (6, 3, 0):
        bits = (mode >> shift) & 0o7
        chars.append("r" if bits & 0o4 else "-")
        chars.append("w" if bits & 0o2 else "-")
        chars.append("x" if bits & 0o1 else "-")
    return kind + "".join(chars)


def parse_permissions(text: Union[str, int]) -> int:
    """Parse 'rwxr-xr-x', '755' or an int into permission bits."""
    if isinstance(text, int):
        return text & PERMISSION_BITS
    value = text.strip()
    if len(value) == 10 and value[0] in "d-":
        value = value[1:]
    if len(value) in (3, 4) and all(c in "01234567" for c in value):
        return int(value, 8) & PERMISSION_BITS
    if len(value) != 9:
        raise ValueError(f"invalid permission string: {text!r}")
    bits = 0
    for index, char in enumerate(value):
        expected = "rwx"[index % 3]
        if char == expected:
            bits |= 1 << (8 - index)
        elif char != "-":
            raise ValueError(f"invalid permission string: {text!r}")
    return bits


def _split(path: str) -> List[str]:
    normalized = normalize(path)
    return normalized[1:].split("/") if normalized != "/" else []


def _join(segments: List[str]) -> str:
    return "/" + "/".join(segments)


# ---------- Filesystem ----------


class VirtualFS:
    """Mutable in-memory tree addressed by absolute paths."""

    def __init__(
        self,
        default_owner: str = "student",
        clock: Callable[[], float] = time.time,
        root: Optional[DirectoryNode] = None,
    ):
        self.default_owner = default_owner
        self._clock = clock
        if root is None:
            root = DirectoryNode(
                name="",
                mode=S_IFDIR | DEFAULT_DIR_MODE,
                owner=default_owner,
                modified_at=clock(),
            )
        self._root = root

    # -- lookup --

    def _lookup(self, path: str) -> Optional[FSNode]:
        node: FSNode = self._root
        for part in _split(path):
            if not isinstance(node, DirectoryNode):
                return None
            child = node.entries.get(part)
            if child is None:
                return None
            node = child
        return node

    def _parent_of(self, path: str) -> Tuple[DirectoryNode, str]:
        segments = _split(path)
        if not segments:
            raise VFSError("EBUSY", "/")
        parent_path = _join(segments[:-1])
        parent = self._lookup(parent_path)
        if parent is None:
            raise VFSError("ENOENT", _join(segments))
        if not isinstance(parent, DirectoryNode):
            raise VFSError("ENOTDIR", _join(segments))
        return parent, segments[-1]

    def _touch_parent(self, parent: DirectoryNode) -> None:
        parent.modified_at = self._clock()

    # -- queries --

    def stat(self, path: str) -> Optional[FSStat]:
        """Return metadata for path, or None when it does not exist."""
        node = self._lookup(path)
        if node is None:
            return None
        return FSStat(
            path=_join(_split(path)),
            name=node.name or "/",
            mode=node.mode,
            owner=node.owner,
            size=node.size,
            modified_at=node.modified_at,
        )

    def exists(self, path: str) -> bool:
        return self._lookup(path) is not None

    def is_dir(self, path: str) -> bool:
        node = self._lookup(path)
        return node is not None and node.is_dir

    def is_file(self, path: str) -> bool:
        node = self._lookup(path)
        return node is not None and node.is_file

    def readdir(self, path: str) -> List[str]:
        node = self._lookup(path)
        if node is None:
            raise VFSError("ENOENT", path)
        if not isinstance(node, DirectoryNode):
            raise VFSError("ENOTDIR", path)
        return list(node.entries)

    def read_file(self, path: str) -> bytes:
        node = self._lookup(path)
        if node is None:
            raise VFSError("ENOENT", path)
        if not isinstance(node, FileNode):
            raise VFSError("EISDIR", path)
        return node.contents

    def read_text(self, path: str) -> str:
        return self.read_file(path).decode("utf-8", errors="replace")

    def walk(self, path: str = "/") -> Iterator[Tuple[str, FSStat]]:
        """Yield (path, stat) for path and every node below it, depth first."""
        start = self.stat(path)
        if start is None:
            raise VFSError("ENOENT", path)
        yield start.path, start
        if start.is_dir:
            for name in self.readdir(start.path):
                child = start.path.rstrip("/") + "/" + name
                yield from self.walk(child)

    # -- mutations --

    def mkdir(self, path: str, mode: int = DEFAULT_DIR_MODE, owner: Optional[str] = None) -> None:
        segments = _split(path)
        if not segments:
            raise VFSError("EEXIST", "/")
        parent, name = self._parent_of(path)
        if name in parent.entries:
            raise VFSError("EEXIST", path)
        parent.entries[name] = DirectoryNode(
            name=name,
            mode=S_IFDIR | (mode & PERMISSION_BITS),
            owner=owner or self.default_owner,
            modified_at=self._clock(),
            parent=parent,
        )
        self._touch_parent(parent)

    def mkdir_tree(self, path: str, mode: int = DEFAULT_DIR_MODE, owner: Optional[str] = None) -> None:
        """mkdir -p: create path and any missing ancestors."""
        segments = _split(path)
        for depth in range(1, len(segments) + 1):
            current = _join(segments[:depth])
            node = self._lookup(current)
            if node is None:
                self.mkdir(current, mode=mode, owner=owner)
            elif not node.is_dir:
                raise VFSError("ENOTDIR", current)

    def write_file(
        self,
        path: str,
        data: Union[bytes, str],
        owner: Optional[str] = None,
        mode: int = DEFAULT_FILE_MODE,
    ) -> None:
        """Create or replace a regular file; existing files keep owner and mode."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        parent, name = self._parent_of(path)
        existing = parent.entries.get(name)
        now = self._clock()
        if existing is not None:
            if not isinstance(existing, FileNode):
                raise VFSError("EISDIR", path)
            existing.contents = data
            existing.modified_at = now
            return
        parent.entries[name] = FileNode(
            name=name,
            mode=S_IFREG | (mode & PERMISSION_BITS),
            owner=owner or self.default_owner,
            modified_at=now,
            parent=parent,
            contents=data,
        )
        self._touch_parent(parent)

    def touch(self, path: str, owner: Optional[str] = None) -> None:
        node = self._lookup(path)
        if node is None:
            self.write_file(path, b"", owner=owner)
        else:
            node.modified_at = self._clock()

    def unlink(self, path: str) -> None:
        parent, name = self._parent_of(path)
        node = parent.entries.get(name)
        if node is None:
            raise VFSError("ENOENT", path)
        if node.is_dir:
            raise VFSError("EISDIR", path)
        del parent.entries[name]
        self._touch_parent(parent)

    def rmdir(self, path: str) -> None:
        parent, name = self._parent_of(path)
        node = parent.entries.get(name)
        if node is None:
            raise VFSError("ENOENT", path)
        if not isinstance(node, DirectoryNode):
            raise VFSError("ENOTDIR", path)
        if node.entries:
            raise VFSError("ENOTEMPTY", path)
        del parent.entries[name]
        self._touch_parent(parent)

    def remove_tree(self, path: str) -> None:
        """rm -r: remove path and everything below it."""
        parent, name = self._parent_of(path)
        node = parent.entries.pop(name, None)
        if node is None:
            raise VFSError("ENOENT", path)
        node.parent = None
        self._touch_parent(parent)

    def rename(self, old_path: str, new_path: str) -> None:
        """Move old_path to new_path, replacing whatever is already there."""
        old_parent, old_name = self._parent_of(old_path)
        node = old_parent.entries.get(old_name)
        if node is None:
            raise VFSError("ENOENT", old_path)
        source = _split(old_path)
        target = _split(new_path)
        if target == source:
            return
        if target[: len(source)] == source:
            raise VFSError("EINVAL", new_path)
        new_parent, new_name = self._parent_of(new_path)
        existing = new_parent.entries.get(new_name)
        if existing is not None:
            if existing.is_dir and not node.is_dir:
                raise VFSError("EISDIR", new_path)
            if node.is_dir and not existing.is_dir:
                raise VFSError("ENOTDIR", new_path)
            if isinstance(existing, DirectoryNode) and existing.entries:
                raise VFSError("ENOTEMPTY", new_path)
        del old_parent.entries[old_name]
        node.name = new_name
        node.parent = new_parent
        new_parent.entries[new_name] = node
        self._touch_parent(old_parent)
        self._touch_parent(new_parent)

    def copy_file(self, source: str, destination: str, owner: Optional[str] = None) -> None:
        node = self._lookup(source)
        if node is None:
            raise VFSError("ENOENT", source)
        if not isinstance(node, FileNode):
            raise VFSError("EISDIR", source)
        self.write_file(destination, node.contents, owner=owner, mode=node.permissions)

    def copy_tree(self, source: str, destination: str, owner: Optional[str] = None) -> None:
        """cp -r: copy a file or a whole directory tree to destination."""
        node = self._lookup(source)
        if node is None:
            raise VFSError("ENOENT", source)
        if isinstance(node, FileNode):
            self.copy_file(source, destination, owner=owner)
            return
        if not self.is_dir(destination):
            self.mkdir(destination, mode=node.permissions, owner=owner)
        for name in list(node.entries):
            self.copy_tree(
                source.rstrip("/") + "/" + name,
                destination.rstrip("/") + "/" + name,
                owner=owner,
            )

    def chmod(self, path: str, mode: int) -> None:
        node = self._lookup(path)
        if node is None:
            raise VFSError("ENOENT", path)
        node.mode = (node.mode & S_IFMT) | (mode & PERMISSION_BITS)

    def chown(self, path: str, owner: str) -> None:
        node = self._lookup(path)
        if node is None:
            raise VFSError("ENOENT", path)
        node.owner = owner

    def subtree(self, path: str) -> "VirtualFS":
        """Return a filesystem whose "/" is the directory at path.

        Nodes are shared, so writes through the view land in this tree.
        """
        node = self._lookup(path)
        if node is None:
            raise VFSError("ENOENT", path)
        if not isinstance(node, DirectoryNode):
            raise VFSError("ENOTDIR", path)
        return VirtualFS(default_owner=self.default_owner, clock=self._clock, root=node)

    # -- construction --

    @classmethod
    def from_structure(
        cls,
        structure: Optional[Dict[str, Any]],
        default_owner: str = "student",
        clock: Callable[[], float] = time.time,
    ) -> "VirtualFS":
        """Build a filesystem from a nested {"root": {name: node}} definition."""
        fs = cls(default_owner=default_owner, clock=clock)
        if not structure:
            return fs
        entries = structure.get("root", structure)
        if not isinstance(entries, dict):
            raise ValueError("filesystem definition must map names to nodes")
        fs._populate("/", entries)
        LOGGER.debug("Built virtual filesystem with %d top-level entries", len(entries))
        return fs

    def _populate(self, base: str, entries: Dict[str, Any]) -> None:
        for name, definition in entries.items():
            if not isinstance(definition, dict):
                raise ValueError(f"invalid node definition for {name!r}")
            path = base.rstrip("/") + "/" + name
            owner = definition.get("owner") or self.default_owner
            kind = definition.get("type", "directory" if "children" in definition else "file")
            if kind == "directory":
                mode = parse_permissions(definition.get("permissions", DEFAULT_DIR_MODE))
                self.mkdir(path, mode=mode, owner=owner)
                self._populate(path, definition.get("children") or {})
            elif kind == "file":
                mode = parse_permissions(definition.get("permissions", DEFAULT_FILE_MODE))
                self.write_file(path, definition.get("content", ""), owner=owner, mode=mode)
            else:
                raise ValueError(f"unknown node type {kind!r} for {path}")
