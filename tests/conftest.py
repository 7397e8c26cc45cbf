"""Shared fixtures for the shellquest test suite."""

import copy

import pytest

from shellquest.command_handler import ExecutionContext
from shellquest.engine import TrainingSession
from shellquest.mission import Adventure
from shellquest.progress_store import ProgressStore
from shellquest.vfs import VirtualFS

FILESYSTEM = {
    "root": {
        "home": {
            "type": "directory",
            "children": {
                "student": {
                    "type": "directory",
                    "children": {
                        "notes.txt": {"type": "file", "content": "alpha\nbeta\ngamma\n"},
                        "report.txt": {"type": "file", "content": "status: ok\n"},
                        "docs": {
                            "type": "directory",
                            "children": {
                                "guide.md": {"type": "file", "content": "# Guide\nread me\n"},
                            },
                        },
                        ".hidden": {"type": "file", "content": "secret\n"},
                    },
                },
            },
        },
        "root": {
            "type": "directory",
            "owner": "root",
            "permissions": "700",
            "children": {
                "secret.txt": {"type": "file", "owner": "root", "permissions": "600", "content": "flag\n"},
            },
        },
        "var": {
            "type": "directory",
            "children": {
                "log": {
                    "type": "directory",
                    "children": {
                        "app.log": {"type": "file", "content": "INFO start\nERROR disk full\nINFO stop\n"},
                    },
                },
            },
        },
        "tmp": {"type": "directory", "children": {}},
    }
}

ADVENTURE = {
    "id": "unit",
    "title": "Unit Adventure",
    "environment": {"MISSION": "unit"},
    "criticalPaths": ["/home/student/report.txt"],
    "initialFileSystem": FILESYSTEM,
    "missions": [
        {
            "id": "basics",
            "title": "Basics",
            "story": "Find your way around.",
            "tasks": [
                {
                    "id": "pwd",
                    "description": "Print the working directory.",
                    "outputPattern": "^/home/student$",
                    "hints": [
                        {"level": 1, "text": "Where are you?"},
                        {"level": 2, "text": "print working directory"},
                        {"level": 3, "text": "pwd"},
                    ],
                },
                {
                    "id": "mkdir",
                    "description": "Create a work directory.",
                    "outputCheck": "dirExists",
                    "outputCheckParams": "/home/student/work",
                },
            ],
            "onComplete": {"message": "Nice work."},
        },
        {
            "id": "privilege",
            "title": "Privilege",
            "tasks": [
                {
                    "id": "read-secret",
                    "description": "Read the root secret.",
                    "outputPattern": "flag",
                },
            ],
        },
    ],
}


@pytest.fixture
def fs():
    """A small filesystem with a home directory and a root-only area."""
    return VirtualFS.from_structure(FILESYSTEM, default_owner="student")


@pytest.fixture
def ctx():
    """Unprivileged context sitting in the student's home directory."""
    return ExecutionContext(current_path="/home/student", username="student")


@pytest.fixture
def adventure_data():
    """Raw adventure document; a fresh copy per test."""
    return copy.deepcopy(ADVENTURE)


@pytest.fixture
def adventure(adventure_data):
    """Two-mission adventure built on the shared filesystem."""
    return Adventure.from_dict(adventure_data)


@pytest.fixture
def store(tmp_path):
    """Progress store writing under a temporary directory."""
    return ProgressStore(tmp_path / "progress")


@pytest.fixture
def session(adventure, store):
    """Training session with a fixed password and a known remote host."""
    session = TrainingSession(
        adventure,
        username="student",
        hostname="lab",
        sudo_password="hunter2",
        remote_hosts=["remote-server"],
        confirm_destructive=True,
        history_limit=100,
        store=store,
        clock=lambda: 1000.0,
    )
    yield session
    session.close()


@pytest.fixture
def bare_session(store):
    """Training session without an adventure."""
    session = TrainingSession(
        username="student",
        hostname="lab",
        sudo_password="hunter2",
        remote_hosts=["remote-server"],
        confirm_destructive=False,
        store=store,
    )
    yield session
    session.close()
