"""Adventures, missions, tasks and the progression state machine.

An Adventure is an ordered list of Missions, each an ordered list of Tasks,
plus the filesystem the learner starts with. MissionTracker owns the
ProgressState and advances it after every command:

- every incomplete task of the current mission is checked, so a command
  may complete a task ahead of the one shown as current;
- completing the last task of a mission completes the mission and moves to
  the next one; completing the last mission finishes the adventure.

completed_tasks and completed_missions only ever grow until reset().
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from .validation import ValidationContext, evaluate_task, is_known_validator
from .vfs import VirtualFS

LOGGER = logging.getLogger(__name__)

HINT_LEVELS = (1, 2, 3)
BASE_SCORE = 1000
HINT_PENALTY = 10
COMPLETION_BONUS = 500


class AdventureError(Exception):
    """An adventure document is missing required fields or is malformed."""


# ---------- Content model ----------


@dataclass
class Hint:
    level: int
    text: str


@dataclass
class Task:
    id: str
    description: str
    output_pattern: Optional[str] = None
    output_check: Optional[str] = None
    output_check_params: Any = None
    require_output: bool = False
    hints: List[Hint] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        if "id" not in data:
            raise AdventureError(f"task without an id: {data!r}")
        hints = [Hint(level=int(item.get("level", 1)), text=str(item.get("text", ""))) for item in data.get("hints", [])]
        task = cls(
            id=str(data["id"]),
            description=str(data.get("description", "")),
            output_pattern=data.get("outputPattern"),
            output_check=data.get("outputCheck"),
            output_check_params=data.get("outputCheckParams"),
            require_output=bool(data.get("requireOutput", False)),
            hints=sorted(hints, key=lambda hint: hint.level),
        )
        if task.output_check and not is_known_validator(task.output_check):
            LOGGER.warning("Task %s uses unknown validator %r", task.id, task.output_check)
        return task

    def hint(self, level: int) -> Optional[str]:
        for hint in self.hints:
            if hint.level == level:
                return hint.text
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "description": self.description}
        if self.output_pattern:
            data["outputPattern"] = self.output_pattern
        if self.output_check:
            data["outputCheck"] = self.output_check
        if self.output_check_params is not None:
            data["outputCheckParams"] = self.output_check_params
        if self.require_output:
            data["requireOutput"] = True
        data["hints"] = [{"level": hint.level, "text": hint.text} for hint in self.hints]
        return data


@dataclass
class Mission:
    id: str
    title: str
    story: str = ""
    tasks: List[Task] = field(default_factory=list)
    on_complete: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Mission":
        if "id" not in data:
            raise AdventureError(f"mission without an id: {data.get('title')!r}")
        on_complete = data.get("onComplete")
        if isinstance(on_complete, dict):
            on_complete = on_complete.get("message") or on_complete.get("text")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", data["id"])),
            story=str(data.get("story", "")),
            tasks=[Task.from_dict(item) for item in data.get("tasks", [])],
            on_complete=on_complete,
        )


@dataclass
class Adventure:
    id: str
    title: str
    missions: List[Mission]
    description: str = ""
    initial_filesystem: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, str] = field(default_factory=dict)
    critical_paths: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Adventure":
        if not isinstance(data, dict):
            raise AdventureError("adventure document must be a JSON object")
        for key in ("id", "missions"):
            if key not in data:
                raise AdventureError(f"adventure is missing '{key}'")
        missions = [Mission.from_dict(item) for item in data["missions"]]
        task_ids = [task.id for mission in missions for task in mission.tasks]
        duplicates = sorted({task_id for task_id in task_ids if task_ids.count(task_id) > 1})
        if duplicates:
            raise AdventureError(f"duplicate task ids: {', '.join(duplicates)}")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", data["id"])),
            description=str(data.get("description", "")),
            missions=missions,
            initial_filesystem=data.get("initialFileSystem") or {},
            environment={str(k): str(v) for k, v in (data.get("environment") or {}).items()},
            critical_paths=[str(path) for path in data.get("criticalPaths", [])],
        )

    @property
    def total_tasks(self) -> int:
        return sum(len(mission.tasks) for mission in self.missions)

    def find_task(self, task_id: str) -> Optional[Task]:
        for mission in self.missions:
            for task in mission.tasks:
                if task.id == task_id:
                    return task
        return None

    def build_filesystem(self, default_owner: str = "student") -> VirtualFS:
        try:
            return VirtualFS.from_structure(self.initial_filesystem, default_owner=default_owner)
        except (ValueError, KeyError) as exc:
            raise AdventureError(f"invalid initialFileSystem in {self.id}: {exc}") from exc


def load_adventure(path: Union[str, Path]) -> Adventure:
    """Read and parse an adventure JSON file."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise AdventureError(f"cannot read adventure {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise AdventureError(f"adventure {path} is not valid JSON: {exc}") from exc
    adventure = Adventure.from_dict(data)
    LOGGER.info("Loaded adventure %s (%d missions, %d tasks)", adventure.id, len(adventure.missions), adventure.total_tasks)
    return adventure


# ---------- Progress ----------


@dataclass
class ProgressState:
    current_mission_index: int = 0
    current_task_index: int = 0
    completed_tasks: Set[str] = field(default_factory=set)
    completed_missions: Set[str] = field(default_factory=set)
    hints_used: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentMissionIndex": self.current_mission_index,
            "currentTaskIndex": self.current_task_index,
            "completedTasks": sorted(self.completed_tasks),
            "completedMissions": sorted(self.completed_missions),
            "hintsUsed": dict(self.hints_used),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressState":
        return cls(
            current_mission_index=int(data.get("currentMissionIndex", 0)),
            current_task_index=int(data.get("currentTaskIndex", 0)),
            completed_tasks=set(data.get("completedTasks", [])),
            completed_missions=set(data.get("completedMissions", [])),
            hints_used={str(k): int(v) for k, v in (data.get("hintsUsed") or {}).items()},
        )


@dataclass(frozen=True)
class TaskCompleted:
    task_id: str
    mission_id: str
    description: str

    kind = "task_completed"


@dataclass(frozen=True)
class MissionCompleted:
    mission_id: str
    title: str
    message: Optional[str] = None

    kind = "mission_completed"


@dataclass(frozen=True)
class AdventureCompleted:
    adventure_id: str
    score: int

    kind = "adventure_completed"


ProgressEvent = Union[TaskCompleted, MissionCompleted, AdventureCompleted]


class MissionTracker:
    """Applies validation results to an adventure's ProgressState."""

    def __init__(self, adventure: Adventure, progress: Optional[ProgressState] = None):
        self.adventure = adventure
        self.progress = progress or ProgressState()
        self._sync()

    @property
    def is_complete(self) -> bool:
        return self.progress.current_mission_index >= len(self.adventure.missions)

    @property
    def current_mission(self) -> Optional[Mission]:
        if self.is_complete:
            return None
        return self.adventure.missions[self.progress.current_mission_index]

    @property
    def current_task(self) -> Optional[Task]:
        mission = self.current_mission
        if mission is None or self.progress.current_task_index >= len(mission.tasks):
            return None
        return mission.tasks[self.progress.current_task_index]

    def record(self, ctx: ValidationContext) -> List[ProgressEvent]:
        """Check ctx against the current mission and advance progress."""
        mission = self.current_mission
        if mission is None:
            return []
        events: List[ProgressEvent] = []
        for task in mission.tasks:
            if task.id in self.progress.completed_tasks:
                continue
            if evaluate_task(task, ctx):
                self.progress.completed_tasks.add(task.id)
                events.append(TaskCompleted(task_id=task.id, mission_id=mission.id, description=task.description))
                LOGGER.info("Task completed: %s", task.id)
        if events:
            events.extend(self._sync())
        return events

    def _sync(self) -> List[ProgressEvent]:
        """Complete finished missions and point current_task_index at the first open task."""
        events: List[ProgressEvent] = []
        missions = self.adventure.missions
        self.progress.current_mission_index = max(0, min(self.progress.current_mission_index, len(missions)))
        while not self.is_complete:
            mission = missions[self.progress.current_mission_index]
            if any(task.id not in self.progress.completed_tasks for task in mission.tasks):
                break
            if mission.id not in self.progress.completed_missions:
                self.progress.completed_missions.add(mission.id)
                events.append(MissionCompleted(mission_id=mission.id, title=mission.title, message=mission.on_complete))
                LOGGER.info("Mission completed: %s", mission.id)
            self.progress.current_mission_index += 1
            if self.is_complete:
                events.append(AdventureCompleted(adventure_id=self.adventure.id, score=self.score()))
                LOGGER.info("Adventure completed: %s", self.adventure.id)

        mission = self.current_mission
        self.progress.current_task_index = 0
        if mission is not None:
            for index, task in enumerate(mission.tasks):
                if task.id not in self.progress.completed_tasks:
                    self.progress.current_task_index = index
                    break
        return events

    def request_hint(self, level: int = 1) -> Optional[str]:
        """Reveal a hint for the current task; hints_used keeps the highest level seen."""
        task = self.current_task
        if task is None or level not in HINT_LEVELS:
            return None
        text = task.hint(level)
        if text is None:
            return None
        self.progress.hints_used[task.id] = max(level, self.progress.hints_used.get(task.id, 0))
        return text

    def completion_percentage(self) -> int:
        total = self.adventure.total_tasks
        if total == 0:
            return 100 if self.is_complete else 0
        done = sum(1 for m in self.adventure.missions for t in m.tasks if t.id in self.progress.completed_tasks)
        return round(done * 100 / total)

    def score(self) -> int:
        score = BASE_SCORE - sum(level * HINT_PENALTY for level in self.progress.hints_used.values())
        if len(self.progress.completed_missions) >= len(self.adventure.missions):
            score += COMPLETION_BONUS
        return max(score, 0)

    def reset(self) -> None:
        self.progress = ProgressState()
        self._sync()
