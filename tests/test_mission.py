"""Tests for shellquest.mission module."""

import json
from pathlib import Path

import pytest

from shellquest.mission import (
    BASE_SCORE,
    COMPLETION_BONUS,
    HINT_PENALTY,
    Adventure,
    AdventureCompleted,
    AdventureError,
    MissionCompleted,
    MissionTracker,
    ProgressState,
    TaskCompleted,
    load_adventure,
)
from shellquest.validation import ValidationContext

BUNDLED = Path(__file__).resolve().parents[1] / "data" / "adventures" / "training.json"


class TestAdventureParsing:
    """Tests for reading adventure documents."""

    def test_from_dict(self, adventure):
        """Missions, tasks and hints are parsed in order."""
        assert adventure.id == "unit"
        assert [mission.id for mission in adventure.missions] == ["basics", "privilege"]
        assert adventure.total_tasks == 3
        assert adventure.missions[0].on_complete == "Nice work."
        assert adventure.find_task("pwd").hint(2) == "print working directory"

    def test_missing_id(self):
        """An adventure needs an id."""
        with pytest.raises(AdventureError, match="missing 'id'"):
            Adventure.from_dict({"missions": []})

    def test_duplicate_task_ids(self, adventure_data):
        """Task ids must be unique across missions."""
        data = adventure_data
        data["missions"][1]["tasks"][0]["id"] = "pwd"
        with pytest.raises(AdventureError, match="duplicate task ids: pwd"):
            Adventure.from_dict(data)

    def test_task_round_trip(self, adventure):
        """Task.to_dict uses the document's key names."""
        data = adventure.find_task("mkdir").to_dict()
        assert data["outputCheck"] == "dirExists"
        assert data["outputCheckParams"] == "/home/student/work"

    def test_build_filesystem(self, adventure):
        """The initial filesystem is built fresh on every call."""
        first = adventure.build_filesystem()
        first.unlink("/home/student/notes.txt")
        assert adventure.build_filesystem().exists("/home/student/notes.txt")

    def test_invalid_filesystem(self):
        """Bad filesystem definitions raise AdventureError."""
        broken = Adventure.from_dict({"id": "x", "missions": [], "initialFileSystem": {"root": {"a": "b"}}})
        with pytest.raises(AdventureError):
            broken.build_filesystem()

    def test_load_adventure(self, tmp_path, adventure_data):
        """load_adventure reads JSON from disk."""
        path = tmp_path / "adv.json"
        path.write_text(json.dumps(adventure_data), encoding="utf-8")
        assert load_adventure(path).title == "Unit Adventure"

    def test_load_adventure_invalid_json(self, tmp_path):
        """Malformed JSON is reported as AdventureError."""
        path = tmp_path / "adv.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(AdventureError, match="not valid JSON"):
            load_adventure(path)

    def test_bundled_adventure_loads(self):
        """The shipped training adventure parses and builds its filesystem."""
        adventure = load_adventure(BUNDLED)
        fs = adventure.build_filesystem()
        assert fs.stat("/root/secret.txt").owner == "root"
        assert fs.stat("/home").owner == "student"
        assert all(len(task.hints) == 3 for mission in adventure.missions for task in mission.tasks)


class TestMissionTracker:
    """Tests for progression."""

    def test_initial_position(self, adventure):
        """A new tracker starts on the first task."""
        tracker = MissionTracker(adventure)
        assert tracker.current_mission.id == "basics"
        assert tracker.current_task.id == "pwd"
        assert tracker.completion_percentage() == 0

    def test_task_completion(self, adventure):
        """A matching command completes the task."""
        tracker = MissionTracker(adventure)
        events = tracker.record(ValidationContext(stdout="/home/student"))
        assert events == [TaskCompleted(task_id="pwd", mission_id="basics", description="Print the working directory.")]
        assert tracker.current_task.id == "mkdir"

    def test_non_matching_command(self, adventure):
        """Unrelated output changes nothing."""
        tracker = MissionTracker(adventure)
        assert tracker.record(ValidationContext(stdout="hello")) == []
        assert tracker.progress.completed_tasks == set()

    def test_out_of_order_completion(self, adventure):
        """A later task of the current mission can complete first."""
        fs = adventure.build_filesystem()
        fs.mkdir("/home/student/work")
        tracker = MissionTracker(adventure)
        events = tracker.record(ValidationContext(stdout="", fs=fs))
        assert [event.task_id for event in events] == ["mkdir"]
        assert tracker.current_task.id == "pwd"

    def test_only_current_mission_checked(self, adventure):
        """Tasks of later missions are not validated early."""
        tracker = MissionTracker(adventure)
        assert tracker.record(ValidationContext(stdout="flag")) == []

    def test_mission_and_adventure_completion(self, adventure):
        """Finishing every task emits mission and adventure events."""
        fs = adventure.build_filesystem()
        fs.mkdir("/home/student/work")
        tracker = MissionTracker(adventure)
        events = tracker.record(ValidationContext(stdout="/home/student", fs=fs))
        assert isinstance(events[-1], MissionCompleted)
        assert events[-1].message == "Nice work."
        assert tracker.current_mission.id == "privilege"

        events = tracker.record(ValidationContext(stdout="flag\n", fs=fs))
        kinds = [type(event) for event in events]
        assert kinds == [TaskCompleted, MissionCompleted, AdventureCompleted]
        assert tracker.is_complete
        assert tracker.current_task is None
        assert tracker.completion_percentage() == 100
        assert events[-1].score == BASE_SCORE + COMPLETION_BONUS

    def test_record_after_completion(self, adventure):
        """A finished adventure ignores further commands."""
        progress = ProgressState(current_mission_index=2, completed_tasks={"pwd", "mkdir", "read-secret"})
        tracker = MissionTracker(adventure, progress)
        assert tracker.record(ValidationContext(stdout="flag")) == []

    def test_hints_and_score(self, adventure):
        """Hints keep the highest level and cost points."""
        tracker = MissionTracker(adventure)
        assert tracker.request_hint(1) == "Where are you?"
        assert tracker.request_hint(3) == "pwd"
        assert tracker.request_hint(2) == "print working directory"
        assert tracker.progress.hints_used == {"pwd": 3}
        assert tracker.score() == BASE_SCORE - 3 * HINT_PENALTY

    def test_hint_unavailable(self, adventure):
        """Missing or out-of-range hints return None."""
        tracker = MissionTracker(adventure)
        assert tracker.request_hint(4) is None
        tracker.record(ValidationContext(stdout="/home/student"))
        assert tracker.request_hint(1) is None
        assert tracker.progress.hints_used == {}

    def test_resume_resyncs(self, adventure):
        """Loaded progress is normalized onto the first open task."""
        progress = ProgressState(current_mission_index=0, current_task_index=0, completed_tasks={"pwd", "mkdir"})
        tracker = MissionTracker(adventure, progress)
        assert tracker.current_mission.id == "privilege"
        assert "basics" in tracker.progress.completed_missions

    def test_reset(self, adventure):
        """reset() returns to the very beginning."""
        tracker = MissionTracker(adventure)
        tracker.record(ValidationContext(stdout="/home/student"))
        tracker.request_hint(1)
        tracker.reset()
        assert tracker.progress == ProgressState()
        assert tracker.current_task.id == "pwd"


class TestProgressState:
    """Tests for progress serialization."""

    def test_round_trip(self):
        """to_dict and from_dict agree."""
        state = ProgressState(
            current_mission_index=1,
            current_task_index=2,
            completed_tasks={"b", "a"},
            completed_missions={"m"},
            hints_used={"a": 2},
        )
        data = state.to_dict()
        assert data["completedTasks"] == ["a", "b"]
        assert ProgressState.from_dict(data) == state
