"""Tests for PlanStore filesystem operations."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from agentplan.errors import (
    NoActivePhaseError,
    PlanLockedError,
    TaskNotFoundError,
    ValidationError,
)
from agentplan.models import Task
from agentplan.plan_store import PlanStore

ROADMAP = """# Roadmap

## Milestone: MVP

### Phase 1: Setup [x]

### Phase 2: Core [>]

### Phase 3: Polish
"""

PHASE_2_PLAN = """# Phase 2: Core Plan

## Tasks

### Task 1: Build parser [x@agent1]

**Acceptance Criteria:**
- [x] parses
"""


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Project with a roadmap and one phase plan."""
    (tmp_path / "ROADMAP.md").write_text(ROADMAP)
    phase_dir = tmp_path / "phases" / "02-core"
    phase_dir.mkdir(parents=True)
    (phase_dir / "02-PLAN.md").write_text(PHASE_2_PLAN)
    return tmp_path


class TestCreateTask:
    """Tests for PlanStore.create_task()."""

    def test_appends_to_active_phase(self, project: Path) -> None:
        """Task goes to the in-progress phase and takes the next number."""
        store = PlanStore(project)

        task = store.create_task("Add lexer", "Tokenize input")

        assert task.id == "2-2"
        assert task.status == "pending"
        assert task.owner is None
        content = (project / "phases" / "02-core" / "02-PLAN.md").read_text()
        assert "### Task 2: Add lexer [ ]" in content
        assert "**Goal:** Tokenize input" in content

    def test_created_task_is_listed(self, project: Path) -> None:
        store = PlanStore(project)
        store.create_task("Add lexer")

        assert [t.id for t in store.get_tasks()] == ["2-1", "2-2"]

    def test_strips_title(self, project: Path) -> None:
        task = PlanStore(project).create_task("  padded  ")
        assert task.title == "padded"

    def test_rejects_empty_title(self, project: Path) -> None:
        """Whitespace-only titles are rejected without touching the plan."""
        plan = project / "phases" / "02-core" / "02-PLAN.md"

        with pytest.raises(ValidationError):
            PlanStore(project).create_task("   ")

        assert plan.read_text() == PHASE_2_PLAN

    def test_accepts_200_char_title(self, project: Path) -> None:
        task = PlanStore(project).create_task("a" * 200)
        assert len(task.title) == 200

    def test_rejects_201_char_title(self, project: Path) -> None:
        with pytest.raises(ValidationError):
            PlanStore(project).create_task("a" * 201)

    def test_creates_phase_directory_when_missing(self, tmp_path: Path) -> None:
        """Missing phase directory and plan document are created on demand."""
        (tmp_path / "ROADMAP.md").write_text("### Phase 4: New things\n")
        store = PlanStore(tmp_path)

        task = store.create_task("First")

        plan = tmp_path / "phases" / "04-phase4" / "04-PLAN.md"
        assert plan.exists()
        assert plan.read_text().startswith("# Phase 4: New things Plan\n")
        assert task.id == "4-1"

    def test_falls_back_to_first_pending_phase(self, tmp_path: Path) -> None:
        (tmp_path / "ROADMAP.md").write_text(
            "### Phase 1: Done [x]\n### Phase 2: Next\n### Phase 3: Later\n"
        )
        task = PlanStore(tmp_path).create_task("Something")
        assert task.phase == 2

    def test_no_active_phase(self, tmp_path: Path) -> None:
        (tmp_path / "ROADMAP.md").write_text("### Phase 1: Done [x]\n")
        with pytest.raises(NoActivePhaseError):
            PlanStore(tmp_path).create_task("Something")

    def test_missing_roadmap_has_no_active_phase(self, tmp_path: Path) -> None:
        with pytest.raises(NoActivePhaseError):
            PlanStore(tmp_path).create_task("Something")

    def test_releases_lock(self, project: Path) -> None:
        PlanStore(project).create_task("Locked write")
        assert not (project / "phases" / "02-core" / "02-PLAN.md.lock").exists()

    def test_locked_by_other_process(self, project: Path) -> None:
        """A lock held by another live process blocks the write."""
        lock = project / "phases" / "02-core" / "02-PLAN.md.lock"
        lock.write_text(str(os.getppid()))

        with pytest.raises(PlanLockedError):
            PlanStore(project).create_task("Blocked")

        assert "Blocked" not in (project / "phases" / "02-core" / "02-PLAN.md").read_text()


class TestGetTasks:
    """Tests for PlanStore.get_tasks()."""

    def test_missing_roadmap_returns_empty(self, tmp_path: Path) -> None:
        assert PlanStore(tmp_path).get_tasks() == []

    def test_missing_phases_dir_returns_empty(self, tmp_path: Path) -> None:
        (tmp_path / "ROADMAP.md").write_text(ROADMAP)
        assert PlanStore(tmp_path).get_tasks() == []

    def test_sorted_by_phase_then_number(self, project: Path) -> None:
        phase_dir = project / "phases" / "01-setup"
        phase_dir.mkdir()
        (phase_dir / "01-PLAN.md").write_text(
            "### Task 2: second [x]\n### Task 1: first [x]\n"
        )

        tasks = PlanStore(project).get_tasks()

        assert [t.id for t in tasks] == ["1-1", "1-2", "2-1"]

    def test_phase_dir_without_plan_is_skipped(self, project: Path) -> None:
        (project / "phases" / "03-polish").mkdir()
        assert [t.id for t in PlanStore(project).get_tasks()] == ["2-1"]

    def test_ignores_non_phase_entries(self, project: Path) -> None:
        (project / "phases" / "notes").mkdir()
        (project / "phases" / "README.md").write_text("hi")
        assert [t.id for t in PlanStore(project).get_tasks()] == ["2-1"]

    def test_get_task(self, project: Path) -> None:
        task = PlanStore(project).get_task("2-1")
        assert task.title == "Build parser"
        assert task.owner == "agent1"

    @pytest.mark.parametrize("task_id", ["2-9", "9-1", "abc", "2"])
    def test_get_task_not_found(self, project: Path, task_id: str) -> None:
        with pytest.raises(TaskNotFoundError):
            PlanStore(project).get_task(task_id)


class TestPhasesAndMilestones:
    """Tests for derived phase and milestone statuses."""

    def test_phase_status_derived_from_tasks(self, project: Path) -> None:
        """Phase 2 is completed once all its tasks are."""
        phases = PlanStore(project).get_phases()
        by_number = {p.number: p for p in phases}

        assert by_number[1].status == "completed"
        assert by_number[2].status == "completed"
        assert by_number[3].status == "pending"
        assert [t.id for t in by_number[2].tasks] == ["2-1"]

    def test_milestone_in_progress_with_pending_task(self, project: Path) -> None:
        store = PlanStore(project)
        store.create_task("More work")
        store.update_task("2-2", status="in_progress", owner="agent1")

        milestones = store.get_milestones()

        assert milestones[0].name == "MVP"
        assert milestones[0].status == "in_progress"

    def test_missing_roadmap(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        assert store.get_phases() == []
        assert store.get_milestones() == []


class TestUpdateTask:
    """Tests for PlanStore.update_task() and set_criterion()."""

    def test_update_status_and_owner(self, project: Path) -> None:
        store = PlanStore(project)
        store.create_task("New")

        task = store.update_task("2-2", status="in_progress", owner="agent3")

        assert task.status == "in_progress"
        assert task.owner == "agent3"
        content = (project / "phases" / "02-core" / "02-PLAN.md").read_text()
        assert "### Task 2: New [>@agent3]" in content

    def test_update_keeps_owner_when_omitted(self, project: Path) -> None:
        task = PlanStore(project).update_task("2-1", status="completed")
        assert task.owner == "agent1"

    def test_update_clears_owner(self, project: Path) -> None:
        task = PlanStore(project).update_task("2-1", owner=None)
        assert task.owner is None

    def test_update_rejects_bad_owner(self, project: Path) -> None:
        with pytest.raises(ValidationError):
            PlanStore(project).update_task("2-1", owner="two words")

    def test_update_unknown_task(self, project: Path) -> None:
        with pytest.raises(TaskNotFoundError):
            PlanStore(project).update_task("2-7", status="completed")

    def test_update_when_plan_document_vanishes(self, project: Path) -> None:
        """A phase directory removed after lookup raises instead of writing."""
        store = PlanStore(project)
        task = Task(id="9-1", title="Gone", status="pending", owner=None, phase=9, number=1)

        with patch.object(store, "get_task", return_value=task):
            with pytest.raises(TaskNotFoundError, match="Plan document"):
                store.update_task("9-1", status="completed")
            with pytest.raises(TaskNotFoundError, match="Plan document"):
                store.set_criterion("9-1", 0, True)

        assert not (project / "phases" / "09-phase9").exists()

    def test_set_criterion(self, project: Path) -> None:
        store = PlanStore(project)
        task = store.set_criterion("2-1", 0, False)
        assert (task.criteria_done, task.criteria_total) == (0, 1)


class TestApproval:
    """Tests for plan approval."""

    def test_approve_plan(self, project: Path) -> None:
        store = PlanStore(project)
        plan = project / "phases" / "02-core" / "02-PLAN.md"

        assert not store.is_approved(plan)
        store.approve_plan(plan)
        assert store.is_approved(plan)

    def test_approve_twice_is_identical(self, project: Path) -> None:
        store = PlanStore(project)
        plan = project / "phases" / "02-core" / "02-PLAN.md"

        store.approve_plan(plan)
        first = plan.read_text()
        store.approve_plan(plan)

        assert plan.read_text() == first

    def test_approval_keeps_tasks(self, project: Path) -> None:
        store = PlanStore(project)
        store.approve_plan(project / "phases" / "02-core" / "02-PLAN.md")
        assert [t.id for t in store.get_tasks()] == ["2-1"]

    def test_missing_plan(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        missing = tmp_path / "nope.md"

        assert store.is_approved(missing) is False
        store.approve_plan(missing)
        assert not missing.exists()

    def test_plan_path(self, project: Path) -> None:
        store = PlanStore(project)
        assert store.plan_path(2) == project / "phases" / "02-core" / "02-PLAN.md"
        assert store.plan_path(5) is None
