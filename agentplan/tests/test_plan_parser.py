"""Tests for roadmap and plan document parsing."""

from agentplan.plan_parser import (
    CriteriaLine,
    Heading,
    MilestoneHeading,
    PhaseHeading,
    TaskHeading,
    append_task,
    approve,
    classify_line,
    format_marker,
    is_approved,
    marker_status,
    next_task_number,
    parse_roadmap,
    parse_tasks,
    set_criterion,
    set_task_marker,
)

PLAN = """# Phase 1: Setup Plan

## Tasks

### Task 1: Scaffold repository [x@agent1]

**Goal:** Create the project skeleton

**Acceptance Criteria:**
- [x] pyproject exists
- [x] CI runs

### Task 2: Add parser [>@agent2]

**Acceptance Criteria:**
- [x] headings
- [ ] criteria

### Task 3: Write docs [ ]

Notes here.
"""


class TestClassifyLine:
    """Tests for line tokenization."""

    def test_task_heading(self) -> None:
        """Well-formed task heading becomes a TaskHeading."""
        token = classify_line(0, "### Task 4: Do a thing [>@agent3]")
        assert isinstance(token, TaskHeading)
        assert token.number == 4
        assert token.title == "Do a thing"
        assert token.status == "in_progress"
        assert token.owner == "agent3"

    def test_task_heading_with_empty_marker(self) -> None:
        """An empty bracket means pending."""
        token = classify_line(0, "### Task 1: Empty []")
        assert isinstance(token, TaskHeading)
        assert token.status == "pending"
        assert token.owner is None

    def test_malformed_task_heading_is_plain_heading(self) -> None:
        """A task heading without a marker is classified as a plain heading."""
        token = classify_line(0, "### Task 5: No marker here")
        assert isinstance(token, Heading)
        assert token.level == 3

    def test_unknown_marker_is_plain_heading(self) -> None:
        """Markers other than x, > or space are not part of the grammar."""
        token = classify_line(0, "### Task 5: Odd [?]")
        assert isinstance(token, Heading)

    def test_phase_heading_with_marker(self) -> None:
        """Phase heading captures number, name and marker."""
        token = classify_line(0, "### Phase 2: Core engine [>]")
        assert isinstance(token, PhaseHeading)
        assert token.number == 2
        assert token.name == "Core engine"
        assert token.status == "in_progress"

    def test_phase_heading_without_marker_is_pending(self) -> None:
        """Phase heading without marker defaults to pending."""
        token = classify_line(0, "### Phase 3: Polish")
        assert isinstance(token, PhaseHeading)
        assert token.status == "pending"
        assert token.name == "Polish"

    def test_milestone_heading(self) -> None:
        """Milestone heading captures name and marker."""
        token = classify_line(0, "## Milestone: v1 [x]")
        assert isinstance(token, MilestoneHeading)
        assert token.name == "v1"
        assert token.status == "completed"

    def test_criteria_line(self) -> None:
        """Checkbox lines become criteria tokens."""
        done = classify_line(0, "- [x] works")
        open_ = classify_line(1, "- [ ] pending")
        assert isinstance(done, CriteriaLine) and done.done
        assert isinstance(open_, CriteriaLine) and not open_.done
        assert open_.text == "pending"


class TestMarkers:
    """Tests for marker helpers."""

    def test_marker_status(self) -> None:
        assert marker_status("x") == "completed"
        assert marker_status(">") == "in_progress"
        assert marker_status(" ") == "pending"
        assert marker_status("") == "pending"

    def test_format_marker_with_owner(self) -> None:
        assert format_marker("in_progress", "agent1") == ">@agent1"
        assert format_marker("completed", "agent2") == "x@agent2"

    def test_format_marker_drops_owner_for_pending(self) -> None:
        """Pending tasks never carry an owner."""
        assert format_marker("pending", "agent1") == " "


class TestParseTasks:
    """Tests for parse_tasks()."""

    def test_parses_all_tasks(self) -> None:
        """Every well-formed task heading yields a task in document order."""
        tasks = parse_tasks(PLAN, 1)

        assert [t.id for t in tasks] == ["1-1", "1-2", "1-3"]
        assert [t.status for t in tasks] == ["completed", "in_progress", "pending"]
        assert [t.owner for t in tasks] == ["agent1", "agent2", None]

    def test_counts_criteria_per_task(self) -> None:
        """Criteria are counted until the next heading."""
        tasks = parse_tasks(PLAN, 1)

        assert (tasks[0].criteria_done, tasks[0].criteria_total) == (2, 2)
        assert (tasks[1].criteria_done, tasks[1].criteria_total) == (1, 2)
        assert (tasks[2].criteria_done, tasks[2].criteria_total) == (0, 0)

    def test_captures_goal(self) -> None:
        tasks = parse_tasks(PLAN, 1)
        assert tasks[0].goal == "Create the project skeleton"
        assert tasks[1].goal is None

    def test_criteria_after_higher_heading_not_counted(self) -> None:
        """A level-2 heading ends the task body."""
        text = "### Task 1: A [ ]\n- [ ] one\n## Notes\n- [ ] not a criterion\n"
        tasks = parse_tasks(text, 1)
        assert tasks[0].criteria_total == 1

    def test_criteria_under_level_four_heading_are_counted(self) -> None:
        """Sub-headings deeper than the task heading stay inside the task."""
        text = "### Task 1: A [ ]\n#### Details\n- [x] one\n- [ ] two\n"
        tasks = parse_tasks(text, 1)
        assert (tasks[0].criteria_done, tasks[0].criteria_total) == (1, 2)

    def test_malformed_heading_is_skipped(self) -> None:
        """Malformed task headings are dropped and end the previous task."""
        text = "### Task 1: Good [ ]\n- [ ] a\n### Task 2: Bad\n- [ ] b\n"
        tasks = parse_tasks(text, 3)

        assert [t.id for t in tasks] == ["3-1"]
        assert tasks[0].criteria_total == 1

    def test_empty_document(self) -> None:
        assert parse_tasks("", 1) == []


class TestParseRoadmap:
    """Tests for parse_roadmap()."""

    def test_roadmap_without_milestones_uses_implicit_milestone(self) -> None:
        """All phases belong to one milestone named Current."""
        text = "# Roadmap\n\n### Phase 1: Setup [x]\n\n### Phase 2: Core [>]\n"
        milestones, phases = parse_roadmap(text)

        assert [p.number for p in phases] == [1, 2]
        assert len(milestones) == 1
        assert milestones[0].name == "Current"
        assert milestones[0].phase_numbers == [1, 2]
        assert milestones[0].status == "in_progress"

    def test_phases_grouped_by_milestone(self) -> None:
        text = (
            "## Milestone: Alpha\n"
            "### Phase 1: Setup [x]\n"
            "### Phase 2: Core [x]\n"
            "## Milestone: Beta\n"
            "### Phase 3: Polish\n"
        )
        milestones, _ = parse_roadmap(text)

        assert [m.name for m in milestones] == ["Alpha", "Beta"]
        assert milestones[0].phase_numbers == [1, 2]
        assert milestones[0].status == "completed"
        assert milestones[1].status == "pending"

    def test_phases_before_first_milestone(self) -> None:
        """Leading phases go into an implicit milestone placed first."""
        text = "### Phase 1: Setup\n## Milestone: Later\n### Phase 2: More\n"
        milestones, _ = parse_roadmap(text)

        assert [m.name for m in milestones] == ["Current", "Later"]
        assert milestones[0].phase_numbers == [1]

    def test_milestone_without_phases_keeps_marker(self) -> None:
        milestones, phases = parse_roadmap("## Milestone: Done one [x]\n")
        assert phases == []
        assert milestones[0].status == "completed"

    def test_missing_or_empty_roadmap(self) -> None:
        assert parse_roadmap("") == ([], [])


class TestNextTaskNumber:
    """Tests for next_task_number()."""

    def test_empty_document_starts_at_one(self) -> None:
        assert next_task_number("# Plan\n") == 1

    def test_uses_max_plus_one_with_gaps(self) -> None:
        text = "### Task 1: a [ ]\n### Task 7: b [x]\n### Task 3: c [ ]\n"
        assert next_task_number(text) == 8

    def test_counts_malformed_headings(self) -> None:
        """Numbers of malformed headings are not reused."""
        text = "### Task 1: a [ ]\n### Task 4: broken\n"
        assert next_task_number(text) == 5


class TestAppendTask:
    """Tests for append_task()."""

    def test_creates_tasks_section_when_missing(self) -> None:
        text, task = append_task("# Phase 1: Setup Plan\n", 1, "First task")

        assert "## Tasks" in text
        assert "### Task 1: First task [ ]" in text
        assert task.id == "1-1"
        assert task.status == "pending"
        assert task.owner is None
        assert (task.criteria_done, task.criteria_total) == (0, 1)

    def test_uses_template(self) -> None:
        text, _ = append_task("", 2, "Title", "Do the thing")

        assert text == (
            "## Tasks\n"
            "\n"
            "### Task 1: Title [ ]\n"
            "\n"
            "**Goal:** Do the thing\n"
            "\n"
            "**Acceptance Criteria:**\n"
            "- [ ] TBD\n"
        )

    def test_goal_placeholder_without_description(self) -> None:
        text, task = append_task("", 1, "Title")
        assert "**Goal:** TBD" in text
        assert task.goal == "TBD"

    def test_appends_after_existing_tasks(self) -> None:
        """New task takes max + 1 and lands at the end of the Tasks section."""
        text, task = append_task(PLAN, 1, "New one")

        assert task.id == "1-4"
        assert text.rstrip().endswith("- [ ] TBD")
        assert [t.id for t in parse_tasks(text, 1)] == ["1-1", "1-2", "1-3", "1-4"]

    def test_inserts_before_following_section(self) -> None:
        """A later level-2 section stays after the inserted task."""
        original = "## Tasks\n\n### Task 1: a [ ]\n\n## Notes\n\nkeep me\n"
        text, _ = append_task(original, 1, "b")

        assert text.index("### Task 2: b [ ]") < text.index("## Notes")
        assert text.endswith("## Notes\n\nkeep me\n")

    def test_round_trip_keeps_existing_tasks(self) -> None:
        text, _ = append_task(PLAN, 1, "New one")
        before = parse_tasks(PLAN, 1)
        after = parse_tasks(text, 1)
        assert after[:3] == before


class TestApproval:
    """Tests for approval detection and stamping."""

    def test_is_approved_markers(self) -> None:
        assert is_approved("> **Status: Approved**")
        assert is_approved("# Plan [APPROVED]")
        assert not is_approved("# Plan\n")

    def test_approve_inserts_after_first_heading(self) -> None:
        text = approve("# Phase 1 Plan\nBody\n")
        assert text == (
            "# Phase 1 Plan\n"
            "\n"
            "> **Status: Approved**\n"
            "> Tasks synced to GitHub\n"
            "\n"
            "Body\n"
        )

    def test_approve_without_heading_puts_stamp_on_top(self) -> None:
        text = approve("just text\n")
        assert text.startswith("> **Status: Approved**\n> Tasks synced to GitHub\n")
        assert text.endswith("just text\n")

    def test_approve_is_idempotent(self) -> None:
        once = approve("# Plan\n")
        assert approve(once) == once
        assert once.count("Status: Approved") == 1


class TestSetTaskMarker:
    """Tests for set_task_marker()."""

    def test_sets_status_and_owner(self) -> None:
        text = set_task_marker(PLAN, 3, "in_progress", "agent1")
        assert "### Task 3: Write docs [>@agent1]" in text
        assert parse_tasks(text, 1)[2].owner == "agent1"

    def test_pending_clears_owner(self) -> None:
        text = set_task_marker(PLAN, 2, "pending", "agent2")
        assert "### Task 2: Add parser [ ]" in text

    def test_unknown_task_returns_text_unchanged(self) -> None:
        assert set_task_marker(PLAN, 99, "completed") == PLAN

    def test_other_lines_untouched(self) -> None:
        text = set_task_marker(PLAN, 1, "completed", "agent1")
        assert text == PLAN


class TestSetCriterion:
    """Tests for set_criterion()."""

    def test_checks_criterion(self) -> None:
        text = set_criterion(PLAN, 2, 1, True)
        task = parse_tasks(text, 1)[1]
        assert (task.criteria_done, task.criteria_total) == (2, 2)

    def test_unchecks_criterion(self) -> None:
        text = set_criterion(PLAN, 1, 0, False)
        assert parse_tasks(text, 1)[0].criteria_done == 1

    def test_only_touches_target_task(self) -> None:
        text = set_criterion(PLAN, 2, 0, False)
        tasks = parse_tasks(text, 1)
        assert tasks[0].criteria_done == 2
        assert tasks[1].criteria_done == 0

    def test_out_of_range_returns_text_unchanged(self) -> None:
        assert set_criterion(PLAN, 2, 5, True) == PLAN
        assert set_criterion(PLAN, 42, 0, True) == PLAN
