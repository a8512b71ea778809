"""Plan parser for roadmap and phase plan markdown.

Pure functions over markdown text. The grammar is line oriented:
``tokenize`` classifies every line into one token type, and the parse
functions consume the token stream. Lines that look like task or phase
headings but do not match the exact shape are classified as plain headings
and dropped, so hand-edited documents degrade instead of failing a scan.

Task heading:      ### Task <N>: <title> [<marker>(@<owner>)?]
Phase heading:     ### Phase <N>: <name> [<marker>]
Milestone heading: ## Milestone: <name> [<marker>]
Criteria line:     - [ ] <text>  /  - [x] <text>

Markers: ``x`` completed, ``>`` in progress, space (or nothing) pending.
"""

import re
from dataclasses import dataclass
from typing import Iterator

from agentplan.models import Milestone, Phase, Task, TaskStatus, derive_status

HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*$")
TASK_RE = re.compile(
    r"^###\s+Task\s+(\d+):\s*(.+?)\s*\[(x|>|\s*)(?:@([\w.-]+))?\]\s*$"
)
TASK_NUMBER_RE = re.compile(r"^###\s+Task\s+(\d+):")
PHASE_RE = re.compile(r"^###\s+Phase\s+(\d+):\s*(.+?)\s*$")
MILESTONE_RE = re.compile(r"^##\s+Milestone:\s*(.+?)\s*$")
MARKED_NAME_RE = re.compile(r"^(.*?)\s*\[(x|>|\s*)\]")
CRITERIA_RE = re.compile(r"^(\s*[-*]\s+\[)([ xX])(\]\s*)(.*)$")
GOAL_RE = re.compile(r"^\*\*Goal:\*\*\s*(.+?)\s*$")
TASKS_SECTION_RE = re.compile(r"^##\s+Tasks\s*$")
SECTION_RE = re.compile(r"^#{1,2}\s")

MARKERS: dict[TaskStatus, str] = {
    "completed": "x",
    "in_progress": ">",
    "pending": " ",
}

APPROVAL_MARKERS = ("Status: Approved", "[APPROVED]")
APPROVAL_STAMP = ["> **Status: Approved**", "> Tasks synced to GitHub"]

GOAL_PLACEHOLDER = "TBD"
CRITERION_PLACEHOLDER = "TBD"


# =============================================================================
# TOKENS
# =============================================================================


@dataclass
class MilestoneHeading:
    line: int
    name: str
    status: TaskStatus
    level: int = 2


@dataclass
class PhaseHeading:
    line: int
    number: int
    name: str
    status: TaskStatus
    level: int = 3


@dataclass
class TaskHeading:
    line: int
    number: int
    title: str
    status: TaskStatus
    owner: str | None
    level: int = 3


@dataclass
class CriteriaLine:
    line: int
    done: bool
    text: str


@dataclass
class Heading:
    """Any heading that is not part of the plan grammar (or is malformed)."""

    line: int
    level: int
    text: str


@dataclass
class Other:
    line: int
    text: str


Token = MilestoneHeading | PhaseHeading | TaskHeading | CriteriaLine | Heading | Other


def marker_status(marker: str) -> TaskStatus:
    """Map a marker character to a status."""
    marker = marker.strip()
    if marker == "x":
        return "completed"
    if marker == ">":
        return "in_progress"
    return "pending"


def format_marker(status: TaskStatus, owner: str | None = None) -> str:
    """Render the bracket content for a status and optional owner.

    The owner suffix is only written for in-progress and completed tasks.
    """
    marker = MARKERS[status]
    if owner and status != "pending":
        return f"{marker}@{owner}"
    return marker


def _split_marked_name(rest: str) -> tuple[str, TaskStatus]:
    match = MARKED_NAME_RE.match(rest)
    if match:
        return match.group(1).strip(), marker_status(match.group(2))
    return rest.strip(), "pending"


def classify_line(index: int, line: str) -> Token:
    """Classify a single line into a token."""
    heading = HEADING_RE.match(line)
    if heading:
        level = len(heading.group(1))

        task = TASK_RE.match(line)
        if task:
            return TaskHeading(
                line=index,
                number=int(task.group(1)),
                title=task.group(2).strip(),
                status=marker_status(task.group(3)),
                owner=task.group(4) or None,
            )

        phase = PHASE_RE.match(line)
        if phase:
            name, status = _split_marked_name(phase.group(2))
            if name:
                return PhaseHeading(
                    line=index, number=int(phase.group(1)), name=name, status=status
                )

        milestone = MILESTONE_RE.match(line)
        if milestone:
            name, status = _split_marked_name(milestone.group(1))
            if name:
                return MilestoneHeading(line=index, name=name, status=status)

        return Heading(line=index, level=level, text=heading.group(2))

    criteria = CRITERIA_RE.match(line)
    if criteria:
        return CriteriaLine(
            line=index,
            done=criteria.group(2).lower() == "x",
            text=criteria.group(4).strip(),
        )

    return Other(line=index, text=line)


def tokenize(text: str) -> Iterator[Token]:
    """Yield one token per line of ``text``."""
    for index, line in enumerate(text.replace("\r", "").split("\n")):
        yield classify_line(index, line)


def _ends_task_body(token: Token) -> bool:
    """Headings of level 3 or higher close the current task body."""
    return isinstance(token, (MilestoneHeading, PhaseHeading, TaskHeading, Heading)) and (
        token.level <= 3
    )


# =============================================================================
# PARSING
# =============================================================================


def parse_tasks(text: str, phase: int) -> list[Task]:
    """Parse every well-formed task block of a phase plan document.

    Args:
        text: Plan document content
        phase: Phase number the document belongs to

    Returns:
        Tasks in document order
    """
    tasks: list[Task] = []
    current: Task | None = None

    for token in tokenize(text):
        if isinstance(token, TaskHeading):
            current = Task(
                id=f"{phase}-{token.number}",
                title=token.title,
                status=token.status,
                owner=token.owner,
                phase=phase,
                number=token.number,
            )
            tasks.append(current)
            continue

        if current is None:
            continue

        if _ends_task_body(token):
            current = None
        elif isinstance(token, CriteriaLine):
            current.criteria_total += 1
            if token.done:
                current.criteria_done += 1
        elif isinstance(token, Other) and current.goal is None:
            goal = GOAL_RE.match(token.text)
            if goal:
                current.goal = goal.group(1)

    return tasks


def parse_roadmap(text: str) -> tuple[list[Milestone], list[Phase]]:
    """Parse a roadmap into milestones and phases.

    Phases listed before any milestone heading (or in a roadmap without
    milestone headings) belong to an implicit milestone named "Current".
    Milestone status is seeded from its marker and then derived from its
    phases.

    Returns:
        Tuple of (milestones, phases), both in document order
    """
    milestones: list[Milestone] = []
    phases: list[Phase] = []
    current: Milestone | None = None

    for token in tokenize(text):
        if isinstance(token, MilestoneHeading):
            current = Milestone(name=token.name, status=token.status)
            milestones.append(current)
        elif isinstance(token, PhaseHeading):
            phases.append(
                Phase(number=token.number, name=token.name, status=token.status)
            )
            if current is None:
                current = Milestone(name="Current")
                milestones.insert(0, current)
            current.phase_numbers.append(token.number)

    normalize_milestones(milestones, phases)
    return milestones, phases


def normalize_milestones(milestones: list[Milestone], phases: list[Phase]) -> None:
    """Re-derive each milestone's status from its phases, in place."""
    by_number = {p.number: p for p in phases}
    for milestone in milestones:
        statuses = [
            by_number[n].status for n in milestone.phase_numbers if n in by_number
        ]
        milestone.status = derive_status(statuses, milestone.status)


def next_task_number(text: str) -> int:
    """Return max(existing task numbers) + 1, or 1 for a document without tasks.

    Every ``### Task <N>:`` heading counts, including ones whose marker is
    malformed, so numbers are never reused.
    """
    numbers = [
        int(m.group(1))
        for line in text.split("\n")
        if (m := TASK_NUMBER_RE.match(line))
    ]
    return max(numbers, default=0) + 1


# =============================================================================
# MUTATIONS
# =============================================================================


def _task_block(number: int, title: str, goal: str) -> list[str]:
    return [
        f"### Task {number}: {title} [ ]",
        "",
        f"**Goal:** {goal}",
        "",
        "**Acceptance Criteria:**",
        f"- [ ] {CRITERION_PLACEHOLDER}",
    ]


def append_task(
    text: str, phase: int, title: str, description: str | None = None
) -> tuple[str, Task]:
    """Append a new pending task to the ``## Tasks`` section.

    Creates the section at the end of the document when it is missing.

    Args:
        text: Current plan document content (may be empty)
        phase: Phase number, used for the returned task id
        title: Task title (validated by the caller)
        description: Goal text; a placeholder is written when omitted

    Returns:
        Tuple of (new document text, created Task)
    """
    title = " ".join(title.split())
    goal = " ".join((description or "").split()) or GOAL_PLACEHOLDER
    number = next_task_number(text)

    lines = text.replace("\r", "").split("\n")
    while lines and not lines[-1].strip():
        lines.pop()

    tasks_index = next(
        (i for i, line in enumerate(lines) if TASKS_SECTION_RE.match(line)), None
    )
    if tasks_index is None:
        if lines:
            lines.append("")
        lines.append("## Tasks")
        tasks_index = len(lines) - 1

    end = next(
        (
            i
            for i in range(tasks_index + 1, len(lines))
            if SECTION_RE.match(lines[i])
        ),
        len(lines),
    )
    insert_at = end
    while insert_at > tasks_index + 1 and not lines[insert_at - 1].strip():
        insert_at -= 1

    block = ["", *_task_block(number, title, goal)]
    if end < len(lines):
        block.append("")

    new_lines = lines[:insert_at] + block + lines[end:]
    task = Task(
        id=f"{phase}-{number}",
        title=title,
        status="pending",
        owner=None,
        phase=phase,
        number=number,
        criteria_done=0,
        criteria_total=1,
        goal=goal,
    )
    return "\n".join(new_lines) + "\n", task


def is_approved(text: str) -> bool:
    """Check whether a plan document carries the approval stamp."""
    return any(marker in text for marker in APPROVAL_MARKERS)


def approve(text: str) -> str:
    """Insert the approval stamp after the first heading.

    Idempotent: an already approved document is returned unchanged.
    """
    if is_approved(text):
        return text

    lines = text.replace("\r", "").split("\n")
    while lines and not lines[-1].strip():
        lines.pop()

    heading_index = next(
        (i for i, line in enumerate(lines) if HEADING_RE.match(line)), None
    )
    if heading_index is None:
        new_lines = [*APPROVAL_STAMP]
        if lines:
            new_lines += [""] + lines
    else:
        rest = lines[heading_index + 1 :]
        new_lines = lines[: heading_index + 1] + [""] + APPROVAL_STAMP
        if rest and rest[0].strip():
            new_lines.append("")
        new_lines += rest

    return "\n".join(new_lines) + "\n"


def set_task_marker(
    text: str, number: int, status: TaskStatus, owner: str | None = None
) -> str:
    """Rewrite the marker of task ``number``.

    Returns the text unchanged when no well-formed heading for that task exists.
    """
    lines = text.split("\n")
    for i, line in enumerate(lines):
        match = TASK_RE.match(line)
        if match and int(match.group(1)) == number:
            prefix = line[: match.start(3) - 1]
            lines[i] = f"{prefix}[{format_marker(status, owner)}]"
            return "\n".join(lines)
    return text


def set_criterion(text: str, number: int, index: int, done: bool) -> str:
    """Check or uncheck the ``index``-th acceptance criterion of a task.

    Returns the text unchanged when the task or the criterion is missing.
    """
    lines = text.split("\n")
    in_task = False
    seen = 0

    for token in tokenize(text):
        if isinstance(token, TaskHeading):
            if in_task:
                break
            in_task = token.number == number
            continue
        if not in_task:
            continue
        if _ends_task_body(token):
            break
        if isinstance(token, CriteriaLine):
            if seen == index:
                match = CRITERIA_RE.match(lines[token.line])
                if match is None:
                    break
                mark = "x" if done else " "
                lines[token.line] = (
                    f"{match.group(1)}{mark}{match.group(3)}{match.group(4)}"
                )
                return "\n".join(lines)
            seen += 1

    return text
