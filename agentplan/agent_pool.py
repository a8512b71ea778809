"""Agent pool: a fixed set of worker slots running external agent processes.

Each slot owns at most one process. Process output and exit are turned into
events on a per-slot queue (producers: the stdout/stderr readers and the
exit waiter; consumer: the slot state machine in ``apply_event``), so the
sentinel-versus-exit ordering is decided by queue order alone:

    idle --assign--> working --(sentinel | exit 0)--> done
                     working --(exit != 0 | spawn failure)--> error
                     working --stop--> idle

The pool does not queue work; callers pick a slot via ``available_slot()``.
No timeout is enforced: a worker runs until sentinel, exit, or ``stop``.
"""

import asyncio
import codecs
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

from agentplan import telemetry
from agentplan.errors import SlotBusyError, UnknownSlotError
from agentplan.models import Task

logger = logging.getLogger(__name__)

SlotStatus = Literal["idle", "working", "done", "error"]
EventKind = Literal["stdout", "stderr", "exit"]

DEFAULT_SENTINEL = "TASK_COMPLETE"
STDERR_PREFIX = "[stderr] "
ERROR_PREFIX = "[error] "
READ_CHUNK_SIZE = 4096

SlotCallback = Callable[[str | None, "AgentSlot"], Awaitable[None] | None]


@dataclass
class SlotEvent:
    """One message on a slot's event channel.

    Attributes:
        run_id: Slot generation the event belongs to; stale runs are ignored
        kind: stdout chunk, stderr chunk, or process exit
        data: Decoded text for stdout/stderr events
        exit_code: Process return code for exit events
    """

    run_id: int
    kind: EventKind
    data: str = ""
    exit_code: int | None = None


@dataclass
class AgentSlot:
    """One unit of pool capacity.

    Attributes:
        id: Slot number, 1..N
        status: idle, working, done or error
        task: Task being worked on
        external_ref: Caller reference (issue id) reported with completion
        output: Output chunks in arrival order; stderr chunks are prefixed
        process: Owned process while working (and after a sentinel until exit)
        run_id: Generation counter, bumped on every assign/stop/reset
        exit_code: Return code of the last finished process
    """

    id: int
    status: SlotStatus = "idle"
    task: Task | None = None
    external_ref: str | None = None
    output: list[str] = field(default_factory=list)
    process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    run_id: int = 0
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def text(self) -> str:
        """Joined output buffer."""
        return "".join(self.output)

    def to_dict(self, tail: int = 2000) -> dict[str, Any]:
        """Serialize for display consumers, keeping only the output tail."""
        return {
            "id": self.id,
            "status": self.status,
            "task_id": self.task.id if self.task else None,
            "task_title": self.task.title if self.task else None,
            "external_ref": self.external_ref,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "output": self.text[-tail:],
        }


class AgentPool:
    """Fixed-capacity pool of agent worker slots.

    Usage:
        pool = AgentPool(size=3, command=["claude", "-p"], on_complete=cb)
        slot = pool.available_slot()
        await pool.assign(slot.id, task, external_ref="42")
        ...
        await pool.shutdown()
    """

    def __init__(
        self,
        size: int = 3,
        command: list[str] | None = None,
        sentinel: str = DEFAULT_SENTINEL,
        on_complete: SlotCallback | None = None,
        on_failure: SlotCallback | None = None,
        cwd: str | None = None,
    ) -> None:
        """Initialize the pool.

        Args:
            size: Number of slots (hard bound on concurrently owned processes)
            command: Worker command; the instruction string is appended as
                the final argument
            sentinel: Literal token a worker prints to signal completion
            on_complete: Called with (external_ref, slot) when a slot is done
            on_failure: Called with (external_ref, slot) when a slot errors
            cwd: Working directory for worker processes
        """
        if size < 1:
            raise ValueError(f"Pool size must be at least 1, got {size}")
        if not sentinel:
            raise ValueError("Sentinel must be a non-empty string")

        self.command = list(command) if command else ["claude", "-p"]
        self.sentinel = sentinel
        self.on_complete = on_complete
        self.on_failure = on_failure
        self.cwd = cwd
        self.slots = [AgentSlot(id=i) for i in range(1, size + 1)]

        self._queues: dict[int, asyncio.Queue[SlotEvent]] = {}
        self._consumers: dict[int, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._tails: dict[int, str] = {}

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def size(self) -> int:
        return len(self.slots)

    def slot(self, slot_id: int) -> AgentSlot:
        """Return a slot by id.

        Raises:
            UnknownSlotError: If the id is outside 1..N
        """
        if not 1 <= slot_id <= len(self.slots):
            raise UnknownSlotError(f"No agent slot {slot_id} (pool size {self.size})")
        return self.slots[slot_id - 1]

    def available_slot(self) -> AgentSlot | None:
        """First idle slot, else the first finished (done/error) slot."""
        for wanted in ("idle", "done", "error"):
            for slot in self.slots:
                if slot.status == wanted:
                    return slot
        return None

    def working_count(self) -> int:
        return sum(1 for s in self.slots if s.status == "working")

    def snapshot(self) -> list[dict[str, Any]]:
        """Serialized slot states for display consumers."""
        return [slot.to_dict() for slot in self.slots]

    def build_instruction(self, task: Task) -> str:
        """Build the natural-language instruction passed to the worker."""
        parts = [f"Task {task.id}: {task.title}"]
        if task.goal:
            parts.append(task.goal)
        parts.append(
            f"When the task is finished, print {self.sentinel} on its own line."
        )
        return "\n\n".join(parts)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def assign(
        self, slot_id: int, task: Task, external_ref: str | None = None
    ) -> AgentSlot:
        """Spawn a worker process for ``task`` in slot ``slot_id``.

        A done/error slot is reset first. Spawn failures put the slot in
        error (with the reason in its buffer) instead of raising.

        Raises:
            SlotBusyError: If the slot is already working, or another slot
                is working on the same task
            UnknownSlotError: If the slot id is out of range
        """
        slot = self.slot(slot_id)
        if slot.status == "working":
            raise SlotBusyError(
                f"Agent slot {slot_id} is busy with task "
                f"{slot.task.id if slot.task else '?'}"
            )
        for other in self.slots:
            if other.status == "working" and other.task and other.task.id == task.id:
                raise SlotBusyError(
                    f"Task {task.id} is already being worked on by agent slot {other.id}"
                )
        if slot.status != "idle":
            self.reset(slot_id)

        slot.run_id += 1
        run_id = slot.run_id
        slot.status = "working"
        slot.task = task
        slot.external_ref = external_ref
        slot.output = []
        slot.exit_code = None
        slot.started_at = datetime.now()
        slot.finished_at = None
        self._tails[slot_id] = ""
        self._ensure_consumer(slot_id)

        telemetry.agent_assignments_counter.add(1)
        logger.info(f"Agent {slot_id}: starting task {task.id} (ref: {external_ref})")

        command = [*self.command, self.build_instruction(task)]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
            )
        except OSError as e:
            logger.warning(f"Agent {slot_id}: failed to start {command[0]}: {e}")
            if slot.run_id == run_id:
                slot.output.append(f"{ERROR_PREFIX}failed to start {command[0]}: {e}\n")
                self._finish(slot, "error")
            return slot

        if slot.run_id != run_id:
            # Stopped while the process was starting
            self._kill(process)
            return slot

        slot.process = process
        self._spawn(self._produce(slot_id, run_id, process))
        return slot

    def stop(self, slot_id: int) -> None:
        """Cancel a working slot.

        Sends a kill signal and returns the slot to idle immediately, without
        waiting for the process to exit. No-op unless the slot is working.
        """
        slot = self.slot(slot_id)
        if slot.status != "working":
            return

        logger.info(f"Agent {slot_id}: stopping task {slot.task.id if slot.task else '?'}")
        slot.run_id += 1
        if slot.process is not None:
            self._kill(slot.process)
        self._clear(slot)

    def reset(self, slot_id: int) -> None:
        """Return a done/error slot to idle, killing a lingering process.

        No-op for idle slots; working slots must be stopped instead.

        Raises:
            SlotBusyError: If the slot is working
        """
        slot = self.slot(slot_id)
        if slot.status == "working":
            raise SlotBusyError(f"Agent slot {slot_id} is working; stop it first")
        if slot.status == "idle":
            return
        slot.run_id += 1
        if slot.process is not None:
            self._kill(slot.process)
        self._clear(slot)

    async def shutdown(self) -> None:
        """Stop every working slot and cancel background tasks."""
        for slot in self.slots:
            if slot.status == "working":
                self.stop(slot.id)
            elif slot.process is not None:
                self.reset(slot.id)

        tasks = [*self._consumers.values(), *self._background]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._consumers.clear()
        self._background.clear()

    async def wait_idle(self, poll_interval: float = 0.2) -> None:
        """Wait until no slot is working and pending callbacks have run."""
        while self.working_count() or self._background:
            await asyncio.sleep(poll_interval)

    # -------------------------------------------------------------------------
    # Event channel
    # -------------------------------------------------------------------------

    def _queue(self, slot_id: int) -> "asyncio.Queue[SlotEvent]":
        if slot_id not in self._queues:
            self._queues[slot_id] = asyncio.Queue()
        return self._queues[slot_id]

    def _ensure_consumer(self, slot_id: int) -> None:
        consumer = self._consumers.get(slot_id)
        if consumer is None or consumer.done():
            self._consumers[slot_id] = asyncio.ensure_future(self._consume(slot_id))

    async def _consume(self, slot_id: int) -> None:
        queue = self._queue(slot_id)
        while True:
            event = await queue.get()
            self.apply_event(slot_id, event)

    async def _produce(
        self, slot_id: int, run_id: int, process: asyncio.subprocess.Process
    ) -> None:
        """Forward process output and exit to the slot's queue.

        The exit event is queued only after both streams reach EOF, so it is
        always the last event of a run.
        """
        queue = self._queue(slot_id)

        async def pump(stream: asyncio.StreamReader | None, kind: EventKind) -> None:
            if stream is None:
                return
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    await queue.put(SlotEvent(run_id, kind, text))
            rest = decoder.decode(b"", final=True)
            if rest:
                await queue.put(SlotEvent(run_id, kind, rest))

        await asyncio.gather(
            pump(process.stdout, "stdout"), pump(process.stderr, "stderr")
        )
        exit_code = await process.wait()
        await queue.put(SlotEvent(run_id, "exit", exit_code=exit_code))

    def apply_event(self, slot_id: int, event: SlotEvent) -> None:
        """Apply one event to the slot state machine.

        Events from a superseded run are ignored. Output after a sentinel is
        still buffered, and the later exit only releases the process.
        """
        slot = self.slot(slot_id)
        if event.run_id != slot.run_id:
            return

        if event.kind == "stdout":
            slot.output.append(event.data)
            if slot.status == "working" and self._saw_sentinel(slot_id, event.data):
                logger.info(f"Agent {slot_id}: sentinel received")
                self._finish(slot, "done")

        elif event.kind == "stderr":
            slot.output.append(f"{STDERR_PREFIX}{event.data}")

        elif event.kind == "exit":
            slot.process = None
            slot.exit_code = event.exit_code
            if slot.status != "working":
                return
            if event.exit_code == 0:
                self._finish(slot, "done")
            else:
                logger.warning(f"Agent {slot_id}: exited with code {event.exit_code}")
                self._finish(slot, "error")

    def _saw_sentinel(self, slot_id: int, data: str) -> bool:
        """Check for the sentinel, including one split across chunks."""
        window = self._tails.get(slot_id, "") + data
        keep = len(self.sentinel) - 1
        self._tails[slot_id] = window[-keep:] if keep else ""
        return self.sentinel in window

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _finish(self, slot: AgentSlot, status: Literal["done", "error"]) -> None:
        slot.status = status
        slot.finished_at = datetime.now()
        telemetry.agent_runs_counter.add(1, {"status": status})
        task_id = slot.task.id if slot.task else "?"
        logger.info(f"Agent {slot.id}: task {task_id} {status}")
        callback = self.on_complete if status == "done" else self.on_failure
        self._fire(callback, slot)

    def _fire(self, callback: SlotCallback | None, slot: AgentSlot) -> None:
        if callback is None:
            return
        try:
            result = callback(slot.external_ref, slot)
        except Exception:
            logger.exception(f"Agent {slot.id}: callback failed")
            return
        if inspect.isawaitable(result):
            self._spawn(result)

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Agent pool background task failed", exc_info=task.exception()
            )

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    def _clear(self, slot: AgentSlot) -> None:
        slot.status = "idle"
        slot.task = None
        slot.external_ref = None
        slot.process = None
        self._tails[slot.id] = ""
