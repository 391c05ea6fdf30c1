import time
from dataclasses import dataclass
from typing import Callable

from .logui import error


@dataclass
class Task:
    id: int
    name: str
    callback: Callable[[], None]
    execute_at: float
    owner: str = ""
    generation: int = 0


@dataclass(frozen=True)
class TimerToken:
    task_id: int
    owner: str = ""
    generation: int = 0


@dataclass
class _Counters:
    scheduled: int = 0
    fired: int = 0
    cancelled: int = 0
    failed: int = 0


class TaskScheduler:
    """Cooperative timers. Nothing fires until the owner calls tick()."""

    def __init__(self, clock: Callable[[], float] | None = None, max_tasks: int = 64):
        self.clock = clock or time.time
        self.max_tasks = max_tasks
        self._tasks: list[Task] = []
        self._next_id = 1
        self.counters = _Counters()

    def now(self) -> float:
        return self.clock()

    def schedule(
        self,
        callback: Callable[[], None],
        delay_seconds: float,
        name: str = "",
        owner: str = "",
        generation: int = 0,
    ) -> TimerToken | None:
        if delay_seconds < 0:
            return None
        if len(self._tasks) >= self.max_tasks:
            error(f"Timer table full, dropping {owner}:{name}", tag="Scheduler")
            return None
        task = Task(
            id=self._next_id,
            name=name,
            callback=callback,
            execute_at=self.now() + delay_seconds,
            owner=owner,
            generation=generation,
        )
        self._next_id += 1
        self._tasks.append(task)
        self.counters.scheduled += 1
        return TimerToken(task_id=task.id, owner=owner, generation=generation)

    def cancel(self, token: TimerToken | None) -> bool:
        if token is None:
            return False
        for i, t in enumerate(self._tasks):
            if t.id == token.task_id:
                del self._tasks[i]
                self.counters.cancelled += 1
                return True
        return False

    def cancel_owner(self, owner: str) -> int:
        before = len(self._tasks)
        self._tasks = [t for t in self._tasks if t.owner != owner]
        removed = before - len(self._tasks)
        self.counters.cancelled += removed
        return removed

    def is_pending(self, token: TimerToken | None) -> bool:
        if token is None:
            return False
        return any(t.id == token.task_id for t in self._tasks)

    def pending(self, owner: str | None = None) -> list[Task]:
        if owner is None:
            return list(self._tasks)
        return [t for t in self._tasks if t.owner == owner]

    def tick(self) -> list[Task]:
        now = self.now()
        eligible = {t.id for t in self._tasks if t.execute_at <= now}
        fired = []
        while eligible:
            due = [t for t in self._tasks if t.id in eligible]
            if not due:
                break
            # Callbacks may cancel or schedule timers, so pick one at a time.
            task = min(due, key=lambda t: (t.execute_at, t.id))
            eligible.discard(task.id)
            self._tasks.remove(task)
            try:
                task.callback()
                self.counters.fired += 1
            except Exception as e:
                self.counters.failed += 1
                error(f"Timer {task.owner}:{task.name} failed: {e}", tag="Scheduler")
            fired.append(task)
        return fired

    def clear_all(self):
        self._tasks.clear()

    def count(self) -> int:
        return len(self._tasks)
