from __future__ import annotations

from typing import Callable, Optional, Sequence
import sys
import threading

from blueaudit.reconcile import ProgressEvent


TENANT_STAGES = ("subscriptions", "assignments", "reconcile")


class StageProgress:
    """
    Thread-safe tenant progress for the audit run.

    - Maintains a single overall tqdm bar (if a tqdm factory is given), one unit per tenant.
    - Tracks a per-tenant current stage and updates the bar postfix with stage counts.
    - `handle` consumes the engine's progress events; `write` prints without breaking the bar.
    """

    def __init__(
        self,
        *,
        desc: str,
        unit: str,
        tqdm_factory: Optional[Callable] = None,
        stages: Sequence[str] = TENANT_STAGES,
        on_failure: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._desc = desc
        self._unit = unit
        self._tqdm_factory = tqdm_factory
        self._tqdm = None
        self._task_stage: dict[str, str] = {}
        self._task_stage_index: dict[str, int] = {}
        self._stages = list(stages)
        self._stage_to_index = {name: i for i, name in enumerate(self._stages)}
        self._stage_weight = 1.0 / max(1, len(self._stages))
        self._on_failure = on_failure
        self.failures = 0
        self.subscriptions_done = 0

    def handle(self, event: ProgressEvent) -> None:
        kind = event.kind
        if kind == "run_started":
            self.start(event.total or 0)
        elif kind == "tenant_started" and event.tenant_id:
            self.set_stage(event.tenant_id, "subscriptions")
        elif kind == "subscription_started" and event.tenant_id:
            self.set_stage(event.tenant_id, "assignments")
        elif kind == "subscription_done" and event.tenant_id:
            with self._lock:
                self.subscriptions_done += 1
            self.set_stage(event.tenant_id, "reconcile")
        elif kind == "scope_failure":
            with self._lock:
                self.failures += 1
            if self._on_failure:
                self._on_failure(event)
        elif kind == "tenant_done" and event.tenant_id:
            self.finish(event.tenant_id)
        elif kind == "run_complete":
            self.close()

    def start(self, total: int) -> None:
        with self._lock:
            if self._tqdm_factory is not None and self._tqdm is None:
                self._tqdm = self._tqdm_factory(total=total, desc=self._desc, unit=self._unit, leave=False)

    def set_stage(self, task_id: str, stage: str) -> None:
        with self._lock:
            # Weighted progress: when a task advances to a new stage, increment the overall bar.
            if self._tqdm is not None:
                prev_idx = self._task_stage_index.get(task_id, -1)
                new_idx = self._stage_to_index.get(stage, prev_idx)
                if new_idx > prev_idx:
                    self._task_stage_index[task_id] = new_idx
                    self._tqdm.update((new_idx - prev_idx) * self._stage_weight)
            self._task_stage[task_id] = stage
            self._render_locked()

    def finish(self, task_id: str) -> None:
        with self._lock:
            self._task_stage[task_id] = "done"
            # A tenant contributes a full unit even if it failed part way.
            if self._tqdm is not None:
                prev_idx = self._task_stage_index.get(task_id, -1)
                remaining = max(0.0, 1.0 - ((prev_idx + 1) * self._stage_weight))
                if remaining:
                    self._tqdm.update(remaining)
            self._render_locked()

    def write(self, msg: str) -> None:
        with self._lock:
            if self._tqdm is not None:
                self._tqdm.write(msg, file=sys.stderr)
                return
        print(msg, file=sys.stderr)

    def close(self) -> None:
        with self._lock:
            if self._tqdm is not None:
                self._tqdm.close()
                self._tqdm = None

    def _render_locked(self) -> None:
        if self._tqdm is None:
            return
        counts: dict[str, int] = {}
        for st in self._task_stage.values():
            counts[st] = counts.get(st, 0) + 1

        interesting = []
        for key in sorted(counts.keys()):
            if key == "done":
                continue
            interesting.append(f"{key}:{counts[key]}")
        if "done" in counts:
            interesting.append(f"done:{counts['done']}")
        interesting.append(f"subs:{self.subscriptions_done}")
        if self.failures:
            interesting.append(f"failed:{self.failures}")
        self._tqdm.set_postfix_str(" ".join(interesting[:8]), refresh=True)
