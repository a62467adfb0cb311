"""
Persistent state store for plan runs.

One plan run can span several unrelated process invocations, so everything
the run needs to continue lives on disk under .planning/.state/, one
directory per plan path:

    .planning/.state/<slug>-<hash>/
      execution.json        ExecutionState (position, decisions, results)
      cancelled.json        CancelledExecutionInfo (valid for 5 minutes)
      active.json           ActiveExecutionMarker (stale after 60s idle)
      pending_context.json  PendingExecutionContext (consumed once)

Records are read and written only through the StateStore methods below. TTLs
are enforced on read by comparing stored timestamps with the store's clock;
an expired record is deleted and reported as absent.
"""

import contextlib
import fcntl
import hashlib
import json
import os
import re
import shutil
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .models import (
    ActiveExecutionMarker,
    CancelledExecutionInfo,
    ExecutionResult,
    ExecutionState,
    PendingExecutionContext,
)

PLANNING_DIR = ".planning"
STATE_DIR = f"{PLANNING_DIR}/.state"

EXECUTION_FILE = "execution.json"
CANCELLED_FILE = "cancelled.json"
ACTIVE_FILE = "active.json"
PENDING_FILE = "pending_context.json"
LOCK_FILE = ".lock"

CANCEL_WINDOW_SECONDS = 5 * 60
ACTIVE_STALE_SECONDS = 60


@contextlib.contextmanager
def file_lock(lock_path: Path, timeout: float = 30.0):
    """
    Exclusive advisory lock on ``lock_path`` (created if missing).

    Raises:
        TimeoutError: If the lock cannot be acquired within ``timeout`` seconds
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT)
    deadline = time.monotonic() + timeout
    try:
        while True:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() > deadline:
                    raise TimeoutError(f"Could not acquire file lock within {timeout}s: {lock_path}")
                time.sleep(0.05)
        try:
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
    finally:
        os.close(lock_fd)


def atomic_write(path: Path, content: str) -> None:
    """Write ``content`` via a temp file in the same directory and rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(temp_path, path)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def plan_key(plan_path: str) -> str:
    """Directory name for a plan path: readable slug plus a short hash of the full path."""
    normalized = os.path.normpath(os.path.abspath(plan_path))
    digest = hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:10]
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", Path(normalized).stem).strip("-")[:40] or "plan"
    return f"{slug}-{digest}"


class StateStore:
    """File-backed records keyed by plan path."""

    def __init__(self, cwd: str = ".", clock: Callable[[], float] = time.time):
        self.cwd = Path(cwd)
        self.root = self.cwd / STATE_DIR
        self.clock = clock

    # --- plumbing ---

    def _dir(self, plan_path: str) -> Path:
        return self.root / plan_key(plan_path)

    def _lock(self, plan_path: str):
        return file_lock(self._dir(plan_path) / LOCK_FILE)

    def _read(self, plan_path: str, name: str) -> Optional[dict]:
        path = self._dir(plan_path) / name
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            path.unlink(missing_ok=True)
            return None

    def _write(self, plan_path: str, name: str, record) -> None:
        atomic_write(self._dir(plan_path) / name, record.model_dump_json(indent=2))

    def _delete(self, plan_path: str, name: str) -> None:
        (self._dir(plan_path) / name).unlink(missing_ok=True)

    def _load(self, plan_path: str, name: str, model):
        data = self._read(plan_path, name)
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError:
            self._delete(plan_path, name)
            return None

    # --- execution state ---

    def get_execution_state(self, plan_path: str) -> Optional[ExecutionState]:
        return self._load(plan_path, EXECUTION_FILE, ExecutionState)

    def save_execution_state(self, state: ExecutionState) -> None:
        state.saved_at = self.clock()
        with self._lock(state.plan_path):
            self._write(state.plan_path, EXECUTION_FILE, state)

    def clear_execution_state(self, plan_path: str) -> None:
        self._delete(plan_path, EXECUTION_FILE)

    # --- cancellation record ---

    def get_cancelled(self, plan_path: str) -> Optional[CancelledExecutionInfo]:
        """The cancellation record, or None once its resume window has passed."""
        info = self._load(plan_path, CANCELLED_FILE, CancelledExecutionInfo)
        if info is None:
            return None
        if info.expires_at <= self.clock():
            self._delete(plan_path, CANCELLED_FILE)
            return None
        return info

    def set_cancelled(
        self,
        plan_path: str,
        paused_task_index: int,
        results: list[ExecutionResult],
        window_seconds: float = CANCEL_WINDOW_SECONDS,
    ) -> CancelledExecutionInfo:
        """Record a cancellation. Clears the active marker in the same step."""
        info = CancelledExecutionInfo(
            plan_path=plan_path,
            paused_task_index=paused_task_index,
            results_so_far=list(results),
            expires_at=self.clock() + window_seconds,
        )
        with self._lock(plan_path):
            self._delete(plan_path, ACTIVE_FILE)
            self._write(plan_path, CANCELLED_FILE, info)
        return info

    def clear_cancelled(self, plan_path: str) -> None:
        self._delete(plan_path, CANCELLED_FILE)

    # --- active marker ---

    def get_active_marker(self, plan_path: str) -> Optional[ActiveExecutionMarker]:
        marker = self._load(plan_path, ACTIVE_FILE, ActiveExecutionMarker)
        if marker is None:
            return None
        if self.clock() - marker.last_activity_at > ACTIVE_STALE_SECONDS:
            self._delete(plan_path, ACTIVE_FILE)
            return None
        return marker

    def mark_active(self, plan_path: str) -> ActiveExecutionMarker:
        """Start (or refresh) the liveness marker. Drops any cancellation record."""
        marker = ActiveExecutionMarker(plan_path=plan_path, last_activity_at=self.clock())
        with self._lock(plan_path):
            self._delete(plan_path, CANCELLED_FILE)
            self._write(plan_path, ACTIVE_FILE, marker)
        return marker

    def touch_active(self, plan_path: str) -> None:
        self.mark_active(plan_path)

    def clear_active_marker(self, plan_path: str) -> None:
        self._delete(plan_path, ACTIVE_FILE)

    # --- pending context ---

    def stash_pending_context(self, plan_path: str, text: str) -> PendingExecutionContext:
        """Stash text for the next task prompt. A second stash before use is appended."""
        with self._lock(plan_path):
            existing = self._load(plan_path, PENDING_FILE, PendingExecutionContext)
            if existing and existing.text:
                text = f"{existing.text}\n\n{text}"
            pending = PendingExecutionContext(plan_path=plan_path, text=text, created_at=self.clock())
            self._write(plan_path, PENDING_FILE, pending)
        return pending

    def peek_pending_context(self, plan_path: str) -> Optional[str]:
        pending = self._load(plan_path, PENDING_FILE, PendingExecutionContext)
        return pending.text if pending else None

    def pop_pending_context(self, plan_path: str) -> Optional[str]:
        """Return the stashed text and clear it."""
        if not (self._dir(plan_path) / PENDING_FILE).exists():
            return None
        with self._lock(plan_path):
            pending = self._load(plan_path, PENDING_FILE, PendingExecutionContext)
            self._delete(plan_path, PENDING_FILE)
        return pending.text if pending else None

    # --- lookups across plans ---

    def _plan_paths(self) -> list[str]:
        if not self.root.exists():
            return []
        paths = []
        for record_dir in sorted(self.root.iterdir()):
            if not record_dir.is_dir():
                continue
            for name in (ACTIVE_FILE, CANCELLED_FILE, EXECUTION_FILE):
                record = record_dir / name
                if record.exists():
                    try:
                        paths.append(json.loads(record.read_text(encoding="utf-8"))["plan_path"])
                        break
                    except (json.JSONDecodeError, KeyError):
                        continue
        return paths

    def find_active_plan(self) -> Optional[ActiveExecutionMarker]:
        """Most recently active live run, if any."""
        markers = [m for m in (self.get_active_marker(p) for p in self._plan_paths()) if m]
        return max(markers, key=lambda m: m.last_activity_at, default=None)

    def find_cancelled_plan(self) -> Optional[CancelledExecutionInfo]:
        """Cancellation record with the latest expiry, if any is still valid."""
        records = [c for c in (self.get_cancelled(p) for p in self._plan_paths()) if c]
        return max(records, key=lambda c: c.expires_at, default=None)

    def list_execution_states(self) -> list[ExecutionState]:
        states = [self.get_execution_state(p) for p in self._plan_paths()]
        return [s for s in states if s is not None]

    def clear_all(self, plan_path: str) -> None:
        """Remove every record for ``plan_path`` (used when a run completes)."""
        shutil.rmtree(self._dir(plan_path), ignore_errors=True)
