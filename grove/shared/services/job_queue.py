"""Background shell jobs decoupled from chat turns.

``enqueue`` persists a queued job and returns its id at once; the command
runs in an asyncio task under ``<shell> -c``. The live-process table is the
single source of truth for "still running": a job removed from it by
``cancel`` never gets output written, even if its process already produced
some.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
import signal
import sqlite3
import uuid
from typing import Awaitable, Callable

from grove.engine.config import augmented_env
from grove.engine.errors import JobNotFoundError
from grove.shared.models.job import Job, JobStatus, JobType
from grove.shared.services.database import Database, utc_now_iso

logger = logging.getLogger(__name__)

JobObserver = Callable[[Job], "Awaitable[None] | None"]

STDERR_MARKER = "\n[stderr]\n"
# Grace period between SIGTERM and SIGKILL for cancelled jobs.
_KILL_GRACE_SECONDS = 5.0
_READ_CHUNK = 65536


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        type=JobType(row["type"]),
        command=row["command"],
        working_directory=row["working_directory"],
        status=JobStatus(row["status"]),
        branch_id=row["branch_id"],
        output=row["output"],
        error=row["error"],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
    )


async def _drain(stream: asyncio.StreamReader | None, cap: int) -> tuple[bytes, bool]:
    """Read *stream* to EOF keeping at most *cap* bytes.

    Returns (kept bytes, overflowed). Excess is read and discarded so the
    child never blocks on a full pipe.
    """
    if stream is None:
        return b"", False
    kept = bytearray()
    overflowed = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        room = cap - len(kept)
        if room > 0:
            kept.extend(chunk[:room])
        if len(chunk) > max(room, 0):
            overflowed = True
    return bytes(kept), overflowed


def combine_output(stdout: bytes, stderr: bytes, cap: int, overflowed: bool = False) -> str:
    """Join stdout and a marked stderr section, truncated to *cap* bytes."""
    combined = stdout
    if stderr:
        combined += STDERR_MARKER.encode() + stderr
    if len(combined) > cap or overflowed:
        text = combined[:cap].decode("utf-8", errors="ignore")
        return f"{text}\n[Output truncated at {cap} bytes]"
    return combined.decode("utf-8", errors="replace")


class JobQueue:
    """Runs shell commands asynchronously and tracks them in ``jobs``."""

    def __init__(
        self,
        db: Database,
        *,
        shell: str = "/bin/bash",
        output_cap: int = 200_000,
        extra_path_dirs: list[str] | None = None,
        observer: JobObserver | None = None,
    ):
        self._db = db
        self._shell = shell
        self._output_cap = output_cap
        self._extra_path_dirs = extra_path_dirs or []
        self._observer = observer
        self._live: dict[str, asyncio.subprocess.Process] = {}
        self._live_lock = asyncio.Lock()
        self._tasks: dict[str, asyncio.Task] = {}
        self._reapers: set[asyncio.Task] = set()

    def set_observer(self, observer: JobObserver | None) -> None:
        self._observer = observer

    # ── Commands ──

    async def enqueue(
        self,
        command: str,
        working_directory: str,
        branch_id: str | None = None,
        job_type: JobType | str = JobType.SHELL,
    ) -> str:
        """Persist a queued job, start it in the background, return its id."""
        job_id = str(uuid.uuid4())
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO jobs(id, type, command, working_directory, branch_id, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, 'queued', ?)",
                (job_id, JobType(job_type).value, command, working_directory, branch_id, utc_now_iso()),
            )
        logger.info("Job queued id=%s cwd=%s command=%r", job_id, working_directory, command[:200])
        task = asyncio.create_task(self._execute(job_id), name=f"job-{job_id[:8]}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._tasks.pop(jid, None))
        return job_id

    async def cancel(self, job_id: str) -> Job:
        """Terminate the job's process if live and mark it cancelled.

        Cancelling a job that already finished is a valid transition, not
        an error. Unknown ids raise JobNotFoundError.
        """
        self.get_job(job_id)
        async with self._live_lock:
            proc = self._live.pop(job_id, None)
            if proc is not None and proc.returncode is None:
                self._terminate(proc)
                reaper = asyncio.create_task(self._reap(proc))
                self._reapers.add(reaper)
                reaper.add_done_callback(self._reapers.discard)
            with self._db.transaction() as conn:
                conn.execute(
                    "UPDATE jobs SET status = 'cancelled', completed_at = ? WHERE id = ?",
                    (utc_now_iso(), job_id),
                )
        logger.info("Job cancelled id=%s live_process=%s", job_id, proc is not None)
        return self.get_job(job_id)

    async def wait(self, job_id: str, timeout: float | None = None) -> Job:
        """Wait for the background task of *job_id* (if any) and return the job."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self.get_job(job_id)

    async def shutdown(self) -> None:
        """Terminate every live process. Their jobs are marked cancelled."""
        for job_id in list(self._live):
            await self.cancel(job_id)
        tasks = [*self._tasks.values(), *self._reapers]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Queries ──

    def get_job(self, job_id: str) -> Job:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        return _row_to_job(row)

    def active_jobs(self) -> list[Job]:
        """Queued and running jobs, newest first."""
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status IN ('queued', 'running') "
                "ORDER BY created_at DESC"
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def recent_jobs(self, limit: int = 20) -> list[Job]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,),
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def is_running(self, job_id: str) -> bool:
        return job_id in self._live

    # ── Execution ──

    async def _execute(self, job_id: str) -> None:
        job = self.get_job(job_id)
        async with self._live_lock:
            with self._db.transaction() as conn:
                started = conn.execute(
                    "UPDATE jobs SET status = 'running' WHERE id = ? AND status = 'queued'",
                    (job_id,),
                ).rowcount
            if not started:
                logger.debug("Job %s no longer queued; not starting", job_id)
                return
            try:
                proc = await asyncio.create_subprocess_exec(
                    self._shell, "-c", job.command,
                    cwd=job.working_directory,
                    env=augmented_env(self._extra_path_dirs),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as exc:
                logger.warning("Job %s failed to launch: %s", job_id, exc)
                self._finish(job_id, JobStatus.FAILED, None, f"Failed to launch: {exc}")
                launch_failed = True
            else:
                self._live[job_id] = proc
                launch_failed = False
        if launch_failed:
            await self._notify(job_id)
            return

        (stdout, out_over), (stderr, err_over) = await asyncio.gather(
            _drain(proc.stdout, self._output_cap),
            _drain(proc.stderr, self._output_cap),
        )
        returncode = await proc.wait()

        async with self._live_lock:
            if self._live.get(job_id) is not proc:
                logger.debug("Job %s was cancelled; discarding output", job_id)
                return
            del self._live[job_id]
            output = combine_output(stdout, stderr, self._output_cap, out_over or err_over)
            if returncode == 0:
                self._finish(job_id, JobStatus.COMPLETED, output, None)
            else:
                self._finish(job_id, JobStatus.FAILED, output, f"Exit code: {returncode}")
        logger.info("Job finished id=%s exit=%s bytes=%d", job_id, returncode, len(output))
        await self._notify(job_id)

    def _finish(
        self, job_id: str, status: JobStatus, output: str | None, error: str | None,
    ) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE jobs SET status = ?, output = ?, error = ?, completed_at = ? "
                "WHERE id = ? AND status = 'running'",
                (status.value, output, error, utc_now_iso(), job_id),
            )

    async def _notify(self, job_id: str) -> None:
        if self._observer is None:
            return
        job = self.get_job(job_id)
        try:
            result = self._observer(job)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Job observer failed for job %s", job_id)

    @staticmethod
    def _terminate(proc: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.terminate()

    @staticmethod
    async def _reap(proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=_KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
