"""Import job orchestrator.

One owner task holds the job registry. Everything that changes a job
(starting it, importer progress, completion, failure, dismissal and the
timed removal of completed jobs) arrives as a command on a queue, so the
registry is only ever mutated from that task. Observers get a copy of the
whole registry after every change.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, replace
from pathlib import PurePath
from typing import Any, Callable, Dict, List, Optional

from blog_archiver.models.schemas import (
    ImportJob,
    ImportProgress,
    ImportResult,
    JobStatus,
    SourceKind,
)
from blog_archiver.services.importers.base import BaseImporter, ProgressSink
from blog_archiver.services.text_utils import generate_id, utc_now

logger = logging.getLogger(__name__)

# Returned by start() instead of a job id when the same source is already importing
ALREADY_RUNNING = "already_running"

JobSnapshot = Dict[str, ImportJob]
Observer = Callable[[JobSnapshot], None]
ImporterFactory = Callable[[SourceKind, ProgressSink], BaseImporter]

_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*://")


def normalize_source_url(url: str) -> str:
    """Case-insensitive, scheme-less, trailing-slash-less form of a URL."""
    return _SCHEME.sub("", url.strip().lower()).rstrip("/")


def dedup_key(source: SourceKind, params: Dict[str, Any]) -> Optional[str]:
    """Key identifying the remote source of an import, or None if not deduplicated."""
    if source is SourceKind.WAYBACK:
        return normalize_source_url(params["feed_url"])
    if source is SourceKind.HISTORY_API:
        base = str(params["base_url"]).strip().rstrip("/")
        return normalize_source_url(f"{base}/feeds/{params['feed_id']}")
    return None


def default_title(source: SourceKind, params: Dict[str, Any]) -> str:
    if source is SourceKind.WAYBACK:
        return str(params.get("feed_url", ""))
    if source is SourceKind.HISTORY_API:
        return f"{params.get('base_url', '')} feed {params.get('feed_id', '')}"
    return PurePath(str(params.get("path", "import.json"))).name


@dataclass
class _StartJob:
    source: SourceKind
    params: Dict[str, Any]
    title: str
    reply: asyncio.Future


@dataclass
class _Progress:
    job_id: str
    progress: ImportProgress


@dataclass
class _Complete:
    job_id: str
    result: ImportResult


@dataclass
class _Fail:
    job_id: str
    error: str


@dataclass
class _Dismiss:
    job_id: str
    reply: Optional[asyncio.Future] = None


class ImportOrchestrator:
    """Starts imports and tracks their progress.

    Args:
        importer_factory: Builds the importer for a source kind, wired to a progress sink
        completed_ttl: Seconds a completed job stays listed before removal
        log_cap: Progress messages kept per job
    """

    def __init__(
        self,
        importer_factory: ImporterFactory,
        completed_ttl: float = 10.0,
        log_cap: int = 50,
    ):
        self._factory = importer_factory
        self._completed_ttl = completed_ttl
        self._log_cap = log_cap

        self._jobs: Dict[str, ImportJob] = {}
        self._keys: Dict[str, str] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._observers: List[Observer] = []

        self._commands: Optional[asyncio.Queue] = None
        self._owner: Optional[asyncio.Task] = None

    # ── Lifecycle ────────────────────────────────────────────────────

    async def init(self) -> None:
        """Start the owner task. Must be called from the running event loop."""
        if self._owner is not None:
            return
        self._commands = asyncio.Queue()
        self._owner = asyncio.create_task(self._run(), name="import-orchestrator")
        logger.debug("Import orchestrator started")

    async def close(self) -> None:
        """Stop the owner task, pending removals and any import still running."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        tasks = list(self._tasks.values())
        if self._owner is not None:
            tasks.append(self._owner)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._owner = None
        self._commands = None
        logger.debug("Import orchestrator stopped")

    # ── Public API ───────────────────────────────────────────────────

    async def start(
        self,
        source: SourceKind,
        params: Dict[str, Any],
        title: Optional[str] = None,
    ) -> str:
        """Start an import in the background.

        Returns:
            The new job id, or ALREADY_RUNNING if a job for the same URL is running
        """
        reply = asyncio.get_running_loop().create_future()
        self._send(_StartJob(source, dict(params), title or default_title(source, params), reply))
        return await reply

    async def dismiss(self, job_id: str) -> None:
        """Forget a job and cancel its pending removal. Unknown ids are ignored."""
        reply = asyncio.get_running_loop().create_future()
        self._send(_Dismiss(job_id, reply))
        await reply

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def jobs(self) -> JobSnapshot:
        """Copy of every tracked job, keyed by id."""
        return {job_id: _copy_job(job) for job_id, job in self._jobs.items()}

    def get(self, job_id: str) -> Optional[ImportJob]:
        job = self._jobs.get(job_id)
        return _copy_job(job) if job else None

    async def wait(self, job_id: str) -> Optional[ImportJob]:
        """Wait for a job's importer to finish and its outcome to be recorded."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait([task])
        if self._commands is not None:
            await self._commands.join()
        return self.get(job_id)

    # ── Owner task ───────────────────────────────────────────────────

    def _send(self, command) -> None:
        if self._commands is None:
            raise RuntimeError("ImportOrchestrator.init() has not been awaited")
        self._commands.put_nowait(command)

    async def _run(self) -> None:
        while True:
            command = await self._commands.get()
            try:
                self._handle(command)
            except Exception:
                logger.exception(f"Import orchestrator failed to handle {type(command).__name__}")
            finally:
                self._commands.task_done()

    def _handle(self, command) -> None:
        if isinstance(command, _StartJob):
            self._on_start(command)
        elif isinstance(command, _Progress):
            self._on_progress(command)
        elif isinstance(command, _Complete):
            self._on_complete(command)
        elif isinstance(command, _Fail):
            self._on_fail(command)
        elif isinstance(command, _Dismiss):
            self._on_dismiss(command)

    def _on_start(self, command: _StartJob) -> None:
        try:
            key = dedup_key(command.source, command.params)
        except KeyError as e:
            command.reply.set_exception(ValueError(f"Missing import parameter {e}"))
            return

        if key is not None:
            for job_id, other_key in self._keys.items():
                if other_key == key and self._jobs[job_id].status is JobStatus.RUNNING:
                    logger.info(f"Import of {key} already running as job {job_id}")
                    command.reply.set_result(ALREADY_RUNNING)
                    return

        job = ImportJob(
            id=generate_id(),
            blog_id=None,
            title=command.title,
            source=command.source,
            status=JobStatus.RUNNING,
            phase="starting",
            total_items=0,
            imported_items=0,
            message="Starting import...",
            error=None,
            started_at=utc_now(),
        )
        self._jobs[job.id] = job
        if key is not None:
            self._keys[job.id] = key

        task = asyncio.create_task(
            self._execute(job.id, command.source, command.params),
            name=f"import-{job.id}",
        )
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))

        logger.info(f"Started {command.source.value} import job {job.id}: {job.title}")
        command.reply.set_result(job.id)
        self._notify()

    def _on_progress(self, command: _Progress) -> None:
        job = self._jobs.get(command.job_id)
        if job is None or job.status.is_terminal:
            return

        progress = command.progress
        job.phase = progress.phase
        job.total_items = progress.total_items
        job.imported_items = progress.imported_items
        job.message = progress.message
        if progress.discovered_title:
            job.title = progress.discovered_title
        self._append_log(job, progress.message)
        self._notify()

    def _on_complete(self, command: _Complete) -> None:
        job = self._jobs.get(command.job_id)
        if job is None or job.status.is_terminal:
            return

        result = command.result
        job.status = JobStatus.COMPLETED
        job.blog_id = result.blog_id
        job.total_items = result.total_items
        job.imported_items = result.imported_items
        job.phase = "completed"
        job.message = f"Imported {result.imported_items}/{result.total_items} posts"
        job.completed_at = utc_now()
        self._append_log(job, job.message)

        loop = asyncio.get_running_loop()
        self._timers[job.id] = loop.call_later(
            self._completed_ttl, self._send_if_open, _Dismiss(job.id)
        )
        self._notify()

    def _on_fail(self, command: _Fail) -> None:
        job = self._jobs.get(command.job_id)
        if job is None or job.status.is_terminal:
            return

        job.status = JobStatus.FAILED
        job.error = command.error
        job.phase = "failed"
        job.message = f"Import failed: {command.error}"
        job.completed_at = utc_now()
        self._append_log(job, job.message)
        self._notify()

    def _on_dismiss(self, command: _Dismiss) -> None:
        handle = self._timers.pop(command.job_id, None)
        if handle is not None:
            handle.cancel()

        removed = self._jobs.pop(command.job_id, None)
        self._keys.pop(command.job_id, None)

        if command.reply is not None and not command.reply.done():
            command.reply.set_result(None)
        if removed is not None:
            logger.debug(f"Removed import job {command.job_id}")
            self._notify()

    def _send_if_open(self, command) -> None:
        if self._commands is not None:
            self._commands.put_nowait(command)

    def _append_log(self, job: ImportJob, message: str) -> None:
        job.log.append(message)
        if len(job.log) > self._log_cap:
            del job.log[: len(job.log) - self._log_cap]

    def _notify(self) -> None:
        snapshot = self.jobs()
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("Import job observer raised")

    # ── Importer tasks ───────────────────────────────────────────────

    async def _execute(self, job_id: str, source: SourceKind, params: Dict[str, Any]) -> None:
        def sink(progress: ImportProgress) -> None:
            self._send_if_open(_Progress(job_id, progress))

        try:
            importer = self._factory(source, sink)
            result = await importer.run(params)
        except Exception as e:
            logger.error(f"Import job {job_id} failed: {e}")
            self._send_if_open(_Fail(job_id, str(e) or type(e).__name__))
        else:
            self._send_if_open(_Complete(job_id, result))


def _copy_job(job: ImportJob) -> ImportJob:
    return replace(job, log=list(job.log))
