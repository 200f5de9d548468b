"""Scrape pipeline and in-process background job registry."""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from docslurp.core.config import Settings
from docslurp.core.state import load_store, merge_stores, save_store
from docslurp.core.storage import prune_removed_files, write_scraped_files
from docslurp.fetchers.github_client import GitHubClient, create_client
from docslurp.fetchers.org_scraper import ScrapeConfig, ScrapeProgress, ScrapeResult, scrape_org

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[str | None], GitHubClient]

DEFAULT_MAX_FINISHED_JOBS = 50


def default_client_factory(settings: Settings) -> ClientFactory:
    def factory(token: str | None) -> GitHubClient:
        return create_client(token, **settings.client_options())

    return factory


@dataclass(slots=True)
class PipelineOutcome:
    result: ScrapeResult
    written: list[Path] = field(default_factory=list)
    pruned: list[Path] = field(default_factory=list)


async def run_scrape_pipeline(
    settings: Settings,
    config: ScrapeConfig,
    client_factory: ClientFactory | None = None,
) -> PipelineOutcome:
    """Scrape with the persisted state, then write docs and save the new state."""
    previous = await asyncio.to_thread(load_store, settings.state_file)
    factory = client_factory or default_client_factory(settings)
    async with factory(config.token) as client:
        result = await scrape_org(config, previous, client)

    outcome = PipelineOutcome(result=result)
    outcome.written = await asyncio.to_thread(
        write_scraped_files, settings.docs_dir, result.files
    )
    if settings.prune_removed:
        outcome.pruned = await asyncio.to_thread(
            prune_removed_files, settings.docs_dir, previous, result.state
        )

    state = result.state
    if settings.merge_state or result.cancelled:
        state = merge_stores(previous, state)
    await asyncio.to_thread(save_store, settings.state_file, state)
    LOGGER.info("Saved incremental state to %s", settings.state_file)
    return outcome


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobConflictError(RuntimeError):
    """Raised when a scrape job is already running."""


@dataclass(slots=True)
class ScrapeJob:
    id: str
    config: ScrapeConfig
    status: JobStatus = JobStatus.QUEUED
    progress: ScrapeProgress | None = None
    fetched_files: int = 0
    diagnostics: list[str] = field(default_factory=list)
    error: str | None = None
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).replace(microsecond=0).isoformat()
    )
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None

    @property
    def finished(self) -> bool:
        return self.status in {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org": self.config.org,
            "status": self.status.value,
            "progress": self.progress.to_dict() if self.progress else None,
            "fetched_files": self.fetched_files,
            "diagnostics": list(self.diagnostics),
            "error": self.error,
            "created_at": self.created_at,
        }


class ScrapeJobRegistry:
    """Runs at most one scrape at a time; the state file is shared between jobs.

    Only the newest ``max_finished_jobs`` finished jobs stay queryable.
    """

    def __init__(
        self,
        settings: Settings,
        client_factory: ClientFactory | None = None,
        max_finished_jobs: int = DEFAULT_MAX_FINISHED_JOBS,
    ) -> None:
        self.settings = settings
        self.client_factory = client_factory
        self.max_finished_jobs = max(0, max_finished_jobs)
        self._jobs: dict[str, ScrapeJob] = {}

    def get(self, job_id: str) -> ScrapeJob | None:
        return self._jobs.get(job_id)

    def active(self) -> ScrapeJob | None:
        for job in self._jobs.values():
            if not job.finished:
                return job
        return None

    def start(
        self,
        org: str,
        token: str | None = None,
        repo_filter: str | None = None,
    ) -> ScrapeJob:
        running = self.active()
        if running is not None:
            raise JobConflictError(
                f"Scrape job {running.id} for {running.config.org} is still running"
            )

        self._evict_finished()
        job_id = uuid.uuid4().hex
        config = ScrapeConfig(org=org, token=token, repo_filter=repo_filter)
        job = ScrapeJob(id=job_id, config=config)

        def on_progress(progress: ScrapeProgress) -> None:
            job.progress = progress

        job.config.on_progress = on_progress
        job.config.cancel_event = job.cancel_event
        self._jobs[job_id] = job
        job.task = asyncio.create_task(self._run(job))
        return job

    def _evict_finished(self) -> None:
        finished = [job_id for job_id, job in self._jobs.items() if job.finished]
        for job_id in finished[: max(0, len(finished) - self.max_finished_jobs)]:
            del self._jobs[job_id]

    def cancel(self, job_id: str) -> ScrapeJob | None:
        job = self._jobs.get(job_id)
        if job is not None and not job.finished:
            job.cancel_event.set()
        return job

    async def wait(self, job_id: str) -> ScrapeJob | None:
        job = self._jobs.get(job_id)
        if job is not None and job.task is not None:
            await job.task
        return job

    async def _run(self, job: ScrapeJob) -> None:
        job.status = JobStatus.RUNNING
        try:
            outcome = await run_scrape_pipeline(self.settings, job.config, self.client_factory)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Scrape job %s failed: %s", job.id, exc)
            job.status = JobStatus.FAILED
            job.error = str(exc)
            return
        job.fetched_files = len(outcome.result.files)
        job.diagnostics = outcome.result.diagnostics
        job.status = JobStatus.CANCELLED if outcome.result.cancelled else JobStatus.SUCCEEDED
