import re
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from docslurp.workers.job_runner import JobConflictError, ScrapeJobRegistry

router = APIRouter(tags=["scrape"])


class ScrapeRequest(BaseModel):
    org: str = Field(min_length=1)
    token: str | None = None
    repo_filter: str | None = None

    @field_validator("repo_filter")
    @classmethod
    def _valid_pattern(cls, value: str | None) -> str | None:
        if value:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"Invalid repo_filter pattern: {exc}") from exc
        return value or None


class ScrapeJobResponse(BaseModel):
    id: str
    org: str
    status: str
    progress: dict[str, Any] | None = None
    fetched_files: int = 0
    diagnostics: list[str] = Field(default_factory=list)
    error: str | None = None
    created_at: str


def _registry(request: Request) -> ScrapeJobRegistry:
    return request.app.state.jobs


@router.post("/scrape", response_model=ScrapeJobResponse, status_code=202)
async def start_scrape(
    payload: ScrapeRequest, request: Request, wait: bool = False
) -> ScrapeJobResponse:
    registry = _registry(request)
    try:
        job = registry.start(payload.org.strip(), payload.token, payload.repo_filter)
    except JobConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if wait:
        await registry.wait(job.id)
    return ScrapeJobResponse(**job.snapshot())


@router.get("/scrape/{job_id}", response_model=ScrapeJobResponse)
async def get_scrape(job_id: str, request: Request) -> ScrapeJobResponse:
    job = _registry(request).get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Scrape job not found")
    return ScrapeJobResponse(**job.snapshot())


@router.delete("/scrape/{job_id}", response_model=ScrapeJobResponse)
async def cancel_scrape(job_id: str, request: Request) -> ScrapeJobResponse:
    job = _registry(request).cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Scrape job not found")
    return ScrapeJobResponse(**job.snapshot())
