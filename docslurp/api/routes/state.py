import asyncio
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from docslurp.core.config import Settings
from docslurp.core.state import clear_store, load_store
from docslurp.core.storage import summarize_docs

router = APIRouter(tags=["state"])


def _settings(request: Request) -> Settings:
    return request.app.state.settings


@router.get("/state")
async def get_state(request: Request) -> dict[str, Any]:
    store = await asyncio.to_thread(load_store, _settings(request).state_file)
    return {
        "last_scrape_timestamp": store.last_scrape_timestamp,
        "repositories": {
            name: len(bucket.files) for name, bucket in sorted(store.repositories.items())
        },
        "file_count": store.file_count(),
    }


@router.delete("/state")
async def delete_state(request: Request) -> dict[str, Any]:
    if request.app.state.jobs.active() is not None:
        raise HTTPException(status_code=409, detail="Cannot clear state while a scrape is running")
    removed = await asyncio.to_thread(clear_store, _settings(request).state_file)
    return {"cleared": removed}


@router.get("/repos")
async def list_repos(request: Request) -> list[dict[str, Any]]:
    summary = await asyncio.to_thread(summarize_docs, _settings(request).docs_dir)
    return [
        {"repo": repo, "file_count": len(paths), "paths": paths}
        for repo, paths in summary.items()
    ]
