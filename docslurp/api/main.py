from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from docslurp.api.routes import scrape, state
from docslurp.core.config import Settings
from docslurp.workers.job_runner import ClientFactory, ScrapeJobRegistry


def create_app(
    settings: Settings | None = None,
    client_factory: ClientFactory | None = None,
) -> FastAPI:
    app = FastAPI(title="doc-slurp API", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings or Settings.from_env()
    app.state.jobs = ScrapeJobRegistry(app.state.settings, client_factory)
    app.include_router(scrape.router)
    app.include_router(state.router)
    return app


app = create_app()
