from fastapi import FastAPI, Request

from docbatch.api import callbacks
from docbatch.api.schemas import HealthResponse
from docbatch.config.settings import Settings
from docbatch.service import BatchService
from docbatch.watch.listener import ChangeListener


def create_app(
    service: BatchService,
    settings: Settings,
    listener: ChangeListener | None = None,
) -> FastAPI:
    """Build the HTTP app that receives worker callbacks."""
    app = FastAPI(title="docbatch", docs_url=None, redoc_url=None)
    app.state.service = service
    app.state.settings = settings
    app.state.listener = listener
    app.include_router(callbacks.router)

    @app.get("/health", response_model=HealthResponse)
    def health(request: Request) -> HealthResponse:
        current: ChangeListener | None = request.app.state.listener
        return HealthResponse(
            status="ok", listener=current is not None and current.running
        )

    return app
