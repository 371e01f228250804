import psycopg
import uvicorn

from docbatch.api.app import create_app
from docbatch.config.settings import Settings
from docbatch.database.connection import (
    apply_schema,
    close_pool,
    init_pool,
    open_listen_connection,
)
from docbatch.logging.logger import Log
from docbatch.service import build_service
from docbatch.watch.listener import ChangeListener


def start_listener(settings: Settings) -> ChangeListener | None:
    """Start push notifications, or return None so watches fall back to polling."""
    listener = ChangeListener(lambda: open_listen_connection(settings))
    try:
        listener.start()
    except psycopg.Error as exc:
        Log.warning(f"Change notifications unavailable, watches will poll only: {exc}")
        return None
    return listener


def main() -> None:
    """Entry point: initialize pool -> apply schema -> build service -> serve callbacks."""
    settings = Settings()
    Log.configure(settings.log_level)
    init_pool(settings)

    listener: ChangeListener | None = None
    service = None
    try:
        apply_schema()
        listener = start_listener(settings)
        service = build_service(settings, listener)
        app = create_app(service, settings, listener)
        Log.info(f"Serving callbacks on {settings.http_host}:{settings.http_port}")
        uvicorn.run(
            app,
            host=settings.http_host,
            port=settings.http_port,
            log_level=settings.log_level.lower(),
        )
    finally:
        if service is not None:
            service.close()
        if listener is not None:
            listener.stop()
        close_pool()


if __name__ == "__main__":
    main()
