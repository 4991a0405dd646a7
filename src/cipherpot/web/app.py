from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from .. import __version__
from ..core.config import EngineConfig
from ..features.session import SessionRegistry, create_session_routers

logger = logging.getLogger(__name__)


def create_app(registry: SessionRegistry | None = None) -> FastAPI:
    registry = registry if registry is not None else SessionRegistry(EngineConfig.from_env())
    application = FastAPI(title="Cipherpot", version=__version__)
    application.state.registry = registry

    @application.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    sessions, registry_router = create_session_routers(registry)
    application.include_router(sessions)
    application.include_router(registry_router)
    return application


app = create_app()


def main(host: str | None = None, port: int | None = None) -> None:  # pragma: no cover - runner
    import uvicorn

    logging.basicConfig(level=os.environ.get("CIPHERPOT_LOG_LEVEL", "INFO").upper())
    bind = host or os.environ.get("BIND", "0.0.0.0")
    listen = port if port is not None else int(os.environ.get("PORT", "8000"))
    logger.info("starting server", extra={"host": bind, "port": listen})
    uvicorn.run("cipherpot.web.app:app", host=bind, port=listen, factory=False)


if __name__ == "__main__":  # pragma: no cover
    main()
