# main.py
# Description: FastAPI application exposing the authoritative image store over HTTP.
#
# Imports
from contextlib import asynccontextmanager
from typing import Optional
#
# 3rd-party Libraries
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
#
# Local Imports
from imgsync import __version__
from imgsync.app.api.v1.API_Deps.Sync_Deps import get_authority, set_authority
from imgsync.app.api.v1.endpoints.sync import router as sync_router
from imgsync.app.core.config import setup_logging
from imgsync.app.core.Sync.authority import AuthoritativeImageStore
#
########################################################################################################################
#
# Functions:


@asynccontextmanager
async def lifespan(app: FastAPI):
    authority = get_authority()
    logger.info(f"App Startup: serving anchor {authority.anchor_id} at sequence {authority.current_sequence}")
    yield
    logger.info("App Shutdown")


def create_app(authority: Optional[AuthoritativeImageStore] = None, configure_logging: bool = True) -> FastAPI:
    """
    Builds the service. When `authority` is given it replaces the shared store
    returned by get_authority().
    """
    if configure_logging:
        setup_logging()
    if authority is not None:
        set_authority(authority)

    app = FastAPI(
        title="imgsync API",
        version=__version__,
        description="Authoritative sequence-numbered image log for imgsync clients",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Router for the operation log, snapshot and image writes
    app.include_router(sync_router, prefix="/api", tags=["sync"])

    @app.get("/")
    async def root():
        return {"message": "imgsync sync service is running"}

    # Health check
    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app(configure_logging=False)

#
## End of main.py
########################################################################################################################
