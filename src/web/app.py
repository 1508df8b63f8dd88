"""FastAPI application entry point."""

import os
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tuning.errors import TuningError
from tuning.schema import init_db
from web.deps import get_config, get_db_path
from web.routes import analysis, imports, metrics, proposals, settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_path = init_db(get_db_path())
    if not os.getenv("TUNER_JWT_SECRET"):
        logger.critical("TUNER_JWT_SECRET env var not set")
        raise RuntimeError("TUNER_JWT_SECRET required")
    logger.info("web.startup", db_path=str(db_path))
    yield
    logger.info("web.shutdown")


app = FastAPI(
    title="Tuner",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().web.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TuningError)
async def tuning_error_handler(request: Request, exc: TuningError):
    logger.info(
        "web.tuning_error",
        kind=exc.kind,
        status=exc.status_code,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(imports.router)
app.include_router(analysis.router)
app.include_router(proposals.router)
app.include_router(metrics.router)
app.include_router(settings.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
