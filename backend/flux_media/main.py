"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flux_media.api.routes import envelope, router
from flux_media.config import CORS_ORIGINS, VERSION, logger as config_logger
from flux_media.db import init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config_logger.info("Flux Media API started")
    yield
    config_logger.info("Flux Media API shutting down")


app = FastAPI(
    title="Flux Media API",
    description="Convert images to WebP/AVIF and videos to AV1/WebM, and track the results.",
    version=VERSION,
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_error_envelope(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content=envelope(None, str(exc.detail), success=False))


@app.exception_handler(RequestValidationError)
async def validation_error_envelope(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(status_code=422, content=envelope(errors, "Invalid request", success=False))


app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from flux_media.config import HOST, PORT
    uvicorn.run("flux_media.main:app", host=HOST, port=PORT, reload=True)
