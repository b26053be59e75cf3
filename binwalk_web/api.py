import logging
import shutil
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response

from .engine import BinwalkCli, Engine, dispatch, shutdown_pool
from .errors import AnalysisError, NotFound
from .harvest import harvest
from .intake import parse_upload
from .models import (
    AnalyzeResponse,
    EntropyResponse,
    HealthResponse,
    SignatureListResponse,
)
from .options import translate
from .settings import settings
from .storage import BlobStore, store


logger = logging.getLogger("binwalk-web")
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

STATIC_DIR = Path(__file__).resolve().parent / "static"
DOWNLOAD_PREFIX = "/api/download"

engine = BinwalkCli()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    shutdown_pool()


app = FastAPI(title="Binwalk Web", lifespan=lifespan)


def get_engine() -> Engine:
    return engine


def get_store() -> BlobStore:
    return store


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return PlainTextResponse(exc.message, status_code=exc.status_code)


@app.exception_handler(AnalysisError)
async def analysis_error_handler(request: Request, exc: AnalysisError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


@lru_cache(maxsize=1)
def _index_page() -> str:
    return (STATIC_DIR / "index.html").read_text(encoding="utf-8")


@app.get("/", response_class=HTMLResponse)
def index():
    return _index_page()


@app.get("/health", response_model=HealthResponse)
async def health(blobs: BlobStore = Depends(get_store)):
    return HealthResponse(status="ok", **await blobs.stats())


@app.post("/api/analyze", response_model=AnalyzeResponse)
async def analyze(
    request: Request,
    analysis_engine: Engine = Depends(get_engine),
    blobs: BlobStore = Depends(get_store),
):
    upload = await parse_upload(request)
    opts = upload.options
    detail_level = logging.INFO if opts.verbose else logging.DEBUG
    summary_level = logging.DEBUG if opts.quiet else logging.INFO

    config = translate(opts, upload.filename)
    logger.log(
        detail_level,
        "Analyzing %s (%d bytes) extract=%s carve=%s matryoshka=%s",
        config.filename,
        len(upload.data),
        opts.extract,
        opts.carve,
        opts.matryoshka,
    )

    try:
        result = await dispatch(
            analysis_engine,
            upload.data,
            config.filename,
            config,
            opts.extract,
            timeout=settings.analysis_timeout,
        )
    except AnalysisError as exc:
        logger.error("Analysis of %s failed: %s", config.filename, exc.message)
        raise

    try:
        extractions, artifacts = await harvest(
            result.extractions, blobs, DOWNLOAD_PREFIX, detail_level
        )
    finally:
        if result.scratch_directory:
            await run_in_threadpool(shutil.rmtree, result.scratch_directory, True)

    logger.log(
        summary_level,
        "Analyzed %s: %d signatures, %d extractions, %d artifacts",
        config.filename,
        len(result.file_map),
        len(extractions),
        sum(len(files) for files in artifacts.values()),
    )
    return AnalyzeResponse(
        file_map=result.file_map,
        extractions=extractions,
        artifacts=artifacts,
        # entropy graphs are not computed yet; requesting one yields an empty series
        entropy=[] if opts.entropy else None,
    )


@app.get("/api/list", response_model=SignatureListResponse)
def list_signatures(analysis_engine: Engine = Depends(get_engine)):
    return SignatureListResponse(signatures=analysis_engine.signatures())


@app.post("/api/entropy", response_model=EntropyResponse)
def entropy():
    return EntropyResponse(entropy=[])


@app.get(DOWNLOAD_PREFIX + "/{token}")
async def download(token: str, blobs: BlobStore = Depends(get_store)):
    payload = await blobs.get(token)
    if payload is None:
        raise NotFound("Not found")
    return Response(content=payload, media_type="application/octet-stream")
