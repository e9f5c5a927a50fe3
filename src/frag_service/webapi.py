import asyncio
import logging
import os
import threading
import time
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .conversion import DEFAULT_WASM_PATH, FragmentsConverter, NodeFragmentsImporter
from .errors import NotFoundError, ServiceError
from .uploads import fragments_response, options_from_form, pick_upload, staged_upload

logger = logging.getLogger(__name__)

# Global configuration defaults
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
ENVIRONMENT = os.getenv("APP_ENV", "development").strip().lower()
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "./uploads")).resolve()
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "100"))
WASM_PATH = os.getenv("WEB_IFC_WASM_PATH", DEFAULT_WASM_PATH)
NODE_BIN = os.getenv("NODE_BIN", "node")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SHUTDOWN_GRACE_SEC = 10

SERVICE_NAME = "IFC to Fragments Converter"

_PROCESS_STARTED = time.monotonic()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def get_converter(request: Request) -> FragmentsConverter:
    return request.app.state.converter


def default_converter() -> FragmentsConverter:
    return FragmentsConverter(
        lambda wasm_path: NodeFragmentsImporter(wasm_path, node_bin=NODE_BIN),
        wasm_path=WASM_PATH,
    )


root = APIRouter()
api = APIRouter(prefix="/api")


@root.get("/health")
def health() -> dict[str, Any]:
    """Liveness check."""
    return {
        "status": "healthy",
        "timestamp": _now_iso(),
        "uptime": time.monotonic() - _PROCESS_STARTED,
    }


@api.get("/status")
def converter_status(converter: FragmentsConverter = Depends(get_converter)) -> dict[str, Any]:
    """Readiness check: whether the importer is initialized."""
    return {
        "status": "ok",
        "ready": converter.ready,
        "service": SERVICE_NAME,
        "version": __version__,
    }


@api.post("/convert")
async def convert(request: Request, converter: FragmentsConverter = Depends(get_converter)) -> Response:
    """Convert an uploaded IFC file to Fragments.

    Accepts multipart/form-data with the file under "ifc" and the optional
    text fields "name", "coordinateToOrigin", "includeProperties" and
    "excludedCategories". Returns the Fragments binary with its metadata in
    the X-Fragments-Metadata header.
    """
    settings = request.app.state
    async with request.form() as form:
        upload = pick_upload(form)
        options = options_from_form(form, upload.filename)
        async with staged_upload(upload, settings.upload_dir, settings.max_upload_bytes) as path:
            data = await asyncio.to_thread(path.read_bytes)
            result = await converter.convert(data, options)
    return fragments_response(result)


def _fault(request: Request, exc: Exception, status_code: int, message: str) -> JSONResponse:
    status = "fail" if 400 <= status_code < 500 else "error"
    logger.error(
        "[%d] %s %s - %s",
        status_code,
        request.method,
        request.url.path,
        message,
        exc_info=exc if status_code >= 500 else None,
    )
    body: dict[str, object] = {"status": status, "message": message}
    if request.app.state.environment != "production":
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status_code, content=body)


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return _fault(request, exc, exc.status_code, exc.message)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # unknown paths and unknown methods on known paths are both "route not found"
    if exc.status_code in (404, 405):
        target = f"{request.url.path}?{request.url.query}" if request.url.query else request.url.path
        not_found = NotFoundError(f"Route {target} not found")
        return _fault(request, exc, not_found.status_code, not_found.message)
    return _fault(request, exc, exc.status_code, str(exc.detail))


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _fault(request, exc, 400, "Invalid request")


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # message of unexpected errors stays server side
    return _fault(request, exc, 500, "Internal server error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    converter: FragmentsConverter = app.state.converter
    if not converter.ready:
        logger.info("Initializing IFC converter...")
        await converter.initialize()
    yield
    await converter.cleanup()
    logger.info("IFC converter cleaned up")


def create_app(
    converter: FragmentsConverter | None = None,
    *,
    environment: str = ENVIRONMENT,
    upload_dir: Path = UPLOAD_DIR,
    max_upload_bytes: int = MAX_UPLOAD_MB * 1024 * 1024,
) -> FastAPI:
    app = FastAPI(
        title=SERVICE_NAME,
        version=__version__,
        description="RESTful API converting IFC building models into the Fragments binary format.",
        lifespan=lifespan,
    )
    app.state.converter = converter or default_converter()
    app.state.environment = environment
    app.state.upload_dir = Path(upload_dir)
    app.state.max_upload_bytes = max_upload_bytes

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition", "X-Fragments-Metadata"],
    )
    app.include_router(root)
    app.include_router(api)

    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    return app


app = create_app()


async def _serve(server) -> None:
    loop = asyncio.get_running_loop()

    def on_loop_error(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        logger.error("Unhandled error in event loop: %s", context.get("message"), exc_info=context.get("exception"))
        server.should_exit = True

    def on_thread_error(args: threading.ExceptHookArgs) -> None:
        logger.error(
            "Uncaught exception in thread %s",
            args.thread.name if args.thread else "?",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        server.should_exit = True

    loop.set_exception_handler(on_loop_error)
    threading.excepthook = on_thread_error
    await server.serve()


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at HOST:PORT (default 0.0.0.0:3000). On SIGINT/SIGTERM
    in-flight requests get SHUTDOWN_GRACE_SEC seconds before they are cut off
    and the converter is released.
    """
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    config = uvicorn.Config(app, host=HOST, port=PORT, timeout_graceful_shutdown=SHUTDOWN_GRACE_SEC)
    server = uvicorn.Server(config)
    logger.info("Health check: http://localhost:%d/health", PORT)
    logger.info("API base URL: http://localhost:%d/api", PORT)
    asyncio.run(_serve(server))


if __name__ == "__main__":
    run()
