"""
Asset server for browser participants.

Serves the test client page and the stack's browser build over HTTP with
permissive CORS, so a remotely automated browser can load them. The server
is stateless and runs on a background thread for the duration of a run.
"""

import hashlib
import threading
import time
import uuid
from pathlib import Path
from typing import Optional
import logging

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import InfrastructureError

logger = logging.getLogger(__name__)

ASSETS_DIR = Path(__file__).parent / "assets"
REQUEST_ID_HEADER = "X-Request-ID"
BUNDLE_VERSION_HEADER = "X-Bundle-Version"


def bundle_version(*directories: Optional[Path]) -> str:
    """Content hash over every file served, so browsers never mix bundles."""
    digest = hashlib.sha256()
    for directory in directories:
        if directory is None or not directory.is_dir():
            continue
        for path in sorted(p for p in directory.rglob("*") if p.is_file()):
            digest.update(path.relative_to(directory).as_posix().encode("utf-8"))
            digest.update(path.read_bytes())
    return digest.hexdigest()[:12]


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """
    Tag every request with an ID and log its outcome.

    An incoming X-Request-ID is propagated when it looks sane, otherwise a
    new one is generated. The ID and the bundle version are returned as
    response headers.
    """

    def __init__(self, app, version: str):
        super().__init__(app)
        self.version = version

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER)
        if not request_id or len(request_id) > 64 or not all(c.isalnum() or c in "-_" for c in request_id):
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[BUNDLE_VERSION_HEADER] = self.version
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({duration_ms:.1f}ms) [{request_id}]"
        )
        return response


def create_app(bundle_dir: Optional[str] = None) -> FastAPI:
    """
    Build the asset server application.

    Args:
        bundle_dir: Directory holding the stack's compiled browser build,
                    served under ``/pkg``

    Returns:
        FastAPI application
    """
    bundle_path = Path(bundle_dir) if bundle_dir else None
    if bundle_path is not None and not bundle_path.is_dir():
        raise InfrastructureError(f"Browser bundle directory not found: {bundle_dir}")
    version = bundle_version(ASSETS_DIR, bundle_path)

    app = FastAPI(title="P2P Interop Asset Server", docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER, BUNDLE_VERSION_HEADER],
    )
    # Outermost, so CORS preflight responses are traced too
    app.add_middleware(RequestTracingMiddleware, version=version)

    @app.get("/healthz")
    async def health_check():
        return {"status": "ok", "bundle_version": version}

    if bundle_path is not None:
        app.mount("/pkg", StaticFiles(directory=bundle_path), name="pkg")
    app.mount("/", StaticFiles(directory=ASSETS_DIR, html=True), name="assets")
    return app


class AssetServer:
    """Runs the asset server on a background thread."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        bundle_dir: Optional[str] = None,
        public_url: Optional[str] = None
    ):
        self.host = host
        self.port = port
        self.public_url = public_url
        self.app = create_app(bundle_dir)
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def base_url(self) -> str:
        if self.public_url:
            return self.public_url.rstrip("/")
        return f"http://{self.host}:{self.port}"

    def start(self, timeout: float = 10.0) -> None:
        """
        Start serving and block until the socket is bound.

        Raises:
            InfrastructureError: If the server does not come up in time
        """
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(target=self._server.run, name="asset-server", daemon=True)
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                self.stop()
                raise InfrastructureError(f"Asset server failed to start on {self.host}:{self.port}")
            time.sleep(0.05)

        # Port 0 asks the OS for a free port
        self.port = self._server.servers[0].sockets[0].getsockname()[1]
        logger.info(f"Asset server listening on {self.base_url}")

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
        logger.info("Asset server stopped")

    def __enter__(self) -> "AssetServer":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
