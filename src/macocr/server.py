# src/macocr/server.py
"""
HTTP upload service.

Every request passes an ASGI guard that checks Basic Auth and the declared body
size before the multipart body is parsed. /upload then bounds the actual read,
decodes the image and runs recognition in the threadpool so the event loop
keeps serving other connections.
"""
from __future__ import annotations

import base64
import binascii
import html
import logging
import secrets
import time
from typing import List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, File, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from . import __version__
from .config import ServerConfig
from .exceptions import (
    AuthFailedError,
    InvalidImageError,
    MacOCRError,
    MalformedObservationError,
    PayloadTooLargeError,
    RecognitionEngineError,
)
from .models import RecognitionResult
from .ocr_backends.base import BaseOCREngine
from .processors import UPLOAD_SUCCESS_MESSAGE, failure_result, ocr_bytes

logger = logging.getLogger("macocr")

AUTH_REALM = 'Basic realm="MacOCR Server"'
AUTH_FAILED_MESSAGE = "Authentication failed: A valid username and password are required."
NO_FILE_MESSAGE = "No file received"
NOT_AN_IMAGE_MESSAGE = "The file type is not an image"
ENGINE_FAILED_MESSAGE = "Text recognition failed"


# --- Response schema ---

class OCRRect(BaseModel):
    top_left_x: float
    top_left_y: float
    top_right_x: float
    top_right_y: float
    bottom_right_x: float
    bottom_right_y: float
    bottom_left_x: float
    bottom_left_y: float


class OCRBox(BaseModel):
    text: str
    x: float
    y: float
    w: float
    h: float
    rect: OCRRect


class UploadResponse(BaseModel):
    success: bool
    message: str
    ocr_result: str
    image_width: int
    image_height: int
    ocr_boxes: List[OCRBox]

    @classmethod
    def from_result(cls, result: RecognitionResult) -> "UploadResponse":
        return cls.model_validate(result.to_dict())


# --- Error mapping ---

def status_for(exc: MacOCRError) -> Tuple[int, str]:
    """HTTP status and client-facing message. Engine details never reach the client."""
    if isinstance(exc, AuthFailedError):
        return 401, AUTH_FAILED_MESSAGE
    if isinstance(exc, PayloadTooLargeError):
        return 413, str(exc)
    if isinstance(exc, InvalidImageError):
        return 400, NOT_AN_IMAGE_MESSAGE
    # engine failures and malformed observations are server side
    return 500, ENGINE_FAILED_MESSAGE


def wants_html(headers: Headers) -> bool:
    accept = headers.get("accept", "").lower()
    return "text/html" in accept and "application/json" not in accept


def render_html(result: RecognitionResult) -> str:
    title = "OCR Result:" if result.success else f"&#10060; {html.escape(result.message)}"
    return f"""<!doctype html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>OCR Result</title>
</head>
<body>
    <h1>{title}</h1>
    <pre>{html.escape(result.text)}</pre>
</body>
</html>
"""


def render_form() -> str:
    return f"""<!doctype html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>macocr</title>
</head>
<body>
    <h1>macocr v{__version__}</h1>
    <form action="/upload" method="post" enctype="multipart/form-data">
        <label>
            Choose file:
            <input type="file" name="file" required>
        </label>
        <br><br>
        <input type="submit" value="Upload file">
    </form>
</body>
</html>
"""


def failure_response(status: int, message: str, headers: Headers) -> Response:
    result = failure_result(message)
    extra = {"WWW-Authenticate": AUTH_REALM} if status == 401 else None
    if wants_html(headers):
        return HTMLResponse(render_html(result), status_code=status, headers=extra)
    return JSONResponse(result.to_dict(), status_code=status, headers=extra)


def error_response(exc: MacOCRError, headers: Headers) -> Response:
    status, message = status_for(exc)
    return failure_response(status, message, headers)


# --- Auth & size guard ---

def check_basic_auth(header: Optional[str], expected: Tuple[str, str]) -> None:
    if not header:
        raise AuthFailedError("Missing Authorization header")
    scheme, _, param = header.partition(" ")
    if scheme.lower() != "basic" or not param.strip():
        raise AuthFailedError("Unsupported authorization scheme")
    try:
        decoded = base64.b64decode(param.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise AuthFailedError("Malformed Basic credentials") from e
    username, sep, password = decoded.partition(":")
    # compare both halves so timing does not reveal which one was wrong
    user_ok = secrets.compare_digest(username.encode("utf-8"), expected[0].encode("utf-8"))
    pass_ok = secrets.compare_digest(password.encode("utf-8"), expected[1].encode("utf-8"))
    if not (sep and user_ok and pass_ok):
        raise AuthFailedError("Invalid credentials")


def check_content_length(headers: Headers, limit: int) -> None:
    raw = headers.get("content-length")
    if raw is None:
        return
    try:
        length = int(raw)
    except ValueError:
        return
    if length > limit:
        raise PayloadTooLargeError(f"File too large, the limit is {limit} bytes")


class UploadGuardMiddleware:
    """
    Auth then size checks, plus one access log line per request.
    The size limit is enforced on the declared Content-Length and again on the
    bytes actually streamed in, so chunked bodies are cut off at the limit too.
    """

    def __init__(self, app: ASGIApp, config: ServerConfig):
        self.app = app
        self.config = config

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        headers = Headers(scope=scope)
        limit = self.config.max_upload_bytes
        status = 500
        response_started = False
        received = 0
        too_large: Optional[PayloadTooLargeError] = None

        async def limited_receive() -> Message:
            nonlocal received, too_large
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    too_large = PayloadTooLargeError(f"File too large, the limit is {limit} bytes")
                    raise too_large
            return message

        async def send_wrapper(message: Message) -> None:
            nonlocal status, response_started
            if too_large is not None:
                # whatever the app makes of the aborted body, the client gets 413
                return
            if message["type"] == "http.response.start":
                status = message["status"]
                response_started = True
            await send(message)

        async def reject(exc: MacOCRError) -> None:
            logger.warning("Rejected %s %s, %s: %s", scope["method"], scope["path"], exc.kind, exc)
            await error_response(exc, headers)(scope, receive, send_wrapper)

        try:
            try:
                if self.config.auth:
                    check_basic_auth(headers.get("authorization"), self.config.auth)
                check_content_length(headers, limit)
            except (AuthFailedError, PayloadTooLargeError) as e:
                await reject(e)
                return

            try:
                await self.app(scope, limited_receive, send_wrapper)
            except Exception:
                if too_large is None:
                    raise
            if too_large is not None and not response_started:
                exc, too_large = too_large, None
                await reject(exc)
        finally:
            logger.info(
                "%s %s %s %.1f ms",
                scope["method"], scope["path"], status, (time.perf_counter() - start) * 1000,
            )


# --- Application ---

def create_app(config: ServerConfig, engine: BaseOCREngine) -> FastAPI:
    """Build the service. Configuration and engine are fixed for the app's lifetime."""
    app = FastAPI(title="macocr", version=__version__)
    app.state.config = config
    app.state.engine = engine
    app.add_middleware(UploadGuardMiddleware, config=config)

    @app.get("/", response_class=HTMLResponse)
    async def show_form():
        return render_form()

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.post("/upload", response_model=UploadResponse)
    async def upload_file(request: Request, file: Optional[UploadFile] = File(None)):
        if file is None:
            return failure_response(400, NO_FILE_MESSAGE, request.headers)

        try:
            try:
                data = await file.read(config.max_upload_bytes + 1)
            finally:
                await file.close()
            if len(data) > config.max_upload_bytes:
                raise PayloadTooLargeError(f"File too large, the limit is {config.max_upload_bytes} bytes")

            if await request.is_disconnected():
                logger.info("Client went away before recognition of %s, skipping", file.filename)
                return Response(status_code=499)

            result = await run_in_threadpool(ocr_bytes, data, engine, UPLOAD_SUCCESS_MESSAGE)
        except MacOCRError as e:
            if isinstance(e, (RecognitionEngineError, MalformedObservationError)):
                logger.error("Recognition failed for %s, %s", file.filename, e, exc_info=e.__cause__ or e)
            else:
                logger.warning("Rejected upload %s, %s: %s", file.filename, e.kind, e)
            return error_response(e, request.headers)
        except Exception:
            logger.exception("Unexpected failure while recognizing %s", file.filename)
            return failure_response(500, ENGINE_FAILED_MESSAGE, request.headers)

        logger.debug("Recognized %s, %d regions", file.filename, len(result.regions))
        if wants_html(request.headers):
            return HTMLResponse(render_html(result))
        return UploadResponse.from_result(result)

    return app


def serve(config: ServerConfig, engine: BaseOCREngine) -> None:
    """Run the service with uvicorn until interrupted."""
    app = create_app(config, engine)
    if config.auth:
        print(f"      Auth: {config.auth[0]}:{'*' * len(config.auth[1])}")
    print(f"   Address: http://{config.host}:{config.port}")
    print(f"     Limit: {config.max_upload_bytes // (1024 * 1024)} MB")
    print("", flush=True)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level)
