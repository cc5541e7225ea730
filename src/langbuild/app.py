from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from typing import BinaryIO, Iterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from langbuild.errors import (
    BuildCancelled,
    BuildValidationError,
    PayloadTooLarge,
    StageError,
    StageTimeoutError,
    WorkspaceError,
)
from langbuild.pipeline import build_bundle
from langbuild.results import BuildSummary
from langbuild.schema import BUNDLE_NAME, FORM_FIELDS, ROLES, BuildInput
from langbuild.settings import Settings, get_settings
from langbuild.toolchain import probe_toolchain

logger = logging.getLogger(__name__)

app = FastAPI(
    title="langbuild",
    version="0.1.0",
    description="Compiles grammar, lexer and interpreter sources into a browser-loadable module.",
)

DISCONNECT_POLL_SECONDS = 0.5
CHUNK_SIZE = 64 * 1024


class LengthRequired(BuildValidationError):
    pass


def _plain(status_code: int, message: str, headers: dict | None = None) -> PlainTextResponse:
    if not message.endswith("\n"):
        message += "\n"
    return PlainTextResponse(message, status_code=status_code, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
    # routing errors (404, 405) use the same plain-text body as build failures
    return _plain(exc.status_code, str(exc.detail), headers=exc.headers)


def check_body_size(request: Request, s: Settings) -> None:
    declared = request.headers.get("content-length")
    if declared is None:
        raise LengthRequired("Content-Length header is required")
    try:
        length = int(declared)
    except ValueError:
        raise BuildValidationError(f"Invalid Content-Length: {declared!r}") from None
    if length > s.max_body_bytes:
        raise PayloadTooLarge(f"Request body too large (max {s.max_body_bytes} bytes).")


def collect_uploads(form: FormData) -> list[BuildInput]:
    uploads = []
    for role in ROLES:
        field = FORM_FIELDS[role]
        value = form.get(field)
        # plain (non-file) fields arrive as str
        if not isinstance(value, UploadFile):
            raise BuildValidationError(f"Missing {field} file", field=field)
        uploads.append(BuildInput(role=role, filename=value.filename or "", stream=value.file))
    return uploads


async def _watch_disconnect(request: Request, cancel: threading.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.warning("Client disconnected; cancelling build")
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def _iter_file(handle: BinaryIO) -> Iterator[bytes]:
    try:
        while True:
            chunk = handle.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk
    finally:
        handle.close()


def deliver(summary: BuildSummary, handle: BinaryIO) -> StreamingResponse:
    return StreamingResponse(
        _iter_file(handle),
        media_type="application/zip",
        headers={
            "Content-Disposition": f"attachment; filename={BUNDLE_NAME}",
            "Content-Length": str(summary.bundle_size),
        },
        background=BackgroundTask(handle.close),
    )


@app.get("/", response_class=PlainTextResponse)
def index() -> str:
    return "langbuild: POST parser, lexer, interpreter, README and example files to /compile\n"


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/toolchain")
def health_toolchain() -> JSONResponse:
    tools = probe_toolchain()
    ok = all(t.available for t in tools)
    return JSONResponse(
        status_code=200 if ok else 503,
        content={"status": "ok" if ok else "degraded", "tools": [t.model_dump() for t in tools]},
    )


@app.post("/compile")
async def compile_route(request: Request) -> Response:
    s = get_settings()

    try:
        check_body_size(request, s)
    except LengthRequired as e:
        return _plain(411, str(e))
    except PayloadTooLarge as e:
        return _plain(413, str(e))
    except BuildValidationError as e:
        return _plain(400, str(e))

    try:
        form = await request.form()
    except Exception as e:
        return _plain(400, f"Error parsing multipart form: {getattr(e, 'detail', e)}")

    cancel = threading.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        uploads = collect_uploads(form)
        summary, handle = await run_in_threadpool(build_bundle, uploads, settings=s, cancel=cancel)
    except BuildValidationError as e:
        return _plain(400, str(e))
    except StageTimeoutError as e:
        return _plain(504, e.report())
    except StageError as e:
        return _plain(500, e.report())
    except BuildCancelled as e:
        return _plain(503, str(e))
    except WorkspaceError as e:
        logger.error("Workspace failure: %s", e)
        return _plain(500, f"Build failed: {e}")
    except Exception as e:
        logger.exception("Build request failed")
        return _plain(500, f"Unexpected error: {e}")
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
        await form.close()

    logger.info("Delivering %s (%d bytes)", BUNDLE_NAME, summary.bundle_size)
    return deliver(summary, handle)
