import asyncio
import io
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import with_marker
from langbuild.app import app
from langbuild.schema import FORM_FIELDS

client = TestClient(app)


def _files(sources):
    return {
        FORM_FIELDS[role]: (filename, content, "application/octet-stream")
        for role, (filename, content) in sources.items()
    }


def test_health():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_toolchain_health_lists_versions():
    resp = client.get("/health/toolchain")
    assert resp.status_code == 200
    tools = resp.json()["tools"]
    assert [t["stage"] for t in tools] == ["grammar", "lexer", "link"]
    assert tools[0]["version"] == "bison (GNU Bison) 3.8.2"


def test_toolchain_health_degraded_when_tool_missing(monkeypatch, tmp_path):
    monkeypatch.setenv("LANGBUILD_EMCC", str(tmp_path / "missing-emcc"))
    resp = client.get("/health/toolchain")
    assert resp.status_code == 503
    assert resp.json()["status"] == "degraded"


def test_compile_returns_bundle(toolchain, sources):
    resp = client.post("/compile", files=_files(sources))

    assert resp.status_code == 200, resp.text
    assert resp.headers["content-type"] == "application/zip"
    assert resp.headers["content-disposition"] == "attachment; filename=build-output.zip"
    with zipfile.ZipFile(io.BytesIO(resp.content)) as zf:
        infos = zf.infolist()
        assert [i.filename for i in infos] == [
            "sources.zip",
            "interpreter.js",
            "interpreter.wasm",
            "README.md",
            "example.calc",
        ]
        assert all(i.file_size > 0 for i in infos)
    assert toolchain.leftover_workspaces() == []


@pytest.mark.parametrize("role", ["grammar", "lexer", "interpreter", "documentation", "example"])
def test_missing_part_is_request_fault(toolchain, sources, role):
    del sources[role]
    resp = client.post("/compile", files=_files(sources))

    assert resp.status_code == 400
    assert f"Missing {FORM_FIELDS[role]} file" in resp.text
    assert toolchain.calls() == []
    assert toolchain.leftover_workspaces() == []


def test_text_field_instead_of_file_is_request_fault(toolchain, sources):
    _, content = sources.pop("lexer")
    resp = client.post("/compile", files=_files(sources), data={"lexer": content.decode()})

    assert resp.status_code == 400
    assert "Missing lexer file" in resp.text


def test_wrong_method_is_rejected(toolchain):
    resp = client.get("/compile")
    assert resp.status_code == 405
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.headers["allow"] == "POST"
    assert resp.text == "Method Not Allowed\n"
    assert toolchain.leftover_workspaces() == []


def test_oversized_body_is_rejected_before_intake(toolchain, sources, monkeypatch):
    monkeypatch.setenv("LANGBUILD_MAX_BODY_BYTES", "256")
    resp = client.post("/compile", files=_files(sources))

    assert resp.status_code == 413
    assert "too large" in resp.text
    assert toolchain.calls() == []
    assert toolchain.leftover_workspaces() == []


def test_grammar_failure_returns_tool_diagnostics(toolchain, sources):
    resp = client.post("/compile", files=_files(with_marker(sources, "grammar", "GRAMMAR_ERROR")))

    assert resp.status_code == 500
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.text.startswith("grammar stage failed (exit-status)")
    assert "syntax error, unexpected identifier" in resp.text
    assert toolchain.calls() == ["bison"]
    assert toolchain.leftover_workspaces() == []


def test_link_failure_returns_link_diagnostics(toolchain, sources):
    resp = client.post("/compile", files=_files(with_marker(sources, "interpreter", "LINK_ERROR")))

    assert resp.status_code == 500
    assert resp.text.startswith("link stage failed")
    assert "undefined symbol: yyerror" in resp.text
    assert "syntax error" not in resp.text
    assert toolchain.calls() == ["bison", "flex", "emcc"]


def test_stage_timeout_is_gateway_timeout(toolchain, sources, monkeypatch):
    monkeypatch.setenv("LANGBUILD_STAGE_TIMEOUT", "1")
    resp = client.post("/compile", files=_files(with_marker(sources, "interpreter", "HANG")))

    assert resp.status_code == 504
    assert resp.text.startswith("link stage failed (timeout)")
    assert toolchain.leftover_workspaces() == []


def test_repeated_submissions_have_same_structure(sources):
    first = zipfile.ZipFile(io.BytesIO(client.post("/compile", files=_files(sources)).content))
    second = zipfile.ZipFile(io.BytesIO(client.post("/compile", files=_files(sources)).content))
    assert first.namelist() == second.namelist()
    assert len(first.namelist()) == 5


def test_concurrent_requests_leave_no_workspaces(toolchain, sources):
    bad_grammar = with_marker(sources, "grammar", "GRAMMAR_ERROR")
    bad_link = with_marker(sources, "interpreter", "LINK_ERROR")
    missing = {k: v for k, v in sources.items() if k != "lexer"}
    batches = [sources, bad_grammar, bad_link, missing] * 3

    def submit(batch):
        with TestClient(app) as c:
            return c.post("/compile", files=_files(batch)).status_code

    with ThreadPoolExecutor(max_workers=6) as pool:
        statuses = list(pool.map(submit, batches))

    assert statuses == [200, 500, 500, 400] * 3
    assert toolchain.leftover_workspaces() == []


def test_client_disconnect_kills_build_and_frees_workspace(toolchain, sources):
    upload = httpx.Request(
        "POST",
        "http://testserver/compile",
        files=_files(with_marker(sources, "interpreter", "HANG")),
    )
    body = upload.read()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/compile",
        "raw_path": b"/compile",
        "root_path": "",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in upload.headers.items()],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }
    sent_body = False
    messages = []

    async def receive():
        nonlocal sent_body
        if not sent_body:
            sent_body = True
            return {"type": "http.request", "body": body, "more_body": False}
        # the client hangs up as soon as the upload is done
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    started = time.monotonic()
    asyncio.run(app(scope, receive, send))

    assert time.monotonic() - started < 15
    assert messages[0]["status"] == 503
    assert messages[1]["body"].startswith(b"build cancelled during")
    assert toolchain.leftover_workspaces() == []
