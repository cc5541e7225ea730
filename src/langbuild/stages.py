"""External toolchain stages: grammar -> lexer -> link.

Each stage is a small function that turns the stored inputs into a
``StageCommand``; ``run_stage`` executes one command and reports a
``StageResult``; ``run_stages`` chains them and stops at the first
failure.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from langbuild.errors import BuildCancelled, StageError, StageTimeoutError
from langbuild.intake import module_stem
from langbuild.results import StageName, StageResult
from langbuild.schema import (
    LEXER_SOURCE_NAME,
    PARSER_HEADER_NAME,
    PARSER_SOURCE_NAME,
    Artifact,
    ArtifactPaths,
    ArtifactSet,
)
from langbuild.settings import Settings, get_settings
from langbuild.workspace import Workspace

logger = logging.getLogger(__name__)

# how often a waiting stage looks at its cancel event
POLL_SECONDS = 0.2


@dataclass(frozen=True)
class StageCommand:
    stage: StageName
    argv: list[str]
    output: Path
    # outputs that must exist besides ``output`` (e.g. the bison header)
    extra_outputs: tuple[Path, ...] = field(default_factory=tuple)


def grammar_command(paths: ArtifactPaths, ws: Workspace, s: Settings) -> StageCommand:
    out = ws.build_dir / PARSER_SOURCE_NAME
    return StageCommand(
        stage="grammar",
        argv=[s.bison_bin, "-d", "-o", str(out), str(paths.grammar)],
        output=out,
        extra_outputs=(ws.build_dir / PARSER_HEADER_NAME,),
    )


def lexer_command(paths: ArtifactPaths, ws: Workspace, s: Settings) -> StageCommand:
    out = ws.build_dir / LEXER_SOURCE_NAME
    return StageCommand(
        stage="lexer",
        argv=[s.flex_bin, "-o", str(out), str(paths.lexer)],
        output=out,
    )


def link_command(paths: ArtifactPaths, ws: Workspace, s: Settings) -> StageCommand:
    stem = module_stem(paths.interpreter.name)
    js_out = ws.build_dir / f"{stem}.js"
    inputs = [
        str(ws.build_dir / LEXER_SOURCE_NAME),
        str(ws.build_dir / PARSER_SOURCE_NAME),
        str(paths.interpreter),
    ]
    if s.libfl_path:
        inputs.append(s.libfl_path)

    argv = [
        s.emcc_bin,
        *inputs,
        # generated y.tab.h lives next to the generated sources
        f"-I{ws.build_dir}",
        s.opt_level,
        "-s", "WASM=1",
        "-s", "MODULARIZE=1",
        "-s", f"EXPORT_NAME={s.export_name}",
        "-s", "EXPORTED_FUNCTIONS=['_main']",
        "-s", "EXPORTED_RUNTIME_METHODS=['FS','ccall','cwrap']",
        "-o", str(js_out),
    ]
    return StageCommand(
        stage="link",
        argv=argv,
        output=js_out,
        extra_outputs=(js_out.with_suffix(".wasm"),),
    )


STAGES: tuple[Callable[[ArtifactPaths, Workspace, Settings], StageCommand], ...] = (
    grammar_command,
    lexer_command,
    link_command,
)


def _kill(proc: subprocess.Popen) -> None:
    # toolchains spawn helpers (emcc -> clang, wasm-ld, node); take the whole group
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _missing_outputs(cmd: StageCommand) -> list[Path]:
    missing = []
    for path in (cmd.output, *cmd.extra_outputs):
        try:
            if path.stat().st_size > 0:
                continue
        except FileNotFoundError:
            pass
        missing.append(path)
    return missing


def run_stage(
    cmd: StageCommand,
    *,
    cwd: Path,
    timeout: float,
    cancel: threading.Event | None = None,
) -> StageResult:
    """Run one external stage to completion.

    Returns a failed ``StageResult`` for non-zero exit, missing output,
    timeout or a missing tool. Raises ``BuildCancelled`` if ``cancel`` is
    set while the tool runs.
    """
    logger.info("Running %s stage: %s", cmd.stage, cmd.argv[0])
    started = time.monotonic()

    def result(ok: bool, diagnostics: str, returncode=None, reason=None) -> StageResult:
        return StageResult(
            stage=cmd.stage,
            ok=ok,
            output_path=cmd.output,
            diagnostics=diagnostics,
            returncode=returncode,
            duration_seconds=time.monotonic() - started,
            reason=reason,
        )

    try:
        proc = subprocess.Popen(
            cmd.argv,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except OSError as e:
        return result(False, f"{cmd.argv[0]}: {e.strerror or e}\n", reason="not-found")

    deadline = started + timeout
    while True:
        try:
            output, _ = proc.communicate(timeout=POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                _kill(proc)
                proc.communicate()
                logger.warning("%s stage cancelled", cmd.stage)
                raise BuildCancelled(cmd.stage)
            if time.monotonic() >= deadline:
                _kill(proc)
                output, _ = proc.communicate()
                return result(False, output or "", proc.returncode, reason="timeout")

    output = output or ""
    if proc.returncode != 0:
        return result(False, output, proc.returncode, reason="exit-status")

    missing = _missing_outputs(cmd)
    if missing:
        listing = ", ".join(p.name for p in missing)
        return result(
            False,
            f"{output}{cmd.argv[0]} exited 0 but did not produce: {listing}\n",
            proc.returncode,
            reason="missing-output",
        )

    return result(True, output, proc.returncode)


def raise_for_result(res: StageResult, timeout: float) -> None:
    if res.ok:
        return
    if res.reason == "timeout":
        raise StageTimeoutError(res.stage, res.diagnostics, timeout=timeout)
    raise StageError(res.stage, res.diagnostics, reason=res.reason or "exit-status", returncode=res.returncode)


def run_stages(
    paths: ArtifactPaths,
    ws: Workspace,
    *,
    settings: Settings | None = None,
    cancel: threading.Event | None = None,
    on_result: Callable[[StageResult], None] | None = None,
) -> ArtifactSet:
    """Run grammar, lexer and link in order; the first failure raises ``StageError``."""
    s = settings or get_settings()
    for build in STAGES:
        res = run_stage(build(paths, ws, s), cwd=ws.build_dir, timeout=s.stage_timeout_seconds, cancel=cancel)
        if on_result is not None:
            on_result(res)
        if not res.ok:
            logger.error("%s stage failed (%s) after %.2fs", res.stage, res.reason, res.duration_seconds)
        else:
            logger.info("%s stage ok in %.2fs", res.stage, res.duration_seconds)
        raise_for_result(res, s.stage_timeout_seconds)

    return collect_artifacts(paths, ws)


def collect_artifacts(paths: ArtifactPaths, ws: Workspace) -> ArtifactSet:
    stem = module_stem(paths.interpreter.name)
    entries = [
        ("parser_source", ws.build_dir / PARSER_SOURCE_NAME),
        ("lexer_source", ws.build_dir / LEXER_SOURCE_NAME),
        ("interpreter_source", paths.interpreter),
        ("module_glue", ws.build_dir / f"{stem}.js"),
        ("module_binary", ws.build_dir / f"{stem}.wasm"),
        ("documentation", paths.documentation),
        ("example", paths.example),
    ]
    return ArtifactSet(
        artifacts=[Artifact(kind=kind, path=path, entry_name=path.name) for kind, path in entries]
    )
