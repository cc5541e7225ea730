import shutil
from pathlib import Path
from typing import Callable

from prefect import flow, task, get_run_logger, unmapped
from prefect.cache_policies import NO_CACHE

from langbuild.bundle import assemble
from langbuild.errors import BuildValidationError, StageError
from langbuild.intake import local_inputs, store
from langbuild.pipeline import build_bundle
from langbuild.results import BuildResult, StageResult
from langbuild.schema import BUNDLE_NAME, ArtifactPaths
from langbuild.settings import Settings, get_settings
from langbuild.stages import STAGES, StageCommand, collect_artifacts, raise_for_result, run_stage
from langbuild.workspace import Workspace, workspace

StageBuilder = Callable[[ArtifactPaths, Workspace, Settings], StageCommand]


# workspaces and open files are not cacheable inputs
@task(retries=0, cache_policy=NO_CACHE)
def t_store(source_dir: Path, ws: Workspace) -> ArtifactPaths:
    with local_inputs(source_dir) as inputs:
        return store(inputs, ws)


@task(retries=0, cache_policy=NO_CACHE)  # toolchain failures are deterministic; never retry
def t_stage(build: StageBuilder, paths: ArtifactPaths, ws: Workspace) -> StageResult:
    logger = get_run_logger()
    s = get_settings()
    cmd = build(paths, ws, s)
    res = run_stage(cmd, cwd=ws.build_dir, timeout=s.stage_timeout_seconds)
    if res.ok:
        logger.info(f"{res.stage} stage ok in {res.duration_seconds:.2f}s")
    else:
        logger.error(f"{res.stage} stage failed ({res.reason}):\n{res.diagnostics}")
    raise_for_result(res, s.stage_timeout_seconds)
    return res


@task(retries=0, cache_policy=NO_CACHE)
def t_assemble(paths: ArtifactPaths, ws: Workspace) -> Path:
    return assemble(collect_artifacts(paths, ws), ws)


@flow(name="langbuild-build", retries=0)
def build_flow(source_dir: str, out_path: str) -> str:
    logger = get_run_logger()
    logger.info(f"Starting build flow for {source_dir}")
    s = get_settings()
    out = Path(out_path)

    with workspace(s.workspace_root) as ws:
        paths = t_store(Path(source_dir), ws)
        for build in STAGES:
            t_stage(build, paths, ws)
        bundle = t_assemble(paths, ws)

        out.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(bundle, out)

    logger.info(f"Wrote bundle to: {out}")
    return str(out)


@task(retries=0, cache_policy=NO_CACHE)
def t_build_one(source_dir: str, out_dir: str) -> BuildResult:
    """
    Best-effort wrapper:
    - never raises for expected build failures; it returns a failed result instead.
    """
    logger = get_run_logger()
    src = Path(source_dir)
    out_path = Path(out_dir) / f"{src.name}-{BUNDLE_NAME}"

    try:
        with local_inputs(src) as inputs:
            summary, handle = build_bundle(inputs)
        with handle, out_path.open("wb") as out:
            shutil.copyfileobj(handle, out)
        logger.info(f"Built {src} -> {out_path} ({summary.bundle_size} bytes)")
        return BuildResult(status="ok", source_dir=source_dir, out_path=str(out_path))

    except (BuildValidationError, StageError, OSError) as e:
        message = e.report() if isinstance(e, StageError) else str(e)
        logger.error(f"Build failed for {src}: {type(e).__name__}: {e}")
        return BuildResult(
            status="failed",
            source_dir=source_dir,
            error_type=type(e).__name__,
            error_message=message,
            failed_stage=getattr(e, "stage", None),
        )


@flow(name="langbuild-batch")
def build_batch_flow(source_dirs: list[str], out_dir: str) -> list[BuildResult]:
    logger = get_run_logger()
    logger.info(f"Starting batch build flow. count={len(source_dirs)}")
    Path(out_dir).mkdir(parents=True, exist_ok=True)

    futures = t_build_one.map(source_dirs, unmapped(out_dir))
    # Resolve to actual values (not State objects)
    results: list[BuildResult] = [f.result(raise_on_failure=False) for f in futures]

    ok = sum(1 for r in results if r.status == "ok")
    logger.info(f"Batch complete. ok={ok} failed={len(results) - ok}")
    return results
