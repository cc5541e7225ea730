import logging
import threading
import zipfile
from typing import BinaryIO, Iterable

from langbuild.bundle import assemble
from langbuild.errors import WorkspaceError
from langbuild.intake import store
from langbuild.results import BuildSummary, StageResult
from langbuild.schema import BuildInput
from langbuild.settings import Settings, get_settings
from langbuild.stages import run_stages
from langbuild.workspace import workspace

logger = logging.getLogger(__name__)


def build_bundle(
    inputs: Iterable[BuildInput],
    *,
    settings: Settings | None = None,
    cancel: threading.Event | None = None,
) -> tuple[BuildSummary, BinaryIO]:
    """Run intake, the three stages and assembly inside one private workspace.

    Returns the build summary and the result bundle opened for reading. The
    workspace is gone by the time this returns (or raises); the open handle
    keeps the bundle bytes readable until the caller closes it.

    Removing a directory that still holds an open file is POSIX behaviour.
    On Windows the removal would fail, so this service is Linux/macOS only,
    like the toolchain it drives.
    """
    s = settings or get_settings()
    stage_results: list[StageResult] = []

    with workspace(s.workspace_root) as ws:
        logger.info("Starting build in %s", ws.root)
        paths = store(inputs, ws)
        artifacts = run_stages(paths, ws, settings=s, cancel=cancel, on_result=stage_results.append)
        bundle_path = assemble(artifacts, ws)

        try:
            with zipfile.ZipFile(bundle_path) as zf:
                entry_names = zf.namelist()
            size = bundle_path.stat().st_size
            handle = bundle_path.open("rb")
        except OSError as e:
            raise WorkspaceError(f"Failed opening {bundle_path.name}: {e}", path=str(bundle_path)) from e

    summary = BuildSummary(stages=stage_results, entry_names=entry_names, bundle_size=size)
    logger.info("Build finished: %d entries, %d bytes", len(entry_names), size)
    return summary, handle
