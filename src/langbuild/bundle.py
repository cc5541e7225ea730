import logging
import shutil
import zipfile
from pathlib import Path
from typing import Iterable

from langbuild.errors import WorkspaceError
from langbuild.schema import BUNDLE_NAME, SOURCES_ARCHIVE_NAME, ArtifactSet
from langbuild.workspace import Workspace

logger = logging.getLogger(__name__)

COPY_BUFSIZE = 64 * 1024
# fixed entry timestamp keeps archive layout reproducible
ENTRY_DATE_TIME = (1980, 1, 1, 0, 0, 0)


def _add_entry(zf: zipfile.ZipFile, path: Path, entry_name: str) -> None:
    info = zipfile.ZipInfo(entry_name, date_time=ENTRY_DATE_TIME)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    try:
        with path.open("rb") as src, zf.open(info, "w") as dst:
            shutil.copyfileobj(src, dst, COPY_BUFSIZE)
    except OSError as e:
        raise WorkspaceError(f"Failed adding {path} to archive: {e}", path=str(path)) from e


def write_archive(dest: Path, entries: Iterable[tuple[Path, str]]) -> Path:
    """Write ``(path, entry_name)`` pairs into a new zip at ``dest``, in order."""
    try:
        with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path, entry_name in entries:
                _add_entry(zf, path, entry_name)
    except WorkspaceError:
        raise
    except OSError as e:
        raise WorkspaceError(f"Failed writing {dest.name}: {e}", path=str(dest)) from e
    return dest


def assemble(artifacts: ArtifactSet, ws: Workspace) -> Path:
    """Build the sources archive, then the result bundle that contains it.

    Returns the path of the result bundle inside the workspace.
    """
    sources = write_archive(
        ws.dist_dir / SOURCES_ARCHIVE_NAME,
        [(a.path, a.entry_name) for a in artifacts.sources()],
    )
    bundle = write_archive(
        ws.dist_dir / BUNDLE_NAME,
        [(sources, SOURCES_ARCHIVE_NAME)]
        + [(a.path, a.entry_name) for a in artifacts.deliverables()],
    )
    logger.info("Assembled %s (%d bytes)", bundle.name, bundle.stat().st_size)
    return bundle
