import logging
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from langbuild.errors import WorkspaceError

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "langbuild-"


class Workspace:
    """A private, request-scoped build directory.

    ``release()`` may be called any number of times from any thread; the
    directory is removed on the first call only.
    """

    def __init__(self, root: Path):
        self.root = root
        self._lock = threading.Lock()
        self._released = False

    @classmethod
    def acquire(cls, parent: str | Path | None = None) -> "Workspace":
        try:
            root = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=parent))
        except OSError as e:
            raise WorkspaceError(f"Failed to create workspace: {e}", path=str(parent or "")) from e
        try:
            for sub in ("inputs", "build", "dist"):
                (root / sub).mkdir()
        except OSError as e:
            shutil.rmtree(root, ignore_errors=True)
            raise WorkspaceError(f"Failed to create workspace: {e}", path=str(parent or "")) from e
        logger.debug("Acquired workspace %s", root)
        return cls(root)

    @property
    def inputs_dir(self) -> Path:
        return self.root / "inputs"

    @property
    def build_dir(self) -> Path:
        return self.root / "build"

    @property
    def dist_dir(self) -> Path:
        return self.root / "dist"

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        shutil.rmtree(self.root, ignore_errors=True)
        if self.root.exists():
            logger.error("Workspace %s could not be fully removed", self.root)
        else:
            logger.debug("Released workspace %s", self.root)

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


@contextmanager
def workspace(parent: str | Path | None = None) -> Iterator[Workspace]:
    ws = Workspace.acquire(parent)
    try:
        yield ws
    finally:
        ws.release()
