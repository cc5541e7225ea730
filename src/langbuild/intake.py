import logging
import shutil
from contextlib import ExitStack, contextmanager
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, Mapping

from langbuild.errors import BuildValidationError, WorkspaceError
from langbuild.schema import (
    FORM_FIELDS,
    LEXER_SOURCE_NAME,
    PARSER_SOURCE_NAME,
    ROLES,
    SOURCES_ARCHIVE_NAME,
    ArtifactPaths,
    BuildInput,
    Role,
)
from langbuild.workspace import Workspace

logger = logging.getLogger(__name__)

COPY_BUFSIZE = 64 * 1024

# stems used to find each input in a local source directory
LOCAL_STEMS: dict[Role, str] = {
    "grammar": "parser",
    "lexer": "lexer",
    "interpreter": "interpreter",
    "documentation": "readme",
    "example": "example",
}


def safe_basename(filename: str, *, field: str) -> str:
    """Reduce a caller-declared filename to a bare base name.

    Directory parts (either separator) are dropped; names that are empty or
    only dots are rejected.
    """
    name = PurePosixPath((filename or "").replace("\\", "/")).name
    if not name or name.strip(".") == "":
        raise BuildValidationError(f"Invalid filename for {field} file: {filename!r}", field=field)
    return name


def module_stem(interpreter_name: str) -> str:
    return PurePosixPath(interpreter_name).stem or "interpreter"


def _check_entry_names(names: Mapping[Role, str]) -> None:
    # every bundle entry is flattened to its base name, so names must not clash
    stem = module_stem(names["interpreter"])
    sources = {
        PARSER_SOURCE_NAME: "generated parser",
        LEXER_SOURCE_NAME: "generated lexer",
        names["interpreter"]: FORM_FIELDS["interpreter"],
    }
    if len(sources) < 3:
        raise BuildValidationError(
            f"interpreter file may not be named {names['interpreter']!r}",
            field=FORM_FIELDS["interpreter"],
        )

    taken = {
        SOURCES_ARCHIVE_NAME: "sources archive",
        f"{stem}.js": "module glue",
        f"{stem}.wasm": "module binary",
    }
    for role in ("documentation", "example"):
        field = FORM_FIELDS[role]
        name = names[role]
        if name in taken:
            raise BuildValidationError(
                f"{field} file name {name!r} clashes with the {taken[name]}", field=field
            )
        taken[name] = f"{field} file"


def validate_inputs(inputs: Iterable[BuildInput]) -> dict[Role, BuildInput]:
    by_role: dict[Role, BuildInput] = {}
    for item in inputs:
        field = FORM_FIELDS[item.role]
        if item.role in by_role:
            raise BuildValidationError(f"Duplicate {field} file", field=field)
        by_role[item.role] = item

    for role in ROLES:
        if role not in by_role:
            field = FORM_FIELDS[role]
            raise BuildValidationError(f"Missing {field} file", field=field)
    return by_role


def _save(dst: Path, src) -> None:
    try:
        with dst.open("xb") as out:
            shutil.copyfileobj(src, out, COPY_BUFSIZE)
    except OSError as e:
        raise WorkspaceError(f"Saving {dst.name} failed: {e}", path=str(dst)) from e


def store(inputs: Iterable[BuildInput], ws: Workspace) -> ArtifactPaths:
    """Validate the five inputs and stream each one into the workspace.

    Each input lands in ``inputs/<role>/`` under its sanitised base name, so
    the caller's filename never decides where on disk a file goes.
    """
    by_role = validate_inputs(inputs)
    names = {
        role: safe_basename(item.filename, field=FORM_FIELDS[role])
        for role, item in by_role.items()
    }
    _check_entry_names(names)

    paths: dict[str, Path] = {}
    for role in ROLES:
        role_dir = ws.inputs_dir / role
        try:
            role_dir.mkdir(exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"Failed to create {role_dir}: {e}", path=str(role_dir)) from e
        dst = role_dir / names[role]
        _save(dst, by_role[role].stream)
        paths[role] = dst
        logger.debug("Stored %s input as %s", role, dst)

    return ArtifactPaths(**paths)


def collect_local_inputs(directory: Path) -> dict[Role, Path]:
    """Find the five inputs in a local directory by file stem.

    ``parser.y``, ``lexer.l``, ``interpreter.c``, ``README.md`` and
    ``example.*`` all match; stems compare case-insensitively.
    """
    if not directory.is_dir():
        raise FileNotFoundError(f"Source directory not found: {directory}")

    found: dict[Role, Path] = {}
    for path in sorted(directory.iterdir()):
        if not path.is_file():
            continue
        stem = path.name.split(".", 1)[0].lower()
        for role, wanted in LOCAL_STEMS.items():
            if stem != wanted:
                continue
            if role in found:
                raise BuildValidationError(
                    f"Ambiguous {FORM_FIELDS[role]} file in {directory}: "
                    f"{found[role].name}, {path.name}",
                    field=FORM_FIELDS[role],
                )
            found[role] = path

    for role in ROLES:
        if role not in found:
            raise BuildValidationError(
                f"Missing {FORM_FIELDS[role]} file in {directory}", field=FORM_FIELDS[role]
            )
    return found


@contextmanager
def local_inputs(directory: Path) -> Iterator[list[BuildInput]]:
    with ExitStack() as stack:
        yield [
            BuildInput(role=role, filename=path.name, stream=stack.enter_context(path.open("rb")))
            for role, path in collect_local_inputs(directory).items()
        ]
