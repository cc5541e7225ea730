import io
import stat
from pathlib import Path

import pytest

from langbuild.schema import BuildInput

# Stand-ins for bison, flex and emcc. Each one records its name in the call
# log and fails when its input contains a marker word.
FAKE_BISON = r"""#!/bin/sh
if [ "$1" = "--version" ]; then echo "bison (GNU Bison) 3.8.2"; exit 0; fi
echo "bison" >> "$LANGBUILD_TEST_CALL_LOG"
out=""; input=""
while [ $# -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift 2 ;;
    -*) shift ;;
    *) input="$1"; shift ;;
  esac
done
if grep -q GRAMMAR_ERROR "$input"; then
  echo "$input:3.5-9: error: syntax error, unexpected identifier" >&2
  exit 1
fi
if grep -q NO_OUTPUT "$input"; then exit 0; fi
echo "/* parser generated from $input */" > "$out"
echo "#define NUMBER 258" > "${out%.c}.h"
"""

FAKE_FLEX = r"""#!/bin/sh
if [ "$1" = "--version" ]; then echo "flex 2.6.4"; exit 0; fi
echo "flex" >> "$LANGBUILD_TEST_CALL_LOG"
out=""; input=""
while [ $# -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift 2 ;;
    -*) shift ;;
    *) input="$1"; shift ;;
  esac
done
if grep -q LEXER_ERROR "$input"; then
  echo "$input:4: unrecognized rule"
  exit 1
fi
echo "/* scanner generated from $input */" > "$out"
"""

FAKE_EMCC = r"""#!/bin/sh
if [ "$1" = "--version" ]; then echo "emcc (Emscripten gcc/clang-like replacement) 3.1.61"; exit 0; fi
echo "emcc" >> "$LANGBUILD_TEST_CALL_LOG"
out=""; inputs=""
while [ $# -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift 2 ;;
    -s) shift 2 ;;
    -*) shift ;;
    *) inputs="$inputs $1"; shift ;;
  esac
done
for f in $inputs; do
  if grep -q LINK_ERROR "$f"; then
    echo "wasm-ld: error: undefined symbol: yyerror" >&2
    echo "emcc: error: wasm-ld failed (returned 1)" >&2
    exit 1
  fi
  if grep -q HANG "$f"; then exec sleep 30; fi
done
echo "var createInterpreterModule = (() => {})();" > "$out"
printf '\000asm\001\000\000\000' > "${out%.js}.wasm"
"""

SOURCES = {
    "grammar": ("parser.y", b"%token NUMBER\n%%\nexpr: NUMBER ;\n%%\n"),
    "lexer": ("lexer.l", b"%%\n[0-9]+ { return NUMBER; }\n%%\n"),
    "interpreter": ("interpreter.c", b'#include "y.tab.h"\nint main(void) { return yyparse(); }\n'),
    "documentation": ("README.md", b"# Tiny calc\n\nAdds numbers.\n"),
    "example": ("example.calc", b"1 + 2\n"),
}


def _write_tool(path: Path, body: str) -> str:
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


class FakeToolchain:
    def __init__(self, root: Path):
        self.bin_dir = root / "bin"
        self.bin_dir.mkdir(parents=True)
        self.call_log = root / "calls.log"
        self.call_log.touch()
        self.workspace_root = root / "workspaces"
        self.workspace_root.mkdir()
        self.bison = _write_tool(self.bin_dir / "bison", FAKE_BISON)
        self.flex = _write_tool(self.bin_dir / "flex", FAKE_FLEX)
        self.emcc = _write_tool(self.bin_dir / "emcc", FAKE_EMCC)

    def calls(self) -> list[str]:
        return self.call_log.read_text(encoding="utf-8").split()

    def leftover_workspaces(self) -> list[Path]:
        return list(self.workspace_root.iterdir())


@pytest.fixture(autouse=True)
def toolchain(tmp_path, monkeypatch) -> FakeToolchain:
    fake = FakeToolchain(tmp_path / "toolchain")
    monkeypatch.setenv("LANGBUILD_BISON", fake.bison)
    monkeypatch.setenv("LANGBUILD_FLEX", fake.flex)
    monkeypatch.setenv("LANGBUILD_EMCC", fake.emcc)
    monkeypatch.setenv("LANGBUILD_LIBFL", "")
    monkeypatch.setenv("LANGBUILD_WORKSPACE_ROOT", str(fake.workspace_root))
    monkeypatch.setenv("LANGBUILD_TEST_CALL_LOG", str(fake.call_log))
    monkeypatch.delenv("LANGBUILD_STAGE_TIMEOUT", raising=False)
    monkeypatch.delenv("LANGBUILD_MAX_BODY_BYTES", raising=False)
    return fake


@pytest.fixture
def sources() -> dict:
    return dict(SOURCES)


def make_inputs(sources: dict) -> list[BuildInput]:
    return [
        BuildInput(role=role, filename=filename, stream=io.BytesIO(content))
        for role, (filename, content) in sources.items()
    ]


def with_marker(sources: dict, role: str, marker: str) -> dict:
    filename, content = sources[role]
    return {**sources, role: (filename, content + f"/* {marker} */\n".encode())}


def write_source_dir(root: Path, sources: dict) -> Path:
    root.mkdir(parents=True)
    for filename, content in sources.values():
        (root / filename).write_bytes(content)
    return root
