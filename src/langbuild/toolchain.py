import subprocess
from typing import Optional

from pydantic import BaseModel

from langbuild.settings import Settings, get_settings

PROBE_TIMEOUT_SECONDS = 30.0


class ToolStatus(BaseModel):
    stage: str
    command: str
    available: bool
    version: Optional[str] = None
    error: Optional[str] = None


def probe_tool(stage: str, command: str, timeout: float = PROBE_TIMEOUT_SECONDS) -> ToolStatus:
    try:
        proc = subprocess.run(
            [command, "--version"],
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except OSError as e:
        return ToolStatus(stage=stage, command=command, available=False, error=e.strerror or str(e))
    except subprocess.TimeoutExpired:
        return ToolStatus(stage=stage, command=command, available=False, error="timed out")

    text = (proc.stdout or proc.stderr or "").strip()
    first_line = text.splitlines()[0] if text else None
    if proc.returncode != 0:
        return ToolStatus(
            stage=stage,
            command=command,
            available=False,
            error=f"exit status {proc.returncode}: {first_line or ''}".rstrip(": "),
        )
    return ToolStatus(stage=stage, command=command, available=True, version=first_line)


def probe_toolchain(settings: Settings | None = None) -> list[ToolStatus]:
    s = settings or get_settings()
    return [
        probe_tool("grammar", s.bison_bin),
        probe_tool("lexer", s.flex_bin),
        probe_tool("link", s.emcc_bin),
    ]
