from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel

StageName = Literal["grammar", "lexer", "link"]
FailureReason = Literal["exit-status", "missing-output", "timeout", "not-found"]


class StageResult(BaseModel):
    stage: StageName
    ok: bool
    output_path: Path
    diagnostics: str = ""
    returncode: Optional[int] = None
    duration_seconds: float = 0.0

    # failure fields
    reason: Optional[FailureReason] = None


class BuildSummary(BaseModel):
    """What a successful build produced; the bundle itself is handed out separately."""

    stages: list[StageResult]
    entry_names: list[str]
    bundle_size: int


class BuildResult(BaseModel):
    status: Literal["ok", "failed"]
    source_dir: str
    out_path: Optional[str] = None

    # failure fields
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
