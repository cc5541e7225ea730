from pathlib import Path
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["grammar", "lexer", "interpreter", "documentation", "example"]
ArtifactKind = Literal[
    "parser_source",
    "lexer_source",
    "interpreter_source",
    "module_glue",
    "module_binary",
    "documentation",
    "example",
]

ROLES: tuple[Role, ...] = ("grammar", "lexer", "interpreter", "documentation", "example")

# multipart field name for each role (what existing clients send)
FORM_FIELDS: dict[Role, str] = {
    "grammar": "parser",
    "lexer": "lexer",
    "interpreter": "interpreter",
    "documentation": "README",
    "example": "example",
}

PARSER_SOURCE_NAME = "y.tab.c"
PARSER_HEADER_NAME = "y.tab.h"
LEXER_SOURCE_NAME = "lex.yy.c"
SOURCES_ARCHIVE_NAME = "sources.zip"
BUNDLE_NAME = "build-output.zip"


class BuildInput(BaseModel):
    """One uploaded input: its role, the caller's filename and a readable stream."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    role: Role
    filename: str
    stream: Any


class ArtifactPaths(BaseModel):
    """Where intake put each input inside the workspace."""

    grammar: Path
    lexer: Path
    interpreter: Path
    documentation: Path
    example: Path

    def for_role(self, role: Role) -> Path:
        return getattr(self, role)


class Artifact(BaseModel):
    kind: ArtifactKind
    path: Path
    entry_name: str


class ArtifactSet(BaseModel):
    artifacts: list[Artifact] = Field(default_factory=list)

    SOURCE_KINDS: ClassVar[tuple[ArtifactKind, ...]] = ("parser_source", "lexer_source", "interpreter_source")
    DELIVERABLE_KINDS: ClassVar[tuple[ArtifactKind, ...]] = (
        "module_glue",
        "module_binary",
        "documentation",
        "example",
    )

    def get(self, kind: ArtifactKind) -> Artifact:
        for artifact in self.artifacts:
            if artifact.kind == kind:
                return artifact
        raise KeyError(kind)

    def sources(self) -> list[Artifact]:
        return [self.get(k) for k in self.SOURCE_KINDS]

    def deliverables(self) -> list[Artifact]:
        return [self.get(k) for k in self.DELIVERABLE_KINDS]
