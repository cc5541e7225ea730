from pydantic import BaseModel, ConfigDict, Field
from dotenv import load_dotenv
import os

load_dotenv()

DEFAULT_LIBFL = "/usr/lib/x86_64-linux-gnu/libfl.a"


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


class Settings(BaseModel):
    model_config = ConfigDict(validate_default=True)

    bison_bin: str = Field(default_factory=lambda: _env("LANGBUILD_BISON", "bison"))
    flex_bin: str = Field(default_factory=lambda: _env("LANGBUILD_FLEX", "flex"))
    emcc_bin: str = Field(default_factory=lambda: _env("LANGBUILD_EMCC", "emcc"))
    # empty string disables linking the flex support library
    libfl_path: str = Field(default_factory=lambda: _env("LANGBUILD_LIBFL", DEFAULT_LIBFL))
    opt_level: str = Field(default_factory=lambda: _env("LANGBUILD_OPT_LEVEL", "-O3"))
    export_name: str = Field(
        default_factory=lambda: _env("LANGBUILD_EXPORT_NAME", "createInterpreterModule")
    )

    stage_timeout_seconds: float = Field(
        default_factory=lambda: float(_env("LANGBUILD_STAGE_TIMEOUT", "300")), gt=0
    )
    max_body_bytes: int = Field(
        default_factory=lambda: int(_env("LANGBUILD_MAX_BODY_BYTES", str(32 << 20))), gt=0
    )
    workspace_root: str | None = Field(
        default_factory=lambda: os.getenv("LANGBUILD_WORKSPACE_ROOT") or None
    )


def get_settings() -> Settings:
    # re-read env each time (good for tests)
    return Settings()
