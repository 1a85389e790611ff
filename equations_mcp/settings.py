"""Settings for the Equations MCP Server."""

import tempfile
from pathlib import Path
from typing import Annotated

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class EquationsSettings(BaseSettings):
    """Configuration settings for the Equations MCP Server.

    Settings can be configured via:
    - Environment variables (EQUATIONS_MCP_*)
    - .env file
    - Direct instantiation

    Examples:
        export EQUATIONS_MCP_LATEX_COMPILE_TIMEOUT=20
        export EQUATIONS_MCP_MAX_CONCURRENT_JOBS=5
    """

    model_config = SettingsConfigDict(
        env_prefix="EQUATIONS_MCP_",
        env_file=".env",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Directory settings
    temp_dir: Annotated[
        Path,
        Field(
            description="Base directory for per-job LaTeX working directories",
        ),
    ] = Path(tempfile.gettempdir()) / "equations-mcp"

    bad_files_dir: Annotated[
        Path | None,
        Field(
            description="Where to keep copies of LaTeX sources that failed to compile (disabled if not set)",
        ),
    ] = None

    # Compilation timeouts (security)
    latex_compile_timeout: Annotated[
        float,
        Field(
            description="Timeout in seconds for pdflatex",
            gt=0,
            le=120,
        ),
    ] = 15.0

    image_convert_timeout: Annotated[
        float,
        Field(
            description="Timeout in seconds for ImageMagick conversion",
            gt=0,
            le=300,
        ),
    ] = 30.0

    # Resource limits
    max_output_kb: Annotated[
        int,
        Field(
            description="Maximum captured stdout/stderr per external command, in kilobytes",
            ge=1,
            le=64 * 1024,
        ),
    ] = 1024

    max_image_size_mb: Annotated[
        int,
        Field(
            description="Maximum size of a generated PNG in megabytes",
            ge=1,
            le=500,
        ),
    ] = 25

    max_concurrent_jobs: Annotated[
        int,
        Field(
            description="Maximum number of equations rendered at the same time",
            ge=1,
            le=64,
        ),
    ] = 3

    # Access
    api_token: Annotated[
        SecretStr | None,
        Field(
            description="Token callers must present to render equations (no check if unset)",
        ),
    ] = None

    # Logging
    verbose_logging: Annotated[
        bool,
        Field(
            description="Log executor commands and tool progress at DEBUG level",
        ),
    ] = False

    def get_temp_dir(self) -> Path:
        """Get the job base directory, creating it with owner-only permissions."""
        temp_dir = self.temp_dir.expanduser()
        temp_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        return temp_dir


# Global settings instance
equations_settings = EquationsSettings()
