"""Pydantic models for Equations MCP Server responses and tool parameters."""

from datetime import datetime

from pydantic import BaseModel, Field

# ============================================================================
# MCP ERROR CODES
# ============================================================================


class MCPErrorCodes:
    """Standard MCP/JSON-RPC 2.0 error codes.

    Standard JSON-RPC 2.0 error codes:
    - -32700: Parse error
    - -32600: Invalid Request
    - -32601: Method not found
    - -32602: Invalid params
    - -32603: Internal error

    Application-specific codes (must be >= -32099 or custom range):
    """
    # Standard JSON-RPC 2.0 codes
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Application-specific codes (>= -32000)
    INPUT_TOO_LARGE = -32000
    OPERATION_FAILED = -32001
    RESOURCE_NOT_FOUND = -32002
    TIMEOUT = -32003
    RESOURCE_BUSY = -32004
    UNAUTHORIZED = -32005


# ============================================================================
# VALIDATION CONSTANTS
# ============================================================================

# Equation source limits (to prevent DoS via TeX expansion or memory exhaustion)
MAX_LATEX_LENGTH = 2000
MAX_LINE_LENGTH = 200
MAX_NESTING_DEPTH = 10
MAX_MATH_ENVIRONMENTS = 20

# Repetition guard: a unit of at least 3 characters followed by 10+ copies of itself
MIN_REPEATED_UNIT = 3
MAX_IMMEDIATE_REPEATS = 9

# Timeouts
DEFAULT_EXEC_TIMEOUT = 15.0  # seconds
DEFAULT_CONVERSION_TIMEOUT = 30.0  # seconds

# Captured output cap per stream
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024


class ExecutionResult(BaseModel):
    """Output of an external command that exited cleanly."""

    stdout: str = Field(default="", description="Captured standard output")
    stderr: str = Field(default="", description="Captured standard error (may hold warnings)")
    exit_code: int | None = Field(default=0, description="Process exit code")


class SafetyReport(BaseModel):
    """Result of the runtime LaTeX safety checks."""

    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Combined schema and safety verdict for an equation."""

    valid: bool
    errors: list[str] = Field(default_factory=list)


class RenderedEquation(BaseModel):
    """Metadata describing a rendered equation image."""

    job_id: str = Field(description="Identifier of the render job")
    png_size: int = Field(description="Size of the PNG in bytes")
    width: int = Field(description="Image width in pixels")
    height: int = Field(description="Image height in pixels")
    generated_at: datetime = Field(description="When the image was produced")
