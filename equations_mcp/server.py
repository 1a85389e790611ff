from collections import Counter
import hmac
import json
import logging
import shutil
import time

from pydantic import ValidationError

from fastmcp import FastMCP, Context
from fastmcp.utilities.logging import get_logger
from fastmcp.utilities.types import Image

# Import local modules
from . import sandbox
from .errors import EquationToolError
from .settings import equations_settings
from .models import (
    MCPErrorCodes,
    ValidationResult,
    MAX_LATEX_LENGTH,
)
from .renderer import EquationRenderer, RenderError
from .validation import EquationParams

# Create logger instance
logger = get_logger("equations-mcp")

# Server version and metadata
__version__ = "0.1.0"
_server_start_time = time.time()

# Create FastMCP server instance
mcp = FastMCP("Equations MCP Server")

# One executor for the whole server; calls share no state
executor = sandbox.SecureExecutor(
    default_timeout=equations_settings.latex_compile_timeout,
    max_output_bytes=equations_settings.max_output_kb * 1024,
    latex_timeout=equations_settings.latex_compile_timeout,
    image_timeout=equations_settings.image_convert_timeout,
)
renderer = EquationRenderer(executor, equations_settings)

# Privacy-preserving telemetry (no user data)
_telemetry = {
    "tool_calls": Counter(),
    "errors": Counter(),
}


def check_dependencies():
    """Check if required external tools are available."""
    required = {
        "pdflatex": "TeX Live / MiKTeX (https://tug.org/texlive/)",
        "convert": "ImageMagick (https://imagemagick.org/script/download.php)",
    }
    missing = [f"  - {tool}: {required[tool]}" for tool in sandbox.check_dependencies(tuple(required))]

    if missing:
        logger.warning("=" * 60)
        logger.warning("Missing required external tools:")
        logger.warning("=" * 60)
        for msg in missing:
            logger.warning(msg)
        logger.warning("Installation instructions:")
        logger.warning("  macOS:   brew install --cask mactex && brew install imagemagick")
        logger.warning("  Linux:   apt install texlive-latex-extra imagemagick")
        logger.warning("=" * 60)
    return missing


def _check_token(token: str) -> None:
    """Compare the caller token against the configured one, if any."""
    expected = equations_settings.api_token
    if expected is None:
        return
    if not hmac.compare_digest(token.encode("utf-8"), expected.get_secret_value().encode("utf-8")):
        logger.warning("Unauthorized equation render attempt")
        raise EquationToolError("Invalid API token", code=MCPErrorCodes.UNAUTHORIZED)


@mcp.tool()
async def render_equation(token: str, latex: str, ctx: Context) -> Image:
    r"""Renders a LaTeX equation to a PNG image.

    The equation is checked before anything is compiled: file access, shell
    escapes, macro definitions, catcode changes, unknown packages, deep
    nesting and other unsafe input are rejected with every problem listed.
    Accepted input is typeset with pdflatex (shell escape disabled) and
    rasterized with ImageMagick.

    Args:
        token: API token
        latex: Equation source (max 2000 characters, 200 per line)
        ctx: MCP context for logging

    Returns:
        Image object containing PNG data

    Raises:
        EquationToolError: If validation, compilation or image processing fails

    Example:
        Input: "$$\frac{-b \pm \sqrt{b^2 - 4ac}}{2a}$$"
        Output: Image object with the rendered formula
    """
    _telemetry["tool_calls"]["render_equation"] += 1

    try:
        params = EquationParams(token=token, latex=latex)
    except ValidationError as e:
        _telemetry["errors"]["render_equation"] += 1
        messages = [err["msg"].removeprefix("Value error, ") for err in e.errors()]
        await ctx.error(f"Invalid input: {messages}")
        code = MCPErrorCodes.INPUT_TOO_LARGE if len(latex) > MAX_LATEX_LENGTH else MCPErrorCodes.INVALID_PARAMS
        raise EquationToolError(f"Invalid input: {'; '.join(messages)}", code=code) from e

    _check_token(params.token)

    await ctx.debug(f"Rendering equation ({len(params.latex)} chars)")

    try:
        png_bytes, info = await renderer.render(params.latex)
    except RenderError as e:
        _telemetry["errors"]["render_equation"] += 1
        details = f"{e}: {'; '.join(e.errors)}" if e.errors else str(e)
        await ctx.error(details)
        raise EquationToolError(details, code=e.code) from e

    await ctx.info(f"Generated image {info.width}x{info.height} ({info.png_size} bytes, job {info.job_id})")
    return Image(data=png_bytes, format="png")


@mcp.tool()
async def validate_equation(latex: str, ctx: Context) -> str:
    r"""Checks whether a LaTeX equation would be accepted for rendering.

    Runs the same checks as render_equation without compiling anything.

    Args:
        latex: Equation source
        ctx: MCP context for logging

    Returns:
        JSON string with "valid" and the list of "errors"

    Example:
        Input: "\write18{rm -rf /}"
        Output: {"valid": false, "errors": ["LaTeX contains potentially dangerous commands"]}
    """
    _telemetry["tool_calls"]["validate_equation"] += 1

    errors = renderer.validate(latex)
    result = ValidationResult(valid=not errors, errors=errors)

    if errors:
        await ctx.debug(f"Equation rejected: {errors}")
    else:
        await ctx.debug("Equation accepted")
    return result.model_dump_json()


# ============================================================================
# SERVER HEALTH AND TELEMETRY TOOLS
# ============================================================================


@mcp.tool()
async def server_health(ctx: Context) -> dict:
    """Health check endpoint for monitoring.

    Returns server health status, version, and operational state.

    Args:
        ctx: MCP context for logging

    Returns:
        Dictionary containing health status and server information
    """
    _telemetry["tool_calls"]["server_health"] += 1
    await ctx.debug("Health check requested")

    health = {
        "status": "healthy",
        "version": __version__,
        "server_name": "Equations MCP Server",
        "active_jobs": renderer.active_jobs,
        "max_concurrent_jobs": equations_settings.max_concurrent_jobs,
        "sandbox": sandbox.describe_sandbox(executor),
        "uptime_seconds": round(time.time() - _server_start_time, 2),
    }

    await ctx.info(f"Health check: {health['status']}")
    return health


@mcp.tool()
async def server_stats(ctx: Context) -> dict:
    """Get server usage statistics (privacy-preserving).

    Returns telemetry data about tool usage and errors.
    No user data is collected - only aggregate counts.

    Args:
        ctx: MCP context for logging

    Returns:
        Dictionary containing usage statistics
    """
    _telemetry["tool_calls"]["server_stats"] += 1
    await ctx.debug("Statistics requested")

    uptime = time.time() - _server_start_time
    total_tool_calls = sum(_telemetry["tool_calls"].values())
    total_errors = sum(_telemetry["errors"].values())

    stats = {
        "uptime": {
            "seconds": round(uptime, 2),
            "human": f"{int(uptime // 3600)}h {int((uptime % 3600) // 60)}m",
        },
        "tool_calls": {
            "total": total_tool_calls,
            "by_tool": dict(_telemetry["tool_calls"]),
        },
        "errors": {
            "total": total_errors,
            "by_tool": dict(_telemetry["errors"]),
        },
        "performance": {
            "error_rate": round((total_errors / total_tool_calls) * 100, 2) if total_tool_calls > 0 else 0,
        },
    }

    await ctx.info(f"Serving stats: {total_tool_calls} calls, {total_errors} errors")
    return stats


async def async_main():
    """Async entry point for the MCP server."""
    import atexit

    if equations_settings.verbose_logging:
        logger.setLevel(logging.DEBUG)

    check_dependencies()

    temp_dir = equations_settings.get_temp_dir()

    # SECURITY: Remove leftover job directories on exit
    def cleanup_temp_dir():
        """Clean up temporary directory on exit."""
        try:
            shutil.rmtree(temp_dir, ignore_errors=True)
            logger.info(f"✓ Cleaned up temporary directory: {temp_dir}")
        except OSError as e:
            logger.warning(f"Failed to clean up temp directory: {e}")

    atexit.register(cleanup_temp_dir)

    logger.info("Starting Equations MCP Server...")
    logger.info(json.dumps(sandbox.describe_sandbox(executor)))
    logger.info("Tools: render_equation, validate_equation, server_health, server_stats")

    await mcp.run_async()


def main():
    """Entry point for the MCP server."""
    import asyncio
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
