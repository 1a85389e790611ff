"""
Equation rendering pipeline: validated LaTeX in, PNG bytes out.

Each render gets its own job directory. The .tex file is written with
restricted permissions, typeset and rasterized by the SecureExecutor, post-
processed by ImageMagick, size-checked and inspected before the bytes are
returned. The job directory is always removed afterwards.
"""

import io
import secrets
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path

import anyio
import numpy as np
from PIL import Image as PILImage
from fastmcp.utilities.logging import get_logger

from .errors import ExecutionFailure, ExecutionTimeoutError, OutputBufferExceededError
from .latex import build_latex_document
from .models import MCPErrorCodes, RenderedEquation
from .sandbox import SecureExecutor, secure_write_file
from .settings import EquationsSettings
from .validation import find_schema_issues, validate_latex_safety

logger = get_logger("equations-mcp.renderer")

LATEX_FILENAME = "equation.tex"
PNG_FILENAME = "equation.png"
PNG_TMP_FILENAME = "equation-tmp.png"


class RenderError(Exception):
    """A render failed; ``code`` is the MCP error code to report."""

    def __init__(self, message: str, code: int = MCPErrorCodes.OPERATION_FAILED, errors: list[str] | None = None):
        super().__init__(message)
        self.code = code
        self.errors = errors or []


def new_job_id() -> str:
    return f"eq_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def inspect_png(png_bytes: bytes) -> tuple[int, int]:
    """
    Check that PNG bytes decode and actually show something.

    Returns:
        (width, height) of the image

    Raises:
        ValueError: If the image is unreadable or completely white
    """
    with PILImage.open(io.BytesIO(png_bytes)) as img:
        width, height = img.size
        img_array = np.array(img.convert("L"))

    # Find non-white pixels
    if not np.any(img_array < 255):
        raise ValueError("Rendered image is blank")
    return width, height


class EquationRenderer:
    """
    Runs the full LaTeX -> PNG pipeline with job limits.

    Args:
        executor: SecureExecutor used for pdflatex and ImageMagick
        settings: Limits and directories
    """

    def __init__(self, executor: SecureExecutor, settings: EquationsSettings):
        self.executor = executor
        self.settings = settings
        self._active_jobs: set[str] = set()
        self._lock: anyio.Lock | None = None

    @property
    def active_jobs(self) -> int:
        return len(self._active_jobs)

    @property
    def max_image_bytes(self) -> int:
        return self.settings.max_image_size_mb * 1024 * 1024

    def validate(self, latex: str) -> list[str]:
        """All schema and safety errors for an equation (empty if valid)."""
        issues = find_schema_issues(latex)
        issues.extend(validate_latex_safety(latex).errors)
        return issues

    def _get_lock(self) -> anyio.Lock:
        """Create the job lock lazily, once an event loop is running."""
        if self._lock is None:
            self._lock = anyio.Lock()
        return self._lock

    async def _acquire_job(self, job_id: str) -> None:
        async with self._get_lock():
            if len(self._active_jobs) >= self.settings.max_concurrent_jobs:
                raise RenderError(
                    "Too many concurrent LaTeX jobs. Please try again later.",
                    code=MCPErrorCodes.RESOURCE_BUSY,
                )
            if job_id in self._active_jobs:
                raise RenderError("LaTeX job already in progress", code=MCPErrorCodes.RESOURCE_BUSY)
            self._active_jobs.add(job_id)

    async def _release_job(self, job_id: str) -> None:
        async with self._get_lock():
            self._active_jobs.discard(job_id)

    async def render(self, latex: str, job_id: str | None = None) -> tuple[bytes, RenderedEquation]:
        """
        Render one equation.

        Args:
            latex: Equation source (validated again here, before any process runs)
            job_id: Optional job identifier (generated if omitted)

        Returns:
            Tuple of PNG bytes and metadata

        Raises:
            RenderError: On validation failure, job limits, compilation or image errors
        """
        job_id = job_id or new_job_id()

        # SECURITY: Reject unsafe input before any file is written or process spawned
        issues = self.validate(latex)
        if issues:
            logger.warning(f"[{job_id}] LaTeX failed safety checks: {issues}")
            raise RenderError(
                "LaTeX content failed safety checks",
                code=MCPErrorCodes.INVALID_PARAMS,
                errors=issues,
            )

        await self._acquire_job(job_id)
        job_dir = self.settings.get_temp_dir() / job_id
        try:
            return await self._render_in(job_dir, job_id, latex)
        finally:
            await self._release_job(job_id)
            await anyio.to_thread.run_sync(lambda: shutil.rmtree(job_dir, ignore_errors=True))
            logger.debug(f"[{job_id}] Cleaned up {job_dir}")

    async def _render_in(self, job_dir: Path, job_id: str, latex: str) -> tuple[bytes, RenderedEquation]:
        logger.info(f"[{job_id}] Starting secure LaTeX compilation ({len(latex)} chars)")
        await anyio.Path(job_dir).mkdir(mode=0o750, parents=True, exist_ok=True)

        latex_file = job_dir / LATEX_FILENAME
        png_file = job_dir / PNG_FILENAME
        png_tmp_file = job_dir / PNG_TMP_FILENAME

        document = build_latex_document(latex).encode("utf-8")
        try:
            await anyio.to_thread.run_sync(lambda: secure_write_file(str(latex_file), document, mode=0o640))
        except RuntimeError as e:
            logger.error(f"[{job_id}] {e}")
            raise RenderError("Could not write LaTeX source", code=MCPErrorCodes.INTERNAL_ERROR) from e

        try:
            await self.executor.compile_pdflatex(str(latex_file), str(job_dir))
        except ExecutionFailure as e:
            logger.error(f"[{job_id}] LaTeX compilation failed: {e}")
            await self._keep_bad_file(latex_file, job_id)
            raise RenderError("LaTeX compilation failed", code=self._code_for(e)) from e

        if not await anyio.Path(png_file).exists():
            raise RenderError("PNG file was not generated", code=MCPErrorCodes.INTERNAL_ERROR)
        await self._check_size(png_file)

        await anyio.Path(png_file).rename(png_tmp_file)
        try:
            await self.executor.convert_image(str(png_tmp_file), str(png_file), str(job_dir))
        except ExecutionFailure as e:
            logger.error(f"[{job_id}] Image processing failed: {e}")
            raise RenderError("Image processing failed", code=self._code_for(e)) from e

        await self._check_size(png_file)
        png_bytes = await anyio.Path(png_file).read_bytes()

        try:
            width, height = await anyio.to_thread.run_sync(inspect_png, png_bytes)
        except (OSError, ValueError) as e:
            raise RenderError(f"Generated image is unusable: {e}", code=MCPErrorCodes.INTERNAL_ERROR) from e

        logger.info(f"[{job_id}] Rendered {width}x{height} PNG ({len(png_bytes)} bytes)")
        return png_bytes, RenderedEquation(
            job_id=job_id,
            png_size=len(png_bytes),
            width=width,
            height=height,
            generated_at=datetime.now(timezone.utc),
        )

    async def _check_size(self, path: Path) -> None:
        size = (await anyio.Path(path).stat()).st_size
        if size > self.max_image_bytes:
            await anyio.Path(path).unlink()
            raise RenderError(
                f"Generated file exceeds size limit ({size} bytes, max {self.max_image_bytes} bytes)",
                code=MCPErrorCodes.INPUT_TOO_LARGE,
            )

    async def _keep_bad_file(self, latex_file: Path, job_id: str) -> None:
        """Copy a source that failed to compile to the bad-files directory, if configured."""
        bad_files_dir = self.settings.bad_files_dir
        if bad_files_dir is None:
            return
        target = anyio.Path(bad_files_dir.expanduser())
        try:
            await target.mkdir(parents=True, exist_ok=True)
            await (target / f"{job_id}.tex").write_bytes(await anyio.Path(latex_file).read_bytes())
            logger.info(f"[{job_id}] Stored bad file in {target}")
        except OSError as e:
            logger.warning(f"[{job_id}] Could not store bad file: {e}")

    @staticmethod
    def _code_for(error: ExecutionFailure) -> int:
        if isinstance(error, ExecutionTimeoutError):
            return MCPErrorCodes.TIMEOUT
        if isinstance(error, OutputBufferExceededError):
            return MCPErrorCodes.INPUT_TOO_LARGE
        return MCPErrorCodes.OPERATION_FAILED
