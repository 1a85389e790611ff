"""Input validation for untrusted LaTeX equations.

Two layers run before anything is written to disk or handed to pdflatex:

* ``find_schema_issues`` / ``EquationParams``: what the equation may contain
  (size, blocked control sequences, paths, packages, brace structure,
  catcodes, encoding tricks).
* ``validate_latex_safety``: shapes that are legal TeX but expensive to
  typeset (repetition, very long lines, too many math environments).

Both are pure functions over the input string and never spawn a process.
"""

import re

from pydantic import BaseModel, Field, field_validator

from .models import (
    MAX_IMMEDIATE_REPEATS,
    MAX_LATEX_LENGTH,
    MAX_LINE_LENGTH,
    MAX_MATH_ENVIRONMENTS,
    MAX_NESTING_DEPTH,
    MIN_REPEATED_UNIT,
    SafetyReport,
)

# ============================================================================
# ERROR MESSAGES
# ============================================================================

MSG_REQUIRED = "LaTeX content is required"
MSG_TOO_LONG = f"LaTeX content too long (max {MAX_LATEX_LENGTH} characters)"
MSG_DANGEROUS_COMMANDS = "LaTeX contains potentially dangerous commands"
MSG_UNSAFE_PATHS = "LaTeX contains potentially unsafe path references"
MSG_UNAUTHORIZED_PACKAGES = "LaTeX contains unauthorized packages"
MSG_BAD_STRUCTURE = "LaTeX has invalid structure or excessive nesting"
MSG_CATCODE = "Category code changes not allowed"
MSG_OBFUSCATED = "LaTeX contains obfuscated character encodings"

MSG_REPETITION = "Excessive repetition detected"
MSG_LINE_TOO_LONG = f"Line too long (max {MAX_LINE_LENGTH} characters per line)"
MSG_TOO_MANY_MATH = f"Too many mathematical expressions (max {MAX_MATH_ENVIRONMENTS})"

# ============================================================================
# PATTERNS
# ============================================================================

# Control sequences that read/write files, run programs, define or expand
# macros, or introspect tokens. Matched as prefixes, case-insensitively.
BLOCKED_COMMANDS = (
    # File access
    "input",
    "include",
    "InputIfFileExists",
    "openin",
    "read",
    "openout",
    "closeout",
    # Shell execution
    "write18",
    "immediate",
    "system",
    "ShellEscape",
    # Macro definition and expansion
    "def",
    "gdef",
    "edef",
    "xdef",
    "let",
    "futurelet",
    "expandafter",
    "csname",
    "endcsname",
    # Token introspection
    "string",
    "meaning",
    "jobname",
    "detokenize",
    "scantokens",
)

# NOTE: whitespace between a backslash and the command name (e.g. "\ write18")
# is not caught here. pdflatex runs with -no-shell-escape and without a shell.
_BLOCKED_COMMAND_PATTERNS = (
    re.compile(r"\\immediate\s*\\write\s*18", re.IGNORECASE),
    re.compile(r"\\(?:" + "|".join(BLOCKED_COMMANDS) + ")", re.IGNORECASE),
)

_UNSAFE_PATH_PATTERN = re.compile(
    r"\.\.|~|/etc/|/proc/|/sys/|/dev/|/tmp/|\\string|\\detokenize",
    re.IGNORECASE,
)

ALLOWED_PACKAGES = frozenset({
    "amsmath",
    "amssymb",
    "amsfonts",
    "mathtools",
    "geometry",
    "xcolor",
    "graphicx",
})

_PACKAGE_PATTERN = re.compile(r"\\(?:usepackage|RequirePackage)\s*(?:\[[^\]]*\])?\s*\{([^}]*)\}")

_CATCODE_PATTERN = re.compile(r"\\catcode", re.IGNORECASE)

# Bidirectional overrides can hide blocked commands from reviewers, and TeX's
# ^^ notation spells characters (^^5c is a backslash) past the regexes above.
_OBFUSCATION_PATTERN = re.compile(r"[\u202a-\u202e\u2066-\u2069]|\^\^")

_REPETITION_PATTERN = re.compile(
    r"(.{%d,})\1{%d,}" % (MIN_REPEATED_UNIT, MAX_IMMEDIATE_REPEATS + 1),
    re.DOTALL,
)

_MATH_ENVIRONMENT_PATTERN = re.compile(r"\$|\\\[|\\\(|\\begin\{(?:equation|align|gather|multline)\*?\}")


# ============================================================================
# CHECKS
# ============================================================================


def has_blocked_commands(latex: str) -> bool:
    return any(pattern.search(latex) for pattern in _BLOCKED_COMMAND_PATTERNS)


def has_unsafe_paths(latex: str) -> bool:
    return bool(_UNSAFE_PATH_PATTERN.search(latex))


def find_packages(latex: str) -> list[str]:
    """Package names referenced by \\usepackage / \\RequirePackage, in order."""
    packages = []
    for match in _PACKAGE_PATTERN.finditer(latex):
        packages.extend(name.strip() for name in match.group(1).split(","))
    return packages


def has_only_allowed_packages(latex: str) -> bool:
    return all(name in ALLOWED_PACKAGES for name in find_packages(latex))


def has_valid_nesting(latex: str, max_depth: int = MAX_NESTING_DEPTH) -> bool:
    """Braces must balance and never nest deeper than max_depth."""
    depth = 0
    for char in latex:
        if char == "{":
            depth += 1
            if depth > max_depth:
                return False
        elif char == "}":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def has_catcode(latex: str) -> bool:
    return bool(_CATCODE_PATTERN.search(latex))


def has_obfuscated_encoding(latex: str) -> bool:
    return bool(_OBFUSCATION_PATTERN.search(latex))


def find_schema_issues(latex: str) -> list[str]:
    """
    Collect every schema violation in an equation.

    All checks run; nothing short-circuits, so a caller sees every problem at
    once.

    Args:
        latex: Untrusted equation source

    Returns:
        List of error messages (empty if the equation is acceptable)
    """
    if not latex:
        return [MSG_REQUIRED]

    issues = []
    if len(latex) > MAX_LATEX_LENGTH:
        issues.append(MSG_TOO_LONG)
    if has_blocked_commands(latex):
        issues.append(MSG_DANGEROUS_COMMANDS)
    if has_unsafe_paths(latex):
        issues.append(MSG_UNSAFE_PATHS)
    if not has_only_allowed_packages(latex):
        issues.append(MSG_UNAUTHORIZED_PACKAGES)
    if not has_valid_nesting(latex):
        issues.append(MSG_BAD_STRUCTURE)
    if has_catcode(latex):
        issues.append(MSG_CATCODE)
    if has_obfuscated_encoding(latex):
        issues.append(MSG_OBFUSCATED)
    return issues


def validate_latex_safety(latex: str) -> SafetyReport:
    """
    Runtime checks for input that would be slow or huge to typeset.

    Example:
        >>> validate_latex_safety("123" * 11).errors
        ['Excessive repetition detected']
    """
    errors = []

    if _REPETITION_PATTERN.search(latex):
        errors.append(MSG_REPETITION)

    if any(len(line) > MAX_LINE_LENGTH for line in latex.split("\n")):
        errors.append(MSG_LINE_TOO_LONG)

    if len(_MATH_ENVIRONMENT_PATTERN.findall(latex)) > MAX_MATH_ENVIRONMENTS:
        errors.append(MSG_TOO_MANY_MATH)

    return SafetyReport(is_valid=not errors, errors=errors)


# ============================================================================
# TOOL PARAMETER MODELS
# ============================================================================


class EquationParams(BaseModel):
    """Parameters for the render_equation tool."""

    token: str = Field(
        ...,
        description="API token of the caller",
        min_length=1,
    )
    latex: str = Field(
        ...,
        description=f"LaTeX equation to render (max {MAX_LATEX_LENGTH} characters)",
    )

    @field_validator("latex")
    @classmethod
    def validate_latex(cls, v: str) -> str:
        """Reject unsafe or oversized LaTeX, reporting every issue found."""
        issues = find_schema_issues(v)
        if issues:
            raise ValueError("; ".join(issues))
        return v
