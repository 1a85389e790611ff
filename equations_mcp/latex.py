"""LaTeX document template for rendering a single equation."""

import re

from .validation import ALLOWED_PACKAGES, find_packages

# Packages every equation gets, in preamble order
BASE_PACKAGES = ("amsmath", "amssymb", "amsfonts", "mathtools", "xcolor")

_PACKAGE_DIRECTIVE = re.compile(r"\\(?:usepackage|RequirePackage)\s*(?:\[[^\]]*\])?\s*\{[^}]*\}[ \t]*\n?")

# Delimiters and display environments that enter math mode on their own.
# Inner environments (pmatrix, cases, aligned, ...) still need wrapping.
_MATH_DELIMITERS = re.compile(
    r"\$|\\\[|\\\(|\\begin\{(?:equation|align|gather|multline|displaymath|math)\*?\}"
)

DOCUMENT_TEMPLATE = r"""\documentclass[preview,border=4pt,12pt]{standalone}
%(preamble)s
\begin{document}
%(body)s
\end{document}
"""


def build_latex_document(latex: str) -> str:
    """
    Wrap a validated equation in a standalone document.

    Package directives are lifted out of the equation into the preamble (only
    allowlisted packages ever reach this point), and bare math is put in
    display mode.

    Args:
        latex: Equation source that already passed validation

    Returns:
        Complete .tex document
    """
    packages = list(BASE_PACKAGES)
    for name in find_packages(latex):
        if name in ALLOWED_PACKAGES and name not in packages:
            packages.append(name)

    body = _PACKAGE_DIRECTIVE.sub("", latex).strip()
    if body and not _MATH_DELIMITERS.search(body):
        body = f"\\[ {body} \\]"

    preamble = "\n".join(f"\\usepackage{{{name}}}" for name in packages)
    return DOCUMENT_TEMPLATE % {"preamble": preamble, "body": body}
