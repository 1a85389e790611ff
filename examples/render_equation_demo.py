#!/usr/bin/env python3
"""
Demonstration of the secure equation rendering pipeline.

This script validates a few equations, then renders one to PNG with the
local pdflatex and ImageMagick installation.
"""

import sys
from pathlib import Path

import anyio

from equations_mcp.renderer import EquationRenderer, RenderError
from equations_mcp.sandbox import SecureExecutor, check_dependencies
from equations_mcp.settings import equations_settings

SAMPLES = {
    "quadratic formula": r"x = \frac{-b \pm \sqrt{b^2 - 4ac}}{2a}",
    "gaussian integral": r"\int_{-\infty}^{\infty} e^{-x^2} \, dx = \sqrt{\pi}",
    "shell escape": r"\immediate\write18{cat /etc/passwd}",
    "macro definition": r"\def\x{\x}\x",
    "unknown package": r"\usepackage{shellesc} x",
}


def demo_validation(renderer: EquationRenderer):
    """Demo: Validate safe and unsafe equations."""
    print("\n" + "=" * 60)
    print("DEMO 1: Validation")
    print("=" * 60)

    for name, latex in SAMPLES.items():
        errors = renderer.validate(latex)
        status = "✅ accepted" if not errors else "❌ rejected"
        print(f"\n  {name}: {status}")
        for error in errors:
            print(f"     - {error}")


async def demo_render(renderer: EquationRenderer, output: Path):
    """Demo: Render the quadratic formula to a PNG file."""
    print("\n" + "=" * 60)
    print("DEMO 2: Render to PNG")
    print("=" * 60)

    missing = check_dependencies()
    if missing:
        print(f"\n⚠️  Skipping render, missing tools: {', '.join(missing)}")
        return

    try:
        png_bytes, info = await renderer.render(SAMPLES["quadratic formula"])
    except RenderError as e:
        print(f"\n❌ Render failed: {e}")
        return

    await anyio.Path(output).write_bytes(png_bytes)
    print(f"\n🖼️  Wrote {output} ({info.width}x{info.height}, {info.png_size} bytes)")


async def main():
    renderer = EquationRenderer(SecureExecutor(), equations_settings)
    demo_validation(renderer)
    await demo_render(renderer, Path(sys.argv[1] if len(sys.argv) > 1 else "equation.png"))


if __name__ == "__main__":
    print("\n" + "=" * 70)
    print(" " * 20 + "EQUATION RENDERING DEMO")
    print("=" * 70)

    anyio.run(main)

    print("\n" + "=" * 70)
    print(" " * 23 + "DEMO COMPLETED ✓")
    print("=" * 70)
    print()
