"""
Math Typesetter
===============
Typesets a math expression to an SVG fragment with matplotlib's mathtext
engine. Inline expressions use the body font size, display expressions a
larger one.

Invalid or unsupported syntax raises MalformedContentError; the renderer
turns that into a literal-text fallback.
"""

from __future__ import annotations

import io
import logging
import re
from functools import lru_cache

import matplotlib

matplotlib.use("Agg")

from matplotlib import mathtext, rc_context  # noqa: E402
from matplotlib.figure import Figure  # noqa: E402
from matplotlib.font_manager import FontProperties  # noqa: E402

from .errors import MalformedContentError  # noqa: E402

logger = logging.getLogger(__name__)

INLINE_FONT_SIZE = 12
DISPLAY_FONT_SIZE = 16
SVG_DPI = 72

# Fixed salt keeps generated element ids identical between runs
_SVG_RC = {
    "svg.fonttype": "path",
    "svg.hashsalt": "qextract",
}

_XML_PROLOG = re.compile(r"^<\?xml[^>]*\?>\s*(<!DOCTYPE[^>]*>\s*)?", re.DOTALL)
_METADATA = re.compile(r"<metadata>.*?</metadata>\s*", re.DOTALL)


class MathTypesetter:
    """Converts math expressions into standalone inline SVG markup."""

    def __init__(
        self,
        inline_size: float = INLINE_FONT_SIZE,
        display_size: float = DISPLAY_FONT_SIZE,
        color: str = "black",
    ):
        self.inline_size = inline_size
        self.display_size = display_size
        self.color = color
        self._parser = mathtext.MathTextParser("path")

    def typeset(self, expression: str, display: bool = False) -> str:
        """
        Return SVG markup for an expression.

        Raises:
            MalformedContentError: The expression is empty or fails to parse.
        """
        if not expression.strip():
            raise MalformedContentError("Empty math expression")
        return self._typeset_cached(expression, display)

    @lru_cache(maxsize=1024)
    def _typeset_cached(self, expression: str, display: bool) -> str:
        size = self.display_size if display else self.inline_size
        prop = FontProperties(size=size)
        source = f"${expression}$"

        try:
            width, height, depth, *_ = self._parser.parse(
                source, dpi=SVG_DPI, prop=prop
            )
        except (ValueError, RuntimeError) as e:
            raise MalformedContentError(
                f"Cannot typeset {expression!r}: {e}"
            ) from e

        if width <= 0 or height <= 0:
            raise MalformedContentError(f"Nothing to typeset in {expression!r}")

        with rc_context(_SVG_RC):
            fig = Figure(figsize=(width / SVG_DPI, height / SVG_DPI))
            fig.text(
                0, depth / height, source,
                fontproperties=prop, color=self.color,
            )
            buffer = io.StringIO()
            fig.savefig(
                buffer,
                format="svg",
                dpi=SVG_DPI,
                transparent=True,
                metadata={"Date": None},
            )

        return self._strip_document(buffer.getvalue())

    def _strip_document(self, svg: str) -> str:
        """Drop the XML prolog and metadata so the SVG can be inlined."""
        svg = _XML_PROLOG.sub("", svg)
        svg = _METADATA.sub("", svg)
        return svg.strip()
