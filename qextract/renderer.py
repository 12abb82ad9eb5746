"""
Content Renderer
================
Turns tokenized question markup into render nodes and HTML.

    TextSegment        → TextNode     (escaped, whitespace preserved)
    Inline/BlockMath   → MathNode     (SVG from the math typesetter)
    DiagramSegment     → DiagramNode  (SVG from the geometry engine, bordered)

Failures stay local: a math fragment that does not typeset becomes a
TextNode with its literal source; an unparseable diagram turns the whole
content string into a single TextNode.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from string import ascii_uppercase
from typing import Optional, Sequence, Union

from jinja2 import Environment, PackageLoader, select_autoescape
from markupsafe import Markup, escape

from .errors import MalformedContentError
from .geometry import DEFAULT_PADDING, BoundingBox, layout, to_svg
from .models import DiagramDocument, ExtractedQuestion
from .tokenizer import (
    BlockMathSegment,
    ContentSegment,
    DiagramSegment,
    InlineMathSegment,
    TextSegment,
    tokenize,
)
from .typesetter import MathTypesetter

logger = logging.getLogger(__name__)

DIAGRAM_CONTAINER_STYLE = (
    "margin:1.5rem 0;padding:1rem;background:#ffffff;"
    "border:1px solid #e5e7eb;border-radius:0.5rem"
)


# ─── Render Nodes ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TextNode:
    text: str
    kind: str = "text"


@dataclass(frozen=True)
class MathNode:
    source: str
    expression: str
    display: bool
    svg: str
    kind: str = "math"


@dataclass(frozen=True)
class DiagramNode:
    source: str
    svg: str
    bbox: BoundingBox
    kind: str = "diagram"


RenderNode = Union[TextNode, MathNode, DiagramNode]


def node_to_html(node: RenderNode) -> str:
    if isinstance(node, TextNode):
        return str(escape(node.text))
    if isinstance(node, MathNode):
        if node.display:
            return f'<div class="math math-display">{node.svg}</div>'
        return f'<span class="math math-inline">{node.svg}</span>'
    if isinstance(node, DiagramNode):
        return (
            f'<div class="diagram" style="{DIAGRAM_CONTAINER_STYLE}">'
            f"{node.svg}</div>"
        )
    raise TypeError(f"Unsupported render node: {type(node).__name__}")


def to_html(nodes: Sequence[RenderNode]) -> str:
    """Concatenate nodes into an HTML fragment, in order."""
    body = "".join(node_to_html(n) for n in nodes)
    return f'<div class="question-content" style="white-space:pre-wrap">{body}</div>'


def nodes_to_dicts(nodes: Sequence[RenderNode]) -> list[dict]:
    """Structured render instructions for non-HTML consumers."""
    return [asdict(n) for n in nodes]


# ─── Renderer ─────────────────────────────────────────────────────────────────


class ContentRenderer:
    """
    Renders question markup. Stateless apart from the typesetter cache;
    identical input always produces identical output.
    """

    def __init__(
        self,
        typesetter: Optional[MathTypesetter] = None,
        padding: float = DEFAULT_PADDING,
    ):
        self.typesetter = typesetter or MathTypesetter()
        self.padding = padding
        self._env: Optional[Environment] = None

    # ── Segments → nodes ──────────────────────────────────────────────

    def render(self, segments: Sequence[ContentSegment]) -> list[RenderNode]:
        """Render segments in order. Math failures fall back to literal text."""
        nodes: list[RenderNode] = []
        for segment in segments:
            if isinstance(segment, TextSegment):
                nodes.append(TextNode(segment.source))
            elif isinstance(segment, (InlineMathSegment, BlockMathSegment)):
                nodes.append(self._render_math(segment))
            elif isinstance(segment, DiagramSegment):
                nodes.append(self.render_diagram(segment.document, segment.source))
            else:
                raise TypeError(
                    f"Unsupported content segment: {type(segment).__name__}"
                )
        return nodes

    def _render_math(
        self, segment: Union[InlineMathSegment, BlockMathSegment]
    ) -> RenderNode:
        display = isinstance(segment, BlockMathSegment)
        try:
            svg = self.typesetter.typeset(segment.expression, display=display)
        except MalformedContentError as e:
            logger.debug(f"Math fallback to literal text: {e}")
            return TextNode(segment.source)
        return MathNode(segment.source, segment.expression, display, svg)

    def render_diagram(
        self, document: DiagramDocument, source: str = ""
    ) -> DiagramNode:
        diagram = layout(document, self.padding)
        return DiagramNode(
            source=source or document.to_json(),
            svg=to_svg(diagram),
            bbox=diagram.bbox,
        )

    # ── Content strings ───────────────────────────────────────────────

    def render_content(self, content: str) -> list[RenderNode]:
        """Tokenize and render one content string, atomically."""
        try:
            segments = tokenize(content)
        except MalformedContentError as e:
            logger.warning(f"Diagram JSON unparseable, showing raw text: {e}")
            return [TextNode(content)]
        return self.render(segments)

    def render_html(self, content: str) -> str:
        return to_html(self.render_content(content))

    # ── Questions ─────────────────────────────────────────────────────

    def render_option(self, option: Union[str, DiagramDocument]) -> str:
        if isinstance(option, DiagramDocument):
            return to_html([self.render_diagram(option)])
        return self.render_html(option)

    def render_question(self, question: ExtractedQuestion, number: int = 1) -> str:
        """HTML block for one question: statement, then lettered options."""
        parts = [
            f'<article class="question" data-type="{question.question_type.value}">',
            f'<header>Question {number} '
            f'<span class="badge">{question.question_type.value}</span> '
            f'<span class="marks">+{question.correct_marks:g} / '
            f'{question.incorrect_marks:g}</span></header>',
            self.render_html(question.question_statement),
        ]
        if question.options:
            parts.append('<ol class="options">')
            for idx, option in enumerate(question.options):
                label = ascii_uppercase[idx] if idx < 26 else str(idx + 1)
                parts.append(
                    f'<li><span class="option-label">{label}.</span>'
                    f"{self.render_option(option)}</li>"
                )
            parts.append("</ol>")
        parts.append("</article>")
        return "".join(parts)

    def render_preview(
        self,
        questions: Sequence[ExtractedQuestion],
        title: str = "Extracted Questions",
    ) -> str:
        """Full HTML page previewing a list of questions."""
        blocks = [
            Markup(self.render_question(q, i))
            for i, q in enumerate(questions, start=1)
        ]
        template = self._environment().get_template("preview.html")
        return template.render(title=title, questions=blocks, total=len(blocks))

    def _environment(self) -> Environment:
        if self._env is None:
            self._env = Environment(
                loader=PackageLoader("qextract", "templates"),
                autoescape=select_autoescape(["html"]),
            )
        return self._env
