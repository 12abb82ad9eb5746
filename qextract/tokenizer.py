"""
Mixed-Markup Tokenizer
======================
Splits question markup into an ordered sequence of typed segments:

    TextSegment        literal prose (newlines preserved)
    InlineMathSegment  $...$ or a bare command such as \\frac{1}{2}
    BlockMathSegment   $$...$$
    DiagramSegment     embedded excalidraw JSON object

Every segment keeps its exact source span, so joining the sources gives
back the input string.

Recognition order:
    1. The first JSON object whose top-level "type" is "excalidraw"
    2. Block math      $$ ... $$
    3. Inline math     $ ... $
    4. Bare commands   \\text{..}, \\frac{..}{..}, \\name
    5. Text
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import ValidationError

from .errors import MalformedContentError
from .models import DIAGRAM_MARKER, DiagramDocument, is_diagram_object

logger = logging.getLogger(__name__)

# ─── Patterns ─────────────────────────────────────────────────────────────────

DIAGRAM_MARKER_PATTERN = re.compile(
    r'"type"\s*:\s*"' + re.escape(DIAGRAM_MARKER) + r'"'
)

BLOCK_MATH = r"\$\$[\s\S]+?\$\$"
INLINE_MATH = r"\$[^$]+?\$"
TEXT_COMMAND = r"\\text\{[^}]*\}"
FRAC_COMMAND = r"\\frac\{[^}]*\}\{[^}]*\}"
BARE_COMMAND = r"\\[a-zA-Z]+"

MATH_PATTERN = re.compile(
    "|".join([BLOCK_MATH, INLINE_MATH, TEXT_COMMAND, FRAC_COMMAND, BARE_COMMAND])
)


# ─── Segments ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TextSegment:
    source: str


@dataclass(frozen=True)
class InlineMathSegment:
    source: str
    expression: str


@dataclass(frozen=True)
class BlockMathSegment:
    source: str
    expression: str


@dataclass(frozen=True)
class DiagramSegment:
    source: str
    document: DiagramDocument


ContentSegment = Union[
    TextSegment,
    InlineMathSegment,
    BlockMathSegment,
    DiagramSegment,
]


def segments_source(segments: list[ContentSegment]) -> str:
    """Concatenate segment sources; the inverse of tokenize()."""
    return "".join(s.source for s in segments)


# ─── Diagram Detection ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _DiagramSpan:
    start: int
    end: int
    data: dict


def find_diagram(content: str, start: int = 0) -> Optional[_DiagramSpan]:
    """
    Locate the first embedded diagram object at or after `start`.

    Every marker occurrence is tried in turn, so marker text quoted in
    prose does not hide a real diagram further on. Returns None when the
    marker does not occur. Raises MalformedContentError when the marker
    occurs but no enclosing JSON object decodes.
    """
    markers = list(DIAGRAM_MARKER_PATTERN.finditer(content, start))
    if not markers:
        return None

    decoder = json.JSONDecoder()
    tried: set[int] = set()
    for marker in markers:
        for brace in re.finditer(r"\{", content[start:marker.start()]):
            pos = start + brace.start()
            if pos in tried:
                continue
            tried.add(pos)
            try:
                value, end = decoder.raw_decode(content, pos)
            except json.JSONDecodeError:
                continue
            if is_diagram_object(value) and end > marker.start():
                return _DiagramSpan(pos, end, value)

    raise MalformedContentError(
        f"Diagram marker at offset {markers[0].start()} is not inside a valid JSON object"
    )


# ─── Tokenizing ───────────────────────────────────────────────────────────────


def tokenize_math(text: str) -> list[ContentSegment]:
    """Split diagram-free text into text and math segments."""
    segments: list[ContentSegment] = []
    cursor = 0

    for match in MATH_PATTERN.finditer(text):
        if match.start() > cursor:
            segments.append(TextSegment(text[cursor:match.start()]))

        part = match.group(0)
        if part.startswith("$$") and part.endswith("$$"):
            segments.append(BlockMathSegment(part, part[2:-2]))
        elif part.startswith("$") and part.endswith("$"):
            segments.append(InlineMathSegment(part, part[1:-1]))
        else:
            segments.append(InlineMathSegment(part, part))
        cursor = match.end()

    if cursor < len(text):
        segments.append(TextSegment(text[cursor:]))

    return segments


def tokenize(content: str) -> list[ContentSegment]:
    """
    Classify every span of a content string.

    Raises:
        MalformedContentError: The diagram marker is present but the first
            diagram object cannot be decoded or validated.
    """
    if not content:
        return []

    first = find_diagram(content)
    if first is None:
        return tokenize_math(content)

    try:
        document = DiagramDocument.model_validate(first.data)
    except ValidationError as e:
        raise MalformedContentError(f"Invalid diagram document: {e}") from e

    segments = tokenize_math(content[:first.start])
    segments.append(DiagramSegment(content[first.start:first.end], document))
    segments.extend(_tokenize_remainder(content, first.end))
    return segments


def _tokenize_remainder(content: str, start: int) -> list[ContentSegment]:
    """Text after the first diagram. Further diagram objects stay literal text."""
    segments: list[ContentSegment] = []
    cursor = start

    while cursor < len(content):
        try:
            extra = find_diagram(content, cursor)
        except MalformedContentError:
            extra = None
        if extra is None:
            break

        logger.warning(
            f"Additional diagram at offset {extra.start} rendered as text"
        )
        segments.extend(tokenize_math(content[cursor:extra.start]))
        segments.append(TextSegment(content[extra.start:extra.end]))
        cursor = extra.end

    segments.extend(tokenize_math(content[cursor:]))
    return segments
