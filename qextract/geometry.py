"""
Diagram Geometry Engine
=======================
Lays out a DiagramDocument: computes the padded bounding box that becomes
the SVG coordinate frame, and emits one draw primitive per element in
document order.

Text has no real metrics at layout time; every label is given a nominal
100 x 30 extent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from markupsafe import escape

from .models import (
    DiagramDocument,
    EllipseElement,
    LineElement,
    PolygonElement,
    RectangleElement,
    TextElement,
)

DEFAULT_PADDING = 20.0
TEXT_NOMINAL_WIDTH = 100.0
TEXT_NOMINAL_HEIGHT = 30.0
FONT_FAMILY = "Arial, sans-serif"

Point = tuple[float, float]


# ─── Bounding Box ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box (min_x, min_y) - (max_x, max_y)."""
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @classmethod
    def from_points(cls, points: list[Point]) -> "BoundingBox":
        xs = [p[0] for p in points]
        ys = [p[1] for p in points]
        return cls(min(xs), min(ys), max(xs), max(ys))

    def union(self, other: "BoundingBox") -> "BoundingBox":
        return BoundingBox(
            min(self.min_x, other.min_x),
            min(self.min_y, other.min_y),
            max(self.max_x, other.max_x),
            max(self.max_y, other.max_y),
        )

    def padded(self, margin: float) -> "BoundingBox":
        return BoundingBox(
            self.min_x - margin,
            self.min_y - margin,
            self.max_x + margin,
            self.max_y + margin,
        )

    def contains(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y


# ─── Primitives ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Style:
    stroke: str
    fill: str
    stroke_width: float


@dataclass(frozen=True)
class RectPrimitive:
    x: float
    y: float
    width: float
    height: float
    style: Style


@dataclass(frozen=True)
class EllipsePrimitive:
    cx: float
    cy: float
    rx: float
    ry: float
    style: Style


@dataclass(frozen=True)
class PolygonPrimitive:
    points: tuple[Point, ...]
    style: Style


@dataclass(frozen=True)
class PolylinePrimitive:
    """Open stroked path; never filled."""
    points: tuple[Point, ...]
    style: Style


@dataclass(frozen=True)
class TextPrimitive:
    x: float
    baseline_y: float
    text: str
    font_size: float
    color: str


Primitive = Union[
    RectPrimitive,
    EllipsePrimitive,
    PolygonPrimitive,
    PolylinePrimitive,
    TextPrimitive,
]


@dataclass(frozen=True)
class DiagramLayout:
    """Padded coordinate frame plus primitives in document order."""
    bbox: BoundingBox
    primitives: tuple[Primitive, ...]


# ─── Layout ───────────────────────────────────────────────────────────────────


def _translated(element: Union[PolygonElement, LineElement]) -> list[Point]:
    return [(element.x + dx, element.y + dy) for dx, dy in element.points]


def element_extent(element) -> list[Point]:
    """Points an element contributes to the bounding box."""
    if isinstance(element, (RectangleElement, EllipseElement)):
        return [
            (element.x, element.y),
            (element.x + element.width, element.y + element.height),
        ]
    if isinstance(element, TextElement):
        return [
            (element.x, element.y),
            (element.x + TEXT_NOMINAL_WIDTH, element.y + TEXT_NOMINAL_HEIGHT),
        ]
    if isinstance(element, (PolygonElement, LineElement)):
        return _translated(element)
    raise TypeError(f"Unsupported diagram element: {type(element).__name__}")


def bounding_box(
    document: DiagramDocument, padding: float = DEFAULT_PADDING
) -> BoundingBox:
    """Union of every element's extent, grown by padding on all sides."""
    points: list[Point] = []
    for element in document.elements:
        points.extend(element_extent(element))

    if not points:
        # Empty document: zero-size frame at the origin
        points = [(0.0, 0.0)]

    return BoundingBox.from_points(points).padded(padding)


def _style(element, fill: str = None) -> Style:
    return Style(
        stroke=element.stroke_color,
        fill=element.background_color if fill is None else fill,
        stroke_width=element.stroke_width,
    )


def to_primitive(element) -> Primitive:
    """Draw instruction for one element, with style defaults resolved."""
    if isinstance(element, RectangleElement):
        return RectPrimitive(
            element.x, element.y, element.width, element.height,
            _style(element),
        )
    if isinstance(element, EllipseElement):
        return EllipsePrimitive(
            cx=element.x + element.width / 2,
            cy=element.y + element.height / 2,
            rx=element.width / 2,
            ry=element.height / 2,
            style=_style(element),
        )
    if isinstance(element, PolygonElement):
        return PolygonPrimitive(tuple(_translated(element)), _style(element))
    if isinstance(element, LineElement):
        return PolylinePrimitive(
            tuple(_translated(element)), _style(element, fill="none")
        )
    if isinstance(element, TextElement):
        return TextPrimitive(
            x=element.x,
            baseline_y=element.y + element.font_size,
            text=element.text,
            font_size=element.font_size,
            color=element.stroke_color,
        )
    raise TypeError(f"Unsupported diagram element: {type(element).__name__}")


def layout(
    document: DiagramDocument, padding: float = DEFAULT_PADDING
) -> DiagramLayout:
    """Bounding box and primitives for a diagram document."""
    return DiagramLayout(
        bbox=bounding_box(document, padding),
        primitives=tuple(to_primitive(el) for el in document.elements),
    )


# ─── SVG Output ───────────────────────────────────────────────────────────────


def fmt(value: float) -> str:
    """Stable number formatting: integral values without a decimal point."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _points_attr(points: tuple[Point, ...]) -> str:
    return " ".join(f"{fmt(x)},{fmt(y)}" for x, y in points)


def _style_attrs(style: Style) -> str:
    return (
        f'stroke="{escape(style.stroke)}" fill="{escape(style.fill)}" '
        f'stroke-width="{fmt(style.stroke_width)}"'
    )


def primitive_to_svg(primitive: Primitive) -> str:
    if isinstance(primitive, RectPrimitive):
        return (
            f'<rect x="{fmt(primitive.x)}" y="{fmt(primitive.y)}" '
            f'width="{fmt(primitive.width)}" height="{fmt(primitive.height)}" '
            f'{_style_attrs(primitive.style)} />'
        )
    if isinstance(primitive, EllipsePrimitive):
        return (
            f'<ellipse cx="{fmt(primitive.cx)}" cy="{fmt(primitive.cy)}" '
            f'rx="{fmt(primitive.rx)}" ry="{fmt(primitive.ry)}" '
            f'{_style_attrs(primitive.style)} />'
        )
    if isinstance(primitive, PolygonPrimitive):
        return (
            f'<polygon points="{_points_attr(primitive.points)}" '
            f'{_style_attrs(primitive.style)} />'
        )
    if isinstance(primitive, PolylinePrimitive):
        return (
            f'<polyline points="{_points_attr(primitive.points)}" '
            f'{_style_attrs(primitive.style)} />'
        )
    if isinstance(primitive, TextPrimitive):
        return (
            f'<text x="{fmt(primitive.x)}" y="{fmt(primitive.baseline_y)}" '
            f'font-size="{fmt(primitive.font_size)}" '
            f'font-family="{FONT_FAMILY}" fill="{escape(primitive.color)}">'
            f'{escape(primitive.text)}</text>'
        )
    raise TypeError(f"Unsupported primitive: {type(primitive).__name__}")


def to_svg(diagram: DiagramLayout) -> str:
    """Serialize a layout as a standalone SVG element."""
    box = diagram.bbox
    view_box = (
        f"{fmt(box.min_x)} {fmt(box.min_y)} "
        f"{fmt(box.width)} {fmt(box.height)}"
    )
    body = "".join(primitive_to_svg(p) for p in diagram.primitives)
    return (
        f'<svg xmlns="http://www.w3.org/2000/svg" viewBox="{view_box}" '
        f'width="100%" height="auto">{body}</svg>'
    )


def render_svg(
    document: DiagramDocument, padding: float = DEFAULT_PADDING
) -> str:
    return to_svg(layout(document, padding))
