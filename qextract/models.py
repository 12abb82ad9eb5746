"""
Data Models
===========
Pydantic models for extracted questions, embedded diagram documents and
extraction run results. All models serialize to JSON for the persistence
and presentation layers.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)

DIAGRAM_MARKER = "excalidraw"

DEFAULT_STROKE_COLOR = "#000000"
DEFAULT_BACKGROUND_COLOR = "transparent"
DEFAULT_STROKE_WIDTH = 2.0
DEFAULT_FONT_SIZE = 16.0


# ─── Enums ────────────────────────────────────────────────────────────────────


class QuestionType(str, Enum):
    """Question formats offered by the exam configuration."""
    MCQ = "MCQ"
    MSQ = "MSQ"
    NAT = "NAT"
    SUB = "SUB"

    @property
    def expects_options(self) -> bool:
        return self in (QuestionType.MCQ, QuestionType.MSQ)


# ─── Diagram Models ───────────────────────────────────────────────────────────


class _ElementBase(BaseModel):
    """Fields shared by every diagram element."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: Optional[str] = None
    x: float
    y: float
    stroke_color: str = Field(DEFAULT_STROKE_COLOR, alias="strokeColor")
    background_color: str = Field(
        DEFAULT_BACKGROUND_COLOR, alias="backgroundColor"
    )
    stroke_width: float = Field(DEFAULT_STROKE_WIDTH, alias="strokeWidth")

    @field_validator("stroke_color", mode="before")
    @classmethod
    def _default_stroke_color(cls, value: Any) -> Any:
        return DEFAULT_STROKE_COLOR if value in (None, "") else value

    @field_validator("background_color", mode="before")
    @classmethod
    def _default_background_color(cls, value: Any) -> Any:
        return DEFAULT_BACKGROUND_COLOR if value in (None, "") else value

    # Null, empty and zero widths all fall back to the default
    @field_validator("stroke_width", mode="before")
    @classmethod
    def _default_stroke_width(cls, value: Any) -> Any:
        return DEFAULT_STROKE_WIDTH if value in (None, "", 0) else value


class RectangleElement(_ElementBase):
    type: Literal["rectangle"] = "rectangle"
    width: float
    height: float


class EllipseElement(_ElementBase):
    type: Literal["ellipse"] = "ellipse"
    width: float
    height: float


class PolygonElement(_ElementBase):
    type: Literal["polygon"] = "polygon"
    points: list[tuple[float, float]] = Field(default_factory=list)


class LineElement(_ElementBase):
    type: Literal["line"] = "line"
    points: list[tuple[float, float]] = Field(default_factory=list)


class TextElement(_ElementBase):
    type: Literal["text"] = "text"
    text: str = ""
    font_size: float = Field(DEFAULT_FONT_SIZE, alias="fontSize")

    @field_validator("text", mode="before")
    @classmethod
    def _default_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("font_size", mode="before")
    @classmethod
    def _default_font_size(cls, value: Any) -> Any:
        return DEFAULT_FONT_SIZE if value in (None, "", 0) else value


DiagramElement = Annotated[
    Union[
        RectangleElement,
        EllipseElement,
        PolygonElement,
        LineElement,
        TextElement,
    ],
    Field(discriminator="type"),
]

ELEMENT_TYPES = frozenset({"rectangle", "ellipse", "polygon", "line", "text"})


class DiagramDocument(BaseModel):
    """
    Renderer-agnostic description of a geometric illustration, embedded
    verbatim in question markup as an excalidraw-style JSON object.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    type: Literal["excalidraw"] = DIAGRAM_MARKER
    version: int = 2
    source: str = ""
    elements: list[DiagramElement] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _drop_unknown_elements(cls, data: Any) -> Any:
        # Shapes we cannot draw (arrows, freedraw, ...) are skipped.
        if isinstance(data, dict) and isinstance(data.get("elements"), list):
            data = dict(data)
            data["elements"] = [
                el for el in data["elements"]
                if isinstance(el, dict) and el.get("type") in ELEMENT_TYPES
            ]
        return data

    def to_json(self) -> str:
        return json.dumps(
            self.model_dump(by_alias=True, exclude_none=True),
            ensure_ascii=False,
        )


def is_diagram_object(value: Any) -> bool:
    """True when a decoded JSON value carries the diagram marker."""
    return isinstance(value, dict) and value.get("type") == DIAGRAM_MARKER


# ─── Question Models ──────────────────────────────────────────────────────────


class MarkingScheme(BaseModel):
    """
    Marks and timing stamped onto every question of a batch.
    Owned by the caller; never parsed from the model reply.
    """
    question_type: QuestionType = QuestionType.MCQ
    correct_marks: float = 4
    incorrect_marks: float = -1
    skipped_marks: float = 0
    partial_marks: float = 0
    time_minutes: int = Field(3, ge=0)


QuestionOption = Union[DiagramDocument, str]


class ExtractedQuestion(BaseModel):
    """One question extracted from a page image."""
    model_config = ConfigDict(frozen=True)

    question_type: QuestionType
    question_statement: str
    options: Optional[list[QuestionOption]] = None
    correct_marks: float
    incorrect_marks: float
    skipped_marks: float
    partial_marks: float
    time_minutes: int

    @field_validator("options", mode="before")
    @classmethod
    def _normalize_options(cls, value: Any) -> Any:
        if value is None or value == []:
            return None
        if not isinstance(value, list):
            value = [value]

        normalized: list[Any] = []
        for item in value:
            if isinstance(item, DiagramDocument):
                normalized.append(item)
            elif is_diagram_object(item):
                try:
                    normalized.append(DiagramDocument.model_validate(item))
                except ValidationError:
                    normalized.append(json.dumps(item, ensure_ascii=False))
            elif isinstance(item, (dict, list)):
                normalized.append(json.dumps(item, ensure_ascii=False))
            elif item is None:
                normalized.append("")
            else:
                normalized.append(str(item))
        return normalized

    @classmethod
    def from_raw(cls, raw: dict, scheme: MarkingScheme) -> "ExtractedQuestion":
        """Build a question from one model reply item plus the batch scheme."""
        statement = raw.get("question_statement")
        if statement is None:
            statement = ""
        elif not isinstance(statement, str):
            statement = json.dumps(statement, ensure_ascii=False)

        return cls(
            question_type=scheme.question_type,
            question_statement=statement,
            options=raw.get("options"),
            correct_marks=scheme.correct_marks,
            incorrect_marks=scheme.incorrect_marks,
            skipped_marks=scheme.skipped_marks,
            partial_marks=scheme.partial_marks,
            time_minutes=scheme.time_minutes,
        )

    def annotate(
        self,
        course_id: str,
        year: int,
        slot: Optional[str] = None,
        part: Optional[str] = None,
        source_file: str = "",
        page_number: int = 0,
    ) -> "QuestionRecord":
        """Attach persistence metadata."""
        return QuestionRecord(
            **dict(self),
            course_id=course_id,
            year=year,
            slot=slot or None,
            part=part or None,
            source_file=source_file,
            page_number=page_number,
        )


class QuestionRecord(ExtractedQuestion):
    """An extracted question ready to be persisted."""
    course_id: str
    year: int
    slot: Optional[str] = None
    part: Optional[str] = None
    categorized: bool = False
    source_file: str = ""
    page_number: int = 0


# ─── Run Result Models ────────────────────────────────────────────────────────


class PageResult(BaseModel):
    """Outcome of one page of an extraction run."""
    source_file: str
    page_number: int = Field(ge=1)
    question_count: int = 0
    error: Optional[str] = None

    @computed_field
    @property
    def succeeded(self) -> bool:
        return self.error is None


class ExtractionReport(BaseModel):
    """Post-run checks over the extracted questions."""
    total_questions: int = 0
    empty_statements: int = 0
    missing_options: int = 0
    unexpected_options: int = 0
    malformed_diagrams: int = 0
    diagram_count: int = 0
    option_diagram_count: int = 0

    @computed_field
    @property
    def clean_rate(self) -> float:
        if self.total_questions == 0:
            return 0.0
        flagged = (
            self.empty_statements
            + self.missing_options
            + self.unexpected_options
            + self.malformed_diagrams
        )
        clean = max(0, self.total_questions - flagged)
        return round(clean / self.total_questions * 100, 2)


class RunResult(BaseModel):
    """Complete output of an extraction run."""
    run_id: str
    started_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    total_pages: int = 0
    pages: list[PageResult] = Field(default_factory=list)
    questions: list[QuestionRecord] = Field(default_factory=list)
    saved_questions: int = 0
    aborted: bool = False
    report: ExtractionReport = Field(default_factory=ExtractionReport)

    @computed_field
    @property
    def processed_pages(self) -> int:
        return len(self.pages)

    @computed_field
    @property
    def failed_pages(self) -> int:
        return sum(1 for p in self.pages if p.error is not None)
