"""
Extraction Pipeline
===================
Orchestrates an extraction run over one or more PDF files.

Usage:
    pipeline = ExtractionPipeline(ExtractorConfig.from_env(course_id="CS101"))
    result = pipeline.run([PDFSource("exam_2023.pdf", year=2023)])

Architecture:
    PDF → PageRasterizer → PNG → ExtractionClient (key rotation) →
    ExtractedQuestion → QuestionRecord → SQLite (auto-save) →
    ExtractionValidator → RunResult (JSON)

Pages are processed strictly one at a time, in file order then page
order. With auto_save each page's questions are persisted before the next
page is requested.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

from .client import (
    DEFAULT_API_BASE,
    DEFAULT_GENERATION_CONFIG,
    DEFAULT_MODEL,
    DEFAULT_TIMEOUT,
    ExtractionClient,
    GeminiTransport,
)
from .database import bulk_insert_questions, init_db
from .errors import ExtractionError
from .key_pool import APIKeyPool
from .models import MarkingScheme, PageResult, QuestionRecord, RunResult
from .rasterizer import DEFAULT_SCALE, PageRasterizer, RasterPage
from .validator import ExtractionValidator

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class ExtractorConfig:
    """Configuration for an extraction run."""

    # Model service
    api_keys: list[str] = field(default_factory=list)
    model: str = DEFAULT_MODEL
    api_base: str = DEFAULT_API_BASE
    timeout: float = DEFAULT_TIMEOUT
    generation_config: dict = field(
        default_factory=lambda: dict(DEFAULT_GENERATION_CONFIG)
    )

    # Rasterizing
    render_scale: float = DEFAULT_SCALE
    page_range: Optional[tuple[int, int]] = None

    # Question metadata
    course_id: str = ""
    slot: Optional[str] = None
    part: Optional[str] = None
    scheme: MarkingScheme = field(default_factory=MarkingScheme)

    # Output
    auto_save: bool = False
    db_path: Optional[str] = None
    output_dir: Optional[str] = None

    # Processing
    continue_on_error: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> "ExtractorConfig":
        """
        Build a config from environment variables, then apply overrides.

            GEMINI_API_KEYS     comma separated credentials
            GEMINI_MODEL        model name
            QEXTRACT_DB_PATH    SQLite database path
            QEXTRACT_LOG_LEVEL  logging level
        """
        values: dict = {}
        keys = os.environ.get("GEMINI_API_KEYS", "")
        if keys:
            values["api_keys"] = [k.strip() for k in keys.split(",") if k.strip()]
        if os.environ.get("GEMINI_MODEL"):
            values["model"] = os.environ["GEMINI_MODEL"]
        if os.environ.get("QEXTRACT_DB_PATH"):
            values["db_path"] = os.environ["QEXTRACT_DB_PATH"]
        if os.environ.get("QEXTRACT_LOG_LEVEL"):
            values["log_level"] = os.environ["QEXTRACT_LOG_LEVEL"]

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class PDFSource:
    """A PDF to extract and the exam year its questions belong to."""
    path: str
    year: int


@dataclass(frozen=True)
class ProgressEvent:
    total_pages: int
    processed_pages: int
    current_page: int
    current_file: str
    saved_questions: int


ProgressCallback = Callable[[ProgressEvent], None]


class ExtractionPipeline:
    """
    Runs extraction over PDF files.

    A fresh APIKeyPool is built for every run, so a key that failed in one
    run is tried again in the next.
    """

    def __init__(
        self,
        config: Optional[ExtractorConfig] = None,
        transport: Optional[GeminiTransport] = None,
        rasterizer: Optional[PageRasterizer] = None,
        validator: Optional[ExtractionValidator] = None,
    ):
        self.config = config or ExtractorConfig()
        self.transport = transport or GeminiTransport(
            model=self.config.model,
            api_base=self.config.api_base,
            timeout=self.config.timeout,
            generation_config=self.config.generation_config,
        )
        self.rasterizer = rasterizer or PageRasterizer(self.config.render_scale)
        self.validator = validator or ExtractionValidator()
        self._setup_logging()

    def _setup_logging(self):
        """Configure the package logger once."""
        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        package_logger = logging.getLogger("qextract")
        package_logger.setLevel(log_level)

        if not package_logger.handlers:
            console = logging.StreamHandler()
            console.setLevel(log_level)
            console.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
            package_logger.addHandler(console)

        if self.config.log_file:
            log_path = Path(self.config.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            already = any(
                isinstance(h, logging.FileHandler)
                and Path(h.baseFilename) == log_path.resolve()
                for h in package_logger.handlers
            )
            if not already:
                file_handler = logging.FileHandler(log_path, encoding="utf-8")
                file_handler.setLevel(log_level)
                file_handler.setFormatter(
                    logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
                )
                package_logger.addHandler(file_handler)

    # ─── Run ──────────────────────────────────────────────────────────────

    def run(
        self,
        files: list[PDFSource],
        progress_callback: Optional[ProgressCallback] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> RunResult:
        """
        Extract questions from every page of every file.

        Args:
            files: PDFs in processing order.
            progress_callback: Called with a ProgressEvent after each page.
            should_cancel: Checked before each page; True stops the run.

        Returns:
            RunResult with questions in page order.

        Raises:
            ValueError: No files, no API keys, or no course id.
            FileNotFoundError: A PDF does not exist.
            RuntimeError: A PDF cannot be opened.
        """
        if not files:
            raise ValueError("At least one PDF file is required")
        if not self.config.course_id:
            raise ValueError("A course id is required")

        client = ExtractionClient(APIKeyPool(self.config.api_keys), self.transport)

        if self.config.auto_save:
            init_db(self.config.db_path)

        start_time = time.time()
        result = RunResult(run_id=self._generate_run_id())
        result.total_pages = sum(self._page_total(f.path) for f in files)
        logger.info(
            f"Run {result.run_id}: {len(files)} file(s), "
            f"{result.total_pages} page(s), {client.pool.size} key(s)"
        )

        for source, page in self._iter_pages(files):
            if should_cancel is not None and should_cancel():
                logger.info("Run cancelled")
                result.aborted = True
                break

            source_name = os.path.basename(source.path)
            logger.info(
                f"Processing {source_name} page {page.page_number} "
                f"({len(result.pages) + 1}/{result.total_pages})"
            )

            try:
                questions = client.extract(page.png, self.config.scheme)
            except ExtractionError as e:
                logger.error(f"{source_name} page {page.page_number} failed: {e}")
                result.pages.append(
                    PageResult(
                        source_file=source_name,
                        page_number=page.page_number,
                        error=str(e),
                    )
                )
                self._emit(progress_callback, result, page, source_name)
                if not self.config.continue_on_error:
                    result.aborted = True
                    break
                continue

            records = [
                q.annotate(
                    course_id=self.config.course_id,
                    year=source.year,
                    slot=self.config.slot,
                    part=self.config.part,
                    source_file=source_name,
                    page_number=page.page_number,
                )
                for q in questions
            ]
            if self.config.auto_save and records:
                result.saved_questions += len(
                    bulk_insert_questions(records, db_path=self.config.db_path)
                )

            result.questions.extend(records)
            result.pages.append(
                PageResult(
                    source_file=source_name,
                    page_number=page.page_number,
                    question_count=len(records),
                )
            )
            self._emit(progress_callback, result, page, source_name)

        result.report = self.validator.validate(result.questions)

        elapsed = time.time() - start_time
        logger.info(
            f"Run complete in {elapsed:.2f}s: {len(result.questions)} questions "
            f"from {result.processed_pages} page(s), "
            f"{result.failed_pages} failed"
        )

        if self.config.output_dir:
            output_dir = Path(self.config.output_dir)
            output_dir.mkdir(parents=True, exist_ok=True)
            self._save_json(result, output_dir / f"{result.run_id}_questions.json")

        return result

    def save_questions(self, records: list[QuestionRecord]) -> int:
        """Persist a finished run's questions. Returns the number saved."""
        if not records:
            return 0
        init_db(self.config.db_path)
        saved = len(bulk_insert_questions(records, db_path=self.config.db_path))
        logger.info(f"Saved {saved} questions")
        return saved

    # ─── Helpers ──────────────────────────────────────────────────────────

    def _iter_pages(
        self, files: list[PDFSource]
    ) -> Iterator[tuple[PDFSource, RasterPage]]:
        for source in files:
            for page in self.rasterizer.iter_pages(
                source.path, self.config.page_range
            ):
                yield source, page

    def _page_total(self, pdf_path: str) -> int:
        count = self.rasterizer.page_count(pdf_path)
        if not self.config.page_range:
            return count
        start = max(1, self.config.page_range[0])
        end = min(count, self.config.page_range[1])
        return max(0, end - start + 1)

    def _emit(
        self,
        callback: Optional[ProgressCallback],
        result: RunResult,
        page: RasterPage,
        source_name: str,
    ):
        if callback is None:
            return
        callback(ProgressEvent(
            total_pages=result.total_pages,
            processed_pages=len(result.pages),
            current_page=page.page_number,
            current_file=source_name,
            saved_questions=result.saved_questions,
        ))

    def _generate_run_id(self) -> str:
        return f"{time.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"

    def _save_json(self, result: RunResult, filepath: Path):
        """Save RunResult to a JSON file."""
        try:
            data = result.model_dump(mode="json", by_alias=True)
            with open(filepath, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            logger.info(f"Saved JSON output: {filepath}")
        except OSError as e:
            logger.error(f"Failed to save JSON: {e}")
