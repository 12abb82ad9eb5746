"""
Extraction Validator
====================
Post-run checks over extracted questions:
    - Empty question statements
    - MCQ/MSQ questions without options
    - NAT/SUB questions that still carry options
    - Diagram JSON that cannot be interpreted
    - Diagram usage in statements and options

Nothing is dropped; the report only counts what a reviewer should look at.
"""

from __future__ import annotations

import logging

from .errors import MalformedContentError
from .models import DiagramDocument, ExtractedQuestion, ExtractionReport
from .tokenizer import DiagramSegment, tokenize

logger = logging.getLogger(__name__)


class ExtractionValidator:
    """Builds an ExtractionReport for a batch of questions."""

    def validate(self, questions: list[ExtractedQuestion]) -> ExtractionReport:
        report = ExtractionReport()

        if not questions:
            logger.warning("No questions to validate")
            return report

        report.total_questions = len(questions)

        for q in questions:
            if not q.question_statement.strip():
                report.empty_statements += 1

            if q.question_type.expects_options and not q.options:
                report.missing_options += 1
            elif not q.question_type.expects_options and q.options:
                report.unexpected_options += 1

            statement_ok, has_diagram = self._check_content(q.question_statement)
            if not statement_ok:
                report.malformed_diagrams += 1
            if has_diagram:
                report.diagram_count += 1

            for option in q.options or []:
                if isinstance(option, DiagramDocument):
                    report.option_diagram_count += 1
                    continue
                option_ok, option_diagram = self._check_content(option)
                if not option_ok:
                    report.malformed_diagrams += 1
                if option_diagram:
                    report.option_diagram_count += 1

        self._log_summary(report)
        return report

    def _check_content(self, content: str) -> tuple[bool, bool]:
        """(parses cleanly, contains a diagram)"""
        try:
            segments = tokenize(content)
        except MalformedContentError:
            return False, False
        return True, any(isinstance(s, DiagramSegment) for s in segments)

    def _log_summary(self, report: ExtractionReport):
        logger.info("=" * 60)
        logger.info("EXTRACTION REPORT")
        logger.info("=" * 60)
        logger.info(f"Total Questions: {report.total_questions}")
        logger.info(f"Clean: {report.clean_rate}%")
        logger.info(f"Empty Statements: {report.empty_statements}")
        logger.info(f"Missing Options: {report.missing_options}")
        logger.info(f"Unexpected Options: {report.unexpected_options}")
        logger.info(f"Malformed Diagrams: {report.malformed_diagrams}")
        logger.info(
            f"Diagrams: {report.diagram_count} in statements, "
            f"{report.option_diagram_count} in options"
        )
        logger.info("=" * 60)
