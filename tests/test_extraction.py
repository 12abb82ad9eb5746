"""
Test Suite for the Extraction Side
==================================
Key rotation, the extraction client, question models, validation,
persistence and the page pipeline.
"""

from __future__ import annotations

import base64
import json
from unittest.mock import MagicMock

import pytest
import requests

from qextract import database as db
from qextract.client import (
    ExtractionClient,
    GeminiTransport,
    encode_image,
    parse_question_array,
)
from qextract.errors import (
    ExtractionFailedError,
    KeysExhaustedError,
    TransientServiceError,
)
from qextract.key_pool import (
    APIKeyPool,
    KeyPoolState,
    mark_failed,
    mask_key,
    next_key,
)
from qextract.models import (
    DiagramDocument,
    ExtractedQuestion,
    MarkingScheme,
    QuestionType,
    RectangleElement,
)
from qextract.pipeline import (
    ExtractionPipeline,
    ExtractorConfig,
    PDFSource,
)
from qextract.rasterizer import RasterPage
from qextract.validator import ExtractionValidator


DIAGRAM = {
    "type": "excalidraw",
    "version": 2,
    "source": "qextract",
    "elements": [
        {"type": "rectangle", "x": 0, "y": 0, "width": 100, "height": 50},
    ],
}


# ─── Fakes ────────────────────────────────────────────────────────────────────


class FakeTransport:
    """
    Stands in for GeminiTransport. Replies with one question whose statement
    is the decoded page image; keys in `bad_keys` and pages in `bad_pages`
    fail with TransientServiceError.
    """

    def __init__(self, bad_keys=(), bad_pages=(), reply=None):
        self.bad_keys = set(bad_keys)
        self.bad_pages = set(bad_pages)
        self.reply = reply
        self.calls: list[tuple[str, str]] = []

    def generate(self, api_key, prompt, image_b64):
        page = base64.b64decode(image_b64).decode()
        self.calls.append((api_key, page))
        if api_key in self.bad_keys or page in self.bad_pages:
            raise TransientServiceError(f"503 for {page}", status_code=503)
        if self.reply is not None:
            return self.reply
        return (
            "Here are the questions:\n"
            + json.dumps([{"question_statement": page, "options": ["A", "B"]}])
        )


class FakeRasterizer:
    """Yields `pages[path]` pages whose PNG bytes are '<path>:<n>'."""

    def __init__(self, pages: dict[str, int]):
        self.pages = pages

    def page_count(self, pdf_path):
        return self.pages[pdf_path]

    def iter_pages(self, pdf_path, page_range=None):
        for n in range(1, self.pages[pdf_path] + 1):
            yield RasterPage(n, f"{pdf_path}:{n}".encode())


def make_pipeline(tmp_path=None, keys=("k1",), transport=None, pages=None, **overrides):
    config = ExtractorConfig(
        api_keys=list(keys),
        course_id="CS101",
        db_path=str(tmp_path / "db.sqlite") if tmp_path else None,
        log_level="WARNING",
        **overrides,
    )
    return ExtractionPipeline(
        config,
        transport=transport or FakeTransport(),
        rasterizer=FakeRasterizer(pages or {"a.pdf": 2, "b.pdf": 1}),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# KEY POOL TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestKeyPoolState:
    """Test the immutable rotation state."""

    def test_create_strips_and_dedupes(self):
        state = KeyPoolState.create([" a ", "b", "", "a", "c"])
        assert state.keys == ("a", "b", "c")
        assert state.cursor == 0
        assert state.failed == frozenset()

    def test_create_requires_a_key(self):
        with pytest.raises(ValueError):
            KeyPoolState.create(["", "  "])

    def test_round_robin(self):
        state = KeyPoolState.create(["a", "b", "c"])
        seen = []
        for _ in range(6):
            key, state = next_key(state)
            seen.append(key)
        assert seen == ["a", "b", "c", "a", "b", "c"]

    def test_next_key_does_not_mutate(self):
        state = KeyPoolState.create(["a", "b"])
        key, new_state = next_key(state)
        assert key == "a"
        assert state.cursor == 0
        assert new_state.cursor == 1

    def test_failed_key_skipped(self):
        state = KeyPoolState.create(["a", "b", "c"])
        state = mark_failed(state, "b")
        key1, state = next_key(state)
        key2, state = next_key(state)
        key3, state = next_key(state)
        assert [key1, key2, key3] == ["a", "c", "a"]

    def test_mark_failed_idempotent(self):
        state = mark_failed(KeyPoolState.create(["a", "b"]), "a")
        assert mark_failed(state, "a") is state
        assert mark_failed(state, "unknown") is state

    def test_exhausted_returns_none(self):
        state = KeyPoolState.create(["a", "b"])
        state = mark_failed(mark_failed(state, "a"), "b")
        assert state.exhausted
        key, same = next_key(state)
        assert key is None
        assert same is state


class TestAPIKeyPool:
    """Test the run-owned pool holder."""

    def test_fairness_over_active_keys(self):
        pool = APIKeyPool(["a", "b", "c"])
        pool.mark_failed("c")
        picks = [pool.next() for _ in range(4)]
        assert picks == ["a", "b", "a", "b"]
        assert pool.active_count == 2

    def test_exhaustion(self):
        pool = APIKeyPool(["a"])
        pool.mark_failed("a")
        assert pool.exhausted
        assert pool.next() is None

    def test_mask_key(self):
        assert mask_key("AIzaSecret1234") == "****1234"
        assert mask_key("abc") == "****"


# ═══════════════════════════════════════════════════════════════════════════════
# CLIENT TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestParseQuestionArray:
    """Test reply parsing."""

    def test_array_inside_prose(self):
        text = 'Sure!\n```json\n[{"question_statement": "Q1"}]\n```'
        assert parse_question_array(text) == [{"question_statement": "Q1"}]

    def test_no_array(self):
        with pytest.raises(TransientServiceError):
            parse_question_array("I could not read the page.")

    def test_malformed_array(self):
        with pytest.raises(TransientServiceError):
            parse_question_array('[{"question_statement": ')

    def test_non_object_items_skipped(self):
        items = parse_question_array('[1, {"question_statement": "Q"}, "x"]')
        assert items == [{"question_statement": "Q"}]


class TestEncodeImage:
    def test_bytes(self):
        assert encode_image(b"png") == base64.b64encode(b"png").decode()

    def test_data_url(self):
        assert encode_image("data:image/png;base64,AAAA") == "AAAA"

    def test_plain_base64(self):
        assert encode_image("AAAA") == "AAAA"


class TestGeminiTransport:
    """Test the HTTP wrapper with a mocked session."""

    def _transport(self, response=None, error=None):
        session = MagicMock()
        if error is not None:
            session.post.side_effect = error
        else:
            session.post.return_value = response
        return GeminiTransport(model="test-model", session=session), session

    def _response(self, status=200, body=None):
        response = MagicMock()
        response.ok = 200 <= status < 300
        response.status_code = status
        response.text = json.dumps(body) if body is not None else ""
        response.json.return_value = body
        return response

    def test_key_sent_in_header_not_url(self):
        body = {"candidates": [{"content": {"parts": [{"text": "[]"}]}}]}
        transport, session = self._transport(self._response(body=body))
        assert transport.generate("secret-key", "prompt", "AAAA") == "[]"

        args, kwargs = session.post.call_args
        assert "secret-key" not in args[0]
        assert args[0].endswith("/models/test-model:generateContent")
        assert kwargs["headers"]["x-goog-api-key"] == "secret-key"
        assert kwargs["timeout"] == transport.timeout

    def test_payload_shape(self):
        transport, _ = self._transport()
        payload = transport.build_payload("prompt", "AAAA")
        parts = payload["contents"][0]["parts"]
        assert parts[0] == {"text": "prompt"}
        assert parts[1]["inline_data"]["mime_type"] == "image/png"
        assert parts[1]["inline_data"]["data"] == "AAAA"
        assert payload["generationConfig"]["temperature"] == 0.1

    def test_http_error(self):
        transport, _ = self._transport(self._response(status=429, body={}))
        with pytest.raises(TransientServiceError) as exc:
            transport.generate("k", "p", "AAAA")
        assert exc.value.status_code == 429

    def test_network_error(self):
        transport, _ = self._transport(error=requests.ConnectionError("down"))
        with pytest.raises(TransientServiceError):
            transport.generate("k", "p", "AAAA")

    def test_bad_envelope(self):
        transport, _ = self._transport(self._response(body={"candidates": []}))
        with pytest.raises(TransientServiceError):
            transport.generate("k", "p", "AAAA")


class TestExtractionClient:
    """Test per-page extraction with key rotation."""

    def test_rotates_past_failing_key(self):
        pool = APIKeyPool(["bad", "good"])
        transport = FakeTransport(bad_keys={"bad"})
        client = ExtractionClient(pool, transport)

        questions = client.extract(b"page-1", MarkingScheme())

        assert [q.question_statement for q in questions] == ["page-1"]
        assert [c[0] for c in transport.calls] == ["bad", "good"]
        assert pool.state.failed == frozenset({"bad"})

    def test_all_keys_fail(self):
        pool = APIKeyPool(["a", "b"])
        transport = FakeTransport(bad_keys={"a", "b"})
        client = ExtractionClient(pool, transport)

        with pytest.raises(ExtractionFailedError) as exc:
            client.extract(b"page-1", MarkingScheme())

        assert isinstance(exc.value.cause, TransientServiceError)
        assert "Failed to extract questions from all API keys" in str(exc.value)
        assert len(transport.calls) == 2
        assert pool.exhausted

    def test_exhausted_pool_makes_no_request(self):
        pool = APIKeyPool(["a"])
        pool.mark_failed("a")
        transport = FakeTransport()
        client = ExtractionClient(pool, transport)

        with pytest.raises(KeysExhaustedError):
            client.extract(b"page-1", MarkingScheme())
        assert transport.calls == []

    def test_scheme_stamped_on_every_question(self):
        reply = json.dumps([
            {"question_statement": "Q1", "question_type": "NAT", "correct_marks": 99},
            {"question_statement": "Q2"},
        ])
        scheme = MarkingScheme(
            question_type=QuestionType.MSQ,
            correct_marks=2,
            incorrect_marks=-0.5,
            partial_marks=1,
            time_minutes=5,
        )
        client = ExtractionClient(APIKeyPool(["k"]), FakeTransport(reply=reply))

        questions = client.extract(b"page", scheme)

        for q in questions:
            assert q.question_type == QuestionType.MSQ
            assert q.correct_marks == 2
            assert q.incorrect_marks == -0.5
            assert q.partial_marks == 1
            assert q.time_minutes == 5

    def test_questions_keep_model_order(self):
        reply = json.dumps([{"question_statement": f"Q{i}"} for i in range(5)])
        client = ExtractionClient(APIKeyPool(["k"]), FakeTransport(reply=reply))
        questions = client.extract(b"page", MarkingScheme())
        assert [q.question_statement for q in questions] == [
            "Q0", "Q1", "Q2", "Q3", "Q4",
        ]


# ═══════════════════════════════════════════════════════════════════════════════
# MODEL TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestExtractedQuestion:
    """Test option normalization and metadata."""

    def test_options_normalized(self):
        q = ExtractedQuestion.from_raw(
            {
                "question_statement": "Pick one",
                "options": [1, None, {"a": 1}, DIAGRAM, "text"],
            },
            MarkingScheme(),
        )
        assert q.options[0] == "1"
        assert q.options[1] == ""
        assert json.loads(q.options[2]) == {"a": 1}
        assert isinstance(q.options[3], DiagramDocument)
        assert q.options[4] == "text"

    def test_empty_options_become_none(self):
        q = ExtractedQuestion.from_raw(
            {"question_statement": "Compute", "options": []}, MarkingScheme()
        )
        assert q.options is None

    def test_missing_statement(self):
        q = ExtractedQuestion.from_raw({}, MarkingScheme())
        assert q.question_statement == ""

    def test_invalid_diagram_option_kept_as_text(self):
        broken = {"type": "excalidraw", "elements": [{"type": "rectangle", "x": 0}]}
        q = ExtractedQuestion.from_raw(
            {"question_statement": "Q", "options": [broken]}, MarkingScheme()
        )
        assert isinstance(q.options[0], str)
        assert json.loads(q.options[0]) == broken

    def test_annotate(self):
        q = ExtractedQuestion.from_raw(
            {"question_statement": "Q", "options": [DIAGRAM]}, MarkingScheme()
        )
        record = q.annotate("CS101", 2023, slot="", part="B", source_file="x.pdf", page_number=3)
        assert record.course_id == "CS101"
        assert record.year == 2023
        assert record.slot is None
        assert record.part == "B"
        assert record.categorized is False
        assert isinstance(record.options[0], DiagramDocument)

    def test_expects_options(self):
        assert QuestionType.MCQ.expects_options
        assert QuestionType.MSQ.expects_options
        assert not QuestionType.NAT.expects_options
        assert not QuestionType.SUB.expects_options


class TestDiagramDocument:
    """Test diagram document parsing."""

    def test_aliases_and_defaults(self):
        doc = DiagramDocument.model_validate({
            "type": "excalidraw",
            "elements": [
                {"type": "rectangle", "x": 1, "y": 2, "width": 3, "height": 4,
                 "strokeColor": "#ff0000"},
            ],
        })
        rect = doc.elements[0]
        assert isinstance(rect, RectangleElement)
        assert rect.stroke_color == "#ff0000"
        assert rect.background_color == "transparent"
        assert rect.stroke_width == 2.0

    def test_unknown_elements_dropped(self):
        doc = DiagramDocument.model_validate({
            "type": "excalidraw",
            "elements": [
                {"type": "arrow", "x": 0, "y": 0},
                {"type": "text", "x": 0, "y": 0, "text": "A"},
            ],
        })
        assert [el.type for el in doc.elements] == ["text"]

    def test_null_and_zero_styles_use_defaults(self):
        doc = DiagramDocument.model_validate({
            "type": "excalidraw",
            "elements": [
                {"type": "rectangle", "x": 0, "y": 0, "width": 1, "height": 1,
                 "strokeColor": None, "backgroundColor": "", "strokeWidth": 0},
                {"type": "text", "x": 0, "y": 0, "text": None,
                 "fontSize": None, "strokeWidth": None},
                {"type": "line", "x": 0, "y": 0, "points": [[0, 0], [1, 1]],
                 "strokeColor": "", "backgroundColor": None, "strokeWidth": 3},
            ],
        })
        rect, text, line = doc.elements
        assert rect.stroke_color == "#000000"
        assert rect.background_color == "transparent"
        assert rect.stroke_width == 2.0
        assert text.text == ""
        assert text.font_size == 16.0
        assert text.stroke_width == 2.0
        assert line.stroke_color == "#000000"
        assert line.background_color == "transparent"
        assert line.stroke_width == 3

    def test_to_json_uses_wire_names(self):
        doc = DiagramDocument.model_validate(DIAGRAM)
        data = json.loads(doc.to_json())
        assert data["type"] == "excalidraw"
        assert data["elements"][0]["strokeColor"] == "#000000"


# ═══════════════════════════════════════════════════════════════════════════════
# VALIDATOR TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestExtractionValidator:
    """Test post-run reporting."""

    def _question(self, statement, options=None, qtype=QuestionType.MCQ):
        return ExtractedQuestion.from_raw(
            {"question_statement": statement, "options": options},
            MarkingScheme(question_type=qtype),
        )

    def test_empty_batch(self):
        report = ExtractionValidator().validate([])
        assert report.total_questions == 0
        assert report.clean_rate == 0.0

    def test_counts(self):
        diagram_text = "See " + json.dumps(DIAGRAM)
        questions = [
            self._question("Fine", ["a", "b"]),
            self._question("No options"),
            self._question("   ", ["a"]),
            self._question("Value?", ["1"], qtype=QuestionType.NAT),
            self._question('Broken {"type": "excalidraw", ', ["a"]),
            self._question(diagram_text, [DIAGRAM, "b"]),
        ]
        report = ExtractionValidator().validate(questions)

        assert report.total_questions == 6
        assert report.missing_options == 1
        assert report.empty_statements == 1
        assert report.unexpected_options == 1
        assert report.malformed_diagrams == 1
        assert report.diagram_count == 1
        assert report.option_diagram_count == 1
        assert report.clean_rate == pytest.approx(33.33)


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestDatabase:
    """Test SQLite persistence."""

    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "db.sqlite")
        db.init_db(path)
        db.init_db(path)  # idempotent

        record = ExtractedQuestion.from_raw(
            {"question_statement": "Area of $x^2$?", "options": ["4", DIAGRAM]},
            MarkingScheme(correct_marks=2),
        ).annotate("CS101", 2023, slot="S1", source_file="a.pdf", page_number=4)

        question_id = db.insert_question(record, db_path=path)
        assert question_id == 1

        loaded = db.list_questions(db_path=path)
        assert len(loaded) == 1
        q = loaded[0]
        assert q.question_statement == "Area of $x^2$?"
        assert q.options[0] == "4"
        assert isinstance(q.options[1], DiagramDocument)
        assert q.options[1] == record.options[1]
        assert q.correct_marks == 2
        assert q.slot == "S1"
        assert q.part is None
        assert q.page_number == 4

    def test_filter_and_count(self, tmp_path):
        path = str(tmp_path / "db.sqlite")
        db.init_db(path)
        for course in ("CS101", "CS101", "MA201"):
            record = ExtractedQuestion.from_raw(
                {"question_statement": course}, MarkingScheme()
            ).annotate(course, 2022)
            db.insert_question(record, db_path=path)

        assert db.count_questions(db_path=path) == 3
        assert db.count_questions("CS101", db_path=path) == 2
        assert [q.course_id for q in db.list_questions("MA201", db_path=path)] == ["MA201"]

    def test_env_path(self, monkeypatch, tmp_path):
        monkeypatch.setenv("QEXTRACT_DB_PATH", str(tmp_path / "env.sqlite"))
        assert db.get_db_path() == str(tmp_path / "env.sqlite")


# ═══════════════════════════════════════════════════════════════════════════════
# PIPELINE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestExtractorConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEYS", "k1, k2,,k3")
        monkeypatch.setenv("GEMINI_MODEL", "gemini-test")
        monkeypatch.setenv("QEXTRACT_LOG_LEVEL", "DEBUG")
        config = ExtractorConfig.from_env(course_id="CS101", slot=None)
        assert config.api_keys == ["k1", "k2", "k3"]
        assert config.model == "gemini-test"
        assert config.log_level == "DEBUG"
        assert config.course_id == "CS101"
        assert config.slot is None
        assert config.render_scale == 2.0

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEYS", "env-key")
        config = ExtractorConfig.from_env(api_keys=["cli-key"])
        assert config.api_keys == ["cli-key"]


class TestExtractionPipeline:
    """Test the page-sequential run."""

    def test_page_order(self):
        pipeline = make_pipeline()
        result = pipeline.run([PDFSource("a.pdf", 2022), PDFSource("b.pdf", 2023)])

        assert result.total_pages == 3
        assert [q.question_statement for q in result.questions] == [
            "a.pdf:1", "a.pdf:2", "b.pdf:1",
        ]
        assert [q.year for q in result.questions] == [2022, 2022, 2023]
        assert [(p.source_file, p.page_number) for p in result.pages] == [
            ("a.pdf", 1), ("a.pdf", 2), ("b.pdf", 1),
        ]
        assert not result.aborted
        assert result.report.total_questions == 3

    def test_requires_course_and_files(self):
        pipeline = make_pipeline()
        with pytest.raises(ValueError):
            pipeline.run([])
        pipeline.config.course_id = ""
        with pytest.raises(ValueError):
            pipeline.run([PDFSource("a.pdf", 2022)])

    def test_requires_keys(self):
        pipeline = make_pipeline(keys=())
        with pytest.raises(ValueError):
            pipeline.run([PDFSource("a.pdf", 2022)])

    def test_auto_save_before_next_page(self, tmp_path):
        pipeline = make_pipeline(tmp_path, auto_save=True)
        path = pipeline.config.db_path
        observed = []

        def on_progress(event):
            observed.append((event.saved_questions, db.count_questions(db_path=path)))

        result = pipeline.run(
            [PDFSource("a.pdf", 2022), PDFSource("b.pdf", 2023)],
            progress_callback=on_progress,
        )

        assert observed == [(1, 1), (2, 2), (3, 3)]
        assert result.saved_questions == 3

    def test_progress_events(self):
        pipeline = make_pipeline()
        events = []
        pipeline.run([PDFSource("a.pdf", 2022)], progress_callback=events.append)
        assert [(e.processed_pages, e.current_page, e.total_pages) for e in events] == [
            (1, 1, 2), (2, 2, 2),
        ]
        assert events[0].current_file == "a.pdf"

    def test_aborts_on_error_by_default(self):
        transport = FakeTransport(bad_pages={"a.pdf:2"})
        pipeline = make_pipeline(transport=transport)
        result = pipeline.run([PDFSource("a.pdf", 2022), PDFSource("b.pdf", 2023)])

        assert result.aborted
        assert [q.question_statement for q in result.questions] == ["a.pdf:1"]
        assert result.processed_pages == 2
        assert result.failed_pages == 1
        assert "Failed to extract" in result.pages[1].error

    def test_continue_on_error_with_dead_pool(self):
        transport = FakeTransport(bad_pages={"a.pdf:2"})
        pipeline = make_pipeline(transport=transport, continue_on_error=True)
        result = pipeline.run([PDFSource("a.pdf", 2022), PDFSource("b.pdf", 2023)])

        assert not result.aborted
        assert result.processed_pages == 3
        assert result.failed_pages == 2
        # The only key died on page 2; page 3 fails without a request
        assert [page for _, page in transport.calls] == ["a.pdf:1", "a.pdf:2"]
        assert "All API keys have failed" in result.pages[2].error

    def test_fresh_pool_per_run(self):
        transport = FakeTransport(bad_pages={"a.pdf:2"})
        pipeline = make_pipeline(transport=transport, continue_on_error=True)
        pipeline.run([PDFSource("a.pdf", 2022)])
        transport.bad_pages.clear()
        result = pipeline.run([PDFSource("a.pdf", 2022)])
        assert result.failed_pages == 0

    def test_cancel_between_pages(self):
        pipeline = make_pipeline()
        calls = iter([False, True])
        result = pipeline.run(
            [PDFSource("a.pdf", 2022)], should_cancel=lambda: next(calls)
        )
        assert result.aborted
        assert result.processed_pages == 1

    def test_json_output(self, tmp_path):
        pipeline = make_pipeline(output_dir=str(tmp_path / "out"))
        result = pipeline.run([PDFSource("b.pdf", 2023)])
        path = tmp_path / "out" / f"{result.run_id}_questions.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["questions"][0]["course_id"] == "CS101"
        assert data["processed_pages"] == 1

    def test_save_questions(self, tmp_path):
        pipeline = make_pipeline(tmp_path)
        result = pipeline.run([PDFSource("a.pdf", 2022)])
        assert result.saved_questions == 0
        assert pipeline.save_questions(result.questions) == 2
        assert db.count_questions(db_path=pipeline.config.db_path) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
