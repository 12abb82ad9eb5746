"""
Test Suite for the HTTP Service and CLI
=======================================
Flask routes via the test client; CLI commands via click's CliRunner.
"""

from __future__ import annotations

import io
import json

import fitz
import pytest
from click.testing import CliRunner

from qextract import database as db
from qextract import server
from qextract.cli import cli, load_questions
from qextract.errors import MalformedContentError, TransientServiceError
from qextract.models import ExtractedQuestion, MarkingScheme
from qextract.renderer import ContentRenderer


class FakeTypesetter:
    def typeset(self, expression, display=False):
        if "\\bad" in expression:
            raise MalformedContentError(expression)
        return "<svg></svg>"


class FakeTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    def generate(self, api_key, prompt, image_b64):
        self.calls += 1
        if self.fail:
            raise TransientServiceError("503", status_code=503)
        return json.dumps([{"question_statement": "What is $x$?", "options": ["1", "2"]}])


def blank_pdf(pages: int = 1) -> bytes:
    doc = fitz.open()
    for _ in range(pages):
        doc.new_page()
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEYS", raising=False)
    monkeypatch.setattr(server, "_renderer", ContentRenderer(FakeTypesetter()))
    app = server.create_app({
        "TESTING": True,
        "DB_PATH": str(tmp_path / "db.sqlite"),
        "UPLOAD_DIR": str(tmp_path / "uploads"),
        "TRANSPORT": FakeTransport(),
    })
    with app.test_client() as c:
        yield c


def store_question(course: str = "CS101"):
    record = ExtractedQuestion.from_raw(
        {"question_statement": "Stored <question>", "options": ["a", "b"]},
        MarkingScheme(),
    ).annotate(course, 2023)
    db.insert_question(record, db_path=server.app.config["DB_PATH"])


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestHealthAndInfo:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.get_json()["status"] == "healthy"

    def test_info(self, client):
        data = client.get("/api/info").get_json()
        assert data["question_types"] == ["MCQ", "MSQ", "NAT", "SUB"]
        assert "diagram_rendering" in data["capabilities"]


class TestRenderEndpoint:
    """Test POST /api/render."""

    def test_render(self, client):
        response = client.post("/api/render", json={"content": "Find $x$ <now>"})
        assert response.status_code == 200
        data = response.get_json()
        assert [n["kind"] for n in data["nodes"]] == ["text", "math", "text"]
        assert "&lt;now&gt;" in data["html"]

    def test_render_fallback(self, client):
        content = '{"type": "excalidraw", oops'
        data = client.post("/api/render", json={"content": content}).get_json()
        assert data["nodes"] == [{"text": content, "kind": "text"}]

    def test_render_requires_content(self, client):
        assert client.post("/api/render", json={}).status_code == 400
        assert client.post("/api/render", json={"content": 3}).status_code == 400


class TestQuestionEndpoints:
    """Test stored-question listing and preview."""

    def test_list_questions(self, client):
        store_question("CS101")
        store_question("MA201")

        data = client.get("/api/questions").get_json()
        assert data["total"] == 2

        data = client.get("/api/questions?course_id=MA201").get_json()
        assert data["total"] == 1
        assert data["questions"][0]["course_id"] == "MA201"

    def test_preview(self, client):
        store_question()
        response = client.get("/preview?course_id=CS101")
        assert response.status_code == 200
        page = response.get_data(as_text=True)
        assert "Questions: CS101 (1)" in page
        assert "Stored &lt;question&gt;" in page


class TestExtractEndpoint:
    """Test POST /api/extract."""

    def _form(self, **fields):
        form = {
            "file": (io.BytesIO(blank_pdf(2)), "exam.pdf"),
            "course_id": "CS101",
            "year": "2023",
            "api_keys": "k1,k2",
        }
        form.update(fields)
        return form

    def test_extract(self, client):
        response = client.post(
            "/api/extract",
            data=self._form(auto_save="true", question_type="MSQ"),
            content_type="multipart/form-data",
        )
        assert response.status_code == 200
        data = response.get_json()
        assert data["processed_pages"] == 2
        assert data["saved_questions"] == 2
        question = data["questions"][0]
        assert question["course_id"] == "CS101"
        assert question["year"] == 2023
        assert question["question_type"] == "MSQ"
        assert question["source_file"].endswith("exam.pdf")
        assert db.count_questions(db_path=server.app.config["DB_PATH"]) == 2

    def test_failed_run_reports_pages(self, client):
        server.app.config["TRANSPORT"] = FakeTransport(fail=True)
        response = client.post(
            "/api/extract", data=self._form(), content_type="multipart/form-data"
        )
        data = response.get_json()
        assert data["aborted"] is True
        assert data["failed_pages"] == 1

    def test_missing_file(self, client):
        response = client.post(
            "/api/extract", data={"course_id": "CS101"},
            content_type="multipart/form-data",
        )
        assert response.status_code == 400

    def test_missing_course(self, client):
        response = client.post(
            "/api/extract", data=self._form(course_id=""),
            content_type="multipart/form-data",
        )
        assert response.status_code == 400

    def test_bad_marks(self, client):
        response = client.post(
            "/api/extract", data=self._form(correct_marks="four"),
            content_type="multipart/form-data",
        )
        assert response.status_code == 400

    def test_no_keys(self, client):
        response = client.post(
            "/api/extract", data=self._form(api_keys=""),
            content_type="multipart/form-data",
        )
        assert response.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════════
# CLI TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestLoadQuestions:
    def test_run_result(self):
        data = {"questions": [{
            "question_type": "NAT",
            "question_statement": "Q",
            "options": None,
            "correct_marks": 2,
            "incorrect_marks": 0,
            "skipped_marks": 0,
            "partial_marks": 0,
            "time_minutes": 1,
            "course_id": "CS101",
        }]}
        [q] = load_questions(data)
        assert q.question_type.value == "NAT"
        assert q.correct_marks == 2

    def test_raw_items_get_default_scheme(self):
        [q] = load_questions([{"question_statement": "Q", "options": ["a"]}])
        assert q.correct_marks == 4
        assert q.options == ["a"]

    def test_rejects_other_shapes(self):
        with pytest.raises(ValueError):
            load_questions({"nothing": []})
        with pytest.raises(ValueError):
            load_questions(["not an object"])


class TestCli:
    def test_render_command(self, tmp_path):
        source = tmp_path / "questions.json"
        source.write_text(json.dumps([{"question_statement": "Plain text"}]))
        output = tmp_path / "preview.html"

        result = CliRunner().invoke(cli, ["render", str(source), "-o", str(output)])

        assert result.exit_code == 0
        assert "Plain text" in output.read_text(encoding="utf-8")

    def test_info_command(self, tmp_path):
        pdf = tmp_path / "exam.pdf"
        pdf.write_bytes(blank_pdf(3))
        result = CliRunner().invoke(cli, ["info", str(pdf)])
        assert result.exit_code == 0
        assert "3" in result.output

    def test_extract_year_mismatch(self, tmp_path):
        pdf = tmp_path / "exam.pdf"
        pdf.write_bytes(blank_pdf())
        result = CliRunner().invoke(cli, [
            "extract", str(pdf), str(pdf),
            "--key", "k1", "--course", "CS101",
            "--year", "2021", "--year", "2022", "--year", "2023",
        ])
        assert result.exit_code == 1


class TestMainEntryPoint:
    """Test the service entry point's configuration surface."""

    def test_flags_become_config(self):
        from main import app_config, parse_args

        args = parse_args([
            "--db", "x.sqlite", "--upload-dir", "up", "--output-dir", "runs",
        ])
        assert app_config(args) == {
            "DB_PATH": "x.sqlite",
            "UPLOAD_DIR": "up",
            "OUTPUT_DIR": "runs",
        }

    def test_db_falls_back_to_environment(self, monkeypatch):
        from main import app_config, parse_args

        monkeypatch.setenv("QEXTRACT_DB_PATH", "/data/q.sqlite")
        args = parse_args([])
        assert app_config(args) == {"DB_PATH": "/data/q.sqlite"}
        assert (args.host, args.port, args.log_level) == ("0.0.0.0", 5000, "INFO")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
