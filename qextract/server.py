"""
HTTP Service
============
Flask-based HTTP API for extraction and rendering.

Endpoints:
    GET    /api/health        → Health check
    GET    /api/info          → Version and capability info
    POST   /api/extract       → Extract questions from uploaded PDFs
    POST   /api/render        → Render one markup string to HTML
    GET    /api/questions     → Stored questions (optional ?course_id=)
    GET    /preview           → Stored questions as an HTML page

Extraction runs synchronously inside the request with its own key pool.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.utils import secure_filename

from . import __version__
from . import database as db
from .client import DEFAULT_MODEL
from .errors import ExtractionError
from .models import MarkingScheme, QuestionType
from .pipeline import ExtractionPipeline, ExtractorConfig, PDFSource
from .renderer import ContentRenderer, nodes_to_dicts, to_html

logger = logging.getLogger(__name__)

_pkg_dir = Path(__file__).parent
app = Flask(__name__)
CORS(app)

_renderer: Optional[ContentRenderer] = None


def create_app(config: dict = None) -> Flask:
    """Create and configure the Flask app."""
    if config:
        app.config.update(config)

    project_root = _pkg_dir.parent.absolute()

    app.config.setdefault("UPLOAD_DIR", str(project_root / "uploads"))
    app.config.setdefault("OUTPUT_DIR", None)
    app.config.setdefault("DB_PATH", db.get_db_path())
    app.config.setdefault("TRANSPORT", None)
    app.config.setdefault("MAX_CONTENT_LENGTH", 200 * 1024 * 1024)  # 200MB

    Path(app.config["UPLOAD_DIR"]).mkdir(parents=True, exist_ok=True)
    db.init_db(app.config["DB_PATH"])

    return app


def get_renderer() -> ContentRenderer:
    global _renderer
    if _renderer is None:
        _renderer = ContentRenderer()
    return _renderer


# ─── Health Check ─────────────────────────────────────────────────────────────


@app.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "qextract",
        "version": __version__,
    })


@app.route("/api/info", methods=["GET"])
def info():
    """Version and capability info."""
    return jsonify({
        "version": __version__,
        "model": os.environ.get("GEMINI_MODEL", DEFAULT_MODEL),
        "rasterizer": "PyMuPDF",
        "math_engine": "matplotlib.mathtext",
        "capabilities": [
            "question_extraction",
            "key_rotation",
            "math_rendering",
            "diagram_rendering",
        ],
        "question_types": [t.value for t in QuestionType],
        "supported_formats": ["pdf"],
    })


# ─── Extraction ───────────────────────────────────────────────────────────────


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _config_from_form(form) -> ExtractorConfig:
    """Map multipart form fields onto an ExtractorConfig. Raises ValueError."""
    keys = [k.strip() for k in form.get("api_keys", "").split(",") if k.strip()]
    scheme = MarkingScheme(
        question_type=form.get("question_type", "MCQ"),
        correct_marks=float(form.get("correct_marks", 4)),
        incorrect_marks=float(form.get("incorrect_marks", -1)),
        skipped_marks=float(form.get("skipped_marks", 0)),
        partial_marks=float(form.get("partial_marks", 0)),
        time_minutes=int(form.get("time_minutes", 3)),
    )
    return ExtractorConfig.from_env(
        api_keys=keys or None,
        course_id=form.get("course_id", "").strip(),
        slot=form.get("slot") or None,
        part=form.get("part") or None,
        scheme=scheme,
        auto_save=_flag(form.get("auto_save")),
        continue_on_error=_flag(form.get("continue_on_error")),
        db_path=app.config.get("DB_PATH"),
        output_dir=app.config.get("OUTPUT_DIR"),
    )


@app.route("/api/extract", methods=["POST"])
def extract():
    """
    Extract questions synchronously.

    Multipart fields:
        file           one or more PDFs
        year           one value, or one per file (comma separated)
        course_id      required
        api_keys       comma separated; defaults to GEMINI_API_KEYS
        question_type, correct_marks, incorrect_marks, skipped_marks,
        partial_marks, time_minutes, slot, part, auto_save,
        continue_on_error
    """
    uploads = [f for f in request.files.getlist("file") if f.filename]
    if not uploads:
        return jsonify({"error": "No file uploaded"}), 400

    saved_paths: list[str] = []
    try:
        config = _config_from_form(request.form)

        years = [
            int(y) for y in request.form.get("year", "").split(",") if y.strip()
        ]
        if len(years) == 1:
            years = years * len(uploads)
        if len(years) != len(uploads):
            raise ValueError(
                f"Expected 1 or {len(uploads)} year values, got {len(years)}"
            )

        upload_dir = Path(app.config["UPLOAD_DIR"])
        files = []
        for upload, year in zip(uploads, years):
            name = secure_filename(upload.filename) or "upload.pdf"
            path = str(upload_dir / f"{uuid.uuid4().hex}_{name}")
            upload.save(path)
            saved_paths.append(path)
            files.append(PDFSource(path, year))

        pipeline = ExtractionPipeline(config, transport=app.config.get("TRANSPORT"))
        result = pipeline.run(files)
        return jsonify(result.model_dump(mode="json", by_alias=True)), 200

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except (FileNotFoundError, RuntimeError) as e:
        return jsonify({"error": str(e)}), 422
    except ExtractionError as e:
        return jsonify({"error": str(e)}), 502
    except Exception as e:
        logger.exception("Extraction request failed")
        return jsonify({"error": str(e)}), 500
    finally:
        for path in saved_paths:
            if os.path.exists(path):
                os.unlink(path)


# ─── Rendering ────────────────────────────────────────────────────────────────


@app.route("/api/render", methods=["POST"])
def render_content():
    """Render {"content": "..."} to HTML plus structured nodes."""
    data = request.get_json(silent=True) or {}
    content = data.get("content")
    if not isinstance(content, str):
        return jsonify({"error": "JSON body with string 'content' required"}), 400

    nodes = get_renderer().render_content(content)
    return jsonify({
        "html": to_html(nodes),
        "nodes": nodes_to_dicts(nodes),
    })


@app.route("/api/questions", methods=["GET"])
def list_questions():
    """Stored questions, oldest first."""
    course_id = request.args.get("course_id") or None
    records = db.list_questions(course_id, db_path=app.config.get("DB_PATH"))
    return jsonify({
        "total": len(records),
        "questions": [r.model_dump(mode="json", by_alias=True) for r in records],
    })


@app.route("/preview", methods=["GET"])
def preview():
    """Stored questions rendered as an HTML page."""
    course_id = request.args.get("course_id") or None
    records = db.list_questions(course_id, db_path=app.config.get("DB_PATH"))
    title = f"Questions: {course_id}" if course_id else "Extracted Questions"
    return get_renderer().render_preview(records, title=title)


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
):
    """Start the HTTP service."""
    create_app()
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    run_server(debug=True)
