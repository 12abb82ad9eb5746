"""
Extraction Client
=================
Per-page orchestration against the Gemini vision API.

One page image plus the fixed extraction prompt is submitted per request.
A failing key (transport error, non-2xx status, malformed envelope, reply
without a parseable JSON array) is marked failed in the run's key pool and
the request is retried with the next key. Success on any key ends the loop.

Usage:
    client = ExtractionClient(APIKeyPool(keys))
    questions = client.extract(png_bytes, MarkingScheme(correct_marks=4))
"""

from __future__ import annotations

import base64
import json
import logging
import re
from typing import Optional, Union

import requests

from .errors import (
    ExtractionFailedError,
    KeysExhaustedError,
    TransientServiceError,
)
from .key_pool import APIKeyPool, mask_key
from .models import ExtractedQuestion, MarkingScheme
from .prompts import EXTRACTION_PROMPT

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash-exp"
DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT = 120.0

DEFAULT_GENERATION_CONFIG = {
    "temperature": 0.1,
    "topK": 32,
    "topP": 0.9,
    "maxOutputTokens": 16384,
}

# Greedy: first "[" to last "]" in the reply text
JSON_ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")


# ─── Transport ────────────────────────────────────────────────────────────────


class GeminiTransport:
    """
    Thin HTTP wrapper around the generateContent endpoint.
    Every failure surfaces as TransientServiceError.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
        generation_config: Optional[dict] = None,
        session: Optional[requests.Session] = None,
    ):
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.generation_config = dict(
            generation_config or DEFAULT_GENERATION_CONFIG
        )
        self.session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    def build_payload(self, prompt: str, image_b64: str) -> dict:
        return {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": "image/png",
                                "data": image_b64,
                            },
                        },
                    ],
                },
            ],
            "generationConfig": self.generation_config,
        }

    def generate(self, api_key: str, prompt: str, image_b64: str) -> str:
        """Submit one request and return the reply text."""
        try:
            response = self.session.post(
                self.endpoint,
                headers={
                    "Content-Type": "application/json",
                    "x-goog-api-key": api_key,
                },
                json=self.build_payload(prompt, image_b64),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransientServiceError(f"API request failed: {e}") from e

        if not response.ok:
            raise TransientServiceError(
                f"API request failed: {response.status_code} - "
                f"{response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransientServiceError(
                "Invalid response format from Gemini API: body is not JSON"
            ) from e

        try:
            parts = data["candidates"][0]["content"]["parts"]
            texts = [p["text"] for p in parts if "text" in p]
        except (KeyError, IndexError, TypeError) as e:
            raise TransientServiceError(
                "Invalid response format from Gemini API"
            ) from e

        if not texts:
            raise TransientServiceError(
                "Invalid response format from Gemini API: no text parts"
            )
        return "".join(texts)


# ─── Reply Parsing ────────────────────────────────────────────────────────────


def parse_question_array(text: str) -> list[dict]:
    """
    Locate and decode the JSON array of questions in a model reply.

    Raises:
        TransientServiceError: No array substring, or it does not decode.
    """
    match = JSON_ARRAY_PATTERN.search(text or "")
    if not match:
        raise TransientServiceError("No valid JSON found in response")

    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError:
        items = _scan_for_array(text)
        if items is None:
            raise TransientServiceError("Malformed JSON array in response")

    if not isinstance(items, list):
        raise TransientServiceError("Response JSON is not an array")

    questions = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning(f"Skipping non-object item #{idx} in model reply")
            continue
        questions.append(item)
    return questions


def _scan_for_array(text: str) -> Optional[list]:
    """Fallback: first "[" from which a complete JSON array decodes."""
    decoder = json.JSONDecoder()
    for match in re.finditer(r"\[", text):
        try:
            value, _ = decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(value, list):
            return value
    return None


def encode_image(page_image: Union[bytes, str]) -> str:
    """Base64 payload from PNG bytes, a data URL, or an already-encoded string."""
    if isinstance(page_image, bytes):
        return base64.b64encode(page_image).decode("ascii")
    if page_image.startswith("data:"):
        return page_image.split(",", 1)[1]
    return page_image


# ─── Client ───────────────────────────────────────────────────────────────────


class ExtractionClient:
    """
    Extracts questions from one page image at a time, rotating through the
    key pool on failure.
    """

    def __init__(
        self,
        pool: APIKeyPool,
        transport: Optional[GeminiTransport] = None,
        prompt: str = EXTRACTION_PROMPT,
    ):
        self.pool = pool
        self.transport = transport or GeminiTransport()
        self.prompt = prompt

    def extract(
        self,
        page_image: Union[bytes, str],
        scheme: MarkingScheme,
    ) -> list[ExtractedQuestion]:
        """
        Extract every question on a page.

        Args:
            page_image: PNG bytes or a base64/data-URL string.
            scheme: Marking scheme stamped onto every question.

        Returns:
            Questions in the order the model listed them.

        Raises:
            KeysExhaustedError: No active key remains.
            ExtractionFailedError: Every attempt failed; carries the last cause.
        """
        image_b64 = encode_image(page_image)
        last_error: Optional[Exception] = None
        attempts = 0

        while attempts < self.pool.size:
            api_key = self.pool.next()
            if api_key is None:
                raise KeysExhaustedError()

            try:
                text = self.transport.generate(api_key, self.prompt, image_b64)
                raw_items = parse_question_array(text)
            except TransientServiceError as e:
                last_error = e
                logger.warning(
                    f"Attempt {attempts + 1}/{self.pool.size} with key "
                    f"{mask_key(api_key)} failed: {e}"
                )
                self.pool.mark_failed(api_key)
                attempts += 1
                continue

            questions = [
                ExtractedQuestion.from_raw(item, scheme) for item in raw_items
            ]
            logger.info(
                f"Extracted {len(questions)} questions with key "
                f"{mask_key(api_key)}"
            )
            return questions

        raise ExtractionFailedError(last_error)
