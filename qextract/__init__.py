"""
Exam Question Extractor
=======================
Vision-model extraction of exam questions from scanned PDF pages, and
rendering of the extracted mixed markup (prose, math, diagrams).

Architecture:
    - Rasterizer: Renders PDF pages to PNG images
    - Key Pool: Rotating, failure-tracking set of API credentials
    - Extraction Client: Submits one page per request, retries across keys
    - Tokenizer: Splits question markup into text/math/diagram segments
    - Geometry Engine: Lays out diagram documents as SVG primitives
    - Renderer: Typesets math and diagrams back into HTML

Version: 1.0.0
"""

__version__ = "1.0.0"
