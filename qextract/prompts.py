"""
Extraction Prompt
=================
Fixed instruction sent with every page image. This is the output contract
with the vision model: a JSON array of {question_statement, options}
objects, KaTeX-style math, and excalidraw JSON for figures that math
notation cannot express.
"""

EXTRACTION_PROMPT = r"""You are an expert question extractor for exam papers. Extract ALL questions from this image with EXTREME attention to detail.

FORMATTING RULES

1. TEXT AND MATH
   - Write every mathematical expression in KaTeX syntax.
   - Wrap plain words that sit inside math in \text{}.
   - Use $...$ for inline math and $$...$$ for display math.
   - Examples: \text{A } 4 \times 4 \text{ digital image}, U \leq 4

2. TABLES
   - Always write tables as a KaTeX array:
   \begin{array}{|c|c|c|c|}
   \hline
   0 & 1 & 0 & 2 \\
   \hline
   4 & 7 & 3 & 3 \\
   \hline
   \end{array}

3. DIAGRAMS (circuits, graphs, geometric figures, free body diagrams)
   - When a figure cannot be written in KaTeX, embed an Excalidraw JSON object
     directly in question_statement, after the sentence describing it.
   - Supported element types: rectangle, ellipse, polygon, line, text.
   - rectangle/ellipse use x, y, width, height; polygon/line use x, y and
     points relative to (x, y); text uses x, y, text and fontSize.
   - Format:
   {
     "type": "excalidraw",
     "version": 2,
     "source": "qextract",
     "elements": [
       {"id": "rect-1", "type": "rectangle", "x": 100, "y": 150, "width": 200, "height": 120,
        "strokeColor": "#000000", "backgroundColor": "transparent", "strokeWidth": 2},
       {"id": "tri-1", "type": "polygon", "x": 180, "y": 50, "points": [[0,0], [150,220], [-150,220]],
        "strokeColor": "#000000", "backgroundColor": "transparent", "strokeWidth": 2},
       {"id": "ellipse-1", "type": "ellipse", "x": 130, "y": 190, "width": 220, "height": 120,
        "strokeColor": "#000000", "backgroundColor": "transparent", "strokeWidth": 2},
       {"id": "text-1", "type": "text", "x": 200, "y": 200, "text": "Label", "fontSize": 24,
        "strokeColor": "#000000"}
     ]
   }
   - Embed at most ONE diagram object per question_statement.

4. OPTIONS
   - Extract every option (A, B, C, D, ...) in order, without the letter label.
   - A text or math option is a string.
   - An option that is a figure is an Excalidraw JSON object.
   - The options array may mix strings and objects.
   - Use null for questions without options (numerical or subjective answers).

EXAMPLES

Example 1 (table in the question):
{
  "question_statement": "\\text{A } 4 \\times 4 \\text{ digital image has pixel intensities } (U) \\text{ as shown in the figure. The number of pixels with } U \\leq 4 \\text{ is:}\n\n\\begin{array}{|c|c|c|c|}\n\\hline\n0 & 1 & 0 & 2 \\\\\n\\hline\n4 & 7 & 3 & 3 \\\\\n\\hline\n5 & 5 & 4 & 4 \\\\\n\\hline\n6 & 7 & 3 & 2 \\\\\n\\hline\n\\end{array}",
  "options": ["3", "8", "11", "9"]
}

Example 2 (diagram in the question):
{
  "question_statement": "\\text{In the given figure, the numbers associated with the rectangle, triangle, and ellipse are } 1, 2, \\text{ and } 3, \\text{ respectively. Which combination of } P, Q, \\text{ and } R \\text{ is most appropriate?}\n\n{\"type\":\"excalidraw\",\"version\":2,\"source\":\"qextract\",\"elements\":[{\"id\":\"rect-1\",\"type\":\"rectangle\",\"x\":100,\"y\":150,\"width\":200,\"height\":120},{\"id\":\"tri-1\",\"type\":\"polygon\",\"x\":180,\"y\":50,\"points\":[[0,0],[150,220],[-150,220]]},{\"id\":\"ellipse-1\",\"type\":\"ellipse\",\"x\":130,\"y\":190,\"width\":220,\"height\":120},{\"id\":\"text-P\",\"type\":\"text\",\"x\":190,\"y\":240,\"text\":\"P\",\"fontSize\":24},{\"id\":\"text-Q\",\"type\":\"text\",\"x\":260,\"y\":250,\"text\":\"Q\",\"fontSize\":24},{\"id\":\"text-R\",\"type\":\"text\",\"x\":210,\"y\":170,\"text\":\"R\",\"fontSize\":24}]}",
  "options": ["P = 6; Q = 5; R = 3", "P = 5; Q = 6; R = 3", "P = 3; Q = 6; R = 6", "P = 5; Q = 3; R = 6"]
}

RETURN FORMAT
Return ONLY a valid JSON array:
[
  {
    "question_statement": "formatted text with KaTeX and/or Excalidraw JSON",
    "options": ["option1", "option2", "option3", "option4"] or null
  }
]

Extract EVERY question in the image. Be precise with formatting. Return ONLY the JSON array."""
