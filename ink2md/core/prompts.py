from __future__ import annotations


DEFAULT_SYSTEM_PROMPT = (
    "Role: You are a transcription engine. Top priority: verbatim accuracy. "
    "Transcribe handwritten/printed notes into Markdown. "
    "Do not add, remove, or paraphrase content. Output only Markdown."
)

DEFAULT_EXTRACTION_PROMPT = """Task: Transcribe the provided page image into Markdown.
Primary objective: exact transcription of the visible text.
Rules (follow strictly):
1. Output only Markdown (no code fences, no explanations).
2. Preserve the original wording, spelling, capitalization, punctuation, and line breaks as written.
3. Use Markdown syntax only when it is explicitly written or drawn (leading # for headings, bullet characters, numbered list markers, checkboxes, ==highlight==).
4. Headings: Only when the author wrote leading # marks. Do not infer headings from underlines, layout, or size.
5. Lists: Only create list items when a bullet/number is explicitly present.
6. Checkboxes: Treat drawn checkboxes or [ ] / [x] as Markdown task items (- [ ] / - [x]).
7. Horizontal rules: A straight line spanning at least half of the page width becomes ---.
8. Illegible text: If any word/phrase is unreadable, insert exactly ==ILLEGIBLE== in its place.
9. No extras: Do not invent tags, links, callouts, or tables. Do not summarize."""

DEFAULT_CLEANUP_PROMPT = """You will be given Markdown transcribed from one page of a note.
Goal: Produce clean Markdown while preserving transcription accuracy.
Rules:
1. Only output Markdown.
2. Do not change wording, spelling, capitalization, or punctuation. Do not correct OCR mistakes.
3. Fix list continuity, indentation, and numbering only when list markers already exist.
4. Preserve ==ILLEGIBLE== markers as-is."""

DEFAULT_TITLE_PROMPT = """You generate concise, descriptive note titles.
Given the full note content, return a short title (3-6 words) that captures the main topic.
Output only the title text with no quotes, no punctuation at the end, and no extra commentary."""

LINE_TRANSCRIPTION_PROMPT_A = """You are given an image of one handwritten text line.
Transcribe exactly what is written in that line.
Rules:
1. Output only the text for this line (no commentary, no code fences).
2. Preserve wording, spelling, capitalization, punctuation, and symbols exactly.
3. Preserve explicit Markdown markers if present (#, -, *, [ ], [x], == ==).
4. Do not infer missing words.
5. If a token is unreadable, write ==ILLEGIBLE== exactly."""

LINE_TRANSCRIPTION_PROMPT_B = """Transcribe this handwritten line independently from scratch.
Rules:
1. Output only the line text.
2. Do not paraphrase or normalize.
3. Keep all visible symbols and Markdown markers exactly.
4. If uncertain, prefer ==ILLEGIBLE== over guessing."""

LINE_JUDGE_PROMPT = """You are given one handwritten line image and two candidate transcriptions.
Pick the candidate that best matches the image. If both are partially wrong, output a corrected line from the image.
Rules:
1. Output only one final line.
2. Preserve exact wording, spelling, punctuation, and symbols.
3. Do not add content not visible in the image.
4. Use ==ILLEGIBLE== for unreadable tokens."""

FINAL_FORMAT_PROMPT = """You will be given raw line-by-line transcription text from one page.
Reformat it into clean Markdown structure while preserving text content.
Rules:
1. Do not change, remove, or add any words.
2. You may only adjust spacing, line breaks, and Markdown markers.
3. Keep line order unchanged.
4. Output only Markdown."""


def build_line_prompt(base_prompt: str, fixed_prompt: str) -> str:
    trimmed = base_prompt.strip()
    if not trimmed:
        return fixed_prompt
    return f"{fixed_prompt}\n\nAdditional context from app configuration:\n{trimmed}"
