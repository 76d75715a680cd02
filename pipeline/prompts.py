"""
Prompt Templates - Instructions stored inside every prompt payload

Three modes:
- chunk: one pack of speeches, output optimized for a later reduce
- reduce: merges every chunk result into the meeting-level article
- single_chunk: whole meeting in one prompt, chunk and reduce output together

The chunk template is also what the run budget is computed against, so any
change here changes how many speeches fit in a chunk. Bump PROMPT_VERSION on
every edit; workers echo it back in their output.
"""

from typing import Dict

PROMPT_VERSION = "2026-10-01.1"

MODE_CHUNK = "chunk"
MODE_REDUCE = "reduce"
MODE_SINGLE_CHUNK = "single_chunk"

COMMON_INSTRUCTIONS = f"""You summarize transcripts of the National Diet of Japan for general readers.
Write every field in Japanese. Readers are not familiar with parliamentary procedure,
so make clear what was decided, what was argued and what happens next.

Rules:
- Every summary point carries based_on_orders: the speechOrder values it is drawn from.
- Skip greetings and procedural boilerplate. Never infer facts that were not said.
- summary and soft_language_summary use Markdown headings and bullet lists.
- Put figures, deadlines and owners in a GFM table when present; omit the table otherwise.
- Inside JSON strings use \\n for line breaks. No code fences, no HTML.
- Tag each entry in dialogs with one reaction: 賛成, 反対, 質問, 回答 or 中立.
- Include "prompt_version": "{PROMPT_VERSION}" in the output."""

CHUNK_INSTRUCTIONS = """Mode: chunk
You receive one contiguous slice of the meeting's speeches.
- middle_summary (required): one topic per entry, written so a reduce step can merge them.
  State who said what from which position.
- soft_language_summary (required): plain-language story of this slice.
- summary (required): detailed summary of this slice.
- dialogs, participants, terms, keywords: only what appears in this slice.
- Do not output title, category, description or date."""

REDUCE_INSTRUCTIONS = """Mode: reduce
You receive the outputs of every chunk of one meeting.
- Merge middle_summary entries: remove duplicates, resolve conflicts, keep coverage.
- Normalize participants across chunks, one entry per person.
- Output title, category, description, date, summary, soft_language_summary,
  participants and key_points (about three TL;DR bullets).
- Do not output dialogs, terms or keywords."""

SINGLE_CHUNK_INSTRUCTIONS = """Mode: single_chunk
The whole meeting fits in this prompt. Produce one JSON object that contains
the chunk-level fields (middle_summary, dialogs, terms, keywords) and the
meeting-level fields (title, category, description, date, summary,
soft_language_summary, participants, key_points). The two levels must agree."""

CHUNK_OUTPUT_FORMAT = f"""Output format (chunk):
{{
  "prompt_version": "{PROMPT_VERSION}",
  "id": "issueID",
  "middle_summary": [{{"based_on_orders": [1], "summary": "..."}}],
  "soft_language_summary": {{"based_on_orders": [1], "summary": "..."}},
  "summary": {{"based_on_orders": [1], "summary": "..."}},
  "dialogs": [{{"order": 1, "summary": "...", "soft_language": "...", "reaction": "質問"}}],
  "participants": [{{"name": "...", "position": "...", "summary": "..."}}],
  "terms": [{{"term": "...", "definition": "..."}}],
  "keywords": [{{"keyword": "...", "priority": "high"}}]
}}"""

REDUCE_OUTPUT_FORMAT = f"""Output format (reduce):
{{
  "prompt_version": "{PROMPT_VERSION}",
  "id": "issueID",
  "title": "...",
  "category": "...",
  "description": "...",
  "date": "YYYY-MM-DD",
  "key_points": ["...", "...", "..."],
  "summary": {{"based_on_orders": [1], "summary": "..."}},
  "soft_language_summary": {{"based_on_orders": [1], "summary": "..."}},
  "participants": [{{"name": "...", "position": "...", "summary": "...", "based_on_orders": [1]}}]
}}"""

SINGLE_CHUNK_OUTPUT_FORMAT = f"""Output format (single_chunk):
{{
  "prompt_version": "{PROMPT_VERSION}",
  "id": "issueID",
  "title": "...",
  "category": "...",
  "description": "...",
  "date": "YYYY-MM-DD",
  "key_points": ["...", "...", "..."],
  "summary": {{"based_on_orders": [1], "summary": "..."}},
  "soft_language_summary": {{"based_on_orders": [1], "summary": "..."}},
  "middle_summary": [{{"based_on_orders": [1], "summary": "..."}}],
  "dialogs": [{{"order": 1, "summary": "...", "soft_language": "...", "reaction": "回答"}}],
  "participants": [{{"name": "...", "position": "...", "summary": "...", "based_on_orders": [1]}}],
  "terms": [{{"term": "...", "definition": "..."}}],
  "keywords": [{{"keyword": "...", "priority": "medium"}}]
}}"""


def _compose(*sections: str) -> str:
    return "\n\n".join(section.strip() for section in sections)


CHUNK_PROMPT = _compose(COMMON_INSTRUCTIONS, CHUNK_INSTRUCTIONS, CHUNK_OUTPUT_FORMAT)
REDUCE_PROMPT = _compose(COMMON_INSTRUCTIONS, REDUCE_INSTRUCTIONS, REDUCE_OUTPUT_FORMAT)
SINGLE_CHUNK_PROMPT = _compose(COMMON_INSTRUCTIONS, SINGLE_CHUNK_INSTRUCTIONS, SINGLE_CHUNK_OUTPUT_FORMAT)

_TEMPLATES: Dict[str, str] = {
    MODE_CHUNK: CHUNK_PROMPT,
    MODE_REDUCE: REDUCE_PROMPT,
    MODE_SINGLE_CHUNK: SINGLE_CHUNK_PROMPT,
}


def get_prompt_template(mode: str) -> str:
    """Template for a mode

    Raises:
        KeyError: Unknown mode
    """
    if mode not in _TEMPLATES:
        raise KeyError(f"Unknown prompt mode: {mode}")
    return _TEMPLATES[mode]
