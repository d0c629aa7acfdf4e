"""
Snippet extraction: reduce a few search hits to one short, verbatim quoted span.

The LLM proposes a span; the span is then located in its source chunk and every
later step only narrows that slice. The returned text is therefore always
chunk[start:end] and no character is ever added, replaced or normalized.

Interruptions inside the slice (page-boundary markers, table/figure lines, runs of
numeric citation markers) split it; only the longest side is kept.
"""

import logging
import re
from dataclasses import dataclass
from difflib import SequenceMatcher

from refchat.agent.llm import LLMClient, parse_json_object
from refchat.agent.prompts import SNIPPET_SYSTEM_PROMPT
from refchat.core.config import MAX_SNIPPET_CHARS
from refchat.core.models import SearchHit

logger = logging.getLogger(__name__)

PAGE_MARKER_RE = re.compile(r"\[(?:START|END)_PAGE\]")
# [1]  [2, 3]  [4-6]  [7–9]  and runs of them: [1][2] or [1], [2]
NUMERIC_REF_RUN_RE = re.compile(
    r"\[\d{1,4}(?:\s*[,;\-–]\s*\d{1,4})*\](?:[\s,]*\[\d{1,4}(?:\s*[,;\-–]\s*\d{1,4})*\])*"
)
FIGURE_CAPTION_RE = re.compile(r"^\s*(?:table|fig\.?|figure)\s*\d+\s*[.:]", re.IGNORECASE)
NUMERIC_TOKEN_RE = re.compile(r"^[\d.,%±()\[\]+\-–/:=<>|]+$")
SENTENCE_END_RE = re.compile(r"[.!?](?=\s|$)")
WORD_RE = re.compile(r"[A-Za-z0-9]{3,}")

_STOPWORDS = frozenset(
    "the and for are was were what which who whom this that these those with from into about how why "
    "when where does did has have had its their there than then they them you your our can could "
    "would should will shall may might not but all any each some such".split()
)

MIN_FUZZY_RATIO = 0.6


@dataclass(frozen=True)
class Snippet:
    text: str = ""
    document_id: str = ""
    document_name: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.text


EMPTY_SNIPPET = Snippet()


# --- Locating a proposed span in its source ---

def locate_span(source: str, candidate: str) -> tuple[int, int] | None:
    """
    Find where `candidate` sits in `source`.

    Tries an exact match, then a whitespace-tolerant match, then the matching blocks
    of difflib.SequenceMatcher. Returns source offsets or None.
    """
    candidate = (candidate or "").strip()
    if not source or not candidate:
        return None
    idx = source.find(candidate)
    if idx != -1:
        return idx, idx + len(candidate)

    tokens = candidate.split()
    if tokens:
        pattern = r"\s+".join(re.escape(t) for t in tokens)
        m = re.search(pattern, source)
        if m:
            return m.start(), m.end()

    matcher = SequenceMatcher(None, source, candidate, autojunk=False)
    blocks = [b for b in matcher.get_matching_blocks() if b.size >= 3]
    if not blocks:
        return None
    matched = sum(b.size for b in blocks)
    start = min(b.a for b in blocks)
    end = max(b.a + b.size for b in blocks)
    if matched / len(candidate) < MIN_FUZZY_RATIO or (end - start) > 2 * len(candidate):
        return None
    return start, end


# --- Interruptions ---

def _line_spans(source: str, start: int, end: int) -> list[tuple[int, int]]:
    """(line_start, line_end_including_newline) for every line overlapping [start, end)."""
    spans = []
    pos = source.rfind("\n", 0, start) + 1
    while pos < end:
        nl = source.find("\n", pos)
        line_end = len(source) if nl == -1 else nl + 1
        spans.append((pos, line_end))
        pos = line_end
    return spans


def is_table_or_figure_line(line: str) -> bool:
    stripped = line.strip()
    if not stripped:
        return False
    if FIGURE_CAPTION_RE.match(stripped):
        return True
    if stripped.count("|") >= 2:
        return True
    tokens = stripped.split()
    if len(tokens) < 2:
        return False
    numeric = sum(1 for t in tokens if NUMERIC_TOKEN_RE.match(t))
    return numeric / len(tokens) >= 0.5


def find_interruptions(source: str, start: int, end: int) -> list[tuple[int, int]]:
    """Merged [s, e) intervals inside [start, end) that must not appear in a snippet."""
    found: list[tuple[int, int]] = []
    window = source[start:end]
    for regex in (PAGE_MARKER_RE, NUMERIC_REF_RUN_RE):
        for m in regex.finditer(window):
            found.append((start + m.start(), start + m.end()))
    # Only treat whole lines as table fragments when the span covers more than one line;
    # a single-line span is judged by its own content below.
    lines = _line_spans(source, start, end)
    if len(lines) > 1:
        for ls, le in lines:
            if is_table_or_figure_line(source[ls:le]):
                found.append((max(ls, start), min(le, end)))
    found.sort()
    merged: list[tuple[int, int]] = []
    for s, e in found:
        if merged and s <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], e))
        else:
            merged.append((s, e))
    return merged


def _strip_bounds(source: str, start: int, end: int) -> tuple[int, int]:
    while start < end and source[start].isspace():
        start += 1
    while end > start and source[end - 1].isspace():
        end -= 1
    return start, end


def _cap_length(source: str, start: int, end: int, limit: int) -> tuple[int, int]:
    """Narrow an over-long span to its last sentence end within `limit` characters."""
    if end - start <= limit:
        return start, end
    best = None
    for m in SENTENCE_END_RE.finditer(source, start, end):
        if m.end() - start > limit:
            break
        best = m.end()
    if best is None:
        return start, end
    return start, best


def clean_span(source: str, start: int, end: int, limit: int = MAX_SNIPPET_CHARS) -> tuple[int, int]:
    """
    Apply the snippet rules to source[start:end] and return narrowed offsets.

    Returns (start, start) when nothing usable remains.
    """
    start, end = _strip_bounds(source, max(0, start), min(len(source), end))
    if start >= end:
        return start, start
    cuts = find_interruptions(source, start, end)
    segments: list[tuple[int, int]] = []
    pos = start
    for s, e in cuts:
        if s > pos:
            segments.append((pos, s))
        pos = max(pos, e)
    if pos < end:
        segments.append((pos, end))

    best = (start, start)
    for s, e in segments:
        s, e = _strip_bounds(source, s, e)
        if e - s > best[1] - best[0]:
            best = (s, e)
    s, e = best
    if s >= e:
        return s, s
    # A lone table/figure line is not evidence either.
    if "\n" not in source[s:e] and is_table_or_figure_line(source[s:e]):
        return s, s
    s, e = _cap_length(source, s, e, limit)
    return _strip_bounds(source, s, e)


# --- Fallback selection ---

def _keywords(text: str) -> set[str]:
    return {w.lower() for w in WORD_RE.findall(text or "") if w.lower() not in _STOPWORDS}


def best_sentence_span(source: str, query: str) -> tuple[int, int, int]:
    """(start, end, score) of the sentence in `source` sharing most keywords with `query`."""
    words = _keywords(query)
    best = (0, 0, 0)
    if not words:
        return best
    pos = 0
    for m in SENTENCE_END_RE.finditer(source):
        s, e = pos, m.end()
        pos = e
        score = len(words & _keywords(source[s:e]))
        if score > best[2]:
            best = (s, e, score)
    if pos < len(source):
        score = len(words & _keywords(source[pos:]))
        if score > best[2]:
            best = (pos, len(source), score)
    return best


def _fallback_snippet(hits: list[SearchHit], sub_query: str) -> Snippet:
    best: tuple[int, int, int, int] | None = None  # hit index, start, end, score
    for i, hit in enumerate(hits):
        s, e, score = best_sentence_span(hit.chunk_text, sub_query)
        if score > 0 and (best is None or score > best[3]):
            best = (i, s, e, score)
    if best is None:
        return EMPTY_SNIPPET
    hit = hits[best[0]]
    s, e = clean_span(hit.chunk_text, best[1], best[2])
    if s >= e:
        return EMPTY_SNIPPET
    return Snippet(hit.chunk_text[s:e], hit.document_id, hit.document_name)


# --- Public entry point ---

def _format_chunks(hits: list[SearchHit]) -> str:
    parts = []
    for i, h in enumerate(hits, start=1):
        parts.append(f"Chunk {i} (file: {h.document_name}):\n{h.chunk_text}")
    return "\n\n".join(parts)


async def extract_snippet(llm: LLMClient, hits: list[SearchHit], sub_query: str) -> Snippet:
    """
    Return the shortest verbatim span answering `sub_query`, or an empty Snippet.

    LLM failures degrade to a keyword-overlap sentence choice; an explicit "nothing
    relevant" reply from the LLM is respected.
    """
    hits = [h for h in hits if (h.chunk_text or "").strip()]
    if not hits or not (sub_query or "").strip():
        return EMPTY_SNIPPET
    logger.info("[snippet:extract_snippet] IN  sub_query=%r hits=%d", sub_query, len(hits))

    if not llm.enabled:
        return _fallback_snippet(hits, sub_query)

    prompt = f"Question: {sub_query}\n\n{_format_chunks(hits)}"
    try:
        raw = await llm.complete(SNIPPET_SYSTEM_PROMPT, [{"role": "user", "content": prompt}], max_tokens=400, fast=True)
    except Exception as e:
        logger.warning("[snippet:extract_snippet] LLM failed (%s); using keyword fallback", e)
        return _fallback_snippet(hits, sub_query)

    data = parse_json_object(raw)
    if data is None:
        logger.info("[snippet:extract_snippet] unparsable reply %r; using keyword fallback", (raw or "")[:200])
        return _fallback_snippet(hits, sub_query)

    proposed = data.get("text") if isinstance(data.get("text"), str) else ""
    if not proposed.strip():
        logger.info("[snippet:extract_snippet] OUT nothing relevant")
        return EMPTY_SNIPPET

    # Try the chunk the LLM named first, then every other chunk.
    try:
        named = int(data.get("chunk")) - 1
    except (TypeError, ValueError):
        named = -1
    order = ([named] if 0 <= named < len(hits) else []) + [i for i in range(len(hits)) if i != named]
    for i in order:
        source = hits[i].chunk_text
        located = locate_span(source, proposed)
        if located is None:
            continue
        s, e = clean_span(source, *located)
        if s >= e:
            continue
        snippet = Snippet(source[s:e], hits[i].document_id, hits[i].document_name)
        logger.info("[snippet:extract_snippet] OUT document_id=%s len=%d", snippet.document_id, len(snippet.text))
        return snippet

    logger.info("[snippet:extract_snippet] proposed span not found in any chunk; using keyword fallback")
    return _fallback_snippet(hits, sub_query)
