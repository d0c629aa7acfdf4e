"""
Citation resolution: turn inline [REF]{...}[/REF] markers into Citation records.

Identifiers are per-session reference numbers. Resolution is always scoped to the
answering session, so a number that belongs to another session resolves to nothing.
Malformed, unbalanced or unknown markers are dropped and logged; resolution never raises.
"""

import json
import logging
import re

from refchat.core.models import Citation
from refchat.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

# Non-greedy, multiline, and never spanning a second opening tag: an unclosed [REF]
# followed by a well-formed pair only yields the well-formed pair.
REF_MARKER_RE = re.compile(r"\[REF\]((?:(?!\[REF\]).)*?)\[/REF\]", re.DOTALL)
_BARE_NUMBER_RE = re.compile(r"^\[?\s*(\d+)\s*\]?$")


def _coerce_reference(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        m = _BARE_NUMBER_RE.match(value.strip())
        if m:
            n = int(m.group(1))
            return n if n > 0 else None
    return None


def parse_marker_body(body: str) -> int | None:
    """Reference number from one marker body, or None when malformed."""
    body = (body or "").strip()
    if not body:
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return _coerce_reference(body)
    if isinstance(data, dict):
        return _coerce_reference(data.get("id"))
    if isinstance(data, list) and len(data) == 1:
        return _coerce_reference(data[0])
    return _coerce_reference(data)


def parse_reference_markers(text: str) -> list[int]:
    """Reference numbers in order of first appearance, duplicates removed."""
    numbers: list[int] = []
    for m in REF_MARKER_RE.finditer(text or ""):
        n = parse_marker_body(m.group(1))
        if n is None:
            logger.info("[citations:parse] dropped malformed marker body=%r", m.group(1)[:120])
            continue
        if n not in numbers:
            numbers.append(n)
    return numbers


def resolve_citations(store: ConversationStore, session_id: str, text: str) -> list[Citation]:
    """Resolve the markers in `text` against the session's persisted passages."""
    numbers = parse_reference_markers(text)
    if not numbers:
        return []
    try:
        passages = store.passages_by_reference(session_id, numbers)
    except Exception as e:
        logger.warning("[citations:resolve] lookup failed session_id=%s: %s", session_id, e)
        return []
    citations = []
    for n in numbers:
        passage = passages.get(n)
        if passage is None:
            logger.info("[citations:resolve] session_id=%s reference %d not found; dropped", session_id, n)
            continue
        citations.append(Citation(reference_id=str(n), display_text=passage.document_name, document_id=passage.document_id))
    logger.info("[citations:resolve] OUT session_id=%s markers=%d citations=%d", session_id, len(numbers), len(citations))
    return citations
