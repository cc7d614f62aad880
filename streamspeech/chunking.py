from __future__ import annotations

import re
from typing import List, Optional

from loguru import logger

from streamspeech.errors import SegmentationError
from streamspeech.types import TextChunk

_TERMINATORS = ".!?"
_QUOTES = "\"'”’»"
_WORDS_PER_SECOND = 150 / 60
_MAX_INITIALS = 8

# Abbreviations that may also end a sentence: a following capitalised word
# starts a new sentence ("... and so on, etc. Then we left.").
_ABBREVIATIONS = frozenset(
    {
        "sr", "jr", "etc", "inc", "ltd", "co", "corp", "ave", "blvd", "rd",
        "dept", "govt", "univ", "est", "approx", "no", "nos", "vol", "vols",
        "fig", "figs", "eg", "ie", "cf", "al", "et", "ch", "pp", "ed", "eds",
        "jan", "feb", "mar", "apr", "jun", "jul", "aug", "sep", "sept", "oct",
        "nov", "dec", "mon", "tue", "tues", "wed", "thu", "thur", "thurs",
        "fri", "sat", "sun", "ft", "yd", "mi", "lb", "lbs", "oz", "kg", "km",
        "cm", "mm", "hr", "hrs", "min", "mins", "sec", "secs", "sq", "st",
    }
)
# Honorifics and prefixes always introduce a name ("Dr. Smith"), never end a sentence.
_PREFIX_ABBREVIATIONS = frozenset(
    {
        "mr", "mrs", "ms", "mx", "messrs", "dr", "prof", "rev", "mt",
        "hon", "gen", "capt", "col", "lt", "sgt", "gov", "sen", "rep", "vs",
    }
)
_DOTTED_ABBREVIATION_RE = re.compile(r"(?:[A-Za-z]\.)+[A-Za-z]")
_INITIALS_RUN_RE = re.compile(r"(?:\s+[A-Z]\.){1,%d}" % _MAX_INITIALS)
_PRECEDING_INITIAL_RE = re.compile(r"(?:^|\s)[A-Z]\.\s+$")
_SURNAME_RE = re.compile(r"\s+[A-Z][a-z]")


def normalize_text(text: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return " ".join(text.split())


def _word_before(text: str, pos: int) -> str:
    start = pos
    while start > 0 and text[start - 1].isalpha():
        start -= 1
    return text[start:pos]


def _token_before(text: str, pos: int) -> str:
    # letters and inner periods, e.g. "p.m" for "p.m."
    start = pos
    while start > 0 and (text[start - 1].isalpha() or text[start - 1] == "."):
        start -= 1
    return text[start:pos].lstrip(".")


def _in_ellipsis(text: str, pos: int) -> bool:
    start = pos
    while start > 0 and text[start - 1] == ".":
        start -= 1
    end = pos + 1
    while end < len(text) and text[end] == ".":
        end += 1
    return end - start >= 3


def _followed_by_capital(text: str, pos: int) -> bool:
    """True when whitespace then an uppercase letter follows `pos`."""
    idx = pos
    if idx >= len(text) or not text[idx].isspace():
        return False
    while idx < len(text) and text[idx].isspace():
        idx += 1
    return idx < len(text) and text[idx].isupper()


def _is_abbreviation(text: str, pos: int, word: str) -> bool:
    if word.lower() in _ABBREVIATIONS:
        return True
    token = _token_before(text, pos)
    return "." in token and _DOTTED_ABBREVIATION_RE.fullmatch(token) is not None


def _continues_initials(text: str, pos: int) -> bool:
    run = _INITIALS_RUN_RE.match(text, pos + 1)
    if run is None:
        return False
    # A run of initials must lead into a name; at end of text they are sentences.
    return text[run.end():].strip() != ""


def _ends_initials(text: str, pos: int) -> bool:
    # "J. R. R. Tolkien": the last of two or more initials before a surname
    return (
        _PRECEDING_INITIAL_RE.search(text, 0, pos - 1) is not None
        and _SURNAME_RE.match(text, pos + 1) is not None
    )


def _is_sentence_boundary(text: str, pos: int) -> bool:
    char = text[pos]
    if char not in _TERMINATORS:
        return False

    if char == "." and _in_ellipsis(text, pos):
        return False

    following = text[pos + 1] if pos + 1 < len(text) else ""
    if following.islower():
        return False
    if char == "." and following.isdigit():
        return False

    if char == ".":
        word = _word_before(text, pos)
        if word.lower() in _PREFIX_ABBREVIATIONS and following.isspace():
            return False
        if _is_abbreviation(text, pos, word) and not _followed_by_capital(text, pos + 1):
            return False
        if len(word) == 1 and word.isupper() and (
            _continues_initials(text, pos) or _ends_initials(text, pos)
        ):
            return False

    end = pos + 1
    while end < len(text) and text[end] in _QUOTES:
        end += 1
    if end > pos + 1:
        after_quote = text[end : end + 2]
        if len(after_quote) == 2 and after_quote[0].isspace() and after_quote[1].islower():
            return False

    rest = text[end:]
    if not rest.strip():
        return True
    # Whitespace + capital or quote is the usual case; any whitespace is the fallback.
    return rest[0].isspace()


def detect_sentence_boundaries(text: str) -> List[int]:
    """Return the indices of `.`, `!` and `?` characters that end a sentence.

    The classifier only looks at a small window around each candidate, so the
    result is deterministic for a given input.
    """
    return [
        pos
        for pos, char in enumerate(text)
        if char in _TERMINATORS and _is_sentence_boundary(text, pos)
    ]


def split_into_sentences(text: str) -> List[str]:
    """Split text into trimmed sentences, keeping terminators and closing quotes.

    Empty or whitespace-only input yields an empty list, not `[""]`.
    """
    normalized = normalize_text(text)
    if not normalized:
        return []

    boundaries = detect_sentence_boundaries(normalized)
    if not boundaries:
        return [normalized]

    sentences: List[str] = []
    start = 0
    for boundary in boundaries:
        end = boundary + 1
        while end < len(normalized) and normalized[end] in _QUOTES:
            end += 1
        sentence = normalized[start:end].strip()
        if sentence:
            sentences.append(sentence)
        start = end

    tail = normalized[start:].strip()
    if tail:
        sentences.append(tail)
    return sentences


def _join(sentences: List[str]) -> Optional[str]:
    return " ".join(sentences) if sentences else None


def create_text_chunks(
    text: str, chunk_size: int = 1, lookahead: int = 1
) -> List[TextChunk]:
    """Group sentences into synthesis chunks with prosody context on each side.

    Args:
        text: Full text to synthesize.
        chunk_size: Sentences per chunk.
        lookahead: Context sentences recorded before and after each chunk.

    Returns:
        Chunks in source order. Empty input yields an empty list.

    Raises:
        SegmentationError: If `chunk_size` < 1 or `lookahead` < 0.
    """
    if chunk_size < 1:
        raise SegmentationError(f"chunk_size must be >= 1, got {chunk_size}")
    if lookahead < 0:
        raise SegmentationError(f"lookahead must be >= 0, got {lookahead}")

    sentences = split_into_sentences(text)
    chunks: List[TextChunk] = []
    for start in range(0, len(sentences), chunk_size):
        stop = start + chunk_size
        chunks.append(
            TextChunk(
                text=" ".join(sentences[start:stop]),
                index=len(chunks),
                is_first=start == 0,
                is_last=stop >= len(sentences),
                previous_context=_join(sentences[max(0, start - lookahead) : start]),
                lookahead_context=_join(sentences[stop : stop + lookahead]),
            )
        )

    logger.debug(
        "chunking.plan sentences={sentences} chunks={chunks} chunk_size={size} lookahead={lookahead}",
        sentences=len(sentences),
        chunks=len(chunks),
        size=chunk_size,
        lookahead=lookahead,
    )
    return chunks


def _word_count(text: str) -> int:
    return len(text.split())


def estimate_duration(text: str) -> float:
    """Rough spoken duration in seconds at ~150 words per minute."""
    return _word_count(text) / _WORDS_PER_SECOND


def calculate_optimal_chunk_size(
    text: str,
    target_latency_ms: float = 300,
    processing_rate: float = 50,
) -> int:
    """Pick the number of leading sentences that fit a time-to-first-audio budget.

    `processing_rate` is the assumed synthesis throughput in words per second.
    Always returns at least 1.
    """
    sentences = split_into_sentences(text)
    if len(sentences) <= 1:
        return 1

    target_words = (target_latency_ms / 1000) * processing_rate
    chunk_size = 1
    word_count = 0
    for idx, sentence in enumerate(sentences):
        words = _word_count(sentence)
        if word_count + words > target_words and idx > 0:
            break
        word_count += words
        chunk_size = idx + 1
    return max(1, chunk_size)
