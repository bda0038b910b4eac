"""Sentence-aware transcript chunking with word-based windows and overlap."""

import re
from dataclasses import dataclass

from pydantic import BaseModel

from src.utils.logging import get_logger

from .config import PipelineConfig
from .schemas import (
    ChunkingStats,
    ChunkMetadata,
    ChunkValidation,
    TimestampedSegment,
    TranscriptChunk,
)

logger = get_logger(__name__)

# Dots inside these abbreviations must not end a sentence
ABBREVIATION_PATTERN = re.compile(
    r"\b(?:Dr|Mr|Mrs|Ms|Prof|Sr|Jr|vs|etc)\.|\be\.g\.|\bi\.e\.", re.IGNORECASE
)
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_PROTECTED_DOT = "\ue000"

# Chunks shorter than this (other than the last) are reported by validation
SHORT_CHUNK_WORDS = 200


class ChunkingOptions(BaseModel):
    """Window sizes for chunking, in words."""

    min_words: int = 500
    max_words: int = 1000
    overlap_words: int = 100
    preserve_sentences: bool = True

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "ChunkingOptions":
        return cls(
            min_words=config.min_words,
            max_words=config.max_words,
            overlap_words=config.overlap_words,
            preserve_sentences=config.preserve_sentences,
        )


@dataclass
class _Sentence:
    text: str
    start: float
    end: float
    word_count: int


def count_words(text: str) -> int:
    return len(text.split())


def get_last_n_words(text: str, n: int) -> str:
    if n <= 0:
        return ""
    return " ".join(text.split()[-n:])


def split_into_sentences(text: str) -> list[str]:
    """Split on ``.``, ``!`` or ``?`` followed by whitespace.

    Common abbreviations (Dr., Mr., e.g., etc.) are protected so they do not
    end a sentence.
    """
    protected = ABBREVIATION_PATTERN.sub(
        lambda m: m.group(0).replace(".", _PROTECTED_DOT), text.strip()
    )
    return [
        part.replace(_PROTECTED_DOT, ".").strip()
        for part in SENTENCE_BOUNDARY.split(protected)
        if part.strip()
    ]


def _to_sentences(
    segments: list[TimestampedSegment], preserve_sentences: bool
) -> list[_Sentence]:
    sentences: list[_Sentence] = []
    for segment in segments:
        if preserve_sentences:
            pieces = split_into_sentences(segment.text)
        else:
            pieces = [segment.text.strip()]
        total_words = sum(count_words(p) for p in pieces)
        if total_words == 0:
            continue

        # Each sentence gets a share of the segment's duration by word count
        seconds_per_word = segment.duration / total_words
        cursor = segment.start
        for piece in pieces:
            words = count_words(piece)
            end = cursor + words * seconds_per_word
            sentences.append(_Sentence(text=piece, start=cursor, end=end, word_count=words))
            cursor = end
    return sentences


def _group_sentences(
    sentences: list[_Sentence], min_words: int, max_words: int
) -> list[list[_Sentence]]:
    groups: list[list[_Sentence]] = []
    current: list[_Sentence] = []
    current_words = 0

    for sentence in sentences:
        if (
            current
            and current_words + sentence.word_count > max_words
            and current_words >= min_words
        ):
            groups.append(current)
            current, current_words = [], 0
        current.append(sentence)
        current_words += sentence.word_count

    if current:
        groups.append(current)
    return groups


def chunk_transcript(
    transcript: str | list[TimestampedSegment],
    options: ChunkingOptions | None = None,
) -> list[TranscriptChunk]:
    """Split a transcript into overlapping, sentence-aligned chunks.

    Sentences are accumulated greedily; a window closes when the next
    sentence would push it past ``max_words`` and it already holds at least
    ``min_words``. Every chunk after the first starts with the last
    ``overlap_words`` words of the previous chunk's own text, so overlaps
    never compound. The final window is always emitted, however short.

    Args:
        transcript: Plain text (no timing, all times are 0) or timestamped
            segments whose duration is spread across sentences by word share.
        options: Window sizes; defaults to 500/1000/100 words.

    Returns:
        Chunks in order with ``chunk_index`` starting at 0. Empty input
        yields an empty list.

    Examples:
        >>> chunks = chunk_transcript("First sentence. Second one.")
        >>> chunks[0].word_count
        4
    """
    options = options or ChunkingOptions()

    if isinstance(transcript, str):
        segments = [TimestampedSegment(text=transcript, start=0.0, duration=0.0)]
    else:
        segments = transcript

    sentences = _to_sentences(segments, options.preserve_sentences)
    groups = _group_sentences(sentences, options.min_words, options.max_words)

    chunks: list[TranscriptChunk] = []
    previous_text: str | None = None
    for index, group in enumerate(groups):
        own_text = " ".join(s.text for s in group)
        overlap = (
            get_last_n_words(previous_text, options.overlap_words) if previous_text else ""
        )
        chunk_text = f"{overlap} {own_text}" if overlap else own_text

        chunks.append(
            TranscriptChunk(
                chunk_index=index,
                chunk_text=chunk_text,
                start_time_seconds=group[0].start,
                end_time_seconds=group[-1].end,
                word_count=count_words(chunk_text),
                metadata=ChunkMetadata(
                    has_overlap=bool(overlap),
                    overlap_word_count=count_words(overlap),
                    original_segment_count=len(group),
                ),
            )
        )
        previous_text = own_text

    logger.info(
        "transcript_chunked",
        sentences=len(sentences),
        chunks=len(chunks),
        min_words=options.min_words,
        max_words=options.max_words,
        overlap_words=options.overlap_words,
    )
    return chunks


def strip_overlap(chunk: TranscriptChunk) -> str:
    """Chunk text without the words copied from the previous chunk."""
    words = chunk.chunk_text.split()
    return " ".join(words[chunk.metadata.overlap_word_count :])


def validate_chunks(chunks: list[TranscriptChunk]) -> ChunkValidation:
    """Sanity-check chunks. Short chunks and time regressions are only warnings."""
    if not chunks:
        return ChunkValidation(valid=False, warnings=["No chunks generated"])

    warnings: list[str] = []
    for i, chunk in enumerate(chunks):
        is_last = i == len(chunks) - 1
        if not is_last and chunk.word_count < SHORT_CHUNK_WORDS:
            warnings.append(
                f"Chunk {chunk.chunk_index} has only {chunk.word_count} words"
            )
        if i > 0:
            previous = chunks[i - 1]
            if chunk.start_time_seconds < previous.end_time_seconds - 1:
                warnings.append(
                    f"Chunk {chunk.chunk_index} starts at {chunk.start_time_seconds:.1f}s, "
                    f"before chunk {previous.chunk_index} ends at "
                    f"{previous.end_time_seconds:.1f}s"
                )

    return ChunkValidation(valid=True, warnings=warnings)


def get_chunking_stats(chunks: list[TranscriptChunk]) -> ChunkingStats:
    if not chunks:
        return ChunkingStats()

    counts = [c.word_count for c in chunks]
    return ChunkingStats(
        total_chunks=len(chunks),
        total_words=sum(counts),
        avg_words_per_chunk=round(sum(counts) / len(chunks), 1),
        min_words=min(counts),
        max_words=max(counts),
        chunks_with_overlap=sum(1 for c in chunks if c.metadata.has_overlap),
        total_duration_seconds=chunks[-1].end_time_seconds - chunks[0].start_time_seconds,
    )
