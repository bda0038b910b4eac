"""Unit tests for transcript chunking."""

import pytest

from src.video_pipeline.chunking_service import (
    ChunkingOptions,
    chunk_transcript,
    count_words,
    get_chunking_stats,
    get_last_n_words,
    split_into_sentences,
    strip_overlap,
    validate_chunks,
)
from src.video_pipeline.schemas import TimestampedSegment


@pytest.mark.unit
class TestSentenceSplitting:
    """Test sentence helpers."""

    def test_split_on_terminal_punctuation(self) -> None:
        """Test sentences end at . ! and ? followed by whitespace."""
        assert split_into_sentences("Ready? Set. Go! Now") == ["Ready?", "Set.", "Go!", "Now"]

    def test_abbreviations_do_not_split(self) -> None:
        """Test common abbreviations stay inside their sentence."""
        text = "Dr. Smith met Mr. Jones, e.g. at lunch. They talked etc. for hours."

        assert split_into_sentences(text) == [
            "Dr. Smith met Mr. Jones, e.g. at lunch.",
            "They talked etc. for hours.",
        ]

    def test_word_helpers(self) -> None:
        """Test word counting and tail extraction."""
        assert count_words("  one two\nthree ") == 3
        assert get_last_n_words("a b c d", 2) == "c d"
        assert get_last_n_words("a b", 0) == ""


@pytest.mark.unit
class TestChunkTranscript:
    """Test suite for chunk_transcript."""

    @pytest.fixture
    def long_transcript(self, transcript_factory):
        return transcript_factory(words=1200)

    def test_twelve_hundred_words_make_two_chunks(self, long_transcript) -> None:
        """Test 1,200 words with 500/1000/100 windows give two overlapping chunks."""
        chunks = chunk_transcript(
            long_transcript.transcript_with_timestamps,
            ChunkingOptions(min_words=500, max_words=1000, overlap_words=100),
        )

        assert len(chunks) == 2
        assert [c.chunk_index for c in chunks] == [0, 1]
        assert chunks[0].word_count == 1000
        assert not chunks[0].metadata.has_overlap

        last_100 = chunks[0].chunk_text.split()[-100:]
        assert chunks[1].chunk_text.split()[:100] == last_100
        assert chunks[1].metadata.has_overlap
        assert chunks[1].metadata.overlap_word_count == 100
        assert chunks[1].word_count == 300

    def test_overlap_stripped_chunks_rebuild_transcript(self, long_transcript) -> None:
        """Test concatenating chunks minus their overlap reproduces the text."""
        chunks = chunk_transcript(long_transcript.transcript_with_timestamps)

        rebuilt = " ".join(strip_overlap(chunk) for chunk in chunks)

        assert rebuilt.split() == long_transcript.transcript.split()

    def test_time_ranges_follow_segments(self, long_transcript) -> None:
        """Test chunk times come from the segments they cover."""
        chunks = chunk_transcript(long_transcript.transcript_with_timestamps)

        assert chunks[0].start_time_seconds == 0.0
        assert chunks[0].end_time_seconds == pytest.approx(1000.0)
        assert chunks[1].start_time_seconds == pytest.approx(1000.0)
        assert chunks[1].end_time_seconds == pytest.approx(1200.0)

    def test_segment_duration_split_by_words(self) -> None:
        """Test a segment holding two sentences shares its duration by word count."""
        segments = [TimestampedSegment(text="One two three. Four.", start=10.0, duration=8.0)]

        chunks = chunk_transcript(segments, ChunkingOptions(min_words=1, max_words=3))

        assert len(chunks) == 2
        assert chunks[0].end_time_seconds == pytest.approx(16.0)
        assert chunks[1].start_time_seconds == pytest.approx(16.0)
        assert chunks[1].end_time_seconds == pytest.approx(18.0)

    def test_plain_text_has_zero_times(self) -> None:
        """Test plain text input carries no timing."""
        chunks = chunk_transcript("First sentence. Second one.")

        assert len(chunks) == 1
        assert chunks[0].word_count == 4
        assert chunks[0].start_time_seconds == 0.0
        assert chunks[0].end_time_seconds == 0.0

    def test_empty_transcript(self) -> None:
        """Test empty input yields no chunks."""
        assert chunk_transcript("   ") == []
        assert chunk_transcript([]) == []

    def test_short_final_chunk_is_kept(self, transcript_factory) -> None:
        """Test the trailing window is emitted even below min_words."""
        transcript = transcript_factory(words=50)

        chunks = chunk_transcript(
            transcript.transcript_with_timestamps,
            ChunkingOptions(min_words=20, max_words=40, overlap_words=5),
        )

        assert len(chunks) == 2
        assert strip_overlap(chunks[-1]).split() == transcript.transcript.split()[40:]

    def test_overlaps_do_not_compound(self, transcript_factory) -> None:
        """Test each overlap is taken from the previous chunk's own words."""
        transcript = transcript_factory(words=90)

        chunks = chunk_transcript(
            transcript.transcript_with_timestamps,
            ChunkingOptions(min_words=20, max_words=30, overlap_words=5),
        )

        assert len(chunks) == 3
        for previous, chunk in zip(chunks, chunks[1:]):
            own_previous = strip_overlap(previous).split()
            assert chunk.chunk_text.split()[:5] == own_previous[-5:]

    def test_options_from_config(self, config) -> None:
        """Test chunking windows are read from the pipeline config."""
        options = ChunkingOptions.from_config(config)

        assert (options.min_words, options.max_words, options.overlap_words) == (20, 40, 5)


@pytest.mark.unit
class TestChunkValidation:
    """Test validation and stats."""

    def test_no_chunks_is_invalid(self) -> None:
        """Test an empty chunk list fails validation."""
        result = validate_chunks([])

        assert not result.valid
        assert result.warnings == ["No chunks generated"]

    def test_short_chunks_are_warnings(self, transcript_factory) -> None:
        """Test short non-final chunks only produce warnings."""
        chunks = chunk_transcript(
            transcript_factory(words=100).transcript_with_timestamps,
            ChunkingOptions(min_words=20, max_words=40, overlap_words=5),
        )

        result = validate_chunks(chunks)

        assert result.valid
        assert len(result.warnings) == len(chunks) - 1
        assert "only" in result.warnings[0]

    def test_full_size_chunks_have_no_warnings(self, transcript_factory) -> None:
        """Test default-size chunks validate cleanly."""
        chunks = chunk_transcript(transcript_factory(words=1200).transcript_with_timestamps)

        assert validate_chunks(chunks).warnings == []

    def test_stats(self, transcript_factory) -> None:
        """Test summary statistics over chunks."""
        chunks = chunk_transcript(transcript_factory(words=1200).transcript_with_timestamps)

        stats = get_chunking_stats(chunks)

        assert stats.total_chunks == 2
        assert stats.total_words == 1300
        assert stats.avg_words_per_chunk == 650.0
        assert stats.min_words == 300
        assert stats.max_words == 1000
        assert stats.chunks_with_overlap == 1
        assert stats.total_duration_seconds == pytest.approx(1200.0)

    def test_stats_empty(self) -> None:
        """Test stats for no chunks are zero."""
        assert get_chunking_stats([]).total_chunks == 0
