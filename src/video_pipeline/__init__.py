"""Video transcript pipeline.

This package takes creator videos from YouTube, Loom, Mux or direct upload,
extracts transcripts (free caption sources first, paid transcription as a
fallback), splits them into overlapping sentence-aligned chunks, embeds the
chunks and serves similarity search over them.
"""
