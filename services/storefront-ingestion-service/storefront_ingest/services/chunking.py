from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TextChunk:
    index: int
    text: str
    start_char: int
    end_char: int


def chunk_text(text: str, chunk_size: int = 1000, overlap: int = 200) -> list[TextChunk]:
    """Split ``text`` into fixed-size windows that overlap by ``overlap`` characters.

    Windows advance by ``chunk_size - overlap``; the last window always ends at
    ``len(text)``. Text no longer than ``chunk_size`` comes back as a single chunk.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be >= 0 and less than chunk_size")
    if not text:
        return []
    if len(text) <= chunk_size:
        return [TextChunk(index=0, text=text, start_char=0, end_char=len(text))]

    step = chunk_size - overlap
    chunks: list[TextChunk] = []
    start = 0
    while True:
        end = min(start + chunk_size, len(text))
        chunks.append(TextChunk(index=len(chunks), text=text[start:end], start_char=start, end_char=end))
        if end == len(text):
            break
        start += step
    return chunks
