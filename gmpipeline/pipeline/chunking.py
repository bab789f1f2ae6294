"""
GM Pipeline Chunking
Default paragraph chunker for cracked documents
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from ..utils.config import get_settings

PAGE_MARKER = re.compile(r"---\s*Page\s+(\d+)\s*---", re.IGNORECASE)
PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


@dataclass
class TextChunk:
    chunk_id: str
    index: int
    text: str
    embedding: Optional[List[float]] = None

    @property
    def page_number(self) -> Optional[int]:
        return extract_page_number(self.text)


def extract_page_number(text: str) -> Optional[int]:
    """First ``--- Page N ---`` marker in a chunk, if any"""
    match = PAGE_MARKER.search(text or "")
    return int(match.group(1)) if match else None


def chunk_id_for(document_id: str, index: int) -> str:
    return f"{document_id}_chunk_{index}"


class ParagraphChunker:
    """
    Packs paragraphs into chunks of at most ``max_chars`` characters.

    Oversized paragraphs are split on whitespace, and a trailing chunk
    shorter than ``min_chars`` is merged into its predecessor.
    """

    def __init__(self, min_chars: Optional[int] = None, max_chars: Optional[int] = None):
        settings = get_settings()
        self.min_chars = min_chars if min_chars is not None else settings.min_chunk_chars
        self.max_chars = max_chars or settings.max_chunk_chars
        if self.max_chars <= 0 or self.min_chars > self.max_chars:
            raise ValueError("Chunk bounds must satisfy 0 <= min_chars <= max_chars")

    def chunk(self, text: str, document_id: str) -> List[TextChunk]:
        pieces: List[str] = []
        current = ""

        for paragraph in PARAGRAPH_BREAK.split(text or ""):
            paragraph = paragraph.strip()
            if not paragraph:
                continue

            for part in self._split_long(paragraph):
                candidate = f"{current}\n\n{part}" if current else part
                if len(candidate) <= self.max_chars:
                    current = candidate
                else:
                    pieces.append(current)
                    current = part

        if current:
            if pieces and len(current) < self.min_chars and (
                len(pieces[-1]) + len(current) + 2 <= self.max_chars
            ):
                pieces[-1] = f"{pieces[-1]}\n\n{current}"
            else:
                pieces.append(current)

        return [
            TextChunk(chunk_id=chunk_id_for(document_id, i), index=i, text=piece)
            for i, piece in enumerate(pieces)
        ]

    def _split_long(self, paragraph: str) -> List[str]:
        if len(paragraph) <= self.max_chars:
            return [paragraph]

        parts: List[str] = []
        current = ""
        for word in paragraph.split():
            while len(word) > self.max_chars:
                if current:
                    parts.append(current)
                    current = ""
                parts.append(word[: self.max_chars])
                word = word[self.max_chars :]
            if not word:
                continue
            candidate = f"{current} {word}" if current else word
            if len(candidate) <= self.max_chars:
                current = candidate
            else:
                parts.append(current)
                current = word
        if current:
            parts.append(current)
        return parts
