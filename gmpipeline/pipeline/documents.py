"""
GM Pipeline Document Handlers
Crack, chunk, embed and index sourcebook documents

Storage, text extraction and embedding generation are collaborators
passed in by the worker wiring; the handlers only drive the stages and
publish the follow-up messages.
"""

import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Sequence

from ..messaging.backfill import BackfillJob, BulkPublisher
from ..messaging.messages import (
    ChunkReadyForEmbeddingMessage,
    CrackDocumentMessage,
    DocumentCrackedMessage,
    DocumentReadyForChunkingMessage,
)
from ..messaging.publisher import MessagePublisher
from ..utils.config import get_settings
from ..utils.errors import ChunkingError, DocumentNotFoundError, EmbeddingError
from ..utils.logger import get_logger
from ..vectors.gateway import VectorConfig, VectorPoint, VectorStoreGateway, point_id_for
from .chunking import TextChunk
from .stages import PipelineStage, PipelineType
from .tracker import PipelineStageTracker

logger = get_logger(__name__)


# ============================================================================
# COLLABORATORS
# ============================================================================


@dataclass
class ExtractedText:
    text: str
    page_count: int = 0


@dataclass
class DocumentRecord:
    document_id: str
    file_path: str
    content: str = ""
    file_name: Optional[str] = None
    relative_directory: Optional[str] = None
    file_size: int = 0
    page_count: int = 0
    cracked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    document_kind: str = "Sourcebook"
    ruleset_id: Optional[str] = None
    total_chunks: int = 0
    is_processed: bool = False


class TextExtractor(Protocol):
    def extract(self, file_path: str) -> ExtractedText:
        ...


class DocumentStore(Protocol):
    def save_cracked(self, document: DocumentRecord) -> str:
        ...

    def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        ...

    def save_chunks(self, document_id: str, chunks: Sequence[TextChunk]) -> None:
        ...

    def set_total_chunks(self, document_id: str, total_chunks: int) -> None:
        ...

    def tag_chunk_point(self, chunk_id: str, point_id: str) -> None:
        ...

    def mark_processed(self, document_id: str) -> None:
        ...

    def list_unprocessed(self) -> List[DocumentRecord]:
        ...


class Chunker(Protocol):
    def chunk(self, text: str, document_id: str) -> List[TextChunk]:
        ...


class EmbeddingGenerator(Protocol):
    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        ...


def embed_texts(
    embedder: EmbeddingGenerator, texts: Sequence[str], dimensions: int
) -> List[List[float]]:
    """Embed texts and check the result shape"""
    vectors = embedder.embed(list(texts))
    if len(vectors) != len(texts):
        raise EmbeddingError(
            f"Embedding generator returned {len(vectors)} vectors for {len(texts)} texts"
        )
    for vector in vectors:
        if len(vector) != dimensions:
            raise EmbeddingError(
                f"Embedding has {len(vector)} dimensions, expected {dimensions}"
            )
    return [list(v) for v in vectors]


class ChunkIndexer:
    """Writes embedded chunks to the document collection"""

    def __init__(
        self,
        gateway: VectorStoreGateway,
        store: DocumentStore,
        collection: Optional[str] = None,
        dimensions: Optional[int] = None,
    ):
        settings = get_settings()
        self.gateway = gateway
        self.store = store
        self.collection = collection or settings.document_collection
        self.dimensions = dimensions or settings.embedding_dimensions

    def index(self, source, chunks: Sequence[TextChunk], total_chunks: int) -> int:
        """
        Upsert chunks with embeddings as one batch and tag their point ids

        Raises:
            VectorStoreError: collection or upsert failed (whole batch)
        """
        self.gateway.ensure_collection(
            self.collection, VectorConfig(size=self.dimensions)
        ).raise_for_error()

        embedded_at = datetime.now(timezone.utc).isoformat()
        points = [
            VectorPoint(
                key=chunk.chunk_id,
                vector=chunk.embedding,
                payload={
                    "chunkId": chunk.chunk_id,
                    "chunkIndex": chunk.index,
                    "chunkText": chunk.text,
                    "documentId": source.document_id,
                    "fileName": source.file_name,
                    "filePath": source.file_path,
                    "pageNumber": chunk.page_number,
                    "totalChunks": total_chunks,
                    "documentKind": source.document_kind,
                    "rulesetId": source.ruleset_id,
                    "embeddedAt": embedded_at,
                },
            )
            for chunk in chunks
        ]
        self.gateway.upsert(self.collection, points).raise_for_error()

        for chunk in chunks:
            self.store.tag_chunk_point(chunk.chunk_id, point_id_for(chunk.chunk_id))
        return len(points)


# ============================================================================
# HANDLERS
# ============================================================================


class CrackDocumentHandler:
    """Extracts document text and hands the document to chunking"""

    def __init__(
        self,
        extractor: TextExtractor,
        store: DocumentStore,
        publisher: MessagePublisher,
        tracker: PipelineStageTracker,
    ):
        self.extractor = extractor
        self.store = store
        self.publisher = publisher
        self.tracker = tracker

    def handle(self, message: CrackDocumentMessage, stop_event: threading.Event) -> None:
        file_name = os.path.basename(message.file_path)

        with self.tracker.track_stage(
            message.file_path,
            None,
            PipelineType.DOCUMENT,
            PipelineStage.CRACKING,
            preview=file_name,
        ):
            extracted = self.extractor.extract(message.file_path)
            record = DocumentRecord(
                document_id="",
                file_path=message.file_path,
                content=extracted.text,
                file_name=file_name,
                relative_directory=message.relative_directory,
                file_size=len(extracted.text.encode("utf-8")),
                page_count=extracted.page_count,
                document_kind=message.document_kind,
                ruleset_id=message.ruleset_id,
            )
            record.document_id = self.store.save_cracked(record)

        logger.info(
            f"Cracked {message.file_path} into document {record.document_id} "
            f"({record.page_count} pages)"
        )
        self.publisher.publish(
            DocumentReadyForChunkingMessage(
                document_id=record.document_id,
                file_path=record.file_path,
                file_name=record.file_name,
                relative_directory=record.relative_directory,
                file_size=record.file_size,
                page_count=record.page_count,
                cracked_at=record.cracked_at,
                document_kind=record.document_kind,
                ruleset_id=record.ruleset_id,
            )
        )


class DocumentChunkingHandler:
    """
    Splits a cracked document into chunks.

    With an embedding generator configured, chunks are embedded inline and
    indexed as one batch. Otherwise each chunk is queued as a
    ``ChunkReadyForEmbeddingMessage`` for the embedding workers.
    """

    def __init__(
        self,
        store: DocumentStore,
        chunker: Chunker,
        indexer: ChunkIndexer,
        publisher: MessagePublisher,
        tracker: PipelineStageTracker,
        embedder: Optional[EmbeddingGenerator] = None,
    ):
        self.store = store
        self.chunker = chunker
        self.indexer = indexer
        self.publisher = publisher
        self.tracker = tracker
        self.embedder = embedder

    def handle(self, message: DocumentReadyForChunkingMessage, stop_event: threading.Event) -> None:
        document_id = message.document_id

        with self.tracker.track_stage(
            document_id,
            None,
            PipelineType.DOCUMENT,
            PipelineStage.CHUNKING,
            preview=message.file_name or message.file_path,
        ):
            chunks = self._chunk(message)

        if not chunks:
            return

        embedded = [c for c in chunks if c.embedding]
        if embedded:
            with self.tracker.track_stage(
                document_id, None, PipelineType.DOCUMENT, PipelineStage.INDEXING
            ):
                self.indexer.index(message, embedded, len(chunks))

        queued = 0
        for chunk in chunks:
            if chunk.embedding:
                continue
            self.publisher.publish(
                ChunkReadyForEmbeddingMessage(
                    chunk_id=chunk.chunk_id,
                    chunk_text=chunk.text,
                    chunk_index=chunk.index,
                    document_id=document_id,
                    file_name=message.file_name,
                    file_path=message.file_path,
                    page_number=chunk.page_number,
                    total_chunks=len(chunks),
                    document_kind=message.document_kind,
                    ruleset_id=message.ruleset_id,
                )
            )
            queued += 1

        self.store.mark_processed(document_id)
        logger.info(
            f"Processed document {document_id}: {len(embedded)} chunks indexed, "
            f"{queued} queued for embedding out of {len(chunks)}"
        )

    def _chunk(self, message: DocumentReadyForChunkingMessage) -> List[TextChunk]:
        document = self.store.get_document(message.document_id)
        if document is None:
            raise DocumentNotFoundError(message.document_id)

        if not document.content or not document.content.strip():
            logger.warning(f"Document {message.document_id} has empty content, skipping chunking")
            return []

        chunks = self.chunker.chunk(document.content, message.document_id)
        if not chunks:
            raise ChunkingError(
                f"Document {message.document_id} produced no chunks",
                details={"document_id": message.document_id},
            )

        if self.embedder is not None:
            vectors = embed_texts(
                self.embedder, [c.text for c in chunks], self.indexer.dimensions
            )
            for chunk, vector in zip(chunks, vectors):
                chunk.embedding = vector

        self.store.save_chunks(message.document_id, chunks)
        self.store.set_total_chunks(message.document_id, len(chunks))
        logger.info(f"Document {message.document_id} split into {len(chunks)} chunks")
        return chunks


class ChunkEmbeddingHandler:
    """Embeds and indexes a single queued chunk"""

    def __init__(
        self,
        embedder: EmbeddingGenerator,
        indexer: ChunkIndexer,
        tracker: PipelineStageTracker,
    ):
        self.embedder = embedder
        self.indexer = indexer
        self.tracker = tracker

    def handle(self, message: ChunkReadyForEmbeddingMessage, stop_event: threading.Event) -> None:
        chunk = TextChunk(
            chunk_id=message.chunk_id, index=message.chunk_index, text=message.chunk_text
        )

        with self.tracker.track_stage(
            message.chunk_id,
            None,
            PipelineType.DOCUMENT,
            PipelineStage.EMBEDDING,
            preview=message.chunk_text,
        ):
            chunk.embedding = embed_texts(
                self.embedder, [chunk.text], self.indexer.dimensions
            )[0]

        with self.tracker.track_stage(
            message.chunk_id, None, PipelineType.DOCUMENT, PipelineStage.INDEXING
        ):
            self.indexer.index(message, [chunk], message.total_chunks)

        logger.debug(
            f"Indexed chunk {message.chunk_id} ({message.chunk_index + 1}/{message.total_chunks}) "
            f"of document {message.document_id}"
        )


# ============================================================================
# BACKFILL
# ============================================================================


def queue_unprocessed_documents(
    store: DocumentStore,
    bulk_publisher: BulkPublisher,
    on_complete: Optional[Callable[[BackfillJob], None]] = None,
) -> BackfillJob:
    """
    Republish every unprocessed document for chunking

    Returns as soon as the batch is accepted; the job reports the outcome.
    """
    messages = []
    for document in store.list_unprocessed():
        if not document.document_id or not document.document_id.strip():
            logger.warning(f"Skipping document with empty id: {document.file_path}")
            continue
        messages.append(
            DocumentCrackedMessage(
                document_id=document.document_id,
                file_path=document.file_path,
                file_name=document.file_name,
                relative_directory=document.relative_directory,
                file_size=document.file_size,
                page_count=document.page_count,
                cracked_at=document.cracked_at,
                document_kind=document.document_kind,
                ruleset_id=document.ruleset_id,
            )
        )

    logger.info(f"Found {len(messages)} unprocessed documents to backfill")
    return bulk_publisher.submit(messages, description="document-backfill", on_complete=on_complete)
