"""
GM Pipeline Document Scanning
Change detection over the content directory and cracking requests for new files
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol, Union

from ..messaging.messages import CrackDocumentMessage
from ..utils.config import get_settings
from ..utils.errors import ContentDirectoryError
from ..utils.logger import get_logger
from ..utils.metrics import record_document_scan

logger = get_logger(__name__)

DEFAULT_RULESET_ID = "default"
_HASH_BLOCK_BYTES = 64 * 1024


@dataclass
class DocumentMetadata:
    """What the scanner last saw for one file"""

    file_path: str
    file_hash: str
    relative_directory: Optional[str] = None
    ruleset_id: str = DEFAULT_RULESET_ID
    document_kind: str = "Sourcebook"
    last_scanned: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DocumentMetadataStore(Protocol):
    """Scan bookkeeping; path lookups are case-insensitive"""

    def get_metadata(self, file_path: str) -> Optional[DocumentMetadata]:
        ...

    def save_metadata(self, metadata: DocumentMetadata) -> None:
        ...

    def is_cracked(self, file_path: str) -> bool:
        """True when a document with non-empty content exists for the path"""
        ...


class MessageSender(Protocol):
    def publish(self, message, message_id: Optional[str] = None) -> str:
        ...


@dataclass
class DocumentScanSummary:
    files_scanned: int = 0
    files_enqueued: int = 0
    files_unchanged: int = 0
    errors: int = 0


def compute_file_hash(path: Union[str, Path]) -> str:
    """SHA-256 hex digest of a file's bytes"""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(_HASH_BLOCK_BYTES), b""):
            digest.update(block)
    return digest.hexdigest()


def relative_directory_for(path: Path, root: Path) -> Optional[str]:
    """Directory of ``path`` relative to the scan root, None at the root itself"""
    relative = path.parent.relative_to(root)
    if relative == Path("."):
        return None
    return relative.as_posix()


def ruleset_id_for(relative_directory: Optional[str]) -> str:
    """Top-level folder under the content root names the ruleset"""
    if not relative_directory:
        return DEFAULT_RULESET_ID
    return relative_directory.split("/", 1)[0]


def iter_documents(root: Path, extensions: Iterable[str]) -> Iterator[Path]:
    suffixes = {e.lower() if e.startswith(".") else f".{e.lower()}" for e in extensions}
    for path in sorted(root.rglob("*")):
        if path.is_file() and path.suffix.lower() in suffixes:
            yield path


def scan_and_enqueue(
    content_directory: Union[str, Path, None],
    metadata_store: DocumentMetadataStore,
    publisher: MessageSender,
    extensions: Optional[Iterable[str]] = None,
    document_kind: Optional[str] = None,
) -> DocumentScanSummary:
    """
    Walk the content directory and request cracking for new or changed files

    A file is skipped when its hash matches the stored metadata and its
    document has already been cracked. A file that fails to hash or
    publish is counted as an error and the scan moves on. Metadata is
    only saved after the cracking request was published, so a failed
    publish is retried on the next scan.

    Raises:
        ContentDirectoryError: directory is unset or missing
    """
    if content_directory is None or not str(content_directory).strip():
        raise ContentDirectoryError("Content directory is required for document scanning")

    root = Path(content_directory)
    if not root.is_dir():
        logger.error(f"Content directory does not exist: {root}")
        raise ContentDirectoryError(
            f"Content directory does not exist: {root}",
            details={"content_directory": str(root)},
        )

    settings = get_settings()
    extensions = list(extensions or settings.document_extensions)
    document_kind = document_kind or settings.document_kind
    summary = DocumentScanSummary()
    logger.info(f"Scanning {root} for {', '.join(extensions)} documents")

    for path in iter_documents(root, extensions):
        summary.files_scanned += 1
        try:
            enqueued = _scan_file(path, root, metadata_store, publisher, document_kind)
        except Exception as e:
            summary.errors += 1
            record_document_scan("error")
            logger.error(f"Failed to scan {path}: {e}", exc_info=e)
            continue

        if enqueued:
            summary.files_enqueued += 1
            record_document_scan("enqueued")
        else:
            summary.files_unchanged += 1
            record_document_scan("unchanged")

    logger.info(
        f"Document scan of {root} finished: {summary.files_scanned} scanned, "
        f"{summary.files_enqueued} enqueued, {summary.files_unchanged} unchanged, "
        f"{summary.errors} errors"
    )
    return summary


def _scan_file(
    path: Path,
    root: Path,
    metadata_store: DocumentMetadataStore,
    publisher: MessageSender,
    document_kind: str,
) -> bool:
    file_path = str(path)
    file_hash = compute_file_hash(path)
    relative_directory = relative_directory_for(path, root)
    ruleset_id = ruleset_id_for(relative_directory)
    now = datetime.now(timezone.utc)

    existing = metadata_store.get_metadata(file_path)
    if existing is not None and existing.file_hash == file_hash:
        if metadata_store.is_cracked(file_path):
            existing.last_scanned = now
            metadata_store.save_metadata(existing)
            logger.debug(f"Unchanged: {file_path}")
            return False
        logger.info(f"Hash unchanged but document not cracked, re-queueing {file_path}")

    publisher.publish(
        CrackDocumentMessage(
            file_path=file_path,
            relative_directory=relative_directory,
            ruleset_id=ruleset_id,
            document_kind=document_kind,
        )
    )
    metadata_store.save_metadata(
        DocumentMetadata(
            file_path=file_path,
            file_hash=file_hash,
            relative_directory=relative_directory,
            ruleset_id=ruleset_id,
            document_kind=document_kind,
            last_scanned=now,
        )
    )
    logger.info(f"Queued {file_path} for cracking (ruleset {ruleset_id})")
    return True
