"""
Vector Store Gateway for GM Pipeline
Collection management and point upserts against Qdrant

Calls never raise for store failures. They return a GatewayResult whose
error kind tells callers whether the store was unreachable, configured
incompatibly, or failed for another reason.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog
from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import Distance, PointStruct, VectorParams

from ..utils.config import get_settings
from ..utils.errors import VectorStoreError
from ..utils.metrics import record_vector_upsert

logger = structlog.get_logger(__name__)

# Namespace for deterministic point ids derived from chunk/message keys
POINT_NAMESPACE = uuid.UUID("6f1c2b9e-4d3a-5e8f-9a7b-1c2d3e4f5a6b")

UNAVAILABLE_STATUS_CODES = {502, 503, 504}


class GatewayErrorKind(str, Enum):
    NONE = "none"
    UNAVAILABLE = "unavailable"
    INCOMPATIBLE = "incompatible"
    OTHER = "other"


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of a gateway call"""

    ok: bool
    error_kind: GatewayErrorKind = GatewayErrorKind.NONE
    detail: Optional[str] = None
    created: bool = False
    count: int = 0

    @classmethod
    def success(cls, created: bool = False, count: int = 0) -> "GatewayResult":
        return cls(ok=True, created=created, count=count)

    @classmethod
    def failure(cls, kind: GatewayErrorKind, detail: str) -> "GatewayResult":
        return cls(ok=False, error_kind=kind, detail=detail)

    @property
    def unavailable(self) -> bool:
        return self.error_kind == GatewayErrorKind.UNAVAILABLE

    def raise_for_error(self) -> "GatewayResult":
        """Raise VectorStoreError for a failed result, return self otherwise"""
        if not self.ok:
            raise VectorStoreError(
                self.detail or f"Vector store call failed ({self.error_kind.value})",
                kind=self.error_kind,
            )
        return self


@dataclass(frozen=True)
class VectorConfig:
    size: int
    distance: Distance = Distance.COSINE

    def to_params(self) -> VectorParams:
        return VectorParams(size=self.size, distance=self.distance)


def point_id_for(key: str) -> str:
    """Stable Qdrant point id for a chunk or message key"""
    return str(uuid.uuid5(POINT_NAMESPACE, key))


@dataclass(frozen=True)
class VectorPoint:
    key: str
    vector: Sequence[float]
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def point_id(self) -> str:
        return point_id_for(self.key)


def classify_error(error: Exception) -> GatewayErrorKind:
    """Map a client exception onto a gateway error kind"""
    if isinstance(error, (ResponseHandlingException, httpx.TransportError, ConnectionError, TimeoutError)):
        return GatewayErrorKind.UNAVAILABLE
    if isinstance(error, UnexpectedResponse) and error.status_code in UNAVAILABLE_STATUS_CODES:
        return GatewayErrorKind.UNAVAILABLE
    return GatewayErrorKind.OTHER


class VectorStoreGateway:
    """Thin typed wrapper around QdrantClient"""

    def __init__(
        self,
        client: Optional[QdrantClient] = None,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        """
        Initialize the gateway

        Args:
            client: Preconfigured client (e.g. ``QdrantClient(":memory:")``)
            url: Qdrant server URL (defaults to settings)
            api_key: Qdrant API key (defaults to settings)
            timeout: Request timeout in seconds (defaults to settings)
        """
        if client is None:
            settings = get_settings()
            url = url or settings.qdrant_url
            client = QdrantClient(
                url=url,
                api_key=api_key or settings.qdrant_api_key,
                timeout=timeout or settings.qdrant_timeout_seconds,
            )
            logger.info("qdrant_client_initialized", url=url)
        self.client = client

    def ensure_collection(self, name: str, config: VectorConfig) -> GatewayResult:
        """
        Create a collection unless it already exists

        An existing collection with the same size and distance is a no-op;
        a mismatch is reported as INCOMPATIBLE.
        """
        try:
            if self.client.collection_exists(name):
                return self._check_existing(name, config)

            self.client.create_collection(
                collection_name=name, vectors_config=config.to_params()
            )
        except UnexpectedResponse as e:
            if e.status_code == 409:
                logger.debug("qdrant_collection_exists", collection=name)
                return self._check_existing(name, config)
            return self._failed("ensure_collection", name, e)
        except Exception as e:
            return self._failed("ensure_collection", name, e)

        logger.info(
            "qdrant_collection_created",
            collection=name,
            vector_size=config.size,
            distance=str(config.distance),
        )
        return GatewayResult.success(created=True)

    def _check_existing(self, name: str, config: VectorConfig) -> GatewayResult:
        try:
            info = self.client.get_collection(name)
        except Exception as e:
            return self._failed("get_collection", name, e)

        vectors = info.config.params.vectors
        if isinstance(vectors, VectorParams) and (
            vectors.size != config.size or vectors.distance != config.distance
        ):
            detail = (
                f"Collection {name} has size={vectors.size} distance={vectors.distance}, "
                f"expected size={config.size} distance={config.distance}"
            )
            logger.warning("qdrant_collection_incompatible", collection=name, detail=detail)
            return GatewayResult.failure(GatewayErrorKind.INCOMPATIBLE, detail)

        logger.debug("qdrant_collection_exists", collection=name)
        return GatewayResult.success(created=False)

    def upsert(self, name: str, points: List[VectorPoint]) -> GatewayResult:
        """
        Upsert a batch of points

        The batch succeeds or fails as a whole; resubmitting is up to the caller.
        """
        if not points:
            return GatewayResult.success(count=0)

        structs = [
            PointStruct(id=p.point_id, vector=list(p.vector), payload=dict(p.payload))
            for p in points
        ]
        try:
            self.client.upsert(collection_name=name, points=structs, wait=True)
        except Exception as e:
            record_vector_upsert(name, success=False)
            return self._failed("upsert", name, e, batch_size=len(points))

        record_vector_upsert(name, success=True)
        logger.info("qdrant_points_upserted", collection=name, count=len(points))
        return GatewayResult.success(count=len(points))

    def _failed(self, operation: str, name: str, error: Exception, **context) -> GatewayResult:
        kind = classify_error(error)
        logger.error(
            "qdrant_operation_failed",
            operation=operation,
            collection=name,
            error_kind=kind.value,
            error=str(error),
            **context,
        )
        return GatewayResult.failure(kind, f"{operation} on {name} failed: {error}")

    def close(self) -> None:
        self.client.close()
