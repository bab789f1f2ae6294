from unittest.mock import MagicMock

import httpx
import pytest
from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import Distance

from gmpipeline.utils.errors import VectorStoreError
from gmpipeline.vectors.gateway import (
    GatewayErrorKind,
    GatewayResult,
    VectorConfig,
    VectorPoint,
    VectorStoreGateway,
    classify_error,
    point_id_for,
)


@pytest.fixture
def gateway():
    return VectorStoreGateway(client=QdrantClient(":memory:"))


def _unexpected(status_code):
    return UnexpectedResponse(
        status_code=status_code, reason_phrase="error", content=b"", headers=httpx.Headers()
    )


@pytest.mark.unit
def test_ensure_collection_is_idempotent(gateway) -> None:
    first = gateway.ensure_collection("docs", VectorConfig(size=4))
    second = gateway.ensure_collection("docs", VectorConfig(size=4))

    assert first.ok and first.created
    assert second.ok and not second.created
    names = [c.name for c in gateway.client.get_collections().collections]
    assert names == ["docs"]


@pytest.mark.unit
def test_ensure_collection_reports_incompatible_size(gateway) -> None:
    gateway.ensure_collection("docs", VectorConfig(size=4))

    result = gateway.ensure_collection("docs", VectorConfig(size=8))

    assert not result.ok
    assert result.error_kind == GatewayErrorKind.INCOMPATIBLE
    assert "size=4" in result.detail


@pytest.mark.unit
def test_ensure_collection_reports_incompatible_distance(gateway) -> None:
    gateway.ensure_collection("docs", VectorConfig(size=4))

    result = gateway.ensure_collection("docs", VectorConfig(size=4, distance=Distance.DOT))

    assert result.error_kind == GatewayErrorKind.INCOMPATIBLE


@pytest.mark.unit
def test_upsert_counts_points_and_overwrites_by_key(gateway) -> None:
    gateway.ensure_collection("docs", VectorConfig(size=2))
    points = [
        VectorPoint(key="doc-1_chunk_0", vector=[1.0, 0.0], payload={"chunkIndex": 0}),
        VectorPoint(key="doc-1_chunk_1", vector=[0.0, 1.0], payload={"chunkIndex": 1}),
    ]

    assert gateway.upsert("docs", points).count == 2
    assert gateway.upsert("docs", points[:1]).count == 1
    assert gateway.client.count("docs").count == 2


@pytest.mark.unit
def test_upsert_empty_batch_is_noop() -> None:
    client = MagicMock()

    result = VectorStoreGateway(client=client).upsert("docs", [])

    assert result.ok and result.count == 0
    client.upsert.assert_not_called()


@pytest.mark.unit
def test_upsert_into_missing_collection_fails_without_raising(gateway) -> None:
    result = gateway.upsert("missing", [VectorPoint(key="k", vector=[1.0, 0.0])])

    assert not result.ok
    assert result.error_kind == GatewayErrorKind.OTHER


@pytest.mark.unit
@pytest.mark.parametrize(
    "error",
    [
        ResponseHandlingException(ConnectionRefusedError("refused")),
        httpx.ConnectError("connection refused"),
        ConnectionError("reset"),
        TimeoutError("timed out"),
    ],
)
def test_unreachable_store_is_reported_as_unavailable(error) -> None:
    client = MagicMock()
    client.collection_exists.side_effect = error

    result = VectorStoreGateway(client=client).ensure_collection("docs", VectorConfig(size=4))

    assert not result.ok
    assert result.unavailable


@pytest.mark.unit
def test_error_classification_by_status_code() -> None:
    assert classify_error(_unexpected(503)) == GatewayErrorKind.UNAVAILABLE
    assert classify_error(_unexpected(400)) == GatewayErrorKind.OTHER
    assert classify_error(ValueError("bad vector")) == GatewayErrorKind.OTHER


@pytest.mark.unit
def test_create_conflict_falls_back_to_existing_check() -> None:
    client = MagicMock()
    client.collection_exists.return_value = False
    client.create_collection.side_effect = _unexpected(409)
    client.get_collection.return_value.config.params.vectors = VectorConfig(size=4).to_params()

    result = VectorStoreGateway(client=client).ensure_collection("docs", VectorConfig(size=4))

    assert result.ok and not result.created


@pytest.mark.unit
def test_raise_for_error_carries_kind() -> None:
    failed = GatewayResult.failure(GatewayErrorKind.UNAVAILABLE, "qdrant down")

    with pytest.raises(VectorStoreError) as exc:
        failed.raise_for_error()

    assert exc.value.kind == GatewayErrorKind.UNAVAILABLE
    assert GatewayResult.success(count=3).raise_for_error().count == 3


@pytest.mark.unit
def test_point_ids_are_stable_uuids() -> None:
    assert point_id_for("doc-1_chunk_0") == point_id_for("doc-1_chunk_0")
    assert point_id_for("doc-1_chunk_0") != point_id_for("doc-1_chunk_1")
    assert VectorPoint(key="message-5", vector=[0.1]).point_id == point_id_for("message-5")
