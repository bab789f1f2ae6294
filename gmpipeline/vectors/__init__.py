"""
GM Pipeline Vectors
Vector store gateway
"""

from .gateway import (
    GatewayErrorKind,
    GatewayResult,
    VectorConfig,
    VectorPoint,
    VectorStoreGateway,
    point_id_for,
)

__all__ = [
    "GatewayErrorKind",
    "GatewayResult",
    "VectorConfig",
    "VectorPoint",
    "VectorStoreGateway",
    "point_id_for",
]
