"""
GM Pipeline Envelope
Message serialization and the broker delivery wrapper
"""

import json
import uuid
from dataclasses import dataclass
from typing import Optional, Type, TypeVar

import pika
from pydantic import ValidationError

from ..utils.errors import MessageDecodeError
from .messages import PipelineMessage

CONTENT_TYPE = "application/json"

M = TypeVar("M", bound=PipelineMessage)


@dataclass(frozen=True)
class Delivery:
    """A received message plus the broker metadata it arrived with"""

    delivery_tag: int
    message: PipelineMessage
    message_id: Optional[str] = None
    redelivered: bool = False
    exchange: str = ""
    routing_key: str = ""


def new_message_id() -> str:
    return str(uuid.uuid4())


def encode_message(message: PipelineMessage) -> bytes:
    """Serialize a message to camelCase JSON"""
    return message.model_dump_json(by_alias=True).encode("utf-8")


def build_properties(
    message: PipelineMessage, message_id: Optional[str] = None
) -> pika.BasicProperties:
    """Broker properties for a persistent, typed publish"""
    return pika.BasicProperties(
        content_type=CONTENT_TYPE,
        delivery_mode=pika.spec.PERSISTENT_DELIVERY_MODE,
        message_id=message_id or new_message_id(),
        type=message.type_name(),
    )


def decode_message(message_cls: Type[M], body: bytes) -> M:
    """
    Parse a delivery body into its message type

    Raises:
        MessageDecodeError: body is empty, not JSON, or violates the schema
    """
    if not body:
        raise MessageDecodeError(
            f"Empty body for {message_cls.type_name()}",
            details={"message_type": message_cls.type_name()},
        )

    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MessageDecodeError(
            f"Body is not valid JSON for {message_cls.type_name()}: {e}",
            details={"message_type": message_cls.type_name()},
        ) from e

    if not isinstance(payload, dict):
        raise MessageDecodeError(
            f"Body for {message_cls.type_name()} is not a JSON object",
            details={"message_type": message_cls.type_name()},
        )

    try:
        return message_cls.model_validate(payload)
    except ValidationError as e:
        raise MessageDecodeError(
            f"Body does not match {message_cls.type_name()}: {e.error_count()} errors",
            details={"message_type": message_cls.type_name(), "errors": e.errors()},
        ) from e
