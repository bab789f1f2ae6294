"""
GM Pipeline Handler Registry
Explicit mapping of message types (and roles) to handlers
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type

from ..pipeline.stages import PipelineStage, stage_for_message_type
from ..utils.errors import HandlerRegistrationError
from ..utils.logger import get_logger
from .connection import BrokerConnectionFactory
from .consumer import (
    MessageConsumerService,
    MessageHandler,
    RetryPolicy,
    RoleBasedMessageConsumerService,
)
from .messages import PipelineMessage

logger = get_logger(__name__)


@dataclass(frozen=True)
class Registration:
    message_cls: Type[PipelineMessage]
    handler: MessageHandler
    role: Optional[str] = None
    stage: Optional[PipelineStage] = None

    @property
    def key(self) -> Tuple[str, Optional[str]]:
        return (self.message_cls.type_name(), self.role)


class HandlerRegistry:
    """
    One handler per message type, or per (message type, role) for
    role-routed messages. Consumers are built from the registrations at
    startup.
    """

    def __init__(self):
        self._registrations: Dict[Tuple[str, Optional[str]], Registration] = {}

    def register(
        self,
        message_cls: Type[PipelineMessage],
        handler: MessageHandler,
        role: Optional[Any] = None,
        stage: Optional[PipelineStage] = None,
    ) -> Registration:
        """
        Register a handler

        Args:
            message_cls: Message type the handler consumes
            handler: Object with ``handle(message, stop_event)``
            role: Routing role for role-routed message types
            stage: Stage used for queue depth reports (inferred when omitted)

        Raises:
            HandlerRegistrationError: invalid handler, role misuse or duplicate
        """
        if not (isinstance(message_cls, type) and issubclass(message_cls, PipelineMessage)):
            raise HandlerRegistrationError(f"{message_cls!r} is not a pipeline message type")
        if not callable(getattr(handler, "handle", None)):
            raise HandlerRegistrationError(
                f"Handler for {message_cls.type_name()} has no handle() method"
            )

        role_name = getattr(role, "value", role)
        if role_name is not None and not message_cls.role_routed:
            raise HandlerRegistrationError(
                f"{message_cls.type_name()} is not role-routed, cannot register role {role_name}"
            )

        if stage is None:
            mapped = stage_for_message_type(message_cls.type_name(), role_name)
            stage = mapped[1] if mapped else None

        registration = Registration(
            message_cls=message_cls, handler=handler, role=role_name, stage=stage
        )
        if registration.key in self._registrations:
            raise HandlerRegistrationError(
                f"Handler already registered for {message_cls.type_name()}"
                + (f" role {role_name}" if role_name else ""),
                details={"message_type": message_cls.type_name(), "role": role_name},
            )

        self._registrations[registration.key] = registration
        logger.info(
            f"Registered {type(handler).__name__} for {message_cls.type_name()}"
            + (f" ({role_name})" if role_name else "")
        )
        return registration

    def resolve(self, type_name: str, role: Optional[Any] = None) -> MessageHandler:
        role_name = getattr(role, "value", role)
        try:
            return self._registrations[(type_name, role_name)].handler
        except KeyError:
            raise HandlerRegistrationError(
                f"No handler registered for {type_name}"
                + (f" role {role_name}" if role_name else "")
            ) from None

    def registrations(self) -> List[Registration]:
        return list(self._registrations.values())

    def __len__(self) -> int:
        return len(self._registrations)

    def build_consumers(
        self,
        connection_factory: BrokerConnectionFactory,
        tracker=None,
        retry_policy: Optional[RetryPolicy] = None,
        stop_event: Optional[threading.Event] = None,
        **kwargs,
    ) -> List[MessageConsumerService]:
        """One consumer runtime per registration, sharing one stop signal"""
        stop_event = stop_event or threading.Event()
        consumers: List[MessageConsumerService] = []

        for registration in self._registrations.values():
            common = dict(
                tracker=tracker,
                stage=registration.stage,
                retry_policy=retry_policy,
                stop_event=stop_event,
                **kwargs,
            )
            if registration.role is None:
                consumer = MessageConsumerService(
                    registration.message_cls,
                    registration.handler,
                    connection_factory,
                    **common,
                )
            else:
                consumer = RoleBasedMessageConsumerService(
                    registration.message_cls,
                    registration.handler,
                    connection_factory,
                    role=registration.role,
                    **common,
                )
            consumers.append(consumer)

        return consumers
