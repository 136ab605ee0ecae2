"""Core building blocks: models, errors, settings, cancellation and queues."""

from agentbridge.core.async_queue import AsyncQueue, QueueFinished
from agentbridge.core.cancellation import CancellationToken
from agentbridge.core.errors import (
    AdmissionRejection,
    BackendError,
    BridgeError,
    CommandValidationError,
    ConfigurationError,
    RejectionReason,
    TransportError,
)
from agentbridge.core.models import MutableStrictBaseModel, StrictBaseModel

__all__ = [
    "AsyncQueue",
    "QueueFinished",
    "CancellationToken",
    "BridgeError",
    "AdmissionRejection",
    "RejectionReason",
    "CommandValidationError",
    "BackendError",
    "TransportError",
    "ConfigurationError",
    "StrictBaseModel",
    "MutableStrictBaseModel",
]
