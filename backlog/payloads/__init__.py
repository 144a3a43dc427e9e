"""
Payload module.
Contains the payload registry, serialization and the built-in call payloads.
"""

from backlog.payloads.registry import (
    Payload,
    Performable,
    deserialize_payload,
    get_payload_class,
    is_public_payload,
    list_payload_types,
    load_payload_modules,
    register_payload,
    serialize_payload,
)
from backlog.payloads.performable import (
    PerformableFunction,
    PerformableMethod,
    enqueue_method,
)

__all__ = [
    "Payload",
    "Performable",
    "register_payload",
    "get_payload_class",
    "is_public_payload",
    "list_payload_types",
    "load_payload_modules",
    "serialize_payload",
    "deserialize_payload",
    "PerformableFunction",
    "PerformableMethod",
    "enqueue_method",
]
