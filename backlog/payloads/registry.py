"""
Payload registry and serialization.

A payload is stored as ``{"type": <tag>, "data": {...}}``. The tag selects a
registered pydantic model class which rebuilds the payload from ``data``.
Payloads must be safe to run more than once: a worker that dies mid-run
leaves the job to be picked up again once its lease expires.
"""

import importlib
import logging
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ConfigDict, ValidationError

from backlog.errors import DeserializationError, InvalidPayloadError

logger = logging.getLogger(__name__)


@runtime_checkable
class Performable(Protocol):
    """Anything a worker can run."""

    def perform(self) -> Any: ...


class Payload(BaseModel):
    """
    Base class for registered payloads.

    Subclasses implement ``perform`` (plain or ``async def``) and may
    override ``display_name``, ``max_attempts``, ``keep_after_success`` and
    ``on_exception``. Only declared fields are persisted, so they should
    hold primitive values. A payload that declares a ``job_key`` field is
    handed the unique key of its job before it runs.
    """

    model_config = ConfigDict(extra="forbid")

    def perform(self) -> Any:
        raise NotImplementedError

    def display_name(self) -> str:
        return type(self).__name__

    def keep_after_success(self) -> bool:
        return False

    def on_exception(self, error: Exception) -> None:
        """Called after a failed run has been recorded."""


PayloadT = TypeVar("PayloadT", bound=type[BaseModel])

# Payload registry: type tag -> model class
_payload_types: dict[str, type[BaseModel]] = {}
# Tags that may be enqueued over HTTP
_public_types: set[str] = set()


def register_payload(type_name: str, public: bool = False) -> Callable[[PayloadT], PayloadT]:
    """
    Decorator to register a payload class under a type tag.

    Args:
        type_name: The tag persisted with every job of this class.
        public: Whether HTTP clients may enqueue this type.

    Returns:
        Decorator function.

    Example:
        @register_payload("send_email")
        class SendEmail(Payload):
            address: str

            async def perform(self) -> None:
                ...
    """
    def decorator(cls: PayloadT) -> PayloadT:
        existing = _payload_types.get(type_name)
        if existing is not None and existing is not cls:
            logger.warning(
                f"Replacing payload registered for type: {type_name}",
                extra={"previous": existing.__qualname__, "current": cls.__qualname__},
            )
        _payload_types[type_name] = cls
        if public:
            _public_types.add(type_name)
        else:
            _public_types.discard(type_name)
        cls.__payload_type__ = type_name
        logger.debug(f"Registered payload for type: {type_name}")
        return cls
    return decorator


def get_payload_class(type_name: str) -> type[BaseModel] | None:
    """
    Get the payload class registered for a tag.

    Args:
        type_name: The type tag.

    Returns:
        The registered class or None if not found.
    """
    return _payload_types.get(type_name)


def list_payload_types() -> list[str]:
    """List all registered type tags."""
    return list(_payload_types.keys())


def is_public_payload(type_name: str) -> bool:
    """Whether a tag was registered with ``public=True``."""
    return type_name in _public_types


def serialize_payload(payload: Any) -> dict[str, Any]:
    """
    Turn a payload into its stored form.

    Args:
        payload: A registered payload instance.

    Returns:
        The ``{"type", "data"}`` mapping.

    Raises:
        InvalidPayloadError: If the payload cannot be run or its class
            is not registered.
    """
    if not callable(getattr(payload, "perform", None)):
        raise InvalidPayloadError("Cannot enqueue items which do not respond to perform")

    type_name = getattr(type(payload), "__payload_type__", None)
    if type_name is None or _payload_types.get(type_name) is not type(payload):
        raise InvalidPayloadError(
            f"Payload class {type(payload).__qualname__} is not registered; "
            "decorate it with @register_payload"
        )

    return {"type": type_name, "data": payload.model_dump(mode="json")}


def deserialize_payload(source: Any) -> Any:
    """
    Rebuild a payload from its stored form.

    Args:
        source: The stored ``{"type", "data"}`` mapping.

    Returns:
        The payload instance.

    Raises:
        DeserializationError: If the tag is unknown, the mapping is
            malformed or the data no longer validates.
    """
    if not isinstance(source, dict) or not isinstance(source.get("type"), str):
        raise DeserializationError("Job failed to load: malformed payload")

    type_name = source["type"]
    cls = _payload_types.get(type_name)
    if cls is None:
        raise DeserializationError(
            f"Job failed to load: unknown payload type {type_name!r}. "
            "Make sure the module registering it is imported by the worker."
        )

    try:
        payload = cls.model_validate(source.get("data") or {})
    except ValidationError as e:
        raise DeserializationError(f"Job failed to load: {e}") from e

    if not callable(getattr(payload, "perform", None)):
        raise DeserializationError(f"Job failed to load: {type_name!r} has no perform()")
    return payload


def load_payload_modules(module_names: list[str]) -> None:
    """
    Import the modules that register payloads.

    Worker and API processes call this at startup; a payload whose module
    was never imported cannot be rebuilt.
    """
    for module_name in module_names:
        importlib.import_module(module_name)
        logger.info(f"Loaded payload module: {module_name}")
