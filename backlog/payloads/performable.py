"""
Built-in payloads that defer a plain call.

Only primitive references are stored, never object graphs:
- ``PerformableFunction`` calls a module level function
- ``PerformableMethod`` calls a method on a class or on a persisted
  SQLAlchemy entity, looked up again by primary key when the job runs

Reference formats::

    pkg.module:function
    CLASS:pkg.module:ClassName
    ENTITY:pkg.module:ModelName:<primary key>
"""

import asyncio
import importlib
import inspect as pyinspect
import logging
import re
from typing import Any

from pydantic import Field
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import InstanceState

from backlog.errors import DeserializationError, InvalidPayloadError
from backlog.payloads.registry import Payload, register_payload

logger = logging.getLogger(__name__)

CLASS_REF_FORMAT = re.compile(r"^CLASS:([\w.]+):([\w.]+)$")
ENTITY_REF_FORMAT = re.compile(r"^ENTITY:([\w.]+):([\w.]+):(.+)$")
FUNCTION_REF_FORMAT = re.compile(r"^([\w.]+):([\w.]+)$")


def import_object(module_name: str, qualname: str) -> Any:
    """
    Import ``qualname`` from ``module_name``.

    Raises:
        DeserializationError: If the module or attribute is missing.
    """
    try:
        obj: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as e:
        raise DeserializationError(
            f"Job failed to load: {e}. Make sure {module_name} is importable by the worker."
        ) from e
    return obj


def _is_entity(obj: Any) -> bool:
    return isinstance(sa_inspect(obj, raiseerr=False), InstanceState)


def dump_reference(obj: Any) -> Any:
    """Store classes and persisted entities by reference; leave other values alone."""
    if pyinspect.isclass(obj):
        return f"CLASS:{obj.__module__}:{obj.__qualname__}"
    if _is_entity(obj):
        identity = sa_inspect(obj).identity
        if identity is None:
            raise InvalidPayloadError(f"Cannot reference unsaved entity {obj!r}")
        if len(identity) != 1:
            raise InvalidPayloadError(f"Composite primary keys are not supported: {obj!r}")
        cls = type(obj)
        return f"ENTITY:{cls.__module__}:{cls.__qualname__}:{identity[0]}"
    return obj


def _coerce_primary_key(model: Any, raw: str) -> Any:
    column = sa_inspect(model).primary_key[0]
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return raw
    return python_type(raw)


class EntityMissing(Exception):
    """The referenced row was deleted after the job was enqueued."""


async def load_reference(value: Any, session: Any | None) -> Any:
    """Resolve a stored reference back into a class or entity."""
    if not isinstance(value, str):
        return value

    match = CLASS_REF_FORMAT.match(value)
    if match:
        return import_object(match.group(1), match.group(2))

    match = ENTITY_REF_FORMAT.match(value)
    if match:
        model = import_object(match.group(1), match.group(2))
        if session is None:
            raise DeserializationError(f"No session available to load {value}")
        entity = await session.get(model, _coerce_primary_key(model, match.group(3)))
        if entity is None:
            raise EntityMissing(value)
        return entity

    return value


async def _call(func: Any, args: list[Any]) -> Any:
    if pyinspect.iscoroutinefunction(func):
        return await func(*args)
    result = await asyncio.to_thread(func, *args)
    if pyinspect.isawaitable(result):
        result = await result
    return result


def _is_entity_ref(value: Any) -> bool:
    return isinstance(value, str) and ENTITY_REF_FORMAT.match(value) is not None


async def _resolve_and_call(refs: list[Any], invoke: Any, label: str) -> Any:
    """
    Load ``refs`` and hand them to ``invoke(loaded)``.

    Entities are loaded in their own session and detached before the call,
    so that a blocking method runs in a thread where the deadline can still
    fire. Their changes are merged back and committed once the call returns.
    A detached entity cannot lazy load relationships. A missing entity
    turns the call into a no-op.
    """
    if not any(_is_entity_ref(r) for r in refs):
        loaded = [await load_reference(r, None) for r in refs]
        return await invoke(loaded)

    from backlog.db.connection import get_session_context

    async with get_session_context() as session:
        try:
            loaded = [await load_reference(r, session) for r in refs]
        except EntityMissing as e:
            logger.info(
                "Referenced entity no longer exists, skipping",
                extra={"reference": str(e), "job": label},
            )
            return True
        entities = [obj for obj in loaded if _is_entity(obj)]
        session.expunge_all()
        result = await invoke(loaded)
        for entity in entities:
            await session.merge(entity)
        return result


@register_payload("performable_function")
class PerformableFunction(Payload):
    """Call ``function`` with ``args`` when the job runs."""

    function: str = Field(pattern=FUNCTION_REF_FORMAT.pattern)
    args: list[Any] = Field(default_factory=list)

    @classmethod
    def build(cls, func: Any, *args: Any) -> "PerformableFunction":
        """
        Create a payload for a module level function.

        Raises:
            InvalidPayloadError: If ``func`` cannot be imported by name.
        """
        if not callable(func) or "<" in getattr(func, "__qualname__", "<"):
            raise InvalidPayloadError(f"{func!r} is not an importable function")
        return cls(
            function=f"{func.__module__}:{func.__qualname__}",
            args=[dump_reference(a) for a in args],
        )

    def display_name(self) -> str:
        return self.function.replace(":", ".")

    async def perform(self) -> Any:
        module_name, qualname = self.function.split(":", 1)
        func = import_object(module_name, qualname)

        async def invoke(args: list[Any]) -> Any:
            return await _call(func, args)

        return await _resolve_and_call(list(self.args), invoke, self.display_name())


@register_payload("performable_method")
class PerformableMethod(Payload):
    """
    Call ``method`` on ``target`` with ``args`` when the job runs.

    If the target entity, or an entity passed as an argument, has been
    deleted in the meantime there is nothing left to do and the job
    succeeds without calling anything.
    """

    target: str
    method: str = Field(pattern=r"^\w+$")
    args: list[Any] = Field(default_factory=list)

    @classmethod
    def build(cls, obj: Any, method: str, *args: Any) -> "PerformableMethod":
        """
        Create a payload for ``obj.method(*args)``.

        Raises:
            AttributeError: If ``obj`` has no such method.
            InvalidPayloadError: If ``obj`` is neither a class nor a
                persisted entity.
        """
        if not callable(getattr(obj, method, None)):
            raise AttributeError(f"undefined method {method!r} for {obj!r}")
        target = dump_reference(obj)
        if not isinstance(target, str) or not (
            CLASS_REF_FORMAT.match(target) or ENTITY_REF_FORMAT.match(target)
        ):
            raise InvalidPayloadError(
                f"Only classes and persisted entities can be job targets, got {obj!r}"
            )
        return cls(target=target, method=method, args=[dump_reference(a) for a in args])

    def display_name(self) -> str:
        match = CLASS_REF_FORMAT.match(self.target)
        if match:
            return f"{match.group(2)}.{self.method}"
        match = ENTITY_REF_FORMAT.match(self.target)
        if match:
            return f"{match.group(2)}#{self.method}"
        return f"Unknown#{self.method}"

    async def perform(self) -> Any:
        async def invoke(loaded: list[Any]) -> Any:
            target, *args = loaded
            return await _call(getattr(target, self.method), args)

        return await _resolve_and_call([self.target, *self.args], invoke, self.display_name())


async def enqueue_method(
    repo: Any,
    obj: Any,
    method: str,
    *args: Any,
    priority: int = 0,
    run_at: Any | None = None,
) -> Any:
    """
    Enqueue ``obj.method(*args)`` to run in the background.

    Args:
        repo: A ``JobRepository``.
        obj: A class or a persisted entity.
        method: Method name on ``obj``.
        *args: Arguments; classes and entities are stored by reference.
        priority: Job priority.
        run_at: Earliest time to run.

    Returns:
        The created Job.
    """
    payload = PerformableMethod.build(obj, method, *args)
    return await repo.enqueue(payload, priority=priority, run_at=run_at)
