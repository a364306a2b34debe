"""Turns closures into signed byte payloads and back.

The wire format is the pickled SerializableClosure, optionally preceded by a
45 byte signature block: ``b"%"`` followed by the base64 encoded HMAC-SHA256 of
the pickled bytes under the signing key. Payloads are verified before they are
unpickled, since unpickling untrusted data can run arbitrary code.
"""

import base64
import binascii
import copyreg
import hashlib
import hmac
import types
import warnings
from collections.abc import MutableMapping, MutableSequence, MutableSet
from functools import singledispatch
from typing import Any, Dict, Optional, Set, Union

from . import CONFIG
from .analyzer import ClosureAnalyzer, ClosureRecord
from .closure import RECURSION, SerializableClosure
from .exceptions import ClosureUnserializationError
from .reflection import FunctionReflection, bind
from .serialization import dumps, loads

SIGNATURE_MARKER = b"%"
# Length of a base64 encoded SHA256 digest
SIGNATURE_LENGTH = 44


class Serializer:
    """Serializes closures with a configurable analyzer and signing key.

    Args:
        analyzer: Analysis strategy. Defaults to ``CONFIG.analyzer()``.
        signing_key: Key for payload signatures. Defaults to
            ``CONFIG.APP.SIGNING_KEY``; None disables signing.
    """

    def __init__(
        self,
        analyzer: Optional[ClosureAnalyzer] = None,
        signing_key: Optional[Union[str, bytes]] = None,
    ):

        if analyzer is None:
            analyzer = CONFIG.analyzer()

        if signing_key is None:
            signing_key = CONFIG.APP.SIGNING_KEY

        if isinstance(signing_key, str):
            signing_key = signing_key.encode("utf-8")

        self.analyzer = analyzer
        self.signing_key: Optional[bytes] = signing_key
        self.protocol = CONFIG.APP.PROTOCOL

    def serialize(self, closure: types.FunctionType) -> bytes:
        """Serialize a closure, signing the payload when a key is set."""

        serialized = dumps(
            SerializableClosure(closure, self),
            protocol=self.protocol,
            serializer=self,
        )

        if self.signing_key is not None:
            signature = base64.b64encode(self._calculate_signature(serialized))
            serialized = SIGNATURE_MARKER + signature + serialized

        return serialized

    def unserialize(self, serialized: bytes) -> types.FunctionType:
        """Rebuild a closure from a payload produced by serialize().

        Raises:
            ClosureUnserializationError: If the signature does not match, the
                payload cannot be decoded, or it does not hold a closure.
        """

        signature = b""

        if serialized[:1] == SIGNATURE_MARKER:
            try:
                signature = base64.b64decode(
                    serialized[1 : SIGNATURE_LENGTH + 1], validate=True
                )
            except binascii.Error:
                signature = None

            serialized = serialized[SIGNATURE_LENGTH + 1 :]

        if self.signing_key is not None:
            self._verify_signature(signature, serialized)

        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")

                unserialized = loads(serialized)

        except ClosureUnserializationError:
            raise
        except Exception as e:
            raise ClosureUnserializationError(
                "The closure could not be unserialized."
            ) from e

        if not isinstance(unserialized, SerializableClosure):
            raise ClosureUnserializationError(
                "The closure did not unserialize to a SerializableClosure."
            )

        return unserialized.get_closure()

    def get_data(
        self, closure: types.FunctionType, for_serialization: bool = False
    ) -> Union[ClosureRecord, Dict[str, Any]]:
        """Analyze a closure.

        Args:
            closure: The function to analyze.
            for_serialization: Return the trimmed record that goes into a
                payload instead of the full ClosureRecord. The binding is
                dropped unless the code uses the receiver, and captured
                functions are wrapped in carriers (or replaced by RECURSION
                when they are the closure itself).
        """

        record = self.analyzer.analyze(closure)

        if not for_serialization:
            return record

        if not record.has_this:
            record.binding = None

        data = record.trim()

        context = {}
        for name, value in data["context"].items():
            if value is closure:
                value = RECURSION
            elif isinstance(value, types.FunctionType):
                value = SerializableClosure(value, self)
            context[name] = value

        data["context"] = context
        data["globals"] = {
            name: RECURSION if value is closure else value
            for name, value in data["globals"].items()
        }

        return data

    def _calculate_signature(self, data: bytes) -> bytes:
        return hmac.new(self.signing_key, data, hashlib.sha256).digest()

    def _verify_signature(self, signature: Optional[bytes], data: bytes) -> None:

        if signature is None or not hmac.compare_digest(
            signature, self._calculate_signature(data)
        ):
            raise ClosureUnserializationError(
                "The signature of the closure's data is invalid, which means the "
                "serialized closure has been modified and is unsafe to unserialize."
            )


def _has_custom_reduce(obj: Any) -> bool:

    cls = type(obj)

    if cls in copyreg.dispatch_table:
        return True

    return (
        cls.__reduce_ex__ is not object.__reduce_ex__
        or cls.__reduce__ is not object.__reduce__
        or getattr(cls, "__getstate__", None)
        is not getattr(object, "__getstate__", None)
    )


def _fields(obj: Any) -> Dict[str, Any]:

    fields = dict(getattr(obj, "__dict__", {}))

    for cls in type(obj).__mro__:

        slots = cls.__dict__.get("__slots__", ())
        if isinstance(slots, str):
            slots = (slots,)

        for name in slots:
            if name in ("__dict__", "__weakref__") or name in fields:
                continue
            # Private slots are stored under their mangled name.
            if name.startswith("__") and not name.endswith("__"):
                name = f"_{cls.__name__.lstrip('_')}{name}"
            if hasattr(obj, name):
                fields[name] = getattr(obj, name)

    return fields


def wrap_closures(value: Any, serializer: Serializer) -> Any:
    """Replace every closure reachable from value with a SerializableClosure.

    Mutable containers and plain objects are rewritten in place. Tuples are
    rebuilt, so the (possibly new) value is returned and callers must use it.
    A closure's receiver is walked first, then the closure is rebound to it.

    Args:
        value: Any value.
        serializer: Serializer shared by every carrier created.

    Returns:
        The value, or its replacement if it was a closure or a tuple.
    """

    return _wrap(value, serializer, set())


@singledispatch
def _wrap(value: Any, serializer: Serializer, visited: Set[int]) -> Any:

    if id(value) in visited:
        return value

    if not (hasattr(value, "__dict__") or hasattr(type(value), "__slots__")):
        return value

    if _has_custom_reduce(value):
        return value

    visited.add(id(value))

    for name, field in _fields(value).items():
        wrapped = _wrap(field, serializer, visited)
        if wrapped is not field:
            setattr(value, name, wrapped)

    return value


@_wrap.register(types.FunctionType)
def _(value: types.FunctionType, serializer: Serializer, visited: Set[int]) -> Any:

    reflection = FunctionReflection(value)
    receiver = reflection.receiver

    if receiver is not None:
        receiver = _wrap(receiver, serializer, visited)
        value = bind(value, receiver, reflection.scope)

    return SerializableClosure(value, serializer)


@_wrap.register(SerializableClosure)
@_wrap.register(type)
@_wrap.register(types.ModuleType)
@_wrap.register(str)
@_wrap.register(bytes)
@_wrap.register(int)
@_wrap.register(float)
@_wrap.register(complex)
@_wrap.register(type(None))
def _(value: Any, serializer: Serializer, visited: Set[int]) -> Any:
    return value


@_wrap.register(MutableMapping)
def _(value: MutableMapping, serializer: Serializer, visited: Set[int]) -> Any:

    if id(value) in visited:
        return value

    visited.add(id(value))

    for key, item in list(value.items()):
        wrapped = _wrap(item, serializer, visited)
        if wrapped is not item:
            value[key] = wrapped

    return value


@_wrap.register(MutableSequence)
def _(value: MutableSequence, serializer: Serializer, visited: Set[int]) -> Any:

    if id(value) in visited:
        return value

    visited.add(id(value))

    for index, item in enumerate(list(value)):
        wrapped = _wrap(item, serializer, visited)
        if wrapped is not item:
            value[index] = wrapped

    return value


@_wrap.register(MutableSet)
def _(value: MutableSet, serializer: Serializer, visited: Set[int]) -> Any:

    if id(value) in visited:
        return value

    visited.add(id(value))

    for item in list(value):
        wrapped = _wrap(item, serializer, visited)
        if wrapped is not item:
            value.discard(item)
            value.add(wrapped)

    return value


@_wrap.register(tuple)
def _(value: tuple, serializer: Serializer, visited: Set[int]) -> Any:

    if id(value) in visited:
        return value

    visited.add(id(value))

    items = [_wrap(item, serializer, visited) for item in value]

    if all(wrapped is item for wrapped, item in zip(items, value)):
        return value

    # Named tuples take their fields as separate arguments
    if hasattr(value, "_make"):
        return value._make(items)

    return type(value)(items)
