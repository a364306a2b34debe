"""Byte codec for closures and the object graphs they capture.

This module provides a cloudpickle based pickler that never pickles a function
by bytecode. Functions cloudpickle would serialize by value (lambdas, nested
functions, functions defined in ``__main__``) are routed through a
SerializableClosure instead, so they travel as source code plus captured
context and are rebuilt by recompiling that source.

Functions importable by name are still pickled by reference, exactly as
cloudpickle does.
"""

import io
import pickle
import types
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO, Optional, Union

import cloudpickle

from .closure import SerializableClosure

if TYPE_CHECKING:
    from .serializer import Serializer

DEFAULT_PROTOCOL = 4


def _unwrap_closure(carrier: SerializableClosure) -> types.FunctionType:
    return carrier.get_closure()


class CustomCloudPickler(cloudpickle.Pickler):
    """A cloudpickle Pickler that serializes dynamic functions by source.

    Args:
        file: Binary file-like object to write to.
        protocol: Pickle protocol. Defaults to DEFAULT_PROTOCOL.
        serializer: Serializer shared by the carriers created for functions
            met in the object graph. Defaults to one built from ``CONFIG``.

    Example:
        >>> buffer = io.BytesIO()
        >>> CustomCloudPickler(buffer).dump(lambda x: x * 2)
    """

    def __init__(
        self,
        file: BinaryIO,
        protocol: Optional[int] = None,
        serializer: Optional["Serializer"] = None,
    ):

        super().__init__(file, protocol=protocol or DEFAULT_PROTOCOL)

        self.serializer = serializer

    def _dynamic_function_reduce(self, func: types.FunctionType) -> tuple:
        """Reduce a function cloudpickle would otherwise pickle by bytecode.

        The function is carried by a SerializableClosure, whose state is the
        trimmed analysis record. On load, the carrier rebuilds the function
        and _unwrap_closure hands it back in the carrier's place.
        """

        return (_unwrap_closure, (SerializableClosure(func, self.serializer),))


def dumps(
    obj: Any,
    path: Optional[Union[str, Path]] = None,
    protocol: int = DEFAULT_PROTOCOL,
    serializer: Optional["Serializer"] = None,
) -> Optional[bytes]:
    """Serialize an object, carrying any dynamic function by source.

    Args:
        obj: Any picklable object.
        path: Optional file path to write the serialized data to. If None,
            the serialized bytes are returned.
        protocol: Pickle protocol version to use.
        serializer: Serializer used to analyze the functions met.

    Returns:
        The serialized bytes, or None when written to path.
    """

    if path is None:
        buffer = io.BytesIO()
        CustomCloudPickler(buffer, protocol=protocol, serializer=serializer).dump(obj)
        buffer.seek(0)
        return buffer.read()

    path = Path(path)
    with path.open("wb") as file:
        CustomCloudPickler(file, protocol=protocol, serializer=serializer).dump(obj)


def loads(data: Union[str, bytes, bytearray, memoryview, Path]) -> Any:
    """Deserialize data written by dumps().

    Args:
        data: Serialized bytes (or a bytes-like object), or a path to a file
            holding them.

    Returns:
        The deserialized object, with every carried function rebuilt.
    """

    if isinstance(data, (bytes, bytearray, memoryview)):
        return pickle.loads(data)

    path = Path(data)
    with path.open("rb") as file:
        return pickle.load(file)
