"""Serialize Python closures by source, with their captured state.

Example:
    >>> from pyclosure import Serializer
    >>> serializer = Serializer(signing_key="secret")
    >>> payload = serializer.serialize(make_adder(8))
    >>> serializer.unserialize(payload)(1)
    9
"""

__version__ = "0.1.0"

from .schema import ConfigModel

CONFIG = ConfigModel()

from .analyzer import ClosureAnalyzer, ClosureRecord, Location, Token, TokenAnalyzer, TreeAnalyzer
from .closure import RECURSION, SerializableClosure, reconstruct_closure
from .exceptions import (
    ClosureAnalysisError,
    ClosureError,
    ClosureSerializationError,
    ClosureSerializationWarning,
    ClosureUnserializationError,
)
from .reflection import FunctionReflection, bind
from .serialization import dumps, loads
from .serializer import Serializer, wrap_closures
