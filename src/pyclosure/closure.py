"""The closure carrier and the procedure that rebuilds closures from data.

A SerializableClosure is what actually goes through pickle. Serializing one
analyzes the wrapped function (once, lazily) and stores the trimmed record;
unserializing one rebuilds the function with reconstruct_closure.

Reconstruction compiles the captured code inside a generated factory function
whose parameters are the captured variable names::

    from __future__ import annotations
    class Foo:
        def __pyclosure_factory__(operand, self):
            __pyclosure__ = (lambda n: n + operand
            )
            return __pyclosure__

Calling the factory with the captured values yields a function that closes
over real cells holding those values. The ``class`` wrapper is only emitted
when the closure was written inside a class, so private attribute names are
mangled the same way they were originally.
"""

import ast
import builtins
import textwrap
import types
import warnings
from io import StringIO
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text
from typing_extensions import Self

from .exceptions import (
    ClosureAnalysisError,
    ClosureSerializationError,
    ClosureSerializationWarning,
    ClosureUnserializationError,
)
from .reflection import RECEIVER_NAME, bind

if TYPE_CHECKING:
    from .serializer import Serializer

RECONSTRUCTED_MODULE = "__pyclosure__"
RECONSTRUCTED_FILENAME = "<pyclosure>"

FACTORY_NAME = "__pyclosure_factory__"
RESULT_NAME = "__pyclosure__"


class _Recursion:
    """Marks the captured variable through which a closure refers to itself."""

    _instance = None

    def __new__(cls):

        if cls._instance is None:
            cls._instance = super().__new__(cls)

        return cls._instance

    def __reduce__(self):
        # Pickled by reference so identity survives a round trip.
        return "RECURSION"

    def __repr__(self) -> str:
        return "RECURSION"


RECURSION = _Recursion()


class SerializableClosure:
    """Carries one closure and the serializer used to analyze it.

    Args:
        closure: The function to carry.
        serializer: Serializer whose analyzer is used when the carrier is
            pickled. Defaults to a Serializer built from ``CONFIG``.
    """

    def __init__(
        self,
        closure: types.FunctionType,
        serializer: Optional["Serializer"] = None,
    ):

        self._closure = closure
        self._serializer = serializer
        self._data: Optional[Dict[str, Any]] = None

    @property
    def serializer(self) -> "Serializer":

        if self._serializer is None:
            from .serializer import Serializer

            self._serializer = Serializer()

        return self._serializer

    @property
    def closure(self) -> types.FunctionType:
        return self.get_closure()

    def get_closure(self) -> types.FunctionType:

        if self._closure is None:
            raise RuntimeError(
                "Closure is not defined. This object must be properly initialized."
            )

        return self._closure

    def __call__(self, *args, **kwargs):
        return self.get_closure()(*args, **kwargs)

    def bind_to(self, receiver: Any, scope: Optional[str] = None) -> Self:
        """Carry a copy of the closure bound to a different receiver."""

        return type(self)(bind(self.get_closure(), receiver, scope), self._serializer)

    def debug_info(self) -> Dict[str, Any]:
        """The trimmed record, captured fresh if the carrier was never pickled."""

        if self._data is not None:
            return self._data

        return self.serializer.get_data(self.get_closure(), for_serialization=True)

    def _capture(self) -> Dict[str, Any]:

        if self._data is None:
            try:
                self._data = self.serializer.get_data(
                    self.get_closure(), for_serialization=True
                )
            except ClosureAnalysisError as e:
                raise ClosureSerializationError(str(e)) from e

        return self._data

    def __getstate__(self) -> Dict[str, Any]:

        try:
            return self._capture()
        except ClosureSerializationError as e:
            # Pickling must not fail because one closure could not be
            # analyzed. An empty shell is written instead.
            warnings.warn(
                f"Serialization of closure failed: {e}",
                ClosureSerializationWarning,
                stacklevel=2,
            )

            return {}

    def __reduce__(self):
        return (_new_carrier, (), self.__getstate__())

    def __setstate__(self, data: Dict[str, Any]) -> None:

        self._data = data
        self._serializer = None
        self._closure = None

        closure = reconstruct_closure(data)

        if closure is None:
            raise ClosureUnserializationError(
                "The closure is corrupted and cannot be unserialized."
            )

        self._closure = closure

    def _table(self) -> Table:

        table = Table(title="SerializableClosure", show_header=False)
        table.add_column("Field", no_wrap=True)
        table.add_column("Value")

        closure = self._closure
        table.add_row(
            "closure",
            Text(closure.__qualname__ if closure is not None else "<uninitialized>"),
        )

        if self._data:
            table.add_row("code", Text(self._data["code"]))
            table.add_row("context", Text(", ".join(self._data["context"]) or "-"))
            table.add_row("scope", str(self._data["scope"]))
            table.add_row("binding", type(self._data["binding"]).__name__)
            table.add_row("static", str(self._data["is_static"]))

        return table

    def __repr__(self) -> str:

        buf = StringIO()
        console = Console(file=buf, force_terminal=False, stderr=False, width=100)
        console.print(self._table())

        return buf.getvalue()


def _new_carrier() -> SerializableClosure:
    # Unpickling entry point. __setstate__ fills the carrier in.
    return SerializableClosure.__new__(SerializableClosure)


def _parse_literal(code: str) -> Optional[ast.AST]:

    module = ast.parse(code)

    if len(module.body) != 1:
        return None

    statement = module.body[0]

    if isinstance(statement, ast.Expr) and isinstance(statement.value, ast.Lambda):
        return statement.value

    if isinstance(statement, (ast.FunctionDef, ast.AsyncFunctionDef)):
        return statement

    return None


def _scope_class_name(scope: Optional[str]) -> Optional[str]:

    if not scope:
        return None

    name = scope.rsplit(".", 1)[-1]

    return name if name.isidentifier() else None


def factory_source(
    code: str,
    literal: ast.AST,
    parameters: List[str],
    recursive_slot: Optional[str] = None,
    scope: Optional[str] = None,
) -> str:
    """Source of the factory that recreates a closure over its parameters."""

    body = []

    if recursive_slot is not None:
        body.append(f"    {recursive_slot} = None")

    if isinstance(literal, ast.Lambda):
        # The closing parenthesis goes on its own line in case the code ends
        # with a comment.
        body.append(f"    {RESULT_NAME} = ({code}\n    )")
        result = RESULT_NAME
    else:
        body.append(textwrap.indent(code, "    "))
        result = literal.name

    if recursive_slot is not None and recursive_slot != result:
        body.append(f"    {recursive_slot} = {result}")

    body.append(f"    return {result}")

    source = f"def {FACTORY_NAME}({', '.join(parameters)}):\n" + "\n".join(body) + "\n"

    class_name = _scope_class_name(scope)

    if class_name is not None:
        source = f"class {class_name}:\n" + textwrap.indent(source, "    ")

    return "from __future__ import annotations\n" + source


def reconstruct_closure(data: Dict[str, Any]) -> Optional[types.FunctionType]:
    """Rebuild a live function from a trimmed closure record.

    Captured carriers are unwrapped to their closures, and the variable (or
    global) marked RECURSION is pointed at the rebuilt function itself.

    Args:
        data: Record with the keys ``code``, ``context``, ``globals``,
            ``binding``, ``scope`` and ``is_static``.

    Returns:
        The rebuilt function, or None if the code does not denote exactly
        one function literal or fails to compile.
    """

    code = data.get("code")

    if not isinstance(code, str):
        return None

    try:
        literal = _parse_literal(code)
    except (SyntaxError, ValueError):
        return None

    if literal is None:
        return None

    recursive_slot = None
    environment = {}

    for name, value in (data.get("context") or {}).items():

        if isinstance(value, SerializableClosure):
            value = value.get_closure()
        elif value is RECURSION:
            recursive_slot = name
            continue

        environment[name] = value

    func_globals = {
        "__builtins__": builtins,
        "__name__": RECONSTRUCTED_MODULE,
        "__file__": RECONSTRUCTED_FILENAME,
    }
    recursive_globals = []

    for name, value in (data.get("globals") or {}).items():

        if isinstance(value, SerializableClosure):
            value = value.get_closure()
        elif value is RECURSION:
            recursive_globals.append(name)
            continue

        func_globals[name] = value

    binding = data.get("binding")
    scope = data.get("scope")
    is_static = bool(data.get("is_static"))

    parameters = list(environment)
    arguments = list(environment.values())

    # A closure that can take a receiver keeps its slot even when unbound.
    if binding is not None or not is_static:
        parameters.append(RECEIVER_NAME)
        arguments.append(binding)

    source = factory_source(code, literal, parameters, recursive_slot, scope)

    namespace = {}

    try:
        exec(compile(source, RECONSTRUCTED_FILENAME, "exec"), func_globals, namespace)
    except SyntaxError:
        return None

    class_name = _scope_class_name(scope)

    if class_name is not None:
        factory = namespace[class_name].__dict__[FACTORY_NAME]
    else:
        factory = namespace[FACTORY_NAME]

    closure = factory(*arguments)

    if not isinstance(closure, types.FunctionType):
        return None

    for name in recursive_globals:
        func_globals[name] = closure

    _resolve_annotations(closure, func_globals, environment)

    closure.__source__ = source

    if scope is not None:
        closure.__scope__ = scope

    return bind(closure, binding, scope)


def _resolve_annotations(
    closure: types.FunctionType, func_globals: Dict[str, Any], environment: Dict[str, Any]
) -> None:
    # The factory is compiled with postponed annotations, so they come back as
    # strings. Those that name something reachable get their objects back;
    # the rest stay strings, as they would under postponed evaluation.
    annotations = closure.__annotations__

    for name, annotation in list(annotations.items()):

        if not isinstance(annotation, str):
            continue

        try:
            annotations[name] = eval(annotation, func_globals, environment)
        except (NameError, AttributeError, SyntaxError, TypeError):
            continue
