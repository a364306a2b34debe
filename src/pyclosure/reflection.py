"""Host reflection over live Python functions.

The analyzers never introspect functions directly. Everything they need about
a function (where its source lives, which variables it closed over, which
receiver it is bound to and which class scope it was written in) comes through
FunctionReflection, and rebinding goes through bind().

A "receiver" is the object a closure reaches through a closed-over variable
named ``self``, which is how a lambda or nested ``def`` written inside a method
refers to the instance the method was called on.
"""

import sys
import tokenize
import types
from typing import Any, Dict, Optional, Tuple

from cloudpickle.cloudpickle import (
    _empty_cell_value,
    _function_getstate,
    _get_cell_contents,
)

# Name of the closed-over variable that holds a closure's receiver
RECEIVER_NAME = "self"

# Module attributes that describe where code lives rather than what it uses.
# They are resolved at reconstruction time, never captured.
MODULE_IDENTITY_GLOBALS = frozenset(
    {
        "__builtins__",
        "__cached__",
        "__file__",
        "__loader__",
        "__name__",
        "__package__",
        "__path__",
        "__spec__",
    }
)


def _code_end_line(code: types.CodeType) -> int:
    """Largest source line reached by any instruction of code or nested code."""

    end_line = code.co_firstlineno

    if hasattr(code, "co_positions"):
        for _, line_end, _, _ in code.co_positions():
            if line_end is not None and line_end > end_line:
                end_line = line_end
    else:
        for _, _, line in code.co_lines():
            if line is not None and line > end_line:
                end_line = line

    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            end_line = max(end_line, _code_end_line(const))

    return end_line


class FunctionReflection:
    """Facts about a single live function.

    Args:
        func: The function to reflect on. Only plain Python functions
            (lambdas and ``def`` functions) can be reflected.

    Raises:
        TypeError: If func is not a Python function.
    """

    def __init__(self, func: types.FunctionType):

        if not isinstance(func, types.FunctionType):
            raise TypeError(
                f"Expected a Python function, got {type(func).__name__!r}."
            )

        self.function = func
        self.code = func.__code__

    @property
    def name(self) -> str:
        return self.function.__name__

    @property
    def qualname(self) -> str:
        return self.function.__qualname__

    @property
    def module(self) -> Optional[str]:
        return self.function.__module__

    @property
    def file_name(self) -> str:
        return self.code.co_filename

    @property
    def start_line(self) -> int:
        return self.code.co_firstlineno

    @property
    def end_line(self) -> int:
        return _code_end_line(self.code)

    @property
    def free_variable_names(self) -> Tuple[str, ...]:
        """The capture clause: every closed-over name except the receiver."""

        return tuple(
            name for name in self.code.co_freevars if name != RECEIVER_NAME
        )

    @property
    def free_variables(self) -> Dict[str, Any]:
        """Closed-over values, skipping the receiver and cells never assigned."""

        values = {}

        for name, cell in zip(self.code.co_freevars, self.function.__closure__ or ()):

            if name == RECEIVER_NAME:
                continue

            value = _get_cell_contents(cell)

            if value is _empty_cell_value:
                continue

            values[name] = value

        return values

    @property
    def receiver(self) -> Any:
        """The object held by the closure's ``self`` cell, if any."""

        if RECEIVER_NAME not in self.code.co_freevars:
            return None

        index = self.code.co_freevars.index(RECEIVER_NAME)
        value = _get_cell_contents(self.function.__closure__[index])

        return None if value is _empty_cell_value else value

    @property
    def global_variables(self) -> Dict[str, Any]:
        """Module globals referenced by the code, without identity attributes."""

        _, slotstate = _function_getstate(self.function)

        return {
            name: value
            for name, value in slotstate["__globals__"].items()
            if name not in MODULE_IDENTITY_GLOBALS
        }

    @property
    def scope(self) -> Optional[str]:
        """Fully qualified name of the class the function was written in.

        Resolution order: a scope recorded by bind(), the implicit ``__class__``
        cell of methods using super(), the class found by walking the
        function's qualname from its module, and finally the receiver's class.
        """

        scope = getattr(self.function, "__scope__", None)
        if scope is not None:
            return scope

        if "__class__" in self.code.co_freevars:
            index = self.code.co_freevars.index("__class__")
            cls = _get_cell_contents(self.function.__closure__[index])
            if isinstance(cls, type):
                return _qualified_name(cls)

        cls = self._lexical_class()
        if cls is not None:
            return _qualified_name(cls)

        receiver = self.receiver
        if receiver is not None:
            return _qualified_name(type(receiver))

        return None

    def _lexical_class(self) -> Optional[type]:
        # Only the part of the qualname before the first "<locals>" can be
        # resolved by attribute lookup from the module.
        parts = self.qualname.split(".<locals>.", 1)[0].split(".")[:-1]

        module = sys.modules.get(self.module) if self.module else None
        if module is None:
            return None

        cls = None
        obj = module
        for part in parts:
            obj = getattr(obj, part, None)
            if obj is None:
                break
            if isinstance(obj, type):
                cls = obj

        return cls

    def get_source(self) -> str:
        """Source text the function's line numbers refer to.

        Functions rebuilt by reconstruct_closure carry the generated source in
        ``__source__``; everything else is read from its file.

        Raises:
            OSError: If the file cannot be read.
            SyntaxError: If the file's encoding declaration is invalid.
        """

        source = getattr(self.function, "__source__", None)
        if source is not None:
            return source

        with tokenize.open(self.file_name) as file:
            return file.read()

    def __repr__(self) -> str:
        return f"<FunctionReflection {self.qualname} at {self.file_name}:{self.start_line}>"


def _qualified_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


def bind(
    func: types.FunctionType, receiver: Any, scope: Optional[str] = None
) -> types.FunctionType:
    """Return a copy of func whose receiver is the given object.

    The copy gets a fresh ``self`` cell, so the original function and any
    sibling closures sharing its cell are left untouched.

    Args:
        func: Function to rebind.
        receiver: New receiver, or None to unbind.
        scope: Fully qualified class name to record as the copy's scope.

    Returns:
        The rebound copy, or func itself when unbinding a function that has no
        receiver to begin with.

    Raises:
        TypeError: If a receiver is given for a function that does not close
            over ``self``.
    """

    code = func.__code__

    if RECEIVER_NAME not in code.co_freevars:
        if receiver is None:
            return func

        raise TypeError(
            f"Cannot bind a receiver to {func.__qualname__!r}: "
            f"it does not close over {RECEIVER_NAME!r}."
        )

    closure = list(func.__closure__)
    closure[code.co_freevars.index(RECEIVER_NAME)] = (
        types.CellType() if receiver is None else types.CellType(receiver)
    )

    rebound = types.FunctionType(
        code, func.__globals__, func.__name__, func.__defaults__, tuple(closure)
    )

    rebound.__kwdefaults__ = func.__kwdefaults__
    rebound.__annotations__ = func.__annotations__
    rebound.__module__ = func.__module__
    rebound.__doc__ = func.__doc__
    rebound.__qualname__ = func.__qualname__
    rebound.__dict__.update(func.__dict__)

    if scope is not None:
        rebound.__scope__ = scope

    return rebound
