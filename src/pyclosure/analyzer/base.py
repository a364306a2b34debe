"""The closure analyzer contract and the record it produces.

An analyzer turns a live function into a ClosureRecord: the source text of the
function literal, the values it captured, and enough receiver and scope
information to rebuild it somewhere else. Subclasses only decide how the code
and the captured variable names are found; the order of the pipeline and the
binding and globals steps are shared.
"""

import ast
import types
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..exceptions import ClosureAnalysisError
from ..reflection import FunctionReflection, bind

if TYPE_CHECKING:
    from .token import Token

# Keys of the record that travel inside a serialized payload
SERIALIZED_FIELDS = ("code", "context", "globals", "binding", "scope", "is_static")


@dataclass
class Location:
    """Where a function literal sits in its source file.

    Attributes:
        namespace: Name of the module the literal was written in.
        class_: Fully qualified name of the enclosing class, if any.
        function: Name of the enclosing function, if any.
        file: Path of the source file.
        directory: Directory holding the source file.
        line: Line the literal starts on.
        method: ``class_.function`` when both are known, else the function.
    """

    namespace: Optional[str] = None
    class_: Optional[str] = None
    function: Optional[str] = None
    file: Optional[str] = None
    directory: Optional[str] = None
    line: Optional[int] = None
    method: Optional[str] = None


@dataclass
class ClosureRecord:

    reflection: FunctionReflection
    code: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    globals: Dict[str, Any] = field(default_factory=dict)
    has_this: bool = False
    has_refs: bool = False
    binding: Any = None
    scope: Optional[str] = None
    is_static: bool = False
    location: Optional[Location] = None
    tokens: Optional[List["Token"]] = None
    node: Optional[ast.AST] = None

    def trim(self) -> Dict[str, Any]:
        """The subset of the record that is written into a payload."""

        return {key: getattr(self, key) for key in SERIALIZED_FIELDS}


class ClosureAnalyzer(ABC):
    """Base class of the closure analysis strategies."""

    def analyze(self, closure: types.FunctionType) -> ClosureRecord:
        """Analyze a function and return everything needed to rebuild it.

        Args:
            closure: The lambda or nested ``def`` to analyze.

        Returns:
            The filled in ClosureRecord.

        Raises:
            TypeError: If closure is not a Python function.
            ClosureAnalysisError: If its source cannot be read or the literal
                cannot be located unambiguously.
        """

        reflection = FunctionReflection(closure)

        record = ClosureRecord(
            reflection=reflection,
            is_static=self._is_closure_static(closure),
        )

        self.determine_code(record)
        self.determine_context(record)
        self._determine_binding(record)
        self._determine_globals(record)

        return record

    @abstractmethod
    def determine_code(self, record: ClosureRecord) -> None:
        """Set ``code`` and ``has_this`` on the record."""

    @abstractmethod
    def determine_context(self, record: ClosureRecord) -> None:
        """Set ``context`` and ``has_refs`` on the record."""

    def _determine_binding(self, record: ClosureRecord) -> None:

        record.binding = record.reflection.receiver
        record.scope = record.reflection.scope

    def _determine_globals(self, record: ClosureRecord) -> None:

        record.globals = record.reflection.global_variables

    def _is_closure_static(self, closure: types.FunctionType) -> bool:
        # A closure is static when it refuses a receiver. Binding works on a
        # copy, so the probe never touches the closure itself.
        try:
            rebound = bind(closure, object())
        except TypeError:
            return True

        return FunctionReflection(rebound).receiver is None

    def _read_source(self, reflection: FunctionReflection) -> str:

        try:
            return reflection.get_source()
        except (OSError, SyntaxError, UnicodeDecodeError) as e:
            raise ClosureAnalysisError(
                f"There was an error analyzing the closure code. "
                f"Could not read the source of {reflection.qualname!r} "
                f"from {reflection.file_name!r}: {e}"
            ) from e
