"""Syntax tree visitors used by the TreeAnalyzer.

ClosureLocatorVisitor finds the one function literal that starts on the
reflected line and records where it sits. MagicConstantTransformer and
ReceiverDetectorVisitor then run over that literal only.
"""

import ast
import os
from typing import List, Optional, Union

from ..exceptions import ClosureAnalysisError
from ..reflection import RECEIVER_NAME, FunctionReflection
from .base import Location

FunctionNode = Union[ast.Lambda, ast.FunctionDef, ast.AsyncFunctionDef]


def start_line(node: FunctionNode) -> int:
    """Line a function literal's code object reports as its first line."""

    lines = [node.lineno]

    # Decorated definitions start on their first decorator
    for decorator in getattr(node, "decorator_list", ()):
        lines.append(decorator.lineno)

    return min(lines)


class ClosureLocatorVisitor(ast.NodeVisitor):
    """Locates a function literal in a module's syntax tree by its start line.

    Args:
        reflection: Reflection over the function being located.

    Attributes:
        closure_node: The located literal, or None if nothing matched.
        location: Where the literal sits. Only complete after finalize().
    """

    def __init__(self, reflection: FunctionReflection):

        self.reflection = reflection
        self.closure_node: Optional[FunctionNode] = None

        file_name = reflection.file_name

        self.location = Location(
            namespace=reflection.module,
            file=file_name,
            directory=os.path.dirname(file_name),
            line=reflection.start_line,
        )

        self._classes: List[str] = []
        self._functions: List[str] = []

    def visit_ClassDef(self, node: ast.ClassDef) -> None:

        if self.closure_node is not None:
            self.generic_visit(node)
            return

        self._classes.append(node.name)
        self.generic_visit(node)

        if self.closure_node is None:
            self._classes.pop()

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._visit_function(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._visit_function(node)

    def visit_Lambda(self, node: ast.Lambda) -> None:

        self._check(node)
        self.generic_visit(node)

    def _visit_function(self, node: Union[ast.FunctionDef, ast.AsyncFunctionDef]) -> None:

        self._check(node)

        if self.closure_node is not None:
            self.generic_visit(node)
            return

        self._functions.append(node.name)
        self.generic_visit(node)

        if self.closure_node is None:
            self._functions.pop()

    def _check(self, node: FunctionNode) -> None:

        line = start_line(node)

        if line != self.location.line:
            return

        if self.closure_node is not None:
            raise ClosureAnalysisError(
                f"Two closures were declared on the same line "
                f"({self.location.file}:{line}) of code. Cannot determine "
                f"which closure was the intended target."
            )

        self.closure_node = node

        self.location.class_ = ".".join(self._classes) or None
        self.location.function = self._functions[-1] if self._functions else None

    def finalize(self) -> Location:
        """Qualify the enclosing class with the module and build ``method``."""

        location = self.location

        if location.class_ is not None:

            if location.namespace:
                location.class_ = f"{location.namespace}.{location.class_}"

            if location.function is not None:
                location.method = f"{location.class_}.{location.function}"

        else:
            location.method = location.function

        return location


class MagicConstantTransformer(ast.NodeTransformer):
    """Replaces reads of ``__file__`` and ``__name__`` with their values.

    Reconstructed closures run in a different module, so these names have to
    be frozen to what they meant where the closure was written.
    """

    def __init__(self, location: Location):

        self.constants = {
            "__file__": location.file or "",
            "__name__": location.namespace or "",
        }

    def visit_Name(self, node: ast.Name) -> ast.AST:

        if isinstance(node.ctx, ast.Load) and node.id in self.constants:
            return ast.copy_location(ast.Constant(self.constants[node.id]), node)

        return node


class ReceiverDetectorVisitor(ast.NodeVisitor):

    def __init__(self):
        self.detected = False

    def visit_Name(self, node: ast.Name) -> None:

        if node.id == RECEIVER_NAME:
            self.detected = True


def parameter_names(node: FunctionNode) -> List[str]:

    args = node.args

    names = [arg.arg for arg in args.posonlyargs + args.args + args.kwonlyargs]

    if args.vararg is not None:
        names.append(args.vararg.arg)
    if args.kwarg is not None:
        names.append(args.kwarg.arg)

    return names
