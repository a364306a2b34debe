import ast
import copy

from ..exceptions import ClosureAnalysisError
from ..reflection import RECEIVER_NAME
from .base import ClosureAnalyzer, ClosureRecord
from .visitors import (
    ClosureLocatorVisitor,
    MagicConstantTransformer,
    ReceiverDetectorVisitor,
    parameter_names,
)


class TreeAnalyzer(ClosureAnalyzer):
    """Finds a closure's code by walking the syntax tree of its whole module.

    Slower than the TokenAnalyzer since the entire file is parsed, but the
    literal is located structurally: two literals starting on the same line
    are always reported, ``__file__`` and ``__name__`` are frozen to the values
    they had where the closure was written, and receiver use is detected on
    names rather than text.
    """

    def determine_code(self, record: ClosureRecord) -> None:

        self._locate_closure(record)

        node = copy.deepcopy(record.node)

        if not isinstance(node, ast.Lambda):
            # Decorators were applied when the closure was defined. Applying
            # them again on reconstruction would wrap it twice.
            node.decorator_list = []

        node = MagicConstantTransformer(record.location).visit(node)

        detector = ReceiverDetectorVisitor()
        detector.visit(node)

        record.has_this = detector.detected and RECEIVER_NAME not in parameter_names(node)
        record.node = ast.fix_missing_locations(node)
        record.code = ast.unparse(record.node)

    def _locate_closure(self, record: ClosureRecord) -> None:

        reflection = record.reflection
        source = self._read_source(reflection)

        try:
            tree = ast.parse(source, filename=reflection.file_name)
        except (SyntaxError, ValueError) as e:
            raise ClosureAnalysisError(
                "There was an error analyzing the closure code."
            ) from e

        locator = ClosureLocatorVisitor(reflection)
        locator.visit(tree)

        if locator.closure_node is None:
            raise ClosureAnalysisError(
                "The closure was not found within the abstract syntax tree."
            )

        record.node = locator.closure_node
        record.location = locator.finalize()

    def determine_context(self, record: ClosureRecord) -> None:

        names = record.reflection.free_variable_names

        by_reference = set()
        for node in ast.walk(record.node):
            if isinstance(node, ast.Nonlocal):
                by_reference.update(node.names)

        record.has_refs = any(name in by_reference for name in names)

        values = record.reflection.free_variables

        record.context = {name: values[name] for name in names if name in values}
