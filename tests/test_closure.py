"""Test the SerializableClosure carrier and closure reconstruction."""

import sys
sys.path.insert(0, "tests")

import ast
import pickle

import pytest

from pyclosure import (
    RECURSION,
    ClosureAnalysisError,
    ClosureAnalyzer,
    ClosureSerializationWarning,
    ClosureUnserializationError,
    FunctionReflection,
    SerializableClosure,
    Serializer,
    bind,
    reconstruct_closure,
)
from pyclosure.closure import RECONSTRUCTED_FILENAME, factory_source
from pyclosure.serialization import dumps, loads
from closure_fixtures import Dummy, Foo


class FailingAnalyzer(ClosureAnalyzer):
    """Analyzer that can never find the closure."""

    def determine_code(self, record):
        raise ClosureAnalysisError("The closure was not found within the abstract syntax tree.")

    def determine_context(self, record):
        pass


def record(code, context=None, binding=None, scope=None, is_static=False, globals=None):
    return {
        "code": code,
        "context": context or {},
        "globals": globals or {},
        "binding": binding,
        "scope": scope,
        "is_static": is_static,
    }


class TestSerializableClosure:
    """Tests for the carrier itself."""

    def test_get_and_invoke(self, serializer):
        closure = lambda: 4

        carrier = SerializableClosure(closure, serializer)

        assert carrier.get_closure() is closure
        assert carrier.closure is closure
        assert carrier() == 4

    def test_arguments_are_forwarded(self, serializer):
        carrier = SerializableClosure(lambda a, b=1: a - b, serializer)

        assert carrier(5, b=2) == 3

    def test_uninitialized(self):
        with pytest.raises(RuntimeError, match="Closure is not defined"):
            SerializableClosure(None).get_closure()

    def test_default_serializer(self, config):
        carrier = SerializableClosure(lambda: 1)

        assert isinstance(carrier.serializer, Serializer)

    def test_bind_to(self, serializer):
        carrier = SerializableClosure(Foo(1).get_closure(), serializer)

        rebound = carrier.bind_to(Foo(2))

        assert isinstance(rebound, SerializableClosure)
        assert rebound is not carrier
        assert rebound.closure is not carrier.closure
        assert rebound.serializer is serializer
        assert carrier() == 1
        assert rebound() == 2

    def test_bind_to_static_closure(self, serializer):
        carrier = SerializableClosure(lambda: 1, serializer)

        with pytest.raises(TypeError):
            carrier.bind_to(Foo(2))

    def test_pickled_state_holds_code(self, serializer):
        carrier = SerializableClosure(lambda: 4, serializer)

        assert b"lambda: 4" in pickle.dumps(carrier)

    def test_failed_analysis_warns_and_writes_empty_shell(self):
        carrier = SerializableClosure(lambda: 1, Serializer(FailingAnalyzer()))

        with pytest.warns(ClosureSerializationWarning, match="Serialization of closure failed:"):
            data = pickle.dumps(carrier)

        with pytest.raises(ClosureUnserializationError, match="corrupted"):
            pickle.loads(data)

    def test_debug_info(self, serializer):
        closure = lambda: 1
        carrier = SerializableClosure(closure, serializer)

        assert carrier.debug_info() == serializer.get_data(closure, for_serialization=True)

    def test_repeated_round_trips(self, serializer):
        carrier = SerializableClosure(lambda: 4, serializer)

        first = pickle.dumps(carrier)
        restored = pickle.loads(first)
        second = pickle.dumps(restored)

        assert first == second
        assert restored() == 4

    def test_closure_over_object_with_closure(self, serializer):
        obj = Dummy()
        closure = lambda: 4 * obj.c()

        carrier = SerializableClosure(closure, serializer)
        restored = loads(dumps(carrier, serializer=serializer))

        assert carrier.get_closure() is closure
        assert carrier() == 8
        assert restored() == 8

    def test_repr(self, serializer):
        carrier = SerializableClosure(lambda: 4, serializer)

        assert "SerializableClosure" in repr(carrier)
        assert "<lambda>" in repr(carrier)

        restored = pickle.loads(pickle.dumps(carrier))

        assert "lambda: 4" in repr(restored)


class TestReconstructClosure:
    """Tests for rebuilding functions from trimmed records."""

    def test_lambda(self):
        closure = reconstruct_closure(record("lambda n: n + operand", {"operand": 8}))

        assert closure(7) == 15

    def test_def(self):
        closure = reconstruct_closure(record("def add(a, b):\n    return a + b"))

        assert closure(1, 2) == 3
        assert closure.__name__ == "add"

    @pytest.mark.parametrize(
        "code",
        [
            "lambda: (",
            "1 + 1",
            "lambda: 1\nlambda: 2",
            "class A:\n    pass",
            None,
            42,
        ],
    )
    def test_invalid_code(self, code):
        assert reconstruct_closure(record(code)) is None

    def test_recursive_lambda(self):
        code = "lambda n: 1 if n <= 1 else n * factorial(n - 1)"

        closure = reconstruct_closure(record(code, {"factorial": RECURSION}))

        assert closure(5) == 120

    def test_recursive_def(self):
        code = "def factorial(n):\n    return 1 if n <= 1 else n * factorial(n - 1)"

        closure = reconstruct_closure(record(code, {"factorial": RECURSION}))

        assert closure(5) == 120

    def test_recursive_global(self):
        code = "def countdown(n):\n    return [] if n == 0 else [n] + countdown(n - 1)"

        closure = reconstruct_closure(record(code, globals={"countdown": RECURSION}))

        assert closure(3) == [3, 2, 1]

    def test_carriers_are_unwrapped(self, serializer):
        inner = lambda n: n * 2
        context = {"inner": SerializableClosure(inner, serializer)}

        closure = reconstruct_closure(record("lambda: type(inner).__name__", context))

        assert closure() == "function"

    def test_binding_and_scope(self):
        foo = Foo(9)

        closure = reconstruct_closure(
            record("lambda: self.__bar", binding=foo, scope="closure_fixtures.Foo")
        )

        assert closure() == 9
        assert FunctionReflection(closure).receiver is foo
        assert FunctionReflection(closure).scope == "closure_fixtures.Foo"

    def test_unbound_receiver_slot_is_kept(self):
        closure = reconstruct_closure(
            record("lambda: self.__bar", scope="closure_fixtures.Foo")
        )

        assert "self" in closure.__code__.co_freevars
        assert FunctionReflection(closure).receiver is None
        assert bind(closure, Foo(3))() == 3

    def test_annotations_are_objects(self):
        closure = reconstruct_closure(
            record("def typed(x: int, y: Missing) -> int:\n    return x", is_static=True)
        )

        assert closure.__annotations__ == {"x": int, "y": "Missing", "return": int}

    def test_magic_names_resolve_to_reconstruction(self):
        closure = reconstruct_closure(record("lambda: __file__"))

        assert closure() == RECONSTRUCTED_FILENAME

    def test_source_is_attached(self):
        closure = reconstruct_closure(record("lambda: 1", is_static=True))

        assert closure.__source__ == factory_source(
            "lambda: 1", ast.parse("lambda: 1").body[0].value, []
        )

    def test_factory_source_with_scope(self):
        source = factory_source(
            "lambda n: n + operand",
            ast.parse("lambda n: n + operand").body[0].value,
            ["operand", "self"],
            scope="pkg.mod.Foo",
        )

        assert source == (
            "from __future__ import annotations\n"
            "class Foo:\n"
            "    def __pyclosure_factory__(operand, self):\n"
            "        __pyclosure__ = (lambda n: n + operand\n"
            "        )\n"
            "        return __pyclosure__\n"
        )
