"""
Tests for converting between engine trees and Python values.
"""

import math
import pickle

import pytest
import sympy as sp
from sympy.physics import units

from symcalc import (
    to_host, to_engine, type_name,
    Complex, UnitValue, SymbolValue, Compound,
)
from symcalc import ABORTED, TYPE_NAMES, VariableRef, bitand, node_type


x = sp.Symbol("x")


class TestNumbers:
    """Numeric leaves become plain Python numbers."""

    @pytest.mark.parametrize("value", [5, -3, 0, 2.5, 1e-12])
    def test_round_trip(self, value):
        result = to_host(to_engine(value))
        assert result == value
        assert type(result) is type(value)

    def test_rational_becomes_float(self):
        assert to_host(sp.Rational(1, 4)) == 0.25

    def test_infinity(self):
        assert to_host(sp.oo) == math.inf
        assert to_host(-sp.oo) == -math.inf

    def test_complex(self):
        value = to_host(2 + 3 * sp.I)
        assert isinstance(value, Complex)
        assert value == ("complex", 2, 3)
        assert value.real == 2 and value.imag == 3
        assert complex(value) == complex(2, 3)

    def test_imaginary_unit(self):
        assert to_host(sp.I) == ("complex", 0, 1)


class TestVectors:
    """Vectors become lists, matrices nested lists."""

    def test_vector(self):
        assert to_host(sp.ImmutableMatrix([[1, 2, 3]])) == [1, 2, 3]

    def test_vector_same_length_and_values(self):
        values = [4, 0.5, -2]
        assert to_host(sp.ImmutableMatrix(1, 3, values)) == values

    def test_matrix(self):
        assert to_host(sp.ImmutableMatrix([[1, 2], [3, 4]])) == [[1, 2], [3, 4]]

    def test_tuple(self):
        assert to_host(sp.Tuple(1, 2)) == [1, 2]

    def test_nested_symbols(self):
        assert to_host(sp.ImmutableMatrix([[x, 1]])) == [("symbolic", "x"), 1]


class TestTaggedNodes:
    """Everything else is a tagged tuple."""

    def test_unit(self):
        value = to_host(units.meter)
        assert isinstance(value, UnitValue)
        assert value == ("unit", "meter", "m")
        assert value.abbreviation == "m"

    def test_symbol(self):
        value = to_host(x)
        assert isinstance(value, SymbolValue)
        assert value == ("symbolic", "x")
        assert value.text == "x"

    def test_variable(self):
        assert to_host(VariableRef("total")) == ("variable", "total")
        assert to_host(sp.pi) == ("variable", "pi")

    def test_symbol_uses_print_options(self):
        from symcalc import PrintOptions, UnicodeSigns
        assert to_host(sp.pi, PrintOptions(use_unicode_signs=UnicodeSigns.ON)) == ("variable", "π")

    def test_addition(self):
        value = to_host(x + 1)
        assert isinstance(value, Compound)
        assert value.tag == "addition"
        assert sorted(map(repr, value.children)) == sorted(map(repr, (1, ("symbolic", "x"))))

    def test_negation(self):
        assert to_host(-x) == ("negation", ("symbolic", "x"))

    def test_inverse(self):
        assert to_host(1 / x) == ("inverse", ("symbolic", "x"))

    def test_power(self):
        assert to_host(x ** 2) == ("power", ("symbolic", "x"), 2)

    def test_function(self):
        assert to_host(sp.sin(x)) == ("function", ("symbolic", "x"))

    def test_comparison(self):
        assert to_host(sp.Eq(x, 2)) == ("comparison", ("symbolic", "x"), 2)

    def test_undefined(self):
        assert to_host(sp.zoo) == ("undefined",)
        assert to_host(sp.nan) == ("undefined",)

    def test_aborted(self):
        assert to_host(ABORTED) == ("aborted",)

    def test_pickle(self):
        for value in (Complex(1, 2), UnitValue("meter", "m"), SymbolValue("symbolic", "x"),
                      Compound("negation", ("symbolic", "x"))):
            copy = pickle.loads(pickle.dumps(value))
            assert copy == value
            assert type(copy) is type(value)


class TestTypeNames:
    """The fixed type vocabulary."""

    def test_vocabulary(self):
        assert len(TYPE_NAMES) == 24
        assert TYPE_NAMES[0] == "multiplication"
        assert TYPE_NAMES[22] == "aborted"
        assert node_type(ABORTED) == 22

    @pytest.mark.parametrize("node, name", [
        (2 * x, "multiplication"),
        (x + 1, "addition"),
        (sp.Integer(7), "number"),
        (sp.ImmutableMatrix([[1, 2]]), "vector"),
        (bitand(x, 3), "bitand"),
        (sp.And(x, sp.Symbol("y")), "logand"),
        (sp.Not(x), "lognot"),
        (x < 3, "comparison"),
        (sp.Max(x, 2), "function"),
    ])
    def test_kinds(self, node, name):
        assert type_name(node) == name

    def test_bitwise_reduces_on_integers(self):
        assert bitand(12, 10) == 8


class TestToEngine:
    """Python values into engine trees."""

    def test_number(self):
        assert to_engine(5) == sp.Integer(5)
        assert to_engine(2.5) == sp.Float(2.5)

    def test_pass_through(self):
        assert to_engine(x) is x

    @pytest.mark.parametrize("value", [True, None, [1, 2], {"a": 1}, object()])
    def test_wrong_kind(self, value):
        with pytest.raises(TypeError, match="value must be a number or string"):
            to_engine(value)

    def test_string_is_parsed_not_evaluated(self, calc):
        calc.set("x", 5)
        node = to_engine("x", calc.calculator)
        assert isinstance(node, VariableRef)

    def test_result_is_unwrapped(self, calc):
        result, _ = calc.evaluate("2 + 2")
        assert to_engine(result) is result.node
