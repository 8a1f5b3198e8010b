"""
Tests for the Session surface: evaluation, variables, definitions and lifecycle.
"""

import json

import pytest

from symcalc import (
    Session, MessageType, ArgumentError, SessionClosedError, SymcalcError, Complex,
)


def errors(messages):
    return [message for message in messages if message.type is MessageType.ERROR]


# ============================================================================
# EVALUATION
# ============================================================================

class TestEvaluate:
    """Expression text in, result and messages out."""

    def test_simple_sum(self, calc):
        result, messages = calc.evaluate("1 + 2")
        assert result.value() == 3
        assert result.type == "number"
        assert not errors(messages)

    def test_approximate_root(self, calc):
        result, _ = calc.evaluate("sqrt(2)", eval_options={"approximation": "approximate"})
        assert result.is_approximate
        assert result.value() == pytest.approx(1.414213562)

    def test_exact_root_stays_symbolic(self, calc):
        result, _ = calc.evaluate("sqrt(2)", eval_options={"approximation": "exact"})
        assert not result.is_approximate
        assert result.type == "power"

    def test_complex(self, calc):
        result, _ = calc.evaluate("2 + 3*i")
        value = result.value()
        assert isinstance(value, Complex)
        assert (value.real, value.imag) == (2, 3)

    def test_vector(self, calc):
        result, _ = calc.evaluate("[1, 2, 3]")
        assert result.type == "vector"
        assert len(result) == 3
        assert result[0].value() == 1
        assert [item.value() for item in result] == [1, 2, 3]
        assert result.as_matrix() is None

    def test_matrix(self, calc):
        result, _ = calc.evaluate("[[1, 2], [3, 4]]")
        assert result.type == "matrix"
        assert result.value() == [[1, 2], [3, 4]]
        rows = result.as_matrix()
        assert len(rows) == 2 and len(rows[0]) == 2
        assert rows[1][0].value() == 3

    def test_scalar_is_not_a_vector(self, calc):
        result, _ = calc.evaluate("5")
        with pytest.raises(TypeError):
            len(result)

    def test_unit(self, calc):
        result, _ = calc.evaluate("5 m")
        assert result.type == "multiplication"
        assert result.value() == ("multiplication", 5, ("unit", "meter", "m"))

    def test_like_terms_collect(self, calc):
        result, _ = calc.evaluate("y + y")
        assert result.print() == "2y"

    def test_malformed_input_aborts(self, calc):
        result, messages = calc.evaluate("(1 + 2")
        assert result.type == "aborted"
        assert result.value() == ("aborted",)
        assert errors(messages)

    def test_session_usable_after_error(self, calc):
        calc.evaluate("(1 + 2")
        result, messages = calc.evaluate("1 + 1")
        assert result.value() == 2
        assert not errors(messages)

    def test_source_keeps_variable_names(self, calc):
        calc.set("x", 5)
        result, _ = calc.evaluate("x + 1")
        assert result.value() == 6
        assert result.source() == "x + 1"

    def test_non_string_rejected(self, calc):
        with pytest.raises(TypeError):
            calc.evaluate(42)

    def test_result_print_options(self, calc):
        result, _ = calc.evaluate("255", print_options={"base": 16})
        assert str(result) == "FF"
        assert result.print({"base": 2}) == "11111111"
        assert repr(result) == "ResultValue('FF')"


# ============================================================================
# VARIABLES
# ============================================================================

class TestVariables:
    """set(), get() and reset()."""

    def test_set_and_get(self, calc):
        assert calc.set("z", 7) is True
        assert calc.get("z").value() == 7

    def test_missing_variable(self, calc):
        assert calc.get("nothing_here") is None

    def test_builtin_is_not_overwritten(self, calc):
        assert calc.set("pi", 3) is False
        result = calc.get("pi")
        assert result.value() == pytest.approx(3.141592654)

    def test_update(self, calc):
        assert calc.set("z", 1) is True
        assert calc.set("z", 2) is True
        assert calc.get("z").value() == 2

    def test_string_value(self, calc):
        calc.set("z", "y + 1")
        assert calc.get("z").print() == "y + 1"

    def test_result_value(self, calc):
        result, _ = calc.evaluate("2^10")
        calc.set("z", result)
        assert calc.get("z").value() == 1024

    @pytest.mark.parametrize("name", ["1abc", "two words", "", 5])
    def test_invalid_name(self, calc, name):
        with pytest.raises(ArgumentError):
            calc.set(name, 1)

    @pytest.mark.parametrize("value", [True, [1], None])
    def test_invalid_value(self, calc, value):
        with pytest.raises(TypeError):
            calc.set("z", value)

    def test_unparsable_value(self, calc):
        with pytest.raises(ArgumentError, match="could not parse"):
            calc.set("z", "(1 +")

    def test_failed_set_leaves_no_messages(self, calc):
        with pytest.raises(ArgumentError):
            calc.set("z", "(1 +")
        _, messages = calc.evaluate("1 + 1")
        assert messages == []

    def test_set_options_on_closed_session(self, data_home):
        session = Session()
        session.close()
        with pytest.raises(SessionClosedError):
            session.set_options({"base": 2})

    def test_reset_variables(self, calc):
        calc.set("z", 1)
        calc.reset(variables=True)
        assert calc.get("z") is None
        assert calc.get("pi") is not None


# ============================================================================
# DEFINITIONS
# ============================================================================

class TestDefinitions:
    """definitions.json and exchange_rates.json in the data directory."""

    def write(self, directory, name, content):
        (directory / name).write_text(json.dumps(content), encoding="utf-8")

    def test_local_definitions(self, data_home):
        self.write(data_home, "definitions.json", {
            "variables": {
                "answer": {"expression": "42", "title": "Answer"},
                "hidden": {"expression": "1", "active": False},
            },
            "functions": {
                "sq": {"expression": "x^2", "arguments": ["x"]},
            },
        })
        with Session() as session:
            assert session.evaluate("answer + 1")[0].value() == 43
            assert session.evaluate("sq(3)")[0].value() == 9
            assert session.get("hidden") is None

    def test_reset_restores_definitions(self, data_home):
        self.write(data_home, "definitions.json", {"variables": {"answer": "42"}})
        with Session() as session:
            session.set("answer", 1)
            session.reset(variables=True)
            assert session.get("answer").value() == 42

    def test_malformed_entries_warn(self, data_home):
        self.write(data_home, "definitions.json", {
            "variables": {"bad name": "1", "fine": "2"},
            "functions": {"broken": {"expression": "(", "arguments": ["x"]}},
        })
        with pytest.warns(UserWarning, match="bad name"):
            session = Session()
        assert session.get("fine").value() == 2
        assert session.calculator.get_function("broken") is None
        session.close()

    def test_unreadable_file_warns(self, data_home):
        (data_home / "definitions.json").write_text("{not json", encoding="utf-8")
        with pytest.warns(UserWarning, match="Could not read definitions"):
            Session().close()

    def test_exchange_rates(self, data_home):
        self.write(data_home, "exchange_rates.json", {"base": "EUR", "rates": {"USD": 2}})
        with Session() as session:
            assert "USD" in session.calculator.units
            result, _ = session.evaluate("USD")
            assert result.value() == ("unit", "USD", "USD")

    def test_bad_exchange_rate_warns(self, data_home):
        self.write(data_home, "exchange_rates.json", {"base": "EUR", "rates": {"GBP": -1}})
        with pytest.warns(UserWarning, match="GBP"):
            session = Session()
        assert "GBP" not in session.calculator.units
        session.close()


# ============================================================================
# ASSIGNMENT
# ============================================================================

class TestAssignment:
    """'name = expr' and 'expr = name' with assign_variables on."""

    @pytest.fixture
    def assigning(self, data_home):
        with Session({"assign_variables": True}) as session:
            yield session

    def test_name_on_left(self, assigning):
        result, messages = assigning.evaluate("myvar = 5")
        assert result.value() == 5
        assert not errors(messages)
        assert assigning.get("myvar").value() == 5

    def test_name_on_right(self, assigning):
        assigning.evaluate("3 * 4 = total")
        assert assigning.get("total").value() == 12

    def test_reassign(self, assigning):
        assigning.evaluate("myvar = 5")
        assigning.evaluate("myvar = myvar + 1")
        assert assigning.get("myvar").value() == 6

    def test_builtin_is_protected(self, assigning):
        _, messages = assigning.evaluate("pi = 3")
        assert errors(messages)

    def test_per_call_override(self, assigning):
        result, _ = assigning.evaluate("myvar = 5", assign=False)
        assert result.type == "comparison"
        assert assigning.get("myvar") is None

    def test_off_by_default(self, calc):
        result, _ = calc.evaluate("myvar = 5")
        assert result.type == "comparison"

    def test_double_equals_is_comparison(self, assigning):
        result, _ = assigning.evaluate("y == 2")
        assert result.type == "comparison"


# ============================================================================
# MODES
# ============================================================================

class TestModes:
    """Parse bases, RPN and approximation."""

    def test_session_base(self, calc):
        calc.set_options({"base": 16})
        result, _ = calc.evaluate("0FF + 1")
        assert result.print() == "100"

    def test_rpn(self, calc):
        result, _ = calc.evaluate("3 4 + 2 *", parse_options={"mode": "rpn"})
        assert result.value() == 14

    def test_bad_rpn(self, calc):
        result, messages = calc.evaluate("3 +", parse_options={"mode": "rpn"})
        assert result.type == "aborted"
        assert errors(messages)

    def test_input_base(self, calc):
        assert calc.evaluate("101", parse_options={"input_base": 2})[0].value() == 5

    def test_roman_input(self, calc):
        assert calc.evaluate("MCMXCIV", parse_options={"base": "roman"})[0].value() == 1994

    def test_time_input(self, calc):
        assert calc.evaluate("1:30", parse_options={"base": "time"})[0].value() == 1.5

    def test_approximate(self, calc):
        result, _ = calc.evaluate("1/3", eval_options={"approximation": "approximate"})
        assert result.is_approximate
        assert result.value() == pytest.approx(1 / 3)

    def test_exact_fraction(self, calc):
        result, _ = calc.evaluate("1/3")
        assert not result.is_approximate
        assert result.print() == "1/3"

    def test_factorize(self, calc):
        result, _ = calc.evaluate("x^2 + 2x + 1", eval_options={"structuring": "factorize"})
        assert result.type == "power"


# ============================================================================
# NODE KINDS
# ============================================================================

class TestNodeKinds:
    """Result type names reported through the session."""

    @pytest.mark.parametrize("text, kind", [
        ("bitand(x, 3)", "bitand"),
        ("1/x", "inverse"),
        ("-x", "negation"),
        ("x^3", "power"),
        ("1/0", "undefined"),
        ("x && y", "logand"),
        ("x < 3", "comparison"),
        ("sin(x)", "function"),
        ("x", "symbolic"),
    ])
    def test_kind(self, calc, text, kind):
        result, _ = calc.evaluate(text)
        assert result.type == kind

    def test_bitwise_numbers(self, calc):
        assert calc.evaluate("bitand(12, 10)")[0].value() == 8

    def test_true_comparison_is_one(self, calc):
        assert calc.evaluate("2 < 3")[0].value() == 1


# ============================================================================
# LIFECYCLE
# ============================================================================

class TestLifecycle:
    """close(), context management and result release."""

    def test_close_is_idempotent(self, data_home):
        session = Session()
        session.close()
        session.close()
        assert session.closed

    def test_closed_session_raises(self, data_home):
        session = Session()
        session.close()
        with pytest.raises(SessionClosedError):
            session.evaluate("1")
        with pytest.raises(SessionClosedError):
            session.set("z", 1)

    def test_context_manager(self, data_home):
        with Session() as session:
            assert not session.closed
        assert session.closed

    def test_release(self, calc):
        result, _ = calc.evaluate("1 + 1")
        result.release()
        result.release()
        assert result.released
        assert repr(result) == "ResultValue(<released>)"
        with pytest.raises(SymcalcError):
            result.value()
        with pytest.raises(SymcalcError):
            result.source()

    def test_result_outlives_session(self, data_home):
        with Session() as session:
            result, _ = session.evaluate("6 * 7")
        assert result.print() == "42"
