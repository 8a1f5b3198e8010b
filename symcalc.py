"""
symcalc: An embeddable symbolic calculator session

Drives a sympy-backed math engine from Python: evaluate textual expressions,
read results back as native Python values, manage named variables and
sample expressions over a numeric range for plotting.

Version: 0.1.0
"""

import re
import os
import sys
import json
import math
import numbers
import logging
import warnings
import weakref
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_CEILING
from enum import Enum, IntEnum
from pathlib import Path
from tokenize import NAME, OP
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import sympy as sp
import matplotlib.pyplot as plt
from matplotlib.ticker import FormatStrFormatter, MultipleLocator
from mpmath import libmp as mlib
from mpmath.libmp import prec_to_dps
from sympy.calculus.accumulationbounds import AccumBounds
from sympy.core.function import AppliedUndef, Application
from sympy.core.relational import Relational
from sympy.functions.elementary.miscellaneous import MinMaxBase
from sympy.logic.boolalg import BooleanAtom
from sympy.matrices import MatrixBase
from sympy.parsing.sympy_parser import (
    convert_equals_signs,
    convert_xor,
    implicit_application,
    implicit_multiplication,
    parse_expr,
    standard_transformations,
)
from sympy.physics import units as sp_units
from sympy.physics.units.quantities import Quantity
from sympy.printing.precedence import PRECEDENCE, precedence
from sympy.printing.str import StrPrinter

__version__ = "0.1.0"

logger = logging.getLogger("symcalc")


# ============================================================================
# LOGGING
# ============================================================================

def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Configures the logger for the 'symcalc' namespace.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO)
        log_file: Optional path to save logs to a file.
    """
    logger.setLevel(level)

    # Avoid duplicate handlers when called more than once
    if logger.hasHandlers():
        logger.handlers.clear()

    # stderr keeps stdout free for results
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.debug("Logging initialized.")


# ============================================================================
# ERRORS AND MESSAGES
# ============================================================================

class SymcalcError(Exception):
    """Base class for errors raised by symcalc"""


class ArgumentError(SymcalcError, ValueError):
    """An operation was given an argument of the wrong kind or shape"""


class SessionClosedError(SymcalcError, RuntimeError):
    """The session was used after close()"""


class MessageType(Enum):
    INFORMATION = 0
    WARNING = 1
    ERROR = 2


_MESSAGE_LEVELS = {
    MessageType.INFORMATION: logging.INFO,
    MessageType.WARNING: logging.WARNING,
    MessageType.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class Message:
    """One diagnostic posted by the engine during parsing or evaluation"""
    text: str
    type: MessageType = MessageType.INFORMATION

    @property
    def level(self) -> int:
        return _MESSAGE_LEVELS[self.type]

    def __str__(self):
        return self.text


# ============================================================================
# ENGINE OPTIONS
# ============================================================================

# Reserved base values for the two pseudo-bases
BASE_ROMAN_NUMERALS = -1
BASE_TIME = -2

# Fraction digits shown for non-decimal bases when max_decimals is unset
DEFAULT_BASE_DECIMALS = 10


class UnicodeSigns(IntEnum):
    OFF = 0
    ON = 1
    WITHOUT_EXPONENTS = 2


class IntervalDisplay(IntEnum):
    ADAPTIVE = -1
    SIGNIFICANT_DIGITS = 0
    INTERVAL = 1
    PLUSMINUS = 2
    MIDPOINT = 3
    LOWER = 4
    UPPER = 5
    CONCISE = 6
    RELATIVE = 7


class ParsingMode(IntEnum):
    ADAPTIVE = 0
    RPN = 1


class Approximation(IntEnum):
    EXACT = 0
    TRY_EXACT = 1
    APPROXIMATE = 2


class Structuring(IntEnum):
    NONE = 0
    SIMPLIFY = 1
    FACTORIZE = 2


# Ordered (name, value) lookup tables; the first matching name wins
UNICODE_SIGNS_NAMES = (
    ("on", UnicodeSigns.ON),
    ("off", UnicodeSigns.OFF),
    ("no-exponent", UnicodeSigns.WITHOUT_EXPONENTS),
)

INTERVAL_DISPLAY_NAMES = (
    ("adaptive", IntervalDisplay.ADAPTIVE),
    ("significant", IntervalDisplay.SIGNIFICANT_DIGITS),
    ("significant-digits", IntervalDisplay.SIGNIFICANT_DIGITS),
    ("interval", IntervalDisplay.INTERVAL),
    ("plusminus", IntervalDisplay.PLUSMINUS),
    ("plus-minus", IntervalDisplay.PLUSMINUS),
    ("midpoint", IntervalDisplay.MIDPOINT),
    ("lower", IntervalDisplay.LOWER),
    ("upper", IntervalDisplay.UPPER),
    ("concise", IntervalDisplay.CONCISE),
    ("relative", IntervalDisplay.RELATIVE),
)

PARSING_MODE_NAMES = (
    ("default", ParsingMode.ADAPTIVE),
    ("rpn", ParsingMode.RPN),
)

APPROXIMATION_NAMES = (
    ("exact", Approximation.EXACT),
    ("try-exact", Approximation.TRY_EXACT),
    ("approximate", Approximation.APPROXIMATE),
)

STRUCTURING_NAMES = (
    ("simplify", Structuring.SIMPLIFY),
    ("factorize", Structuring.FACTORIZE),
    ("none", Structuring.NONE),
)


@dataclass
class PrintOptions:
    """How result trees are rendered as text"""
    base: int = 10
    min_decimals: int = 0
    max_decimals: int = -1
    use_unicode_signs: UnicodeSigns = UnicodeSigns.OFF
    interval_display: IntervalDisplay = IntervalDisplay.SIGNIFICANT_DIGITS
    spacious: bool = True
    excessive_parenthesis: bool = False
    abbreviate_names: bool = True
    negative_exponents: bool = False


@dataclass
class ParseOptions:
    """How expression text is read"""
    base: int = 10
    mode: ParsingMode = ParsingMode.ADAPTIVE


@dataclass
class EvaluationOptions:
    """How parsed trees are reduced"""
    approximation: Approximation = Approximation.TRY_EXACT
    structuring: Structuring = Structuring.SIMPLIFY
    precision: int = 10
    parse: ParseOptions = field(default_factory=ParseOptions)


@dataclass
class EngineOptions:
    """The option bundle owned by a Session"""
    print: PrintOptions = field(default_factory=PrintOptions)
    parse: ParseOptions = field(default_factory=ParseOptions)
    evaluation: EvaluationOptions = field(default_factory=EvaluationOptions)
    assign_variables: bool = False


def _opt_get_base(record: Mapping, key: str, default: int) -> int:
    value = record.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        return value if 2 <= value <= 36 else default
    if value == "roman":
        return BASE_ROMAN_NUMERALS
    if value == "time":
        return BASE_TIME
    return default


def _opt_get_boolean(record: Mapping, key: str, default: bool) -> bool:
    value = record.get(key)
    return value if isinstance(value, bool) else default


def _opt_get_integer(record: Mapping, key: str, default: int) -> int:
    value = record.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return default


def _opt_get_enum(record: Mapping, key: str, table: Sequence[Tuple[str, Any]], default):
    value = record.get(key)
    if not isinstance(value, str):
        return default
    for name, member in table:
        if name == value:
            return member
    return default


def check_print_options(record: Optional[Mapping], defaults: Optional[PrintOptions] = None) -> PrintOptions:
    """
    Build PrintOptions from a host record

    Args:
        record: Mapping with any of base, min_decimals, max_decimals,
            abbreviate_names, negative_exponents, spacious,
            excessive_parenthesis, unicode and interval_display
        defaults: Options the unset fields are taken from

    Returns:
        A new PrintOptions instance
    """
    options = replace(defaults) if defaults is not None else PrintOptions()
    if not isinstance(record, Mapping):
        return options

    options.base = _opt_get_base(record, "base", options.base)
    options.min_decimals = _opt_get_integer(record, "min_decimals", options.min_decimals)
    options.max_decimals = _opt_get_integer(record, "max_decimals", options.max_decimals)
    options.abbreviate_names = _opt_get_boolean(record, "abbreviate_names", options.abbreviate_names)
    options.negative_exponents = _opt_get_boolean(record, "negative_exponents", options.negative_exponents)
    options.spacious = _opt_get_boolean(record, "spacious", options.spacious)
    options.excessive_parenthesis = _opt_get_boolean(
        record, "excessive_parenthesis", options.excessive_parenthesis)
    options.use_unicode_signs = _opt_get_enum(
        record, "unicode", UNICODE_SIGNS_NAMES, options.use_unicode_signs)
    options.interval_display = _opt_get_enum(
        record, "interval_display", INTERVAL_DISPLAY_NAMES, options.interval_display)
    return options


def check_parse_options(record: Optional[Mapping], defaults: Optional[ParseOptions] = None) -> ParseOptions:
    """Build ParseOptions from a host record (base, input_base, mode)"""
    options = replace(defaults) if defaults is not None else ParseOptions()
    if not isinstance(record, Mapping):
        return options

    options.base = _opt_get_base(record, "base", options.base)
    # input_base only affects parsing, so it wins over base
    options.base = _opt_get_base(record, "input_base", options.base)
    options.mode = _opt_get_enum(record, "mode", PARSING_MODE_NAMES, options.mode)
    return options


def check_evaluation_options(record: Optional[Mapping],
                             defaults: Optional[EvaluationOptions] = None) -> EvaluationOptions:
    """Build EvaluationOptions from a host record (approximation, structuring, precision)"""
    options = replace(defaults) if defaults is not None else EvaluationOptions()
    if not isinstance(record, Mapping):
        return options

    options.approximation = _opt_get_enum(record, "approximation", APPROXIMATION_NAMES, options.approximation)
    options.structuring = _opt_get_enum(record, "structuring", STRUCTURING_NAMES, options.structuring)
    precision = _opt_get_integer(record, "precision", options.precision)
    if precision > 0:
        options.precision = precision
    return options


def translate(record: Optional[Mapping] = None) -> EngineOptions:
    """
    Convert a host configuration record into engine options.

    Missing or wrong-shaped input yields the defaults; this never raises.
    """
    if not isinstance(record, Mapping):
        return EngineOptions()

    print_options = check_print_options(record)
    parse_options = check_parse_options(record)
    evaluation_options = check_evaluation_options(record)
    evaluation_options.parse = parse_options
    return EngineOptions(
        print=print_options,
        parse=parse_options,
        evaluation=evaluation_options,
        assign_variables=_opt_get_boolean(record, "assign_variables", False),
    )


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a JSON option record from disk"""
    with open(path, encoding="utf-8") as handle:
        record = json.load(handle)
    if not isinstance(record, dict):
        raise ValueError(f"{path}: expected a JSON object of options")
    return record


def data_directory(path: Optional[Union[str, Path]] = None) -> Path:
    """Directory holding definitions.json and exchange_rates.json"""
    if path is not None:
        return Path(path)
    home = os.environ.get("SYMCALC_HOME")
    if home:
        return Path(home)
    return Path.home() / ".config" / "symcalc"


# ============================================================================
# NODE MODEL
# ============================================================================

# Index in this tuple is the node's type tag
TYPE_NAMES = (
    "multiplication",
    "inverse",
    "division",
    "addition",
    "negation",
    "power",
    "number",
    "unit",
    "symbolic",
    "function",
    "variable",
    "vector",
    "bitand",
    "bitor",
    "bitxor",
    "bitnot",
    "logand",
    "logor",
    "logxor",
    "lognot",
    "comparison",
    "undefined",
    "aborted",
    "datetime",
)


class Aborted(sp.Atom):
    """Result of a parse or evaluation that failed"""

    def _hashable_content(self):
        return ()


ABORTED = Aborted()


class VariableRef(sp.Symbol):
    """Reference to a known variable inside a parsed tree"""


class bitand(sp.Function):
    nargs = 2

    @classmethod
    def eval(cls, a, b):
        if a.is_Integer and b.is_Integer:
            return sp.Integer(int(a) & int(b))


class bitor(sp.Function):
    nargs = 2

    @classmethod
    def eval(cls, a, b):
        if a.is_Integer and b.is_Integer:
            return sp.Integer(int(a) | int(b))


class bitxor(sp.Function):
    nargs = 2

    @classmethod
    def eval(cls, a, b):
        if a.is_Integer and b.is_Integer:
            return sp.Integer(int(a) ^ int(b))


class bitnot(sp.Function):
    nargs = 1

    @classmethod
    def eval(cls, a):
        if a.is_Integer:
            return sp.Integer(~int(a))


_BIT_TYPES = ((bitand, "bitand"), (bitor, "bitor"), (bitxor, "bitxor"), (bitnot, "bitnot"))
_LOGIC_TYPES = ((sp.And, "logand"), (sp.Or, "logor"), (sp.Xor, "logxor"), (sp.Not, "lognot"))
_FUNCTION_TYPES = (Application, MinMaxBase, sp.Derivative, sp.Integral, sp.Sum, sp.Product)

EMPTY_VECTOR = sp.ImmutableMatrix(1, 0, [])


def is_number(node) -> bool:
    """True for numeric leaves, including complex numbers a + b*i"""
    if node is sp.S.NaN or node is sp.S.ComplexInfinity:
        return False
    if isinstance(node, MatrixBase) or not isinstance(node, sp.Expr):
        return False
    if isinstance(node, sp.Number):
        return True
    if not node.is_number or node.has(AccumBounds):
        return False
    real, imag = node.as_real_imag()
    return isinstance(real, sp.Number) and isinstance(imag, sp.Number)


def number_parts(node) -> Tuple[sp.Number, sp.Number]:
    if isinstance(node, sp.Number):
        return node, sp.S.Zero
    return node.as_real_imag()


def is_vector(node) -> bool:
    return isinstance(node, (MatrixBase, sp.Tuple))


def is_matrix(node) -> bool:
    return isinstance(node, MatrixBase) and node.rows > 1


def type_name(node) -> str:
    """Name of the node's kind, one of TYPE_NAMES"""
    if isinstance(node, Aborted):
        return "aborted"
    if node is sp.S.NaN or node is sp.S.ComplexInfinity:
        return "undefined"
    if is_vector(node):
        return "vector"
    if is_number(node):
        return "number"
    if isinstance(node, Quantity):
        return "unit"
    if isinstance(node, (VariableRef, sp.NumberSymbol)):
        return "variable"
    if isinstance(node, sp.Symbol):
        return "symbolic"
    if isinstance(node, sp.Add):
        return "addition"
    if isinstance(node, sp.Mul):
        return "negation" if node.args[0] is sp.S.NegativeOne else "multiplication"
    if isinstance(node, sp.Pow):
        return "inverse" if node.exp is sp.S.NegativeOne else "power"
    for cls, name in _BIT_TYPES + _LOGIC_TYPES:
        if isinstance(node, cls):
            return name
    if isinstance(node, Relational):
        return "comparison"
    if isinstance(node, _FUNCTION_TYPES):
        return "function"
    return "symbolic"


def node_type(node) -> int:
    return TYPE_NAMES.index(type_name(node))


def node_children(node) -> Tuple:
    """Child nodes in the order the marshaller walks them"""
    kind = type_name(node)
    if kind == "vector":
        if is_matrix(node):
            return tuple(sp.ImmutableMatrix(node[row, :]) for row in range(node.rows))
        return tuple(node)
    if kind in ("number", "unit", "variable", "symbolic", "undefined", "aborted"):
        return ()
    if kind == "negation":
        return (sp.Mul(*node.args[1:]),)
    if kind == "inverse":
        return (node.base,)
    return tuple(node.args)


# ============================================================================
# PRINTER
# ============================================================================

_DIGITS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

_ROMAN_NUMERALS = (
    (1000, "M"), (900, "CM"), (500, "D"), (400, "CD"),
    (100, "C"), (90, "XC"), (50, "L"), (40, "XL"),
    (10, "X"), (9, "IX"), (5, "V"), (4, "IV"), (1, "I"),
)

_FUNCTION_NAMES = {
    "Abs": "abs",
    "log": "ln",
    "ceiling": "ceil",
    "conjugate": "conj",
    "Max": "max",
    "Min": "min",
    "sign": "sgn",
    "Mod": "mod",
    "re": "re",
    "im": "im",
}


def int_to_base(value: int, base: int) -> str:
    if value == 0:
        return "0"
    digits = []
    value = abs(value)
    while value:
        value, digit = divmod(value, base)
        digits.append(_DIGITS[digit])
    return "".join(reversed(digits))


def to_roman(value: int) -> str:
    if not 0 < value < 4000:
        return str(value)
    parts = []
    for amount, letters in _ROMAN_NUMERALS:
        count, value = divmod(value, amount)
        parts.append(letters * count)
    return "".join(parts)


def from_roman(text: str) -> int:
    values = {letters: amount for amount, letters in _ROMAN_NUMERALS if len(letters) == 1}
    total = 0
    for index, letter in enumerate(text):
        value = values[letter]
        if index + 1 < len(text) and values[text[index + 1]] > value:
            total -= value
        else:
            total += value
    return total


def _to_decimal(value) -> Decimal:
    if isinstance(value, sp.Integer):
        return Decimal(int(value))
    if isinstance(value, sp.Float):
        return Decimal(mlib.to_str(value._mpf_, prec_to_dps(value._prec)))
    return Decimal(str(sp.Float(value, 30)))


class CalculatorPrinter(StrPrinter):
    """
    Renders engine trees in calculator notation

    Handles numeric bases (2..36, roman, time), decimal limits, unicode
    signs, spacing, unit abbreviation, negative exponents and the
    interval display modes.
    """
    printmethod = "_symcalcstr"

    def __init__(self, options: Optional[PrintOptions] = None):
        super().__init__()
        self.print_options = options or PrintOptions()
        self._in_exponent = False

    # ----- signs -----------------------------------------------------------

    @property
    def _unicode(self) -> bool:
        mode = self.print_options.use_unicode_signs
        if mode == UnicodeSigns.WITHOUT_EXPONENTS:
            return not self._in_exponent
        return mode == UnicodeSigns.ON

    @property
    def _minus(self) -> str:
        return "−" if self._unicode else "-"

    @property
    def _times(self) -> str:
        if not self._unicode:
            return "*"
        return " × " if self.print_options.spacious else "×"

    def _spaced(self, operator: str) -> str:
        return f" {operator} " if self.print_options.spacious else operator

    def parenthesize(self, item, level, strict=False):
        text = self._print(item)
        if (self.print_options.excessive_parenthesis and isinstance(item, sp.Basic)
                and not item.is_Atom and isinstance(item, (sp.Add, sp.Mul, sp.Pow, Relational))):
            return f"({text})"
        prec = precedence(item)
        if prec < level or (strict and prec <= level):
            return f"({text})"
        return text

    # ----- numbers ---------------------------------------------------------

    def _format_decimal(self, value: Decimal, max_decimals: int) -> str:
        negative = value.is_signed() and value != 0
        value = abs(value)
        if max_decimals >= 0 and value.as_tuple().exponent < -max_decimals:
            value = value.quantize(Decimal(1).scaleb(-max_decimals), rounding=ROUND_HALF_EVEN)
        value = value.normalize()
        exponent = value.adjusted()
        if value != 0 and not -5 <= exponent < 21:
            mantissa = format(value.scaleb(-exponent), "f")
            sign = "−" if exponent < 0 and self.print_options.use_unicode_signs == UnicodeSigns.ON else "-"
            text = f"{self._pad_decimals(mantissa)}E{sign if exponent < 0 else ''}{abs(exponent)}"
        else:
            text = self._pad_decimals(format(value, "f"))
        return (self._minus + text) if negative else text

    def _pad_decimals(self, text: str) -> str:
        wanted = self.print_options.min_decimals
        if wanted <= 0:
            return text
        if "." not in text:
            return f"{text}.{'0' * wanted}"
        decimals = len(text.split(".", 1)[1])
        return text + "0" * max(0, wanted - decimals)

    def _format_time(self, value) -> str:
        negative = value < 0
        micro = int(sp.floor(abs(value) * 3600 * 10**6 + sp.Rational(1, 2)))
        hours, rest = divmod(micro, 3600 * 10**6)
        minutes, rest = divmod(rest, 60 * 10**6)
        seconds, fraction = divmod(rest, 10**6)
        text = f"{hours}:{minutes:02d}:{seconds:02d}"
        if fraction:
            text += f".{fraction:06d}".rstrip("0")
        return (self._minus + text) if negative else text

    def _format_in_base(self, value, base: int) -> str:
        decimal_value = abs(_to_decimal(value))
        whole = int(decimal_value)
        fraction = decimal_value - whole
        text = int_to_base(whole, base)
        limit = self.print_options.max_decimals if self.print_options.max_decimals >= 0 else DEFAULT_BASE_DECIMALS
        digits = []
        while fraction and len(digits) < limit:
            fraction *= base
            digit = int(fraction)
            digits.append(_DIGITS[digit])
            fraction -= digit
        fraction_text = "".join(digits).rstrip("0")
        if fraction_text:
            text += "." + fraction_text
        return (self._minus + text) if value < 0 else text

    def _print_Integer(self, expr):
        base = self.print_options.base
        if base == BASE_TIME:
            return self._format_time(expr)
        value = int(expr)
        if base == BASE_ROMAN_NUMERALS and value > 0:
            return to_roman(value)
        if base in (10, BASE_ROMAN_NUMERALS):
            text = str(abs(value))
        else:
            text = int_to_base(value, base)
        return (self._minus + text) if value < 0 else text

    _print_Zero = _print_Integer
    _print_One = _print_Integer
    _print_NegativeOne = _print_Integer

    def _print_Rational(self, expr):
        if self.print_options.base == BASE_TIME:
            return self._format_time(expr)
        numerator = self._print_Integer(sp.Integer(expr.p))
        return f"{numerator}/{self._print_Integer(sp.Integer(expr.q))}"

    _print_Half = _print_Rational

    def _print_Float(self, expr):
        if not expr.is_finite:
            return self._print(sp.oo if expr > 0 else -sp.oo)
        base = self.print_options.base
        if base == BASE_TIME:
            return self._format_time(expr)
        if base == BASE_ROMAN_NUMERALS:
            return self._print_Integer(sp.Integer(round(float(expr))))
        if base != 10:
            return self._format_in_base(expr, base)
        return self._format_decimal(_to_decimal(expr), self.print_options.max_decimals)

    # ----- constants -------------------------------------------------------

    def _print_Pi(self, expr):
        return "π" if self._unicode else "pi"

    def _print_Exp1(self, expr):
        return "e"

    def _print_ImaginaryUnit(self, expr):
        return "i"

    def _print_Infinity(self, expr):
        return "∞" if self._unicode else "infinity"

    def _print_NegativeInfinity(self, expr):
        return self._minus + self._print_Infinity(expr)

    def _print_NaN(self, expr):
        return "undefined"

    _print_ComplexInfinity = _print_NaN

    def _print_GoldenRatio(self, expr):
        return "golden"

    def _print_EulerGamma(self, expr):
        return "euler"

    def _print_Catalan(self, expr):
        return "catalan"

    def _print_BooleanTrue(self, expr):
        return "1"

    def _print_BooleanFalse(self, expr):
        return "0"

    def _print_Aborted(self, expr):
        return "aborted"

    def _print_Symbol(self, expr):
        return expr.name

    def _print_Quantity(self, expr):
        return str(expr.abbrev) if self.print_options.abbreviate_names else str(expr.name)

    _print_PhysicalConstant = _print_Quantity

    # ----- operators -------------------------------------------------------

    def _print_Add(self, expr, order=None):
        terms = self._as_ordered_terms(expr, order=order)
        level = precedence(expr)
        parts = []
        for index, term in enumerate(terms):
            negative = term.could_extract_minus_sign()
            text = self.parenthesize(-term if negative else term, level)
            if index == 0:
                parts.append(self._minus + text if negative else text)
            else:
                parts.append(self._spaced(self._minus if negative else "+") + text)
        return "".join(parts)

    def _join_factors(self, factors: List) -> str:
        level = PRECEDENCE["Mul"]
        text = self.parenthesize(factors[0], level)
        for previous, factor in zip(factors, factors[1:]):
            separator = self._times
            if isinstance(previous, sp.Number):
                if isinstance(factor, Quantity) or (isinstance(factor, sp.Pow)
                                                    and isinstance(factor.base, Quantity)):
                    separator = " "
                elif factor is sp.I or isinstance(factor, sp.Symbol):
                    separator = ""
            text += separator + self.parenthesize(factor, level)
        return text

    def _print_Mul(self, expr):
        coefficient, factors = expr.as_coeff_mul()
        sign = ""
        if coefficient.is_negative:
            sign = self._minus
            coefficient = -coefficient

        numerator, denominator = [], []
        if coefficient.is_Rational and not coefficient.is_Integer:
            if coefficient.p != 1:
                numerator.append(sp.Integer(coefficient.p))
            denominator.append(sp.Integer(coefficient.q))
        elif coefficient != 1:
            numerator.append(coefficient)

        for factor in factors:
            if (isinstance(factor, sp.Pow) and not self.print_options.negative_exponents
                    and factor.exp.is_number and factor.exp.could_extract_minus_sign()):
                denominator.append(sp.Pow(factor.base, -factor.exp))
            else:
                numerator.append(factor)

        text = self._join_factors(numerator) if numerator else self._print_Integer(sp.S.One)
        if denominator:
            below = self._join_factors(denominator)
            if len(denominator) > 1 or precedence(denominator[0]) < PRECEDENCE["Pow"]:
                below = f"({below})"
            text = f"{text}/{below}"
        return sign + text

    def _print_Pow(self, expr, rational=False):
        base, exponent = expr.as_base_exp()
        if exponent is sp.S.Half:
            return f"{'√' if self._unicode else 'sqrt'}({self._print(base)})"
        if exponent.is_number and exponent.could_extract_minus_sign() and not self.print_options.negative_exponents:
            return "1/" + self.parenthesize(sp.Pow(base, -exponent), PRECEDENCE["Pow"])

        base_text = self.parenthesize(base, PRECEDENCE["Pow"], strict=True)
        saved, self._in_exponent = self._in_exponent, True
        try:
            if exponent.is_Number and exponent.is_negative:
                exponent_text = self._minus + self._print(-exponent)
            else:
                exponent_text = self.parenthesize(exponent, PRECEDENCE["Pow"], strict=False)
        finally:
            self._in_exponent = saved
        return f"{base_text}^{exponent_text}"

    def _print_Relational(self, expr):
        operators = {
            "==": ("=", "="),
            "!=": ("≠", "!="),
            "<": ("<", "<"),
            ">": (">", ">"),
            "<=": ("≤", "<="),
            ">=": ("≥", ">="),
        }
        fancy, plain = operators[expr.rel_op]
        level = precedence(expr)
        return (self.parenthesize(expr.lhs, level) + self._spaced(fancy if self._unicode else plain)
                + self.parenthesize(expr.rhs, level))

    _print_Equality = _print_Relational
    _print_Unequality = _print_Relational
    _print_StrictLessThan = _print_Relational
    _print_StrictGreaterThan = _print_Relational
    _print_LessThan = _print_Relational
    _print_GreaterThan = _print_Relational

    def _join_logic(self, expr, operator: str) -> str:
        level = precedence(expr)
        return self._spaced(operator).join(self.parenthesize(arg, level, strict=True) for arg in expr.args)

    def _print_And(self, expr):
        return self._join_logic(expr, "&&")

    def _print_Or(self, expr):
        return self._join_logic(expr, "||")

    def _print_Xor(self, expr):
        return " xor ".join(self.parenthesize(arg, precedence(expr), strict=True) for arg in expr.args)

    def _print_Not(self, expr):
        return "!" + self.parenthesize(expr.args[0], PRECEDENCE["Not"], strict=True)

    # ----- functions -------------------------------------------------------

    def _print_Function(self, expr):
        name = expr.func.__name__
        name = _FUNCTION_NAMES.get(name, name)
        return f"{name}({', '.join(self._print(arg) for arg in expr.args)})"

    _print_Abs = _print_Function
    _print_log = _print_Function
    _print_exp = _print_Function
    _print_ceiling = _print_Function
    _print_floor = _print_Function
    _print_conjugate = _print_Function
    _print_sign = _print_Function
    _print_Mod = _print_Function
    _print_factorial = _print_Function
    _print_re = _print_Function
    _print_im = _print_Function
    _print_Max = _print_Function
    _print_Min = _print_Function
    _print_AppliedUndef = _print_Function

    def _print_Derivative(self, expr):
        parts = [self._print(expr.expr)]
        for variable, count in expr.variable_count:
            parts.append(self._print(variable))
            if count != 1:
                parts.append(self._print(count))
        return f"diff({', '.join(parts)})"

    def _print_Integral(self, expr):
        parts = [self._print(expr.function)]
        for limit in expr.limits:
            parts.extend(self._print(item) for item in limit)
        return f"integrate({', '.join(parts)})"

    def _print_limits(self, name, expr):
        parts = [self._print(expr.function)]
        for limit in expr.limits:
            parts.extend(self._print(item) for item in limit)
        return f"{name}({', '.join(parts)})"

    def _print_Sum(self, expr):
        return self._print_limits("sum", expr)

    def _print_Product(self, expr):
        return self._print_limits("product", expr)

    # ----- vectors and matrices --------------------------------------------

    def _print_MatrixBase(self, expr):
        if expr.rows == 1:
            return "[" + ", ".join(self._print(item) for item in expr) + "]"
        rows = (", ".join(self._print(item) for item in expr.row(index)) for index in range(expr.rows))
        return "[" + ", ".join(f"[{row}]" for row in rows) + "]"

    _print_ImmutableDenseMatrix = _print_MatrixBase
    _print_ImmutableMatrix = _print_MatrixBase
    _print_MutableDenseMatrix = _print_MatrixBase
    _print_DenseMatrix = _print_MatrixBase
    _print_Matrix = _print_MatrixBase

    def _print_Tuple(self, expr):
        return "[" + ", ".join(self._print(item) for item in expr) + "]"

    # ----- intervals -------------------------------------------------------

    def _print_AccumulationBounds(self, expr):
        lower, upper = expr.min, expr.max
        mode = self.print_options.interval_display
        if mode == IntervalDisplay.ADAPTIVE:
            approximate = lower.has(sp.Float) or upper.has(sp.Float)
            mode = IntervalDisplay.SIGNIFICANT_DIGITS if approximate else IntervalDisplay.INTERVAL
        if mode == IntervalDisplay.INTERVAL or not (lower.is_finite and upper.is_finite):
            return f"interval({self._print(lower)}, {self._print(upper)})"
        if mode == IntervalDisplay.LOWER:
            return self._print(lower)
        if mode == IntervalDisplay.UPPER:
            return self._print(upper)

        midpoint = (lower + upper) / 2
        radius = (upper - lower) / 2
        if mode == IntervalDisplay.MIDPOINT or radius == 0:
            return self._print(midpoint)
        plusminus = self._spaced("±" if self._unicode else "+/-")
        if mode == IntervalDisplay.PLUSMINUS:
            return self._print(midpoint) + plusminus + self._print(radius)
        if mode == IntervalDisplay.RELATIVE:
            if midpoint == 0:
                return self._print(midpoint) + plusminus + self._print(radius)
            percent = sp.nsimplify(radius / abs(midpoint) * 100)
            return self._print(midpoint) + plusminus + self._print(percent) + "%"

        middle, spread = _to_decimal(midpoint), _to_decimal(radius)
        place = spread.adjusted()
        if mode == IntervalDisplay.CONCISE:
            quantum = Decimal(1).scaleb(place)
            uncertainty = int((spread / quantum).to_integral_value(rounding=ROUND_CEILING))
            return self._decimal_text(middle.quantize(quantum, rounding=ROUND_HALF_EVEN)) + f"({uncertainty})"
        # significant digits: drop every digit the two bounds disagree on
        quantum = Decimal(1).scaleb(place + 1)
        return self._decimal_text(middle.quantize(quantum, rounding=ROUND_HALF_EVEN))

    def _decimal_text(self, value: Decimal) -> str:
        text = format(abs(value), "f")
        return (self._minus + text) if value < 0 else text


def print_node(node, options: Optional[PrintOptions] = None) -> str:
    """Render an engine tree as calculator text"""
    return CalculatorPrinter(options).doprint(node)


# ============================================================================
# PARSING HELPERS
# ============================================================================

_TEXT_PATTERN = re.compile(r'"([^"]*)"|\'([^\']*)\'')
_ASSIGNMENT_PATTERN = re.compile(r"(?<![<>!=:])=(?!=)")
_BASE_NUMBER_PATTERN = re.compile(r"(?<![\w.])(\d[0-9A-Za-z]*)(?:\.([0-9A-Za-z]+))?")
_ROMAN_PATTERN = re.compile(r"\b[MDCLXVI]+\b")
_TIME_PATTERN = re.compile(r"(?<![\w.:])(\d+):(\d{1,2})(?::(\d{1,2}(?:\.\d+)?))?(?![\w:])")
_RPN_OPERATORS = ("+", "-", "*", "/", "^")

_REPLACEMENTS = (
    ("×", "*"),
    ("·", "*"),
    ("⋅", "*"),
    ("÷", "/"),
    ("−", "-"),
    ("≤", "<="),
    ("≥", ">="),
    ("π", "pi"),
    ("∞", "inf"),
    ("&&", "&"),
    ("||", "|"),
)


def _normalize_input(text: str) -> str:
    for old, new in _REPLACEMENTS:
        text = text.replace(old, new)
    return text.replace("==", "=")


def _extract_text_literals(text: str) -> Tuple[str, Dict[str, sp.Symbol]]:
    """Replace quoted text by placeholder names bound to text symbols"""
    literals = {}

    def substitute(match):
        literal = match.group(1) if match.group(1) is not None else match.group(2)
        placeholder = f"__text{len(literals)}__"
        literals[placeholder] = sp.Symbol(literal)
        return placeholder

    return _TEXT_PATTERN.sub(substitute, text), literals


def rpn_to_infix(text: str, functions: Mapping) -> str:
    """Rewrite whitespace separated reverse-Polish input as infix text"""
    stack = []
    for token in text.split():
        if token in _RPN_OPERATORS:
            if len(stack) < 2:
                raise SyntaxError(f"operator '{token}' needs two operands")
            right = stack.pop()
            left = stack.pop()
            stack.append(f"({left} {token} {right})")
        elif token in functions:
            if not stack:
                raise SyntaxError(f"function '{token}' needs an operand")
            stack.append(f"{token}({stack.pop()})")
        else:
            stack.append(token)
    if len(stack) != 1:
        raise SyntaxError("incomplete reverse-Polish expression")
    return stack[0]


def rebase_numbers(text: str, base: int) -> str:
    """Rewrite numerals written in the parse base as decimal text"""
    if base == 10:
        return text
    if base == BASE_ROMAN_NUMERALS:
        return _ROMAN_PATTERN.sub(lambda match: str(from_roman(match.group())), text)
    if base == BASE_TIME:
        def hours(match):
            minutes_seconds = f"{match.group(2)}*60"
            if match.group(3):
                minutes_seconds += f" + {match.group(3)}"
            return f"(({match.group(1)}*3600 + {minutes_seconds})/3600)"
        return _TIME_PATTERN.sub(hours, text)

    def convert(match):
        whole, fraction = match.group(1), match.group(2) or ""
        try:
            numerator = int(whole + fraction, base)
        except ValueError:
            return match.group()
        if not fraction:
            return str(numerator)
        return f"({numerator}/{base ** len(fraction)})"

    return _BASE_NUMBER_PATTERN.sub(convert, text)


def _bracket_vectors(tokens, local_dict, global_dict):
    """Turn [a, b] into __vector__([a, b]) so lists become engine vectors"""
    result = []
    for number, value in tokens:
        if number == OP and value == "[":
            result.extend([(NAME, "__vector__"), (OP, "("), (OP, "[")])
        elif number == OP and value == "]":
            result.extend([(OP, "]"), (OP, ")")])
        else:
            result.append((number, value))
    return result


def _make_vector(items) -> sp.ImmutableMatrix:
    items = [sp.sympify(item) for item in items]
    if items and all(isinstance(item, MatrixBase) for item in items):
        if any(item.rows != 1 for item in items) or len({item.cols for item in items}) != 1:
            raise ValueError("matrix rows must be vectors of equal length")
        return sp.ImmutableMatrix([list(item) for item in items])
    if any(isinstance(item, MatrixBase) for item in items):
        raise ValueError("cannot mix vectors and scalars in a vector")
    return sp.ImmutableMatrix(1, len(items), items)


_PARSER_GLOBALS = {
    "Integer": sp.Integer,
    "Float": sp.Float,
    "Rational": sp.Rational,
    "Symbol": sp.Symbol,
    "Function": sp.Function,
    "Eq": sp.Eq,
    "I": sp.I,
    "Lambda": sp.Lambda,
    "factorial": sp.factorial,
    "factorial2": sp.factorial2,
    "__vector__": _make_vector,
}

_TRANSFORMATIONS = (
    (_bracket_vectors,)
    + standard_transformations
    + (convert_xor, implicit_multiplication, implicit_application, convert_equals_signs)
)


def transform_for_assignment(text: str, calculator: "Calculator") -> str:
    """
    Rewrite 'name = expr' and 'expr = name' as a save() call

    Text with no top-level '=' (or more than one) is returned unchanged.
    """
    masked = _TEXT_PATTERN.sub(lambda match: "_" * len(match.group()), text)
    positions = [match.start() for match in _ASSIGNMENT_PATTERN.finditer(masked)]
    if len(positions) != 1:
        return text

    left, right = text[:positions[0]].strip(), text[positions[0] + 1:].strip()
    if not left or not right:
        return text
    if right.isidentifier() and calculator.get_function(right) is None:
        return f'save(({left}), "{right}")'
    if left.isidentifier() and calculator.get_function(left) is None:
        return f'save(({right}), "{left}")'
    return text


# ============================================================================
# VARIABLES AND FUNCTIONS
# ============================================================================

@dataclass
class Variable:
    """Named entry in the variable table"""
    name: str
    title: str = ""
    active: bool = True
    builtin: bool = False

    is_known = False

    def reference(self):
        return VariableRef(self.name)


@dataclass
class KnownVariable(Variable):
    """Variable bound to a value the host can overwrite"""
    value: sp.Basic = sp.S.Zero

    is_known = True

    def set(self, value: sp.Basic) -> None:
        self.value = value

    def compute(self) -> sp.Basic:
        return self.value


@dataclass
class ComputedVariable(Variable):
    """Built-in constant; parsed directly to its engine node"""
    node: sp.Basic = sp.S.Zero
    builtin: bool = True

    def reference(self):
        return self.node


class MathFunction:
    """Named entry in the function table"""

    def __init__(self, name: str, title: str = "", builtin: bool = True, active: bool = True):
        self.name = name
        self.title = title
        self.builtin = builtin
        self.active = active

    def reference(self):
        return sp.Function(self.name)

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"


class BuiltinFunction(MathFunction):
    """Function backed by a sympy class or a Python callable"""

    def __init__(self, name: str, target: Callable, title: str = ""):
        super().__init__(name, title=title)
        self.target = target

    def reference(self):
        return self.target


class UserFunction(MathFunction):
    """Function defined by an expression over named arguments"""

    def __init__(self, name: str, arguments: Sequence[str], expression: sp.Basic, title: str = ""):
        super().__init__(name, title=title, builtin=False)
        self.arguments = list(arguments)
        self.symbols = [sp.Symbol(argument) for argument in self.arguments]
        self.expression = expression

    def apply(self, args: Sequence[sp.Basic]) -> sp.Basic:
        if len(args) != len(self.symbols):
            raise ValueError(f"{self.name}() takes {len(self.symbols)} arguments ({len(args)} given)")
        return self.expression.xreplace(dict(zip(self.symbols, args)))


class EngineFunction(MathFunction):
    """
    Function computed by the engine itself while evaluating

    calculate() returns the replacement node, or None to leave the call
    unevaluated.
    """
    min_args = 1
    max_args = None

    def accepts(self, count: int) -> bool:
        if count < self.min_args:
            return False
        return self.max_args is None or count <= self.max_args

    def calculate(self, calculator: "Calculator", args: Tuple, options: EvaluationOptions):
        raise NotImplementedError


class SaveFunction(EngineFunction):
    """save(value, name): store value as a known variable"""
    min_args = 2
    max_args = 3

    def __init__(self):
        super().__init__("save", title="Save as Variable")

    def calculate(self, calculator, args, options):
        value = calculator._evaluate(args[0], options)
        name = args[1].name if isinstance(args[1], sp.Symbol) else str(args[1])
        title = args[2].name if len(args) > 2 and isinstance(args[2], sp.Symbol) else ""
        if not name.isidentifier():
            calculator.error(f"Invalid variable name: {name}")
            return None

        variable = calculator.get_variable(name)
        if variable is None:
            calculator.add_variable(KnownVariable(name, title=title, value=value))
        elif variable.is_known and not variable.builtin:
            variable.set(value)
        else:
            calculator.error(f"{name} is a built-in variable and cannot be changed")
            return None
        return value


def _log(x, base=None):
    return sp.log(x) if base is None else sp.log(x, base)


def _root(x, n):
    return sp.root(x, n)


def _free_variable(f):
    symbols = sorted(f.free_symbols, key=lambda symbol: symbol.name)
    if len(symbols) != 1:
        raise ValueError("the variable must be given explicitly")
    return symbols[0]


def _diff(f, x=None, n=1):
    return sp.Derivative(f, (x if x is not None else _free_variable(f), n))


def _integrate(f, x=None, a=None, b=None):
    x = x if x is not None else _free_variable(f)
    if a is None or b is None:
        return sp.Integral(f, x)
    return sp.Integral(f, (x, a, b))


def _sum(f, i, a, b):
    return sp.Sum(f, (i, a, b))


def _product(f, i, a, b):
    return sp.Product(f, (i, a, b))


def _interval(a, b):
    return AccumBounds(a, b)


BUILTIN_CONSTANTS = {
    "pi": (sp.pi, "Archimedes' Constant"),
    "e": (sp.E, "Euler's Number"),
    "i": (sp.I, "Imaginary Unit"),
    "inf": (sp.oo, "Infinity"),
    "infinity": (sp.oo, "Infinity"),
    "golden": (sp.GoldenRatio, "Golden Ratio"),
    "euler": (sp.EulerGamma, "Euler-Mascheroni Constant"),
    "catalan": (sp.Catalan, "Catalan's Constant"),
}

BUILTIN_FUNCTIONS = {
    "sin": sp.sin, "cos": sp.cos, "tan": sp.tan,
    "asin": sp.asin, "acos": sp.acos, "atan": sp.atan,
    "sinh": sp.sinh, "cosh": sp.cosh, "tanh": sp.tanh,
    "asinh": sp.asinh, "acosh": sp.acosh, "atanh": sp.atanh,
    "sqrt": sp.sqrt, "cbrt": sp.cbrt, "root": _root,
    "abs": sp.Abs, "ln": sp.log, "log": _log, "exp": sp.exp,
    "floor": sp.floor, "ceil": sp.ceiling,
    "factorial": sp.factorial, "binomial": sp.binomial, "gamma": sp.gamma,
    "gcd": sp.gcd, "lcm": sp.lcm, "max": sp.Max, "min": sp.Min,
    "re": sp.re, "im": sp.im, "arg": sp.arg, "conj": sp.conjugate, "sgn": sp.sign,
    "mod": sp.Mod,
    "diff": _diff, "integrate": _integrate, "sum": _sum, "product": _product,
    "interval": _interval, "xor": sp.Xor,
    "bitand": bitand, "bitor": bitor, "bitxor": bitxor, "bitnot": bitnot,
}


# ============================================================================
# CALCULATOR ENGINE
# ============================================================================

# Nesting limit for variable and user function expansion
MAX_EXPANSION_DEPTH = 64


class Calculator:
    """
    Stateful math engine: variable, function and unit tables plus a
    pull-style message queue.

    parse() and evaluate() never raise for bad input; failures become the
    ABORTED node and an ERROR message.
    """

    def __init__(self):
        self.variables: Dict[str, Variable] = {}
        self.functions: Dict[str, MathFunction] = {}
        self.units: Dict[str, Quantity] = {}
        self._messages = deque()

    # ----- messages --------------------------------------------------------

    def message(self) -> Optional[Message]:
        """The message at the head of the queue, or None"""
        return self._messages[0] if self._messages else None

    def next_message(self) -> bool:
        """Advance past the head message; True while more remain"""
        if self._messages:
            self._messages.popleft()
        return bool(self._messages)

    def post(self, text: str, message_type: MessageType) -> None:
        self._messages.append(Message(text, message_type))

    def error(self, text: str) -> None:
        self.post(text, MessageType.ERROR)

    def warning(self, text: str) -> None:
        self.post(text, MessageType.WARNING)

    def info(self, text: str) -> None:
        self.post(text, MessageType.INFORMATION)

    def clear_messages(self) -> None:
        self._messages.clear()

    def _queue_warnings(self, caught) -> None:
        for warning in caught:
            self.warning(str(warning.message))

    def _flush_messages_as_warnings(self) -> None:
        while self._messages:
            warnings.warn(self._messages.popleft().text)

    # ----- definitions -----------------------------------------------------

    def load_global_definitions(self) -> None:
        """Built-in constants, functions and the sympy unit catalogue"""
        for name, (node, title) in BUILTIN_CONSTANTS.items():
            self.add_variable(ComputedVariable(name, title=title, node=node))
        for name, target in BUILTIN_FUNCTIONS.items():
            self.add_function(BuiltinFunction(name, target))
        self.add_function(SaveFunction())
        for name, value in vars(sp_units).items():
            if isinstance(value, Quantity) and not name.startswith("_"):
                self.units.setdefault(name, value)
        logger.debug("Loaded %d variables, %d functions and %d units",
                     len(self.variables), len(self.functions), len(self.units))

    def load_local_definitions(self, directory: Union[str, Path],
                               variables: bool = True, functions: bool = True) -> None:
        """
        Load user definitions from definitions.json in the data directory

        Args:
            directory: Data directory
            variables: Load the "variables" table
            functions: Load the "functions" table
        """
        path = Path(directory) / "definitions.json"
        if not path.is_file():
            return
        try:
            with open(path, encoding="utf-8") as handle:
                definitions = json.load(handle)
        except (OSError, ValueError) as e:
            warnings.warn(f"Could not read definitions from {path}: {e}")
            return
        if not isinstance(definitions, dict):
            warnings.warn(f"Definitions in {path} must be a JSON object")
            return

        if variables:
            for name, entry in (definitions.get("variables") or {}).items():
                self._load_variable(name, entry)
        if functions:
            for name, entry in (definitions.get("functions") or {}).items():
                self._load_function(name, entry)
        self._flush_messages_as_warnings()
        logger.debug("Loaded local definitions from %s", path)

    def _load_variable(self, name: str, entry) -> None:
        if isinstance(entry, str):
            entry = {"expression": entry}
        if not name.isidentifier() or not isinstance(entry, dict) or not isinstance(entry.get("expression"), str):
            warnings.warn(f"Skipping malformed variable definition: {name}")
            return
        existing = self.get_variable(name)
        if existing is not None and existing.builtin:
            warnings.warn(f"Cannot redefine built-in variable: {name}")
            return
        value = self.parse(entry["expression"])
        if isinstance(value, Aborted):
            warnings.warn(f"Skipping variable {name}: could not parse {entry['expression']!r}")
            return
        self.add_variable(KnownVariable(name, title=str(entry.get("title", "")),
                                        active=bool(entry.get("active", True)), value=value))

    def _load_function(self, name: str, entry) -> None:
        if (not name.isidentifier() or not isinstance(entry, dict)
                or not isinstance(entry.get("expression"), str)):
            warnings.warn(f"Skipping malformed function definition: {name}")
            return
        arguments = entry.get("arguments", ["x"])
        if not all(isinstance(argument, str) and argument.isidentifier() for argument in arguments):
            warnings.warn(f"Skipping function {name}: invalid argument names")
            return
        try:
            self.add_user_function(name, entry["expression"], arguments, title=str(entry.get("title", "")))
        except ValueError as e:
            warnings.warn(f"Skipping function {name}: {e}")

    def load_exchange_rates(self, directory: Union[str, Path]) -> None:
        """Define currency units from exchange_rates.json in the data directory"""
        path = Path(directory) / "exchange_rates.json"
        if not path.is_file():
            return
        try:
            with open(path, encoding="utf-8") as handle:
                data = json.load(handle)
            base_name = data["base"]
            rates = data["rates"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            warnings.warn(f"Could not read exchange rates from {path}: {e}")
            return

        base = Quantity(base_name, abbrev=base_name)
        self.units[base_name] = base
        for name, rate in rates.items():
            if isinstance(rate, bool) or not isinstance(rate, (int, float)) or rate <= 0:
                warnings.warn(f"Skipping exchange rate for {name}: {rate!r}")
                continue
            currency = Quantity(name, abbrev=name)
            currency.set_global_relative_scale_factor(1 / sp.Rational(str(rate)), base)
            self.units[name] = currency
        logger.debug("Loaded %d exchange rates relative to %s", len(rates), base_name)

    # ----- tables ----------------------------------------------------------

    def get_variable(self, name: str) -> Optional[Variable]:
        return self.variables.get(name)

    def get_active_variable(self, name: str) -> Optional[Variable]:
        variable = self.variables.get(name)
        return variable if variable is not None and variable.active else None

    def add_variable(self, variable: Variable) -> Variable:
        self.variables[variable.name] = variable
        return variable

    def get_function(self, name: str) -> Optional[MathFunction]:
        return self.functions.get(name)

    def add_function(self, function: MathFunction) -> MathFunction:
        self.functions[function.name] = function
        return function

    def add_user_function(self, name: str, expression: str, arguments: Sequence[str] = ("x",),
                          title: str = "") -> UserFunction:
        """Parse expression with the argument names as plain symbols and register it"""
        names = {argument: sp.Symbol(argument) for argument in arguments}
        node = self.parse(expression, names=names)
        if isinstance(node, Aborted):
            raise ValueError(f"could not parse {expression!r}")
        return self.add_function(UserFunction(name, arguments, node, title=title))

    def reset_variables(self) -> None:
        self.variables = {name: v for name, v in self.variables.items() if v.builtin}

    def reset_functions(self) -> None:
        self.functions = {name: f for name, f in self.functions.items() if f.builtin}

    def _namespace(self, extra: Optional[Mapping] = None) -> Dict[str, Any]:
        namespace = dict(self.units)
        for name, function in self.functions.items():
            if function.active:
                namespace[name] = function.reference()
        for name, variable in self.variables.items():
            if variable.active:
                namespace[name] = variable.reference()
        if extra:
            namespace.update(extra)
        return namespace

    # ----- parse -----------------------------------------------------------

    def parse(self, text: str, options: Optional[ParseOptions] = None,
              names: Optional[Mapping] = None) -> sp.Basic:
        """
        Parse expression text into an unevaluated engine tree

        Args:
            text: Expression text
            options: Parse base and mode
            names: Extra names bound while parsing

        Returns:
            The parsed tree, or ABORTED with an ERROR message queued
        """
        options = options or ParseOptions()
        try:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always")
                node = self._parse(text, options, names)
            self._queue_warnings(caught)
        except Exception as e:
            self.error(f"Could not parse \"{text}\": {e}")
            return ABORTED
        return node

    def _parse(self, text: str, options: ParseOptions, names: Optional[Mapping]) -> sp.Basic:
        text, literals = _extract_text_literals(text)
        text = _normalize_input(text)
        if options.mode == ParsingMode.RPN:
            text = rpn_to_infix(text, self.functions)
        text = rebase_numbers(text, options.base)
        if names:
            literals.update(names)
        node = parse_expr(text, local_dict=self._namespace(literals), global_dict=dict(_PARSER_GLOBALS),
                          transformations=_TRANSFORMATIONS, evaluate=True)
        return sp.sympify(node)

    # ----- evaluate --------------------------------------------------------

    def evaluate(self, node: sp.Basic, options: Optional[EvaluationOptions] = None) -> sp.Basic:
        """Evaluate a tree; failures give ABORTED and an ERROR message"""
        options = options or EvaluationOptions()
        if isinstance(node, Aborted):
            return node
        try:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always")
                result = self._evaluate(node, options)
            self._queue_warnings(caught)
        except Exception as e:
            self.error(f"Evaluation failed: {e}")
            return ABORTED
        return result

    def calculate(self, text: str, options: Optional[EvaluationOptions] = None) -> Tuple[sp.Basic, sp.Basic]:
        """Parse and evaluate text; returns (result, parsed)"""
        options = options or EvaluationOptions()
        parsed = self.parse(text, options.parse)
        return self.evaluate(parsed, options), parsed

    def print(self, node: sp.Basic, options: Optional[PrintOptions] = None) -> str:
        return print_node(node, options)

    def _evaluate(self, node: sp.Basic, options: EvaluationOptions) -> sp.Basic:
        if isinstance(node, Aborted):
            return node
        if isinstance(node, MatrixBase):
            return sp.ImmutableMatrix(node.applyfunc(lambda item: self._evaluate(item, options)))
        if isinstance(node, sp.Tuple):
            return sp.Tuple(*[self._evaluate(item, options) for item in node])

        node = self._call_functions(node, options)
        node = self._expand(node)
        if isinstance(node, MatrixBase):
            return self._evaluate(node, options)
        node = node.doit()
        node = self._structure(node, options.structuring)
        node = self._approximate(node, options)
        if isinstance(node, BooleanAtom):
            return sp.Integer(1 if node else 0)
        return node

    def _call_functions(self, node: sp.Basic, options: EvaluationOptions) -> sp.Basic:
        engine = {name: function for name, function in self.functions.items()
                  if isinstance(function, EngineFunction) and function.active}
        if not engine:
            return node

        def matches(expr):
            return isinstance(expr, AppliedUndef) and expr.func.__name__ in engine

        def call(expr):
            function = engine[expr.func.__name__]
            if not function.accepts(len(expr.args)):
                self.error(f"Wrong number of arguments for {function.name}()")
                return expr
            result = function.calculate(self, expr.args, options)
            return expr if result is None else result

        return node.replace(matches, call)

    def _apply_user_functions(self, node: sp.Basic) -> sp.Basic:
        user = {name: function for name, function in self.functions.items()
                if isinstance(function, UserFunction) and function.active}
        if not user:
            return node
        return node.replace(lambda expr: isinstance(expr, AppliedUndef) and expr.func.__name__ in user,
                            lambda expr: user[expr.func.__name__].apply(expr.args))

    def _expand(self, node: sp.Basic) -> sp.Basic:
        for _ in range(MAX_EXPANSION_DEPTH):
            mapping = {}
            for ref in node.atoms(VariableRef):
                variable = self.get_active_variable(ref.name)
                if variable is not None and variable.is_known:
                    mapping[ref] = variable.compute()
            expanded = node.xreplace(mapping) if mapping else node
            expanded = self._apply_user_functions(expanded)
            if expanded == node:
                return node
            node = expanded
        raise ValueError("definitions are nested too deeply")

    def _structure(self, node: sp.Basic, structuring: Structuring) -> sp.Basic:
        if structuring == Structuring.NONE:
            return node
        if isinstance(node, Relational):
            return node.func(self._structure(node.lhs, structuring), self._structure(node.rhs, structuring))
        if not isinstance(node, sp.Expr) or node.has(AccumBounds):
            return node
        if structuring == Structuring.FACTORIZE:
            return sp.factor(node)
        return sp.expand(node)

    def _approximate(self, node: sp.Basic, options: EvaluationOptions) -> sp.Basic:
        if options.approximation == Approximation.EXACT:
            return node
        if options.approximation == Approximation.APPROXIMATE:
            return node.evalf(options.precision) if hasattr(node, "evalf") else node
        return self._try_exact(node, options.precision)

    def _try_exact(self, node: sp.Basic, precision: int) -> sp.Basic:
        """Keep rational values exact, approximate everything else that is numeric"""
        if isinstance(node, sp.Expr) and node.is_number and not node.has(AccumBounds):
            return node if is_number(node) else node.evalf(precision)
        if not node.args:
            return node
        return node.func(*[self._try_exact(arg, precision) for arg in node.args])


# ============================================================================
# VALUE MARSHALLER
# ============================================================================

class Tagged(tuple):
    """A marshalled engine node: a tuple whose first item is the type name"""
    __slots__ = ()

    def __new__(cls, tag: str, *items):
        return tuple.__new__(cls, (tag,) + items)

    @property
    def tag(self) -> str:
        return self[0]

    def __getnewargs__(self):
        return tuple(self)

    def __repr__(self):
        return f"{type(self).__name__}{tuple.__repr__(self)}"


class Complex(Tagged):
    __slots__ = ()

    def __new__(cls, real, imag):
        return super().__new__(cls, "complex", real, imag)

    @property
    def real(self):
        return self[1]

    @property
    def imag(self):
        return self[2]

    def __getnewargs__(self):
        return (self[1], self[2])

    def __complex__(self):
        return complex(self[1], self[2])


class UnitValue(Tagged):
    __slots__ = ()

    def __new__(cls, name: str, abbreviation: str):
        return super().__new__(cls, "unit", name, abbreviation)

    @property
    def name(self) -> str:
        return self[1]

    @property
    def abbreviation(self) -> str:
        return self[2]

    def __getnewargs__(self):
        return (self[1], self[2])


class SymbolValue(Tagged):
    """Variable or symbol: (type name, printed text)"""
    __slots__ = ()

    def __new__(cls, tag: str, text: str):
        return super().__new__(cls, tag, text)

    @property
    def text(self) -> str:
        return self[1]


class Compound(Tagged):
    """Any other node: (type name, child, child, ...)"""
    __slots__ = ()

    @property
    def children(self) -> Tuple:
        return tuple(self[1:])


HostValue = Union[int, float, list, Tagged]


def _number_value(number) -> Union[int, float]:
    if isinstance(number, sp.Integer):
        return int(number)
    return float(number)


def to_host(node: sp.Basic, options: Optional[PrintOptions] = None) -> HostValue:
    """
    Convert an engine tree into a plain Python value

    Numbers become int/float (or Complex), vectors become lists (matrices
    nested lists), units UnitValue, symbols SymbolValue and everything else
    a Compound holding the marshalled children.
    """
    kind = type_name(node)
    if kind == "number":
        real, imag = number_parts(node)
        if imag != 0:
            return Complex(_number_value(real), _number_value(imag))
        return _number_value(real)
    if kind == "vector":
        return [to_host(child, options) for child in node_children(node)]
    if kind == "unit":
        return UnitValue(str(node.name), str(node.abbrev))
    if kind in ("variable", "symbolic"):
        return SymbolValue(kind, print_node(node, options))
    return Compound(kind, *[to_host(child, options) for child in node_children(node)])


def to_engine(value, calculator: Optional[Calculator] = None,
              parse_options: Optional[ParseOptions] = None,
              names: Optional[Mapping] = None) -> sp.Basic:
    """
    Convert a Python value into an engine tree

    Strings are parsed but not evaluated; a ResultValue gives its node.
    """
    if isinstance(value, ResultValue):
        return value.node
    if isinstance(value, sp.Basic):
        return value
    if isinstance(value, bool):
        raise TypeError("value must be a number or string")
    if isinstance(value, numbers.Number):
        return sp.sympify(value)
    if isinstance(value, str):
        if calculator is None:
            raise TypeError("parsing a string needs a calculator")
        return calculator.parse(value, parse_options, names)
    raise TypeError("value must be a number or string")


# ============================================================================
# PLOT SAMPLER
# ============================================================================

@dataclass
class PlotDirectives:
    """Rendering hints collected from name=value plot arguments"""
    step: Optional[float] = None
    x_format: Optional[str] = None
    line_type: Optional[str] = None
    y_range: Optional[Tuple[float, float]] = None
    extra: List[str] = field(default_factory=list)
    unknown: Dict[str, Optional[str]] = field(default_factory=dict)


class PlotData(NamedTuple):
    xs: np.ndarray
    ys: np.ndarray
    meta: PlotDirectives


_VALUED_DIRECTIVES = ("step", "fmt-x", "type", "range", "add")


def split_directive(directive: str) -> Tuple[str, Optional[str]]:
    name, separator, value = str(directive).partition("=")
    return name.strip(), (value.strip() if separator else None)


def _directive_node(value, calculator: Calculator, parse_options: Optional[ParseOptions]) -> sp.Basic:
    try:
        if isinstance(value, (list, tuple)):
            node = _make_vector([to_engine(item, calculator, parse_options) for item in value])
        else:
            node = to_engine(value, calculator, parse_options)
    except (TypeError, ValueError) as e:
        raise ArgumentError(str(e)) from e
    return calculator.evaluate(node, EvaluationOptions(Approximation.APPROXIMATE, Structuring.NONE))


def _real_value(node) -> Optional[float]:
    if not is_number(node):
        return None
    real, imag = number_parts(node)
    if imag != 0 or not real.is_finite:
        return None
    return float(real)


def parse_directives(directives: Union[Sequence, Mapping, None], calculator: Calculator,
                     parse_options: Optional[ParseOptions] = None) -> PlotDirectives:
    """
    Collect plot directives into a PlotDirectives record

    Args:
        directives: 'name=value' strings or a mapping of name to value;
            list values in a mapping repeat the directive
        calculator: Engine used to evaluate numeric values
        parse_options: Options for parsing values

    Returns:
        The populated record; unknown names are kept in .unknown
    """
    if not directives:
        return PlotDirectives()
    if isinstance(directives, Mapping):
        items = []
        for name, value in directives.items():
            if name == "add" and isinstance(value, (list, tuple)):
                items.extend((name, item) for item in value)
            else:
                items.append((name, value))
    else:
        items = [split_directive(directive) for directive in directives]

    meta = PlotDirectives()
    for name, value in items:
        if value is None and name in _VALUED_DIRECTIVES:
            # a recognised name without a value leaves its field unset
            continue
        if name == "step":
            step = _real_value(_directive_node(value, calculator, parse_options))
            if step is None:
                raise ArgumentError("step should be a number")
            meta.step = step
        elif name == "fmt-x":
            meta.x_format = str(value)
        elif name == "type":
            meta.line_type = str(value)
        elif name == "range":
            node = _directive_node(value, calculator, parse_options)
            bounds = None
            if isinstance(node, MatrixBase) and node.rows == 1 and node.cols == 2:
                bounds = tuple(_real_value(item) for item in node)
            if bounds is None or None in bounds:
                raise ArgumentError("range should be a vector of two numbers")
            meta.y_range = bounds
        elif name == "add":
            meta.extra.append(str(value))
        else:
            meta.unknown[name] = None if value is None else str(value)
    return meta


def _domain_value(calculator: Calculator, value, label: str,
                  parse_options: Optional[ParseOptions], precision: int = 10) -> sp.Number:
    try:
        node = to_engine(value, calculator, parse_options)
    except TypeError as e:
        raise ArgumentError(f"{label}: {e}") from e
    node = calculator.evaluate(node, EvaluationOptions(Approximation.TRY_EXACT, Structuring.NONE, precision))
    if not is_number(node):
        raise ArgumentError(f"{label} must be a number")
    real, imag = number_parts(node)
    if imag != 0 or not real.is_finite:
        raise ArgumentError(f"{label} must be a finite real number")
    return real


def _sample_value(node) -> float:
    value = _real_value(node)
    return math.nan if value is None or not math.isfinite(value) else value


def sample_plot(calculator: Calculator, expression, variable: str, start, stop, step,
                directives: Union[Sequence, Mapping, None] = (),
                options: Optional[EvaluationOptions] = None,
                parse_options: Optional[ParseOptions] = None) -> PlotData:
    """
    Sample expression over [start, stop] in steps of step

    Args:
        calculator: Engine evaluating the samples
        expression: Expression text, ResultValue or engine tree
        variable: Name substituted by the sweep value
        start, stop, step: Domain as numbers, text or ResultValues
        directives: Plot directives (see parse_directives)
        options: Evaluation options; samples are always approximated
        parse_options: Options for parsing text arguments

    Returns:
        PlotData with float arrays; non-numeric samples are NaN
    """
    options = options or EvaluationOptions()
    meta = parse_directives(directives, calculator, parse_options)
    start_value = _domain_value(calculator, start, "start", parse_options, options.precision)
    stop_value = _domain_value(calculator, stop, "stop", parse_options, options.precision)
    step_value = _domain_value(calculator, step, "step", parse_options, options.precision)
    if not step_value > 0:
        raise ArgumentError("step must be a positive number")
    if not start_value < stop_value:
        raise ArgumentError("start must be less than stop")

    try:
        # the sweep variable shadows units and known variables of the same name
        node = to_engine(expression, calculator, parse_options, names={variable: sp.Symbol(variable)})
    except TypeError as e:
        raise ArgumentError(f"expression: {e}") from e
    if isinstance(node, Aborted):
        raise ArgumentError("could not parse the plot expression")

    symbols = (sp.Symbol(variable), VariableRef(variable))
    sample_options = replace(options, approximation=Approximation.APPROXIMATE, structuring=Structuring.NONE)
    xs, ys = [], []
    x = start_value
    while x <= stop_value:
        try:
            sample = calculator._evaluate(node.xreplace({symbol: x for symbol in symbols}), sample_options)
            y = _sample_value(sample)
        except Exception as e:
            logger.debug("Sample at %s failed: %s", x, e)
            y = math.nan
        xs.append(float(x))
        ys.append(y)
        x = x + step_value

    logger.debug("Sampled %d points of %s", len(xs), node)
    return PlotData(np.array(xs, dtype=float), np.array(ys, dtype=float), meta)


def _text_argument(arg):
    """Quoted plot arguments reach the engine as text symbols"""
    if isinstance(arg, sp.Symbol) and not isinstance(arg, VariableRef):
        return arg.name
    return arg


class PlotFunction(EngineFunction):
    """plot(expression, start, stop, step, "directive", ...) over x"""
    min_args = 4

    def __init__(self, session: "Session"):
        super().__init__("plot", title="Plot Functions and Data")
        self._session = weakref.ref(session)

    def calculate(self, calculator, args, options):
        session = self._session()
        handler = session.plot_handler if session is not None else None
        if handler is None:
            calculator.warning("plot() needs a plot handler; the call was left unevaluated")
            return None

        expression = args[0]
        start, stop, step = (_text_argument(arg) for arg in args[1:4])
        directives = [arg.name if isinstance(arg, sp.Symbol) else print_node(arg) for arg in args[4:]]
        try:
            data = sample_plot(calculator, expression, "x", start, stop, step, directives,
                               options, options.parse)
        except ArgumentError as e:
            calculator.error(str(e))
            return None
        handler(*data)
        return EMPTY_VECTOR


class MatplotlibRenderer:
    """Plot handler drawing sampled data with matplotlib"""

    LINE_STYLES = {
        "lines": {"linestyle": "-"},
        "points": {"linestyle": "none", "marker": "o"},
        "linespoints": {"linestyle": "-", "marker": "o"},
        "dots": {"linestyle": "none", "marker": ".", "markersize": 2},
        "steps": {"linestyle": "-", "drawstyle": "steps-post"},
    }

    def __init__(self, output: Optional[str] = None, show: bool = True, title: Optional[str] = None):
        self.output = output
        self.show = show
        self.title = title

    def __call__(self, xs: np.ndarray, ys: np.ndarray, meta: PlotDirectives):
        fig, ax = plt.subplots(figsize=(10, 6))

        if meta.line_type == "impulses":
            ax.vlines(xs, 0, ys, linewidth=2)
        else:
            style = self.LINE_STYLES.get(meta.line_type or "lines")
            if style is None:
                warnings.warn(f"Unknown plot type: {meta.line_type}")
                style = self.LINE_STYLES["lines"]
            ax.plot(xs, ys, linewidth=2, **style)

        if meta.y_range is not None:
            ax.set_ylim(*meta.y_range)
        if meta.step is not None:
            ax.xaxis.set_major_locator(MultipleLocator(meta.step))
        if meta.x_format:
            ax.xaxis.set_major_formatter(FormatStrFormatter(meta.x_format))
        for extra in meta.extra:
            logger.debug("Ignoring plot directive add=%s", extra)

        if self.title:
            ax.set_title(self.title, fontsize=14, fontweight='bold')
        ax.set_xlabel('x', fontsize=12)
        ax.grid(True, alpha=0.3)
        fig.tight_layout()

        if self.output:
            fig.savefig(self.output, dpi=150, bbox_inches='tight')
            logger.debug("Saved plot to %s", self.output)
        if self.show:
            plt.show()
        plt.close(fig)


# ============================================================================
# SESSION
# ============================================================================

def drain_messages(calculator: Calculator) -> List[Message]:
    """Read every queued message, leaving the queue empty"""
    messages = []
    message = calculator.message()
    while message is not None:
        messages.append(message)
        calculator.next_message()
        message = calculator.message()
    return messages


class ResultValue:
    """
    One evaluated engine tree plus the parsed source it came from

    The result owns both trees; release() drops them and is safe to
    call more than once.
    """

    def __init__(self, session: "Session", node: sp.Basic, parsed: Optional[sp.Basic] = None,
                 print_options: Optional[PrintOptions] = None):
        self._session = session
        self._node = node
        self._parsed = parsed
        self._print_options = print_options

    def _check_live(self) -> None:
        if self._node is None:
            raise SymcalcError("result has been released")

    @property
    def node(self) -> sp.Basic:
        self._check_live()
        return self._node

    @property
    def released(self) -> bool:
        return self._node is None

    def release(self) -> None:
        self._node = None
        self._parsed = None

    def _options(self, options=None) -> PrintOptions:
        if isinstance(options, PrintOptions):
            return options
        defaults = self._print_options
        if defaults is None:
            defaults = self._session.options.print if not self._session.closed else PrintOptions()
        return check_print_options(options, defaults)

    def print(self, options: Union[Mapping, PrintOptions, None] = None) -> str:
        return print_node(self.node, self._options(options))

    def value(self, options: Union[Mapping, PrintOptions, None] = None) -> HostValue:
        return to_host(self.node, self._options(options))

    @property
    def type(self) -> str:
        node = self.node
        return "matrix" if is_matrix(node) else type_name(node)

    def source(self, options: Union[Mapping, PrintOptions, None] = None) -> Optional[str]:
        """Text of the parsed, unevaluated tree; None for variable lookups"""
        self._check_live()
        if self._parsed is None:
            return None
        return print_node(self._parsed, self._options(options))

    @property
    def is_approximate(self) -> bool:
        return self.node.has(sp.Float)

    def as_matrix(self) -> Optional[List[List["ResultValue"]]]:
        node = self.node
        if not is_matrix(node):
            return None
        return [[ResultValue(self._session, node[row, column], print_options=self._print_options)
                 for column in range(node.cols)] for row in range(node.rows)]

    def _children(self) -> Tuple:
        node = self.node
        if not is_vector(node):
            raise TypeError(f"{self.type} result is not a vector")
        return node_children(node)

    def __len__(self):
        return len(self._children())

    def __getitem__(self, index):
        return ResultValue(self._session, self._children()[index], print_options=self._print_options)

    def __iter__(self):
        for child in self._children():
            yield ResultValue(self._session, child, print_options=self._print_options)

    def __bool__(self):
        return True

    def __str__(self):
        return self.print()

    def __repr__(self):
        if self.released:
            return "ResultValue(<released>)"
        return f"ResultValue({self.print()!r})"


class Session:
    """
    A calculator session: one engine instance and its options.

    Construction loads exchange rates plus global and local definitions.
    The session exclusively owns its engine; close() releases it once and
    later calls are no-ops.
    """

    def __init__(self, options: Union[Mapping, EngineOptions, None] = None,
                 plot_handler: Optional[Callable] = None,
                 data_dir: Optional[Union[str, Path]] = None):
        self._options = options if isinstance(options, EngineOptions) else translate(options)
        self.plot_handler = plot_handler
        self.data_dir = data_directory(data_dir)

        calculator = Calculator()
        calculator.load_exchange_rates(self.data_dir)
        calculator.load_global_definitions()
        calculator.load_local_definitions(self.data_dir)
        calculator.add_function(PlotFunction(self))
        self._calculator = calculator
        logger.debug("Session created with data directory %s", self.data_dir)

    # ----- lifecycle -------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._calculator is None

    def _check_open(self) -> None:
        if self._calculator is None:
            raise SessionClosedError("session is closed")

    @property
    def calculator(self) -> Calculator:
        self._check_open()
        return self._calculator

    @property
    def options(self) -> EngineOptions:
        if self._options is None:
            raise SessionClosedError("session is closed")
        return self._options

    def close(self) -> None:
        if self._calculator is not None:
            logger.debug("Session closed")
        self._calculator = None
        self._options = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, traceback):
        self.close()

    def set_options(self, options: Union[Mapping, EngineOptions, None]) -> None:
        """Replace the whole option bundle"""
        self._check_open()
        self._options = options if isinstance(options, EngineOptions) else translate(options)

    # ----- evaluation ------------------------------------------------------

    def _drain(self) -> List[Message]:
        messages = drain_messages(self.calculator)
        for message in messages:
            logger.log(message.level, "%s", message.text)
        return messages

    def evaluate(self, text: str,
                 print_options: Union[Mapping, PrintOptions, None] = None,
                 parse_options: Union[Mapping, ParseOptions, None] = None,
                 eval_options: Union[Mapping, EvaluationOptions, None] = None,
                 assign: Optional[bool] = None) -> Tuple[ResultValue, List[Message]]:
        """
        Parse and evaluate expression text

        Args:
            text: Expression text
            print_options: Print option record for the returned result
            parse_options: Parse option record (base, input_base, mode)
            eval_options: Evaluation option record
            assign: Rewrite 'name = expr' as an assignment; defaults to
                the session's assign_variables option

        Returns:
            (result, messages); malformed input gives an aborted result
            and ERROR messages instead of raising
        """
        calculator = self.calculator
        if not isinstance(text, str):
            raise TypeError("expression must be a string")
        options = self.options

        printing = None
        if print_options is not None:
            printing = (print_options if isinstance(print_options, PrintOptions)
                        else check_print_options(print_options, options.print))
        parsing = (parse_options if isinstance(parse_options, ParseOptions)
                   else check_parse_options(parse_options, options.parse))
        evaluation = (eval_options if isinstance(eval_options, EvaluationOptions)
                      else check_evaluation_options(eval_options, options.evaluation))
        evaluation = replace(evaluation, parse=parsing)

        if assign is None:
            assign = options.assign_variables
        if assign:
            text = transform_for_assignment(text, calculator)

        parsed = calculator.parse(text, parsing)
        result = calculator.evaluate(parsed, evaluation)
        return ResultValue(self, result, parsed, printing), self._drain()

    def get(self, name: str) -> Optional[ResultValue]:
        """Evaluate the active variable name; None when there is none"""
        calculator = self.calculator
        variable = calculator.get_active_variable(name)
        if variable is None:
            return None
        node = calculator.evaluate(variable.reference(), self.options.evaluation)
        self._drain()
        return ResultValue(self, node)

    def set(self, name: str, value) -> bool:
        """
        Bind name to value as a known variable

        Returns:
            True when the variable was created or updated, False when
            name belongs to a built-in variable
        """
        calculator = self.calculator
        if not isinstance(name, str) or not name.isidentifier():
            raise ArgumentError(f"invalid variable name: {name!r}")
        try:
            node = to_engine(value, calculator, self.options.parse)
        finally:
            messages = self._drain()
        if isinstance(node, Aborted):
            detail = f": {messages[0].text}" if messages else ""
            raise ArgumentError(f"could not parse value for {name}{detail}")

        variable = calculator.get_variable(name)
        if variable is None:
            calculator.add_variable(KnownVariable(name, value=node))
            return True
        if variable.is_known and not variable.builtin:
            variable.set(node)
            return True
        return False

    def reset(self, variables: bool = False, functions: bool = False) -> None:
        """Restore the variable and/or function tables to their defaults"""
        calculator = self.calculator
        if variables:
            calculator.reset_variables()
        if functions:
            calculator.reset_functions()
        if variables or functions:
            calculator.load_local_definitions(self.data_dir, variables=variables, functions=functions)

    def plot(self, expression, start, stop, step, *directives, variable: str = "x") -> PlotData:
        """Sample expression and hand the data to the plot handler"""
        calculator = self.calculator
        try:
            data = sample_plot(calculator, expression, variable, start, stop, step, directives,
                               self.options.evaluation, self.options.parse)
        finally:
            self._drain()
        if self.plot_handler is not None:
            self.plot_handler(*data)
        return data


# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def _read_lines(stream) -> Iterable[str]:
    interactive = stream.isatty()
    while True:
        if interactive:
            print("> ", end="", flush=True)
        line = stream.readline()
        if not line:
            return
        yield line.rstrip("\n")


def format_result(result: ResultValue) -> str:
    """'source = result', or just the result when both read the same"""
    text = result.print()
    source = result.source()
    if source is None or source == text:
        return text
    return f"{source} {'≈' if result.is_approximate else '='} {text}"


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command line interface for symcalc"""
    import argparse

    parser = argparse.ArgumentParser(
        description='symcalc v0.1.0 - Symbolic calculator',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  symcalc "2x + 3x"
  symcalc --base 16 255
  symcalc --rpn "3 4 + 2 *"
  symcalc --plot-output parabola.png 'plot(x^2, -2, 2, "1/10")'
  symcalc                      # read expressions from stdin
        """
    )
    parser.add_argument('expressions', nargs='*', help='Expressions to evaluate')
    parser.add_argument('--base', type=str, help='Output base: 2..36, roman or time')
    parser.add_argument('--input-base', type=str, help='Base used to read numbers')
    parser.add_argument('--rpn', action='store_true', help='Read reverse-Polish input')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--exact', action='store_true', help='Never approximate')
    mode.add_argument('--approximate', action='store_true', help='Always approximate')
    parser.add_argument('--precision', type=int, help='Significant digits of approximate results')
    parser.add_argument('--unicode', choices=['on', 'off', 'no-exponent'], help='Unicode signs')
    parser.add_argument('--config', type=str, help='JSON file with an option record')
    parser.add_argument('--no-assign', action='store_true', help="Do not treat 'a = expr' as assignment")
    parser.add_argument('--plot-output', type=str, help='Save plots to this file instead of showing them')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    def base_value(text):
        return int(text) if text.isdigit() else text

    record = load_config(args.config) if args.config else {}
    record.setdefault("assign_variables", not args.no_assign)
    if args.base:
        record["base"] = base_value(args.base)
        record.setdefault("input_base", 10)
    if args.input_base:
        record["input_base"] = base_value(args.input_base)
    if args.rpn:
        record["mode"] = "rpn"
    if args.exact:
        record["approximation"] = "exact"
    if args.approximate:
        record["approximation"] = "approximate"
    if args.precision:
        record["precision"] = args.precision
    if args.unicode:
        record["unicode"] = args.unicode

    renderer = MatplotlibRenderer(output=args.plot_output, show=args.plot_output is None)
    status = 0
    with Session(record, plot_handler=renderer) as session:
        lines = args.expressions if args.expressions else _read_lines(sys.stdin)
        for line in lines:
            if line.strip() in ('quit', 'exit'):
                break
            if not line.strip():
                continue
            result, messages = session.evaluate(line)
            for message in messages:
                print(f"{message.type.name.lower()}: {message.text}", file=sys.stderr)
                if message.type is MessageType.ERROR:
                    status = 1
            if result.type != "aborted":
                print(format_result(result))
    return status


# ============================================================================
# MODULE EXPORTS
# ============================================================================

__all__ = [
    'Session',
    'ResultValue',
    'Calculator',
    'Message',
    'MessageType',
    'EngineOptions',
    'PrintOptions',
    'ParseOptions',
    'EvaluationOptions',
    'translate',
    'load_config',
    'to_host',
    'to_engine',
    'print_node',
    'type_name',
    'sample_plot',
    'parse_directives',
    'PlotData',
    'PlotDirectives',
    'MatplotlibRenderer',
    'Complex',
    'UnitValue',
    'SymbolValue',
    'Compound',
    'SymcalcError',
    'ArgumentError',
    'SessionClosedError',
    'setup_logging',
    'main',
]


if __name__ == '__main__':
    sys.exit(main())
