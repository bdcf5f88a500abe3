"""
Calibration Formula Compiler

Compiles formula strings such as "(x - 4000) * 0.0125 + 20" into plain
Python callables of one variable, `x`.

Only arithmetic is accepted: numeric literals, the name `x`, the operators
+ - * / // % **, unary +/-, and calls to a small set of math functions.
Anything else (attribute access, other names, subscripts, lambdas, ...) is
rejected at compile time, so formulas never reach eval().
"""

import ast
import math
import operator
from typing import Callable

VARIABLE = "x"

# Exponents beyond this are rejected at evaluation time (10 ** 10 ** 10 would hang)
MAX_EXPONENT = 64

ALLOWED_FUNCTIONS: dict[str, Callable] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sqrt": math.sqrt,
    "log": math.log,
    "log10": math.log10,
    "exp": math.exp,
    "floor": math.floor,
    "ceil": math.ceil,
}

BINARY_OPERATORS: dict[type, Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

UNARY_OPERATORS: dict[type, Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


class FormulaError(ValueError):
    """Formula contains syntax that is not allowed"""


def _power(base: float, exponent: float) -> float:
    if abs(exponent) > MAX_EXPONENT:
        raise OverflowError(f"exponent {exponent} exceeds {MAX_EXPONENT}")
    return operator.pow(base, exponent)


def _compile_node(node: ast.AST) -> Callable[[float], float]:
    if isinstance(node, ast.Expression):
        return _compile_node(node.body)

    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise FormulaError(f"unsupported literal {node.value!r}")
        constant = node.value
        return lambda x: constant

    if isinstance(node, ast.Name):
        if node.id != VARIABLE:
            raise FormulaError(f"unknown name '{node.id}'")
        return lambda x: x

    if isinstance(node, ast.BinOp):
        left = _compile_node(node.left)
        right = _compile_node(node.right)
        if isinstance(node.op, ast.Pow):
            return lambda x: _power(left(x), right(x))
        op = BINARY_OPERATORS.get(type(node.op))
        if op is None:
            raise FormulaError(f"operator {type(node.op).__name__} not allowed")
        return lambda x: op(left(x), right(x))

    if isinstance(node, ast.UnaryOp):
        op = UNARY_OPERATORS.get(type(node.op))
        if op is None:
            raise FormulaError(f"operator {type(node.op).__name__} not allowed")
        operand = _compile_node(node.operand)
        return lambda x: op(operand(x))

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in ALLOWED_FUNCTIONS:
            raise FormulaError(f"function '{ast.unparse(node.func)}' not allowed")
        if node.keywords:
            raise FormulaError("keyword arguments not allowed")
        func = ALLOWED_FUNCTIONS[node.func.id]
        args = [_compile_node(arg) for arg in node.args]
        return lambda x: func(*(arg(x) for arg in args))

    raise FormulaError(f"{type(node).__name__} not allowed")


class CompiledFormula:
    """A validated formula, callable with the raw value"""

    def __init__(self, source: str):
        self.source = source
        try:
            tree = ast.parse(source.strip(), mode="eval")
        except SyntaxError as e:
            raise FormulaError(f"invalid formula '{source}': {e.msg}") from e
        self._func = _compile_node(tree)

    def evaluate(self, x: float) -> float:
        """
        Evaluate with `x` bound to the raw value.

        Raises:
            ArithmeticError, ValueError, TypeError: on runtime math errors
        """
        return self._func(x)

    def __call__(self, x: float) -> float:
        return self.evaluate(x)

    def __repr__(self) -> str:
        return f"CompiledFormula({self.source!r})"


def compile_formula(source: str) -> CompiledFormula:
    """Compile a formula string, raising FormulaError if it is not allowed"""
    return CompiledFormula(source)
