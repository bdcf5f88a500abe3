"""
Calibration Service

Raw register value to engineering unit conversion.
"""

from .engine import CalibrationEngine, interpolate
from .expression import CompiledFormula, FormulaError, compile_formula

__all__ = [
    "CalibrationEngine",
    "interpolate",
    "CompiledFormula",
    "FormulaError",
    "compile_formula",
]
