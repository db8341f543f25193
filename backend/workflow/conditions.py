"""Condition evaluation for conditional steps.

Conditions are short boolean expressions such as ``random_number > 50`` or
``status == "ok" and len(items) > 0``. They are parsed into an AST and
walked by simpleeval, which only knows comparisons, boolean connectives,
arithmetic, literals, variable lookup and the whitelisted functions below.
There is no attribute access to dunder names, no imports and no I/O.

Evaluation fails closed: any error yields ``False`` and a warning.
"""

from typing import Any

import structlog
from simpleeval import EvalWithCompoundTypes

from core.exceptions import ConditionEvaluationError

logger = structlog.get_logger(__name__)

SAFE_FUNCTIONS = {
    "len": len,
    "min": min,
    "max": max,
    "sum": sum,
    "all": all,
    "any": any,
    "abs": abs,
    "round": round,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "list": list,
}

SAFE_NAMES = {"True": True, "False": False, "None": None, "true": True, "false": False, "null": None}


def compile_condition(expression: str, variables: dict) -> Any:
    """Evaluate an expression and return its raw value.

    Raises:
        ConditionEvaluationError: On syntax errors, unknown names or type errors.
    """
    evaluator = EvalWithCompoundTypes(
        names={**SAFE_NAMES, **(variables or {})},
        functions=SAFE_FUNCTIONS,
    )
    try:
        return evaluator.eval(expression)
    except Exception as e:
        raise ConditionEvaluationError(expression, f"{type(e).__name__}: {e}") from e


def evaluate_condition(expression: str, variables: dict) -> bool:
    """Decide whether a conditional step should run.

    Never raises; returns False when the expression cannot be evaluated.
    """
    if not isinstance(expression, str):
        return bool(expression)
    try:
        return bool(compile_condition(expression, variables))
    except ConditionEvaluationError as e:
        logger.warning("Condition evaluation failed", expression=expression, error=e.message)
        return False
