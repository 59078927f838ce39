"""
Restricted expression evaluation
Used by dynamic variables and map/custom transformations; never runs host code
"""

import random
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog
from simpleeval import EvalWithCompoundTypes, InvalidExpression

from .exceptions import ExpressionError

logger = structlog.get_logger(__name__)


SAFE_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sum": sum,
    "sorted": sorted,
    "any": any,
    "all": all,
    "list": list,
    "dict": dict,
}

SAFE_NAMES: Dict[str, Any] = {
    "true": True,
    "false": False,
    "none": None,
    "null": None,
    "True": True,
    "False": False,
    "None": None,
}


def _random_between(minimum: float = 0, maximum: float = 1) -> float:
    return random.random() * (maximum - minimum) + minimum


CONTEXT_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "now": lambda: datetime.utcnow().isoformat(),
    "uuid": lambda: str(uuid.uuid4()),
    "random": _random_between,
}


class ExpressionEvaluator:
    """
    Whitelisted expression evaluator built on simpleeval

    Dictionaries support attribute access (``item.price``) as well as
    subscripts, so expressions written against JSON payloads read naturally.
    """

    def __init__(self, extra_functions: Optional[Dict[str, Callable[..., Any]]] = None):
        self.functions = dict(SAFE_FUNCTIONS)
        if extra_functions:
            self.functions.update(extra_functions)

    def evaluate(
        self,
        expression: str,
        names: Optional[Dict[str, Any]] = None,
        functions: Optional[Dict[str, Callable[..., Any]]] = None
    ) -> Any:
        """
        Evaluate an expression against the supplied names.

        Args:
            expression: Expression source
            names: Values visible to the expression
            functions: Additional callables for this evaluation only

        Returns:
            The expression value

        Raises:
            ExpressionError: If the expression is invalid or fails
        """
        if not isinstance(expression, str) or not expression.strip():
            raise ExpressionError("Expression must be a non-empty string", expression)

        scope = dict(SAFE_NAMES)
        scope.update(names or {})
        callables = dict(self.functions)
        if functions:
            callables.update(functions)

        evaluator = EvalWithCompoundTypes(names=scope, functions=callables)
        try:
            return evaluator.eval(expression.strip())
        except InvalidExpression as e:
            raise ExpressionError(f"Invalid expression: {e}", expression) from e
        except SyntaxError as e:
            raise ExpressionError(f"Expression syntax error: {e.msg}", expression) from e
        except Exception as e:
            raise ExpressionError(f"Expression evaluation failed: {e}", expression) from e
