"""
Expression evaluator adapter.

Invariants and slice discriminator paths are FHIRPath expressions; they are
evaluated with ``fhirpathpy``. The grammar lives in that library. A crash
inside the evaluator is a fatal error for the current call, not a
validation issue.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from fhirpathpy import evaluate
from fhirpathpy.models import models

from .errors import create_expression_error

logger = logging.getLogger(__name__)


class ExpressionEvaluator:
    """Synchronous, side-effect free FHIRPath evaluation."""

    def __init__(self, fhir_release: str = "r4"):
        self.fhir_release = fhir_release
        self.model = models.get(fhir_release)

    def evaluate(self, expression: str, node: Any, root: Optional[Any] = None, path: Optional[str] = None) -> List[Any]:
        root = node if root is None else root
        variables = {"resource": root, "rootResource": root}
        try:
            result = evaluate(node, expression, variables, self.model)
        except Exception as e:
            logger.error(f"Expression evaluation failed for '{expression}': {e}")
            raise create_expression_error(
                expression,
                f"Cannot evaluate expression '{expression}': {e}",
                path=path,
                cause=e,
            )
        return list(result or [])

    def is_satisfied(self, expression: str, node: Any, root: Optional[Any] = None, path: Optional[str] = None) -> bool:
        """
        Boolean view of an invariant.

        An empty result means the invariant could not be decided for this
        node and is not reported. A collection of booleans must be all true.
        """
        result = self.evaluate(expression, node, root, path)
        if not result:
            return True
        if all(isinstance(item, bool) for item in result):
            return all(result)
        return True

    def select(self, expression: str, node: Any, path: Optional[str] = None) -> List[Any]:
        """Nodes selected by a discriminator path."""
        expression = expression.strip()
        if expression in ("", "$this"):
            return [node]
        return self.evaluate(expression, node, node, path)
