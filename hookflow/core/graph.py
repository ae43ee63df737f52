"""
Workflow Graph Resolver

Given a workflow definition and the node that just completed, compute the
nodes to run next. Resolution is pure: no I/O, no state.

Edge conditions:
- absent: always traversable
- "true"/"false"/"yes"/"no": compared with the boolean `decision` key of
  the completed node's output
- anything else: a restricted Python expression evaluated with `data` and
  `output` bound to the completed node's output, e.g.
  `data.get("intent") == "refund" and len(data["items"]) > 0`

A condition that cannot be evaluated makes its edge non-traversable.
"""

import ast
import logging
import operator
from typing import Any, Dict, List, Optional

from .exceptions import DefinitionError
from .nodes import Edge, Node, WorkflowDefinition, parse_definition

logger = logging.getLogger(__name__)

TRUE_LITERALS = {"true", "yes"}
FALSE_LITERALS = {"false", "no"}


class ConditionError(Exception):
    """Condition expression is invalid or uses an unsupported construct."""


# ============================================================================
# CONDITION EVALUATION
# ============================================================================

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "lower": lambda s: str(s).lower(),
}

_SEQUENCE_TYPES = (str, bytes, list, tuple)

_SAFE_METHODS = {"get", "lower", "upper", "strip", "startswith", "endswith", "keys", "values"}


class _ConditionEvaluator:
    """Walks a parsed expression, allowing only read-only constructs."""

    def __init__(self, names: Dict[str, Any]):
        self.names = names

    def eval(self, node: ast.AST) -> Any:
        method = getattr(self, f"_eval_{type(node).__name__}", None)
        if method is None:
            raise ConditionError(f"Unsupported expression: {type(node).__name__}")
        return method(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:
        return self.eval(node.body)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        if node.id in self.names:
            return self.names[node.id]
        if node.id in ("True", "False", "None"):
            return {"True": True, "False": False, "None": None}[node.id]
        raise ConditionError(f"Unknown name: {node.id}")

    def _eval_List(self, node: ast.List) -> Any:
        return [self.eval(elt) for elt in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.eval(elt) for elt in node.elts)

    def _eval_Set(self, node: ast.Set) -> Any:
        return {self.eval(elt) for elt in node.elts}

    def _eval_Dict(self, node: ast.Dict) -> Any:
        return {self.eval(k): self.eval(v) for k, v in zip(node.keys, node.values)}

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = self.eval(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.eval(value)
            if result:
                return result
        return result

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.eval(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ConditionError(f"Unsupported unary operator: {type(node.op).__name__}")

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ConditionError(f"Unsupported operator: {type(node.op).__name__}")
        left, right = self.eval(node.left), self.eval(node.right)
        # Repetition and printf-style formatting can allocate without bound
        sequence = isinstance(left, _SEQUENCE_TYPES) or isinstance(right, _SEQUENCE_TYPES)
        if isinstance(node.op, ast.Mult) and sequence:
            raise ConditionError("Sequence repetition is not allowed")
        if isinstance(node.op, ast.Mod) and isinstance(left, (str, bytes)):
            raise ConditionError("String formatting is not allowed")
        return op(left, right)

    def _eval_Compare(self, node: ast.Compare) -> Any:
        left = self.eval(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ConditionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.eval(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        container = self.eval(node.value)
        return container[self.eval(node.slice)]

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_") or node.attr not in _SAFE_METHODS:
            raise ConditionError(f"Attribute not allowed: {node.attr}")
        return getattr(self.eval(node.value), node.attr)

    def _eval_Call(self, node: ast.Call) -> Any:
        if node.keywords:
            raise ConditionError("Keyword arguments are not allowed")
        if isinstance(node.func, ast.Name):
            func = _SAFE_FUNCTIONS.get(node.func.id)
            if func is None:
                raise ConditionError(f"Function not allowed: {node.func.id}")
        elif isinstance(node.func, ast.Attribute):
            func = self._eval_Attribute(node.func)
        else:
            raise ConditionError("Unsupported call")
        return func(*[self.eval(arg) for arg in node.args])


def evaluate_condition(condition: Optional[str], output: Optional[Dict[str, Any]]) -> bool:
    """
    Decide whether an edge with this condition is traversable.

    Raises:
        ConditionError: If the expression cannot be parsed or evaluated
    """
    if condition is None or not condition.strip():
        return True

    data = output if isinstance(output, dict) else {}
    literal = condition.strip().lower()
    if literal in TRUE_LITERALS or literal in FALSE_LITERALS:
        decision = data.get("decision")
        if isinstance(decision, str):
            decision = decision.strip().lower() in TRUE_LITERALS
        return bool(decision) == (literal in TRUE_LITERALS)

    try:
        tree = ast.parse(condition.strip(), mode="eval")
    except SyntaxError as e:
        raise ConditionError(f"Invalid condition syntax: {e}")

    try:
        return bool(_ConditionEvaluator({"data": data, "output": data}).eval(tree))
    except ConditionError:
        raise
    except Exception as e:
        raise ConditionError(f"Condition evaluation failed: {e}")


# ============================================================================
# RESOLUTION
# ============================================================================

def _edge_traversable(edge: Edge, output: Optional[Dict[str, Any]]) -> bool:
    try:
        return evaluate_condition(edge.condition, output)
    except ConditionError as e:
        logger.warning(
            f"Edge {edge.source} -> {edge.target} skipped: {e}",
            extra={"condition": edge.condition},
        )
        return False


def next_nodes(
    definition: Any,
    current_node_id: str,
    output: Optional[Dict[str, Any]] = None,
) -> List[Node]:
    """
    Return the nodes reachable through one traversable edge from current_node_id.

    Args:
        definition: WorkflowDefinition or the stored JSON graph
        current_node_id: Node that just completed
        output: Output of the completed node (used by edge conditions)

    Returns:
        Target nodes in edge order. Targets missing from the node set are
        dropped with a warning. A definition that cannot be parsed yields [].
    """
    try:
        workflow: WorkflowDefinition = parse_definition(definition)
    except DefinitionError as e:
        logger.error(f"Cannot resolve next nodes: {e}")
        return []

    nodes = workflow.node_map()
    result = []
    for edge in workflow.outgoing(current_node_id):
        target = nodes.get(edge.target)
        if target is None:
            logger.warning(
                f"Edge {edge.source} -> {edge.target} points to a missing node, dropping it"
            )
            continue
        if not _edge_traversable(edge, output):
            continue
        result.append(target)

    return result
