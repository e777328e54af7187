"""Datasource references in condition expressions, e.g. ``{{Transaction_Total_From}} + 100``."""

from typing import Dict, Iterable, List
from jinja2 import meta, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment
from services.builder.engine.graph import WorkflowGraph
from shared.exceptions import ExpressionSyntaxError

# Parsing only; expressions are never rendered here
_env = SandboxedEnvironment(autoescape=False)


def find_references(expression: str) -> List[str]:
    """Sorted datasource names referenced by an expression"""
    if not expression or "{" not in expression:
        return []
    try:
        parsed = _env.parse(expression)
    except TemplateSyntaxError as e:
        raise ExpressionSyntaxError(f"Invalid expression: {e.message}", expression=expression)
    return sorted(meta.find_undeclared_variables(parsed))


def expression_issues(graph: WorkflowGraph, datasources: Iterable[str]) -> Dict[str, List[str]]:
    """Unknown references and syntax errors per condition node; clean nodes are left out"""
    known = set(datasources)
    issues: Dict[str, List[str]] = {}
    for node in graph.condition_nodes():
        problems = []
        for side, expression in (("left", node.left_expression), ("right", node.right_expression)):
            try:
                references = find_references(expression)
            except ExpressionSyntaxError as e:
                problems.append(f"{side}: {e.message}")
                continue
            problems.extend(f"{side}: unknown datasource '{ref}'" for ref in references if ref not in known)
        if problems:
            issues[node.id] = problems
    return issues
