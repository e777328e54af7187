"""
Unit tests for datasource references in expressions.
"""

import pytest
from services.builder.engine.expressions import expression_issues, find_references
from services.builder.engine.graph import ConditionNode, WorkflowGraph
from shared.exceptions import ExpressionSyntaxError


def test_find_references():
    refs = find_references("{{ Transaction_Total_From }} + {{Fee}} * 2")

    assert refs == ["Fee", "Transaction_Total_From"]


def test_plain_expression_has_no_references():
    assert find_references("100") == []
    assert find_references("") == []


def test_unclosed_reference_is_syntax_error():
    with pytest.raises(ExpressionSyntaxError):
        find_references("{{ Amount")


def test_expression_issues_per_node():
    graph = WorkflowGraph()
    graph.add_node(ConditionNode(id="ok", left_expression="{{Amount}}", right_expression="10"))
    graph.add_node(ConditionNode(id="bad", left_expression="{{Amount}}", right_expression="{{Missing}}"))
    graph.add_node(ConditionNode(id="broken", left_expression="{{ Amount"))

    issues = expression_issues(graph, ["Amount"])

    assert "ok" not in issues
    assert issues["bad"] == ["right: unknown datasource 'Missing'"]
    assert len(issues["broken"]) == 1
    assert issues["broken"][0].startswith("left: Invalid expression")


def test_malformed_block_without_reference_is_syntax_error():
    with pytest.raises(ExpressionSyntaxError):
        find_references("{% if Amount")

    assert find_references("{ not a tag }") == []
