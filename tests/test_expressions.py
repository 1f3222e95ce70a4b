import pytest

from assistant_workflows.core.expressions import evaluate_condition, tokenize
from assistant_workflows.exceptions import ExpressionError
from assistant_workflows.models import ExecutionContext


@pytest.fixture
def context():
    return ExecutionContext(
        workflow_id="wf",
        execution_id="exe",
        variables={"count": 7, "status": "ok", "tags": ["urgent", "home"]},
        step_results={"check": {"score": 0.8}},
    )


@pytest.mark.parametrize("expression, expected", [
    ("{{variables.count}} > 5", True),
    ("{{variables.count}} <= 5", False),
    ("'{{variables.status}}' == 'ok'", True),
    ("variables.status === 'ok'", True),
    ("variables.count == '7'", True),
    ("variables.count === '7'", False),
    ("variables.count !== 7", False),
    ("'urgent' in variables.tags", True),
    ("'ok' in 'looks ok'", True),
    ("stepResults.check.score >= 0.5 && variables.count < 10", True),
    ("false || !(variables.count > 100)", True),
    ("not true or false", False),
    ("variables.missing == null", True),
    ("-1 < 0", True),
    ("True and False", False),
    ("'home' in {{variables.tags}}", True),
    ("{{variables.missing}} > 3", False),
    ("'{{variables.count}}' < '10'", True),
    ("{{count}} === 7", True),
])
def test_evaluate_condition(context, expression, expected):
    assert evaluate_condition(expression, context) is expected


def test_boolean_passthrough(context):
    assert evaluate_condition(True, context) is True


def test_truthiness_of_bare_value(context):
    assert evaluate_condition("variables.status", context) is True
    assert evaluate_condition("variables.missing", context) is False


@pytest.mark.parametrize("expression", [
    "",
    "(1 < 2",
    "1 <",
    "a; b",
    "__import__('os')",
    "1 2",
])
def test_invalid_expressions(context, expression):
    with pytest.raises(ExpressionError):
        evaluate_condition(expression, context)


def test_tokenize_keywords():
    kinds = [(t.kind, t.value) for t in tokenize("a.b in null")]
    assert kinds == [("name", "a.b"), ("op", "in"), ("literal", None)]


def test_tokenize_template_as_single_operand():
    kinds = [(t.kind, t.value) for t in tokenize("{{ variables.count }} > '{{variables.status}}!'")]
    assert kinds == [
        ("template", "variables.count"),
        ("op", ">"),
        ("text", "{{variables.status}}!"),
    ]


@pytest.mark.parametrize("role", [
    "guest' || 'a' == 'a' || 'b",
    'guest" || "a" == "a" || "b',
    "true || 1 == 1",
])
def test_referenced_text_never_becomes_syntax(role):
    context = ExecutionContext(workflow_id="wf", execution_id="exe", trigger_payload={"role": role})

    assert evaluate_condition("'{{triggerPayload.role}}' == 'admin'", context) is False
    assert evaluate_condition("{{triggerPayload.role}} == 'admin'", context) is False
    assert evaluate_condition("{{triggerPayload.role}} == '" + role.replace("'", "\\'") + "'", context) is True
