from assistant_workflows.core.interpolation import (
    interpolate, interpolate_value, resolve_path, render_value
)
from assistant_workflows.models import ExecutionContext


def make_context():
    return ExecutionContext(
        workflow_id="wf-1",
        execution_id="exe-1",
        trigger_payload={"city": "Oslo"},
        variables={"name": "Ada", "enabled": True, "tags": ["a", "b"]},
        step_results={
            "search": {"items": [{"title": "first"}, {"title": "second"}], "count": 2},
            "empty": None,
        },
    )


def test_resolve_nested_path_with_list_index():
    context = make_context()
    assert resolve_path(context, "stepResults.search.items.1.title") == "second"
    assert resolve_path(context, "step_results.search.count") == 2
    assert resolve_path(context, "triggerPayload.city") == "Oslo"


def test_bare_path_falls_back_to_variables():
    context = ExecutionContext(workflow_id="wf", execution_id="exe", variables={"a": {"b": "x"}})
    assert interpolate("{{a.b}}", context) == "x"
    assert interpolate("{{a.b}}", {"variables": {"a": {"b": "x"}}}) == "x"
    assert interpolate("{{missing.path}}", context) == ""


def test_root_names_win_over_variables():
    context = ExecutionContext(
        workflow_id="wf-1",
        execution_id="exe-1",
        variables={"workflowId": "shadowed", "stepResults": {"s": 1}, "name": "Ada"},
        step_results={"s": 2},
    )
    assert interpolate("{{workflowId}}", context) == "wf-1"
    assert resolve_path(context, "stepResults.s") == 2
    assert resolve_path(context, "name") == "Ada"


def test_missing_path_returns_default():
    context = make_context()
    assert resolve_path(context, "variables.nope") is None
    assert resolve_path(context, "stepResults.search.items.9.title", "x") == "x"


def test_interpolate_scalars():
    context = make_context()
    assert interpolate("Hello {{variables.name}}!", context) == "Hello Ada!"
    assert interpolate("{{ variables.enabled }}", context) == "true"
    assert interpolate("count={{stepResults.search.count}}", context) == "count=2"


def test_missing_and_none_render_empty():
    context = make_context()
    assert interpolate("[{{variables.missing}}]", context) == "[]"
    assert interpolate("[{{stepResults.empty}}]", context) == "[]"


def test_non_scalar_rendered_as_json():
    rendered = interpolate("{{variables.tags}}", make_context())
    assert rendered == '[\n  "a",\n  "b"\n]'
    assert render_value({"k": 1}) == '{\n  "k": 1\n}'


def test_text_without_tokens_unchanged():
    assert interpolate("plain text", make_context()) == "plain text"


def test_interpolate_value_recurses():
    value = {
        "url": "https://api/{{triggerPayload.city}}",
        "items": ["{{variables.name}}", 3],
        "nested": {"flag": "{{variables.enabled}}"},
    }
    assert interpolate_value(value, make_context()) == {
        "url": "https://api/Oslo",
        "items": ["Ada", 3],
        "nested": {"flag": "true"},
    }
