import json

import pytest

from assistant_workflows.core.parser import WorkflowParser
from assistant_workflows.exceptions import WorkflowParseError, WorkflowValidationError
from assistant_workflows.models import StepType, TriggerType


def sample_workflow_dict():
    return {
        "workflow": {
            "id": "wf1",
            "name": "Test Workflow",
            "steps": [
                {"id": "start", "type": "LLM_PROMPT", "config": {"prompt": "hi"}},
                {
                    "id": "end",
                    "type": "NOTIFICATION",
                    "config": {"title": "done"},
                    "retryConfig": {"maxRetries": 2, "delayMs": 50, "backoffMultiplier": 2},
                },
            ],
        }
    }


def test_parse_workflow_dict():
    parser = WorkflowParser()
    workflow = parser.parse_dict(sample_workflow_dict())
    assert workflow.id == "wf1"
    assert [s.id for s in workflow.steps] == ["start", "end"]
    assert workflow.steps[0].type == StepType.LLM_PROMPT
    assert workflow.steps[0].name == "start"
    retry = workflow.steps[1].retry_config
    assert (retry.max_retries, retry.delay_ms, retry.backoff_multiplier) == (2, 50, 2.0)


def test_parse_yaml_string():
    content = """
name: Morning briefing
triggers:
  - type: CRON
    config:
      cron: "0 7 * * 1-5"
steps:
  - id: fetch
    type: HTTP_REQUEST
    config:
      url: https://example.com/news
    on_failure: fallback
  - id: fallback
    type: DELAY
"""
    workflow = WorkflowParser().parse(content)
    assert workflow.name == "Morning briefing"
    assert workflow.triggers[0].type == TriggerType.CRON
    assert workflow.steps[0].on_failure == "fallback"


def test_parse_json_string():
    workflow = WorkflowParser().parse_string(json.dumps(sample_workflow_dict()))
    assert workflow.name == "Test Workflow"


def test_parse_file(tmp_path):
    path = tmp_path / "flow.json"
    path.write_text(json.dumps(sample_workflow_dict()), encoding="utf-8")
    workflow = WorkflowParser().parse(path)
    assert len(workflow.steps) == 2


def test_unsupported_file_format(tmp_path):
    path = tmp_path / "flow.txt"
    path.write_text("name: x", encoding="utf-8")
    with pytest.raises(WorkflowParseError):
        WorkflowParser().parse_file(path)


def test_invalid_yaml():
    with pytest.raises(WorkflowParseError):
        WorkflowParser().parse_string("name: [unclosed")


def test_unknown_step_type_rejected():
    definition = sample_workflow_dict()
    definition["workflow"]["steps"][0]["type"] = "SHELL"
    with pytest.raises(WorkflowValidationError) as exc_info:
        WorkflowParser().parse_dict(definition)
    assert exc_info.value.errors


def test_missing_required_config_key():
    definition = sample_workflow_dict()
    definition["workflow"]["steps"][1]["config"] = {}
    with pytest.raises(WorkflowValidationError) as exc_info:
        WorkflowParser().parse_dict(definition)
    assert any("title" in error for error in exc_info.value.errors)


def test_unknown_branch_target():
    definition = sample_workflow_dict()
    definition["workflow"]["steps"][0]["on_success"] = "missing"
    with pytest.raises(WorkflowValidationError):
        WorkflowParser().parse_dict(definition)


def test_cycle_detection():
    definition = sample_workflow_dict()
    definition["workflow"]["steps"][1]["on_success"] = "start"
    with pytest.raises(WorkflowValidationError) as exc_info:
        WorkflowParser().parse_dict(definition)
    assert any("cycle" in error for error in exc_info.value.errors)


def test_duplicate_step_ids():
    definition = sample_workflow_dict()
    definition["workflow"]["steps"][1]["id"] = "start"
    with pytest.raises(WorkflowValidationError):
        WorkflowParser().parse_dict(definition)


def test_empty_steps_rejected():
    with pytest.raises(WorkflowValidationError):
        WorkflowParser().parse_dict({"name": "empty", "steps": []})
