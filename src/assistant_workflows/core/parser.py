"""
工作流定义解析器
"""
import yaml
import json
from typing import Dict, Any, List, Union
from pathlib import Path

from jsonschema import Draft7Validator

from ..models.workflow import (
    WorkflowDefinition, StepDefinition, TriggerDefinition,
    StepType, TriggerType, pick_key
)
from ..exceptions import WorkflowParseError, WorkflowValidationError


RETRY_SCHEMA = {
    "type": "object",
    "properties": {
        "max_retries": {"type": "integer", "minimum": 0},
        "maxRetries": {"type": "integer", "minimum": 0},
        "delay_ms": {"type": "number", "minimum": 0},
        "delayMs": {"type": "number", "minimum": 0},
        "backoff_multiplier": {"type": "number", "exclusiveMinimum": 0},
        "backoffMultiplier": {"type": "number", "exclusiveMinimum": 0},
    },
}

STEP_SCHEMA = {
    "type": "object",
    "required": ["id", "type"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "type": {"enum": [t.value for t in StepType]},
        "config": {"type": "object"},
        "on_success": {"type": ["string", "null"]},
        "onSuccess": {"type": ["string", "null"]},
        "on_failure": {"type": ["string", "null"]},
        "onFailure": {"type": ["string", "null"]},
        "retry_config": {"oneOf": [RETRY_SCHEMA, {"type": "null"}]},
        "retryConfig": {"oneOf": [RETRY_SCHEMA, {"type": "null"}]},
    },
}

TRIGGER_SCHEMA = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"enum": [t.value for t in TriggerType]},
        "config": {"type": "object"},
        "is_enabled": {"type": "boolean"},
        "isEnabled": {"type": "boolean"},
    },
}

WORKFLOW_SCHEMA = {
    "type": "object",
    "required": ["name", "steps"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string", "minLength": 1},
        "description": {"type": ["string", "null"]},
        "is_enabled": {"type": "boolean"},
        "isEnabled": {"type": "boolean"},
        "variables": {"type": "object"},
        "triggers": {"type": "array", "items": TRIGGER_SCHEMA},
        "steps": {"type": "array", "minItems": 1, "items": STEP_SCHEMA},
    },
}


class WorkflowParser:
    """工作流解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.validator = Draft7Validator(WORKFLOW_SCHEMA)

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> WorkflowDefinition:
        """
        解析工作流定义

        Args:
            source: 工作流定义来源，可以是文件路径、字符串或字典

        Returns:
            WorkflowDefinition: 通过结构与语义验证的工作流定义

        Raises:
            WorkflowParseError: 内容无法解析
            WorkflowValidationError: 定义不合法
        """
        if isinstance(source, dict):
            return self.parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if "\n" not in source and len(source) < 1024:
                path = Path(source)
                if path.suffix.lower().lstrip('.') in self.parsers and path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Union[str, Path]) -> WorkflowDefinition:
        """解析工作流文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise WorkflowParseError(f"Failed to read {file_path}: {e}") from e

        return self.parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> WorkflowDefinition:
        """解析 YAML 或 JSON 字符串（JSON 是 YAML 的子集）"""
        stripped = content.lstrip()
        if stripped.startswith('{'):
            data = self._parse_json(content)
        else:
            data = self._parse_yaml(content)
        return self.parse_dict(data)

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}") from e

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}") from e

    def schema_errors(self, data: Any) -> List[str]:
        """结构验证（JSON Schema）"""
        errors = []
        for error in sorted(self.validator.iter_errors(data), key=lambda e: list(e.path)):
            path = ".".join(str(p) for p in error.path)
            errors.append(f"{path}: {error.message}" if path else error.message)
        return errors

    def parse_dict(self, data: Dict[str, Any]) -> WorkflowDefinition:
        """解析字典格式的工作流定义"""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")

        if 'workflow' in data and isinstance(data['workflow'], dict):
            data = data['workflow']

        errors = self.schema_errors(data)
        if errors:
            raise WorkflowValidationError(f"Workflow validation failed: {errors}", errors)

        workflow = WorkflowDefinition(
            name=data['name'],
            description=data.get('description'),
            is_enabled=bool(pick_key(data, 'is_enabled', 'isEnabled', default=True)),
            triggers=[TriggerDefinition.from_dict(t) for t in data.get('triggers') or []],
            steps=[StepDefinition.from_dict(s) for s in data['steps']],
            variables=dict(data.get('variables') or {}),
        )
        if data.get('id'):
            workflow.id = data['id']

        errors = workflow.validate()
        if errors:
            raise WorkflowValidationError(f"Workflow validation failed: {errors}", errors)

        return workflow
