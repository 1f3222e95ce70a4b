"""
变量插值：将 {{path.to.value}} 替换为执行上下文中的值
"""
import json
import re
from typing import Any, Dict, Mapping

from ..models.execution import ExecutionContext


TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

_MISSING = object()


def _root(context: Any) -> Mapping[str, Any]:
    if isinstance(context, ExecutionContext):
        return context.as_lookup()
    return context or {}


def resolve_path(context: Any, path: str, default: Any = None) -> Any:
    """
    按点号路径在上下文中查找值

    列表支持数字下标，例如 ``stepResults.search.items.0.title``。
    首段不是根对象名时按 ``variables`` 下的路径查找，根对象名优先。
    """
    current: Any = _root(context)
    parts = path.strip().split(".")
    variables = current.get("variables") if isinstance(current, Mapping) else None
    if parts[0] not in current and isinstance(variables, Mapping):
        current = variables
    for part in parts:
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def render_value(value: Any) -> str:
    """将值转换为可嵌入字符串的文本"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def interpolate(template: str, context: Any) -> str:
    """替换字符串中的所有 {{path}}，缺失的路径替换为空字符串"""
    if not isinstance(template, str) or "{{" not in template:
        return template
    root = _root(context)
    return TEMPLATE_PATTERN.sub(lambda m: render_value(resolve_path(root, m.group(1))), template)


def interpolate_value(value: Any, context: Any) -> Any:
    """递归插值：字符串、字典与列表"""
    root = _root(context)
    if isinstance(value, str):
        return interpolate(value, root)
    if isinstance(value, dict):
        return {key: interpolate_value(item, root) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate_value(item, root) for item in value]
    return value


def interpolate_config(config: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """对步骤配置做完整插值，返回新的字典"""
    return interpolate_value(dict(config or {}), context)
