"""
受限的布尔表达式求值器

仅支持：字面量（数字、字符串、true/false/null）、点号路径引用与 {{path}} 引用、
比较运算（== != === !== < <= > >= in）、逻辑运算（&& || ! 以及 and / or / not）
和括号。表达式文本来自持久化的工作流定义，绝不交给通用解释器执行。

{{path}} 在切分记号之后才解析为值，引用的内容（例如触发负载中的文本）
只会作为操作数参与比较，不会成为表达式语法的一部分。
"""
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from ..exceptions import ExpressionError
from .interpolation import interpolate, resolve_path


TOKEN_PATTERN = re.compile(r"""
    (?P<ws>\s+)
  | (?P<template>\{\{\s*[^{}]+?\s*\}\})
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!()-])
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*)
""", re.VERBOSE)

KEYWORDS = {
    "true": True, "True": True,
    "false": False, "False": False,
    "null": None, "None": None,
}

COMPARISON_OPS = {"==", "!=", "===", "!==", "<", "<=", ">", ">=", "in"}


@dataclass
class Token:
    kind: str
    value: Any
    position: int


def tokenize(expression: str) -> List[Token]:
    """将表达式切分为记号"""
    tokens = []
    position = 0
    while position < len(expression):
        match = TOKEN_PATTERN.match(expression, position)
        if not match:
            raise ExpressionError(
                f"Unexpected character {expression[position]!r} at position {position}"
            )
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "template":
            tokens.append(Token("template", text[2:-2].strip(), position))
        elif kind == "number":
            tokens.append(Token("literal", float(text) if "." in text else int(text), position))
        elif kind == "string":
            body = re.sub(r"\\(.)", r"\1", text[1:-1])
            # 字符串中的 {{path}} 在求值时替换，结果仍是一个字符串值
            tokens.append(Token("text" if "{{" in body else "literal", body, position))
        elif kind == "name":
            if text in KEYWORDS:
                tokens.append(Token("literal", KEYWORDS[text], position))
            elif text in ("and", "or", "not", "in"):
                tokens.append(Token("op", text, position))
            else:
                tokens.append(Token("name", text, position))
        elif kind == "op":
            tokens.append(Token("op", text, position))
        position = match.end()
    return tokens


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _loose_equals(left: Any, right: Any) -> bool:
    if left == right and type(left) is type(right):
        return True
    if isinstance(left, bool) or isinstance(right, bool):
        return left is right
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return left == right


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return left is right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def _order(op: str, left: Any, right: Any) -> bool:
    # 两侧都可转为数字时按数值比较，否则两侧都是字符串时按字典序
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        pair = (left_num, right_num)
    elif isinstance(left, str) and isinstance(right, str):
        pair = (left, right)
    else:
        return False
    if op == "<":
        return pair[0] < pair[1]
    if op == "<=":
        return pair[0] <= pair[1]
    if op == ">":
        return pair[0] > pair[1]
    return pair[0] >= pair[1]


def compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return _loose_equals(left, right)
    if op == "!=":
        return not _loose_equals(left, right)
    if op == "===":
        return _strict_equals(left, right)
    if op == "!==":
        return not _strict_equals(left, right)
    if op == "in":
        if isinstance(right, str):
            return left is not None and str(left) in right
        if isinstance(right, (list, tuple, dict)):
            return left in right
        return False
    return _order(op, left, right)


class ExpressionParser:
    """递归下降解析并求值"""

    def __init__(self, tokens: List[Token], context: Any):
        self.tokens = tokens
        self.context = context
        self.index = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def advance(self) -> Token:
        token = self.peek()
        if token is None:
            raise ExpressionError("Unexpected end of expression")
        self.index += 1
        return token

    def match_op(self, *ops: str) -> Optional[str]:
        token = self.peek()
        if token is not None and token.kind == "op" and token.value in ops:
            self.index += 1
            return token.value
        return None

    def parse(self) -> Any:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        value = self.parse_or()
        token = self.peek()
        if token is not None:
            raise ExpressionError(f"Unexpected token {token.value!r} at position {token.position}")
        return value

    def parse_or(self) -> Any:
        value = self.parse_and()
        while self.match_op("||", "or"):
            right = self.parse_and()
            value = bool(value) or bool(right)
        return value

    def parse_and(self) -> Any:
        value = self.parse_not()
        while self.match_op("&&", "and"):
            right = self.parse_not()
            value = bool(value) and bool(right)
        return value

    def parse_not(self) -> Any:
        if self.match_op("!", "not"):
            return not bool(self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self) -> Any:
        left = self.parse_operand()
        token = self.peek()
        if token is not None and token.kind == "op" and token.value in COMPARISON_OPS:
            self.index += 1
            right = self.parse_operand()
            return compare(token.value, left, right)
        return left

    def parse_operand(self) -> Any:
        token = self.advance()
        if token.kind == "literal":
            return token.value
        if token.kind in ("name", "template"):
            return resolve_path(self.context, token.value)
        if token.kind == "text":
            return interpolate(token.value, self.context)
        if token.kind == "op" and token.value == "(":
            value = self.parse_or()
            if not self.match_op(")"):
                raise ExpressionError(f"Missing ')' for '(' at position {token.position}")
            return value
        if token.kind == "op" and token.value == "-":
            operand = self.advance()
            if operand.kind != "literal" or _as_number(operand.value) is None \
                    or isinstance(operand.value, str):
                raise ExpressionError(f"Expected number after '-' at position {token.position}")
            return -operand.value
        raise ExpressionError(f"Unexpected token {token.value!r} at position {token.position}")


def evaluate_condition(expression: str, context: Any) -> bool:
    """
    求值条件表达式

    Raises:
        ExpressionError: 表达式语法错误
    """
    if isinstance(expression, bool):
        return expression
    return bool(ExpressionParser(tokenize(str(expression)), context).parse())
