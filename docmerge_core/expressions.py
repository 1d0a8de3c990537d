"""
Expression Evaluator for Template Conditions
Tokenizes, parses and evaluates IF conditions against a merge context.

Grammar, lowest to highest precedence::

    expr     := and_expr (OR and_expr)*
    and_expr := not_expr (AND not_expr)*
    not_expr := NOT not_expr | atom
    atom     := '(' expr ')'
              | ISBLANK field
              | operand (('==' | '!=' | '>' | '<' | '>=' | '<=') operand)?
              | operand (CONTAINS | STARTSWITH | ENDSWITH | IEQUALS) operand
    operand  := field | number | 'string' | TRUE | FALSE | NULL

Errors never escape ``evaluate_condition``: a malformed condition is logged
and evaluates to False. ``evaluate`` is the strict variant.
"""

import re
import math
import logging
from datetime import date, datetime
from typing import Any, Callable, List, Mapping, Optional, Union
from dataclasses import dataclass

from .context import UNRESOLVED, resolve_path
from .errors import ExpressionError

logger = logging.getLogger(__name__)


# =============================================================================
# TOKENS
# =============================================================================

class TokenType:
    LPAREN = "LPAREN"
    RPAREN = "RPAREN"
    OP = "OP"
    AND = "AND"
    OR = "OR"
    NOT = "NOT"
    STRING_OP = "STRING_OP"
    ISBLANK = "ISBLANK"
    LITERAL = "LITERAL"
    NUMBER = "NUMBER"
    STRING = "STRING"
    IDENT = "IDENT"
    EOF = "EOF"


@dataclass
class Token:
    type: str
    value: Any
    position: int


_TOKEN_RE = re.compile(r'''
    (?P<ws>\s+)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<op>==|!=|>=|<=|<>|>|<|=)
  | (?P<number>-?(?:\d+(?:\.\d+)?|\.\d+)(?![\w.]))
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<word>[A-Za-z_$][\w$]*(?:\.[\w$]+)*)
''', re.VERBOSE)

_KEYWORDS = {
    'AND': TokenType.AND,
    'OR': TokenType.OR,
    'NOT': TokenType.NOT,
    'CONTAINS': TokenType.STRING_OP,
    'STARTSWITH': TokenType.STRING_OP,
    'ENDSWITH': TokenType.STRING_OP,
    'IEQUALS': TokenType.STRING_OP,
    'ISBLANK': TokenType.ISBLANK,
    'TRUE': TokenType.LITERAL,
    'FALSE': TokenType.LITERAL,
    'NULL': TokenType.LITERAL,
}

_LITERAL_VALUES = {'TRUE': True, 'FALSE': False, 'NULL': None}

_OP_ALIASES = {'=': '==', '<>': '!='}

_ESCAPE_RE = re.compile(r'\\(.)')


class Tokenizer:
    """Split a condition string into tokens"""

    def tokenize(self, expression: str) -> List[Token]:
        tokens = []
        pos = 0

        while pos < len(expression):
            match = _TOKEN_RE.match(expression, pos)
            if not match:
                char = expression[pos]
                if char in "'\"":
                    raise ExpressionError("Unterminated string", expression, pos)
                raise ExpressionError(f"Unexpected character '{char}'", expression, pos)

            kind = match.lastgroup
            text = match.group(kind)

            if kind == 'lparen':
                tokens.append(Token(TokenType.LPAREN, text, pos))
            elif kind == 'rparen':
                tokens.append(Token(TokenType.RPAREN, text, pos))
            elif kind == 'op':
                tokens.append(Token(TokenType.OP, _OP_ALIASES.get(text, text), pos))
            elif kind == 'number':
                number = float(text) if '.' in text else int(text)
                tokens.append(Token(TokenType.NUMBER, number, pos))
            elif kind == 'string':
                tokens.append(Token(TokenType.STRING, _ESCAPE_RE.sub(r'\1', text[1:-1]), pos))
            elif kind == 'word':
                keyword = _KEYWORDS.get(text.upper())
                if keyword == TokenType.LITERAL:
                    tokens.append(Token(keyword, _LITERAL_VALUES[text.upper()], pos))
                elif keyword:
                    tokens.append(Token(keyword, text.upper(), pos))
                else:
                    tokens.append(Token(TokenType.IDENT, text, pos))

            pos = match.end()

        tokens.append(Token(TokenType.EOF, None, len(expression)))
        return tokens


# =============================================================================
# AST
# =============================================================================

@dataclass
class Literal:
    value: Any


@dataclass
class FieldRef:
    path: str


@dataclass
class Comparison:
    op: str
    left: Union[Literal, FieldRef]
    right: Union[Literal, FieldRef]


@dataclass
class StringOp:
    op: str
    field: Union[Literal, FieldRef]
    value: Union[Literal, FieldRef]


@dataclass
class IsBlank:
    field: FieldRef


@dataclass
class And:
    left: Any
    right: Any


@dataclass
class Or:
    left: Any
    right: Any


@dataclass
class Not:
    operand: Any


@dataclass
class Truthy:
    field: FieldRef


class Parser:
    """Recursive-descent parser producing a fresh AST per call"""

    def __init__(self, tokens: List[Token], expression: str = ""):
        self.tokens = tokens
        self.expression = expression
        self.pos = 0

    def parse(self):
        if self._peek().type == TokenType.EOF:
            raise ExpressionError("Empty condition", self.expression, 0)

        node = self._parse_or()
        token = self._peek()
        if token.type != TokenType.EOF:
            raise ExpressionError(f"Unexpected '{token.value}'", self.expression, token.position)
        return node

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        if token.type != TokenType.EOF:
            self.pos += 1
        return token

    def _expect(self, token_type: str, what: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            found = "end of condition" if token.type == TokenType.EOF else f"'{token.value}'"
            raise ExpressionError(f"Expected {what} but found {found}", self.expression, token.position)
        return self._advance()

    def _parse_or(self):
        left = self._parse_and()
        while self._peek().type == TokenType.OR:
            self._advance()
            left = Or(left, self._parse_and())
        return left

    def _parse_and(self):
        left = self._parse_not()
        while self._peek().type == TokenType.AND:
            self._advance()
            left = And(left, self._parse_not())
        return left

    def _parse_not(self):
        if self._peek().type == TokenType.NOT:
            self._advance()
            return Not(self._parse_not())
        return self._parse_atom()

    def _parse_atom(self):
        token = self._peek()

        if token.type == TokenType.LPAREN:
            self._advance()
            node = self._parse_or()
            self._expect(TokenType.RPAREN, "')'")
            return node

        if token.type == TokenType.ISBLANK:
            self._advance()
            if self._peek().type == TokenType.LPAREN:
                self._advance()
                ident = self._expect(TokenType.IDENT, "a field name")
                self._expect(TokenType.RPAREN, "')'")
            else:
                ident = self._expect(TokenType.IDENT, "a field name")
            return IsBlank(FieldRef(ident.value))

        left = self._parse_operand()
        following = self._peek()

        if following.type == TokenType.OP:
            self._advance()
            return Comparison(following.value, left, self._parse_operand())

        if following.type == TokenType.STRING_OP:
            self._advance()
            return StringOp(following.value, left, self._parse_operand())

        if isinstance(left, FieldRef):
            return Truthy(left)
        return left

    def _parse_operand(self):
        token = self._peek()

        if token.type == TokenType.IDENT:
            self._advance()
            return FieldRef(token.value)
        if token.type in (TokenType.NUMBER, TokenType.STRING, TokenType.LITERAL):
            self._advance()
            return Literal(token.value)

        found = "end of condition" if token.type == TokenType.EOF else f"'{token.value}'"
        raise ExpressionError(f"Expected a field or value but found {found}", self.expression, token.position)


# =============================================================================
# COERCION
# =============================================================================

def to_number(value: Any) -> float:
    """Numeric coercion used by ordering operators; NaN when impossible"""
    if value is None or value is UNRESOLVED:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp() * 1000
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day).timestamp() * 1000
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def to_text(value: Any) -> str:
    """String form used by CONTAINS / STARTSWITH / ENDSWITH / IEQUALS"""
    if value is None or value is UNRESOLVED:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def loose_equals(left: Any, right: Any) -> bool:
    """Coercive equality: numbers and numeric strings compare by value"""
    if left is UNRESOLVED:
        left = None
    if right is UNRESOLVED:
        right = None

    if left is None or right is None:
        return left is None and right is None

    if isinstance(left, bool) and isinstance(right, bool):
        return left == right
    if isinstance(left, bool):
        left = 1 if left else 0
    if isinstance(right, bool):
        right = 1 if right else 0

    left_numeric = isinstance(left, (int, float))
    right_numeric = isinstance(right, (int, float))

    if left_numeric and right_numeric:
        return left == right
    if left_numeric and isinstance(right, str):
        return to_number(right) == left
    if right_numeric and isinstance(left, str):
        return to_number(left) == right

    if isinstance(left, (date, datetime)) or isinstance(right, (date, datetime)):
        return to_text(left) == to_text(right)

    return left == right


def is_truthy(value: Any) -> bool:
    """A value is truthy unless it is missing, None, False or the empty string"""
    if value is None or value is UNRESOLVED:
        return False
    if value is False:
        return False
    if isinstance(value, str) and value == "":
        return False
    return True


def is_blank(value: Any) -> bool:
    if value is None or value is UNRESOLVED:
        return True
    return isinstance(value, str) and not value.strip()


_ORDERING = {
    '>': lambda a, b: a > b,
    '<': lambda a, b: a < b,
    '>=': lambda a, b: a >= b,
    '<=': lambda a, b: a <= b,
}

_STRING_OPS = {
    'CONTAINS': lambda a, b: b in a,
    'STARTSWITH': lambda a, b: a.startswith(b),
    'ENDSWITH': lambda a, b: a.endswith(b),
    'IEQUALS': lambda a, b: a.lower() == b.lower(),
}


# =============================================================================
# EVALUATOR
# =============================================================================

class ExpressionEvaluator:
    """
    Evaluate IF conditions against a merge context.

    Error policy: ``evaluate`` raises ExpressionError; ``evaluate_condition``
    is fail-soft and returns False for any malformed or unevaluable condition,
    reporting the error as a warning. Changing ON_ERROR is not supported; the
    constant documents the contract so callers can rely on it.
    """

    ON_ERROR = "false"

    def __init__(self):
        self.tokenizer = Tokenizer()

    def parse(self, expression: str):
        """Tokenize and parse an expression into a fresh AST"""
        tokens = self.tokenizer.tokenize(expression)
        try:
            return Parser(tokens, expression).parse()
        except RecursionError:
            raise ExpressionError("Condition is nested too deeply", expression)

    def evaluate(self, expression: str, context: Any) -> bool:
        """
        Strictly evaluate a condition.

        Args:
            expression: Condition text, e.g. "Amount > 1000 AND NOT IsClosed"
            context: MergeContext or plain mapping

        Returns:
            Boolean result

        Raises:
            ExpressionError: on any tokenize, parse or evaluation failure
        """
        node = self.parse(expression.strip())
        try:
            return bool(self._eval(node, context))
        except RecursionError:
            raise ExpressionError("Condition is nested too deeply", expression)

    def evaluate_condition(self, expression: str, context: Any,
                           on_warning: Optional[Callable[[str], None]] = None) -> bool:
        """
        Fail-soft evaluation: malformed conditions evaluate to False.

        Args:
            expression: Condition text
            context: MergeContext or plain mapping
            on_warning: Called with the warning message when the condition fails

        Returns:
            Boolean result, False on error
        """
        try:
            return self.evaluate(expression, context)
        except ExpressionError as e:
            message = f"Condition treated as false: {e}"
            if on_warning is not None:
                on_warning(message)
            else:
                logger.warning(message)
            return False

    def _eval(self, node, context: Any) -> Any:
        if isinstance(node, Or):
            return self._truth(node.left, context) or self._truth(node.right, context)
        if isinstance(node, And):
            return self._truth(node.left, context) and self._truth(node.right, context)
        if isinstance(node, Not):
            return not self._truth(node.operand, context)
        if isinstance(node, Comparison):
            return self._compare(node, context)
        if isinstance(node, StringOp):
            left = to_text(self._operand(node.field, context))
            right = to_text(self._operand(node.value, context))
            return _STRING_OPS[node.op](left, right)
        if isinstance(node, IsBlank):
            return is_blank(self._operand(node.field, context))
        if isinstance(node, Truthy):
            return is_truthy(self._operand(node.field, context))
        if isinstance(node, Literal):
            return is_truthy(node.value)
        raise ExpressionError(f"Unknown expression node {type(node).__name__}")

    def _truth(self, node, context: Any) -> bool:
        return bool(self._eval(node, context))

    def _compare(self, node: Comparison, context: Any) -> bool:
        left = self._operand(node.left, context)
        right = self._operand(node.right, context)

        if node.op == '==':
            return loose_equals(left, right)
        if node.op == '!=':
            return not loose_equals(left, right)

        compare = _ORDERING.get(node.op)
        if compare is None:
            raise ExpressionError(f"Unknown operator '{node.op}'")
        a, b = to_number(left), to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
        return compare(a, b)

    def _operand(self, node, context: Any) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, FieldRef):
            value = _resolve(context, node.path)
            return None if value is UNRESOLVED else value
        raise ExpressionError(f"Unexpected operand {type(node).__name__}")


def _resolve(context: Any, path: str) -> Any:
    if hasattr(context, 'resolve'):
        return context.resolve(path)
    if isinstance(context, Mapping):
        return resolve_path(context, path)
    return UNRESOLVED


def create_expression_evaluator() -> ExpressionEvaluator:
    """Factory function for ExpressionEvaluator"""
    return ExpressionEvaluator()
