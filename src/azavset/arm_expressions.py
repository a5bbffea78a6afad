"""ARM template expression parsing and evaluation.

Exported templates refer to almost everything indirectly, e.g. a VM name is
"[parameters('virtualMachines_vm1_name')]" and a NIC reference is
"[resourceId('Microsoft.Network/networkInterfaces', parameters('nic_name'))]".
This module resolves those references over the template's parameter and
variable namespace instead of pattern-matching the raw strings.

Philosophy:
- Single responsibility: parse and evaluate the handful of functions
  exported templates use for names and ids
- Standard library only
- Anything outside the supported subset raises, it is never guessed

Public API:
    is_expression: True if a template string is an expression
    parse_expression: Parse an expression string into literals and FunctionCall nodes
    referenced_parameters: Parameter names referenced by an expression
    parse_resource_id: Split a literal Azure resource id into a ResourceReference
    ExpressionEvaluator: Evaluate expressions against parameters/variables
"""

import logging
from dataclasses import dataclass
from typing import Any

from azavset.exceptions import TemplateExpressionError

logger = logging.getLogger(__name__)

__all__ = [
    "ExpressionEvaluator",
    "FunctionCall",
    "ResourceReference",
    "is_expression",
    "parse_expression",
    "parse_resource_id",
    "referenced_parameters",
]


@dataclass(frozen=True)
class FunctionCall:
    """A parsed function call node, e.g. parameters('x')."""

    name: str
    args: tuple[Any, ...]


@dataclass(frozen=True)
class ResourceReference:
    """A resolved reference to a resource: full type plus (possibly nested) name."""

    resource_type: str
    name: str

    def matches(self, resource_type: str, name: str) -> bool:
        """Case-insensitive comparison against a resource type and name."""
        return (
            self.resource_type.lower() == resource_type.lower()
            and self.name.lower() == name.lower()
        )


def is_expression(value: Any) -> bool:
    """Check whether a template value is an expression ("[...]", but not "[[...")."""
    return (
        isinstance(value, str)
        and value.startswith("[")
        and value.endswith("]")
        and not value.startswith("[[")
    )


class _Parser:
    """Recursive descent parser for the body of an ARM expression."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def parse(self) -> Any:
        node = self._parse_value()
        self._skip_whitespace()
        if self.pos != len(self.text):
            if self.text[self.pos] in ".[":
                raise TemplateExpressionError(
                    f"Property and index access are not supported: '{self.text}'"
                )
            raise TemplateExpressionError(
                f"Unexpected '{self.text[self.pos]}' at position {self.pos} in '{self.text}'"
            )
        return node

    def _peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _skip_whitespace(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _parse_value(self) -> Any:
        self._skip_whitespace()
        ch = self._peek()

        if not ch:
            raise TemplateExpressionError(f"Unexpected end of expression: '{self.text}'")
        if ch == "'":
            return self._parse_string()
        if ch.isdigit() or ch == "-":
            return self._parse_integer()
        if ch.isalpha() or ch == "_":
            return self._parse_identifier()

        raise TemplateExpressionError(
            f"Unexpected '{ch}' at position {self.pos} in '{self.text}'"
        )

    def _parse_string(self) -> str:
        # Opening quote
        self.pos += 1
        chars: list[str] = []
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "'":
                # '' is an escaped single quote
                if self.text[self.pos + 1 : self.pos + 2] == "'":
                    chars.append("'")
                    self.pos += 2
                    continue
                self.pos += 1
                return "".join(chars)
            chars.append(ch)
            self.pos += 1
        raise TemplateExpressionError(f"Unterminated string in '{self.text}'")

    def _parse_integer(self) -> int:
        start = self.pos
        if self._peek() == "-":
            self.pos += 1
        while self._peek().isdigit():
            self.pos += 1
        literal = self.text[start : self.pos]
        try:
            return int(literal)
        except ValueError as e:
            raise TemplateExpressionError(f"Invalid number '{literal}' in '{self.text}'") from e

    def _parse_identifier(self) -> Any:
        start = self.pos
        while self._peek().isalnum() or self._peek() == "_":
            self.pos += 1
        identifier = self.text[start : self.pos]

        self._skip_whitespace()
        if self._peek() != "(":
            keywords = {"true": True, "false": False, "null": None}
            if identifier.lower() in keywords:
                return keywords[identifier.lower()]
            raise TemplateExpressionError(f"Unknown identifier '{identifier}' in '{self.text}'")

        # Function call
        self.pos += 1
        args: list[Any] = []
        self._skip_whitespace()
        if self._peek() == ")":
            self.pos += 1
            return FunctionCall(identifier, ())

        while True:
            args.append(self._parse_value())
            self._skip_whitespace()
            ch = self._peek()
            if ch == ",":
                self.pos += 1
            elif ch == ")":
                self.pos += 1
                return FunctionCall(identifier, tuple(args))
            else:
                raise TemplateExpressionError(
                    f"Expected ',' or ')' after argument of {identifier}() in '{self.text}'"
                )


def parse_expression(value: str) -> Any:
    """Parse a template string.

    Non-expression strings are returned as literals ("[[" is unescaped to "[").

    Args:
        value: Template string, e.g. "[concat('a', parameters('b'))]"

    Returns:
        A literal (str, int, bool, None) or a FunctionCall tree

    Raises:
        TemplateExpressionError: If the expression is malformed
    """
    if not is_expression(value):
        if isinstance(value, str) and value.startswith("[["):
            return value[1:]
        return value
    return _Parser(value[1:-1]).parse()


def _walk(node: Any):
    if isinstance(node, FunctionCall):
        yield node
        for arg in node.args:
            yield from _walk(arg)


def referenced_parameters(value: Any) -> set[str]:
    """Return the parameter names referenced anywhere in an expression.

    Args:
        value: Template value (non-strings and plain literals yield an empty set)

    Returns:
        Set of parameter names passed as literal strings to parameters()
    """
    if not is_expression(value):
        return set()

    names: set[str] = set()
    for call in _walk(parse_expression(value)):
        if call.name.lower() == "parameters" and call.args and isinstance(call.args[0], str):
            names.add(call.args[0])
    return names


def parse_resource_id(resource_id: str) -> ResourceReference | None:
    """Split a literal resource id into type and name.

    "/subscriptions/s/resourceGroups/rg/providers/Microsoft.Network/networkInterfaces/nic1"
    becomes ResourceReference("Microsoft.Network/networkInterfaces", "nic1"). Child
    resources keep their nested type and a "/"-joined name.

    Returns:
        ResourceReference, or None if the id has no provider segment
    """
    marker = "/providers/"
    index = resource_id.lower().rfind(marker)
    if index < 0:
        return None

    parts = [p for p in resource_id[index + len(marker) :].split("/") if p]
    # namespace, then alternating type/name pairs
    if len(parts) < 3 or len(parts) % 2 == 0:
        return None

    namespace = parts[0]
    types = parts[1::2]
    names = parts[2::2]
    return ResourceReference("/".join([namespace, *types]), "/".join(names))


class ExpressionEvaluator:
    """Evaluate template expressions against a parameter/variable namespace.

    Supported functions: parameters, variables, concat, resourceId, toLower,
    toUpper. resourceId() evaluates to a ResourceReference rather than a
    full id string since the subscription is not known offline.
    """

    def __init__(
        self, parameters: dict[str, Any], variables: dict[str, Any] | None = None
    ) -> None:
        self.parameters = parameters
        self.variables = variables or {}
        self._resolving: set[str] = set()

    def evaluate(self, value: Any) -> Any:
        """Evaluate a template value.

        Raises:
            TemplateExpressionError: On unsupported functions, unknown
                parameters/variables or malformed expressions
        """
        return self._eval(parse_expression(value) if isinstance(value, str) else value)

    def evaluate_name(self, value: Any) -> str | None:
        """Evaluate a resource name, returning None when it cannot be resolved."""
        try:
            result = self.evaluate(value)
        except TemplateExpressionError as e:
            logger.debug(f"Cannot evaluate name {value!r}: {e}")
            return None
        return result if isinstance(result, str) else None

    def resolve_reference(self, value: Any) -> ResourceReference | None:
        """Resolve a resource id expression or literal resource id.

        Returns:
            ResourceReference, or None if the value does not denote a resource
        """
        try:
            result = self.evaluate(value)
        except TemplateExpressionError as e:
            logger.debug(f"Cannot resolve reference {value!r}: {e}")
            return None

        if isinstance(result, ResourceReference):
            return result
        if isinstance(result, str):
            return parse_resource_id(result)
        return None

    def _eval(self, node: Any) -> Any:
        if not isinstance(node, FunctionCall):
            return node

        name = node.name.lower()
        args = [self._eval(arg) for arg in node.args]

        if name == "parameters":
            return self._parameter(args)
        if name == "variables":
            return self._variable(args)
        if name == "concat":
            return self._concat(args)
        if name == "resourceid":
            return self._resource_id(args)
        if name in ("tolower", "toupper"):
            if len(args) != 1 or not isinstance(args[0], str):
                raise TemplateExpressionError(f"{node.name}() expects one string argument")
            return args[0].lower() if name == "tolower" else args[0].upper()

        raise TemplateExpressionError(f"Unsupported template function: {node.name}()")

    def _parameter(self, args: list[Any]) -> Any:
        if len(args) != 1 or not isinstance(args[0], str):
            raise TemplateExpressionError("parameters() expects one string argument")

        definition = self.parameters.get(args[0])
        if not isinstance(definition, dict):
            raise TemplateExpressionError(f"Unknown parameter: {args[0]}")
        if "defaultValue" in definition:
            return definition["defaultValue"]
        if "value" in definition:
            return definition["value"]
        raise TemplateExpressionError(f"Parameter has no value: {args[0]}")

    def _variable(self, args: list[Any]) -> Any:
        if len(args) != 1 or not isinstance(args[0], str):
            raise TemplateExpressionError("variables() expects one string argument")

        key = args[0]
        if key not in self.variables:
            raise TemplateExpressionError(f"Unknown variable: {key}")
        if key in self._resolving:
            raise TemplateExpressionError(f"Circular variable reference: {key}")

        self._resolving.add(key)
        try:
            return self.evaluate(self.variables[key])
        finally:
            self._resolving.discard(key)

    @staticmethod
    def _concat(args: list[Any]) -> Any:
        if all(isinstance(a, list) for a in args) and args:
            return [item for a in args for item in a]
        if all(isinstance(a, (str, int)) and not isinstance(a, bool) for a in args):
            return "".join(str(a) for a in args)
        raise TemplateExpressionError("concat() arguments must be all strings or all arrays")

    @staticmethod
    def _resource_id(args: list[Any]) -> ResourceReference:
        if not all(isinstance(a, str) for a in args):
            raise TemplateExpressionError("resourceId() arguments must be strings")

        # Optional subscriptionId/resourceGroupName precede the type, which is the
        # first argument containing a '/'
        for index, arg in enumerate(args):
            if "/" in arg:
                names = args[index + 1 :]
                if not names:
                    raise TemplateExpressionError(f"resourceId() missing name for type {arg}")
                return ResourceReference(arg, "/".join(names))

        raise TemplateExpressionError("resourceId() missing resource type")
