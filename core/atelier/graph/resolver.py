"""
Variable Resolver - ``{{scope.path}}`` substitution for node configs.

Scopes:
- ``system.*``  execution metadata (run id, definition id, user id, timestamps)
- ``form.*``    caller inputs, with pipeline variables as defaults
- ``<nodeId>.*`` outputs of nodes that already ran in this run

A bare first segment that is not a scope falls back to run state, so a key
written by a node under its ``outputKey`` resolves too.

Resolution is pure substitution. Unresolved placeholders are left exactly
as written so a missing binding stays visible in the output. There is no
expression evaluation; branching belongs to condition nodes.
"""

import json
import re
from collections.abc import Mapping
from typing import Any

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

_MISSING = object()


def lookup_path(root: Any, path: str) -> Any:
    """
    Walk a dotted path through nested mappings and sequences.

    Returns the module-level sentinel ``_MISSING`` when any segment is absent.
    """
    value = root
    for segment in path.split("."):
        if isinstance(value, Mapping):
            if segment not in value:
                return _MISSING
            value = value[segment]
        elif isinstance(value, (list, tuple)) and segment.lstrip("-").isdigit():
            index = int(segment)
            if -len(value) <= index < len(value):
                value = value[index]
            else:
                return _MISSING
        else:
            return _MISSING
    return value


def is_missing(value: Any) -> bool:
    return value is _MISSING


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str, ensure_ascii=False)
    return str(value)


def extract_references(template: Any) -> list[str]:
    """List every placeholder path referenced anywhere in a JSON tree."""
    found: list[str] = []

    def _walk(node: Any) -> None:
        if isinstance(node, str):
            for match in PLACEHOLDER_PATTERN.finditer(node):
                path = match.group(1).strip()
                if path and path not in found:
                    found.append(path)
        elif isinstance(node, Mapping):
            for item in node.values():
                _walk(item)
        elif isinstance(node, (list, tuple)):
            for item in node:
                _walk(item)

    _walk(template)
    return found


class VariableResolver:
    """
    Resolves placeholders against a layered, read-only view of one run.

    Example:
        resolver = VariableResolver(form={"imageUrl": "https://x/y.jpg"})
        resolver.resolve("{{form.imageUrl}}")  # "https://x/y.jpg"
        resolver.resolve("{{form.missing}}")   # "{{form.missing}}"
    """

    SCOPES = ("system", "form")

    def __init__(
        self,
        system: Mapping[str, Any] | None = None,
        form: Mapping[str, Any] | None = None,
        outputs: Mapping[str, Any] | None = None,
        state: Mapping[str, Any] | None = None,
    ):
        self._system = system or {}
        self._form = form or {}
        self._outputs = outputs or {}
        self._state = state or {}

    def lookup(self, path: str) -> Any:
        """Return the value at ``path`` or the missing sentinel."""
        scope, _, rest = path.partition(".")
        if scope == "system":
            return lookup_path(self._system, rest) if rest else dict(self._system)
        if scope == "form":
            return lookup_path(self._form, rest) if rest else dict(self._form)
        if scope in self._outputs:
            output = self._outputs[scope]
            return lookup_path(output, rest) if rest else output
        if scope in self._state:
            value = self._state[scope]
            return lookup_path(value, rest) if rest else value
        return _MISSING

    def get(self, path: str, default: Any = None) -> Any:
        value = self.lookup(path)
        return default if value is _MISSING else value

    def resolve(self, template: str) -> Any:
        """
        Resolve placeholders in a single string.

        A string that is exactly one placeholder resolves to the raw value,
        keeping its type. Placeholders embedded in text are stringified.
        """
        if "{{" not in template:
            return template

        whole = PLACEHOLDER_PATTERN.fullmatch(template)
        if whole is not None:
            value = self.lookup(whole.group(1).strip())
            return template if value is _MISSING else value

        def _replace(match: re.Match[str]) -> str:
            value = self.lookup(match.group(1).strip())
            if value is _MISSING:
                return match.group(0)
            return _stringify(value)

        return PLACEHOLDER_PATTERN.sub(_replace, template)

    def resolve_all(self, tree: Any) -> Any:
        """Deep-walk a JSON tree, substituting string leaves only."""
        if isinstance(tree, str):
            return self.resolve(tree)
        if isinstance(tree, Mapping):
            return {key: self.resolve_all(value) for key, value in tree.items()}
        if isinstance(tree, list):
            return [self.resolve_all(item) for item in tree]
        if isinstance(tree, tuple):
            return tuple(self.resolve_all(item) for item in tree)
        return tree

    def unresolved(self, tree: Any) -> list[str]:
        """Placeholder paths in ``tree`` that do not resolve in this context."""
        return [path for path in extract_references(tree) if self.lookup(path) is _MISSING]
