"""Registry of the tools an agent declares to the model."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from careflow.core.models import ToolDefinition


class ToolRegistryError(ValueError):
    """Raised when a tool set is rejected at startup."""


class ToolInputError(ValueError):
    """Raised when a model-supplied tool input violates the declared schema."""


class ToolRegistry:
    """Tools keyed by name, validated against their schemas when registered."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()) -> None:
        self._tools: Dict[str, ToolDefinition] = {}
        self._validators: Dict[str, Draft7Validator] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        if not tool.name:
            raise ToolRegistryError("Tool name must not be empty")
        if tool.name in self._tools:
            raise ToolRegistryError(f"Duplicate tool name '{tool.name}'")
        try:
            Draft7Validator.check_schema(tool.input_schema)
        except SchemaError as exc:
            raise ToolRegistryError(
                f"Invalid input schema for tool '{tool.name}': {exc.message}"
            ) from exc
        if tool.input_schema.get("type") != "object":
            raise ToolRegistryError(f"Input schema for tool '{tool.name}' must describe an object")
        self._tools[tool.name] = tool
        self._validators[tool.name] = Draft7Validator(tool.input_schema)

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def specs(self) -> Tuple[Dict[str, Any], ...]:
        """Return the declarations sent to the model, in registration order."""
        return tuple(tool.spec() for tool in self._tools.values())

    def validate_input(self, name: str, payload: Any) -> None:
        validator = self._validators[name]
        error = next(iter(validator.iter_errors(payload)), None)
        if error is not None:
            location = "/".join(str(part) for part in error.absolute_path) or "<root>"
            raise ToolInputError(f"Invalid input for tool '{name}' at {location}: {error.message}")

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
