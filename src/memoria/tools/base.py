"""Base tool interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class ToolResult:
    """Result from tool execution."""

    success: bool
    output: str
    error: str | None = None
    metadata: dict[str, Any] | None = None

    def to_message(self) -> str:
        """Text sent back to the model as the tool message content."""
        if self.success:
            return self.output or "(no output)"
        if self.output:
            return f"Error: {self.error}\n{self.output}"
        return f"Error: {self.error}"


class Tool(ABC):
    """Base interface for all tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Tool description for LLM."""
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool with given arguments."""
        ...

    def get_schema(self) -> dict[str, Any]:
        """Get tool schema for LLM function calling."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def validate_args(self, args: dict[str, Any]) -> tuple[bool, str | None]:
        """Validate arguments against schema. Returns (valid, error_message)."""
        required = self.parameters.get("required", [])
        properties = self.parameters.get("properties", {})

        for name in required:
            if name not in args:
                return False, f"Missing required argument: {name}"

        for key, value in args.items():
            schema = properties.get(key)
            if schema is None:
                return False, f"Unknown argument: {key}"
            expected_type = schema.get("type")
            if expected_type == "string" and not isinstance(value, str):
                return False, f"Argument '{key}' must be a string"
            if expected_type == "integer" and (
                not isinstance(value, int) or isinstance(value, bool)
            ):
                return False, f"Argument '{key}' must be an integer"
            if expected_type == "boolean" and not isinstance(value, bool):
                return False, f"Argument '{key}' must be a boolean"
            if "enum" in schema and value not in schema["enum"]:
                allowed = ", ".join(str(v) for v in schema["enum"])
                return False, f"Argument '{key}' must be one of: {allowed}"
            if expected_type == "integer":
                if "minimum" in schema and value < schema["minimum"]:
                    return False, f"Argument '{key}' must be >= {schema['minimum']}"
                if "maximum" in schema and value > schema["maximum"]:
                    return False, f"Argument '{key}' must be <= {schema['maximum']}"

        return True, None
