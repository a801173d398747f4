"""Function-calling application: the operations a model may call.

A ``FunctionSpec`` pairs a pydantic parameter model (which also provides the
JSON schema sent to the vendor) with the callable that executes it and an
optional semantic validator run after schema validation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError


@dataclass
class ValidationIssue:
    """One structured validation failure returned to the model as feedback."""

    path: str
    expected: str
    value: Any = None
    description: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "expected": self.expected,
            "value": self.value,
        }
        if self.description:
            data["description"] = self.description
        return data


def issues_from_pydantic(error: ValidationError) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for item in error.errors():
        path = "$input" + "".join(
            f"[{part}]" if isinstance(part, int) else f".{part}" for part in item["loc"]
        )
        issues.append(ValidationIssue(
            path=path,
            expected=item["type"],
            value=item.get("input"),
            description=item["msg"],
        ))
    return issues


@dataclass
class FunctionSpec:
    name: str
    description: str
    parameters: type[BaseModel]
    execute: Callable[[Any], Any]
    validate: Optional[Callable[[Any], list[ValidationIssue]]] = None

    def tool_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters.model_json_schema(),
            },
        }


@dataclass
class FunctionController:
    name: str
    functions: list[FunctionSpec] = field(default_factory=list)

    def get(self, name: str) -> Optional[FunctionSpec]:
        for function in self.functions:
            if function.name == name:
                return function
        return None

    def tools(self) -> list[dict[str, Any]]:
        return [function.tool_schema() for function in self.functions]

    @property
    def function_names(self) -> list[str]:
        return [function.name for function in self.functions]
