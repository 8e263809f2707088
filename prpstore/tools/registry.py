"""Operation registry: names, tiers, argument schemas and bodies of every tool."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from prpstore.errors import ValidationError
from prpstore.tools.policy import READ, WRITE


@dataclass(frozen=True)
class Operation:
    """One tool.

    ``body(repo, args, identity, prepared)`` runs inside a single transaction.
    ``prepare(extractor, args)``, when set, runs first and outside any
    transaction; its return value is passed to the body as ``prepared``.
    """

    name: str
    description: str
    args_model: type[BaseModel]
    tier: str
    body: Callable[..., Any]
    prepare: Optional[Callable[..., Any]] = None

    def input_schema(self) -> dict:
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return schema


def _error_details(exc: PydanticValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"]) or "arguments"
        details.append({"field": field, "message": err["msg"]})
    return details


class OperationRegistry:
    def __init__(self) -> None:
        self._operations: dict[str, Operation] = {}

    def register(self, operation: Operation) -> Operation:
        if operation.tier not in (READ, WRITE):
            raise ValueError(f"Unknown tier {operation.tier!r} for {operation.name}")
        if operation.name in self._operations:
            raise ValueError(f"Operation {operation.name} registered twice")
        self._operations[operation.name] = operation
        return operation

    def get(self, name: str) -> Operation:
        try:
            return self._operations[name]
        except KeyError:
            raise ValidationError(
                [{"field": "name", "message": f"Unknown tool: {name}"}]
            ) from None

    def validate(self, name: str, arguments: Any) -> BaseModel:
        """Validate raw arguments for a tool, returning them with defaults applied.

        Reports every violated field at once. Never touches storage or network.
        """
        operation = self.get(name)
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ValidationError(
                [{"field": "arguments", "message": "Arguments must be an object"}]
            )
        try:
            return operation.args_model.model_validate(arguments)
        except PydanticValidationError as e:
            raise ValidationError(_error_details(e)) from None

    def __iter__(self):
        return iter(self._operations.values())

    def __len__(self) -> int:
        return len(self._operations)

    def __contains__(self, name: str) -> bool:
        return name in self._operations
