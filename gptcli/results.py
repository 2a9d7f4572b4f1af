"""Typed tool results, serialized to JSON only at the transport boundary."""

import json
from dataclasses import dataclass, field


@dataclass
class ToolResult:
    """Outcome of one tool call: success fields, or an error with a kind."""

    fields: dict = field(default_factory=dict)
    error: str | None = None
    kind: str | None = None

    @classmethod
    def success(cls, **fields) -> "ToolResult":
        return cls(fields=fields)

    @classmethod
    def failure(cls, kind: str, message: str, **fields) -> "ToolResult":
        return cls(fields=fields, error=message, kind=kind)

    @property
    def ok(self) -> bool:
        return self.error is None

    def payload(self) -> dict:
        if self.error is None:
            return dict(self.fields)
        return {"error": self.error, "kind": self.kind, **self.fields}

    def to_content(self) -> str:
        return json.dumps(self.payload(), ensure_ascii=False)
