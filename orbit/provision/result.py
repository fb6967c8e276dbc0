from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping


@dataclass(frozen=True)
class StepResult:
    success: bool
    error: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @classmethod
    def succeeded(cls, data: Mapping[str, Any] | None = None) -> StepResult:
        return cls(success=True, data=data or {})

    @classmethod
    def failed(cls, error: str) -> StepResult:
        return cls(success=False, error=error)

    @property
    def is_success(self) -> bool:
        return self.success

    @property
    def is_failed(self) -> bool:
        return not self.success
