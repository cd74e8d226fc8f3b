"""Configuration helpers for hybridlm blocks and models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Iterable, Type, TypeVar

from .errors import ConfigurationError

T = TypeVar("T", bound="ConfigBase")


@dataclass
class ConfigBase:
    """Dataclass mixin with serialization and validation helpers."""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown {cls.__name__} fields: {unknown}")
        return cls(**data)

    def _require_positive(self, names: Iterable[str]) -> None:
        for name in names:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(
                    f"{type(self).__name__}.{name} must be a positive integer, got {value!r}"
                )
