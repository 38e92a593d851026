# Copyright (c) Syntropy Systems
"""Parameter space models: axes, exclusions and the space itself."""

from __future__ import annotations

import math
from collections.abc import Mapping

from pydantic import Field, ValidationError

from iomatrix.errors import InvalidSpace

from .base import FrozenModel, Scalar


def value_key(value: Scalar) -> tuple[str, Scalar]:
    """Return a comparison key that keeps booleans apart from numbers."""
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, (int, float)):
        return ("num", value)
    return ("str", value)


def format_value(value: Scalar) -> str:
    """Render an axis value the way it is written in a job file."""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


class ParameterAxis(FrozenModel):
    """One varying dimension of the benchmark matrix."""

    name: str
    values: list[Scalar] = Field(default_factory=list)


class Exclusion(FrozenModel):
    """Partial assignment that removes every combination agreeing with it."""

    match: dict[str, Scalar]

    def matches(self, params: Mapping[str, Scalar]) -> bool:
        """Return True if every pair of the exclusion agrees with params."""
        for name, value in self.match.items():
            if name not in params:
                return False
            if value_key(params[name]) != value_key(value):
                return False
        return True


class ParameterSpace(FrozenModel):
    """Ordered axes plus exclusion rules."""

    axes: list[ParameterAxis]
    exclude: list[Exclusion] = Field(default_factory=list)

    @classmethod
    def from_mapping(
        cls,
        axes: Mapping[str, list[Scalar]] | list[Mapping[str, object]],
        exclude: list[Mapping[str, Scalar]] | None = None,
    ) -> ParameterSpace:
        """Build and check a space from its configuration form.

        ``axes`` is either a mapping of axis name to values (declaration order
        is mapping order) or a list of ``{name, values}`` mappings.
        """
        if not isinstance(axes, (Mapping, list)):
            msg = "'axes' must be a mapping of axis name to values or a list of axes"
            raise InvalidSpace(msg)
        if exclude is not None and not isinstance(exclude, list):
            msg = "'exclude' must be a list of mappings"
            raise InvalidSpace(msg)
        for rule in exclude or []:
            if not isinstance(rule, Mapping):
                msg = f"Exclusion rules must be mappings of axis name to value, got {rule!r}"
                raise InvalidSpace(msg)

        parsed: list[dict[str, object]] = []
        if isinstance(axes, list):
            for entry in axes:
                if not isinstance(entry, Mapping):
                    msg = f"Axis entries must be mappings with 'name' and 'values', got {entry!r}"
                    raise InvalidSpace(msg)
                if "name" not in entry:
                    msg = "Axis entries must have a 'name' field"
                    raise InvalidSpace(msg)
                raw_values = entry.get("values")
                if not isinstance(raw_values, list):
                    msg = f"Axis '{entry['name']}' must have a list of 'values'"
                    raise InvalidSpace(msg)
                parsed.append({"name": str(entry["name"]), "values": raw_values})
        else:
            for name, values in axes.items():
                if not isinstance(values, list):
                    msg = f"Axis '{name}' must map to a list of values"
                    raise InvalidSpace(msg)
                parsed.append({"name": str(name), "values": values})

        try:
            space = cls.model_validate(
                {
                    "axes": parsed,
                    "exclude": [{"match": dict(rule)} for rule in exclude or []],
                }
            )
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            msg = f"Invalid parameter space at {location}: {first['msg']}"
            raise InvalidSpace(msg) from e

        space.check()
        return space

    @property
    def axis_names(self) -> list[str]:
        """Axis names in declaration order."""
        return [axis.name for axis in self.axes]

    @property
    def size(self) -> int:
        """Number of combinations before exclusions."""
        return math.prod(len(axis.values) for axis in self.axes)

    def axis(self, name: str) -> ParameterAxis:
        """Look up an axis by name."""
        for axis in self.axes:
            if axis.name == name:
                return axis
        msg = f"Unknown axis: {name}"
        raise KeyError(msg)

    def check(self) -> None:
        """Raise InvalidSpace naming the first violated constraint."""
        if not self.axes:
            msg = "Parameter space must declare at least one axis"
            raise InvalidSpace(msg)

        seen: set[str] = set()
        for axis in self.axes:
            if not axis.name:
                msg = "Axis names must be non-empty"
                raise InvalidSpace(msg)
            if axis.name in seen:
                msg = f"Duplicate axis name: '{axis.name}'"
                raise InvalidSpace(msg)
            seen.add(axis.name)

            if not axis.values:
                msg = f"Axis '{axis.name}' has no values"
                raise InvalidSpace(msg)
            keys = [value_key(v) for v in axis.values]
            if len(set(keys)) != len(keys):
                msg = f"Axis '{axis.name}' has duplicate values"
                raise InvalidSpace(msg)

        for rule in self.exclude:
            if not rule.match:
                msg = "Exclusion rules must name at least one axis"
                raise InvalidSpace(msg)
            for name, value in rule.match.items():
                if name not in seen:
                    msg = f"Exclusion references undeclared axis '{name}'"
                    raise InvalidSpace(msg)
                declared = {value_key(v) for v in self.axis(name).values}
                if value_key(value) not in declared:
                    msg = (
                        f"Exclusion references value {value!r} "
                        f"not declared on axis '{name}'"
                    )
                    raise InvalidSpace(msg)
