# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigurationError


REQUIREMENT_SEPARATOR = "&&"


# ---------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CapabilityRequirement:
    """
    Ordered set of capability tags a worker must advertise (logical AND).

    Tags are free-form and matched exactly; there are no wildcards.
    Two requirements are equal when their tag tuples are equal, which is
    the same as comparing their normalised expressions.
    """
    tags: Tuple[str, ...]

    def __post_init__(self) -> None:
        tags = tuple(self.tags)
        if not tags:
            raise ConfigurationError("A capability requirement needs at least one tag")
        for tag in tags:
            if not isinstance(tag, str) or not tag.strip():
                raise ConfigurationError(f"Invalid capability tag: {tag!r}")
            if REQUIREMENT_SEPARATOR in tag:
                raise ConfigurationError(f"Capability tag must not contain '&&': {tag!r}")
        object.__setattr__(self, "tags", tuple(t.strip() for t in tags))

    @classmethod
    def of(cls, *tags: str) -> CapabilityRequirement:
        return cls(tuple(tags))

    @classmethod
    def parse(cls, text: str) -> CapabilityRequirement:
        """Parse a label expression such as ``"macOS && gcc"``."""
        if not isinstance(text, str):
            raise ConfigurationError(f"Requirement must be a string, got {type(text).__name__}")
        parts = [p.strip() for p in text.split(REQUIREMENT_SEPARATOR)]
        if any(not p for p in parts):
            raise ConfigurationError(f"Malformed requirement expression: {text!r}")
        return cls(tuple(parts))

    def expression(self) -> str:
        return f" {REQUIREMENT_SEPARATOR} ".join(self.tags)

    def is_satisfied_by(self, capabilities: Iterable[str]) -> bool:
        available = set(capabilities)
        return all(tag in available for tag in self.tags)

    def __str__(self) -> str:
        return self.expression()


def parse_assignment(assignment: str) -> Tuple[str, str]:
    """Split ``KEY=VALUE``. The value may be empty or contain further '='."""
    if not isinstance(assignment, str) or "=" not in assignment:
        raise ConfigurationError(f"Environment override must be KEY=VALUE, got {assignment!r}")
    key, _, value = assignment.partition("=")
    key = key.strip()
    if not key:
        raise ConfigurationError(f"Environment override has an empty variable name: {assignment!r}")
    return key, value


def normalize_overrides(
    raw: Optional[Mapping[Any, Sequence[str]]],
) -> Dict[CapabilityRequirement, Tuple[str, ...]]:
    """
    Validate an overrides mapping (requirement -> ordered KEY=VALUE list)
    and key it by structured requirement.
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"env_overrides must be a mapping, got {type(raw).__name__}")

    out: Dict[CapabilityRequirement, Tuple[str, ...]] = {}
    for key, assignments in raw.items():
        req = key if isinstance(key, CapabilityRequirement) else CapabilityRequirement.parse(key)
        if isinstance(key, str) and key != req.expression():
            # lookup is by exact key; "Linux&&gcc" would silently match "Linux && gcc"
            raise ConfigurationError(
                f"Override key {key!r} must be written exactly as {req.expression()!r}"
            )
        if isinstance(assignments, str) or not isinstance(assignments, Sequence):
            raise ConfigurationError(
                f"Overrides for {req.expression()!r} must be a list of KEY=VALUE strings"
            )
        for assignment in assignments:
            parse_assignment(assignment)
        if req in out:
            raise ConfigurationError(f"Duplicate override key: {req.expression()!r}")
        out[req] = tuple(assignments)
    return out


def _as_str_tuple(value: Any, what: str) -> Tuple[str, ...]:
    if value is None:
        raise ConfigurationError(f"{what} is required")
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise ConfigurationError(f"{what} must be a list of strings, got {value!r}")
    items = tuple(value)
    for item in items:
        if not isinstance(item, str) or not item.strip():
            raise ConfigurationError(f"{what} contains an invalid entry: {item!r}")
    return items


# ---------------------------------------------------------------------
# Declarative matrix
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class BuildCombination:
    """One declared row of the build matrix."""
    platform_tag: str
    tool_tags: Tuple[str, ...]
    build_types: Tuple[str, ...]
    extra_args: str = ""
    extra_steps: Tuple[str, ...] = ()
    env_overrides: Mapping[CapabilityRequirement, Tuple[str, ...]] = field(
        default_factory=dict, hash=False
    )

    def __post_init__(self) -> None:
        if not isinstance(self.platform_tag, str) or not self.platform_tag.strip():
            raise ConfigurationError(f"platform_tag must be a non-empty string, got {self.platform_tag!r}")

        tools = _as_str_tuple(self.tool_tags, f"tool_tags of {self.platform_tag!r}")
        build_types = _as_str_tuple(self.build_types, f"build_types of {self.platform_tag!r}")
        if not build_types:
            raise ConfigurationError(f"build_types of {self.platform_tag!r} must not be empty")
        dupes = sorted({b for b in build_types if build_types.count(b) > 1})
        if dupes:
            raise ConfigurationError(f"Duplicate build types for {self.platform_tag!r}: {dupes}")

        if not isinstance(self.extra_args, str):
            raise ConfigurationError(f"extra_args must be a string, got {self.extra_args!r}")
        extra_steps = _as_str_tuple(self.extra_steps, f"extra_steps of {self.platform_tag!r}")

        object.__setattr__(self, "platform_tag", self.platform_tag.strip())
        object.__setattr__(self, "tool_tags", tools)
        object.__setattr__(self, "build_types", build_types)
        object.__setattr__(self, "extra_steps", extra_steps)
        object.__setattr__(
            self, "env_overrides", MappingProxyType(normalize_overrides(self.env_overrides))
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BuildCombination:
        """
        Build a combination from a plain mapping:

            {"platform": "Linux", "tools": ["gcc", "clang"],
             "build_types": ["debug", "release"], "extra_args": "-DWITH_X=ON",
             "extra_steps": ["coverage"],
             "env_overrides": {"Linux && clang": ["CXX=clang++"]}}
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Combination must be a mapping, got {type(data).__name__}")
        known = {"platform", "tools", "build_types", "extra_args", "extra_steps", "env_overrides"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown combination keys: {unknown}")
        for required in ("platform", "tools", "build_types"):
            if required not in data:
                raise ConfigurationError(f"Combination is missing {required!r}: {dict(data)!r}")
        return cls(
            platform_tag=data["platform"],
            tool_tags=data["tools"],
            build_types=data["build_types"],
            extra_args=data.get("extra_args", ""),
            extra_steps=data.get("extra_steps", ()),
            env_overrides=data.get("env_overrides") or {},
        )


@dataclass(frozen=True)
class BuildMatrix:
    """Ordered combinations plus overrides that apply across the whole matrix."""
    combinations: Tuple[BuildCombination, ...]
    env_overrides: Mapping[CapabilityRequirement, Tuple[str, ...]] = field(
        default_factory=dict, hash=False
    )

    def __post_init__(self) -> None:
        combos = tuple(self.combinations)
        for c in combos:
            if not isinstance(c, BuildCombination):
                raise ConfigurationError(f"Matrix entries must be BuildCombination, got {type(c).__name__}")
        object.__setattr__(self, "combinations", combos)
        object.__setattr__(
            self, "env_overrides", MappingProxyType(normalize_overrides(self.env_overrides))
        )

    @classmethod
    def from_entries(
        cls,
        entries: Iterable[Any],
        env_overrides: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> BuildMatrix:
        """Accept BuildCombination objects and/or plain mappings."""
        combos = [e if isinstance(e, BuildCombination) else BuildCombination.from_dict(e) for e in entries]
        return cls(combinations=tuple(combos), env_overrides=env_overrides or {})


# ---------------------------------------------------------------------
# Expanded jobs and their results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobDescriptor:
    """A fully expanded, schedulable unit. Immutable once created."""
    id: str
    matrix_index: int
    tool_index: int
    requirement: CapabilityRequirement
    platform_tag: str
    tool_tag: str
    build_type: str
    configure_args: str
    extra_steps: Tuple[str, ...]
    environment: Mapping[str, str] = field(hash=False)
    os_class: str = "unix"


class JobStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class StepResult:
    """What a collaborator reports back for one step."""
    success: bool
    log: str = ""
    artifacts: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StepRecord:
    name: str
    succeeded: bool
    log: str = ""
    artifacts: Tuple[str, ...] = ()
    duration: float = 0.0


@dataclass(frozen=True)
class JobOutcome:
    job_id: str
    status: JobStatus
    steps: Tuple[StepRecord, ...] = ()
    error_kind: Optional[str] = None
    error: Optional[str] = None
    worker: Optional[str] = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED

    def diagnostics(self) -> str:
        """Captured step output for this job, followed by the error (if any)."""
        lines = [f"=== {self.job_id} ({self.status.value}) ==="]
        if self.worker:
            lines.append(f"worker: {self.worker}")
        for step in self.steps:
            lines.append(f"--- {step.name}: {'ok' if step.succeeded else 'failed'}")
            if step.log:
                lines.append(step.log.rstrip("\n"))
        if self.error:
            lines.append(f"{self.error_kind or 'error'}: {self.error}")
        return "\n".join(lines)


@dataclass(frozen=True)
class PipelineResult:
    outcomes: Tuple[JobOutcome, ...]

    @property
    def succeeded(self) -> bool:
        return bool(self.outcomes) and all(o.succeeded for o in self.outcomes)

    def failed_outcomes(self) -> List[JobOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    def diagnostics(self) -> str:
        """Diagnostics of every failed job, in descriptor order."""
        return "\n\n".join(o.diagnostics() for o in self.failed_outcomes())
