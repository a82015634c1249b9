# matrix.py
from __future__ import annotations

from typing import List, Optional

from .collaborators import ExtraStepRegistry
from .environment import EnvironmentComposer
from .errors import ConfigurationError
from .model import BuildMatrix, CapabilityRequirement, JobDescriptor


def job_id(matrix_index: int, tool_index: int, platform_tag: str, tool_tag: str, build_type: str) -> str:
    """Stable across runs for the same matrix ordering; used to correlate logs."""
    return f"[{matrix_index}:{tool_index}] {platform_tag} && {tool_tag}: {build_type}"


def count_jobs(matrix: BuildMatrix) -> int:
    return sum(len(c.tool_tags) * len(c.build_types) for c in matrix.combinations)


def validate_matrix(matrix: BuildMatrix, registry: Optional[ExtraStepRegistry] = None) -> None:
    """
    Checks that need the whole matrix (or the registry) rather than a
    single combination. Combinations validate themselves on construction.
    """
    if not isinstance(matrix, BuildMatrix):
        raise ConfigurationError(f"Expected a BuildMatrix, got {type(matrix).__name__}")
    if registry is not None:
        for combo in matrix.combinations:
            registry.validate(combo.extra_steps)


def expand_matrix(
    matrix: BuildMatrix,
    composer: Optional[EnvironmentComposer] = None,
    registry: Optional[ExtraStepRegistry] = None,
) -> List[JobDescriptor]:
    """
    One descriptor per (combination, tool, build type), in declaration order.

    A combination with no tools contributes nothing. Requirements that repeat
    across combinations are kept as separate jobs. Everything is validated
    before the first descriptor is produced, so a bad matrix never yields a
    partial job set.
    """
    validate_matrix(matrix, registry)
    if composer is None:
        composer = EnvironmentComposer(matrix.env_overrides)

    descriptors: List[JobDescriptor] = []
    for matrix_index, combo in enumerate(matrix.combinations):
        for tool_index, tool in enumerate(combo.tool_tags):
            requirement = CapabilityRequirement.of(combo.platform_tag, tool)
            environment = composer.compose(requirement, combo.env_overrides)
            os_class = composer.os_class(requirement)

            for build_type in combo.build_types:
                descriptors.append(
                    JobDescriptor(
                        id=job_id(matrix_index, tool_index, combo.platform_tag, tool, build_type),
                        matrix_index=matrix_index,
                        tool_index=tool_index,
                        requirement=requirement,
                        platform_tag=combo.platform_tag,
                        tool_tag=tool,
                        build_type=build_type,
                        configure_args=combo.extra_args,
                        extra_steps=combo.extra_steps,
                        environment=environment,
                        os_class=os_class,
                    )
                )

    ids = [d.id for d in descriptors]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ConfigurationError(f"Duplicate job ids: {dupes}")
    return descriptors
