# environment.py
from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from .model import CapabilityRequirement, normalize_overrides, parse_assignment

# ---------------------------------------------------------------------
# Composition order for one job:
#   base environment (library search paths under ${WORKSPACE})
#   + computed variables (label, leak detection)      -- Unix-class only
#   + matrix-wide overrides for the requirement
#   + the combination's own overrides for the requirement
#
# Overrides replace whole variables; nothing is appended or merged.
# ${WORKSPACE} stays a placeholder until the job owns a workspace, see
# materialize().
# ---------------------------------------------------------------------

WORKSPACE_PLACEHOLDER = "${WORKSPACE}"

LABEL_VARIABLE = "BUILDMATRIX_LABEL"
LEAK_DETECTION_VARIABLE = "ASAN_OPTIONS"

WINDOWS_PLATFORMS: FrozenSet[str] = frozenset({"Windows"})

# PATH entries of a Windows-class job, in order. Extra directories (CMake,
# Git) go after these; tools started by run_command are found on the host
# PATH regardless.
WINDOWS_SEARCH_PATH: Tuple[str, ...] = (
    WORKSPACE_PLACEHOLDER + r"\build\bin",
    r"C:\Windows\System32",
)

# LeakSanitizer is unsupported by Apple's clang on macOS; ASan aborts at
# startup when detect_leaks=1 is requested there.
LEAK_DETECTION_EXCEPTIONS: FrozenSet[CapabilityRequirement] = frozenset({
    CapabilityRequirement.of("macOS", "clang"),
})


def os_class_for(platform_tag: str, windows_platforms: Iterable[str] = WINDOWS_PLATFORMS) -> str:
    return "windows" if platform_tag in set(windows_platforms) else "unix"


class EnvironmentComposer:
    """
    Builds the final, immutable environment of a single job.

    Args:
        overrides: matrix-wide overrides, requirement -> ordered KEY=VALUE list
        leak_detection_exceptions: requirements for which leak detection is off
        windows_platforms: platform tags that get the Windows-class environment
        windows_search_path: PATH entries of the Windows-class environment
    """

    def __init__(
        self,
        overrides: Optional[Mapping] = None,
        *,
        leak_detection_exceptions: Iterable[CapabilityRequirement] = LEAK_DETECTION_EXCEPTIONS,
        windows_platforms: Iterable[str] = WINDOWS_PLATFORMS,
        windows_search_path: Sequence[str] = WINDOWS_SEARCH_PATH,
    ):
        self.overrides = normalize_overrides(overrides)
        self.leak_detection_exceptions = frozenset(leak_detection_exceptions)
        self.windows_platforms = frozenset(windows_platforms)
        self.windows_search_path = tuple(windows_search_path)

    def os_class(self, requirement: CapabilityRequirement) -> str:
        return os_class_for(requirement.tags[0], self.windows_platforms)

    def leak_detection_enabled(self, requirement: CapabilityRequirement) -> bool:
        return requirement not in self.leak_detection_exceptions

    def base_environment(self, requirement: CapabilityRequirement) -> Dict[str, str]:
        if self.os_class(requirement) == "windows":
            # fixed and minimal: no label, no leak detection
            return {"PATH": ";".join(self.windows_search_path)}

        lib_dir = WORKSPACE_PLACEHOLDER + "/build/lib"
        return {
            "LD_LIBRARY_PATH": lib_dir,
            "DYLD_LIBRARY_PATH": lib_dir,
            LABEL_VARIABLE: requirement.expression(),
            LEAK_DETECTION_VARIABLE: (
                "detect_leaks=1" if self.leak_detection_enabled(requirement) else "detect_leaks=0"
            ),
        }

    def overrides_for(
        self,
        requirement: CapabilityRequirement,
        combination_overrides: Optional[Mapping[CapabilityRequirement, Sequence[str]]] = None,
    ) -> Tuple[str, ...]:
        assignments = list(self.overrides.get(requirement, ()))
        if combination_overrides:
            assignments.extend(combination_overrides.get(requirement, ()))
        return tuple(assignments)

    def compose(
        self,
        requirement: CapabilityRequirement,
        combination_overrides: Optional[Mapping[CapabilityRequirement, Sequence[str]]] = None,
    ) -> Mapping[str, str]:
        env = self.base_environment(requirement)
        for assignment in self.overrides_for(requirement, combination_overrides):
            key, value = parse_assignment(assignment)
            env[key] = value
        return MappingProxyType(env)


def materialize(environment: Mapping[str, str], workspace: str | Path) -> Dict[str, str]:
    """
    Substitute ${WORKSPACE} now that the job owns a directory. Any other
    "$" in a value ($HOME, $$1) is passed through untouched.
    """
    root = str(workspace)
    return {k: v.replace(WORKSPACE_PLACEHOLDER, root) for k, v in environment.items()}
