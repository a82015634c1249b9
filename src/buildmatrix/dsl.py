# src/buildmatrix/dsl.py
from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence

from .model import BuildCombination, BuildMatrix


# ---------------------------------------------------------------------
# Functional helper
# ---------------------------------------------------------------------

def combination(
    platform: str,
    *tools: str,  # allow: combination("Linux", "gcc", "clang", ...)
    build_types: Sequence[str],
    extra_args: str = "",
    extra_steps: Optional[Sequence[str]] = None,
    env_overrides: Optional[Mapping[str, Sequence[str]]] = None,
) -> BuildCombination:
    """
    One matrix row:

        combination("macOS", "gcc", "clang",
                    build_types=["debug", "release"],
                    extra_steps=["coverage"],
                    env_overrides={"macOS && gcc": ["CC=gcc-13", "CXX=g++-13"]})
    """
    return BuildCombination(
        platform_tag=platform,
        tool_tags=tuple(tools),
        build_types=tuple(build_types),
        extra_args=extra_args,
        extra_steps=tuple(extra_steps or ()),
        env_overrides=dict(env_overrides or {}),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class CombinationBuilder:
    def __init__(self, platform: str):
        self.platform = platform
        self._tools: list[str] = []
        self._build_types: list[str] = []
        self._extra_args: list[str] = []
        self._extra_steps: list[str] = []
        self._overrides: Dict[str, List[str]] = {}

    def with_tools(self, *tools: str):
        self._tools.extend(tools)
        return self

    def with_build_types(self, *build_types: str):
        self._build_types.extend(build_types)
        return self

    def with_configure_args(self, *args: str):
        self._extra_args.extend(args)
        return self

    def with_extra_steps(self, *names: str):
        self._extra_steps.extend(names)
        return self

    def with_env(self, requirement: str, **env):
        """Overrides applied only to jobs whose requirement is exactly `requirement`."""
        # force values to str so KEY=VALUE is well formed
        self._overrides.setdefault(requirement, []).extend(f"{k}={v}" for k, v in env.items())
        return self

    def build(self) -> BuildCombination:
        return BuildCombination(
            platform_tag=self.platform,
            tool_tags=tuple(self._tools),
            build_types=tuple(self._build_types),
            extra_args=" ".join(self._extra_args),
            extra_steps=tuple(self._extra_steps),
            env_overrides=self._overrides,
        )


def build(platform: str) -> CombinationBuilder:
    """Convenience: build('Linux').with_tools('gcc').with_build_types('release').build()"""
    return CombinationBuilder(platform)


# ---------------------------------------------------------------------
# Matrix helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *combinations: BuildCombination,
    env_overrides: Optional[Mapping[str, Sequence[str]]] = None,
) -> BuildMatrix:
    """
    Matrix definition helper. Use this name so you can define your own
    def workflow(): return wf(combination(...), ...).

    Users can write:
        from buildmatrix import wf, combination

        def workflow():
            return wf(
                combination("Linux", "gcc", "clang", build_types=["debug", "release"]),
                combination("Windows", "cl", build_types=["release"]),
                env_overrides={"Linux && clang": ["CXX=clang++"]},
            )

    Or use MATRIX directly:
        MATRIX = wf(combination(...))
    """
    return BuildMatrix(combinations=tuple(combinations), env_overrides=dict(env_overrides or {}))


build_matrix = wf
