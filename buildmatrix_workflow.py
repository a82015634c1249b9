# buildmatrix_workflow.py
# Matrix for a CMake project: three platforms, their toolchains, two build types.
from __future__ import annotations

from buildmatrix import combination, sh_step, wf

EXTRA_STEPS = {
    "package": sh_step("cpack -G TGZ --config build/CPackConfig.cmake", artifacts=["build"]),
}


def workflow():
    return wf(
        combination(
            "Linux", "gcc", "clang",
            build_types=["debug", "release"],
            extra_args="-DENABLE_SANITIZERS=ON",
            extra_steps=["coverage"],
            env_overrides={"Linux && clang": ["CC=clang", "CXX=clang++"]},
        ),
        combination(
            "macOS", "clang", "gcc",
            build_types=["release"],
        ),
        combination(
            "Windows", "cl",
            build_types=["release"],
            extra_args='-G "Visual Studio 17 2022"',
            extra_steps=["package"],
        ),
        env_overrides={
            "macOS && gcc": ["CC=gcc-13", "CXX=g++-13"],
        },
    )
