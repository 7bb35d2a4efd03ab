# cross_matrix.py
# The same matrix as matrixci.yml, written with the Python helpers.
from __future__ import annotations

from matrixci.dsl import cache, cross, matrix, native, on, override, sh
from matrixci.toolchain import SUPPORTED_CROSS_TARGETS

CARGO_CACHE = cache(
    "linux-cargo-",
    lock_files=["**/Cargo.lock"],
    paths=[".cargo-home/registry", ".cargo-home/git"],
)


def workflow():
    return matrix(
        "Test Suite",
        cross(
            "test-cross",
            SUPPORTED_CROSS_TARGETS,
            sh("Add target", "rustup target add ${{ matrix.target }}"),
            sh("Build", "${{ toolchain }} build --target ${{ matrix.target }} --verbose"),
            sh("Test", "${{ toolchain }} test --package rkyv_test --target ${{ matrix.target }} --verbose"),
            display="Test (stable) - ${{ matrix.target }}",
            env={"CARGO_HOME": ".cargo-home"},
            cache=CARGO_CACHE,
        ),
        native(
            "test-native",
            ["ubuntu-20.04", "macos-10.15", "windows-2019"],
            sh("Build", "${{ toolchain }} build --verbose"),
            sh("Test", "${{ toolchain }} test --verbose"),
            display="Test (stable) - ${{ matrix.display_name }}",
            env={"CARGO_HOME": ".cargo-home"},
            cache=cache("${{ matrix.target }}-cargo-", lock_files=["**/Cargo.lock"], paths=[".cargo-home/registry", ".cargo-home/git"]),
            overrides={
                "ubuntu-20.04": override(display_name="Ubuntu 20.04"),
                "macos-10.15": override(display_name="macOS 10.15"),
                "windows-2019": override(display_name="Windows Server 2019"),
            },
        ),
        triggers=on(push=["master"], pull_request=True),
        concurrency="staging_environment",
    )
