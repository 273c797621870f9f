# rust_workflow.py
# Same matrix as rust_pipeline.yml, written with the Python helpers.
from __future__ import annotations

from matrixci import axis, best_effort, dimension, pipe, sh

IS_WINDOWS = "eq(variables['Agent.OS'], 'Windows_NT')"


def pipeline():
    return pipe(
        sh(
            "Install rust",
            "curl https://sh.rustup.rs -sSf | sh -s -- -y --default-toolchain $RUSTUP_TOOLCHAIN",
            'echo "::set-env name=PATH::$PATH:$HOME/.cargo/bin"',
            when=f"not({IS_WINDOWS})",
        ),
        sh(
            "Windows install rust",
            "curl -sSf -o rustup-init.exe https://win.rustup.rs",
            "rustup-init.exe -y --default-toolchain %RUSTUP_TOOLCHAIN%",
            when=IS_WINDOWS,
        ),
        sh("Full build", "cargo build", timeout=1800),
        sh("Clippy", best_effort("cargo clippy")),
        sh(
            "Run all tests",
            "cargo test -- -Z unstable-options --format json",
            env={"RUSTC_BOOTSTRAP": "1"},
            timeout=1800,
        ),
        sh("Clean up", "cargo clean", always=True),
        matrix=[
            dimension(
                "platform",
                windows={"imageName": "windows-2019"},
                mac={"imageName": "macOS-10.15"},
                linux={"imageName": "ubuntu-20.04"},
            ),
            axis("channel", ["stable", "beta", "nightly"], var="RUSTUP_TOOLCHAIN"),
        ],
        name="rust-matrix",
    )
