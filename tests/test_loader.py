from __future__ import annotations

import textwrap

import pytest

from matrixci.errors import ConfigError
from matrixci.loader import dump_pipeline, load_pipeline, parse_pipeline
from matrixci.matrix import expand_pipeline
from matrixci.model import ALWAYS, ON_SUCCESS, Command

DEFINITION = textwrap.dedent(
    """
    name: rust-matrix
    matrix:
      platform:
        linux: {imageName: ubuntu-20.04, os_family: linux}
        windows: {imageName: windows-2019, os_family: windows}
      channel:
        stable: {toolchain_channel: stable}
        "1.70": {toolchain_channel: "1.70", legacy: true}
    steps:
      - name: Install toolchain
        run: |
          curl https://sh.rustup.rs -sSf | sh -s -- -y
          echo "::set-env name=PATH::$PATH:$HOME/.cargo/bin"
        condition: ne(variables['os_family'], 'windows')
      - name: Full build
        run: cargo build
        timeout: 600
        env: {RUST_BACKTRACE: 1}
      - name: Lint
        run:
          - {cmd: cargo clippy, best_effort: true}
          - cargo fmt --check
        host: linux
        cwd: crates
      - name: Script
        run: |
          set -e
          cargo doc
        script: true
      - name: Publish results
        run: cat results.json
        condition: succeededOrFailed()
    """
)


def test_parse_definition():
    pipeline = parse_pipeline(DEFINITION)
    assert pipeline.name == "rust-matrix"
    assert [d.name for d in pipeline.dimensions] == ["platform", "channel"]
    assert pipeline.dimensions[1].labels == ["stable", "1.70"]
    assert pipeline.dimensions[1].variant("1.70").bindings == {"toolchain_channel": "1.70", "legacy": "true"}

    install, build, lint, script, publish = pipeline.steps
    assert len(install.commands) == 2
    assert install.condition == "ne(variables['os_family'], 'windows')"
    assert build.timeout == 600.0
    assert build.env == (("RUST_BACKTRACE", "1"),)
    assert lint.commands[0] == Command("cargo clippy", best_effort=True)
    assert lint.host == "linux" and lint.cwd == "crates"
    assert script.script and len(script.commands) == 1
    assert publish.policy == ALWAYS and publish.condition is None
    assert build.policy == ON_SUCCESS


def test_round_trip_is_lossless():
    pipeline = parse_pipeline(DEFINITION)
    again = parse_pipeline(dump_pipeline(pipeline))
    assert again == pipeline
    assert [c.identity for c in expand_pipeline(again)] == [c.identity for c in expand_pipeline(pipeline)]


@pytest.mark.parametrize(
    "doc, match",
    [
        ("steps: []", "non-empty list"),
        ("stpes: [{name: a, run: x}]", "Unknown keys"),
        ("steps: [{name: a, run: x, when: y}]", "Unknown keys"),
        ("steps: [{name: a}]", "'run'"),
        ("steps: [{name: a, run: x, policy: sometimes}]", "Unknown policy"),
        ("steps: [{name: a, run: x, timeout: -1}]", "positive"),
        ("steps: [{name: a, run: x}, {name: a, run: y}]", "Duplicate step"),
        ("matrix: {os: [linux]}\nsteps: [{name: a, run: x}]", "mapping"),
        ("matrix: {os: {linux: {image: [1, 2]}}}\nsteps: [{name: a, run: x}]", "scalar"),
        ("steps: [{name: a, run: x", "Invalid YAML"),
    ],
)
def test_invalid_definitions(doc, match):
    with pytest.raises(ConfigError, match=match):
        parse_pipeline(doc)


def test_load_yaml_file(tmp_path):
    path = tmp_path / "matrixci.yml"
    path.write_text(DEFINITION, encoding="utf-8")
    assert load_pipeline(path).name == "rust-matrix"


def test_load_yaml_error_mentions_file(tmp_path):
    path = tmp_path / "bad_pipeline.yml"
    path.write_text("steps: []", encoding="utf-8")
    with pytest.raises(ConfigError, match="bad_pipeline.yml"):
        load_pipeline(path)


def test_load_python_workflow(tmp_path):
    path = tmp_path / "ci_workflow.py"
    path.write_text(
        textwrap.dedent(
            """
            from matrixci import axis, pipe, sh

            def pipeline():
                return pipe(sh("build", "make"), matrix=[axis("py", ["3.11", "3.12"])], name="py")
            """
        ),
        encoding="utf-8",
    )
    pipeline = load_pipeline(path)
    assert pipeline.name == "py"
    assert [c.identity for c in expand_pipeline(pipeline)] == ["3.11", "3.12"]


def test_load_python_workflow_without_pipeline(tmp_path):
    path = tmp_path / "empty_workflow.py"
    path.write_text("X = 1\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="must define"):
        load_pipeline(path)


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_pipeline(tmp_path / "nope.yml")


@pytest.mark.parametrize("name", ["rust_pipeline.yml", "rust_workflow.py"])
def test_bundled_examples_expand(name):
    from pathlib import Path

    path = Path(__file__).resolve().parent.parent / "examples" / name
    pipeline = load_pipeline(path)
    configs = expand_pipeline(pipeline)
    assert len(configs) == 9
    assert configs[0].identity == "windows-stable"


@pytest.mark.parametrize(
    "doc",
    [
        "matrix:\n  os:\n    linux: {imageName: ubuntu}\n    linux: {imageName: windows}\nsteps: [{name: a, run: x}]",
        "matrix:\n  os: {linux: {}}\n  os: {mac: {}}\nsteps: [{name: a, run: x}]",
        "matrix:\n  os:\n    linux: {imageName: ubuntu, imageName: debian}\nsteps: [{name: a, run: x}]",
    ],
)
def test_duplicate_keys_rejected(doc):
    with pytest.raises(ConfigError, match="Duplicate key"):
        parse_pipeline(doc)


def test_version_like_scalars_kept_as_written():
    doc = textwrap.dedent(
        """
        matrix:
          rust:
            1.70: {RUST: 1.70, EDITION: 2021, DEBUG: yes}
            1.80:
        steps:
          - name: build
            run: cargo build
            env: {MSRV: 1.70}
            timeout: 1.5
        """
    )
    pipeline = parse_pipeline(doc)
    dim = pipeline.dimensions[0]
    assert dim.labels == ["1.70", "1.80"]
    assert dim.variant("1.70").bindings == {"RUST": "1.70", "EDITION": "2021", "DEBUG": "yes"}
    assert dim.variant("1.80").bindings == {}
    assert pipeline.steps[0].env == (("MSRV", "1.70"),)
    assert pipeline.steps[0].timeout == 1.5
    assert parse_pipeline(dump_pipeline(pipeline)) == pipeline
