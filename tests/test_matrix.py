from __future__ import annotations

import pytest

from matrixci.dsl import axis, dimension, pipe, sh
from matrixci.errors import ConfigError
from matrixci.matrix import expand, expand_pipeline, filter_configs, parse_filters
from matrixci.model import Dimension


def _dims():
    return [
        dimension("platform", linux={"imageName": "ubuntu-20.04"}, windows={"imageName": "windows-2019"}),
        dimension("channel", stable={"toolchain": "stable"}, beta={"toolchain": "beta"}, nightly={"toolchain": "nightly"}),
    ]


def test_cross_product_size_and_unique_identities():
    configs = expand(_dims())
    assert len(configs) == 6
    assert len({c.identity for c in configs}) == 6


def test_declaration_order_last_dimension_fastest():
    ids = [c.identity for c in expand(_dims())]
    assert ids == [
        "linux-stable", "linux-beta", "linux-nightly",
        "windows-stable", "windows-beta", "windows-nightly",
    ]


def test_expansion_is_deterministic():
    assert expand(_dims()) == expand(_dims())


def test_variables_merged_from_each_dimension():
    first = expand(_dims())[0]
    assert dict(first.variables) == {"imageName": "ubuntu-20.04", "toolchain": "stable"}


def test_no_dimensions_yields_single_job():
    configs = expand([])
    assert len(configs) == 1
    assert configs[0].identity == "default"


def test_empty_dimension_rejected():
    with pytest.raises(ConfigError, match="no variants"):
        expand([Dimension(name="os", variants=())])


def test_duplicate_labels_rejected():
    dim = Dimension(name="py", variants=axis("py", ["3.11", "3.11"]).variants)
    with pytest.raises(ConfigError, match="duplicate variant labels"):
        expand([dim])


def test_duplicate_dimension_rejected():
    with pytest.raises(ConfigError, match="Duplicate dimension"):
        expand([axis("py", ["3.11"]), axis("py", ["3.12"])])


def test_conflicting_variable_across_dimensions_rejected():
    dims = [
        dimension("platform", linux={"image": "ubuntu"}),
        dimension("flavor", slim={"image": "alpine"}),
    ]
    with pytest.raises(ConfigError, match="conflicting values"):
        expand(dims)


def test_identical_variable_across_dimensions_allowed():
    dims = [
        dimension("platform", linux={"shell": "bash"}),
        dimension("channel", stable={"shell": "bash"}, beta={"shell": "bash"}),
    ]
    assert len(expand(dims)) == 2


@pytest.mark.parametrize("name", ["MATRIXCI_JOB", "matrixci_step", "agent.os"])
def test_reserved_variable_names_rejected(name):
    with pytest.raises(ConfigError, match="reserved"):
        expand([dimension("d", x={name: "1"})])


def test_parse_filters():
    assert parse_filters(["platform=linux", "channel=stable,beta", "channel=beta"]) == {
        "platform": ["linux"],
        "channel": ["stable", "beta"],
    }
    with pytest.raises(ConfigError):
        parse_filters(["platform"])


def test_filter_configs_subset():
    dims = _dims()
    configs = filter_configs(expand(dims), dims, {"platform": ["windows"], "channel": ["beta", "stable"]})
    assert [c.identity for c in configs] == ["windows-stable", "windows-beta"]


def test_filter_unknown_dimension_or_variant():
    dims = _dims()
    with pytest.raises(ConfigError, match="unknown dimension"):
        filter_configs(expand(dims), dims, {"arch": ["x64"]})
    with pytest.raises(ConfigError, match="unknown variant"):
        filter_configs(expand(dims), dims, {"platform": ["solaris"]})


def test_expand_pipeline_rejects_undeclared_condition_variable():
    pipeline = pipe(sh("build", "true", when="toolchian == 'stable'"), matrix=_dims())
    with pytest.raises(ConfigError, match="toolchian"):
        expand_pipeline(pipeline)


def test_expand_pipeline_accepts_builtins():
    pipeline = pipe(sh("build", "true", when="agent.osfamily != 'windows'"), matrix=_dims())
    assert len(expand_pipeline(pipeline, {"platform": ["linux"]})) == 3


def test_colliding_identities_rejected():
    dims = [
        dimension("x", **{"a-b": {"X": "1"}, "a": {"X": "2"}}),
        dimension("y", **{"c": {"Y": "1"}, "b-c": {"Y": "2"}}),
    ]
    with pytest.raises(ConfigError, match="'a-b-c' is produced by both"):
        expand(dims)


def test_hyphenated_labels_allowed_when_unique():
    dims = [
        dimension("image", **{"windows-2019": {"IMG": "w"}, "ubuntu-20.04": {"IMG": "u"}}),
        axis("channel", ["stable", "beta"]),
    ]
    ids = [c.identity for c in expand(dims)]
    assert ids == ["windows-2019-stable", "windows-2019-beta", "ubuntu-20.04-stable", "ubuntu-20.04-beta"]
    assert len(set(ids)) == 4
