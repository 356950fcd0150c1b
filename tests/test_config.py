"""Tests for configuration loading and validation."""

from pathlib import Path
from tempfile import TemporaryDirectory

import pytest
import yaml
from pydantic import ValidationError

from vaultpilot.config.loader import ConfigError, load_config, save_config
from vaultpilot.config.schema import ClusterConfig, NodeConfig, TransportConfig, VaultPilotConfig


def test_default_config():
    """Test that default config has expected values."""
    config = VaultPilotConfig()

    assert config.cluster.size == 3
    assert config.cluster.transport.method == "docker"
    assert config.cluster.transport.project == "vault"
    assert config.cluster.transport.service == "consul-vault"

    assert config.engine.provider == "vault"
    assert config.engine.timeout == 30.0

    assert config.consul.lock_ttl == "60s"
    assert config.consul.kv_prefix == "vaultpilot"

    assert config.rollout.remote_dir == "/etc/secure"
    assert config.bootstrap.quorum_timeout == 300.0
    assert config.shares_dir == "secrets"


def test_default_nodes():
    """Test the default topology: three local nodes on consecutive port blocks."""
    nodes = VaultPilotConfig().cluster.cluster_nodes()

    assert [n.index for n in nodes] == [1, 2, 3]
    assert nodes[0].address == "http://127.0.0.1:8200"
    assert nodes[1].consul_address == "http://127.0.0.1:8510"
    assert nodes[2].name == "vault_consul-vault_3"
    assert all(n.config_version == 0 for n in nodes)


def test_explicit_node_name():
    """Test that an explicit node name overrides the compose naming."""
    cluster = ClusterConfig(
        nodes=[
            NodeConfig(
                index=1,
                name="vault-consul-vault-1",
                address="http://10.0.0.1:8200",
                consul_address="http://10.0.0.1:8500",
            )
        ]
    )

    assert cluster.cluster_nodes()[0].name == "vault-consul-vault-1"


def test_node_indices_must_be_contiguous():
    """Test that node indices must run 1..N."""
    with pytest.raises(ValidationError, match="1..2"):
        ClusterConfig(
            nodes=[
                NodeConfig(index=1, address="http://a:8200", consul_address="http://a:8500"),
                NodeConfig(index=3, address="http://b:8200", consul_address="http://b:8500"),
            ]
        )


def test_empty_cluster_rejected():
    """Test that a cluster needs at least one node."""
    with pytest.raises(ValidationError, match="at least one node"):
        ClusterConfig(nodes=[])


def test_nodes_sorted_by_index():
    """Test that runtime nodes come back ordered by index."""
    cluster = ClusterConfig(
        nodes=[
            NodeConfig(index=2, address="http://b:8200", consul_address="http://b:8500"),
            NodeConfig(index=1, address="http://a:8200", consul_address="http://a:8500"),
        ]
    )

    assert [n.address for n in cluster.cluster_nodes()] == ["http://a:8200", "http://b:8200"]


def test_load_config_nonexistent_returns_defaults():
    """Test that loading a nonexistent config returns defaults."""
    with TemporaryDirectory() as tmpdir:
        config = load_config(Path(tmpdir) / "nonexistent.yaml")

        assert config.cluster.size == 3


def test_load_config_empty_file_returns_defaults():
    """Test that an empty config file returns defaults."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "empty.yaml"
        config_path.write_text("")

        assert load_config(config_path).engine.provider == "vault"


def test_load_config_partial_override():
    """Test that partial config overrides only specified values."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "partial.yaml"
        with open(config_path, "w") as f:
            yaml.safe_dump({"engine": {"provider": "memory"}, "shares_dir": "/srv/shares"}, f)

        config = load_config(config_path)

        assert config.engine.provider == "memory"
        assert config.shares_dir == "/srv/shares"
        assert config.engine.timeout == 30.0


def test_load_config_invalid_yaml():
    """Test that invalid YAML raises ConfigError."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "invalid.yaml"
        config_path.write_text("cluster: [unclosed")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(config_path)


def test_load_config_validation_error():
    """Test that invalid values raise ConfigError."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "bad.yaml"
        with open(config_path, "w") as f:
            yaml.safe_dump({"engine": {"provider": "etcd"}}, f)

        with pytest.raises(ConfigError, match="validation failed"):
            load_config(config_path)


def test_save_and_load_roundtrip():
    """Test that a saved config loads back unchanged."""
    config = VaultPilotConfig(
        cluster=ClusterConfig(
            nodes=[
                NodeConfig(index=1, address="http://a:8200", consul_address="http://a:8500"),
            ],
            transport=TransportConfig(local_root="/srv/nodes"),
        ),
        shares_dir="/srv/shares",
    )

    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "nested" / "vaultpilot.yaml"
        save_config(config, str(config_path))

        assert load_config(config_path) == config


def test_relative_paths_resolve_against_config_file(tmp_path):
    """Test that paths set in the file are anchored at the file's directory."""
    config_dir = tmp_path / "deploy"
    config_dir.mkdir()
    config_path = config_dir / "vaultpilot.yaml"
    with open(config_path, "w") as f:
        yaml.safe_dump(
            {
                "cluster": {"transport": {"local_root": "nodes"}},
                "engine": {"ca_cert": "secrets/CA/ca_cert.pem"},
                "shares_dir": "secrets",
            },
            f,
        )

    config = load_config(config_path)

    assert config.shares_dir == str(config_dir / "secrets")
    assert config.cluster.transport.local_root == str(config_dir / "nodes")
    assert config.engine.ca_cert == str(config_dir / "secrets" / "CA" / "ca_cert.pem")
    assert config.cluster.transport.project == "vault"


def test_absolute_and_home_paths_kept(tmp_path):
    """Test that absolute paths are untouched and ~ is expanded."""
    config_path = tmp_path / "vaultpilot.yaml"
    with open(config_path, "w") as f:
        yaml.safe_dump(
            {"shares_dir": "/srv/shares", "cluster": {"transport": {"local_root": "~/nodes"}}},
            f,
        )

    config = load_config(config_path)

    assert config.shares_dir == "/srv/shares"
    assert config.cluster.transport.local_root == str(Path.home() / "nodes")


def test_unset_paths_keep_defaults(tmp_path):
    """Test that defaults are not rewritten when the file leaves them out."""
    config_path = tmp_path / "vaultpilot.yaml"
    with open(config_path, "w") as f:
        yaml.safe_dump({"engine": {"provider": "memory"}}, f)

    config = load_config(config_path)

    assert config.shares_dir == "secrets"
    assert config.cluster.transport.local_root == "~/.vaultpilot/nodes"
    assert config.engine.ca_cert is None


def test_load_config_accepts_string_path(tmp_path):
    """Test that load_config takes the --config option value as given."""
    config_path = tmp_path / "vaultpilot.yaml"
    config_path.write_text("engine:\n  provider: memory\n")

    assert load_config(str(config_path)).engine.provider == "memory"


def test_load_config_not_a_mapping(tmp_path):
    """Test that a YAML list at the top level is rejected."""
    config_path = tmp_path / "vaultpilot.yaml"
    config_path.write_text("- shares_dir\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_path)
