from pathlib import Path

import pytest

from reclaim.config import Settings, _deep_merge, _env_overrides, load_config, load_settings
from reclaim.core.exceptions import ConfigurationError


class TestDeepMerge:
    def test_shallow_override(self):
        assert _deep_merge({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}

    def test_nested_merge(self):
        base = {"controller": {"cluster_name": "a", "region": "us-east-1"}}
        override = {"controller": {"region": "us-west-2"}}
        assert _deep_merge(base, override) == {"controller": {"cluster_name": "a", "region": "us-west-2"}}

    def test_empty_override(self):
        assert _deep_merge({"a": 1}, {}) == {"a": 1}


class TestLoadConfig:
    def test_project_overrides_global(self, tmp_path: Path):
        global_toml = tmp_path / "defaults.toml"
        global_toml.write_text('[controller]\ncluster_name = "global"\nregion = "eu-west-1"\n')
        project_dir = tmp_path / "project"
        project_dir.mkdir()
        (project_dir / "reclaim.toml").write_text('[controller]\ncluster_name = "prod"\n')

        result = load_config(project_dir=project_dir, global_path=global_toml)

        assert result == {"controller": {"cluster_name": "prod", "region": "eu-west-1"}}

    def test_missing_files(self, tmp_path: Path):
        assert load_config(project_dir=tmp_path, global_path=tmp_path / "nonexistent.toml") == {}


class TestLoadSettings:
    def _write(self, tmp_path: Path, body: str) -> Path:
        (tmp_path / "reclaim.toml").write_text(body)
        return tmp_path

    def test_from_project_file(self, tmp_path: Path):
        project = self._write(tmp_path, '[controller]\ncluster_name = "prod"\nmessage_concurrency = 4\n')

        settings = load_settings(project_dir=project, global_path=tmp_path / "none.toml", environ={})

        assert settings.cluster_name == "prod"
        assert settings.message_concurrency == 4
        assert settings.region == "us-east-1"
        assert settings.enable_interruption_handling

    def test_environment_takes_precedence(self, tmp_path: Path):
        project = self._write(tmp_path, '[controller]\ncluster_name = "prod"\nregion = "us-east-2"\n')
        environ = {
            "RECLAIM_REGION": "ap-south-1",
            "RECLAIM_ENABLE_INTERRUPTION_HANDLING": "false",
            "RECLAIM_RECEIVE_MAX_MESSAGES": "5",
            "RECLAIM_UNAVAILABLE_OFFERINGS_TTL_SECONDS": "90",
        }

        settings = load_settings(project_dir=project, global_path=tmp_path / "none.toml", environ=environ)

        assert settings.region == "ap-south-1"
        assert settings.enable_interruption_handling is False
        assert settings.receive_max_messages == 5
        assert settings.unavailable_offerings_ttl_seconds == 90.0

    def test_environment_only(self, tmp_path: Path):
        settings = load_settings(
            project_dir=tmp_path, global_path=tmp_path / "none.toml", environ={"RECLAIM_CLUSTER_NAME": "dev"}
        )

        assert settings.cluster_name == "dev"

    def test_missing_cluster_name(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="cluster_name"):
            load_settings(project_dir=tmp_path, global_path=tmp_path / "none.toml", environ={})

    def test_unknown_key(self, tmp_path: Path):
        project = self._write(tmp_path, '[controller]\ncluster_name = "prod"\nqueue_url = "x"\n')

        with pytest.raises(ConfigurationError, match="queue_url"):
            load_settings(project_dir=project, global_path=tmp_path / "none.toml", environ={})

    def test_invalid_environment_value(self):
        with pytest.raises(ConfigurationError, match="RECLAIM_MESSAGE_CONCURRENCY"):
            _env_overrides({"RECLAIM_MESSAGE_CONCURRENCY": "lots"})


class TestSettings:
    def test_defaults(self):
        settings = Settings(cluster_name="prod")

        assert settings.discovery_tag_key == "karpenter.sh/discovery"
        assert settings.message_retention_seconds == 300
        assert settings.receive_wait_seconds == 20
        assert settings.receive_max_messages == 10
        assert settings.visibility_timeout_seconds == 20
        assert settings.recently_deleted_requeue_seconds == 60.0
        assert settings.unavailable_offerings_ttl_seconds == 180.0
        assert settings.reconcile_timeout_seconds == 120.0

    @pytest.mark.parametrize(
        ("cluster_name", "queue_name"),
        [
            ("prod", "prod"),
            ("prod.example.com", "prod-example-com"),
            ("team/a:b", "teamab"),
            ("x" * 100, "x" * 80),
        ],
    )
    def test_queue_name(self, cluster_name, queue_name):
        assert Settings(cluster_name=cluster_name).queue_name == queue_name

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"cluster_name": ""},
            {"cluster_name": "prod", "receive_max_messages": 0},
            {"cluster_name": "prod", "receive_max_messages": 11},
            {"cluster_name": "prod", "receive_wait_seconds": 21},
            {"cluster_name": "prod", "message_concurrency": 0},
            {"cluster_name": "prod", "reconcile_timeout_seconds": 0},
        ],
    )
    def test_validation(self, kwargs):
        with pytest.raises(ConfigurationError):
            Settings(**kwargs)
