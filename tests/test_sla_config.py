import pytest

from civictrack.core import ConfigurationException
from civictrack.issues.domain import SLAConfig
from civictrack.issues.infrastructure import SLAConfigManager, YAMLConfigProvider, load_sla_config

VALID_YAML = """
sla_hours:
  urgent: 12
  high: 36
penalty_points_per_level: 15
escalation_levels:
  - level: 3
    target: Mayor's Office
    hours_past_deadline: 48
    notify: ["#mayor"]
"""


def test_defaults():
    config = SLAConfig()
    assert config.sla_hours == {"urgent": 24, "high": 48, "medium": 72, "low": 120}
    assert [e.level for e in config.escalation_levels] == [1, 2, 3]
    assert config.get_level(3).hours_past_deadline == 24
    assert config.get_level(2).target == "Department Head"


def test_load_from_yaml_fills_gaps(tmp_path):
    path = tmp_path / "sla.yaml"
    path.write_text(VALID_YAML)

    config = load_sla_config(str(path))

    assert config.get_sla_hours("urgent") == 12
    assert config.get_sla_hours("low") == 120
    assert config.penalty_points_per_level == 15
    assert config.get_level(3).target == "Mayor's Office"
    assert config.get_channels_for_level(3) == ["#mayor"]
    assert config.get_level(1).target == "Department Staff"


def test_missing_file_uses_defaults(tmp_path):
    config = load_sla_config(str(tmp_path / "absent.yaml"))
    assert config == SLAConfig()


@pytest.mark.parametrize(
    "body",
    [
        "sla_hours:\n  critical: 4\n",
        "sla_hours:\n  urgent: 0\n",
        "escalation_levels:\n  - level: 4\n",
        "sla_hours: [unclosed\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_yaml_rejected(tmp_path, body):
    path = tmp_path / "sla.yaml"
    path.write_text(body)

    with pytest.raises(ConfigurationException):
        load_sla_config(str(path))


def test_static_provider_reload(tmp_path):
    path = tmp_path / "sla.yaml"
    path.write_text("sla_hours:\n  urgent: 10\n")
    provider = YAMLConfigProvider(str(path))
    assert provider.get_config().get_sla_hours("urgent") == 10

    path.write_text("sla_hours:\n  urgent: 8\n")
    provider.reload()
    assert provider.get_config().get_sla_hours("urgent") == 8


def test_manager_keeps_previous_config_on_bad_reload(tmp_path):
    path = tmp_path / "sla.yaml"
    path.write_text("sla_hours:\n  urgent: 10\n")
    manager = SLAConfigManager()
    manager.load(path)

    path.write_text("sla_hours:\n  urgent: -5\n")
    assert manager.reload() is False
    assert manager.get_config().get_sla_hours("urgent") == 10

    path.write_text("sla_hours:\n  urgent: 6\n")
    assert manager.reload() is True
    assert manager.get_config().get_sla_hours("urgent") == 6


def test_manager_requires_load():
    with pytest.raises(RuntimeError):
        SLAConfigManager().get_config()


def test_manager_survives_unparseable_reload(tmp_path):
    path = tmp_path / "sla.yaml"
    path.write_text("sla_hours:\n  urgent: 10\n")
    manager = SLAConfigManager()
    manager.load(path)

    path.write_text("sla_hours: [unclosed\n")
    assert manager.reload() is False
    assert manager.get_config().get_sla_hours("urgent") == 10
