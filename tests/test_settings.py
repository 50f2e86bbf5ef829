import json

import pytest

from poolsync.errors import ConfigurationError, MalformedEventError
from poolsync.models import InstanceEvent, ServiceType, SyncReport, VirtualServerSpec
from poolsync.settings import load_virtual_servers, parse_virtual_servers


WEB = {
    "name": "web",
    "service_type": "TCP",
    "service_port": 443,
    "rs_prefix": "asg_web_",
    "health_monitor": "asg_web_hm",
    "rs_group_name": "asg_web",
    "as_group_name": "web-asg",
    "amazonIpType": "public",
}


def test_parse_list_and_mapping_forms():
    (from_list,) = parse_virtual_servers([WEB])
    body = {k: v for k, v in WEB.items() if k != "name"}
    (from_map,) = parse_virtual_servers({"web": body})
    assert from_list == from_map
    assert from_list.address_type == "public"


def test_duplicate_prefix_is_rejected():
    other = {**WEB, "name": "api"}
    with pytest.raises(ConfigurationError):
        parse_virtual_servers([WEB, other])


@pytest.mark.parametrize("prefix", ["asg_", "asg_web_api_"])
def test_overlapping_prefixes_are_rejected(prefix):
    other = {**WEB, "name": "api", "rs_prefix": prefix}
    with pytest.raises(ConfigurationError, match="overlap"):
        parse_virtual_servers([WEB, other])
    with pytest.raises(ConfigurationError, match="overlap"):
        parse_virtual_servers([other, WEB])


def test_distinct_prefixes_are_accepted():
    api = {**WEB, "name": "api", "rs_prefix": "asg_api_"}
    assert [c.rs_prefix for c in parse_virtual_servers([WEB, api])] == ["asg_web_", "asg_api_"]


@pytest.mark.parametrize(
    "raw",
    [
        "web",
        [{**WEB, "service_port": 0}],
        [{**WEB, "amazonIpType": "elastic"}],
        [{k: v for k, v in WEB.items() if k != "rs_prefix"}],
    ],
)
def test_invalid_entries_are_configuration_errors(raw):
    with pytest.raises(ConfigurationError):
        parse_virtual_servers(raw)


def test_load_unwraps_virtual_servers_key(tmp_path):
    path = tmp_path / "vs.json"
    path.write_text(json.dumps({"virtualServers": {"web": {k: v for k, v in WEB.items() if k != "name"}}}))
    (cfg,) = load_virtual_servers(str(path))
    assert cfg.name == "web"
    assert cfg.rs_group_name == "asg_web"


def test_load_missing_or_broken_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_virtual_servers(str(tmp_path / "missing.json"))
    broken = tmp_path / "broken.json"
    broken.write_text("{")
    with pytest.raises(ConfigurationError):
        load_virtual_servers(str(broken))


@pytest.mark.parametrize(
    "raw,expected",
    [("HTTP", ServiceType.HTTP), ("tcp", ServiceType.TCP), (" Tcp ", ServiceType.TCP), ("udp", ServiceType.HTTP), (None, ServiceType.HTTP), (2, ServiceType.TCP)],
)
def test_service_type_normalization(raw, expected):
    assert ServiceType.normalize(raw) is expected


def test_spec_naming():
    (cfg,) = parse_virtual_servers([WEB])
    spec = VirtualServerSpec.from_config(cfg)
    assert spec.service_type is ServiceType.TCP
    assert spec.server_base_name == "asg_web_base"
    assert spec.real_server_name("i-1") == "asg_web_i-1"
    assert spec.instance_id_for("asg_web_i-1") == "i-1"
    assert spec.instance_id_for("manual-box") is None


def test_instance_event_parse():
    event = InstanceEvent.parse('{"action": "removeInstance", "as_group_name": "web-asg", "instance": "i-1"}')
    assert (event.action, event.as_group_name, event.instance) == ("removeInstance", "web-asg", "i-1")
    with pytest.raises(MalformedEventError):
        InstanceEvent.parse({"action": "addInstance", "as_group_name": "", "instance": "i-1"})


def test_sync_report_ok():
    report = SyncReport(success=["a"], failure=[])
    assert report.ok
    report.failure.append("b")
    assert report.as_dict()["ok"] is False
