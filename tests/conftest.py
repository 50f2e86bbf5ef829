import dataclasses
import json
import re
import sys
from urllib.parse import quote, unquote

import httpx
import pytest

# Ensure project root is importable (so `import main` works without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from poolsync import db  # noqa: E402
from poolsync.cloud import CloudInstance, CloudInventoryReader, GroupMembership, InstanceAddresses  # noqa: E402
from poolsync.errors import CloudInventoryError  # noqa: E402
from poolsync.gateway import RemoteCallGateway  # noqa: E402
from poolsync.lb import LoadBalancerInventoryReader  # noqa: E402
from poolsync.models import VirtualServerConfig, VirtualServerSpec  # noqa: E402
from poolsync.reconciler import ReconciliationEngine  # noqa: E402
from poolsync.settings import settings  # noqa: E402


class FakeLoadBalancer:
    """In-memory management API served through httpx.MockTransport.

    Group membership follows the groups' member regexes, like the real thing.
    """

    def __init__(self):
        self.virtual_servers: dict[str, dict] = {}
        self.groups: dict[str, list[str]] = {}
        self.real_servers: dict[str, dict] = {}
        self.health_monitors: dict[str, int] = {}
        self.server_bases: dict[str, dict] = {}
        self.nested: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self._failures: list[dict] = []

    # Setup helpers

    def add_virtual_server(self, name, groups=(), real_servers=()):
        self.virtual_servers[name] = {"groups": list(groups), "real_servers": list(real_servers)}

    def add_group(self, name, patterns=()):
        self.groups[name] = list(patterns)

    def add_real_server(self, name, addr, port=80):
        self.real_servers[name] = {"addr": addr, "port": port, "base": None, "health_monitors": []}

    def fail(self, method, fragment, status=500, times=None, body=b""):
        self._failures.append({"method": method, "fragment": fragment, "status": status, "times": times, "body": body})

    # Inspection helpers

    def group_members(self, group):
        patterns = self.groups.get(group, [])
        return sorted(rs for rs in self.real_servers if any(re.match(p, rs) for p in patterns))

    def writes(self):
        return [c for c in self.calls if c[0] != "GET"]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url="http://lb.test")

    # Transport

    def _tree(self, path, node):
        return httpx.Response(200, json={"requestPath": path, path: node})

    def _listing(self, path, names, nested=()):
        children = {f"{path}/{quote(n, safe='')}": {"numChildren": 2 if n in nested else 0} for n in names}
        return self._tree(path, {"numChildren": len(children), "children": children})

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        raw = request.url.raw_path.decode()
        self.calls.append((method, unquote(raw)))

        for rule in self._failures:
            if rule["method"] == method and rule["fragment"] in unquote(raw) and rule["times"] != 0:
                if rule["times"] is not None:
                    rule["times"] -= 1
                return httpx.Response(rule["status"], content=rule["body"])

        path = raw.split("?", 1)[0]
        seg = [unquote(s) for s in path.split("/")[2:]]
        not_found = httpx.Response(404, json={"requestPath": path, "message": "Path not found"})

        if seg[:2] == ["app", "proxy"] and len(seg) >= 4:
            kind, name, rest = seg[2], seg[3], seg[4:]
            if kind == "virtualServer":
                vs = self.virtual_servers.get(name)
                if vs is None:
                    return not_found
                if not rest:
                    return self._tree(path, {"data": name, "numChildren": 0})
                if rest == ["realServerGroup"]:
                    return self._listing(path, vs["groups"])
                if rest[0] == "realServerGroup" and method == "POST":
                    if rest[1] not in vs["groups"]:
                        vs["groups"].append(rest[1])
                    return self._tree(path, {"data": rest[1]})
                if rest == ["realServer"]:
                    return self._listing(path, vs["real_servers"])
            if kind == "realServerGroup":
                if not rest:
                    if method == "POST":
                        self.groups.setdefault(name, [])
                        return self._tree(path, {"data": name})
                    if name not in self.groups:
                        return not_found
                    regex_path = f"{path}/memberRegex"
                    regex_children = {f"{regex_path}/{quote(p, safe='')}": {"numChildren": 0} for p in self.groups[name]}
                    node = {
                        "numChildren": 1,
                        "children": {regex_path: {"numChildren": len(regex_children), "children": regex_children}},
                    }
                    return self._tree(path, node)
                if rest[0] == "memberRegex" and method == "POST":
                    if name not in self.groups:
                        return not_found
                    if rest[1] not in self.groups[name]:
                        self.groups[name].append(rest[1])
                    return self._tree(path, {"data": rest[1]})
                if rest == ["members"]:
                    if name not in self.groups:
                        return not_found
                    return self._listing(path, self.group_members(name), nested=self.nested)
            if kind == "realServer":
                rs = self.real_servers.get(name)
                if method == "DELETE" and not rest:
                    if rs is None:
                        return not_found
                    del self.real_servers[name]
                    for vs in self.virtual_servers.values():
                        if name in vs["real_servers"]:
                            vs["real_servers"].remove(name)
                    return self._tree(path, {})
                if method == "PUT" and not rest:
                    self.real_servers.setdefault(name, {"addr": None, "port": None, "base": None, "health_monitors": []})
                    return self._tree(path, {"data": name})
                if rs is None:
                    return not_found
                if rest == ["ipAddress"]:
                    if method == "PUT":
                        data = json.loads(request.content)["data"]
                        rs["addr"], rs["port"] = data["addr"], data["port"]
                        return self._tree(path, {"data": data})
                    if rs["addr"] is None:
                        return not_found
                    return self._tree(path, {"numChildren": 0, "data": {"addr": rs["addr"], "port": rs["port"]}})
                if rest == ["base"] and method == "PUT":
                    rs["base"] = json.loads(request.content)["data"]
                    return self._tree(path, {"data": rs["base"]})
                if rest[0] == "healthMonitor" and method == "PUT":
                    rs["health_monitors"].append(rest[1])
                    return self._tree(path, {"data": rest[1]})
            if kind == "realServerBase":
                if method == "PUT":
                    base = self.server_bases.setdefault(name, {})
                    if rest:
                        base[rest[0]] = json.loads(request.content)["data"]
                    return self._tree(path, {"data": name})
                if name not in self.server_bases:
                    return not_found
                return self._tree(path, {"numChildren": 0})

        if seg[:3] == ["app", "health", "monitor"] and len(seg) >= 4:
            name, rest = seg[3], seg[4:]
            if method == "PUT":
                if rest == ["type"]:
                    self.health_monitors[name] = json.loads(request.content)["data"]
                else:
                    self.health_monitors.setdefault(name, 0)
                return self._tree(path, {"data": name})
            if name not in self.health_monitors:
                return not_found
            return self._tree(path, {"numChildren": 0})

        return not_found


class FakeCloudProvider:
    """In-memory CloudProvider."""

    def __init__(self):
        self.groups: dict[str, list[tuple[str, str]]] = {}
        self.addresses: dict[str, tuple[str | None, str | None]] = {}
        self.group_failures = 0
        self.address_failures = 0
        self.group_calls = 0
        self.address_calls = 0

    def launch(self, group, instance_id, private=None, public=None, state="InService"):
        self.groups.setdefault(group, []).append((instance_id, state))
        if private or public:
            self.addresses[instance_id] = (public, private)

    def terminate(self, group, instance_id):
        self.groups[group] = [(i, s) for i, s in self.groups.get(group, []) if i != instance_id]
        self.addresses.pop(instance_id, None)

    async def describe_group_membership(self, group_names):
        self.group_calls += 1
        if self.group_failures:
            self.group_failures -= 1
            raise CloudInventoryError("describe_auto_scaling_groups failed: throttled")
        return [
            GroupMembership(name=n, instances=[CloudInstance(id=i, lifecycle_state=s) for i, s in self.groups[n]])
            for n in group_names
            if n in self.groups
        ]

    async def describe_instance_addresses(self, instance_ids):
        self.address_calls += 1
        if self.address_failures:
            self.address_failures -= 1
            raise CloudInventoryError("describe_instances failed: throttled")
        out = []
        for i in instance_ids:
            if i in self.addresses:
                public, private = self.addresses[i]
                out.append(InstanceAddresses(id=i, public_addr=public, private_addr=private))
        return out


@pytest.fixture(autouse=True)
def event_db(tmp_path, monkeypatch):
    """Isolated sqlite event log for every test."""
    monkeypatch.setattr(db, "settings", dataclasses.replace(settings, db_path=str(tmp_path / "events.db")))
    db.init_db()
    return db


@pytest.fixture
def cfg():
    return dataclasses.replace(
        settings,
        timeout_s=2.0,
        sync_timeout_s=5.0,
        retry_attempts=3,
        retry_delay_s=0.0,
        gateway_retry_delay_s=0.0,
        bootstrap_retry_delay_s=0.0,
        refresh_interval_s=0.0,
    )


@pytest.fixture
def fake_lb():
    lb = FakeLoadBalancer()
    lb.add_virtual_server("web")
    return lb


@pytest.fixture
def fake_cloud():
    return FakeCloudProvider()


@pytest.fixture
def web_config():
    return VirtualServerConfig(
        name="web",
        service_type="http",
        service_port=8080,
        rs_prefix="asg_web_",
        health_monitor="asg_web_hm",
        rs_group_name="asg_web",
        as_group_name="web-asg",
        address_type="private",
    )


@pytest.fixture
def web_spec(web_config):
    return VirtualServerSpec.from_config(web_config)


@pytest.fixture
def gateway(fake_lb, cfg):
    return RemoteCallGateway(fake_lb.client(), cfg)


@pytest.fixture
def lb_reader(gateway):
    return LoadBalancerInventoryReader(gateway)


@pytest.fixture
def cloud_reader(fake_cloud):
    return CloudInventoryReader(fake_cloud)


@pytest.fixture
def engine(lb_reader, cloud_reader, cfg):
    return ReconciliationEngine(lb_reader, cloud_reader, cfg)
