from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .models import RealServerAddress, SyncReport, VirtualServerSpec
from .retry import RetryTracker


@dataclass
class ReconcileContext:
    """In-memory state for reconciliation, rebuilt from scratch each full sync.

    No locking: handlers only interleave at awaits, and no map is read and
    written across an await.
    """

    specs: list[VirtualServerSpec]
    retries: RetryTracker
    # spec name -> instance id -> address (None while the instance provisions)
    cloud: dict[str, dict[str, str | None]] = field(default_factory=dict)
    # spec name -> real server name -> address
    lb: dict[str, dict[str, RealServerAddress]] = field(default_factory=dict)
    # spec name -> foreign group -> member names (recorded, never mutated)
    foreign_groups: dict[str, dict[str, list[str]]] = field(default_factory=dict)
    syncing: bool = False
    last_report: SyncReport | None = None
    last_error: str | None = None

    def spec_for_group(self, as_group_name: str) -> VirtualServerSpec | None:
        for spec in self.specs:
            if spec.as_group_name and spec.as_group_name == as_group_name:
                return spec
        return None

    def spec_named(self, name: str) -> VirtualServerSpec | None:
        for spec in self.specs:
            if spec.name == name:
                return spec
        return None

    def has_member(self, spec: VirtualServerSpec, instance_id: str) -> bool:
        return spec.real_server_name(instance_id) in self.lb.get(spec.name, {})

    def record_member(self, spec: VirtualServerSpec, instance_id: str, address: RealServerAddress) -> None:
        self.cloud.setdefault(spec.name, {})[instance_id] = address.addr
        self.lb.setdefault(spec.name, {})[spec.real_server_name(instance_id)] = address

    def forget_instance(self, spec: VirtualServerSpec, instance_id: str) -> None:
        self.lb.get(spec.name, {}).pop(spec.real_server_name(instance_id), None)
        self.cloud.get(spec.name, {}).pop(instance_id, None)

    def snapshot(self) -> dict[str, Any]:
        return {
            "syncing": self.syncing,
            "virtual_servers": [
                {
                    "name": s.name,
                    "service_type": s.service_type.name,
                    "service_port": s.service_port,
                    "rs_prefix": s.rs_prefix,
                    "rs_group_name": s.rs_group_name,
                    "as_group_name": s.as_group_name,
                    "health_monitor": s.health_monitor,
                    "cloud": dict(self.cloud.get(s.name, {})),
                    "real_servers": {
                        n: {"addr": a.addr, "port": a.port} for n, a in self.lb.get(s.name, {}).items()
                    },
                    "foreign_groups": {g: list(m) for g, m in self.foreign_groups.get(s.name, {}).items()},
                }
                for s in self.specs
            ],
            "retries": self.retries.snapshot(),
            "last_report": self.last_report.as_dict() if self.last_report else None,
            "last_error": self.last_error,
        }
