from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from .errors import MalformedEventError


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ServiceType(IntEnum):
    # Wire values understood by the management API.
    HTTP = 1
    TCP = 2

    @classmethod
    def normalize(cls, raw: str | int | None) -> "ServiceType":
        if isinstance(raw, int):
            return cls.TCP if raw == cls.TCP else cls.HTTP
        if raw and raw.strip().lower() == "tcp":
            return cls.TCP
        return cls.HTTP


class VirtualServerConfig(BaseModel):
    name: str = Field(..., min_length=1, description="Virtual server name on the load balancer")
    service_type: str = Field("HTTP", description="HTTP|TCP")
    service_port: int = Field(80, ge=1, le=65535, description="Port every managed real server listens on")
    rs_prefix: str = Field(..., min_length=1, description="Namespace of managed real servers")
    health_monitor: str | None = Field(None, description="Health monitor attached to managed real servers")
    rs_group_name: str = Field(..., min_length=1, description="Managed real server group")
    as_group_name: str = Field("", description="Cloud auto-scaling group feeding this virtual server")
    address_type: Literal["public", "private"] = Field("private", alias="amazonIpType")
    description: str = ""

    model_config = {"populate_by_name": True}


@dataclass(frozen=True)
class VirtualServerSpec:
    name: str
    service_type: ServiceType
    service_port: int
    rs_prefix: str
    rs_group_name: str
    as_group_name: str
    address_type: str = "private"
    health_monitor: str | None = None

    @classmethod
    def from_config(cls, cfg: VirtualServerConfig) -> "VirtualServerSpec":
        return cls(
            name=cfg.name,
            service_type=ServiceType.normalize(cfg.service_type),
            service_port=cfg.service_port,
            rs_prefix=cfg.rs_prefix,
            rs_group_name=cfg.rs_group_name,
            as_group_name=cfg.as_group_name,
            address_type=cfg.address_type,
            health_monitor=cfg.health_monitor or None,
        )

    @property
    def server_base_name(self) -> str:
        return f"{self.rs_prefix}base"

    def real_server_name(self, instance_id: str) -> str:
        return f"{self.rs_prefix}{instance_id}"

    def owns(self, real_server_name: str) -> bool:
        return real_server_name.startswith(self.rs_prefix)

    def instance_id_for(self, real_server_name: str) -> str | None:
        """Strip the managed prefix; None for real servers this spec does not own."""
        if not self.owns(real_server_name):
            return None
        return real_server_name[len(self.rs_prefix):]


@dataclass(frozen=True)
class RealServerAddress:
    addr: str
    port: int


class InstanceEvent(BaseModel):
    action: Literal["addInstance", "removeInstance"]
    as_group_name: str = Field(..., min_length=1)
    instance: str = Field(..., min_length=1)

    @classmethod
    def parse(cls, raw: str | bytes | dict[str, Any]) -> "InstanceEvent":
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise MalformedEventError(f"Event is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise MalformedEventError(f"Event must be a JSON object, got {type(raw).__name__}")
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise MalformedEventError(f"Invalid event: {e}") from e


@dataclass
class SyncReport:
    success: list[str] = field(default_factory=list)
    failure: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now)
    finished_at: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failure

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "success": list(self.success),
            "failure": list(self.failure),
            "deferred": list(self.deferred),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
