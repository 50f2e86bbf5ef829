from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, unquote

from . import db
from .errors import RemoteCallError, UnsupportedStructureError
from .gateway import RemoteCallGateway, RestBody, RestResult
from .models import RealServerAddress, VirtualServerSpec


_REGEX_SPECIALS = re.compile(r"([.*+?^${}()|\[\]\\])")
_REGEX_SPECIAL_CHARS = frozenset(".*+?^${}()|[]")


def _seg(name: str) -> str:
    return quote(name, safe="")


def _leaf(child_path: str) -> str:
    return unquote(child_path.rstrip("/").split("/")[-1])


def member_pattern(prefix: str) -> str:
    """Member regex matching every real server carrying ``prefix``."""
    return "^" + _REGEX_SPECIALS.sub(r"\\\1", prefix) + ".*"


def parse_member_pattern(text: str) -> str | None:
    """Return the literal prefix a member regex matches, or None.

    Only ``^<literal>.*`` (optionally ``$``-terminated) patterns are
    recognised; escaping style does not matter.
    """
    pattern = unquote(text)
    if not pattern.startswith("^"):
        return None
    body = pattern[1:]
    if body.endswith(".*$"):
        body = body[:-3]
    elif body.endswith(".*"):
        body = body[:-2]
    else:
        return None

    literal: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\":
            # \d, \w etc. are classes, not literals
            if i + 1 >= len(body) or body[i + 1].isalnum():
                return None
            literal.append(body[i + 1])
            i += 2
            continue
        if ch in _REGEX_SPECIAL_CHARS:
            return None
        literal.append(ch)
        i += 1
    return "".join(literal)


@dataclass
class LoadBalancerMembership:
    # real server name -> address, for the managed group plus individual real servers
    members: dict[str, RealServerAddress] = field(default_factory=dict)
    # foreign group -> member names
    foreign_groups: dict[str, list[str]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


class LoadBalancerInventoryReader:
    """Reads and upserts load balancer resources through the management API."""

    def __init__(self, gateway: RemoteCallGateway):
        self.gateway = gateway

    async def _write(self, method: str, path: str, body: dict[str, Any] | None = None) -> RestResult:
        result = await self.gateway.call(method, path, body)
        if result.not_found:
            raise RemoteCallError(f"{method} {path} returned not found", method, path)
        return result

    # Virtual servers

    async def virtual_server_exists(self, name: str) -> bool:
        result = await self.gateway.call("GET", f"/status/app/proxy/virtualServer/{_seg(name)}")
        return not result.not_found

    # Real server groups

    async def ensure_group(self, spec: VirtualServerSpec) -> bool:
        """Make sure the managed group exists and matches the real server prefix.

        Returns True when anything had to be created.
        """
        path = f"/status/app/proxy/realServerGroup/{_seg(spec.rs_group_name)}?op=list&level=recurse"
        created = False
        result = await self.gateway.call("GET", path)
        if result.not_found:
            await self._write(
                "POST",
                f"/config/app/proxy/realServerGroup/{_seg(spec.rs_group_name)}",
                RestBody.string(spec.rs_group_name),
            )
            db.log_event("INFO", f"Created real server group '{spec.rs_group_name}'", virtual_server=spec.name)
            created = True
            result = await self.gateway.call("GET", path)

        if spec.rs_prefix not in self._registered_prefixes(result):
            pattern = member_pattern(spec.rs_prefix)
            await self._write(
                "POST",
                f"/config/app/proxy/realServerGroup/{_seg(spec.rs_group_name)}/memberRegex/{_seg(pattern)}",
                RestBody.string(pattern),
            )
            db.log_event(
                "INFO",
                f"Registered member pattern '{pattern}' on group '{spec.rs_group_name}'",
                virtual_server=spec.name,
            )
            created = True
        return created

    @staticmethod
    def _registered_prefixes(result: RestResult) -> set[str]:
        if result.not_found:
            return set()
        regex_node = result.children.get(result.request_path + "/memberRegex")
        if not isinstance(regex_node, dict):
            return set()
        prefixes: set[str] = set()
        for key in (regex_node.get("children") or {}):
            prefix = parse_member_pattern(_leaf(key))
            if prefix is not None:
                prefixes.add(prefix)
        return prefixes

    async def ensure_group_attached(self, spec: VirtualServerSpec) -> bool:
        result = await self.gateway.call(
            "GET", f"/status/app/proxy/virtualServer/{_seg(spec.name)}/realServerGroup?op=list"
        )
        attached = {_leaf(k) for k in result.children}
        if spec.rs_group_name in attached:
            return False
        await self._write(
            "POST",
            f"/config/app/proxy/virtualServer/{_seg(spec.name)}/realServerGroup/{_seg(spec.rs_group_name)}",
            RestBody.string(spec.rs_group_name),
        )
        db.log_event("INFO", f"Attached real server group '{spec.rs_group_name}'", virtual_server=spec.name)
        return True

    async def list_groups(self, spec: VirtualServerSpec) -> tuple[list[str], list[str]]:
        """Groups attached to the virtual server, plus per-item errors."""
        result = await self.gateway.call(
            "GET", f"/config/app/proxy/virtualServer/{_seg(spec.name)}/realServerGroup?op=list"
        )
        groups: list[str] = []
        errors: list[str] = []
        for key, child in result.children.items():
            n = child.get("numChildren", 0) if isinstance(child, dict) else None
            if not isinstance(n, int) or n > 1:
                errors.append(str(UnsupportedStructureError(f"Unsupported children format for group entry '{key}'")))
                continue
            groups.append(_leaf(key))
        return groups, errors

    async def list_group_members(self, group: str) -> tuple[list[str], list[str]]:
        """Members of a group, plus per-item errors for nested entries."""
        result = await self.gateway.call("GET", f"/status/app/proxy/realServerGroup/{_seg(group)}/members?op=list")
        members: list[str] = []
        errors: list[str] = []
        if result.not_found:
            return members, errors
        for key, child in result.children.items():
            n = child.get("numChildren") if isinstance(child, dict) else None
            if n != 0:
                errors.append(
                    str(UnsupportedStructureError(f"Unsupported children format for member '{_leaf(key)}' of group '{group}'"))
                )
                continue
            members.append(_leaf(key))
        return members, errors

    async def list_individual_real_servers(self, spec: VirtualServerSpec) -> list[str]:
        result = await self.gateway.call("GET", f"/status/app/proxy/virtualServer/{_seg(spec.name)}/realServer?op=list")
        if result.not_found:
            return []
        return [_leaf(k) for k in result.children]

    async def resolve_real_server_address(self, name: str) -> RealServerAddress:
        result = await self.gateway.call("GET", f"/status/app/proxy/realServer/{_seg(name)}/ipAddress")
        if result.not_found:
            raise RemoteCallError(f"Real server '{name}' has no address", "GET", result.path)
        data = result.node.get("data")
        if not isinstance(data, dict) or "addr" not in data:
            raise UnsupportedStructureError(f"Unsupported address format for real server '{name}'")
        try:
            port = int(data.get("port") or 0)
        except (TypeError, ValueError) as e:
            raise UnsupportedStructureError(f"Unsupported port {data.get('port')!r} for real server '{name}'") from e
        return RealServerAddress(addr=str(data["addr"]), port=port)

    async def discover_membership(self, spec: VirtualServerSpec) -> LoadBalancerMembership:
        """Current real servers of the managed group and of the virtual server itself.

        Foreign groups are recorded with their members but never touched.
        Unsupported structures and per-item lookup failures are skipped and
        reported in ``errors``.
        """
        membership = LoadBalancerMembership()
        (groups, group_errors), individuals = await asyncio.gather(
            self.list_groups(spec), self.list_individual_real_servers(spec)
        )
        membership.errors.extend(group_errors)

        names: set[str] = set(individuals)
        for group in groups:
            try:
                members, member_errors = await self.list_group_members(group)
            except RemoteCallError as e:
                membership.errors.append(f"{group}: {e}")
                continue
            membership.errors.extend(member_errors)
            if group == spec.rs_group_name:
                names.update(members)
            else:
                membership.foreign_groups[group] = members

        async def _address(name: str) -> None:
            try:
                membership.members[name] = await self.resolve_real_server_address(name)
            except (UnsupportedStructureError, RemoteCallError) as e:
                membership.errors.append(f"{name}: {e}")

        await asyncio.gather(*(_address(n) for n in sorted(names)))
        return membership

    # Health monitors and server base templates

    async def ensure_health_monitor(self, spec: VirtualServerSpec) -> bool:
        """False when no health monitor is configured for the virtual server."""
        if not spec.health_monitor:
            return False
        hm = spec.health_monitor
        result = await self.gateway.call("GET", f"/status/app/health/monitor/{_seg(hm)}?op=list")
        if result.not_found:
            db.log_event("WARN", f"Health monitor '{hm}' not found; creating one", virtual_server=spec.name)
            base = f"/config/app/health/monitor/{_seg(hm)}"
            await self._write("PUT", base, RestBody.string(hm))
            await self._write("PUT", f"{base}/type", RestBody.uint32(spec.service_type))
        return True

    async def ensure_server_base(self, spec: VirtualServerSpec) -> bool:
        """Returns True when the template had to be created."""
        name = spec.server_base_name
        result = await self.gateway.call("GET", f"/status/app/proxy/realServerBase/{_seg(name)}?op=list")
        if not result.not_found:
            return False
        db.log_event("WARN", f"Real server base '{name}' not found; creating one", virtual_server=spec.name)
        base = f"/config/app/proxy/realServerBase/{_seg(name)}"
        await self._write("PUT", base, RestBody.string(name))
        await self._write("PUT", f"{base}/serviceType", RestBody.uint32(spec.service_type))
        # 0 = offline, 1 = online
        await self._write("PUT", f"{base}/adminStatus", RestBody.uint32(1))
        return True

    # Real servers

    async def create_real_server(self, spec: VirtualServerSpec, instance_id: str, addr: str) -> RealServerAddress:
        name = spec.real_server_name(instance_id)
        address = RealServerAddress(addr=addr, port=spec.service_port)
        base = f"/config/app/proxy/realServer/{_seg(name)}"
        await self._write("PUT", base, RestBody.string(name))
        await self._write("PUT", f"{base}/ipAddress", RestBody.socket_addr(address.addr, address.port))
        await self._write("PUT", f"{base}/base", RestBody.string(spec.server_base_name))
        if spec.health_monitor:
            await self._write(
                "PUT", f"{base}/healthMonitor/{_seg(spec.health_monitor)}", RestBody.string(spec.health_monitor)
            )
        return address

    async def delete_real_server(self, name: str) -> bool:
        """True if deleted, False if it was already absent."""
        result = await self.gateway.call("DELETE", f"/config/app/proxy/realServer/{_seg(name)}")
        return not result.not_found
