from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from . import db
from .errors import CloudInventoryError
from .models import VirtualServerSpec


# Instances in any other state (Terminating*, Terminated, Detaching, Detached,
# Quarantined) are already leaving the group.
PRESENT_LIFECYCLE_STATES = frozenset(
    {"Pending", "Pending:Wait", "Pending:Proceed", "InService", "EnteringStandby", "Standby"}
)


@dataclass(frozen=True)
class CloudInstance:
    id: str
    lifecycle_state: str


@dataclass(frozen=True)
class GroupMembership:
    name: str
    instances: list[CloudInstance] = field(default_factory=list)


@dataclass(frozen=True)
class InstanceAddresses:
    id: str
    public_addr: str | None = None
    private_addr: str | None = None

    def select(self, address_type: str) -> str | None:
        return self.public_addr if address_type == "public" else self.private_addr


class CloudProvider(Protocol):
    async def describe_group_membership(self, group_names: list[str]) -> list[GroupMembership]: ...

    async def describe_instance_addresses(self, instance_ids: list[str]) -> list[InstanceAddresses]: ...


class Boto3CloudProvider:
    """CloudProvider backed by the boto3 autoscaling and ec2 clients.

    boto3 is blocking, so every SDK call runs in the default executor.
    """

    def __init__(self, region_name: str, **client_kwargs: Any):
        self.region_name = region_name
        self._client_kwargs = client_kwargs
        self._autoscaling = None
        self._ec2 = None

    async def connect(self) -> None:
        self._autoscaling = await self._run(boto3.client, "autoscaling", region_name=self.region_name, **self._client_kwargs)
        self._ec2 = await self._run(boto3.client, "ec2", region_name=self.region_name, **self._client_kwargs)

    async def _run(self, fn, *args, **kwargs):
        return await asyncio.get_running_loop().run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def describe_group_membership(self, group_names: list[str]) -> list[GroupMembership]:
        if self._autoscaling is None:
            await self.connect()
        try:
            pages = await self._run(self._collect_groups, group_names)
        except (BotoCoreError, ClientError) as e:
            raise CloudInventoryError(f"describe_auto_scaling_groups failed: {e}") from e
        return pages

    def _collect_groups(self, group_names: list[str]) -> list[GroupMembership]:
        out: list[GroupMembership] = []
        paginator = self._autoscaling.get_paginator("describe_auto_scaling_groups")
        for page in paginator.paginate(AutoScalingGroupNames=group_names):
            for group in page.get("AutoScalingGroups", []):
                out.append(
                    GroupMembership(
                        name=group["AutoScalingGroupName"],
                        instances=[
                            CloudInstance(id=i["InstanceId"], lifecycle_state=i.get("LifecycleState", ""))
                            for i in group.get("Instances", [])
                        ],
                    )
                )
        return out

    async def describe_instance_addresses(self, instance_ids: list[str]) -> list[InstanceAddresses]:
        if self._ec2 is None:
            await self.connect()
        try:
            return await self._run(self._collect_addresses, instance_ids)
        except (BotoCoreError, ClientError) as e:
            raise CloudInventoryError(f"describe_instances failed: {e}") from e

    def _collect_addresses(self, instance_ids: list[str]) -> list[InstanceAddresses]:
        out: list[InstanceAddresses] = []
        paginator = self._ec2.get_paginator("describe_instances")
        pages = paginator.paginate(
            InstanceIds=instance_ids,
            Filters=[{"Name": "instance-state-name", "Values": ["pending", "running"]}],
        )
        for page in pages:
            for reservation in page.get("Reservations", []):
                for inst in reservation.get("Instances", []):
                    out.append(
                        InstanceAddresses(
                            id=inst["InstanceId"],
                            public_addr=inst.get("PublicIpAddress"),
                            private_addr=inst.get("PrivateIpAddress"),
                        )
                    )
        return out


class CloudInventoryReader:
    def __init__(self, provider: CloudProvider):
        self.provider = provider

    async def list_group_members(self, specs: Iterable[VirtualServerSpec]) -> dict[str, list[str]]:
        """Map spec name -> ids of instances present in its auto-scaling group.

        Specs without a group name are skipped and do not appear in the result.
        """
        by_group: dict[str, list[VirtualServerSpec]] = {}
        for spec in specs:
            if not spec.as_group_name:
                db.log_event("WARN", "No auto-scaling group name configured; skipping", virtual_server=spec.name)
                continue
            by_group.setdefault(spec.as_group_name, []).append(spec)

        result: dict[str, list[str]] = {s.name: [] for group in by_group.values() for s in group}
        if not by_group:
            return result

        for group in await self.provider.describe_group_membership(list(by_group)):
            present = [i.id for i in group.instances if i.lifecycle_state in PRESENT_LIFECYCLE_STATES]
            for spec in by_group.get(group.name, []):
                result[spec.name] = list(present)
        return result

    async def resolve_addresses(
        self, members: dict[str, list[str]], specs: Iterable[VirtualServerSpec]
    ) -> dict[str, dict[str, str | None]]:
        """Map spec name -> instance id -> address.

        Every member is reported; an instance the provider cannot address yet
        maps to None.
        """
        spec_by_name = {s.name: s for s in specs}
        resolved: dict[str, dict[str, str | None]] = {}

        async def _one(spec_name: str, ids: list[str]) -> None:
            spec = spec_by_name[spec_name]
            addresses: dict[str, str | None] = {i: None for i in ids}
            resolved[spec_name] = addresses
            if not ids:
                return
            try:
                described = await self.provider.describe_instance_addresses(ids)
            except CloudInventoryError as e:
                db.log_event("WARN", f"Address lookup failed: {e}", virtual_server=spec_name)
                return
            for inst in described:
                if inst.id in addresses:
                    addresses[inst.id] = inst.select(spec.address_type)

        await asyncio.gather(*(_one(name, ids) for name, ids in members.items() if name in spec_by_name))
        return resolved

    async def resolve_instance_address(self, spec: VirtualServerSpec, instance_id: str) -> str | None:
        resolved = await self.resolve_addresses({spec.name: [instance_id]}, [spec])
        return resolved[spec.name][instance_id]
