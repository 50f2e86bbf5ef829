from __future__ import annotations

import asyncio
from typing import Any

from . import db
from .cloud import CloudInventoryReader
from .errors import ConfigurationError, MalformedEventError, PoolSyncError
from .models import InstanceEvent, VirtualServerSpec
from .reconciler import ReconciliationEngine
from .settings import Settings, settings as default_settings


class EventRouter:
    """Applies single-instance corrections for add/remove notifications."""

    def __init__(self, engine: ReconciliationEngine, cloud: CloudInventoryReader, cfg: Settings | None = None):
        self.engine = engine
        self.cloud = cloud
        self.cfg = cfg or default_settings

    async def dispatch(self, raw: str | bytes | dict[str, Any]) -> bool | None:
        """Parse a bus payload and handle it. Malformed payloads are logged and dropped (None)."""
        try:
            event = InstanceEvent.parse(raw)
        except MalformedEventError as e:
            db.log_event("WARN", f"Dropped malformed event: {e}")
            return None
        return await self.handle(event)

    async def handle(self, event: InstanceEvent) -> bool:
        spec = self.engine.ctx.spec_for_group(event.as_group_name)
        if spec is None:
            err = ConfigurationError(f"No virtual server manages auto-scaling group '{event.as_group_name}'")
            db.log_event("ERROR", str(err), entity=event.instance)
            return False
        if event.action == "addInstance":
            return await self.add_instance(spec, event.instance)
        return await self.remove_instance(spec, event.instance)

    async def add_instance(self, spec: VirtualServerSpec, instance_id: str) -> bool:
        ctx = self.engine.ctx
        name = spec.real_server_name(instance_id)
        if ctx.has_member(spec, instance_id):
            return True

        while True:
            try:
                addr = await self.cloud.resolve_instance_address(spec, instance_id)
                if addr:
                    ctx.cloud.setdefault(spec.name, {})[instance_id] = addr
                await self.engine.create_instance(spec, instance_id, addr)
            except PoolSyncError as e:
                attempts = ctx.retries.record_failure(instance_id)
                if ctx.retries.should_abandon(instance_id):
                    ctx.retries.clear(instance_id)
                    db.log_event(
                        "ERROR",
                        f"Error adding instance after {attempts} attempts: {e}",
                        virtual_server=spec.name,
                        entity=name,
                    )
                    return False
                db.log_event(
                    "WARN",
                    f"Adding instance failed (attempt {attempts}), retrying in {self.cfg.retry_delay_s}s: {e}",
                    virtual_server=spec.name,
                    entity=name,
                )
                await asyncio.sleep(self.cfg.retry_delay_s)
                continue
            ctx.retries.clear(instance_id)
            return True

    async def remove_instance(self, spec: VirtualServerSpec, instance_id: str) -> bool:
        name = spec.real_server_name(instance_id)
        try:
            await self.engine.delete_instance(spec, name)
        except PoolSyncError as e:
            db.log_event("ERROR", f"Error removing real server: {e}", virtual_server=spec.name, entity=name)
            return False
        return True
