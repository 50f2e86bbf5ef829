from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from redis.exceptions import RedisError

from . import db
from .bus import LeadershipSignal, RedisEventBus
from .cloud import Boto3CloudProvider, CloudInventoryReader, CloudProvider
from .events import EventRouter
from .gateway import RemoteCallGateway, build_client
from .lb import LoadBalancerInventoryReader
from .models import InstanceEvent, SyncReport, VirtualServerConfig
from .reconciler import ReconciliationEngine
from .settings import Settings, load_virtual_servers, settings as default_settings


class NotLeaderError(Exception):
    pass


class AutoscalerService:
    """Wires the engine, event router and bus together and follows leadership.

    Every transition into leadership starts from freshly discovered state;
    nothing carries over from a previous term.
    """

    def __init__(
        self,
        configs: list[VirtualServerConfig],
        gateway: RemoteCallGateway,
        cloud_provider: CloudProvider,
        bus: RedisEventBus | None = None,
        leadership: LeadershipSignal | None = None,
        cfg: Settings | None = None,
    ):
        self.configs = list(configs)
        self.gateway = gateway
        self.cloud_provider = cloud_provider
        self.bus = bus
        self.cfg = cfg or default_settings
        self.leadership = leadership or LeadershipSignal(self.cfg.is_leader)
        self.engine: ReconciliationEngine | None = None
        self.router: EventRouter | None = None
        self._ready: asyncio.Event | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_leader(self) -> bool:
        return self.leadership.is_leader

    async def start(self) -> None:
        db.init_db()
        self.leadership.subscribe(self._on_leadership_change)
        if self.leadership.is_leader:
            await self._become_leader()
        else:
            db.log_event("INFO", "Not the leader; forwarding events only")

    async def stop(self) -> None:
        await self._step_down()
        if self.bus is not None:
            await self.bus.close()
        await self.gateway.aclose()

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done(name))
        return task

    def _task_done(self, name: str):
        def _cb(task: asyncio.Task) -> None:
            self._tasks.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                db.log_event("ERROR", f"Background task '{name}' failed: {type(exc).__name__}: {exc}")

        return _cb

    def _on_leadership_change(self, is_leader: bool) -> None:
        if is_leader:
            db.log_event("INFO", "Became leader")
            self._spawn(self._become_leader(), "become-leader")
        else:
            db.log_event("INFO", "Lost leadership")
            self._spawn(self._step_down(), "step-down")

    async def _become_leader(self) -> None:
        if self.engine is not None:
            return
        cloud = CloudInventoryReader(self.cloud_provider)
        self.engine = ReconciliationEngine(LoadBalancerInventoryReader(self.gateway), cloud, self.cfg)
        self.router = EventRouter(self.engine, cloud, self.cfg)
        self._ready = asyncio.Event()
        self._spawn(self._leader_main(self.engine, self._ready), "reconcile")
        if self.bus is not None:
            self._spawn(self._consume(self.bus, self._ready), "event-bus")

    async def _leader_main(self, engine: ReconciliationEngine, ready: asyncio.Event) -> None:
        try:
            await engine.run_initial_sync(self.configs)
        finally:
            ready.set()
        if self.cfg.refresh_interval_s > 0 and engine.ctx.specs:
            await engine.run_periodic(self.cfg.refresh_interval_s)

    async def _consume(self, bus: RedisEventBus, ready: asyncio.Event) -> None:
        try:
            async for raw in bus.messages():
                # Hold events until the baseline pass has picked the managed virtual servers.
                await ready.wait()
                if self.router is not None:
                    self._spawn(self.router.dispatch(raw), "instance-event")
        except RedisError as e:
            db.log_event("ERROR", f"Event bus subscription lost: {e}")

    async def _step_down(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self.engine is not None:
            await self.engine.close()
        self.engine = None
        self.router = None
        self._ready = None

    async def submit(self, raw: str | bytes | dict[str, Any] | InstanceEvent) -> str:
        """Handle an inbound event on the leader; forward it unchanged otherwise."""
        if self.is_leader and self.router is not None:
            payload = raw.model_dump() if isinstance(raw, InstanceEvent) else raw
            self._spawn(self.router.dispatch(payload), "instance-event")
            return "accepted"
        if self.bus is None:
            raise NotLeaderError("Not the leader and no event bus configured")
        await self.bus.publish(raw)
        return "forwarded"

    async def sync_now(self) -> SyncReport | None:
        if not self.is_leader or self.engine is None:
            raise NotLeaderError("Full sync only runs on the leader")
        return await self.engine.full_sync()

    def status(self) -> dict[str, Any]:
        return {
            "leader": self.is_leader,
            "engine": self.engine.status() if self.engine is not None else None,
        }


def build_service(cfg: Settings | None = None) -> AutoscalerService:
    cfg = cfg or default_settings
    return AutoscalerService(
        configs=load_virtual_servers(cfg.config_path),
        gateway=RemoteCallGateway(build_client(cfg), cfg),
        cloud_provider=Boto3CloudProvider(cfg.aws_region),
        bus=RedisEventBus(cfg.redis_url, cfg.bus_channel),
        leadership=LeadershipSignal(cfg.is_leader),
        cfg=cfg,
    )
