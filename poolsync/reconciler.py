from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Iterable

from . import db
from .cloud import CloudInventoryReader
from .errors import AddressNotYetAssignedError, ConfigurationError, PoolSyncError, SyncAbortedError
from .lb import LoadBalancerInventoryReader, LoadBalancerMembership
from .models import RealServerAddress, SyncReport, VirtualServerConfig, VirtualServerSpec, utc_now
from .retry import BOOTSTRAP_KEY, DEFERRED_RESYNC_KEY, RetryTracker
from .runtime import ReconcileContext
from .settings import Settings, settings as default_settings


class SyncPhase(str, Enum):
    IDLE = "idle"
    BOOTSTRAP = "bootstrap"
    DISCOVER = "discover"
    DIFF = "diff"
    APPLY = "apply"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Diff:
    to_add: list[str] = field(default_factory=list)
    to_remove: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.to_add and not self.to_remove


def compute_diff(spec: VirtualServerSpec, cloud_ids: Iterable[str], lb_names: Iterable[str]) -> Diff:
    """Instances to create and real servers to delete for one virtual server.

    Only real servers carrying the managed prefix take part; anything else on
    the load balancer is left alone.
    """
    cloud = list(dict.fromkeys(cloud_ids))
    owned = {n: spec.instance_id_for(n) for n in lb_names if spec.owns(n)}
    present = set(owned.values())
    cloud_set = set(cloud)
    return Diff(
        to_add=[i for i in cloud if i not in present],
        to_remove=sorted(n for n, iid in owned.items() if iid not in cloud_set),
    )


async def _gather_or_cancel(*aws: Awaitable[Any]) -> list[Any]:
    """Like gather, but the first failure cancels every sibling."""
    tasks = [asyncio.ensure_future(a) for a in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            t.cancel()
        raise


class ReconciliationEngine:
    """Reconciles load balancer real servers with auto-scaling group membership."""

    def __init__(
        self,
        lb: LoadBalancerInventoryReader,
        cloud: CloudInventoryReader,
        cfg: Settings | None = None,
    ):
        self.lb = lb
        self.cloud = cloud
        self.cfg = cfg or default_settings
        self.ctx = ReconcileContext(specs=[], retries=RetryTracker(self.cfg.retry_attempts))
        self.phase = SyncPhase.IDLE
        self.bootstrapped = False
        self._deferred: asyncio.Task | None = None

    # Baseline

    async def bootstrap(self, configs: Iterable[VirtualServerConfig]) -> list[VirtualServerSpec]:
        """Normalize configs into specs and keep those whose virtual server exists."""
        self.phase = SyncPhase.BOOTSTRAP
        specs = [VirtualServerSpec.from_config(c) for c in configs]
        if not specs:
            self.phase = SyncPhase.IDLE
            raise ConfigurationError("No virtual servers configured")

        exists = await asyncio.gather(*(self.lb.virtual_server_exists(s.name) for s in specs))
        kept: list[VirtualServerSpec] = []
        for spec, ok in zip(specs, exists):
            if ok:
                kept.append(spec)
                db.log_event("INFO", "Monitoring virtual server", virtual_server=spec.name)
            else:
                db.log_event("WARN", "Virtual server doesn't exist; removed from management", virtual_server=spec.name)

        self.ctx.specs = kept
        self.bootstrapped = True
        self.phase = SyncPhase.IDLE
        return kept

    async def run_initial_sync(self, configs: Iterable[VirtualServerConfig]) -> SyncReport | None:
        """Bootstrap then full sync, retried up to the attempt ceiling."""
        configs = list(configs)
        while True:
            try:
                if not self.bootstrapped:
                    await self.bootstrap(configs)
                report = await self.full_sync()
            except ConfigurationError as e:
                self.ctx.last_error = str(e)
                db.log_event("ERROR", f"Initial sync not possible: {e}")
                return None
            except Exception as e:
                attempts = self.ctx.retries.record_failure(BOOTSTRAP_KEY)
                if self.ctx.retries.should_abandon(BOOTSTRAP_KEY):
                    self.ctx.retries.clear(BOOTSTRAP_KEY)
                    db.log_event("ERROR", f"Initial sync failed after {attempts} attempts: {e}")
                    return None
                db.log_event("WARN", f"Initial sync attempt {attempts} failed, retrying: {e}")
                await asyncio.sleep(self.cfg.bootstrap_retry_delay_s)
                continue
            self.ctx.retries.clear(BOOTSTRAP_KEY)
            return report

    async def run_periodic(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.full_sync()
            except Exception as e:
                db.log_event("ERROR", f"Periodic full sync failed: {type(e).__name__}: {e}")

    # Full sync

    async def full_sync(self) -> SyncReport | None:
        """One discovery + diff + apply pass over every managed virtual server.

        Returns None when another full sync is already running. Raises
        SyncAbortedError when any discovery branch fails; nothing is applied
        in that case.
        """
        ctx = self.ctx
        if ctx.syncing:
            db.log_event("INFO", "Full sync already running; request dropped")
            return None
        if not ctx.specs:
            raise ConfigurationError("No virtual servers configured")

        ctx.syncing = True
        report = SyncReport()
        try:
            self.phase = SyncPhase.DISCOVER
            db.log_event("INFO", "Syncing load balancer real servers to cloud instances")
            try:
                cloud_state, lb_state = await asyncio.wait_for(self._discover(ctx.specs), timeout=self.cfg.sync_timeout_s)
            except Exception as e:
                self.phase = SyncPhase.ABORTED
                aborted = SyncAbortedError(SyncPhase.DISCOVER.value, e)
                ctx.last_error = str(aborted)
                db.log_event("ERROR", str(aborted))
                raise aborted from e

            ctx.cloud = cloud_state
            ctx.lb = {name: dict(m.members) for name, m in lb_state.items()}
            ctx.foreign_groups = {name: dict(m.foreign_groups) for name, m in lb_state.items()}
            for name, m in lb_state.items():
                for err in m.errors:
                    db.log_event("WARN", f"Skipped during discovery: {err}", virtual_server=name)

            self.phase = SyncPhase.DIFF
            diffs: list[tuple[VirtualServerSpec, Diff]] = []
            for spec in ctx.specs:
                if spec.name not in ctx.cloud:
                    continue
                diffs.append((spec, compute_diff(spec, ctx.cloud[spec.name], ctx.lb.get(spec.name, {}))))

            self.phase = SyncPhase.APPLY
            ops: list[Awaitable[None]] = []
            for spec, diff in diffs:
                ops.extend(self._apply_delete(spec, name, report) for name in diff.to_remove)
            for spec, diff in diffs:
                ops.extend(self._apply_create(spec, iid, report) for iid in diff.to_add)
            await asyncio.gather(*ops)

            if not report.deferred:
                ctx.retries.clear(DEFERRED_RESYNC_KEY)
            elif not self.deferred_resync_armed:
                # The pending timer fired mid-apply and was dropped by the single-flight flag.
                self._arm_deferred_resync()
            report.finished_at = utc_now()
            ctx.last_report = report
            ctx.last_error = None
            self.phase = SyncPhase.DONE
            db.log_event(
                "INFO" if report.ok else "WARN",
                f"Full sync finished: {len(report.success)} succeeded, {len(report.failure)} failed, "
                f"{len(report.deferred)} waiting for an address",
            )
            return report
        finally:
            ctx.syncing = False

    async def _discover(
        self, specs: list[VirtualServerSpec]
    ) -> tuple[dict[str, dict[str, str | None]], dict[str, LoadBalancerMembership]]:
        async def cloud_branch() -> dict[str, dict[str, str | None]]:
            members = await self.cloud.list_group_members(specs)
            return await self.cloud.resolve_addresses(members, specs)

        async def lb_one(spec: VirtualServerSpec) -> LoadBalancerMembership:
            await _gather_or_cancel(self.lb.ensure_group(spec), self.lb.ensure_group_attached(spec))
            return await self.lb.discover_membership(spec)

        async def lb_branch() -> dict[str, LoadBalancerMembership]:
            memberships = await _gather_or_cancel(*(lb_one(s) for s in specs))
            return {s.name: m for s, m in zip(specs, memberships)}

        cloud_state, lb_state, _, _ = await _gather_or_cancel(
            cloud_branch(),
            lb_branch(),
            _gather_or_cancel(*(self.lb.ensure_health_monitor(s) for s in specs)),
            _gather_or_cancel(*(self.lb.ensure_server_base(s) for s in specs)),
        )
        return cloud_state, lb_state

    async def _apply_delete(self, spec: VirtualServerSpec, name: str, report: SyncReport) -> None:
        try:
            await self.delete_instance(spec, name)
        except PoolSyncError as e:
            msg = f"Issue deleting Real Server '{name}' on Virtual Server '{spec.name}': {e}"
            report.failure.append(msg)
            db.log_event("ERROR", msg, virtual_server=spec.name, entity=name)
            return
        report.success.append(f"Removed Real Server '{name}' on Virtual Server '{spec.name}'")

    async def _apply_create(self, spec: VirtualServerSpec, instance_id: str, report: SyncReport) -> None:
        name = spec.real_server_name(instance_id)
        try:
            await self.create_instance(spec, instance_id)
        except AddressNotYetAssignedError:
            report.deferred.append(name)
            self._arm_deferred_resync()
            return
        except PoolSyncError as e:
            msg = f"Issue adding Real Server '{name}' on Virtual Server '{spec.name}': {e}"
            report.failure.append(msg)
            db.log_event("ERROR", msg, virtual_server=spec.name, entity=name)
            return
        report.success.append(f"Added Real Server '{name}' on Virtual Server '{spec.name}'")

    # Primitives shared with the event path

    async def create_instance(self, spec: VirtualServerSpec, instance_id: str, addr: str | None = None) -> RealServerAddress:
        addr = addr or self.ctx.cloud.get(spec.name, {}).get(instance_id)
        if not addr:
            raise AddressNotYetAssignedError(spec.name, instance_id)
        address = await self.lb.create_real_server(spec, instance_id, addr)
        self.ctx.record_member(spec, instance_id, address)
        db.log_event(
            "INFO",
            f"Created real server at {address.addr}:{address.port}",
            virtual_server=spec.name,
            entity=spec.real_server_name(instance_id),
        )
        return address

    async def delete_instance(self, spec: VirtualServerSpec, name: str) -> bool:
        """Delete a real server; True if it existed. Observed state is updated either way."""
        deleted = await self.lb.delete_real_server(name)
        instance_id = spec.instance_id_for(name)
        if instance_id is not None:
            self.ctx.forget_instance(spec, instance_id)
        db.log_event(
            "INFO",
            "Deleted real server" if deleted else "Real server already absent",
            virtual_server=spec.name,
            entity=name,
        )
        return deleted

    # Addressless instances: one deferred resync for all of them

    def _arm_deferred_resync(self) -> bool:
        if self._deferred is not None and not self._deferred.done():
            return False
        retries = self.ctx.retries
        attempts = retries.record_failure(DEFERRED_RESYNC_KEY)
        if retries.should_abandon(DEFERRED_RESYNC_KEY):
            retries.clear(DEFERRED_RESYNC_KEY)
            db.log_event("ERROR", f"Instances still without an address after {attempts - 1} resyncs; giving up")
            return False
        db.log_event("INFO", f"Instances without an address; full sync rescheduled in {self.cfg.retry_delay_s}s")
        self._deferred = asyncio.create_task(self._deferred_resync())
        return True

    async def _deferred_resync(self) -> None:
        await asyncio.sleep(self.cfg.retry_delay_s)
        self._deferred = None
        try:
            await self.full_sync()
        except Exception as e:
            db.log_event("ERROR", f"Deferred full sync failed: {type(e).__name__}: {e}")

    @property
    def deferred_resync_armed(self) -> bool:
        return self._deferred is not None and not self._deferred.done()

    async def close(self) -> None:
        if self._deferred is not None:
            self._deferred.cancel()
            try:
                await self._deferred
            except asyncio.CancelledError:
                pass
            self._deferred = None

    def status(self) -> dict[str, Any]:
        snap = self.ctx.snapshot()
        snap["phase"] = self.phase.value
        snap["deferred_resync_armed"] = self.deferred_resync_armed
        return snap
