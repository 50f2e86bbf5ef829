"""Auto-scaling group to load-balancer pool synchronizer (poolsync).

Keeps the real servers of a load balancer's virtual servers in step with the
membership of cloud auto-scaling groups:
 - full reconciliation of desired (cloud) vs actual (load balancer) state
 - incremental add/remove corrections driven by instance lifecycle events
 - bounded retries and deadlines around every remote call

Only the elected leader process reconciles; other processes forward events.
"""
