#!/usr/bin/env python3
"""
Long-running sync worker.

Keeps one device's local store fresh by pulling each entity from the cloud on
its own interval. Pushes stay user-initiated, except the dine-in pricing bulk
push, which only runs on a sync-authoritative device.
"""

import argparse
import asyncio
import copy
import sys
import time
import traceback
from typing import Any, Optional

from possync.app.config import settings
from possync.app.device import DeviceContext
from possync.app.logs import json_log


DEFAULT_JOB_SPECS: dict[str, dict[str, Any]] = {
    "STAFF_PULL": {"interval_seconds": 60, "options_json": {}},
    # Settings change rarely; the invoice counter merge keeps a running till safe.
    "SETTINGS_PULL": {"interval_seconds": 300, "options_json": {}},
    "AGGREGATOR_ORDERS_PULL": {"interval_seconds": 30, "options_json": {"limit": 100}},
    "DINE_IN_PRICING_PUSH": {"interval_seconds": 300, "options_json": {"authoritative_only": True}},
}


async def execute_job(device: DeviceContext, job_code: str, options: dict) -> bool:
    tenant_id = device.tenant_id
    if job_code == "STAFF_PULL":
        return await device.staff.sync_from_cloud(tenant_id)
    if job_code == "SETTINGS_PULL":
        return await device.settings_store.sync_from_cloud(tenant_id)
    if job_code == "AGGREGATOR_ORDERS_PULL":
        limit = int(options.get("limit") or 100)
        return await device.orders.sync_from_cloud(tenant_id, limit=limit)
    if job_code == "DINE_IN_PRICING_PUSH":
        if options.get("authoritative_only") and not device.is_sync_authoritative():
            return True
        return await device.pricing.sync_to_cloud(tenant_id)
    raise ValueError(f"unknown job_code: {job_code}")


async def run_due_jobs(
    device: DeviceContext,
    next_run: dict[str, float],
    *,
    now: Optional[float] = None,
    job_specs: Optional[dict[str, dict[str, Any]]] = None,
) -> int:
    """
    Run every job whose next_run time has passed and reschedule it.
    `next_run` is owned by the caller; jobs missing from it are due immediately.
    """
    specs = job_specs or DEFAULT_JOB_SPECS
    now = time.monotonic() if now is None else now
    ran = 0
    for job_code, spec in specs.items():
        if next_run.get(job_code, 0.0) > now:
            continue
        next_run[job_code] = now + float(spec["interval_seconds"])
        started = time.time()
        try:
            ok = await execute_job(device, job_code, spec.get("options_json") or {})
            json_log(
                "info" if ok else "warning",
                "worker.job.done",
                job_code=job_code,
                tenant_id=device.tenant_id,
                ok=ok,
                duration_ms=int((time.time() - started) * 1000),
            )
        except Exception as ex:
            # Never crash the worker loop due to a single job.
            json_log("error", "worker.job.error", job_code=job_code, tenant_id=device.tenant_id, error=str(ex))
            traceback.print_exc(file=sys.stderr)
        ran += 1
    return ran


async def run(args) -> None:
    cfg = copy.copy(settings)
    if args.db:
        cfg.db_path = args.db
    device = DeviceContext.from_settings(cfg)
    await device.init(args.tenant_id)
    next_run: dict[str, float] = {}
    try:
        while True:
            try:
                await run_due_jobs(device, next_run)
            except Exception as ex:
                json_log("error", "worker.loop.error", tenant_id=device.tenant_id, error=str(ex))
                traceback.print_exc(file=sys.stderr)
            if args.once:
                break
            await asyncio.sleep(args.sleep)
    finally:
        device.dispose()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--tenant-id", default=settings.tenant_id)
    parser.add_argument("--db", default="", help="SQLite file (defaults to POS_SYNC_DB_PATH)")
    parser.add_argument("--sleep", type=float, default=1.0)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()
    if not (args.tenant_id or "").strip():
        parser.error("--tenant-id (or POS_TENANT_ID) is required")
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
