# ---------------------------
# app/workers/reconcile.py
# ---------------------------
"""
Job bodies for the worker pool. One coroutine per job name.

Order jobs are idempotent at the business level through the inventory ledger:
a (order_id, sku, type) row is written before the platform call and removed
again if the call fails, so a sale or restock moves stock at most once no
matter how often the job or the delivery is replayed.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from app.mapping.mapping_store import normalize_sku
from app.models.inventory_ledger import (
    PLATFORM_MARKETPLACE,
    PLATFORM_STOREFRONT,
    TX_RESTOCK,
    TX_SALE,
    TX_SYNC,
    InventoryTransaction,
)
from app.models.jobs import SyncJob
from app.models.product_mapping import SYNC_ERROR, SYNC_SYNCED, ProductMapping
from app.platforms.errors import PermanentPlatformError
from app.webhooks.handlers import (
    JOB_PROCESS_ORDER,
    JOB_RESTORE_ORDER,
    JOB_SYNC_INVENTORY_LEVEL,
    JOB_SYNC_PRODUCT,
    JOB_SYNC_STOREFRONT_STOCK,
)

if TYPE_CHECKING:
    from app.context import ReconciliationContext

logger = logging.getLogger("uvicorn.error")

OUTCOME_SUCCESS = "success"
OUTCOME_NO_MAPPING = "no_mapping"


class UnknownJobError(Exception):
    """Job name with no reconciler; never retried."""


class Reconciler:
    def __init__(self, ctx: "ReconciliationContext"):
        self.ctx = ctx
        self._locks: Dict[str, asyncio.Lock] = {}
        self._routes: Dict[str, Callable[[SyncJob], Awaitable[str]]] = {
            JOB_PROCESS_ORDER: self.process_order,
            JOB_RESTORE_ORDER: self.restore_order,
            JOB_SYNC_INVENTORY_LEVEL: self.sync_inventory_level,
            JOB_SYNC_PRODUCT: self.sync_product,
            JOB_SYNC_STOREFRONT_STOCK: self.sync_storefront_stock,
        }

    async def run(self, job: SyncJob) -> str:
        """Execute a claimed job and return its outcome (`success` or `no_mapping`)."""
        route = self._routes.get(job.name)
        if route is None:
            raise UnknownJobError(f"no reconciler for job name {job.name!r}")
        return await route(job)

    # ---------------------------
    # Ledger helpers
    # ---------------------------

    async def _ledger_for(self, order_id: str, sku: str) -> Dict[str, InventoryTransaction]:
        async with self.ctx.sessionmaker() as db:
            rows = await db.execute(
                select(InventoryTransaction)
                .where(InventoryTransaction.order_id == order_id)
                .where(InventoryTransaction.sku == sku)
            )
            return {r.transaction_type: r for r in rows.scalars()}

    async def _reserve(self, row: InventoryTransaction) -> bool:
        """Insert a ledger row; False when (order, sku, type) is already taken."""
        async with self.ctx.sessionmaker() as db:
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
        return True

    async def _release(self, row_id: int) -> None:
        async with self.ctx.sessionmaker() as db:
            await db.execute(delete(InventoryTransaction).where(InventoryTransaction.id == row_id))
            await db.commit()

    async def _record_sync(self, job: SyncJob, sku: str, platform: str, requested: int,
                           previous: Optional[int], new: Optional[int]) -> None:
        async with self.ctx.sessionmaker() as db:
            db.add(InventoryTransaction(
                sku=sku,
                platform=platform,
                transaction_type=TX_SYNC,
                order_id=None,
                quantity=requested,
                applied=(new - previous) if previous is not None and new is not None else 0,
                previous_quantity=previous,
                new_quantity=new,
                delivery_id=job.payload.get("delivery_id"),
                job_id=job.job_id,
            ))
            await db.commit()

    def _product_lock(self, product_id: str) -> asyncio.Lock:
        lock = self._locks.get(product_id)
        if lock is None:
            lock = self._locks[product_id] = asyncio.Lock()
        return lock

    async def _guarded(self, mapping: ProductMapping, op: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run a platform mutation for one mapping and reflect the result on it.

        Mutations of the same marketplace product are serialized so the
        read-clamp-adjust sequence never interleaves with another job in this
        process.
        """
        try:
            async with self._product_lock(mapping.marketplace_product_id):
                result = await op()
        except PermanentPlatformError as e:
            await self.ctx.mapping_store.update_sync_status(mapping.sku, SYNC_ERROR, str(e))
            raise
        await self.ctx.mapping_store.update_sync_status(mapping.sku, SYNC_SYNCED)
        return result

    async def _mapped_lines(self, job: SyncJob) -> List[tuple[Dict[str, Any], ProductMapping]]:
        lines: List[tuple[Dict[str, Any], ProductMapping]] = []
        for line in job.payload.get("line_items") or []:
            mapping = await self.ctx.mapping_lookup.find_active_by_sku(line.get("sku") or "")
            if mapping is None:
                logger.warning("[WORKER] %s: sku=%s has no active mapping; skipped", job.job_id, line.get("sku"))
                continue
            lines.append((line, mapping))
        return lines

    # ---------------------------
    # Orders (storefront -> marketplace)
    # ---------------------------

    async def process_order(self, job: SyncJob) -> str:
        order_id = str(job.payload["order_id"])
        lines = await self._mapped_lines(job)
        if not lines:
            logger.warning("[WORKER] order %s: no mapped items, nothing deducted", order_id)
            return OUTCOME_NO_MAPPING
        for line, mapping in lines:
            await self._guarded(mapping, lambda: self._deduct(job, order_id, mapping, int(line["quantity"])))
        return OUTCOME_SUCCESS

    async def _deduct(self, job: SyncJob, order_id: str, mapping: ProductMapping, quantity: int) -> None:
        sku = mapping.sku
        ledger = await self._ledger_for(order_id, sku)
        if TX_SALE in ledger:
            logger.info("[WORKER] order %s sku=%s already deducted; skipped", order_id, sku)
            return
        if TX_RESTOCK in ledger:
            logger.warning("[WORKER] order %s sku=%s was cancelled before its create ran; skipped", order_id, sku)
            return

        pid = mapping.marketplace_product_id
        current = await self.ctx.marketplace.get_stock(pid)
        applied = min(quantity, max(current, 0))
        if applied < quantity:
            logger.warning("[WORKER] order %s sku=%s wants %d but marketplace has %d; clamped to %d",
                           order_id, sku, quantity, current, applied)

        row = InventoryTransaction(
            sku=sku,
            platform=PLATFORM_MARKETPLACE,
            transaction_type=TX_SALE,
            order_id=order_id,
            quantity=quantity,
            applied=applied,
            previous_quantity=current,
            new_quantity=current - applied,
            delivery_id=job.payload.get("delivery_id"),
            job_id=job.job_id,
        )
        if not await self._reserve(row):
            logger.info("[WORKER] order %s sku=%s ledger entry taken concurrently; skipped", order_id, sku)
            return
        try:
            await self.ctx.marketplace.adjust_stock(pid, -applied)
        except Exception:
            await self._release(row.id)
            raise
        logger.info("[WORKER] order %s sku=%s marketplace stock %d -> %d", order_id, sku, current, current - applied)

    async def restore_order(self, job: SyncJob) -> str:
        order_id = str(job.payload["order_id"])
        lines = await self._mapped_lines(job)
        if not lines:
            logger.warning("[WORKER] order %s: no mapped items, nothing restored", order_id)
            return OUTCOME_NO_MAPPING
        for line, mapping in lines:
            await self._guarded(mapping, lambda: self._restore(job, order_id, mapping, int(line["quantity"])))
        return OUTCOME_SUCCESS

    async def _restore(self, job: SyncJob, order_id: str, mapping: ProductMapping, quantity: int) -> None:
        sku = mapping.sku
        ledger = await self._ledger_for(order_id, sku)
        if TX_RESTOCK in ledger:
            logger.info("[WORKER] order %s sku=%s already restored; skipped", order_id, sku)
            return

        sale = ledger.get(TX_SALE)
        applied = sale.applied if sale is not None else 0
        pid = mapping.marketplace_product_id
        current = await self.ctx.marketplace.get_stock(pid) if applied else None

        row = InventoryTransaction(
            sku=sku,
            platform=PLATFORM_MARKETPLACE,
            transaction_type=TX_RESTOCK,
            order_id=order_id,
            quantity=quantity,
            applied=applied,
            previous_quantity=current,
            new_quantity=(current + applied) if current is not None else None,
            delivery_id=job.payload.get("delivery_id"),
            job_id=job.job_id,
        )
        if not await self._reserve(row):
            logger.info("[WORKER] order %s sku=%s restock taken concurrently; skipped", order_id, sku)
            return
        if sale is None:
            # tombstone: a create for this order arriving later is skipped
            logger.warning("[WORKER] order %s sku=%s cancelled with no recorded sale; nothing restored", order_id, sku)
            return
        if not applied:
            return
        try:
            await self.ctx.marketplace.adjust_stock(pid, applied)
        except Exception:
            await self._release(row.id)
            raise
        logger.info("[WORKER] order %s sku=%s restored %d (stock %d -> %d)", order_id, sku, applied, current, current + applied)

    # ---------------------------
    # Level syncs
    # ---------------------------

    async def _set_marketplace_stock(self, job: SyncJob, mapping: ProductMapping, desired: int) -> None:
        desired = max(int(desired), 0)
        pid = mapping.marketplace_product_id
        current = await self.ctx.marketplace.get_stock(pid)
        delta = desired - current
        if delta:
            await self.ctx.marketplace.adjust_stock(pid, delta)
            logger.info("[WORKER] sku=%s marketplace stock %d -> %d", mapping.sku, current, desired)
        await self._record_sync(job, mapping.sku, PLATFORM_MARKETPLACE, desired, current, desired)

    async def sync_inventory_level(self, job: SyncJob) -> str:
        payload = job.payload
        sku = await self.ctx.mapping_lookup.resolve_sku_by_inventory_item_id(payload.get("inventory_item_id"))
        sku = sku or payload.get("sku")
        mapping = await self.ctx.mapping_lookup.find_active_by_sku(sku or "")
        if mapping is None:
            logger.warning("[WORKER] inventory item %s has no active mapping", payload.get("inventory_item_id"))
            return OUTCOME_NO_MAPPING
        available = payload.get("available")
        if available is None:
            return OUTCOME_SUCCESS
        await self._guarded(mapping, lambda: self._set_marketplace_stock(job, mapping, available))
        return OUTCOME_SUCCESS

    async def sync_product(self, job: SyncJob) -> str:
        synced = 0
        for update in job.payload.get("updates") or []:
            mapping = await self.ctx.mapping_lookup.find_active_by_sku(update.get("sku") or "")
            if mapping is None:
                logger.warning("[WORKER] product %s sku=%s no longer mapped", job.payload.get("product_id"), update.get("sku"))
                continue
            quantity = update.get("inventory_quantity")
            if quantity is None:
                continue
            await self._guarded(mapping, lambda: self._set_marketplace_stock(job, mapping, quantity))
            synced += 1
        return OUTCOME_SUCCESS if synced else OUTCOME_NO_MAPPING

    async def _push_storefront(self, job: SyncJob, mapping: ProductMapping) -> None:
        stock = max(await self.ctx.marketplace.get_stock(mapping.marketplace_product_id), 0)
        item_id = mapping.storefront_inventory_item_id
        previous = await self.ctx.storefront.get_inventory_level(item_id)
        if previous == stock:
            logger.info("[WORKER] sku=%s storefront already at %d; push skipped", mapping.sku, stock)
        else:
            await self.ctx.storefront.push_inventory_level(item_id, stock)
            logger.info("[WORKER] sku=%s storefront level %s -> %d", mapping.sku, previous, stock)
        await self._record_sync(job, mapping.sku, PLATFORM_STOREFRONT, stock, previous, stock)

    async def sync_storefront_stock(self, job: SyncJob) -> str:
        pushed = 0
        for sku in job.payload.get("skus") or []:
            mapping = await self.ctx.mapping_lookup.find_active_by_sku(normalize_sku(sku))
            if mapping is None:
                logger.warning("[WORKER] sku=%s no longer mapped; storefront not updated", sku)
                continue
            await self._guarded(mapping, lambda: self._push_storefront(job, mapping))
            pushed += 1
        return OUTCOME_SUCCESS if pushed else OUTCOME_NO_MAPPING
