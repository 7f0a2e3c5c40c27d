"""
extractor/coordinator.py

Work/Output Coordinator - drives one ledger through N browser workers.

Flow:
1. Update-mode preparation (optional), then the newest active ledger or a
   fresh one built from input/
2. Items are chunked into batches; workers claim the next unclaimed batch
   from a shared counter (work stealing)
3. Each batch runs sequentially on one page; results go to the worker's
   buffer, which is flushed to the output file after every batch
4. Flushing removes succeeded URLs from the ledger and stamps errors onto
   the ones that failed, so an interrupted run resumes where it stopped

Recovery ladder per item:
- navigation terminated -> rotate, navigate again
- anti-bot page         -> rotate, navigate, extract again (retried)
- core fields missing while CSS was blocked -> allow CSS, reload (retried_css)
- session-error pattern -> rotate, navigate, extract again (retried)
- recoverable bucket error -> rotate and retry the whole item once
  (items with variants get up to MAX_VARIANT_ATTEMPTS re-runs)
- anything else -> error record, the item stays in the ledger
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from apps.services.extractor.error_log import get_event_log
from apps.services.extractor.errors import (
    ExtractorError,
    NoInputFiles,
    SessionTerminated,
    ShutdownInProgress,
    error_message,
    is_recoverable_bucket_error,
    is_session_error,
)
from apps.services.extractor.extraction_engine import ExtractionEngine, has_core_data
from apps.services.extractor.input_manager import InputManager
from apps.services.extractor.ledger import LedgerManager
from apps.services.extractor.navigation import is_blocked, navigate_with_retry
from apps.services.extractor.output_manager import OutputManager
from apps.services.extractor.persistence import read_json, utc_now_iso
from apps.services.extractor.selector_learning import SelectorLearningEngine
from apps.services.extractor.session_manager import SessionManager, WorkerSession
from apps.services.extractor.update_manager import UpdateContext, UpdateManager, merge_snapshots

logger = logging.getLogger(__name__)

MAX_VARIANT_ATTEMPTS = 3


def chunk(items: List[Any], size: int) -> List[List[Any]]:
    size = max(1, int(size))
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class RunOptions:
    """One CLI invocation."""
    batch_size: int = 20
    concurrency: int = 1
    limit: Optional[int] = 100
    vendors: List[str] = field(default_factory=list)
    update: bool = False
    update_fields: Optional[List[str]] = None
    update_key: Optional[str] = None
    stale_days: Optional[int] = None


class Coordinator:
    """Owns the per-run wiring between sessions, extraction and the ledger/output files."""

    def __init__(
        self,
        session_manager: SessionManager,
        engine: ExtractionEngine,
        ledger_manager: LedgerManager,
        output_manager: OutputManager,
        learning: Optional[SelectorLearningEngine] = None,
        input_manager: Optional[InputManager] = None,
        update_manager: Optional[UpdateManager] = None,
    ):
        self.sessions = session_manager
        self.engine = engine
        self.ledgers = ledger_manager
        self.outputs = output_manager
        self.learning = learning
        self.inputs = input_manager
        self.updates = update_manager
        self.update_ctx: Optional[UpdateContext] = None

    # Flush

    async def append_batch_to_output(
        self,
        output_path: Optional[Path],
        meta: Dict[str, Any],
        items: List[Dict[str, Any]],
        ledger_path: Optional[Path],
    ) -> Optional[Dict[str, Any]]:
        """
        Flush callback for WorkerSession buffers.

        Success records go to the output (or update) file; their URLs, and the
        URLs of their variants, leave the ledger. Error records stay in the
        ledger with error details.
        """
        successes = [item for item in items if item and not item.get("error")]
        errors = [item for item in items if item and item.get("error")]

        ledger_data: Dict[str, Any] = {}
        if ledger_path:
            try:
                ledger_data = read_json(ledger_path, default={}) or {}
            except (OSError, ValueError) as e:
                logger.warning(f"[Coordinator] Could not read ledger metadata: {e}")
        mode = ledger_data.get("mode") or meta.get("mode")
        vendor = ledger_data.get("vendor") or meta.get("vendor")
        output_meta = {"vendor": vendor, "source_file": meta.get("source_file")}

        result = None
        if successes and output_path:
            if mode == "update":
                ctx = self.update_ctx
                key = ledger_data.get("update_key") or (ctx.update_key if ctx else None)
                fields = ledger_data.get("update_fields") or (ctx.update_fields if ctx else None)
                merged = merge_snapshots(successes, key, fields, ctx.baseline if ctx else None)
                logger.info(f"[Coordinator] Appending {len(merged)} updated snapshots to output")
                result = await self.outputs.append_items_to_update_file(output_path, merged, output_meta)
            else:
                logger.info(f"[Coordinator] Appending {len(successes)} successful items to output")
                result = await self.outputs.append_items(output_path, successes, output_meta)

        if ledger_path and Path(ledger_path).exists():
            if errors:
                await self.ledgers.update_errors(ledger_path, errors)
                logger.info(f"[Coordinator] {len(errors)} URLs failed extraction (errors recorded in processing file)")
            if successes:
                urls = []
                for item in successes:
                    urls.append(item.get("source_url"))
                    urls.extend(variant.get("source_url") for variant in item.get("variants") or [])
                await self.ledgers.remove_urls(ledger_path, urls)
                logger.info(f"[Coordinator] +{len(successes)} items successfully processed and recorded")
        return result

    # Extraction

    async def extract_with_recovery(self, worker: WorkerSession, item: Dict[str, Any], page=None) -> Dict[str, Any]:
        """
        Navigate and extract one work item, rotating the session when needed.

        Raises:
            ShutdownInProgress: shutdown started
            Exception: the error survived one recovery attempt
        """
        sessions = self.sessions
        url = item["url"]
        worker_id = worker.worker_id
        page = page or await sessions.get_safe_page(worker)

        try:
            await navigate_with_retry(page, url, worker_id, sessions)
        except SessionTerminated as e:
            logger.info(f"[Coordinator {worker_id}] Session terminated during navigation, rotating...")
            get_event_log().error("navigation_termination", source_url=url, error=str(e))
            sessions.check_shutdown()
            await worker.rotate("navigation_terminated")
            page = await sessions.get_safe_page(worker)
            await navigate_with_retry(page, url, worker_id, sessions)
        sessions.check_shutdown()

        try:
            start = time.monotonic()
            result = await self.engine.extract(page, item, self.update_ctx)
            logger.info(f"[Coordinator {worker_id}] Extracted product in {int((time.monotonic() - start) * 1000)}ms")

            if await is_blocked(page, result):
                get_event_log().warning(
                    "blocked_detected_after_extract",
                    product_id=result.get("product_id"),
                    vendor=result.get("vendor"),
                    source_url=url,
                )
                sessions.check_shutdown()
                await worker.rotate("blocked_after_extract")
                page = await sessions.get_safe_page(worker)
                await navigate_with_retry(page, url, worker_id, sessions)
                retry = await self.engine.extract(page, item, self.update_ctx)
                get_event_log().info("blocked_retry_success", product_id=retry.get("product_id"), vendor=retry.get("vendor"))
                return {**retry, "retried": True}

            policy = sessions.page_policy(page)
            if not has_core_data(result) and policy is not None and policy.block_styles and not result.get("retried_css"):
                logger.info(f"[Coordinator {worker_id}] Missing core fields; retrying with CSS enabled...")
                await sessions.configure_page_performance(worker, page, block_styles=False)
                await navigate_with_retry(page, url, worker_id, sessions)
                retry = await self.engine.extract(page, item, self.update_ctx)
                return {**retry, "retried_css": True}
            return result
        except ShutdownInProgress:
            raise
        except Exception as e:
            if not is_session_error(e):
                raise
            get_event_log().error("session_restart_after_error", source_url=url, error=error_message(e))
            sessions.check_shutdown()
            await worker.rotate("extract_error")
            page = await sessions.get_safe_page(worker)
            await navigate_with_retry(page, url, worker_id, sessions)
            retry = await self.engine.extract(page, item, self.update_ctx)
            return {**retry, "retried": True}

    async def extract_item(self, worker: WorkerSession, item: Dict[str, Any], page=None) -> Dict[str, Any]:
        """Main item plus its variants, in order, folded into one record."""
        variants = item.get("variants") or []
        if not variants:
            return await self.extract_with_recovery(worker, item, page)

        logger.info(f"[Coordinator {worker.worker_id}] Found {len(variants)} variants, extracting main + variants...")
        main = await self.extract_with_recovery(worker, item, page)
        extracted = []
        for position, variant in enumerate(variants, start=1):
            self.sessions.check_shutdown()
            logger.info(f"[Coordinator {worker.worker_id}] Extracting variant {position}/{len(variants)}")
            variant_item = {
                "url": variant["url"],
                "vendor": item.get("vendor"),
                "image_url": variant.get("image_url"),
                "sku": variant.get("sku_id"),
                "is_variant": True,
                "variant_of": item["url"],
            }
            extracted.append(await self.extract_with_recovery(worker, variant_item))
        return {**main, "variants": extracted, "variant_count": len(extracted)}

    def _trigger_learning(self, worker: WorkerSession, item: Dict[str, Any], result: Dict[str, Any]):
        if self.learning is None:
            return
        try:
            page = worker.session.page
            self.learning.process_pending(page, item.get("vendor"), result)
        except Exception as e:
            logger.info(f"[Coordinator {worker.worker_id}] Selector learning failed: {e}")

    def _record_error(self, worker: WorkerSession, item: Dict[str, Any], error: BaseException):
        message = error_message(error)
        logger.error(f"[Coordinator {worker.worker_id}] Error for URL {item.get('url')}: {message}")
        logger.info(f"[Coordinator {worker.worker_id}] URL remains in processing file for future retry: {item.get('url')}")
        get_event_log().error("extract_error", url=item.get("url"), error=message)
        worker.add_item_to_buffer({
            "product_id": item.get("sku") or None,
            "vendor": item.get("vendor"),
            "source_url": item.get("url"),
            "extracted_at": utc_now_iso(),
            "error": message,
        })

    async def process_bucket(self, worker: WorkerSession, items: List[Dict[str, Any]]) -> int:
        """Extract a batch in order; returns how many items reached the buffer."""
        sessions = self.sessions
        worker_id = worker.worker_id
        processed = 0
        variant_attempts = 0
        index = 0

        while index < len(items):
            item = items[index]
            if sessions.is_shutting_down:
                break
            try:
                if self.learning is not None and self.learning.is_active:
                    await self.learning.wait_for_completion()
                page = await sessions.get_safe_page(worker)
                result = await self.extract_item(worker, item, page)
                worker.add_item_to_buffer(result)
                processed += 1
                variant_attempts = 0
                index += 1
                self._trigger_learning(worker, item, result)
                continue
            except ShutdownInProgress:
                logger.info(f"[Coordinator {worker_id}] Shutdown in progress, leaving {item.get('url')} in the ledger")
                break
            except Exception as e:
                failure = e

            if is_recoverable_bucket_error(failure):
                logger.info(f"[Coordinator {worker_id}] Detected session error ({error_message(failure)}), rotating...")
                try:
                    sessions.check_shutdown()
                    await worker.rotate("session_error")
                    page = await sessions.get_safe_page(worker)
                    if item.get("variants"):
                        if variant_attempts < MAX_VARIANT_ATTEMPTS:
                            variant_attempts += 1
                            logger.info(
                                f"[Coordinator {worker_id}] Retrying main product with variants after rotation "
                                f"(attempt {variant_attempts}/{MAX_VARIANT_ATTEMPTS})"
                            )
                            continue
                    else:
                        result = await self.extract_with_recovery(worker, item, page)
                        worker.add_item_to_buffer({**result, "retried": True})
                        processed += 1
                        variant_attempts = 0
                        index += 1
                        logger.info(f"[Coordinator {worker_id}] Successfully recovered after session rotation")
                        self._trigger_learning(worker, item, result)
                        continue
                except ShutdownInProgress:
                    logger.info(f"[Coordinator {worker_id}] Shutdown in progress, leaving {item.get('url')} in the ledger")
                    break
                except Exception as rotate_error:
                    logger.warning(f"[Coordinator {worker_id}] Session recovery failed: {error_message(rotate_error)}")

            self._record_error(worker, item, failure)
            processed += 1
            variant_attempts = 0
            index += 1
        return processed

    async def _safe_flush(self, worker: WorkerSession):
        try:
            await worker.flush_buffer()
        except Exception as e:
            logger.error(f"[Coordinator {worker.worker_id}] Buffer flush failed: {e}")
            get_event_log().error_with_details("buffer_flush_failed", e, worker_id=worker.worker_id)

    async def run_batch_job(
        self,
        items: List[Dict[str, Any]],
        batch_size: int,
        worker_count: int,
        output_path: Optional[Path] = None,
        source_file: Optional[str] = None,
        ledger_path: Optional[Path] = None,
    ) -> int:
        """Run items through worker_count workers; returns the number of items processed."""
        batches = chunk(items, batch_size)
        if not batches:
            return 0
        worker_count = max(1, min(worker_count, len(batches)))
        logger.info(f"[Coordinator] Processing {len(items)} items in {len(batches)} batches of up to {batch_size}")

        next_batch = 0
        workers = await self.sessions.create_worker_sessions(worker_count, self.append_batch_to_output)

        async def run_worker(worker: WorkerSession) -> int:
            nonlocal next_batch
            processed = 0
            try:
                while next_batch < len(batches):
                    if self.sessions.is_shutting_down:
                        break
                    index = next_batch
                    next_batch += 1
                    batch = batches[index]
                    logger.info(
                        f"[Coordinator {worker.worker_id}] Processing {len(batch)} urls in batch {index + 1}/{len(batches)}"
                    )
                    worker.register_buffer(output_path, source_file, ledger_path)
                    count = await self.process_bucket(worker, batch)
                    processed += count
                    await self._safe_flush(worker)
                    logger.info(
                        f"[Coordinator {worker.worker_id}] Finished batch {index + 1}/{len(batches)} (items: {count})"
                    )
            finally:
                await self._safe_flush(worker)
                logger.info(f"[Coordinator {worker.worker_id}] Closing session...")
                await worker.close()
            return processed

        results = await asyncio.gather(*(run_worker(worker) for worker in workers))
        return sum(results)

    # Run

    def _resolve_ledger(self, options: RunOptions) -> Optional[Dict[str, Any]]:
        vendors = options.vendors or None
        logger.info("[Coordinator] Checking for active processing files...")
        active = self.ledgers.find_active(vendors)
        if active is not None:
            return active

        if self.inputs is None:
            return None
        logger.info("[Coordinator] No active processing file found, checking input directory...")
        try:
            created = self.inputs.ingest(vendors)
        except NoInputFiles:
            logger.info("[Coordinator] No input files found; add JSON files to input/ to begin processing")
            return None
        logger.info(f"[Coordinator] Created processing file: {created.name}")
        active = self.ledgers.find_active(vendors)
        if active is None:
            raise ExtractorError("Failed to find newly created processing file")
        return active

    async def run(self, options: RunOptions) -> Dict[str, Any]:
        """
        Process the active ledger end to end.

        Raises:
            LedgerError: the ledger is unreadable or malformed
            ExtractorError: update mode without a vendor, or ingestion failures
        """
        try:
            if options.update:
                if self.updates is None:
                    raise ExtractorError("Update mode is not configured")
                vendor = options.vendors[0] if options.vendors else None
                self.update_ctx = self.updates.prepare_update_mode(
                    vendor, options.update_key, options.update_fields, options.stale_days,
                )

            active = self._resolve_ledger(options)
            if active is None:
                return {"status": "no_input", "processed": 0}

            data = self.ledgers.read(active["path"])
            vendor = data["vendor"]
            logger.info(f"[Coordinator] Processing active file: {active['name']} (vendor: {vendor})")

            update_mode = data.get("mode") == "update"
            if update_mode and self.update_ctx is None and self.updates is not None:
                self.update_ctx = self.updates.prepare_update_mode(
                    vendor, data.get("update_key"), data.get("update_fields"),
                )

            source_files = data.get("source_files") or []
            input_file_name = source_files[0] if source_files else active["name"]
            if update_mode:
                output_path = self.outputs.create_update_output_file(vendor, active["name"], input_file_name)
            else:
                output_path = self.outputs.create_output_file(vendor, active["name"], input_file_name)
            logger.info(f"[Coordinator] Output will be saved to: {output_path}")

            items = data["items"]
            if options.limit is not None:
                items = items[:max(0, options.limit)]
            logger.info(
                f"[Coordinator] {data.get('processed_count', 0)}/{data.get('total_count', 0)} items already processed"
            )

            processed = await self.run_batch_job(
                items, options.batch_size, options.concurrency, output_path, active["name"], active["path"],
            )

            self.ledgers.cleanup(active["path"])
            summary = self.outputs.get_vendor_summary(vendor)
            logger.info(
                f"[Coordinator] Vendor: {summary['vendor']}, Files: {summary['total_files']}, "
                f"Successful Items: {summary['total_items']}"
            )
            return {
                "status": "completed",
                "vendor": vendor,
                "ledger": active["name"],
                "output_path": str(output_path),
                "processed": processed,
                "summary": summary,
            }
        finally:
            if self.update_ctx is not None:
                self.update_ctx.baseline.close()
                self.update_ctx = None
