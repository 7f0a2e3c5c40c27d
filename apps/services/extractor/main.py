#!/usr/bin/env python
"""
Product extractor CLI.

Usage:
    python -m apps.services.extractor.main                        # resume or ingest, 100 items
    python -m apps.services.extractor.main -b 10 -c 3 -l 500      # 3 workers, batches of 10
    python -m apps.services.extractor.main --vendor superdrug     # only this vendor's ledger/input
    python -m apps.services.extractor.main --update --vendor superdrug --update-fields price,stock_status --stale-days 7

Exit codes:
    0  normal completion (including "nothing to do")
    1  unrecoverable startup error (credentials, malformed ledger, mixed vendors)
"""

import argparse
import asyncio
import logging
import signal
import sys
import time
from typing import Any, Dict, List, Optional, Set
from urllib.parse import urlparse

from dotenv import load_dotenv

from apps.services.extractor.automation import LLMClient, PlaywrightBackend
from apps.services.extractor.cache_manager import get_cache_manager
from apps.services.extractor.config import ExtractorConfig, get_config, load_vendor_registry
from apps.services.extractor.coordinator import Coordinator, RunOptions
from apps.services.extractor.error_log import configure_event_log, get_log_stats, log_error, log_error_with_details
from apps.services.extractor.extraction_engine import ExtractionEngine
from apps.services.extractor.input_manager import InputManager
from apps.services.extractor.ledger import LedgerManager
from apps.services.extractor.output_manager import OutputManager
from apps.services.extractor.selector_learning import SelectorLearningEngine
from apps.services.extractor.selector_store import SelectorStore
from apps.services.extractor.session_manager import SessionManager
from apps.services.extractor.strategies import StrategyRegistry
from apps.services.extractor.update_manager import UpdateManager

logger = logging.getLogger(__name__)

LOCAL_HOSTS = {"localhost", "127.0.0.1"}

# Shutdown tasks started from signal handlers, held until they finish
_shutdown_tasks: Set[asyncio.Task] = set()


def split_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value}")
    return number


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Extract product data from vendor product pages")
    parser.add_argument("--batch", "-b", type=positive_int, default=20, help="Items per batch (default: 20)")
    parser.add_argument("--batches", "-c", type=positive_int, default=1, help="Concurrent workers (default: 1)")
    parser.add_argument("--limit", "-l", type=positive_int, default=100, help="Max items this run (default: 100)")
    parser.add_argument("--vendor", type=split_list, default=[], help="Comma-separated vendor filter")
    parser.add_argument("--update", action="store_true", help="Re-check existing products (update mode)")
    parser.add_argument("--update-fields", type=split_list, default=None, help="Comma-separated fields to refresh")
    parser.add_argument("--update-key", default=None, help="Identity key for update-mode merging")
    parser.add_argument("--stale-days", type=non_negative_int, default=None, help="Only re-check items older than N days")
    return parser.parse_args(argv)


def check_llm_credentials(config: ExtractorConfig) -> Optional[str]:
    """Error message when the model endpoint needs a key that is not configured."""
    if config.llm_api_key:
        return None
    host = (urlparse(config.llm_url).hostname or "").lower()
    if host in LOCAL_HOSTS:
        return None
    return f"LLM_API_KEY is required for model endpoint {config.llm_url}"


def build_services(config: ExtractorConfig) -> Dict[str, Any]:
    """Wire the per-process singletons."""
    registry = load_vendor_registry(config.data_dir)
    cache_manager = get_cache_manager()
    strategies = StrategyRegistry()
    selector_store = SelectorStore(config.selector_store_path, config.max_selectors_per_field)
    learning = SelectorLearningEngine(selector_store, strategies)
    engine = ExtractionEngine(
        selector_store,
        strategies=strategies,
        learning=learning,
        cache_manager=cache_manager,
        url_cache_max_age_hours=config.url_cache_max_age_hours,
        disable_url_cache=config.disable_url_cache,
        smart_cache_freshness_days=config.smart_cache_freshness_days,
    )
    llm_client = LLMClient(
        llm_url=config.llm_url,
        llm_model=config.llm_model,
        api_key=config.llm_api_key,
        timeout_seconds=config.llm_timeout,
    )
    backend = PlaywrightBackend(config, llm_client)
    sessions = SessionManager(backend, config)
    ledgers = LedgerManager(config.processing_dir)
    outputs = OutputManager(config.output_dir, config.max_items_per_file)
    coordinator = Coordinator(
        sessions,
        engine,
        ledgers,
        outputs,
        learning=learning,
        input_manager=InputManager(config.input_dir, ledgers, registry.get("domain_exclusions")),
        update_manager=UpdateManager(outputs, ledgers, registry.get("update_defaults")),
    )
    return {
        "cache_manager": cache_manager,
        "learning": learning,
        "backend": backend,
        "sessions": sessions,
        "coordinator": coordinator,
    }


def format_duration(seconds: float) -> str:
    if seconds >= 60:
        return f"{int(seconds // 60)}m {seconds % 60:.2f}s"
    return f"{seconds:.2f}s"


def print_summary(services: Dict[str, Any], started: float):
    print()
    print("=" * 60)
    print(f"Total duration: {format_duration(time.monotonic() - started)}")

    print("\nCache Performance Summary:")
    for name, stats in services["cache_manager"].get_stats().items():
        print(f"  {name}: {stats['size']}/{stats['max_size']} entries (~{stats['hit_rate'] * 100:.1f}% hit rate)")

    learning_stats = services["learning"].get_stats()
    print("\nSelector Learning Summary:")
    print(f"  Active learning task: {'Yes' if learning_stats['is_active'] else 'No'}")
    print(f"  Vendors with pending fields: {learning_stats['pending_vendors']}")
    print(f"  Total pending fields: {learning_stats['total_pending_fields']}")

    log_stats = get_log_stats()
    print("\nLogging Summary:")
    print(f"  Log file exists: {'Yes' if log_stats['exists'] else 'No'}")
    if log_stats["exists"]:
        print(f"  Log entries: {log_stats['entries']}")
        print(f"  Log file size: {log_stats['size'] / 1024:.2f} KB")

    pool = services["sessions"].get_pool_stats()
    print("\nSession Pool:")
    print(f"  Pooled: {pool['pool_size']}, used: {pool['used_sessions']}, available: {pool['available_sessions']}")
    print("=" * 60)


def _shutdown_done(task: asyncio.Task):
    _shutdown_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"[Main] Graceful shutdown failed: {error}")
        log_error_with_details("graceful_shutdown_failed", error)


def start_shutdown(sessions: SessionManager, signal_name: str) -> asyncio.Task:
    task = asyncio.ensure_future(sessions.graceful_shutdown(signal_name))
    _shutdown_tasks.add(task)
    task.add_done_callback(_shutdown_done)
    return task


def install_signal_handlers(sessions: SessionManager):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, start_shutdown, sessions, sig.name)
        except NotImplementedError:
            logger.debug(f"[Main] Signal handlers unsupported for {sig.name}")


async def run(args: argparse.Namespace, config: ExtractorConfig, services: Dict[str, Any]) -> Dict[str, Any]:
    install_signal_handlers(services["sessions"])
    concurrency = min(config.max_batch, config.max_concurrent_batches or args.batches)
    limit = config.total_limit if config.total_limit is not None else args.limit
    options = RunOptions(
        batch_size=args.batch,
        concurrency=concurrency,
        limit=limit,
        vendors=args.vendor,
        update=args.update,
        update_fields=args.update_fields,
        update_key=args.update_key,
        stale_days=args.stale_days,
    )
    logger.info(
        f"[Main] Configuration: batch={options.batch_size}, concurrent={concurrency}, limit={limit}"
        f"{', mode=update' if args.update else ''}{', vendors=' + ','.join(args.vendor) if args.vendor else ''}"
    )
    try:
        return await services["coordinator"].run(options)
    finally:
        await services["learning"].wait_for_completion()
        await services["backend"].shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    configure_event_log(config.logs_dir)

    print("=" * 60)
    print("Product Extractor")
    print("input -> processing -> output")
    print("=" * 60)

    credential_error = check_llm_credentials(config)
    if credential_error:
        logger.error(f"[Main] {credential_error}")
        log_error("scrapper_error", error=credential_error)
        return 1

    started = time.monotonic()
    services = build_services(config)
    exit_code = 0
    try:
        result = asyncio.run(run(args, config, services))
        logger.info(f"[Main] Run finished: {result.get('status')} ({result.get('processed', 0)} items processed)")
    except Exception as e:
        logger.error(f"[Main] Error: {e}")
        log_error("scrapper_error", error=str(e))
        exit_code = 1
    finally:
        print_summary(services, started)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
