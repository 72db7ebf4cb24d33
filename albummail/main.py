"""
Complete album-to-mail delivery workflow
"""

import os
import logging
import time
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor, as_completed

from apscheduler.schedulers.blocking import BlockingScheduler

from .pipeline import (
    StateStore, DeliveryState, has_been_sent, mark_sent,
    resolve_album, list_assets, fetch_original, Asset,
    build_attachment, Attachment,
    pack_batches, send_batch, SendError, RecipientTarget
)

from .config import MainConfig, cron_trigger

@dataclass
class PreparedAsset:
    asset: Asset
    attachment: Attachment

@dataclass
class CycleResult:
    candidates: int=0
    sent_attachments: Dict[str, int]=field(default_factory=dict)
    sent_batches: Dict[str, int]=field(default_factory=dict)
    dry_run: bool=False
    elapsed_seconds: float=0.0

def select_candidates(assets: List[Asset], state: DeliveryState, recipients: List[str]) -> List[Asset]:
    """Images that at least one recipient has not received yet. Videos are ignored."""
    return [
        asset for asset in assets
        if asset.kind == "IMAGE"
        and any(not has_been_sent(state, asset.id, recipient) for recipient in recipients)
    ]

def _prepare_single(asset: Asset, immich_config, convert_config) -> PreparedAsset:
    original = fetch_original(asset.id, immich_config)
    attachment = build_attachment(asset, original, convert_config)
    return PreparedAsset(asset=asset, attachment=attachment)

def prepare_attachments(assets: List[Asset], immich_config, convert_config, max_workers: int=4) -> List[PreparedAsset]:
    """
    Download and convert assets in parallel.
    Results are returned in the same order as the input assets.
    Any failure cancels the remaining work and is re-raised.
    """
    logger = logging.getLogger(__name__)

    if not assets:
        return []

    results: List[Optional[PreparedAsset]] = [None] * len(assets)

    with ThreadPoolExecutor(max_workers=min(max_workers, len(assets))) as executor:
        future_to_index = {
            executor.submit(_prepare_single, asset, immich_config, convert_config): i
            for i, asset in enumerate(assets)
        }

        for future in as_completed(future_to_index):
            index = future_to_index[future]
            try:
                results[index] = future.result()
            except Exception as e:
                logger.error(f"Fetch/convert failed for asset {assets[index].id}: {e}")
                for pending in future_to_index:
                    pending.cancel()
                raise

    logger.info(f"Prepared {len(results)} attachments")
    return results

def deliver_to_recipient(recipient: RecipientTarget, prepared: List[PreparedAsset], state: DeliveryState,
                         store: StateStore, deliver_config, dry_run: bool=False) -> tuple[int, int]:
    """
    Pack and send everything the recipient has not received yet.

    Batches go out strictly in order. Only after the last batch succeeded are
    the assets marked as sent and the state persisted.
    Returns (attachments sent, batches sent).
    """
    logger = logging.getLogger(__name__)
    address = recipient.address

    unsent = [p for p in prepared if not has_been_sent(state, p.asset.id, address)]
    if not unsent:
        logger.debug(f"No new photos for {address}.")
        return 0, 0

    max_bytes, max_count = deliver_config.limits_for(recipient)
    batches = pack_batches([p.attachment for p in unsent], max_bytes, max_count)
    logger.info(f"Prepared {len(unsent)} files into {len(batches)} email batch(es) for {address}.")

    for index, batch in enumerate(batches):
        send_batch(address, batch, index, len(batches), deliver_config, dry_run=dry_run)

    if not dry_run:
        sent_at = datetime.now(timezone.utc).isoformat()
        for p in unsent:
            mark_sent(state, p.asset.id, address, sent_at)
        store.save(state)
        logger.debug(f"Recorded {len(unsent)} deliveries for {address}")

    return len(unsent), len(batches)

def run_cycle(config: Dict[str, Any], dry_run: Optional[bool]=None) -> CycleResult:
    """One full cycle: album -> assets -> candidates -> attachments -> per-recipient delivery."""
    logger = logging.getLogger(__name__)
    started = time.monotonic()

    dry_run = config["dry_run"] if dry_run is None else dry_run
    deliver_config = config["deliver"]
    immich_config = config["immich"]
    recipients = [r.address for r in deliver_config.recipients]
    result = CycleResult(dry_run=dry_run)

    if dry_run:
        logger.info("Dry run: no mail will be sent and delivery state will not be modified")

    # 1. Load delivery state
    store = StateStore(config["state"], read_only=dry_run)
    state = store.load(recipients)

    # 2&3. Resolve album and list its assets
    album_id = resolve_album(immich_config.album_name, immich_config)
    logger.info(f"Album resolved: {album_id}")
    assets = list_assets(album_id, immich_config)

    # 4. Filter to images unsent for at least one recipient
    candidates = select_candidates(assets, state, recipients)
    result.candidates = len(candidates)
    if not candidates:
        logger.info("No new photos to send for any recipient.")
        result.elapsed_seconds = time.monotonic() - started
        return result
    logger.info(f"Found {len(candidates)} assets needing delivery for at least one recipient.")

    # 5. Download + convert with bounded parallelism
    prepared = prepare_attachments(candidates, immich_config, config["convert"], max_workers=config.get("concurrency", 4))

    # 6. Deliver per recipient; a failed recipient does not stop the others
    failures: Dict[str, Exception] = {}
    for recipient in deliver_config.recipients:
        try:
            sent, batches = deliver_to_recipient(recipient, prepared, state, store, deliver_config, dry_run=dry_run)
        except SendError as e:
            logger.error(f"Delivery to {recipient.address} failed: {e}")
            failures[recipient.address] = e
            continue
        result.sent_attachments[recipient.address] = sent
        result.sent_batches[recipient.address] = batches

    result.elapsed_seconds = time.monotonic() - started
    if failures:
        raise SendError(f"Delivery failed for {len(failures)} recipient(s): {', '.join(failures)}") from next(iter(failures.values()))

    logger.info(f"Done in {result.elapsed_seconds:.1f}s.")
    return result

def setup_logging(level: str="info", log_dir: Optional[str]=None, verbose: bool=False):
    """Set up logging with appropriate verbosity level"""
    log_level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    handlers = [logging.StreamHandler()]
    log_file_path = None

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_file_path = os.path.join(log_dir, f"run-{date.today().isoformat()}.txt")
        file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    # Suppress INFO logs from noisy libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('PIL').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    return logging.getLogger(__name__), log_file_path

def _run_cycle_logged(config: Dict[str, Any], dry_run: Optional[bool]=None):
    """Scheduled cycles log failures and wait for the next tick."""
    logger = logging.getLogger(__name__)
    try:
        run_cycle(config, dry_run=dry_run)
    except Exception as e:
        logger.error(f"Run failed: {e}", exc_info=True)

def run_scheduled(config: Dict[str, Any], dry_run: Optional[bool]=None, scheduler: Optional[BlockingScheduler]=None):
    """
    Run a cycle now and then on every tick of the cron schedule.
    A single job with max_instances=1 means ticks never overlap a running cycle.
    """
    logger = logging.getLogger(__name__)
    tz = config.get("timezone")
    trigger = cron_trigger(config["schedule"], timezone=tz)
    if scheduler is None:
        scheduler = BlockingScheduler(timezone=tz) if tz else BlockingScheduler()

    scheduler.add_job(
        _run_cycle_logged,
        trigger=trigger,
        args=[config, dry_run],
        id="album-delivery",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=None,
        next_run_time=datetime.now(timezone.utc)
    )
    logger.info(f"Starting scheduler with CRON \"{config['schedule']}\" (TZ={tz or 'system'})")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")

def run_pipeline(config: MainConfig, verbose: bool=False, dry_run: bool=False, once: bool=False) -> Optional[CycleResult]:
    """Main entry of the album mailer"""
    pipeline_config = config.get_pipeline_configs()
    logger, _ = setup_logging(
        level=pipeline_config["log_level"],
        log_dir=pipeline_config["log_dir"],
        verbose=verbose
    )
    logger.info("Configuration loaded successfully")

    effective_dry_run = dry_run or pipeline_config["dry_run"]

    try:
        if pipeline_config["schedule"] and not once:
            run_scheduled(pipeline_config, dry_run=effective_dry_run)
            return None

        try:
            return run_cycle(pipeline_config, dry_run=effective_dry_run)
        except Exception as e:
            logger.error(f"Run failed: {e}", exc_info=True)
            raise
    finally:
        for handler in logging.getLogger().handlers:
            handler.flush()


if __name__ == "__main__":
    from .config import load_config
    run_pipeline(load_config(os.environ.get("ALBUMMAIL_CONFIG")))
