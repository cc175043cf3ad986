"""Drive the wallet-by-wallet valuation loop for the configured analysis window."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable

import duckdb

from whaletrace.analysis.checkpoint import PROGRESS_LOG_EVERY, SNAPSHOT_EVERY, CheckpointManager
from whaletrace.analysis.valuation import ValuationEngine
from whaletrace.chain.blocks import BlockResolver
from whaletrace.chain.gateway import ProviderGateway
from whaletrace.config import AnalysisWindowConfig, Settings, get_settings
from whaletrace.errors import Limited, Ok, PersistenceConflict, RateLimited, capture
from whaletrace.models.schema import AnalysisCheckpoint, CandidateWallet, ResolvedWindow, RunReport
from whaletrace.scoring.export import export_analysis_snapshot
from whaletrace.storage.database import count_pending, mark_analyzed, pending_wallets, save_analysis

logger = logging.getLogger(__name__)


class AnalysisRunner:
    """One bounded batch of wallet analyses for a single window.

    Window resolution failures abort before any wallet work. Per wallet,
    a rate limit is retried with a fixed back-off up to ``max_attempts``;
    any other failure is recorded on the checkpoint and the loop moves on.
    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        gateway: ProviderGateway,
        window_config: AnalysisWindowConfig | None = None,
        checkpoints: CheckpointManager | None = None,
        engine: ValuationEngine | None = None,
        settings: Settings | None = None,
        snapshot_path: Path | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = settings or get_settings()
        self.conn = conn
        self.gateway = gateway
        self.window_config = window_config or settings.analysis_window()
        self.checkpoints = checkpoints or CheckpointManager(settings.progress_path)
        self.engine = engine or ValuationEngine(gateway, token_limit=settings.token_limit)
        self.batch_size = settings.batch_size
        self.max_attempts = max(1, settings.max_attempts)
        self.backoff_seconds = settings.rate_limit_backoff_seconds
        self.snapshot_path = snapshot_path or settings.snapshot_path
        self._sleep = sleep

    async def run(self, stop: asyncio.Event | None = None) -> RunReport:
        try:
            window = await BlockResolver(self.gateway).resolve(self.window_config)
        except RateLimited as exc:
            logger.error("Rate limited by %s while resolving the analysis window", exc.provider)
            return RunReport(status="rate_limited", rate_limit_provider=exc.provider)
        logger.info(
            "Using window %s -> %s (blocks #%d..#%d)",
            window.t0.isoformat(), window.t1.isoformat(), window.t0_block, window.t1_block,
        )

        cp = self._open_checkpoint(window.window_key)
        wallets = pending_wallets(self.conn, after_id=cp.last_processed_wallet_id, limit=self.batch_size)
        logger.info("Wallet queue = %d (of %d)", len(wallets), cp.total_wallets)

        processed = 0
        failed = 0
        try:
            for wallet in wallets:
                if stop is not None and stop.is_set():
                    return self._cancelled(cp, window, processed, failed)
                stored = await self._process(wallet, window, cp, stop)
                if stored is None:
                    return self._cancelled(cp, window, processed, failed)
                if stored:
                    processed += 1
                else:
                    failed += 1
        except Exception as exc:
            self.checkpoints.mark_aborted(cp, f"{type(exc).__name__}: {exc}")
            raise

        remaining = count_pending(self.conn, after_id=cp.last_processed_wallet_id)
        if remaining == 0:
            self.checkpoints.mark_completed(cp)
        else:
            self.checkpoints.save(cp)
            logger.info("Batch finished, %d wallets left for the next run", remaining)
        self._export(window)
        return RunReport(
            status="completed",
            window_key=window.window_key,
            processed=processed,
            failed=failed,
            remaining=remaining,
        )

    def _open_checkpoint(self, window_key: str) -> AnalysisCheckpoint:
        cp = self.checkpoints.load(window_key)
        if cp is None:
            cp = self.checkpoints.create(count_pending(self.conn), window_key)
            self.checkpoints.save(cp)
        elif cp.completed and count_pending(self.conn, after_id=cp.last_processed_wallet_id):
            # New candidates arrived after the window was completed
            cp.completed = False
            cp.state = "running"
            cp.total_wallets = cp.processed_count + count_pending(self.conn, after_id=cp.last_processed_wallet_id)
            self.checkpoints.save(cp)
        return cp

    def _cancelled(self, cp: AnalysisCheckpoint, window: ResolvedWindow, processed: int, failed: int) -> RunReport:
        self.checkpoints.save(cp)
        logger.info("Analysis cancelled after %d wallets", processed)
        return RunReport(
            status="cancelled",
            window_key=window.window_key,
            processed=processed,
            failed=failed,
            remaining=count_pending(self.conn, after_id=cp.last_processed_wallet_id),
        )

    async def _process(
        self,
        wallet: CandidateWallet,
        window: ResolvedWindow,
        cp: AnalysisCheckpoint,
        stop: asyncio.Event | None = None,
    ) -> bool | None:
        """Analyse and persist one wallet.

        Returns True when it was stored, False when it failed, and None when
        the stop signal arrived during a rate-limit back-off.
        """
        for attempt in range(1, self.max_attempts + 1):
            logger.info("Processing wallet %s (id=%s, attempt=%d)", wallet.address, wallet.id, attempt)
            outcome = await capture(self.engine.analyze_wallet(wallet, window))

            if isinstance(outcome, Ok):
                try:
                    save_analysis(self.conn, outcome.value)
                except PersistenceConflict:
                    logger.info("Wallet %s already analysed for this window", wallet.address)
                    mark_analyzed(self.conn, wallet.id)
                self.checkpoints.mark_running(cp, wallet.id, wallet.address)
                self._after_wallet(cp, window)
                return True

            if isinstance(outcome, Limited):
                self.checkpoints.mark_rate_limited(cp, outcome.provider, self.backoff_seconds)
                if attempt < self.max_attempts:
                    logger.warning(
                        "Rate limit (%s). Retry %d/%d in %.0fs",
                        outcome.provider, attempt, self.max_attempts, self.backoff_seconds,
                    )
                    if await self._backoff(stop):
                        logger.info("Stop requested during rate-limit back-off at wallet %s", wallet.address)
                        return None
                    continue
                self.checkpoints.mark_retries_exhausted(
                    cp, f"Rate limited ({outcome.provider}) at wallet {wallet.id} after {attempt} attempts"
                )
                return False

            logger.error("Wallet processing failed for %s: %s", wallet.address, outcome.error)
            self.checkpoints.record_error(cp, f"Error at wallet {wallet.id}: {outcome.error}")
            return False
        return False

    async def _backoff(self, stop: asyncio.Event | None) -> bool:
        """Wait out the back-off, waking early on stop. Returns True when stopped."""
        if stop is None:
            await self._sleep(self.backoff_seconds)
            return False
        if stop.is_set():
            return True

        sleeper = asyncio.ensure_future(self._sleep(self.backoff_seconds))
        stopper = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()
        return stop.is_set()

    def _after_wallet(self, cp: AnalysisCheckpoint, window: ResolvedWindow) -> None:
        if cp.processed_count % PROGRESS_LOG_EVERY == 0:
            self.checkpoints.log_progress(cp)
        if cp.processed_count % SNAPSHOT_EVERY == 0:
            self._export(window)

    def _export(self, window: ResolvedWindow) -> None:
        try:
            export_analysis_snapshot(
                self.conn, self.snapshot_path, t0_block=window.t0_block, t1_block=window.t1_block
            )
        except (OSError, duckdb.Error) as exc:
            logger.error("Snapshot export failed: %s", exc)
