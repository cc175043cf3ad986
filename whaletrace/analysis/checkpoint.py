"""File-backed analysis checkpoint (progress.json + progress.txt) tagged with the window key."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import ValidationError

from whaletrace.models.schema import AnalysisCheckpoint

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 10
SNAPSHOT_EVERY = 50


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _summary(cp: AnalysisCheckpoint) -> str:
    status = {
        "completed": "COMPLETED",
        "aborted": "ABORTED",
        "rate_limited": "RATE LIMITED",
    }.get(cp.state, "RUNNING")
    lines = [
        "=== whaletrace analysis progress ===",
        f"Window: {cp.window_key}",
        f"Last Update: {cp.last_checkpoint:%Y-%m-%d %H:%M:%S} UTC",
        f"Total Wallets: {cp.total_wallets}",
        f"Processed: {cp.processed_count}",
        f"Remaining: {max(0, cp.total_wallets - cp.processed_count)}",
        f"Last Wallet Id: {cp.last_processed_wallet_id}",
        f"Last Wallet Address: {cp.last_processed_address}",
        f"Status: {status}",
    ]
    if cp.rate_limit_hit and cp.rate_limit_provider:
        lines.append(f"Rate Limit: {cp.rate_limit_provider} until {cp.next_retry_after:%Y-%m-%d %H:%M:%S} UTC")
    if cp.error_message:
        lines.append(f"Error: {cp.error_message}")
    return "\n".join(lines) + "\n"


class CheckpointManager:
    """Load, persist and transition one AnalysisCheckpoint.

    progress.json is the record; progress.txt is a mirror rendered from it.
    Saves swap the mirror in first and the JSON last, and every load
    re-renders the mirror from the JSON, so an interrupted save never
    leaves the two disagreeing past the next load.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.text_path = self.path.with_suffix(".txt")

    def _read(self) -> AnalysisCheckpoint | None:
        if not self.path.exists():
            return None
        try:
            return AnalysisCheckpoint.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as exc:
            logger.warning("Checkpoint %s could not be parsed: %s", self.path, exc)
            return None

    def load(self, window_key: str) -> AnalysisCheckpoint | None:
        if not self.path.exists():
            logger.info("No checkpoint at %s, starting from scratch", self.path)
            return None
        cp = self._read()
        if cp is None:
            logger.warning("Resetting unreadable checkpoint %s", self.path)
            self.clear()
            return None

        if cp.window_key != window_key:
            logger.info("Stale checkpoint for window %s (expected %s), resetting", cp.window_key, window_key)
            self.clear()
            return None

        self._write_mirror(cp)
        logger.info(
            "Checkpoint loaded: %d/%d wallets processed, last wallet id %d",
            cp.processed_count, cp.total_wallets, cp.last_processed_wallet_id,
        )
        return cp

    def describe(self) -> str | None:
        """Text summary rendered from progress.json, or None when there is no readable record."""
        cp = self._read()
        return _summary(cp) if cp is not None else None

    def create(self, total_wallets: int, window_key: str) -> AnalysisCheckpoint:
        now = _now()
        cp = AnalysisCheckpoint(
            total_wallets=total_wallets,
            window_key=window_key,
            started_at=now,
            last_checkpoint=now,
        )
        logger.info("New analysis started: %d wallets queued for window %s", total_wallets, window_key)
        return cp

    def save(self, cp: AnalysisCheckpoint) -> None:
        cp.last_checkpoint = _now()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._write_mirror(cp)
        json_tmp = self.path.with_name(self.path.name + ".tmp")
        json_tmp.write_text(cp.model_dump_json(indent=2), encoding="utf-8")
        os.replace(json_tmp, self.path)
        logger.debug("Checkpoint saved: %d/%d", cp.processed_count, cp.total_wallets)

    def _write_mirror(self, cp: AnalysisCheckpoint) -> None:
        text_tmp = self.text_path.with_name(self.text_path.name + ".tmp")
        text_tmp.write_text(_summary(cp), encoding="utf-8")
        os.replace(text_tmp, self.text_path)

    def mark_running(self, cp: AnalysisCheckpoint, wallet_id: int, address: str) -> None:
        """Record one more processed wallet and clear any rate-limit or error state."""
        cp.last_processed_wallet_id = wallet_id
        cp.last_processed_address = address
        cp.processed_count += 1
        cp.state = "running"
        cp.rate_limit_hit = False
        cp.rate_limit_provider = None
        cp.next_retry_after = None
        cp.error_message = None
        self.save(cp)

    def mark_rate_limited(self, cp: AnalysisCheckpoint, provider: str, retry_after: float) -> None:
        cp.state = "rate_limited"
        cp.rate_limit_hit = True
        cp.rate_limit_provider = provider
        cp.next_retry_after = _now() + timedelta(seconds=retry_after)
        self.save(cp)
        logger.warning("Rate limit from %s, next retry at %s", provider, cp.next_retry_after.isoformat())

    def record_error(self, cp: AnalysisCheckpoint, message: str) -> None:
        cp.error_message = message
        self.save(cp)

    def mark_retries_exhausted(self, cp: AnalysisCheckpoint, message: str) -> None:
        """The wallet is given up on; the run itself carries on."""
        cp.state = "running"
        cp.rate_limit_hit = False
        cp.rate_limit_provider = None
        cp.next_retry_after = None
        cp.error_message = message
        self.save(cp)
        logger.warning("%s", message)

    def mark_completed(self, cp: AnalysisCheckpoint) -> None:
        cp.state = "completed"
        cp.completed = True
        cp.rate_limit_hit = False
        self.save(cp)
        logger.info("Analysis completed: %d/%d wallets processed", cp.processed_count, cp.total_wallets)

    def mark_aborted(self, cp: AnalysisCheckpoint, error: str) -> None:
        cp.state = "aborted"
        cp.error_message = error
        self.save(cp)
        logger.error("Analysis aborted: %s", error)

    def clear(self) -> None:
        for path in (self.path, self.text_path):
            path.unlink(missing_ok=True)
        logger.info("Checkpoint cleared: %s", self.path)

    def log_progress(self, cp: AnalysisCheckpoint) -> None:
        if cp.total_wallets <= 0:
            logger.info("Progress: no wallets queued yet")
            return
        if cp.processed_count <= 0:
            logger.info("Progress: 0/%d processed (0%%)", cp.total_wallets)
            return

        percentage = cp.processed_count / cp.total_wallets * 100
        elapsed = (_now() - cp.started_at).total_seconds()
        per_wallet = elapsed / cp.processed_count
        remaining = max(0.0, per_wallet * cp.total_wallets - elapsed)
        logger.info(
            "Progress: %d/%d (%.1f%%) | ETA ~%s",
            cp.processed_count, cp.total_wallets, percentage, timedelta(seconds=int(remaining)),
        )
