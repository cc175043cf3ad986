import asyncio
import json
from datetime import datetime, timezone

from tests.conftest import T0, T1
from whaletrace.analysis.checkpoint import CheckpointManager
from whaletrace.analysis.runner import AnalysisRunner
from whaletrace.config import AnalysisWindowConfig
from whaletrace.errors import RateLimited, TransientFetchError
from whaletrace.models.schema import CandidateWallet, WalletAnalysis
from whaletrace.storage.database import count_pending, get_analyses, upsert_candidate


class ScriptedEngine:
    """Plays back a list of outcomes per wallet address; defaults to success."""

    def __init__(self, script: dict[str, list] | None = None, stop_after: asyncio.Event | None = None):
        self.script = script or {}
        self.calls: list[str] = []
        self.stop_after = stop_after

    async def analyze_wallet(self, wallet: CandidateWallet, window) -> WalletAnalysis:
        self.calls.append(wallet.address)
        if self.stop_after is not None:
            self.stop_after.set()
        outcomes = self.script.get(wallet.address)
        if outcomes:
            outcome = outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        return WalletAnalysis(
            wallet_id=wallet.id,
            wallet_address=wallet.address,
            t0_block=window.t0_block,
            t1_block=window.t1_block,
            t0_timestamp=window.t0,
            t1_timestamp=window.t1,
            value_t0_usd=100.0,
            value_t1_usd=100.0 + wallet.id,
            simple_return=wallet.id / 100,
            analyzed_at=datetime.now(timezone.utc),
        )


def _address(i: int) -> str:
    return f"0x{i:040x}"


def _seed(conn, count: int) -> None:
    for i in range(1, count + 1):
        upsert_candidate(conn, CandidateWallet(address=_address(i), detected_at_block=i))


def _runner(conn, gateway, settings, engine, sleeps=None):
    async def sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return AnalysisRunner(conn, gateway, settings=settings, engine=engine, sleep=sleep)


async def test_run_completes_and_exports(conn, gateway, settings):
    _seed(conn, 3)
    report = await _runner(conn, gateway, settings, ScriptedEngine()).run()

    assert report.status == "completed"
    assert report.processed == 3
    assert report.remaining == 0
    assert report.window_key == "2025-10-10T19:00:00Z|2025-10-10T22:00:00Z"
    assert count_pending(conn) == 0
    assert len(get_analyses(conn, 19, 22)) == 3

    stored = json.loads(settings.progress_path.read_text())
    assert stored["completed"] is True
    assert stored["last_processed_wallet_id"] == 3
    assert settings.snapshot_path.exists()
    assert gateway.calls == {}


async def test_rate_limit_is_retried_after_backoff(conn, gateway, settings):
    _seed(conn, 1)
    engine = ScriptedEngine({_address(1): [RateLimited("CoinGecko", 300)]})
    sleeps: list[float] = []
    report = await _runner(conn, gateway, settings, engine, sleeps).run()

    assert report.processed == 1
    assert engine.calls == [_address(1), _address(1)]
    assert sleeps == [0]
    stored = json.loads(settings.progress_path.read_text())
    assert stored["rate_limit_hit"] is False


async def test_exhausted_rate_limit_records_error(conn, gateway, settings):
    _seed(conn, 1)
    engine = ScriptedEngine({_address(1): [RateLimited("Alchemy", 60)] * 3})
    report = await _runner(conn, gateway, settings, engine).run()

    assert report.failed == 1
    assert report.remaining == 1
    assert len(engine.calls) == 3
    stored = json.loads(settings.progress_path.read_text())
    assert "Rate limited (Alchemy)" in stored["error_message"]
    assert stored["completed"] is False
    assert stored["state"] == "running"
    assert stored["rate_limit_hit"] is False


async def test_exhausted_rate_limit_does_not_block_later_wallets(conn, gateway, settings):
    _seed(conn, 2)
    engine = ScriptedEngine({_address(1): [RateLimited("Alchemy", 60)] * 3})
    report = await _runner(conn, gateway, settings, engine).run()

    assert report.status == "completed"
    assert (report.processed, report.failed) == (1, 1)
    stored = json.loads(settings.progress_path.read_text())
    assert stored["state"] == "completed"
    assert stored["rate_limit_provider"] is None
    assert count_pending(conn) == 1


async def test_stop_during_backoff_cancels_before_retry(conn, gateway, settings):
    _seed(conn, 2)
    stop = asyncio.Event()
    engine = ScriptedEngine({_address(1): [RateLimited("CoinGecko", 300)]})

    async def long_backoff(seconds):
        stop.set()
        await asyncio.Event().wait()

    runner = AnalysisRunner(conn, gateway, settings=settings, engine=engine, sleep=long_backoff)
    report = await asyncio.wait_for(runner.run(stop=stop), timeout=5)

    assert report.status == "cancelled"
    assert engine.calls == [_address(1)]
    assert report.remaining == 2
    stored = json.loads(settings.progress_path.read_text())
    assert stored["state"] == "rate_limited"
    assert stored["last_processed_wallet_id"] == 0


async def test_failed_wallet_does_not_stop_the_batch(conn, gateway, settings):
    _seed(conn, 3)
    engine = ScriptedEngine({_address(2): [TransientFetchError("boom")]})
    report = await _runner(conn, gateway, settings, engine).run()

    assert (report.processed, report.failed) == (2, 1)
    # the cursor has moved past the failed wallet
    assert report.remaining == 0
    assert count_pending(conn) == 1
    assert engine.calls == [_address(1), _address(2), _address(3)]


async def test_resume_skips_wallets_before_cursor(conn, gateway, settings):
    _seed(conn, 4)
    manager = CheckpointManager(settings.progress_path)
    cp = manager.create(4, "2025-10-10T19:00:00Z|2025-10-10T22:00:00Z")
    cp.last_processed_wallet_id = 2
    cp.processed_count = 2
    manager.save(cp)

    engine = ScriptedEngine()
    report = await _runner(conn, gateway, settings, engine).run()

    assert engine.calls == [_address(3), _address(4)]
    assert report.processed == 2
    assert manager.load(report.window_key).processed_count == 4


async def test_new_candidates_reopen_completed_checkpoint(conn, gateway, settings):
    _seed(conn, 1)
    await _runner(conn, gateway, settings, ScriptedEngine()).run()
    upsert_candidate(conn, CandidateWallet(address=_address(2), detected_at_block=2))

    engine = ScriptedEngine()
    report = await _runner(conn, gateway, settings, engine).run()
    assert engine.calls == [_address(2)]
    assert report.status == "completed"


async def test_stop_signal_cancels_between_wallets(conn, gateway, settings):
    _seed(conn, 3)
    stop = asyncio.Event()
    engine = ScriptedEngine(stop_after=stop)
    report = await _runner(conn, gateway, settings, engine).run(stop=stop)

    assert report.status == "cancelled"
    assert report.processed == 1
    assert report.remaining == 2
    assert json.loads(settings.progress_path.read_text())["last_processed_wallet_id"] == 1


async def test_rate_limit_while_resolving_window(conn, gateway, settings):
    _seed(conn, 1)
    gateway.block_lookup = {}
    gateway.errors["block_by_timestamp"] = RateLimited("Etherscan", 5)
    runner = AnalysisRunner(
        conn,
        gateway,
        window_config=AnalysisWindowConfig(start_utc=T0, end_utc=T1),
        settings=settings,
        engine=ScriptedEngine(),
    )
    report = await runner.run()

    assert report.status == "rate_limited"
    assert report.rate_limit_provider == "Etherscan"
    assert count_pending(conn) == 1
    assert not settings.progress_path.exists()
