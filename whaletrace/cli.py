"""Click CLI: window, collect, spider, analyze, mine, score, checkpoint."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

import click

from whaletrace.chain.registry import ChainConfig, resolve_chain
from whaletrace.config import get_settings
from whaletrace.errors import ConfigurationError


class WhaletraceGroup(click.Group):
    """Report configuration problems as one-line CLI errors instead of tracebacks."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except ConfigurationError as exc:
            raise click.ClickException(str(exc)) from exc


def _chain_option(ctx: click.Context, param: click.Parameter, value: str):
    try:
        return resolve_chain(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def _install_stop(stop: asyncio.Event) -> None:
    """Set ``stop`` on Ctrl-C so loops finish the current unit and persist their state."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop.set)
    except NotImplementedError:
        pass


def _mining_candidates(conn, usd_min: float | None, chain_ids: tuple[int, ...]):
    from whaletrace.scoring.mining import mine_candidates

    settings = get_settings()
    t0, t1 = settings.analysis_window().resolve_window()
    w1, w2 = settings.mining_windows(t0, t1)
    return mine_candidates(conn, w1, w2, usd_min or settings.usd_min, list(chain_ids) or None)


@click.group(cls=WhaletraceGroup)
@click.version_option(version="0.1.0")
@click.option("--log-level", default=None, help="Override LOG_LEVEL from .env")
def cli(log_level: str | None):
    """whaletrace - rank wallets by how they traded through a market-stress window."""
    level = (log_level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--chain", default="ethereum", callback=_chain_option, help="Chain name or ID (ethereum, arbitrum, base)")
@click.option("--no-blocks", is_flag=True, help="Only resolve timestamps, skip block lookup")
def window(chain: ChainConfig, no_blocks: bool):
    """Resolve the configured analysis window to timestamps and blocks."""
    from whaletrace.chain.blocks import BlockResolver
    from whaletrace.chain.gateway import ProviderGateway
    from whaletrace.config import build_window_key

    config = get_settings().analysis_window()
    t0, t1 = config.resolve_window()
    click.echo(f"t0 = {t0.isoformat()}")
    click.echo(f"t1 = {t1.isoformat()}")
    click.echo(f"key = {build_window_key(t0, t1)}")
    if no_blocks:
        return

    gateway = ProviderGateway.from_settings(chain.chain_id)
    resolved = asyncio.run(BlockResolver(gateway).resolve(config))
    click.echo(f"blocks = #{resolved.t0_block} .. #{resolved.t1_block}")


@cli.command()
@click.option("--chain", default="ethereum", callback=_chain_option, help="Chain name or ID (ethereum, arbitrum, base)")
@click.option("--from-block", type=int, required=True)
@click.option("--to-block", type=int, required=True)
@click.option("--usd-min", type=float, default=None, help="Minimum swap notional in USD (default from .env)")
@click.option("--span", type=int, default=None, help="Override the chain's eth_getLogs block span")
def collect(chain: ChainConfig, from_block: int, to_block: int, usd_min: float | None, span: int | None):
    """Collect DEX swaps in a block range, drop labelled addresses, price and persist them."""
    from whaletrace.chain.collector import ChunkedCollector
    from whaletrace.chain.gateway import ProviderGateway
    from whaletrace.labels.known import drop_excluded
    from whaletrace.storage.database import get_connection, insert_events
    from whaletrace.tokens.dex import price_stored_events

    if from_block > to_block:
        raise click.BadParameter("--from-block must not exceed --to-block")
    usd_min = usd_min or get_settings().usd_min
    gateway = ProviderGateway.from_settings(chain.chain_id)
    conn = get_connection()

    async def _collect():
        stop = asyncio.Event()
        _install_stop(stop)
        result = await ChunkedCollector(gateway, span=span, stop=stop).collect_swaps(from_block, to_block)
        events = drop_excluded(result.events, conn=conn, chain_id=chain.chain_id)
        inserted = insert_events(conn, events)
        summary = await price_stored_events(conn, gateway, usd_min, from_block=from_block, to_block=to_block)
        return result, inserted, summary

    click.echo(f"Collecting swaps on {chain.name} blocks #{from_block}..#{to_block}...")
    result, inserted, summary = asyncio.run(_collect())
    click.echo(f"Decoded {len(result.events)} swaps from {result.total_logs} logs, inserted {inserted}.")
    click.echo(f"Priced {summary.priced}, missing price {summary.missing}, below ${usd_min:,.0f}: {summary.filtered}.")
    if result.cancelled:
        click.echo("Collection was cancelled before reaching --to-block.")
    conn.close()


@cli.command()
@click.option("--from-block", type=int, default=None, help="Default: resume from spider state")
@click.option("--to-block", type=int, default=None, help="Default: latest block")
@click.option("--min-usd", type=float, default=None, help="Minimum transfer value in USD")
def spider(from_block: int | None, to_block: int | None, min_usd: float | None):
    """Scan blocks for large ERC-20 transfers and record both sides as candidates."""
    from whaletrace.chain.gateway import ProviderGateway
    from whaletrace.discovery.spider import CandidateSpider
    from whaletrace.storage.database import get_connection

    settings = get_settings()
    conn = get_connection()
    crawler = CandidateSpider(
        conn,
        ProviderGateway.from_settings(1, settings),
        min_transfer_usd=min_usd or settings.min_transfer_usd,
        state_path=settings.spider_state_path,
    )

    async def _scan():
        stop = asyncio.Event()
        _install_stop(stop)
        return await crawler.scan(from_block, to_block, stop=stop)

    result = asyncio.run(_scan())
    click.echo(
        f"Scanned {result.blocks_scanned} blocks (#{result.from_block}..#{result.last_block}), "
        f"{result.candidates_added} new candidates."
    )
    conn.close()


@cli.command()
def analyze():
    """Value pending candidate wallets over the configured window (one batch)."""
    from whaletrace.analysis.runner import AnalysisRunner
    from whaletrace.chain.gateway import ProviderGateway
    from whaletrace.storage.database import get_connection

    conn = get_connection()
    runner = AnalysisRunner(conn, ProviderGateway.from_settings(1))

    async def _run():
        stop = asyncio.Event()
        _install_stop(stop)
        return await runner.run(stop=stop)

    report = asyncio.run(_run())
    click.echo(
        f"Status: {report.status} | processed {report.processed}, failed {report.failed}, "
        f"remaining {report.remaining}"
    )
    if report.status == "rate_limited":
        click.echo(f"Rate limited by {report.rate_limit_provider} while resolving the window.")
    conn.close()
    if report.status == "rate_limited":
        raise SystemExit(2)


@cli.command()
@click.option("--usd-min", type=float, default=None, help="Minimum net flow in each window")
@click.option("--chain-id", "chain_ids", type=int, multiple=True, help="Restrict to chain(s)")
@click.option("--output", type=click.Path(path_type=Path), default=None, help="Write candidates as CSV/Parquet")
def mine(usd_min: float | None, chain_ids: tuple[int, ...], output: Path | None):
    """Find wallets that accumulated in W1 and distributed in W2."""
    import pandas as pd

    from whaletrace.storage.database import get_connection

    conn = get_connection()
    candidates = _mining_candidates(conn, usd_min, chain_ids)
    click.echo(f"{len(candidates)} candidates")
    for c in candidates[:20]:
        click.echo(f"  {c.wallet}  W1 ${c.w1_net:,.0f}  W2 ${c.w2_net:,.0f}  chains={c.chains}")

    if output:
        df = pd.DataFrame([c.model_dump() for c in candidates])
        output.parent.mkdir(parents=True, exist_ok=True)
        if output.suffix == ".csv":
            df.to_csv(output, index=False)
        else:
            df.to_parquet(output, index=False)
        click.echo(f"Written to {output}")
    conn.close()


@cli.command()
@click.option("--mode", type=click.Choice(["fifo", "lifo"]), default="fifo", help="Cost-basis lot order")
@click.option("--usd-min", type=float, default=None)
@click.option("--chain-id", "chain_ids", type=int, multiple=True)
@click.option("--weight", "weights", multiple=True, help="Override a weight, e.g. --weight t1_pnl=0.5")
@click.option("--limit", type=int, default=50)
@click.option("--output", type=click.Path(path_type=Path), default=None)
def score(
    mode: str,
    usd_min: float | None,
    chain_ids: tuple[int, ...],
    weights: tuple[str, ...],
    limit: int,
    output: Path | None,
):
    """Mine candidates, compute realized P&L and print the ranked list."""
    from whaletrace.scoring.export import export_ranked_candidates
    from whaletrace.scoring.pnl import evaluate_candidates
    from whaletrace.scoring.smart_money import rank_candidates
    from whaletrace.storage.database import get_connection

    overrides: dict[str, float] = {}
    for item in weights:
        name, sep, value = item.partition("=")
        if not sep:
            raise click.BadParameter(f"Expected name=value, got '{item}'", param_hint="--weight")
        try:
            overrides[name.strip()] = float(value)
        except ValueError as exc:
            raise click.BadParameter(f"Weight '{name}' is not a number", param_hint="--weight") from exc

    conn = get_connection()
    candidates = _mining_candidates(conn, usd_min, chain_ids)
    pnl = evaluate_candidates(conn, candidates, mode=mode)
    try:
        ranked = rank_candidates(candidates, pnl, weights=overrides or None, limit=limit)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--weight") from exc

    click.echo(f"\nTop {len(ranked)} wallets ({mode.upper()}):")
    click.echo(f"{'Rank':<5} {'Wallet':<44} {'Score':>7} {'Realized':>14}")
    click.echo("-" * 72)
    for rank, s in enumerate(ranked, start=1):
        click.echo(f"{rank:<5} {s.wallet:<44} {s.score:>7.4f} {s.raw['realized']:>14,.2f}")

    if output:
        export_ranked_candidates(ranked, output)
        click.echo(f"Written to {output}")
    conn.close()


@cli.group()
def checkpoint():
    """Inspect or reset the analysis checkpoint."""


@checkpoint.command("show")
def checkpoint_show():
    from whaletrace.analysis.checkpoint import CheckpointManager

    summary = CheckpointManager(get_settings().progress_path).describe()
    if summary is None:
        click.echo("No checkpoint.")
        return
    click.echo(summary)


@checkpoint.command("clear")
@click.confirmation_option(prompt="Discard the analysis checkpoint?")
def checkpoint_clear():
    from whaletrace.analysis.checkpoint import CheckpointManager

    CheckpointManager(get_settings().progress_path).clear()
    click.echo("Checkpoint cleared.")


if __name__ == "__main__":
    cli()
