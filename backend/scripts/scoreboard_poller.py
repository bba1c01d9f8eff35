import argparse
import logging
import time
from datetime import datetime, timezone

from tradewins.db import SessionLocal
from tradewins.feed import SPORT_PATHS, ScoreboardClient, normalize_league
from tradewins.ingestion import CycleReport, IngestionPipeline


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def log(message: str) -> None:
    print(f"[{now_iso()}] {message}", flush=True)


def summarize(cycle_index: int, report: CycleReport) -> str:
    return (
        "cycle="
        + str(cycle_index)
        + f" league={report.league}"
        + f" events={report.events_seen}"
        + f" records={report.records_updated}"
        + f" schedules={report.schedules_updated}"
        + f" locks={report.locks_applied}"
        + f" payouts={report.payouts_triggered}"
        + f" paid={float(report.payout_total):.2f}"
        + f" marked={report.games_marked}"
        + f" already_processed={report.already_processed}"
        + f" unmapped={len(report.unmapped_tickers)}"
        + f" failed={report.failed_events}"
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Poll the public scoreboard, refresh team records, schedules and lock windows, "
            "and pay out each completed game exactly once."
        )
    )
    parser.add_argument(
        "--league",
        action="append",
        choices=sorted(SPORT_PATHS),
        help="League to process; repeat for several. Defaults to all leagues.",
    )
    parser.add_argument("--interval-seconds", type=int, default=300, help="Polling interval for continuous mode")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout seconds")
    parser.add_argument("--max-retries", type=int, default=3, help="Retry attempts per scoreboard fetch")
    parser.add_argument("--retry-backoff", type=float, default=1.5, help="Backoff multiplier in seconds")
    parser.add_argument("--dry-run", action="store_true", help="Process and log without writing to the database")
    parser.add_argument("--verbose", action="store_true", help="Echo every pipeline log line")
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    if args.interval_seconds <= 0:
        print("[error] --interval-seconds must be > 0")
        return 1
    if args.max_retries <= 0:
        print("[error] --max-retries must be > 0")
        return 1

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    leagues = [normalize_league(league) for league in (args.league or sorted(SPORT_PATHS))]
    feed = ScoreboardClient(
        timeout=float(args.timeout),
        max_retries=int(args.max_retries),
        retry_backoff=float(args.retry_backoff),
    )
    pipeline = IngestionPipeline(session_factory=SessionLocal, feed=feed, dry_run=bool(args.dry_run))
    log(f"Polling leagues={','.join(leagues)} dry_run={bool(args.dry_run)}")

    cycles_with_failures = 0
    cycle_index = 0
    while True:
        cycle_index += 1
        for league in leagues:
            try:
                report = pipeline.run_cycle(league)
                log(summarize(cycle_index, report))
                for line in report.logs:
                    if line.startswith("PAYOUT") or line.startswith("[error]"):
                        log(f"  {line}")
                if report.failed_events > 0 or report.feed_error:
                    cycles_with_failures += 1
            except Exception as exc:
                cycles_with_failures += 1
                log(f"[error] cycle={cycle_index} league={league} failed: {exc}")

        if args.once:
            break
        time.sleep(args.interval_seconds)

    return 0 if cycles_with_failures == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
