"""Enrich a CSV of property addresses from the shell.

    python scripts/enrich_csv.py listings.csv -o enriched.csv --address "Address" --city City --county County --zip Zip

If an unfinished checkpoint exists, the script stops and asks for one of
--resume, --discard or --export-partial. Ctrl-C stops gracefully: in-flight
addresses finish and a checkpoint is written.
"""
import argparse
import asyncio
import csv
import signal
import sys
from pathlib import Path

from geoenrich.config import settings
from geoenrich.errors import GeoEnrichError
from geoenrich.models.enrichment import ColumnMapping
from geoenrich.services import events as ev
from geoenrich.services.kv_store import open_default_store
from geoenrich.tasks.runner import RunContext, EnrichmentRun, read_records
from geoenrich.utils.csv_export import results_to_csv


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("input", type=Path)
    parser.add_argument("-o", "--output", type=Path)
    parser.add_argument("--address", default="Address")
    parser.add_argument("--zip", default=None)
    parser.add_argument("--city", default=None)
    parser.add_argument("--county", default=None)
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--resume", action="store_true")
    group.add_argument("--discard", action="store_true", help="drop an existing checkpoint and start over")
    group.add_argument("--export-partial", type=Path, metavar="PATH", help="write checkpoint results to PATH, then drop it")
    return parser.parse_args(argv)


def read_rows(path: Path) -> list[dict]:
    with path.open(newline="", encoding="utf-8-sig") as f:
        return list(csv.DictReader(f))


async def main(argv=None) -> int:
    args = parse_args(argv)
    store = await open_default_store()
    context = RunContext.build(settings, store)
    try:
        await context.quota.load()

        offer = await context.checkpoints.offer()
        if args.export_partial:
            content = await context.checkpoints.export_partial()
            if content is None:
                print("No checkpoint to export")
                return 1
            args.export_partial.write_text(content, encoding="utf-8")
            print(f"Partial results written to {args.export_partial}")
            return 0
        if offer is not None and args.discard:
            await context.checkpoints.discard()
            offer = None
            print("Checkpoint discarded")
        if offer is not None and not args.resume:
            summary = offer.summary()
            print(
                f"Unfinished run found for '{summary['source_id']}': "
                f"{summary['cursor']}/{summary['total_units']} addresses ({summary['progress']}%), "
                f"saved {summary['age_hours']}h ago"
            )
            print("Re-run with --resume, --discard or --export-partial PATH")
            return 2

        columns = ColumnMapping(address=args.address, zip=args.zip, city=args.city, county=args.county)
        records = read_records(read_rows(args.input), columns)
        run = EnrichmentRun(
            source_id=args.input.name,
            records=records,
            context=context,
            resume_from=offer.snapshot if (offer and args.resume) else None,
        )

        context.events.subscribe(
            ev.PROGRESS,
            lambda current, total: print(f"\r{current}/{total} addresses", end="", flush=True),
        )
        context.events.subscribe(
            ev.LIMIT_REACHED,
            lambda provider, used, limit: print(f"\nDaily limit reached for {provider} ({used}/{limit})"),
        )
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, run.stop)

        results = await run.run()
        print()

        output = args.output or args.input.with_name(f"{args.input.stem}_enriched.csv")
        output.write_text(results_to_csv(r for r in results if r is not None), encoding="utf-8")

        stats = context.stats.snapshot()
        print(
            f"{run.status}: {stats['success_count']} enriched, {stats['error_count']} failed, "
            f"{stats['cache_hit_count']} cache hits -> {output}"
        )
        return 0 if run.status == "completed" else 3
    except GeoEnrichError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await context.close()
        await store.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
