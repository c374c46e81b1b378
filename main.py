"""Prospector - search orchestration pipeline

Simple CLI for running a search in the foreground and for the maintenance hooks.
"""

import argparse
import asyncio

from app.services.container import Services, build_services


def print_event(event) -> None:
    data = event.data
    event_type = event.event.value

    if event_type == "snapshot":
        counts = ", ".join(f"{k}={v}" for k, v in data.get("counts", {}).items())
        print(f"[*] {data.get('status')} at {data.get('phase')} ({data.get('progress_pct')}%) {counts}")

    elif event_type == "progress":
        print(f"[~] {data.get('phase')} ({data.get('progress_pct')}%)")

    elif event_type == "stage_started":
        print(f"  [>] {data.get('stage')} started")

    elif event_type == "stage_completed":
        print(f"  [+] {data.get('stage')} complete in {data.get('duration_ms')}ms")

    elif event_type == "stage_failed":
        print(f"  [!] {data.get('stage')} failed ({data.get('kind')}): {data.get('error')}")

    elif event_type == "record_inserted":
        print(".", end="", flush=True)

    elif event_type == "search_completed":
        print("\n[*] Search complete!")

    elif event_type == "search_failed":
        print(f"\n[!] Search failed: {data.get('message', 'Unknown error')}")

    elif event_type == "search_cancelled":
        print("\n[!] Search cancelled")


async def run_search(services: Services, search_id: str) -> None:
    """Run one search in the foreground, printing its events as they happen."""
    search = await services.store.get_search(search_id)
    if search is None:
        print(f"[!] Search {search_id} not found")
        return

    async def watch() -> None:
        async for event in services.progress.subscribe(search_id):
            print_event(event)

    watcher = asyncio.create_task(watch())
    await asyncio.sleep(0)
    final = await services.orchestrator.run(search_id)
    try:
        await asyncio.wait_for(watcher, timeout=1.0)
    except asyncio.TimeoutError:
        watcher.cancel()

    snapshot = await services.progress.get_progress(search_id)
    print(f"\nFinal: {final.status.value if final else 'unknown'} {snapshot.to_dict()['counts']}")


async def run_command(args: argparse.Namespace) -> None:
    services = build_services()
    await services.store.connect()
    try:
        if args.command == "run":
            await run_search(services, args.search_id)
        elif args.command == "sweep":
            report = await services.reaper.sweep()
            print(report.to_dict())
        elif args.command == "dispatch":
            processed = await services.worker.dispatch_once()
            print(f"processed={processed}")
    finally:
        await services.store.close()


def main():
    parser = argparse.ArgumentParser(description="Prospector search orchestration")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run a search in the foreground")
    run.add_argument("search_id", help="Id of an existing search")
    commands.add_parser("sweep", help="Expire idempotency entries and requeue stuck tasks")
    commands.add_parser("dispatch", help="Claim and process one batch of due jobs")

    args = parser.parse_args()

    asyncio.run(run_command(args))


if __name__ == "__main__":
    main()
