"""retooth command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import inspect
import json
import logging
import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from retooth.config import ReconnectPolicy, Settings
from retooth.errors import RetoothError
from retooth.events import NextConnectionChanged, RetryProgress, StateChanged
from retooth.reconnect import Reconnector
from retooth.schedule import early_start_deadline, next_full_deadline, should_connect_now
from retooth.store import SqlTimestampStore

console = Console()


def _parse_metadata(raw: Optional[str]) -> Dict[str, Any]:
	if not raw:
		return {}
	try:
		value = json.loads(raw)
	except json.JSONDecodeError as exc:
		raise ValueError(f"invalid metadata JSON: {exc}") from exc
	if not isinstance(value, dict):
		raise ValueError("metadata must be a JSON object")
	return value


def _format_time(timestamp: Optional[float]) -> str:
	if timestamp is None:
		return "-"
	return datetime.fromtimestamp(timestamp, tz=timezone.utc).astimezone().strftime("%H:%M:%S")


def _configure_logging(verbose: bool) -> None:
	level = logging.DEBUG if verbose else logging.INFO
	logging.basicConfig(
		level=level,
		format="%(message)s",
		datefmt="[%X]",
		handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
	)


def _print_event(event: Any, as_json: bool) -> None:
	if as_json:
		payload = {"event": type(event).__name__}
		for item in dataclasses.fields(event):
			value = getattr(event, item.name)
			payload[item.name] = value.isoformat() if isinstance(value, datetime) else getattr(value, "value", value)
		sys.stdout.write(json.dumps(payload) + "\n")
		sys.stdout.flush()
		return
	if isinstance(event, StateChanged):
		console.print(f"[bold]{event.address}[/bold] {event.previous.value} -> [cyan]{event.current.value}[/cyan]")
	elif isinstance(event, RetryProgress):
		console.print(f"[yellow]{event.message}[/yellow]")
	elif isinstance(event, NextConnectionChanged) and event.next_connection_time:
		console.print(f"Next connection: {event.next_connection_time.astimezone():%H:%M:%S}")


async def _cmd_connect(args: argparse.Namespace) -> int:
	metadata = _parse_metadata(args.metadata)
	settings = Settings.from_env()
	log_path = Path(args.log or settings.metrics_log)
	reconnector = Reconnector(
		args.device,
		store=SqlTimestampStore(args.db or settings.state_db),
		policy=ReconnectPolicy.from_env(),
		log=log_path,
		metadata=metadata,
	)
	for event_type in (StateChanged, RetryProgress, NextConnectionChanged):
		reconnector.bus.subscribe(event_type, lambda event: _print_event(event, args.json_events))

	def _signal_handler(*_: Any) -> None:
		reconnector.request_stop()

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, _signal_handler)

	try:
		await reconnector.run(runtime=args.runtime, watch_suspend=not args.no_suspend_watch)
	except RetoothError as exc:
		console.print(f"[red]{exc}[/red]")
		return 1
	except KeyboardInterrupt:
		reconnector.request_stop()
	return 0


async def _cmd_schedule(args: argparse.Namespace) -> int:
	policy = ReconnectPolicy.from_env()
	store = SqlTimestampStore(args.db or Settings.from_env().state_db)
	last = await store.get_last_connection_time()
	now = time.time()
	data = {
		"last_connection": last,
		"early_start": early_start_deadline(last, now, policy),
		"next_connection": next_full_deadline(last, now, policy),
		"connect_now": should_connect_now(last, now, policy),
	}
	if args.json:
		json.dump(data, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	table = Table(title="retooth schedule", show_lines=False)
	table.add_column("LAST CONNECTION")
	table.add_column("BURST STARTS")
	table.add_column("NEXT CONNECTION")
	table.add_column("DUE")
	table.add_row(
		_format_time(last),
		_format_time(data["early_start"]),
		_format_time(data["next_connection"]),
		"yes" if data["connect_now"] else "no",
	)
	console.print(table)
	return 0


def _cmd_serve(args: argparse.Namespace) -> int:
	settings = Settings.from_env()
	uvicorn.run(
		"retooth.api:app",
		host=args.host or settings.api_host,
		port=args.port or settings.api_port,
		reload=args.reload,
	)
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="Keep a periodically sleeping BLE peripheral connected")
	parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
	sub = parser.add_subparsers(dest="command", required=True)

	connect = sub.add_parser("connect", help="Connect and keep reconnecting on the cadence")
	connect.add_argument("device", help="Hardware address, e.g. AA:BB:CC:DD:EE:FF")
	connect.add_argument("--db", help="SQLite file holding the last connection time")
	connect.add_argument("--log", help="Path to metrics CSV")
	connect.add_argument("--runtime", type=float, help="Stop after this many seconds")
	connect.add_argument("--metadata", help="JSON object to embed in metrics")
	connect.add_argument("--json-events", action="store_true", help="Print events as JSON lines")
	connect.add_argument("--no-suspend-watch", action="store_true", help="Do not reconcile after host suspension")
	connect.set_defaults(handler=_cmd_connect)

	schedule = sub.add_parser("schedule", help="Show the persisted schedule")
	schedule.add_argument("--db", help="SQLite file holding the last connection time")
	schedule.add_argument("--json", action="store_true", help="Output JSON")
	schedule.set_defaults(handler=_cmd_schedule)

	serve = sub.add_parser("serve", help="Run the HTTP API")
	serve.add_argument("--host", help="Bind address")
	serve.add_argument("--port", type=int, help="Bind port")
	serve.add_argument("--reload", action="store_true", help="Auto-reload on code changes")
	serve.set_defaults(handler=_cmd_serve)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	_configure_logging(args.verbose)
	try:
		if inspect.iscoroutinefunction(args.handler):
			return asyncio.run(args.handler(args))
		return args.handler(args)
	except ValueError as exc:
		parser.error(str(exc))
	return 2


if __name__ == "__main__":
	sys.exit(main())
