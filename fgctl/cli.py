"""ForgeGuard control CLI.

Subcommands:

* ``replay``   feed a finite event file through a fresh engine
* ``serve``    follow a JSON-lines event file and respond as events arrive
* ``check-ip`` run a single reputation lookup
"""
from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from queue import Empty, Queue
from typing import Callable, Iterable, Optional

from rich.console import Console
from rich.table import Table

from forgeguard.core.aggregator import ThreatAggregator
from forgeguard.core.config import ForgeGuardConfig
from forgeguard.core.events import SecurityEvent
from forgeguard.core.hooks import ResponseHooks
from forgeguard.core.ingest import EventTail, read_events
from forgeguard.core.notify import SecurityTeamNotifier
from forgeguard.core.reputation import AbuseIpdbClient
from forgeguard.core.response import ResponseOutcome, ThreatResponseSystem
from forgeguard.core.rules import SecurityRuleEngine, default_rules

logger = logging.getLogger("fgctl")

_LEVEL_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "green",
}


@dataclass
class EventClock:
    """Clock that follows the timestamps of replayed events.

    Replayed files usually hold historical events; evaluating them against
    wall-clock time would push every event out of the recent window.
    """

    now: float = 0.0

    def __call__(self) -> float:
        return self.now

    def advance_to(self, timestamp: float) -> None:
        self.now = max(self.now, timestamp)


def load_config(path: Optional[str]) -> ForgeGuardConfig:
    if not path:
        return ForgeGuardConfig()
    return ForgeGuardConfig.from_file(path)


def build_engine(
    config: ForgeGuardConfig,
    clock: Callable[[], float] = time.time,
    decisions_log: Optional[str] = None,
) -> ThreatResponseSystem:
    """Wire a response system from configuration."""

    rep_cfg = config.reputation
    reputation = AbuseIpdbClient(
        api_key=rep_cfg.api_key,
        base_url=rep_cfg.base_url,
        timeout=rep_cfg.timeout_seconds,
        cache_ttl_seconds=rep_cfg.cache_ttl_seconds,
        clock=clock,
    )
    rule_engine = SecurityRuleEngine(default_rules())
    for rule in config.extra_rules():
        rule_engine.add_rule(rule)

    agg_cfg = config.aggregator
    aggregator = ThreatAggregator(
        reputation=reputation,
        rule_engine=rule_engine,
        max_history_size=agg_cfg.max_history_size,
        threat_decay_hours=agg_cfg.threat_decay_hours,
        reputation_timeout=rep_cfg.timeout_seconds,
        clock=clock,
    )
    hooks = ResponseHooks(notifier=SecurityTeamNotifier(config.notify, clock=clock), clock=clock)
    return ThreatResponseSystem(
        config=config.response,
        aggregator=aggregator,
        hooks=hooks,
        clock=clock,
        decisions_log=decisions_log,
    )


def _outcome_row(event: SecurityEvent, outcome: ResponseOutcome) -> list[str]:
    level = outcome.threat_level.value if outcome.threat_level else "-"
    style = _LEVEL_STYLES.get(level, "")
    score = "-" if outcome.threat_score is None else str(outcome.threat_score)
    detail = "; ".join(outcome.factors) or (outcome.reason or "")
    return [
        event.source_ip or "-",
        event.event_type.value,
        f"[{style}]{level}[/{style}]" if style else level,
        score,
        outcome.action,
        detail,
    ]


def cmd_replay(events_path: str, config: Optional[str], output_json: bool, decisions: Optional[str]) -> int:
    try:
        cfg = load_config(config)
        events = read_events(events_path)
    except (OSError, ValueError) as e:
        logger.error(f"Cannot replay {events_path}: {e}")
        return 1

    clock = EventClock()
    engine = build_engine(cfg, clock=clock, decisions_log=decisions)
    events.sort(key=lambda event: event.timestamp)

    table = Table(title=f"Replay of {events_path}")
    for column in ("Source", "Event", "Level", "Score", "Action", "Factors"):
        table.add_column(column)

    try:
        for event in events:
            clock.advance_to(event.timestamp)
            outcome = engine.process_security_event(event)
            if output_json:
                print(json.dumps({"event": event.as_dict(), "decision": outcome.as_dict()}, sort_keys=True))
            else:
                table.add_row(*_outcome_row(event, outcome))
        stats = engine.get_system_stats()
    finally:
        engine.aggregator.close()

    if output_json:
        print(json.dumps({"stats": stats}, sort_keys=True))
        return 0

    console = Console()
    console.print(table)
    summary = Table(title="Engine stats", show_header=False)
    for key in ("active_blocked_ips", "active_rate_limits", "total_tracked_ips", "avg_threat_score"):
        summary.add_row(key, str(stats[key]))
    console.print(summary)
    return 0


def cmd_serve(
    events_path: str,
    config: Optional[str],
    decisions: Optional[str],
    cleanup_interval: float = 300.0,
) -> int:
    try:
        cfg = load_config(config)
    except (OSError, ValueError) as e:
        logger.error(f"Cannot load configuration: {e}")
        return 1

    engine = build_engine(cfg, decisions_log=decisions)
    q: "Queue[SecurityEvent]" = Queue()
    stop = threading.Event()

    def reader(path: str) -> None:
        tail = EventTail(Path(path))
        for event in tail.stream():
            if stop.is_set():
                break
            q.put(event)

    def consumer() -> None:
        next_cleanup = time.time() + cleanup_interval
        while not stop.is_set():
            if time.time() >= next_cleanup:
                engine.cleanup()
                next_cleanup = time.time() + cleanup_interval
            try:
                event = q.get(timeout=1)
            except Empty:
                continue
            try:
                outcome = engine.process_security_event(event)
                logger.info(
                    f"{event.source_ip} {event.event_type.value}: {outcome.action} "
                    f"(score {outcome.threat_score})"
                )
            finally:
                q.task_done()

    def stop_handler(sig, frame) -> None:
        stop.set()

    signal.signal(signal.SIGINT, stop_handler)
    signal.signal(signal.SIGTERM, stop_handler)

    t_reader = threading.Thread(target=reader, args=(events_path,), daemon=True)
    t_consumer = threading.Thread(target=consumer, daemon=True)
    t_reader.start()
    t_consumer.start()
    logger.info(f"Following {events_path}")

    try:
        while not stop.is_set():
            time.sleep(1)
    except KeyboardInterrupt:
        stop.set()

    t_consumer.join(timeout=2)
    engine.aggregator.close()
    return 0


def cmd_check_ip(ip: str, config: Optional[str], output_json: bool) -> int:
    try:
        cfg = load_config(config)
    except (OSError, ValueError) as e:
        logger.error(f"Cannot load configuration: {e}")
        return 1

    rep_cfg = cfg.reputation
    client = AbuseIpdbClient(
        api_key=rep_cfg.api_key,
        base_url=rep_cfg.base_url,
        timeout=rep_cfg.timeout_seconds,
        cache_ttl_seconds=rep_cfg.cache_ttl_seconds,
    )
    result = client.check_ip(ip)
    if output_json:
        print(json.dumps(result.as_dict(), sort_keys=True))
    else:
        table = Table(title=f"Reputation for {ip}", show_header=False)
        for key, value in result.as_dict().items():
            table.add_row(key, "-" if value is None else str(value))
        Console().print(table)
    return 0 if result.supported else 2


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="fgctl", description="ForgeGuard threat response control")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_replay = sub.add_parser("replay", help="Run an event file through a fresh engine")
    p_replay.add_argument("events", help="JSON-lines or YAML file of events")
    p_replay.add_argument("--config", help="Path to forgeguard.yaml")
    p_replay.add_argument("--json", action="store_true", help="Output JSON lines")
    p_replay.add_argument("--decisions-log", help="Append decisions to this JSON-lines file")

    p_serve = sub.add_parser("serve", help="Follow a JSON-lines event file and respond in real time")
    p_serve.add_argument("events", help="JSON-lines event file to follow")
    p_serve.add_argument("--config", help="Path to forgeguard.yaml")
    p_serve.add_argument("--decisions-log", help="Append decisions to this JSON-lines file")
    p_serve.add_argument(
        "--cleanup-interval", type=float, default=300.0, help="Seconds between cleanup passes (default: 300)"
    )

    p_check = sub.add_parser("check-ip", help="Look up the reputation of one IP address")
    p_check.add_argument("ip", help="IPv4 or IPv6 address")
    p_check.add_argument("--config", help="Path to forgeguard.yaml")
    p_check.add_argument("--json", action="store_true", help="Output JSON")

    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "replay":
        return cmd_replay(args.events, args.config, args.json, args.decisions_log)
    if args.command == "serve":
        return cmd_serve(args.events, args.config, args.decisions_log, args.cleanup_interval)
    if args.command == "check-ip":
        return cmd_check_ip(args.ip, args.config, args.json)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
