"""PeerBeacon agent entry point."""
from __future__ import annotations
import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from agent.service import MdnsService
from core.config import AgentConfig, ServiceEntry, load_config, log_level_value
from core.errors import MdnsError
from core.logging_utils import close_logger, setup_rotating_logger


def parse_register(value: str) -> ServiceEntry:
    """--register ID,TYPE,PORT[,ORIGIN]"""
    parts = value.split(",")
    if len(parts) not in (3, 4):
        raise argparse.ArgumentTypeError("expected ID,TYPE,PORT[,ORIGIN]")
    try:
        port = int(parts[2])
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {parts[2]}") from None
    return ServiceEntry(id=parts[0], service_type=parts[1], port=port,
                        origin=parts[3] if len(parts) == 4 else "")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="peerbeacon", description="mDNS service discovery agent")
    parser.add_argument("--config", type=Path, help="agent config file (.toml)")
    parser.add_argument("--service-type", help="service type to query for")
    parser.add_argument("--query-interval", type=float, help="seconds between queries")
    parser.add_argument("--advertise-interval", type=float, help="seconds between advertisements")
    parser.add_argument("--register", type=parse_register, action="append", default=[],
                        metavar="ID,TYPE,PORT[,ORIGIN]", help="advertise a local service (repeatable)")
    parser.add_argument("--log-dir", help="directory for rotating and JSONL logs")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def resolve_config(args: argparse.Namespace) -> AgentConfig:
    """Config file (if any) with command-line overrides applied. Raises ValueError."""
    config = load_config(args.config) if args.config else AgentConfig()
    if args.service_type:
        config.service_type = args.service_type
    if args.query_interval is not None:
        config.query_interval_s = args.query_interval
    if args.advertise_interval is not None:
        config.advertise_interval_s = args.advertise_interval
    if args.log_dir:
        config.log_dir = args.log_dir
    if args.verbose:
        config.log_level = "DEBUG"
    config.services.extend(args.register)
    errors = config.validate()
    if errors:
        raise ValueError("; ".join(errors))
    return config


async def serve(config: AgentConfig) -> None:
    service = MdnsService.create(
        config.network.group,
        config.network.port,
        log_dir=Path(config.log_dir),
        report_interval_s=config.report_interval_s,
    )
    try:
        for entry in config.services:
            record = entry.to_record()
            service.register_local_service(record.id, record.service_type, record.port,
                                           record.ttl, record.origin)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not available on Windows event loops
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, service.stop)

        await service.run(config.service_type, config.query_interval_s, config.advertise_interval_s)
    finally:
        service.close()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    try:
        config = resolve_config(args)
    except (OSError, ValueError) as e:
        print(f"peerbeacon: {e}", file=sys.stderr)
        return 2

    setup_rotating_logger("peerbeacon", Path(config.log_dir), level=log_level_value(config),
                          console_level=log_level_value(config))
    logger = logging.getLogger("peerbeacon")
    logger.info("PeerBeacon agent starting (query type %s)", config.service_type)

    try:
        asyncio.run(serve(config))
    except MdnsError as e:
        logger.error("Agent stopped: %s", e)
        return 1
    except KeyboardInterrupt:
        pass
    finally:
        close_logger("peerbeacon")
    return 0


if __name__ == "__main__":
    sys.exit(main())
