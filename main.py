# main.py
"""
Container resource sampler.
Drives one collector backend (Docker or Kubernetes) at a fixed interval and
appends every sample to a CSV file.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger(__name__)
console = Console(stderr=True)

DEFAULT_CONFIG_PATH = "config/cstats.json"

DEFAULT_OUTFILES = {
    "docker": "docker-stats.csv",
    "kubernetes": "k8s-stats.csv",
}

BACKEND_ALIASES = {
    "docker": "docker",
    "kubernetes": "kubernetes",
    "k8s": "kubernetes",
}


# -------------------------------------------------
# Logging
# -------------------------------------------------
def setup_logging(debug: bool = False, log_file: Optional[str] = None):
    handlers = [RichHandler(console=console, show_path=False)]
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("[%(asctime)s] %(levelname)s [%(name)s] %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="[%(name)s] %(message)s",
        handlers=handlers,
        force=True,
    )
    # Kubernetes/urllib3 are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


# -------------------------------------------------
# Config
# -------------------------------------------------
def load_config(backend: str, config_path: Optional[str] = None, overrides: Optional[dict] = None) -> dict:
    """Defaults, then the JSON config file (if present), then explicit overrides"""
    config = {
        "interval": 5.0,
        "outfile": DEFAULT_OUTFILES[backend],
        "debug": False,
        "docker": {
            "max_workers": 16,
            "compose_project": None,
        },
        "kubernetes": {
            "namespace": "",
            "selector": "",
            "context": "",
        },
    }

    if config_path and Path(config_path).exists():
        try:
            with open(config_path) as f:
                user_config = json.load(f)
            if not isinstance(user_config, dict):
                raise ValueError(f"expected a JSON object, got {type(user_config).__name__}")

            for key, value in user_config.items():
                if isinstance(config.get(key), dict):
                    if not isinstance(value, dict):
                        logger.warning(f"Ignoring config section '{key}': expected an object, got {value!r}")
                        continue
                    config[key].update(value)
                else:
                    config[key] = value
            logger.info(f"Loaded config from {config_path}")
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load config: {e}, using defaults")

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key in config["docker"]:
            config["docker"][key] = value
        elif key in config["kubernetes"]:
            config["kubernetes"][key] = value
        else:
            config[key] = value

    return config


class ContainerStatsDaemon:
    """Owns one collector, the sample sink, and the scheduling loop"""

    def __init__(self, backend: str, config: dict):
        from ingestion.scheduler import validate_interval

        self.backend = BACKEND_ALIASES[backend]
        self.config = config
        self.interval = validate_interval(config["interval"])
        self.outfile = config["outfile"]
        self.debug = bool(config.get("debug", False))

        self.collector = None
        self.sink = None
        self.stop_event: Optional[asyncio.Event] = None

    # -------------------------------------------------
    # Initialization
    # -------------------------------------------------
    def initialize(self):
        """Connect the backend and open the output file; any failure here is fatal"""
        from ingestion.csv_sink import CSVSampleSink

        if self.backend == "docker":
            from collectors.docker_stats import DockerCollector

            opts = self.config["docker"]
            self.collector = DockerCollector(
                max_workers=int(opts["max_workers"]),
                compose_project=opts.get("compose_project"),
                debug=self.debug,
            )
        else:
            from collectors.kubernetes_stats import KubernetesCollector

            opts = self.config["kubernetes"]
            self.collector = KubernetesCollector(
                namespace=opts.get("namespace", ""),
                selector=opts.get("selector", ""),
                context=opts.get("context", ""),
                debug=self.debug,
            )

        self.collector.connect()
        self.sink = CSVSampleSink(self.outfile).open()

    # -------------------------------------------------
    # Run / Stop
    # -------------------------------------------------
    async def collect_once(self) -> int:
        samples = await self.collector.collect()
        return self.sink.append_many(samples)

    async def run(self) -> int:
        from ingestion import scheduler

        self.stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal, sig)

        label = "Docker" if self.backend == "docker" else "Kubernetes"
        console.print(
            f"Collecting {label} stats every {self.interval:g}s -> {self.outfile} (Ctrl+C to stop)"
        )

        try:
            return await scheduler.run(self.interval, self.stop_event, self.collect_once)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

    def _handle_signal(self, sig):
        logger.info(f"Received signal {signal.Signals(sig).name}, shutting down...")
        self.stop_event.set()

    def close(self):
        if self.sink:
            self.sink.close()
            logger.info(f"Wrote {self.sink.rows_written} rows to {self.outfile}")
        if self.collector and hasattr(self.collector, "close"):
            self.collector.close()


# -------------------------------------------------
# Entry point
# -------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cstats",
        description="Sample container CPU and memory utilization into a CSV file",
    )
    sub = parser.add_subparsers(dest="backend", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--interval", type=float, help="Collection interval in seconds (default: 5)")
    common.add_argument("--outfile", help="Output CSV file path")
    common.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="JSON config file")
    common.add_argument("--debug", action="store_true", default=None, help="Enable debug logging")
    common.add_argument("--log-file", help="Also write logs to this file")

    docker_parser = sub.add_parser(
        "docker", parents=[common], help="Collect Docker container stats via the Engine API"
    )
    docker_parser.add_argument("--max-workers", type=int, help="Parallel stats requests per cycle")
    docker_parser.add_argument("--compose-project", help="Only sample containers of this compose project")

    k8s_parser = sub.add_parser(
        "kubernetes", aliases=["k8s"], parents=[common],
        help="Collect Kubernetes pod stats via the metrics API",
    )
    k8s_parser.add_argument("--namespace", help="Namespace (empty = all namespaces)")
    k8s_parser.add_argument("--selector", help="Label selector (e.g. app=web)")
    k8s_parser.add_argument("--context", help="Kubeconfig context to use")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    backend = BACKEND_ALIASES[args.backend]

    overrides = {
        "interval": args.interval,
        "outfile": args.outfile,
        "debug": args.debug,
    }
    for key in ("max_workers", "compose_project", "namespace", "selector", "context"):
        overrides[key] = getattr(args, key, None)

    setup_logging(debug=bool(args.debug), log_file=args.log_file)
    config = load_config(backend, args.config, overrides)
    if config.get("debug"):
        logging.getLogger().setLevel(logging.DEBUG)

    daemon = None
    try:
        daemon = ContainerStatsDaemon(backend, config)
        daemon.initialize()
    except (ValueError, RuntimeError, OSError) as e:
        logger.critical(f"{backend} daemon: {e}")
        if daemon is not None:
            daemon.close()
        return 1

    try:
        asyncio.run(daemon.run())
    finally:
        daemon.close()

    return 0


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
