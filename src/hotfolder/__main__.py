"""Command-line entry point for the hot folder engine."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .config import load_config
from .engine import HotFolderEngine
from .errors import ConfigError, ConnectionSetupError


def main() -> None:
    parser = argparse.ArgumentParser(description="Process files dropped into a hot folder")
    parser.add_argument(
        "--config",
        default="hotfolder.yaml",
        help="Path to the YAML configuration file (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR); overrides the config file",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    config_path = Path(args.config)
    try:
        app_config = load_config(config_path)
    except ConfigError as exc:
        logging.error("%s", exc)
        raise SystemExit(2) from exc

    level_name = (args.log_level or app_config.logging.level).upper()
    logging.getLogger().setLevel(getattr(logging, level_name, logging.INFO))

    engine = HotFolderEngine(app_config.engine)
    try:
        engine.run()
    except ConnectionSetupError as exc:
        logging.error("%s", exc)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    main()
