"""Command line interface for driveup."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from rich.logging import RichHandler

from .cli_progress import SingleFileUploadProgress, render_configuration_summary
from .config import UploaderConfig, load_config
from .exceptions import ConfigurationError


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _setup_logging(debug: bool, silent: bool, log_level: Optional[str]) -> str:
    """
    Configure logging.

    Default behavior is silent unless --debug or --log-level is provided.
    Returns a string describing effective mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    logging.disable(logging.NOTSET)

    if silent or (not debug and not log_level):
        logging.disable(logging.CRITICAL)
        root_logger.setLevel(logging.CRITICAL + 1)
        return "silent"

    if debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, log_level.upper(), logging.INFO)

    handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    return logging.getLevelName(level)


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_env_file(path: Path, override: bool = False) -> None:
    if not path.exists():
        raise CLIError(f"env file not found: {path}")
    if not path.is_file():
        raise CLIError(f"env path is not a file: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"could not read env file {path}: {exc}") from exc

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = _strip_optional_quotes(value.strip())
        if override or key not in os.environ:
            os.environ[key] = value


def _resolve_default_env_file() -> Optional[Path]:
    default_env = Path(".env")
    return default_env if default_env.exists() and default_env.is_file() else None


def _describe_dest(dest: Optional[str], source: Path) -> str:
    if dest is None or dest.strip() in {"", "/"}:
        return f"/{source.name}"
    if dest.strip().endswith(("/", "\\")):
        return dest.strip().rstrip("/\\") + "/" + source.name
    return dest.strip()


async def _run_upload(source: Path, dest: Optional[str], config: UploaderConfig) -> int:
    from .orchestrator import UploadOrchestrator

    progress = SingleFileUploadProgress(source)
    async with UploadOrchestrator(config) as orchestrator:
        progress.start()
        result = await orchestrator.upload(source, dest, progress.get_callback())

    if result.success:
        progress.complete(success=True)
        return 0

    progress.complete(success=False, error=f"[{result.code}] {result.message}")
    if getattr(result, "recoverable", False):
        print("Progress was saved; run the same command again to resume.", file=sys.stderr)
    return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="driveup",
        description="Upload a file to the drive, resuming interrupted uploads.",
    )
    parser.add_argument("source", nargs="?", type=Path, help="Local file to upload")
    parser.add_argument(
        "-g",
        "--dest",
        default=None,
        help="Remote destination (example: /Videos/2026/ or /Videos/2026/clip.mp4)",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="JSON config with access_tokens (default from DRIVEUP_CONFIG or ./config.json)",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="Directory for resume records (default from DRIVEUP_STATE_DIR or the temp dir)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="driveup",
    )
    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1

    if args.source is None:
        parser.print_help()
        return 0

    source = Path(args.source).expanduser()
    if not source.is_file():
        print(f"ERROR: source is not a file: {source}", file=sys.stderr)
        return 1

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    if args.state_dir is not None:
        config.state_dir = args.state_dir.expanduser()

    effective_log_mode = _setup_logging(
        debug=args.debug or config.debug,
        silent=args.silent,
        log_level=args.log_level,
    )

    render_configuration_summary(
        {
            "Source": str(source),
            "Dest": _describe_dest(args.dest, source),
            "Accounts": len(config.access_tokens),
            "State Dir": str(config.state_dir) if config.state_dir else "(temp dir)",
            "Env File": str(used_env_file) if used_env_file else "-",
            "Logging": effective_log_mode,
        }
    )

    try:
        return asyncio.run(_run_upload(source, args.dest, config))
    except (CLIError, ConfigurationError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled. Run the same command again to resume.", file=sys.stderr)
        return 130


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
