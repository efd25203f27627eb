"""
arr-conversion: upload a 3D asset to Azure Blob Storage and convert it with
Azure Remote Rendering.

Usage:
    python -m arr_conversion [--config arrconfig.json] [--upload] [--convert]
                             [--conversion-status --id ID [--poll]]
                             [--use-container-sas] [--dry-run]

With no stage flags the asset directory is uploaded, a conversion is
submitted and its status is polled until Success or Failure.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

import requests

from arr_conversion.auth import get_access_token
from arr_conversion.config import Settings, load_settings, validate_settings
from arr_conversion.conversion import (
    DEFAULT_POLL_INTERVAL,
    PollOutcome,
    PollResult,
    get_conversion_status,
    interpret_status,
    poll_conversion,
    submit_conversion,
)
from arr_conversion.errors import ConfigurationError, ConversionToolError
from arr_conversion.storage import (
    converted_asset_url,
    ensure_container,
    generate_container_sas_tokens,
    get_service_client,
)
from arr_conversion.uploader import plan_upload, upload_asset_directory

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _build_logger(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "conversion_process.log"

    logger = logging.getLogger("arr_conversion")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logger.addHandler(console)
    logger.addHandler(fh)
    return logger


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------

# flag dest -> settings field
_OVERRIDES = {
    "account_id": "account_id",
    "account_key": "account_key",
    "authentication_endpoint": "authentication_endpoint",
    "service_endpoint": "service_endpoint",
    "region": "region",
    "storage_account_name": "storage_account_name",
    "input_container": "blob_input_container_name",
    "output_container": "blob_output_container_name",
    "local_asset_directory": "local_asset_directory_path",
    "input_asset_path": "input_asset_path",
    "input_folder_path": "input_folder_path",
    "output_folder_path": "output_folder_path",
    "output_asset_file_name": "output_asset_file_name",
}


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="arr-conversion",
        description=(
            "Upload a local asset directory to Azure Blob Storage, submit it to the "
            "Azure Remote Rendering conversion service and poll until it finishes."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Upload, convert and poll using arrconfig.json\n"
            "  python -m arr_conversion\n\n"
            "  # Convert with container SAS tokens instead of linked storage\n"
            "  python -m arr_conversion --use-container-sas\n\n"
            "  # Check on an earlier conversion\n"
            "  python -m arr_conversion --conversion-status --id <conversionId> --poll\n\n"
            "  # Dry run: validate config and list the blobs that would be written\n"
            "  python -m arr_conversion --upload --dry-run\n"
        ),
    )
    parser.add_argument("--config", default=None, metavar="FILE",
                        help="JSON config file (default: arrconfig.json if present).")

    stages = parser.add_argument_group("stages")
    stages.add_argument("--upload", action="store_true", help="Upload the local asset directory.")
    stages.add_argument("--convert", action="store_true",
                        help="Submit a conversion and poll it to completion.")
    stages.add_argument("--conversion-status", action="store_true",
                        help="Query the status of the conversion given by --id.")
    stages.add_argument("--id", dest="conversion_id", default=None,
                        help="Conversion id for --conversion-status.")
    stages.add_argument("--poll", action="store_true",
                        help="With --conversion-status, poll until a terminal status.")
    stages.add_argument("--use-container-sas", action="store_true",
                        help="Grant the service access through container SAS tokens.")
    stages.add_argument("--dry-run", action="store_true",
                        help="Validate config and list files that would be uploaded, without uploading.")

    account = parser.add_argument_group("account overrides")
    account.add_argument("--account-id", default=None)
    account.add_argument("--account-key", default=None)
    account.add_argument("--authentication-endpoint", default=None)
    account.add_argument("--service-endpoint", default=None)
    account.add_argument("--region", default=None)

    asset = parser.add_argument_group("asset conversion overrides")
    asset.add_argument("--storage-account-name", default=None)
    asset.add_argument("--input-container", default=None)
    asset.add_argument("--output-container", default=None)
    asset.add_argument("--local-asset-directory", default=None)
    asset.add_argument("--input-asset-path", default=None)
    asset.add_argument("--input-folder-path", default=None)
    asset.add_argument("--output-folder-path", default=None)
    asset.add_argument("--output-asset-file-name", default=None)
    asset.add_argument("--additional-parameters", default=None, metavar="JSON",
                       help="JSON object merged into the top level of the conversion request.")

    polling = parser.add_argument_group("polling")
    polling.add_argument("--poll-interval", type=float, default=DEFAULT_POLL_INTERVAL,
                         metavar="SECONDS")
    polling.add_argument("--max-polls", type=int, default=None, metavar="N",
                         help="Give up after N status queries (default: no limit).")
    polling.add_argument("--timeout", type=float, default=None, metavar="SECONDS",
                         help="Give up after this many seconds of polling (default: no limit).")

    args = parser.parse_args(argv)
    if args.poll_interval < 0:
        parser.error("--poll-interval must not be negative")
    if args.max_polls is not None and args.max_polls < 1:
        parser.error("--max-polls must be at least 1")
    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be positive")
    if args.conversion_status and not args.conversion_id:
        parser.error("--conversion-status requires --id")
    if not (args.upload or args.convert or args.conversion_status):
        args.upload = args.convert = True
    return args


def _extra_fields(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"--additional-parameters is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ConfigurationError("--additional-parameters must be a JSON object.")
    return value


def resolve_settings(args: argparse.Namespace) -> Settings:
    overrides = {field: getattr(args, dest) for dest, field in _OVERRIDES.items()}
    settings = load_settings(args.config, overrides)
    validate_settings(
        settings,
        need_service=(args.convert or args.conversion_status) and not args.dry_run,
        need_storage=args.upload or args.convert,
        need_storage_key=(args.upload and not args.dry_run) or (args.convert and args.use_container_sas),
        need_local=args.upload,
    )
    return settings


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def _report(result: PollResult, settings: Settings, logger: logging.Logger) -> int:
    if result.outcome is PollOutcome.SUCCEEDED:
        asset = result.converted_asset or {}
        logger.info("Conversion succeeded.")
        logger.info(f"  Storage account : {asset.get('storageAccountName')}")
        logger.info(f"  Container       : {asset.get('blobContainerName')}")
        logger.info(f"  Asset path      : {asset.get('assetFilePath')}")
        url = converted_asset_url(settings, asset) if settings.storage_connection_string else None
        if url:
            logger.info(f"  Read SAS URL    : {url}")
        return 0
    if result.outcome is PollOutcome.PENDING:
        logger.info(f"Conversion still in progress (status: {result.status}).")
        return 0
    if result.outcome is PollOutcome.TIMED_OUT:
        logger.error(f"Gave up waiting for the conversion: {result.reason}")
        return 1
    logger.error(f"Conversion failed: {result.reason}")
    return 1


def run(args: argparse.Namespace, settings: Settings, logger: logging.Logger,
        extra_fields: Optional[dict] = None,
        session: Optional[requests.Session] = None) -> int:
    """Execute the selected stages in order. Returns the process exit code."""
    if args.upload:
        logger.info("--- Upload ---")
        if args.dry_run:
            files = plan_upload(settings)
            logger.info("[DRY RUN] Files that would be uploaded:")
            width = len(str(len(files)))
            for i, (fp, bn) in enumerate(files, 1):
                logger.info(f"  [{i:>{width}}] {fp.stat().st_size:>14,} bytes  →  {bn}")
            logger.info("[DRY RUN] No files were uploaded.")
            return 0
        service = get_service_client(settings)
        container = ensure_container(service, settings.conversion.blob_input_container_name)
        upload_asset_directory(settings, container)

    if not (args.convert or args.conversion_status):
        return 0
    if args.dry_run:
        logger.info("[DRY RUN] Skipping conversion.")
        return 0

    token = get_access_token(settings.account, session=session)

    if args.conversion_status:
        logger.info(f"--- Conversion status: {args.conversion_id} ---")
        if args.poll:
            result = _poll(args, settings, token, args.conversion_id, session)
        else:
            status = get_conversion_status(settings, token, args.conversion_id, session=session)
            if not status.ok:
                logger.error(f"Status request failed: {status.error}")
                return 1
            result = interpret_status(status.body, attempts=1)
        return _report(result, settings, logger)

    logger.info("--- Conversion ---")
    if settings.storage_connection_string:
        service = get_service_client(settings)
        ensure_container(service, settings.conversion.blob_output_container_name)
    if args.use_container_sas:
        settings = generate_container_sas_tokens(settings)

    submitted = submit_conversion(
        settings,
        token,
        use_sas=args.use_container_sas,
        extra_fields=extra_fields,
        session=session,
    )
    if not submitted.ok:
        logger.error(f"Conversion could not be submitted: {submitted.error}")
        return 1

    result = _poll(args, settings, token, submitted.conversion_id, session)
    return _report(result, settings, logger)


def _poll(args, settings, token, conversion_id, session) -> PollResult:
    logger = logging.getLogger("arr_conversion")
    limits = []
    if args.max_polls is not None:
        limits.append(f"max {args.max_polls} queries")
    if args.timeout is not None:
        limits.append(f"timeout {args.timeout:g}s")
    logger.info(
        f"Polling every {args.poll_interval:g}s"
        + (f" ({', '.join(limits)})" if limits else " until Success or Failure")
    )
    return poll_conversion(
        settings,
        token,
        conversion_id,
        interval=args.poll_interval,
        max_attempts=args.max_polls,
        deadline=args.timeout,
        session=session,
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)

    # Config: validate everything before touching Azure
    try:
        settings = resolve_settings(args)
        extra_fields = _extra_fields(args.additional_parameters)
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    log_dir = Path(settings.log_path) if settings.log_path else Path.cwd() / "logs"
    logger = _build_logger(log_dir)

    logger.info("=" * 60)
    logger.info("  arr-conversion: Azure Remote Rendering asset conversion")
    logger.info("=" * 60)

    try:
        code = run(args, settings, logger, extra_fields=extra_fields)
    except ConversionToolError as exc:
        logger.error(str(exc))
        code = 1

    logger.info("=" * 60)
    logger.info("  Finished successfully" if code == 0 else "  Finished with errors")
    logger.info("=" * 60)
    sys.exit(code)
