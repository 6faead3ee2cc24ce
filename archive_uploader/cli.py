"""
archive-uploader command line.

Usage:
    archive-uploader [--format tsv|json] [--verbose] <command> ...

Commands:
    hash PATH                       SHA-512 of a local file
    login SERVER TOKEN              store a catalog token for SERVER
    check-hash SERVER HASH          is a resource with HASH already archived?
    check-file SERVER PATH          hash PATH, then check-hash it
    ingest SERVER COLL/INGEST PATH  upload a directory tree into an ingestion
    list-blobs SERVER COLLECTION    list blobs registered in a collection
    delete-collection SERVER COLL   delete a collection and all of its blobs

Results go to stdout in the chosen format; log lines and errors go to
stderr. Each command exits with its own non-zero code on failure (see
``ExitCode``). Individual file failures during ``ingest`` are recorded in the
outcome log and do not change the exit code.
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from azure.core.exceptions import AzureError

from . import auth_store
from .catalog import CatalogClient
from .config import Config, build_logger
from .errors import (
    AuthError,
    CliError,
    ExitCode,
    InputError,
    RequestError,
    SerializationError,
    UnexpectedResponse,
)
from .hashing import hash_file
from .models import Language, ListBlobsFilter, OutputFormat
from .object_store import BlobStore
from .outcome_log import LogFormat, OutcomeLogger
from .pipeline import IngestionPipeline
from .progress import load_progress_index
from .uri import Uri

logger = logging.getLogger("archive_uploader.cli")


class _HashFailed(CliError):
    """Hashing a local file failed inside a command with another exit code."""


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def _as_dict(value: Any) -> Dict[str, Any]:
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, dict):
        return value
    raise SerializationError(f"Cannot serialize result of type {type(value).__name__}")


def _tsv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (list, tuple)):
        return ",".join(_tsv_value(v) for v in value)
    return str(value).replace("\t", " ").replace("\n", " ")


def render(result: Any, output_format: OutputFormat) -> str:
    """Render a command result (a dataclass, dict, or a list of them)."""
    many = isinstance(result, list)
    rows: List[Dict[str, Any]] = [_as_dict(r) for r in (result if many else [result])]

    if output_format is OutputFormat.JSON:
        try:
            return json.dumps(rows if many else rows[0])
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Failed to serialize output: {exc}")

    if not rows:
        return ""
    header = list(rows[0].keys())
    lines = ["\t".join(header)]
    for row in rows:
        lines.append("\t".join(_tsv_value(row.get(col)) for col in header))
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _catalog(args: argparse.Namespace, cfg: Config) -> CatalogClient:
    return CatalogClient(args.server_uri, home=cfg.home, timeout=cfg.catalog_timeout)


def cmd_hash(args: argparse.Namespace, cfg: Config) -> Any:
    return hash_file(args.path)


def cmd_login(args: argparse.Namespace, cfg: Config) -> Any:
    auth_store.set_token(args.server_uri, args.token.strip(), cfg.home)
    logger.info(f"Token saved for {args.server_uri}")
    return None


def cmd_check_hash(args: argparse.Namespace, cfg: Config) -> Any:
    with _catalog(args, cfg) as catalog:
        exists = catalog.check_hash_exists(args.hash)
    return {"hash": args.hash, "exists": exists}


def cmd_check_file(args: argparse.Namespace, cfg: Config) -> Any:
    try:
        hashed = hash_file(args.path)
    except OSError as exc:
        raise _HashFailed(f"Failed to hash file: {exc}")
    with _catalog(args, cfg) as catalog:
        exists = catalog.check_hash_exists(hashed.hash)
    return {"path": hashed.path, "hash": hashed.hash, "exists": exists}


def cmd_list_blobs(args: argparse.Namespace, cfg: Config) -> Any:
    with _catalog(args, cfg) as catalog:
        return catalog.get_blobs_in_collection(args.collection, ListBlobsFilter(args.filter))


def cmd_delete_collection(args: argparse.Namespace, cfg: Config) -> Any:
    with _catalog(args, cfg) as catalog:
        deleted = catalog.delete_collection_with_blobs(args.collection)
    return {"collection": args.collection, "deleted_blobs": deleted}


def _default_log_path(ingestion_uri: Uri, log_format: LogFormat) -> Path:
    millis = int(time.time() * 1000)
    name = f"{ingestion_uri.collection()}_{ingestion_uri.ingestion()}_{millis}.{log_format.extension}"
    return Path.cwd() / name


def cmd_ingest(args: argparse.Namespace, cfg: Config) -> Any:
    # Validate everything local before touching the catalog or the store
    ingestion_uri = Uri.parse(args.ingestion_uri)
    languages = [Language(lang) for lang in args.languages]

    source = Path(args.source_path).expanduser().resolve()
    if not source.exists():
        raise InputError(f"Path not found: {source}")

    container_name = args.bucket or cfg.container_name
    if not container_name:
        raise InputError("No bucket given. Pass --bucket or set CONTAINER_NAME in .env.")
    conn_str = cfg.require_conn_str()

    progress_path = Path(args.progress_from).expanduser() if args.progress_from else None
    progress_index = load_progress_index(progress_path)

    # The log must be readable by --progress-from later, so its extension
    # has to name its format.
    if args.log_file:
        log_path = Path(args.log_file).expanduser()
        try:
            log_format = LogFormat.from_path(log_path)
        except ValueError as exc:
            raise InputError(f"Bad --log-file: {exc}")
    else:
        log_format = LogFormat.for_output(OutputFormat(args.format))
        log_path = _default_log_path(ingestion_uri, log_format)

    logger.info("=" * 60)
    logger.info(f"Ingestion : {ingestion_uri}")
    logger.info(f"Source    : {source}")
    logger.info(f"Bucket    : {container_name}")
    logger.info(f"Languages : {', '.join(lang.value for lang in languages)}")
    logger.info(f"Log       : {log_path} ({log_format.value})")
    logger.info("=" * 60)

    with _catalog(args, cfg) as catalog:
        collection = catalog.get_or_insert_collection(ingestion_uri)
        catalog.get_or_insert_ingestion(ingestion_uri, collection, source, languages)

    try:
        store = BlobStore.from_connection_string(conn_str, container_name)
        store.ensure_container()
    except (AzureError, ValueError) as exc:
        raise CliError(f"Cannot access container '{container_name}': {exc}")

    with OutcomeLogger(log_path, log_format) as outcome_log:
        pipeline = IngestionPipeline(
            store=store,
            outcome_log=outcome_log,
            ingestion_uri=ingestion_uri,
            languages=languages,
            progress_index=progress_index,
            concurrency=cfg.concurrency,
            progress_every=cfg.progress_every,
        )
        stats = pipeline.run(source)

    result = stats.to_json()
    result["log_file"] = str(log_path)
    return result


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="archive-uploader",
        description=(
            "Upload directory trees into the archive with resumable, parallel "
            "transfers, and manage catalog collections."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  archive-uploader login https://archive.example.org $TOKEN\n\n"
            "  # Upload a tree into collection 'leaks', ingestion 'disk-1'\n"
            "  archive-uploader ingest https://archive.example.org leaks/disk-1 /mnt/disk1 \\\n"
            "      --languages english french --bucket ingest-data\n\n"
            "  # Resume a run, skipping files the first run uploaded\n"
            "  archive-uploader --format json ingest https://archive.example.org leaks/disk-1 \\\n"
            "      /mnt/disk1 -l english --progress-from leaks_disk-1_1700000000000.ndjson\n"
        ),
    )
    parser.add_argument(
        "--format",
        choices=[f.value for f in OutputFormat],
        default=OutputFormat.TSV.value,
        help="Output format for results and for the ingest outcome log (default: tsv).",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log debug output to stderr.")

    sub = parser.add_subparsers(dest="command", metavar="<command>")
    sub.required = True

    p = sub.add_parser("hash", help="Hash a file the way the catalog identifies resources.")
    p.add_argument("path")
    p.set_defaults(handler=cmd_hash, exit_code=ExitCode.HASH)

    p = sub.add_parser("login", help="Store the bearer token for a catalog server.")
    p.add_argument("server_uri")
    p.add_argument("token")
    p.set_defaults(handler=cmd_login, exit_code=ExitCode.SET_AUTH_TOKEN)

    p = sub.add_parser("check-hash", help="Check whether a resource hash is already archived.")
    p.add_argument("server_uri")
    p.add_argument("hash")
    p.set_defaults(handler=cmd_check_hash, exit_code=ExitCode.API)

    p = sub.add_parser("check-file", help="Hash a local file and check whether it is archived.")
    p.add_argument("server_uri")
    p.add_argument("path")
    p.set_defaults(handler=cmd_check_file, exit_code=ExitCode.API)

    p = sub.add_parser("ingest", help="Upload a directory tree into an ingestion.")
    p.add_argument("server_uri")
    p.add_argument("ingestion_uri", help="Target in the form collection/ingestion.")
    p.add_argument("source_path", help="File or directory to upload. Directories are walked recursively.")
    p.add_argument(
        "--languages",
        "-l",
        nargs="+",
        required=True,
        choices=[lang.value for lang in Language],
        help="Languages of the documents being ingested.",
    )
    p.add_argument("--bucket", default=None, help="Target storage container. Overrides CONTAINER_NAME in .env.")
    p.add_argument(
        "--progress-from",
        default=None,
        metavar="LOG",
        help="Outcome log (.tsv or .ndjson) of an earlier run; files it records as uploaded are skipped.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        metavar="LOG",
        help=(
            "Where to append outcomes; a .tsv or .ndjson extension picks the log format "
            "(default: collection_ingestion_<millis>.<format> in the working directory)."
        ),
    )
    p.set_defaults(handler=cmd_ingest, exit_code=ExitCode.UPLOAD)

    p = sub.add_parser("list-blobs", help="List blobs registered in a collection.")
    p.add_argument("server_uri")
    p.add_argument("collection")
    p.add_argument(
        "--filter",
        choices=[f.value for f in ListBlobsFilter],
        default=ListBlobsFilter.ALL.value,
        help="'in-multiple' lists only blobs that also belong to other collections.",
    )
    p.set_defaults(handler=cmd_list_blobs, exit_code=ExitCode.API)

    p = sub.add_parser("delete-collection", help="Delete a collection and every blob in it.")
    p.add_argument("server_uri")
    p.add_argument("collection")
    p.set_defaults(handler=cmd_delete_collection, exit_code=ExitCode.API)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    output_format = OutputFormat(args.format)

    try:
        cfg = Config()
        build_logger(cfg.log_dir, args.verbose)
        result = args.handler(args, cfg)
        if result is not None:
            print(render(result, output_format))
    except SerializationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return ExitCode.SERIALIZATION
    except _HashFailed as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return ExitCode.HASH
    except (AuthError, UnexpectedResponse, RequestError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return ExitCode.API
    except (CliError, OSError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return args.exit_code

    return ExitCode.SUCCESS


def main() -> None:
    sys.exit(int(run()))


if __name__ == "__main__":
    main()
