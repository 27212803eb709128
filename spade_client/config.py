import argparse
import os
import urllib3

from typing import List, Optional

from spade_client import __version__
from spade_client.errors import StartupError

DEFAULT_SPADE_URL = "https://api.spade.storacha.network"
DEFAULT_DOWNLOAD_PATH = "/tmp/filecoin-spade-downloads"


def env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="spade-client",
        description="Requests, downloads and imports Filecoin Spade deals into Boost.",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--miner-id",
        help="Storage Provider miner ID (ie. f0123456)",
        type=str,
        default=os.environ.get("MINER_ID"),
        required=not os.environ.get("MINER_ID"),
    )
    parser.add_argument(
        "--fil-spid-file-path",
        help="Full file path of the `fil-spid.bash` authorization script provided by Spade.",
        type=str,
        default=os.environ.get("FIL_SPID_FILE_PATH"),
        required=not os.environ.get("FIL_SPID_FILE_PATH"),
    )
    parser.add_argument(
        "--spade-url",
        help=f"Base URL of the Spade API. Default: {DEFAULT_SPADE_URL}",
        type=str,
        default=os.environ.get("SPADE_URL", DEFAULT_SPADE_URL),
    )
    parser.add_argument(
        "--aria2c-url",
        help="URL of the aria2c process running in daemon mode (eg. 'http://localhost:6800'). Launch the daemon with `aria2c --enable-rpc`.",
        type=str,
        default=os.environ.get("ARIA2C_URL", "http://localhost:6800"),
    )
    parser.add_argument(
        "--aria2c-secret",
        help="RPC secret of the aria2c daemon (`--rpc-secret`). Default: none",
        type=str,
        default=os.environ.get("ARIA2C_SECRET", ""),
    )
    parser.add_argument(
        "--aria2c-connections-per-server",
        help="Configures the '-x' flag in aria2c. (eg. aria2c -x8 <uri>). Default: 10",
        type=int,
        default=int(os.environ.get("ARIA2C_CONNECTIONS_PER_SERVER", 10)),
    )
    parser.add_argument(
        "--aria2c-download-path",
        help=f"The directory into which aria2c should download files before they are imported to Boost. Default: {DEFAULT_DOWNLOAD_PATH}",
        type=str,
        default=os.environ.get("ARIA2C_DOWNLOAD_PATH", DEFAULT_DOWNLOAD_PATH),
    )
    parser.add_argument(
        "--boost-api-info",
        help="The Boost api string normally set as the BOOST_API_INFO environment variable (eg. 'eyJhbG...aCG:/ip4/10.0.0.10/tcp/1234/http')",
        type=str,
        default=os.environ.get("BOOST_API_INFO"),
        required=not os.environ.get("BOOST_API_INFO"),
    )
    parser.add_argument(
        "--boost-graphql-port",
        help="The port number where Boost's graphql is hosted. Default: 8080",
        type=int,
        default=int(os.environ.get("BOOST_GRAPHQL_PORT", 8080)),
    )
    parser.add_argument(
        "--no-boost-delete-after-import",
        help="Keep the downloaded data after Boost imported it. Inverse of 'boostd --delete-after-import'.",
        dest="boost_delete_after_import",
        action="store_false",
        default=env_flag("BOOST_DELETE_AFTER_IMPORT", True),
    )
    parser.add_argument(
        "--max-spade-deals-active",
        help="Total number of Spade deals that should be actively downloading or requested. Sealing is not counted. Default: 2",
        type=int,
        default=int(os.environ.get("MAX_SPADE_DEALS_ACTIVE", 2)),
    )
    parser.add_argument(
        "--pending-refresh-interval",
        help="Seconds between two scans of the pending proposals. Default: 30",
        type=float,
        default=float(os.environ.get("PENDING_REFRESH_INTERVAL", 30)),
    )
    parser.add_argument(
        "--monitor-interval",
        help="Seconds between two download status polls. Default: 10",
        type=float,
        default=float(os.environ.get("MONITOR_INTERVAL", 10)),
    )
    parser.add_argument(
        "--acquire-retries",
        help="How many times starting a download is retried before the deal is given up. Default: 10",
        type=int,
        default=int(os.environ.get("ACQUIRE_RETRIES", 10)),
    )
    parser.add_argument(
        "--acquire-backoff-seconds",
        help="Linear backoff step between download start attempts, in seconds. Default: 10",
        type=float,
        default=float(os.environ.get("ACQUIRE_BACKOFF_SECONDS", 10)),
    )
    parser.add_argument(
        "--ignored-piece-cids",
        help="Comma separated piece CIDs which must never be requested from Spade.",
        type=split_list,
        default=split_list(os.environ.get("IGNORED_PIECE_CIDS")),
    )
    parser.add_argument(
        "--insecure-skip-verify",
        help="Do not verify TLS certificates of the remote services. Default: False",
        action="store_true",
        default=env_flag("INSECURE_SKIP_VERIFY"),
    )
    parser.add_argument(
        "--complete-existing-deals-only",
        help="Setting this flag will prevent new deals from being requested but allow existing deals to complete. Default: False",
        action="store_true",
        default=env_flag("COMPLETE_EXISTING_DEALS_ONLY"),
    )
    parser.add_argument(
        "--verbose",
        help="If enabled, the loop state is logged on every tick. Default: False",
        action="store_true",
        default=env_flag("VERBOSE"),
    )
    parser.add_argument(
        "--debug",
        help="If enabled, logging will be thorough, enabling debugging of deep issues. Default: False",
        action="store_true",
        default=env_flag("DEBUG"),
    )
    options = parser.parse_args(argv)
    if options.max_spade_deals_active < 1:
        parser.error("--max-spade-deals-active must be at least 1")
    return options


def describe(options: argparse.Namespace) -> str:
    return "\n    ".join(f"{k}={v}" for k, v in vars(options).items() if k != "boost_api_info")


def startup_checks(*, options: argparse.Namespace) -> None:
    if not os.path.exists(options.fil_spid_file_path):
        raise StartupError(f"Authorization script does not exist: {options.fil_spid_file_path}")

    if not os.path.isdir(options.aria2c_download_path):
        raise StartupError(f"Aria2c download directory does not exist: {options.aria2c_download_path}")

    if options.insecure_skip_verify:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
