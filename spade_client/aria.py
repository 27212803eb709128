import argparse
import logging
import threading
import aria2p
import requests

from typing import List, Optional

from spade_client.errors import StartupError, TransientRemoteError
from spade_client.schemas import TransferState, TransferStatus

log = logging.getLogger("Aria2")

TRANSPORT_ERRORS = (aria2p.ClientException, requests.exceptions.RequestException)


def connect(*, options: argparse.Namespace) -> aria2p.API:
    host, _, port = options.aria2c_url.rpartition(":")
    try:
        api = aria2p.API(aria2p.Client(host=host, port=int(port), secret=options.aria2c_secret))
        version = api.client.get_version()
    except (ValueError,) + TRANSPORT_ERRORS as e:
        raise StartupError(f"Could not connect to an aria2 daemon running at '{options.aria2c_url}': {e}") from e
    log.info(f"Successfully connected to aria2 {version.get('version', '')}")
    return api


class AriaClient:
    """Transfer adapter on top of an aria2c daemon."""

    def __init__(self, api: aria2p.API, *, options: argparse.Namespace):
        self.api = api
        self.options = options
        # aria2p shares one requests session per client, calls are serialized.
        self._lock = threading.Lock()

    def _find_by_uris(self, source_uris: List[str]) -> List[aria2p.Download]:
        wanted = set(source_uris)
        found = []
        for d in self.api.get_downloads():
            if d.is_removed:
                continue
            if any(u["uri"] in wanted for f in d.files for u in f.uris):
                found.append(d)
        return found

    def start_or_attach(self, source_uris: List[str], out_name: str) -> str:
        with self._lock:
            try:
                existing = self._find_by_uris(source_uris)
                if existing:
                    if len(source_uris) > 1:
                        log.warning(f"Multiple sources offered, attaching to the download of one of them: {source_uris}")
                    if len(existing) > 1:
                        log.warning(f"{len(existing)} downloads match {source_uris}, attaching to {existing[0].gid}")
                    log.info(f"Found existing download {existing[0].gid}: {existing[0].status}")
                    return existing[0].gid

                if len(source_uris) > 1:
                    log.warning(f"Multiple sources offered! Only using first source: {source_uris[0]}")
                log.info(f"Starting download [{source_uris[0]}] to file [{out_name}]")
                down = self.api.add_uris(
                    [source_uris[0]],
                    options={
                        "dir": self.options.aria2c_download_path,
                        "out": out_name,
                        "max-connection-per-server": str(self.options.aria2c_connections_per_server),
                        "auto-file-renaming": "false",
                        "continue": "true",
                        "always-resume": "true",
                    },
                )
            except TRANSPORT_ERRORS as e:
                raise TransientRemoteError(f"aria2 could not start download of {source_uris[0]}: {e}") from e
        return down.gid

    def poll(self, gid: str) -> TransferStatus:
        with self._lock:
            try:
                down = self.api.get_download(gid)
            except TRANSPORT_ERRORS as e:
                raise TransientRemoteError(f"aria2 status of {gid}: {e}") from e
        output_path: Optional[str] = None
        if down.files:
            output_path = str(down.files[0].path)
        log.debug(
            f"{gid}: {down.status} {down.completed_length_string()} / {down.total_length_string()} "
            f"@ {down.download_speed_string()}"
        )
        return TransferStatus(
            gid=gid,
            state=TransferState(down.status),
            completed=down.completed_length,
            total=down.total_length,
            speed=down.download_speed,
            output_path=output_path,
            error_message=down.error_message or "",
        )

    def remove(self, gid: str) -> None:
        with self._lock:
            try:
                self.api.client.remove_download_result(gid)
            except TRANSPORT_ERRORS as e:
                raise TransientRemoteError(f"aria2 could not remove {gid}: {e}") from e
        log.debug(f"Removed {gid} from aria2c")
