import argparse
import logging
import posixpath
import threading
import tenacity

from enum import Enum
from urllib.parse import urlparse

from spade_client.errors import (
    DealCancelled,
    NoSourcesError,
    RemoteApiError,
    SpadeClientError,
    TransientRemoteError,
)
from spade_client.registry import Admission, DealState
from spade_client.schemas import DealProposal, TransferState, TransferStatus

log = logging.getLogger("Deal")
log_retry = logging.getLogger("RETRYING")


class DealStage(str, Enum):
    ADMITTED = "admitted"
    ACQUIRING = "acquiring"
    MONITORING = "monitoring"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


def output_name(proposal: DealProposal) -> str:
    name = posixpath.basename(urlparse(proposal.sources[0]).path)
    return name or f"{proposal.piece_cid}.car"


class DealHandler:
    """Drives one admitted proposal through download, import and completion.

    admit() is the entry guard and runs on the caller's thread, so the
    proposal counts as active before any worker thread exists. run() then
    takes the admitted proposal to an outcome. Whatever happens, the proposal
    leaves the active registry exactly once: moved to the imported set on
    success, dropped otherwise.
    """

    def __init__(self, *, spade, boost, aria, state: DealState, options: argparse.Namespace, cancel: threading.Event):
        self.spade = spade
        self.boost = boost
        self.aria = aria
        self.state = state
        self.options = options
        self.cancel = cancel

    def handle(self, proposal: DealProposal) -> DealStage:
        if not self.admit(proposal):
            return DealStage.REJECTED
        return self.run(proposal)

    def admit(self, proposal: DealProposal) -> bool:
        admission = self.state.active.admit(proposal, max_active=self.options.max_spade_deals_active)
        if admission != Admission.ADMITTED:
            log.debug(f"Not handling {proposal.proposal_id}: {admission.value}")
            return False
        self._stage(proposal, DealStage.ADMITTED)
        return True

    def run(self, proposal: DealProposal) -> DealStage:
        """Run an admitted proposal to its outcome and release its active entry."""
        log.info(f"Handling deal {proposal.proposal_id} (PieceCID={proposal.piece_cid})")
        completed = False
        try:
            stage = self._run(proposal)
            completed = stage == DealStage.COMPLETED
            self._stage(proposal, stage)
            return stage
        finally:
            if not completed:
                self.state.active.remove(proposal.proposal_id)

    def _run(self, proposal: DealProposal) -> DealStage:
        pid = proposal.proposal_id
        try:
            self._stage(proposal, DealStage.ACQUIRING)
            gid = self._acquire(proposal)
            self._stage(proposal, DealStage.MONITORING)
            status = self._monitor(proposal, gid)
        except DealCancelled:
            log.info(f"Stopping deal {pid}: cancelled")
            return DealStage.CANCELLED
        except tenacity.RetryError as e:
            log.error(f"Could not handle deal {pid}! Giving up: {e.last_attempt.exception()}")
            return DealStage.FAILED
        except NoSourcesError as e:
            log.error(str(e))
            return DealStage.FAILED
        except SpadeClientError as e:
            log.error(f"Could not start download for {pid}: {e}")
            return DealStage.FAILED

        if status.state != TransferState.COMPLETE or not status.output_path:
            log.info(f"Download errored {gid} ({pid}): {status.error_message or status.state.value} - stopping and removing")
            self._remove_transfer(gid)
            return DealStage.FAILED

        log.info(f"Download finished {gid} ({pid})")
        self._stage(proposal, DealStage.IMPORTING)
        try:
            self.boost.import_deal(pid, status.output_path)
        except SpadeClientError as e:
            log.warning(f"Failure importing boost deal {pid}: {e}")
            return DealStage.FAILED

        self._remove_transfer(gid)
        self.state.active.complete(pid)
        log.info(f"Successfully downloaded and imported {pid}")
        return DealStage.COMPLETED

    @staticmethod
    def _stage(proposal: DealProposal, stage: DealStage) -> None:
        log.debug(f"Deal {proposal.proposal_id} -> {stage.value}")

    def _sleep(self, seconds: float) -> None:
        if self.cancel.wait(seconds):
            raise DealCancelled()

    def _acquire(self, proposal: DealProposal) -> str:
        if not proposal.sources:
            raise NoSourcesError(f"No sources found for {proposal.proposal_id}: {proposal!r}")

        step = self.options.acquire_backoff_seconds
        retrying = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self.options.acquire_retries + 1),
            wait=tenacity.wait_incrementing(start=step, increment=step),
            retry=tenacity.retry_if_exception_type((TransientRemoteError, RemoteApiError)),
            sleep=self._sleep,
            before_sleep=tenacity.before_sleep_log(log_retry, logging.WARNING),
        )
        return retrying(self._start_transfer, proposal)

    def _start_transfer(self, proposal: DealProposal) -> str:
        manifest = self.spade.fetch_manifest(proposal.proposal_id)
        log.debug(f"Found {len(manifest.piece_list)} segments for {proposal.proposal_id}")
        return self.aria.start_or_attach(list(proposal.sources), output_name(proposal))

    def _monitor(self, proposal: DealProposal, gid: str) -> TransferStatus:
        log.info(f"Monitoring download {gid} for {proposal.proposal_id}")
        while True:
            if self.cancel.is_set():
                raise DealCancelled()
            try:
                status = self.aria.poll(gid)
            except TransientRemoteError as e:
                log.warning(f"Error getting status for download {gid}: {e}")
            else:
                if status.finished:
                    return status
                log.info(
                    f"Download {gid} ({proposal.proposal_id}): {status.state.value} @ {status.speed} B/s "
                    f"[{status.completed} / {status.total} ({status.percentage:3.2f}%)]"
                )
            self._sleep(self.options.monitor_interval)

    def _remove_transfer(self, gid: str) -> None:
        try:
            self.aria.remove(gid)
        except SpadeClientError as e:
            log.warning(f"Could not remove download {gid} from aria2c: {e}")
