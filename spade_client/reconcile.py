import argparse
import json
import logging
import threading

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from retry.api import retry_call

from spade_client.classifier import FailureKind, classify
from spade_client.errors import SpadeClientError
from spade_client.lifecycle import DealHandler
from spade_client.registry import DealState
from spade_client.schemas import DealProposal, PendingProposals, ProposalFailure

log = logging.getLogger("Ace")

CANCEL_TRIES = 3
CANCEL_DELAY = 5


class PhaseResult(Enum):
    CONTINUE = "continue"
    SKIP_REST = "skip_rest"


@dataclass
class TickReport:
    fetched: bool = False
    pending: int = 0
    failures: int = 0
    duplicates_cancelled: List[str] = field(default_factory=list)
    newly_failed: List[str] = field(default_factory=list)
    matched: List[str] = field(default_factory=list)
    requested: List[str] = field(default_factory=list)
    skipped_after: Optional[str] = None


class Reconciler:
    """Periodic scan of Spade's pending proposals against Boost's open deals.

    A tick runs fetch, failure handling, matching and admission in that order.
    Every decision is derived again from the remote state on each tick, so a
    failed or missed tick is repaired by the next one.

    Matched proposals pass the deal entry guard on the loop thread; dispatch
    only ever receives proposals that are already counted as active.
    """

    def __init__(
        self,
        *,
        spade,
        boost,
        aria,
        options: argparse.Namespace,
        cancel: threading.Event,
        state: Optional[DealState] = None,
        dispatch: Optional[Callable[[DealProposal], None]] = None,
        detach: Optional[Callable[[Callable[[], None], str], None]] = None,
    ):
        self.spade = spade
        self.boost = boost
        self.options = options
        self.cancel = cancel
        self.state = state or DealState()
        self.handler = DealHandler(
            spade=spade, boost=boost, aria=aria, state=self.state, options=options, cancel=cancel
        )
        self.dispatch = dispatch or self._spawn_deal
        self.detach = detach or self._spawn_background

    def run(self) -> None:
        log.info(f"Scanning pending proposals every {self.options.pending_refresh_interval}s")
        while not self.cancel.is_set():
            report = self.tick()
            if (
                self.options.complete_existing_deals_only
                and report.skipped_after is None
                and not report.matched
                and self.state.inflight() == 0
            ):
                log.info("No more deals in flight. Exiting due to --complete-existing-deals-only flag.")
                return
            if self.cancel.wait(self.options.pending_refresh_interval):
                break
        log.info("Stopping pending proposal worker: cancelled")

    def tick(self) -> TickReport:
        report = TickReport()
        self._log_state("Loop start state")

        pending = self.fetch(report)
        if pending is None:
            report.skipped_after = "fetch"
            return report

        self.handle_failures(pending.failures, report)

        if self.match(pending.proposals, report) == PhaseResult.SKIP_REST:
            report.skipped_after = "match"
            return report

        self.admit(report)
        self._log_state("Loop end state")
        return report

    def fetch(self, report: TickReport) -> Optional[PendingProposals]:
        log.info("> Fetching pending proposals")
        try:
            pending = self.spade.fetch_pending()
        except SpadeClientError as e:
            log.warning(f" > Could not fetch pending proposals: {e}")
            return None
        report.fetched = True
        report.pending = len(pending.proposals)
        report.failures = len(pending.failures)
        log.info(f" > {report.pending} pending proposals, {report.failures} recent failures")
        return pending

    def handle_failures(self, failures: List[ProposalFailure], report: TickReport) -> None:
        for failure in failures:
            verdict = classify(failure.error)

            if verdict.kind == FailureKind.DUPLICATE:
                self._handle_duplicate(failure, verdict.deal_id, report)
                continue

            if verdict.kind == FailureKind.NOT_YET_SEALABLE:
                # A new request would carry the same expiration, re-requesting cannot help.
                self.spade.mark_piece_already_requested(failure.piece_cid)

            if failure.piece_cid in self.state.failures:
                continue

            self.state.waiting.discard(failure.piece_cid)
            if verdict.kind == FailureKind.IGNORABLE:
                log.warning(f"   > PieceCID {failure.piece_cid} failed with {failure.error} remote failure, not adding to failure map")
                continue
            self.state.failures.put_if_absent(failure.piece_cid, failure.error)
            report.newly_failed.append(failure.piece_cid)
            log.warning(f"   > PieceCID {failure.piece_cid} failed with {failure.error}")

    def _handle_duplicate(self, failure: ProposalFailure, deal_id: str, report: TickReport) -> None:
        if not self.state.duplicates.put_if_absent(failure.piece_cid, deal_id):
            return

        log.warning("  > Captured a duplicate deal - cancelling deal in Boost")
        log.warning(f"   > PieceCID: {failure.piece_cid}")
        log.warning(f"   > Proposal: {failure.proposal_id}")
        log.warning(f"   > Duplicate of: {deal_id}")

        self.detach(lambda: self._cancel_duplicate(deal_id), f"cancel-{deal_id}")
        # Spade keeps reporting the failure after the cancel, so the piece must not be offered again.
        self.spade.mark_piece_already_requested(failure.piece_cid)
        self.state.waiting.discard(failure.piece_cid)
        report.duplicates_cancelled.append(deal_id)

    def _cancel_duplicate(self, deal_id: str) -> None:
        try:
            retry_call(
                self.boost.cancel_deal,
                fargs=[deal_id],
                exceptions=SpadeClientError,
                tries=CANCEL_TRIES,
                delay=CANCEL_DELAY,
                logger=log,
            )
        except SpadeClientError as e:
            log.warning(f"    > Could not cancel duplicate Boost deal {deal_id}: {e}")
        else:
            log.info(f"    > Cancelled duplicate Boost deal {deal_id}")

    def match(self, proposals: List[DealProposal], report: TickReport) -> PhaseResult:
        if len(proposals) == 0:
            return PhaseResult.CONTINUE

        log.info("> Fetching open deals from Boost...")
        try:
            deals = self.boost.list_open_deals()
        except SpadeClientError as e:
            log.warning(f" > Could not fetch deals from boost: {e}")
            return PhaseResult.SKIP_REST
        log.info(f" > Found {len(deals)} deals in boost")

        by_id: Dict[str, DealProposal] = {}
        for proposal in proposals:
            by_id.setdefault(proposal.proposal_id, proposal)

        for deal in deals:
            proposal = by_id.pop(deal.deal_id, None)
            if proposal is None:
                continue
            log.debug(f"  > Matched deal {deal.deal_id} [PieceCID={deal.piece_cid}]")
            # Admit before leaving Waiting-for-Match so the piece is always counted in flight.
            admitted = self.handler.admit(proposal)
            self.state.waiting.discard(proposal.piece_cid)
            if not admitted:
                continue
            report.matched.append(proposal.proposal_id)
            self.dispatch(proposal)
        return PhaseResult.CONTINUE

    def admit(self, report: TickReport) -> PhaseResult:
        active, waiting = len(self.state.active), len(self.state.waiting)
        inflight = active + waiting
        limit = self.options.max_spade_deals_active

        if self.options.complete_existing_deals_only:
            log.info(f"Currently handling {inflight} deals ({active} active, {waiting} requested), not requesting new deals")
            return PhaseResult.CONTINUE
        if inflight >= limit:
            log.info(f"Currently handling {inflight} deals ({active} active, {waiting} requested), not requesting new deals")
            return PhaseResult.CONTINUE

        repeat = limit - inflight
        log.info(
            f"Currently handling {inflight} deals ({active} active, {waiting} requested), "
            f"less than given limit of {limit}, requesting new deal {repeat} times"
        )
        for _ in range(repeat):
            try:
                piece_cid = self.spade.request_new_proposal()
            except SpadeClientError as e:
                log.warning(f"Could not request new deal from Spade: {e}")
                break
            self.state.waiting.add(piece_cid)
            report.requested.append(piece_cid)
            log.info(f"New deal requested for piece {piece_cid}")
        return PhaseResult.CONTINUE

    def _spawn_deal(self, proposal: DealProposal) -> None:
        threading.Thread(
            target=self._run_deal, args=(proposal,), name=f"deal-{proposal.proposal_id}", daemon=True
        ).start()

    def _run_deal(self, proposal: DealProposal) -> None:
        try:
            self.handler.run(proposal)
        except Exception:
            log.exception(f"Unexpected error while handling deal {proposal.proposal_id}")

    @staticmethod
    def _spawn_background(work: Callable[[], None], name: str) -> None:
        threading.Thread(target=work, name=name, daemon=True).start()

    def _log_state(self, title: str) -> None:
        level = logging.INFO if self.options.verbose else logging.DEBUG
        if log.isEnabledFor(level):
            log.log(level, f"{title}: {json.dumps(self.state.describe(), indent=4)}")
