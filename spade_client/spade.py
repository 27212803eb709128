import argparse
import logging
import random
import re
import threading

from typing import List, Optional, Set

from spade_client.errors import RemoteApiError, ResponseSchemaError
from spade_client.schemas import EligiblePiece, PendingProposals, PieceManifest, SpadeEnvelope, parse
from spade_client.transport import decode_json, request_handler

log = logging.getLogger("Spade")

PIECE_CID_PATTERN = re.compile(r"baga[a-zA-Z0-9]+")


class SpadeClient:
    """Proposal source: pending proposals, failures, reservations and manifests."""

    def __init__(self, *, options: argparse.Namespace):
        self.options = options
        base = options.spade_url.rstrip("/")
        self.eligible_pieces_endpoint = f"{base}/sp/eligible_pieces"
        self.invoke_endpoint = f"{base}/sp/invoke"
        self.pending_proposals_endpoint = f"{base}/sp/pending_proposals"
        self.piece_manifest_endpoint = f"{base}/sp/piece_manifest"
        self._requested_pieces: Set[str] = set(options.ignored_piece_cids)
        self._requested_lock = threading.Lock()

    def _call(self, *, url: str, method: str, log_name: str, params: Optional[dict] = None, stdin: Optional[str] = None) -> SpadeEnvelope:
        parameters = {"timeout": 30, "allow_redirects": True}
        if params:
            parameters["params"] = params
        response = request_handler(
            url=url,
            method=method,
            parameters=parameters,
            log_name=log_name,
            options=self.options,
            miner_auth=True,
            miner_auth_stdin=stdin,
        )
        envelope = parse(SpadeEnvelope, decode_json(response, log_name=log_name), what=log_name)
        if envelope.failed or response.status_code >= 400:
            raise RemoteApiError(f"{log_name}: Spade returned {envelope.describe_error()}")
        return envelope

    def fetch_pending(self) -> PendingProposals:
        log.debug("Querying pending proposals")
        envelope = self._call(url=self.pending_proposals_endpoint, method="get", log_name="pending_proposals")
        if envelope.response is None:
            raise ResponseSchemaError("pending_proposals: envelope has no response")
        return parse(PendingProposals, envelope.response, what="pending_proposals")

    def eligible_pieces(self) -> List[EligiblePiece]:
        log.debug("Querying for eligible pieces")
        envelope = self._call(url=self.eligible_pieces_endpoint, method="get", log_name="eligible_pieces")
        if not isinstance(envelope.response, list):
            raise ResponseSchemaError("eligible_pieces: response is not a list")
        return [parse(EligiblePiece, p, what="eligible_pieces") for p in envelope.response]

    def invoke_deal(self, *, piece_cid: str, tenant_policy_cid: str) -> str:
        log.debug(f"Reserving piece {piece_cid}")
        envelope = self._call(
            url=self.invoke_endpoint,
            method="post",
            log_name="invoke_deal",
            stdin=f"call=reserve_piece&piece_cid={piece_cid}&tenant_policy={tenant_policy_cid}",
        )
        if not envelope.info_lines:
            raise ResponseSchemaError(f"invoke_deal: no info_lines in response ({envelope.response_code})")
        found = PIECE_CID_PATTERN.findall(envelope.info_lines[0])
        if not found:
            raise ResponseSchemaError(f"invoke_deal: no piece CID in {envelope.info_lines[0]!r}")
        log.debug(f"New deal requested: {envelope.info_lines}")
        return found[0]

    def request_new_proposal(self) -> str:
        log.info("Requesting a new deal from Spade")
        pieces = [p for p in self.eligible_pieces() if not self.is_already_requested(p.piece_cid)]
        if len(pieces) < 1:
            raise RemoteApiError("No eligible pieces left to request")

        piece = random.choice(pieces)
        log.debug(f"Piece selected: {piece.piece_cid} (policy {piece.tenant_policy_cid})")
        return self.invoke_deal(piece_cid=piece.piece_cid, tenant_policy_cid=piece.tenant_policy_cid)

    def fetch_manifest(self, proposal_id: str) -> PieceManifest:
        log.debug(f"Fetching manifest for {proposal_id}")
        envelope = self._call(
            url=self.piece_manifest_endpoint,
            method="get",
            log_name="piece_manifest",
            params={"proposal": proposal_id},
        )
        return parse(PieceManifest, envelope.response, what="piece_manifest")

    def mark_piece_already_requested(self, piece_cid: str) -> None:
        with self._requested_lock:
            self._requested_pieces.add(piece_cid)

    def is_already_requested(self, piece_cid: str) -> bool:
        with self._requested_lock:
            return piece_cid in self._requested_pieces
