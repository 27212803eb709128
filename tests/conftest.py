"""Shared fixtures: an options factory and in-memory stand-ins for the Spade,
Boost and aria2 adapters. The fakes record every call so tests can assert on
how the engine used them.
"""
import argparse
import threading

import pytest

from spade_client.errors import ImportRejectedError
from spade_client.schemas import (
    BoostDeal,
    DealProposal,
    ImportResult,
    PendingProposals,
    PieceManifest,
    ProposalFailure,
    TransferState,
    TransferStatus,
)

PROPOSAL_A = "0b3b7c1e-5d0f-4a45-9d3c-6f1e2a3b4c5d"
PROPOSAL_B = "1c4c8d2f-6e1a-4b56-8e4d-7a2f3b4c5d6e"
DEAL_X = "9a8b7c6d-1234-4abc-8def-0123456789ab"


def make_options(**overrides) -> argparse.Namespace:
    values = dict(
        miner_id="f01234",
        fil_spid_file_path="/opt/spade/fil-spid.bash",
        spade_url="https://spade.test",
        aria2c_url="http://localhost:6800",
        aria2c_secret="",
        aria2c_connections_per_server=10,
        aria2c_download_path="/tmp/spade-downloads",
        boost_api_info="TOKEN:/ip4/10.0.0.10/tcp/1288/http",
        boost_graphql_port=8080,
        boost_delete_after_import=True,
        max_spade_deals_active=2,
        pending_refresh_interval=0.01,
        monitor_interval=0,
        acquire_retries=10,
        acquire_backoff_seconds=0,
        ignored_piece_cids=[],
        insecure_skip_verify=False,
        complete_existing_deals_only=False,
        verbose=False,
        debug=False,
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def make_proposal(proposal_id=PROPOSAL_A, piece_cid="baga6ea4seaqpiecea", sources=None) -> DealProposal:
    return DealProposal.model_validate(
        {
            "deal_proposal_id": proposal_id,
            "piece_cid": piece_cid,
            "piece_size": 34359738368,
            "hours_remaining": 48,
            "data_sources": ["https://data.test/piece-a.car"] if sources is None else sources,
        }
    )


def make_failure(piece_cid, error) -> ProposalFailure:
    return ProposalFailure.model_validate({"piece_cid": piece_cid, "error": error})


def make_deal(deal_id, piece_cid="baga6ea4seaqpiecea") -> BoostDeal:
    return BoostDeal.model_validate(
        {"ID": deal_id, "PieceCid": piece_cid, "Checkpoint": "Accepted", "IsOffline": True}
    )


class FakeSpade:
    def __init__(self):
        self.pending = PendingProposals()
        self.fetch_error = None
        self.new_pieces = []
        self.request_calls = 0
        self.already_requested = []
        self.manifest_errors = []
        self.manifest_calls = 0

    def fetch_pending(self):
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.pending

    def request_new_proposal(self):
        self.request_calls += 1
        if self.new_pieces:
            result = self.new_pieces.pop(0)
        else:
            result = f"baga6ea4seaqnew{self.request_calls}"
        if isinstance(result, Exception):
            raise result
        return result

    def mark_piece_already_requested(self, piece_cid):
        self.already_requested.append(piece_cid)

    def fetch_manifest(self, proposal_id):
        self.manifest_calls += 1
        if self.manifest_errors:
            raise self.manifest_errors.pop(0)
        return PieceManifest(piece_list=[{"piece_cid": "bagaseg1"}, {"piece_cid": "bagaseg2"}])


class FakeBoost:
    def __init__(self):
        self.open_deals = []
        self.list_error = None
        self.list_calls = 0
        self.imports = []
        self.import_error = None
        self.cancels = []
        self.cancel_error = None

    def list_open_deals(self):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return list(self.open_deals)

    def import_deal(self, proposal_id, local_path):
        self.imports.append((proposal_id, local_path))
        if self.import_error is not None:
            raise self.import_error
        return ImportResult(accepted=True, reason="")

    def reject_imports(self, reason="piece cid mismatch"):
        self.import_error = ImportRejectedError("any", reason)

    def cancel_deal(self, deal_id):
        self.cancels.append(deal_id)
        if self.cancel_error is not None:
            raise self.cancel_error


class FakeAria:
    def __init__(self):
        self.starts = []
        self.start_errors = []
        self.always_fail_with = None
        self.statuses = []
        self.poll_calls = 0
        self.removed = []
        self.remove_error = None
        self.on_poll = None

    def start_or_attach(self, source_uris, out_name):
        self.starts.append((list(source_uris), out_name))
        if self.always_fail_with is not None:
            raise self.always_fail_with
        if self.start_errors:
            raise self.start_errors.pop(0)
        return "gid0001"

    def poll(self, gid):
        self.poll_calls += 1
        if self.on_poll is not None:
            self.on_poll()
        if self.statuses:
            result = self.statuses.pop(0)
        else:
            result = status(TransferState.COMPLETE)
        if isinstance(result, Exception):
            raise result
        return result

    def remove(self, gid):
        self.removed.append(gid)
        if self.remove_error is not None:
            raise self.remove_error


def status(state, completed=100, total=100, path="/tmp/spade-downloads/piece-a.car", error_message=""):
    return TransferStatus(
        gid="gid0001",
        state=state,
        completed=completed,
        total=total,
        speed=1024,
        output_path=path,
        error_message=error_message,
    )


@pytest.fixture
def options():
    return make_options()


@pytest.fixture
def spade():
    return FakeSpade()


@pytest.fixture
def boost():
    return FakeBoost()


@pytest.fixture
def aria():
    return FakeAria()


@pytest.fixture
def cancel():
    return threading.Event()
