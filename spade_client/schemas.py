"""Response envelopes of the Spade, Boost and aria2 services.

Every remote payload is validated against one of these models before the
engine looks at it. A payload that does not fit raises ResponseSchemaError
instead of being patched up with defaults.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from spade_client.errors import ResponseSchemaError

M = TypeVar("M", bound=BaseModel)


def parse(model: Type[M], payload: Any, *, what: str) -> M:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ResponseSchemaError(f"{what}: unexpected response shape: {e}") from e


class _Remote(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


# Spade


class DealProposal(_Remote):
    proposal_id: str = Field(alias="deal_proposal_id")
    piece_cid: str
    piece_size: int
    hours_remaining: int
    sources: List[str] = Field(default_factory=list, alias="data_sources")
    proposal_cid: Optional[str] = Field(default=None, alias="deal_proposal_cid")
    tenant_id: Optional[int] = None
    tenant_client: Optional[str] = Field(default=None, alias="tenant_client_id")
    start_time: Optional[datetime] = Field(default=None, alias="deal_start_time")
    start_epoch: Optional[int] = Field(default=None, alias="deal_start_epoch")
    import_cmd: Optional[str] = Field(default=None, alias="sample_import_cmd")


class ProposalFailure(_Remote):
    piece_cid: str
    error: str
    timestamp: Optional[datetime] = None
    proposal_id: Optional[str] = Field(default=None, alias="deal_proposal_id")


class PendingProposals(_Remote):
    failures: List[ProposalFailure] = Field(default_factory=list, alias="recent_failures")
    proposals: List[DealProposal] = Field(default_factory=list, alias="pending_proposals")


class EligiblePiece(_Remote):
    piece_cid: str
    tenant_policy_cid: str
    padded_piece_size: Optional[int] = None
    tenants: List[int] = Field(default_factory=list)
    sample_request_cmd: Optional[str] = None
    sources: List[str] = Field(default_factory=list)


class PieceManifest(_Remote):
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    piece_list: List[Dict[str, Any]] = Field(default_factory=list)


class SpadeEnvelope(_Remote):
    response_code: int
    request_id: Optional[str] = None
    error_code: Optional[int] = None
    error_slug: Optional[str] = None
    error_lines: List[str] = Field(default_factory=list)
    info_lines: List[str] = Field(default_factory=list)
    response: Any = None

    @property
    def failed(self) -> bool:
        return bool(self.error_code) or self.response_code >= 400

    def describe_error(self) -> str:
        lines = " ".join(self.error_lines)
        return f"{self.response_code} {self.error_slug or ''} {lines}".strip()


# Boost


class BoostDeal(_Remote):
    deal_id: str = Field(alias="ID")
    piece_cid: str = Field(alias="PieceCid")
    checkpoint: str = Field(alias="Checkpoint")
    is_offline: bool = Field(alias="IsOffline")
    created_at: Optional[datetime] = Field(default=None, alias="CreatedAt")
    err: str = Field(default="", alias="Err")
    message: str = Field(default="", alias="Message")


class _DealList(_Remote):
    deals: List[BoostDeal]
    total_count: int = Field(alias="totalCount")


class _DealListData(_Remote):
    deals: _DealList


class BoostDealsResponse(_Remote):
    data: _DealListData


class _DealCancelData(_Remote):
    deal_cancel: str = Field(alias="dealCancel")


class BoostCancelResponse(_Remote):
    data: _DealCancelData


class ImportResult(_Remote):
    accepted: bool = Field(alias="Accepted")
    reason: str = Field(default="", alias="Reason")


# aria2


class TransferState(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    PAUSED = "paused"
    ERROR = "error"
    COMPLETE = "complete"
    REMOVED = "removed"


class TransferStatus(_Remote):
    gid: str
    state: TransferState
    completed: int = 0
    total: int = 0
    speed: int = 0
    output_path: Optional[str] = None
    error_message: str = ""

    @property
    def percentage(self) -> float:
        if self.completed and self.total:
            return self.completed / self.total * 100.0
        return 0.0

    @property
    def finished(self) -> bool:
        return self.state in (TransferState.COMPLETE, TransferState.ERROR, TransferState.REMOVED)
