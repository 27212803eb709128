import argparse
import itertools
import json
import logging
import uuid

from typing import List

from spade_client.errors import ImportRejectedError, RemoteApiError, ResponseSchemaError, SpadeClientError, StartupError
from spade_client.schemas import BoostCancelResponse, BoostDeal, BoostDealsResponse, ImportResult, parse
from spade_client.transport import decode_json, request_handler

log = logging.getLogger("Boost")

OPEN_DEALS_QUERY = (
    "query {deals(limit: 1000, filter: {IsOffline: true, Checkpoint: Accepted}) "
    "{deals {ID CreatedAt Checkpoint IsOffline Err PieceCid Message}totalCount}}"
)
CANCEL_DEAL_MUTATION = "mutation AppDealCancelMutation($id: ID!) { dealCancel(id: $id) }"


def parse_api_info(api_info: str) -> tuple:
    """Split 'TOKEN:/ip4/<host>/tcp/<port>/http' into (token, host, port)."""
    try:
        token, multiaddr = api_info.split(":", 1)
        parts = multiaddr.split("/")
        return token, parts[2], int(parts[4])
    except (ValueError, IndexError) as e:
        raise StartupError(f"Could not parse Boost api info '...:{api_info.split(':')[-1]}'") from e


class BoostClient:
    """Deal registry: open offline deals, offline data import and cancellation."""

    def __init__(self, *, options: argparse.Namespace):
        self.options = options
        self.token, self.host, self.port = parse_api_info(options.boost_api_info)
        self.rpc_url = f"http://{self.host}:{self.port}/rpc/v0"
        self.graphql_url = f"http://{self.host}:{options.boost_graphql_port}/graphql/query"
        self._rpc_ids = itertools.count(1)

    def _rpc(self, method: str, params: list, *, log_name: str) -> dict:
        payload = {
            "method": f"Filecoin.{method}",
            "params": params,
            "jsonrpc": "2.0",
            "id": next(self._rpc_ids),
        }
        headers = {"Authorization": f"Bearer {self.token}", "content-type": "application/json"}
        response = request_handler(
            url=self.rpc_url,
            method="post",
            parameters={"timeout": 30, "data": json.dumps(payload), "headers": headers},
            log_name=log_name,
            options=self.options,
        )
        res = decode_json(response, log_name=log_name)
        if not isinstance(res, dict):
            raise ResponseSchemaError(f"{log_name}: JSON-RPC response is not an object")
        if res.get("error"):
            raise RemoteApiError(f"{log_name}: {res['error']}")
        if "result" not in res:
            raise ResponseSchemaError(f"{log_name}: JSON-RPC response has neither result nor error")
        return res

    def _graphql(self, request: dict, *, log_name: str) -> dict:
        response = request_handler(
            url=self.graphql_url,
            method="post",
            parameters={"timeout": 30, "data": json.dumps(request), "headers": {"content-type": "application/json"}},
            log_name=log_name,
            options=self.options,
        )
        if response.status_code != 200:
            raise RemoteApiError(f"{log_name}: graphql returned {response.status_code} instead of expected 200")
        res = decode_json(response, log_name=log_name)
        if isinstance(res, dict) and res.get("errors"):
            raise RemoteApiError(f"{log_name}: {res['errors']}")
        return res

    def check_connection(self) -> None:
        try:
            self._rpc("MarketGetAsk", [], log_name="market_get_ask")
            self._graphql({"query": "query {deals(limit: 1) {totalCount}}"}, log_name="graphql_probe")
        except SpadeClientError as e:
            raise StartupError(f"Could not connect to Boost at {self.host}: {e}") from e
        log.info("Successfully connected to Boost.")

    def list_open_deals(self) -> List[BoostDeal]:
        log.debug("Querying deals from boost")
        res = self._graphql({"query": OPEN_DEALS_QUERY}, log_name="get_boost_deals")
        deals = parse(BoostDealsResponse, res, what="get_boost_deals").data.deals
        log.debug(f"Boost reports {deals.total_count} offline deals in Accepted state")
        return [d for d in deals.deals if d.is_offline]

    def import_deal(self, proposal_id: str, local_path: str) -> ImportResult:
        log.info(f"Importing deal to boost: UUID: {proposal_id}, Path: {local_path}")
        try:
            deal_uuid = str(uuid.UUID(proposal_id))
        except ValueError as e:
            raise ResponseSchemaError(f"Proposal ID {proposal_id} is not a UUID") from e

        res = self._rpc(
            "BoostOfflineDealWithData",
            [deal_uuid, local_path, self.options.boost_delete_after_import],
            log_name="boost_import",
        )
        result = parse(ImportResult, res["result"], what="boost_import")
        if not result.accepted:
            raise ImportRejectedError(proposal_id, result.reason)
        log.info(f"Deal imported to boost: {proposal_id}")
        return result

    def cancel_deal(self, deal_id: str) -> None:
        log.info(f"Cancelling Boost deal {deal_id}")
        res = self._graphql(
            {
                "operationName": "AppDealCancelMutation",
                "query": CANCEL_DEAL_MUTATION,
                "variables": {"id": deal_id},
            },
            log_name="cancel_deal",
        )
        cancelled = parse(BoostCancelResponse, res, what="cancel_deal").data.deal_cancel
        if cancelled != deal_id:
            raise RemoteApiError(f"Did not properly cancel deal {deal_id}: response had {cancelled}")
