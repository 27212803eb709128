import subprocess
from unittest import mock

import pytest
import requests
import tenacity

from conftest import make_options

from spade_client import transport
from spade_client.errors import ResponseSchemaError, TransientRemoteError

make_request_once = transport.make_request.__wrapped__


def response(status_code=200, text="{}"):
    r = mock.Mock()
    r.status_code = status_code
    r.text = text
    return r


def call(**overrides):
    kwargs = dict(
        url="https://spade.test/sp/pending_proposals",
        method="get",
        parameters={"timeout": 30},
        log_name="pending_proposals",
        options=make_options(),
        miner_auth=True,
        miner_auth_stdin=None,
    )
    kwargs.update(overrides)
    return make_request_once(**kwargs)


@mock.patch("spade_client.transport.shell", return_value="FIL-SPID-V0 1;f01234;sig")
@mock.patch("spade_client.transport.requests.request")
def test_signs_request_with_fil_spid(request, shell):
    request.return_value = response()

    call(miner_auth_stdin="call=reserve_piece")

    shell.assert_called_once_with(command=["bash", "/opt/spade/fil-spid.bash", "f01234"], stdin="call=reserve_piece")
    args, kwargs = request.call_args
    assert args == ("get", "https://spade.test/sp/pending_proposals")
    assert kwargs["headers"]["Authorization"] == "FIL-SPID-V0 1;f01234;sig"
    assert kwargs["verify"] is True


@mock.patch("spade_client.transport.requests.request")
def test_connection_errors_are_transient(request):
    request.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(TransientRemoteError):
        call(miner_auth=False)


@mock.patch("spade_client.transport.requests.request")
def test_server_errors_are_transient(request):
    request.return_value = response(503, "upstream unavailable")
    with pytest.raises(TransientRemoteError):
        call(miner_auth=False)


@mock.patch("spade_client.transport.shell", return_value="token")
@mock.patch("spade_client.transport.requests.request")
def test_token_in_the_future_is_retried(request, shell):
    request.return_value = response(401, '{"error_lines": ["token is in the future"]}')
    with pytest.raises(TransientRemoteError):
        call()


@mock.patch("spade_client.transport.requests.request")
def test_client_errors_are_returned(request):
    request.return_value = response(403, '{"response_code": 403}')
    assert call(miner_auth=False).status_code == 403


def test_request_handler_converts_exhausted_retries():
    last = tenacity.Future.construct(5, TransientRemoteError("Timeout"), True)
    with mock.patch.object(transport, "make_request", side_effect=tenacity.RetryError(last)):
        with pytest.raises(TransientRemoteError, match="Timeout"):
            transport.request_handler(
                url="https://spade.test", method="get", parameters={}, log_name="pending_proposals", options=make_options()
            )


def test_decode_json_failure_is_schema_error():
    r = response(200, "<html>")
    r.json.side_effect = ValueError("no json")
    with pytest.raises(ResponseSchemaError):
        transport.decode_json(r, log_name="pending_proposals")


@mock.patch("spade_client.transport.subprocess.run")
def test_signing_failure_is_transient(run):
    run.side_effect = subprocess.CalledProcessError(1, ["bash"], stderr="lotus unreachable\n")

    with pytest.raises(TransientRemoteError, match="lotus unreachable"):
        transport.shell(command=["bash", "/opt/spade/fil-spid.bash", "f01234"])


@mock.patch("spade_client.transport.requests.request")
@mock.patch("spade_client.transport.subprocess.run")
def test_signing_failure_raises_before_any_request(run, request):
    run.side_effect = subprocess.CalledProcessError(1, ["bash"], stderr="lotus unreachable\n")

    with pytest.raises(TransientRemoteError):
        call()
    request.assert_not_called()


def test_request_handler_gives_up_on_signing_failures(monkeypatch):
    monkeypatch.setattr(transport, "make_request", transport.make_request.retry_with(wait=tenacity.wait_none()))
    with mock.patch("spade_client.transport.subprocess.run") as run:
        run.side_effect = subprocess.CalledProcessError(1, ["bash"], stderr="lotus unreachable\n")
        with pytest.raises(TransientRemoteError, match="lotus unreachable"):
            transport.request_handler(
                url="https://spade.test", method="get", parameters={}, log_name="pending_proposals", options=make_options(), miner_auth=True
            )
    assert run.call_count == transport.REQUEST_ATTEMPTS
