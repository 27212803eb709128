import argparse
import logging
import subprocess
import requests
import tenacity
import urllib3

from typing import Any, Optional

from spade_client.errors import ResponseSchemaError, TransientRemoteError

log_retry = logging.getLogger("RETRYING")
log_request = logging.getLogger("Request")

REQUEST_ATTEMPTS = 5


def request_handler(
    *,
    url: str,
    method: str,
    parameters: dict,
    log_name: str,
    options: argparse.Namespace,
    miner_auth_stdin: Optional[str] = None,
    miner_auth: bool = False,
) -> requests.Response:
    try:
        return make_request(
            url=url,
            method=method,
            parameters=parameters,
            log_name=log_name,
            options=options,
            miner_auth=miner_auth or miner_auth_stdin is not None,
            miner_auth_stdin=miner_auth_stdin,
        )
    except tenacity.RetryError as e:
        log_request.error(f"{log_name}, retries failed. Moving on.")
        raise TransientRemoteError(f"{log_name}: {e.last_attempt.exception()}") from e


@tenacity.retry(
    wait=tenacity.wait_exponential(min=1, max=6, multiplier=2),
    stop=tenacity.stop_after_attempt(REQUEST_ATTEMPTS),
    retry=tenacity.retry_if_exception_type(TransientRemoteError),
    after=tenacity.after_log(log_retry, logging.INFO),
)
def make_request(
    *,
    url: str,
    method: str,
    parameters: dict,
    log_name: str,
    options: argparse.Namespace,
    miner_auth: bool,
    miner_auth_stdin: Optional[str],
) -> requests.Response:
    parameters = dict(parameters)
    parameters.setdefault("verify", not options.insecure_skip_verify)
    if miner_auth:
        # The token is single use and time bound, sign every attempt again.
        headers = dict(parameters.get("headers") or {})
        headers["Authorization"] = shell(
            command=["bash", options.fil_spid_file_path, options.miner_id], stdin=miner_auth_stdin
        )
        parameters["headers"] = headers

    try:
        response = requests.request(method, url, **parameters)
    except requests.exceptions.ConnectionError as e:
        log_request.error(f"{log_name}, ConnectionError: {e}")
        raise TransientRemoteError(f"ConnectionError: {e}") from e
    except (TimeoutError, urllib3.exceptions.ReadTimeoutError, requests.exceptions.Timeout) as e:
        log_request.error(f"{log_name}, Timeout: {e}")
        raise TransientRemoteError(f"Timeout: {e}") from e
    except requests.exceptions.RequestException as e:
        log_request.error(f"{log_name}, RequestException: {e}")
        raise TransientRemoteError(f"RequestException: {e}") from e

    if response.status_code >= 500:
        log_request.error(f"{log_name}, received {response.status_code}: {response.text[:500]}")
        raise TransientRemoteError(f"{log_name}: HTTP {response.status_code}")

    if response.status_code == 401 and "in the future" in response.text:
        log_request.info(
            'Known issue in Spade: the auth token generated by fil-spid.bash is "in the future" according to Spade. Retrying.'
        )
        raise TransientRemoteError("Auth token is in the future.")

    log_request.debug(f"{log_name}, Response {response.status_code}: {response.text[:2000]}")
    return response


def decode_json(response: requests.Response, *, log_name: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        log_request.warning(f"{log_name}, could not decode response body:\n{response.text[:2000]}")
        raise ResponseSchemaError(f"{log_name}: response is not JSON ({response.status_code})") from e


def shell(*, command: list, stdin: Optional[str] = None) -> str:
    # fil-spid.bash is too complex to reimplement here, it signs the request with the miner worker key.
    try:
        process = subprocess.run(
            command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=True, universal_newlines=True, input=stdin
        )
    except subprocess.CalledProcessError as e:
        # Signing goes through lotus, a failure there is retried like any other remote fault.
        raise TransientRemoteError(f"Bash command failed with exit code {e.returncode}: {(e.stderr or '').strip()}") from e
    except OSError as e:
        raise TransientRemoteError(f"Could not run {command[0]}: {e}") from e
    return process.stdout.rstrip()
