class SpadeClientError(Exception):
    pass


class TransientRemoteError(SpadeClientError):
    """Network, timeout or server-side failure talking to a remote service."""


class RemoteApiError(SpadeClientError):
    """The remote service answered with an explicit error envelope."""


class ResponseSchemaError(SpadeClientError):
    """A remote response did not match the expected shape."""


class NoSourcesError(SpadeClientError):
    pass


class ImportRejectedError(SpadeClientError):
    def __init__(self, proposal_id: str, reason: str):
        super().__init__(f"Boost did not accept deal {proposal_id}: {reason}")
        self.proposal_id = proposal_id
        self.reason = reason


class DealCancelled(SpadeClientError):
    pass


class StartupError(SpadeClientError):
    pass
