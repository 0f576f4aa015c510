class ClientError(Exception):
    """Base class for failures talking to the ledger API or the identity provider."""


class ApiError(ClientError):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class ConnectionFailure(ClientError):
    """The request never produced a response (network down, timeout, DNS)."""


class SessionExpiredError(ClientError):
    """The refresh token was rejected; the user has to sign in again."""
