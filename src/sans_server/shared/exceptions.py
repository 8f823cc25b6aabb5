"""Exception types raised by sans-server."""


class SansServerError(Exception):
    """Base error. ``code`` classifies the failure."""

    code = "ESS"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class HookError(SansServerError):
    """Invalid hook registration or phase definition."""

    code = "ESHOOK"


class ResponseError(SansServerError):
    """Invalid value passed to a Response operation."""

    code = "ERES"


class ResponseSentError(SansServerError):
    """A response was sent more than once."""

    code = "ERSENT"
