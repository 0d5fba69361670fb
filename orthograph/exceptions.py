class OrthographError(Exception):
    pass


class ReferentialIntegrityError(OrthographError):
    """A record points at a transcript, group or fragment the active run does not know."""


class SearchExecutionFailure(OrthographError):
    """An external search program crashed, timed out or produced no output at all."""

    def __init__(self, program: str, query: str, reason: str) -> None:
        super().__init__(f"{program} failed for {query}: {reason}")
        self.program = program
        self.query = query
        self.reason = reason


class ConnectivityError(OrthographError):
    pass


class ConfigurationError(OrthographError):
    pass
