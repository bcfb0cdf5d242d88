"""Autodeploy exceptions."""


class AutodeployError(Exception):
    """Base exception for autodeploy errors."""


class RepoError(AutodeployError):
    """A git command failed or the repository is not usable."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class LaunchError(AutodeployError):
    """The deploy command could not be started."""


class LifetimeCancelled(AutodeployError):
    """The deploy lifetime was cancelled while an operation was in flight.

    Not a failure: raised so that a blocking step can unwind straight to the
    Cancelled state.
    """
