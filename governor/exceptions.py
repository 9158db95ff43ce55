"""
Governor exceptions
"""


class GovernorError(Exception):
    """Base exception for all governor errors"""

    pass


class ConfigError(GovernorError):
    """Raised when governor.yaml cannot be parsed or holds invalid values"""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class DispatchError(GovernorError):
    """Raised when work for an issue could not be handed to the queue"""

    def __init__(self, message: str, issue_id: str | None = None):
        super().__init__(message)
        self.issue_id = issue_id


class IssueBusyError(DispatchError):
    """Raised when the issue already has an active session at dispatch time"""

    pass


class EventBusClosedError(GovernorError):
    """Raised when publishing to a bus that has been closed"""

    pass


class MalformedEventError(GovernorError):
    """Raised when an event payload cannot be decoded"""

    pass
