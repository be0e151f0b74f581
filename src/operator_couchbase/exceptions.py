"""
Exception classes for cluster orchestration.

- ManagementApiError: Non-2xx management response, or retries exhausted
- TopologyValidationError: Declared topology cannot be bootstrapped
- ResourceFailedError: A resource reached a failed terminal state while awaited

Per project patterns:
- Inherit from Exception for base exception type
- Store context data in attributes for error handling
- Include descriptive message with relevant details
"""

import httpx


class ManagementApiError(Exception):
    """
    Raised when a management API call fails.

    The message is the response body when the cluster sent one, otherwise
    a generic status line. Exhausted retries on transport errors also end
    up here with status_code set to None.

    Attributes:
        status_code: HTTP status of the failed response, if any
        body: Raw response body text, if any
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ManagementApiError":
        """Build an error from a failed response, preferring its body text."""
        body = response.text
        if body:
            message = f"{response.status_code}: {body}"
        else:
            message = f"Request failed with status code {response.status_code}"
        return cls(message, status_code=response.status_code, body=body or None)


class TopologyValidationError(Exception):
    """
    Raised when the topology is invalid, before any network call is made.

    Attributes:
        cluster: Name of the cluster that failed validation
        reason: What is wrong with the topology
    """

    def __init__(self, cluster: str, reason: str) -> None:
        self.cluster = cluster
        self.reason = reason
        super().__init__(f"Cluster '{cluster}' is invalid: {reason}")


class ResourceFailedError(Exception):
    """
    Raised when an awaited resource ends in a failed or exited state.

    Attributes:
        resource: Name of the resource
        state: Terminal state value that was observed
    """

    def __init__(self, resource: str, state: str) -> None:
        self.resource = resource
        self.state = state
        super().__init__(f"Resource '{resource}' entered state {state}")
