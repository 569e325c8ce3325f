"""Resolves the acting identity from request headers.

The gateway in front of the engine authenticates callers and forwards the
verified actor address in a header. The engine never trusts an actor field
in a request body.
"""

from collections.abc import Mapping

from decision_readiness_engine.errors import UnauthorizedActorError

DEFAULT_ACTOR_HEADER = "x-actor-address"


class HeaderActorIdentityResolver:
    """ActorIdentityResolver reading a single gateway-set header.

    Args:
        header: Header name, matched case-insensitively.
    """

    def __init__(self, header: str = DEFAULT_ACTOR_HEADER) -> None:
        self._header = header.lower()

    def resolve(self, request_context: Mapping[str, str]) -> str:
        """Return the actor address from the request headers.

        Args:
            request_context: Request headers.

        Returns:
            The stripped actor address.

        Raises:
            UnauthorizedActorError: If the header is missing or blank.
        """
        for name, value in request_context.items():
            if name.lower() == self._header and value.strip():
                return value.strip()
        raise UnauthorizedActorError(f"Missing actor identity header '{self._header}'")
