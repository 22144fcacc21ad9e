"""Exceptions raised by the login flow.

Hierarchy::

    OAuthFlowError
    +-- InvalidInstance       (user-correctable server identifier)
    +-- InvalidRegistration   (missing or unusable client registration)
    +-- RegistrationFailed    (app registration endpoint failed)
    +-- TokenExchangeFailed   (no access token came back)

None of these are retried. Each one ends the current login attempt and the
user starts over from the logged-out state.
"""


class OAuthFlowError(Exception):
    """Error during the OAuth login flow."""

    pass


class InvalidInstance(OAuthFlowError):
    """The server identifier is empty or malformed."""

    pass


class InvalidRegistration(OAuthFlowError):
    """A client registration lacks a usable client_id, or none is cached."""

    pass


class RegistrationFailed(OAuthFlowError):
    """Dynamic client registration with an instance failed."""

    pass


class TokenExchangeFailed(OAuthFlowError):
    """Exchanging an authorization code for an access token failed."""

    pass
