"""
Service error kinds.

Every failure the claim registry, identity resolver and shredder flow report to their callers is
one of the exceptions below. Messages carry a stable error code so that operators can grep logs
and users can report problems precisely. The HTTP layer maps each kind to a status code.
"""


class HandleServiceException(Exception):
    """Base class for all expected, user-facing service failures."""


class MissingInputError(HandleServiceException):
    """A required input was empty or absent."""

    @staticmethod
    def domain_or_did() -> "MissingInputError":
        return MissingInputError("error-input-1000 Missing domain or did")

    @staticmethod
    def domain_or_handle() -> "MissingInputError":
        return MissingInputError("error-input-1001 Missing domain or handle")

    @staticmethod
    def domain() -> "MissingInputError":
        return MissingInputError("error-input-1002 Missing domain")


class MissingHandleError(MissingInputError):
    """The shredder login was started without a handle."""

    @staticmethod
    def empty() -> "MissingHandleError":
        return MissingHandleError("error-input-1100 Missing handle")


class UnauthorizedError(HandleServiceException):
    """A privileged operation without a credential, or a public claim outside the allow-list."""

    @staticmethod
    def missing_credential() -> "UnauthorizedError":
        return UnauthorizedError("error-claim-1000 Unauthorized")

    @staticmethod
    def domain_not_allowed(domain: str) -> "UnauthorizedError":
        return UnauthorizedError(
            f"error-claim-1001 Domain {domain} is not open for public claims"
        )


class AlreadyClaimedError(HandleServiceException):
    """The domain already has a binding."""

    @staticmethod
    def for_domain(domain: str) -> "AlreadyClaimedError":
        return AlreadyClaimedError(f"error-claim-1002 Domain {domain} already has a did")


class IdentityAlreadyBoundError(HandleServiceException):
    """The DID is already bound to another domain."""

    @staticmethod
    def for_did(did: str, domain: str) -> "IdentityAlreadyBoundError":
        return IdentityAlreadyBoundError(
            f"error-claim-1003 {did} has already claimed {domain}"
        )


class ResolutionError(HandleServiceException):
    """A handle or DID could not be resolved."""

    @staticmethod
    def did_did_not_resolve(did: str) -> "ResolutionError":
        return ResolutionError(f"error-resolve-1000 DID did not resolve: {did}")

    @staticmethod
    def handle_did_not_resolve(handle: str) -> "ResolutionError":
        return ResolutionError(f"error-resolve-1001 handle did not resolve: {handle}")


class OAuthCallbackError(HandleServiceException):
    """The OAuth callback was invalid, expired, or the code exchange failed."""

    @staticmethod
    def authorization_denied(error: str) -> "OAuthCallbackError":
        return OAuthCallbackError(f"error-oauth-1000 Authorization failed: {error}")

    @staticmethod
    def invalid_request() -> "OAuthCallbackError":
        return OAuthCallbackError("error-oauth-1001 Invalid request")

    @staticmethod
    def unknown_state() -> "OAuthCallbackError":
        return OAuthCallbackError(
            "error-oauth-1002 Invalid request: no matching state"
        )

    @staticmethod
    def issuer_mismatch() -> "OAuthCallbackError":
        return OAuthCallbackError("error-oauth-1003 Invalid request: issuer mismatch")

    @staticmethod
    def exchange_failed(msg: str = "") -> "OAuthCallbackError":
        return OAuthCallbackError(f"error-oauth-1004 Token exchange failed: {msg}")

    @staticmethod
    def subject_mismatch() -> "OAuthCallbackError":
        return OAuthCallbackError(
            "error-oauth-1005 Token subject does not match the requested identity"
        )


class OAuthAuthorizationError(HandleServiceException):
    """The login could not be started with the user's authorization server."""

    @staticmethod
    def discovery_failed(msg: str) -> "OAuthAuthorizationError":
        return OAuthAuthorizationError(
            f"error-oauth-1100 Authorization server discovery failed: {msg}"
        )

    @staticmethod
    def par_failed(msg: str) -> "OAuthAuthorizationError":
        return OAuthAuthorizationError(
            f"error-oauth-1101 Pushed authorization request failed: {msg}"
        )


class PersistenceError(HandleServiceException):
    """The binding store could not be read or written."""

    @staticmethod
    def unreadable(msg: str) -> "PersistenceError":
        return PersistenceError(f"error-store-1000 Binding store unreadable: {msg}")

    @staticmethod
    def malformed(msg: str) -> "PersistenceError":
        return PersistenceError(f"error-store-1001 Binding store malformed: {msg}")

    @staticmethod
    def unwritable(msg: str) -> "PersistenceError":
        return PersistenceError(f"error-store-1002 Binding store unwritable: {msg}")

    @staticmethod
    def not_loaded() -> "PersistenceError":
        return PersistenceError("error-store-1003 Bindings have not been loaded")
