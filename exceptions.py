"""
Registry exceptions.

Each error carries enough context for the HTTP layer to report it and maps
onto one response status.
"""


class RegistryError(Exception):
    """Base exception for token registry operations."""

    status_code = 500


class ConfigurationError(RegistryError):
    """Raised when the application is missing required configuration."""

    status_code = 503


class AuthorizationError(RegistryError):
    """Raised when someone other than the administrative identity mutates the registry."""

    status_code = 403

    def __init__(self, caller, action):
        self.caller = caller
        self.action = action
        super().__init__(f"Caller {caller} is not authorized to {action}")


class TokenNotFoundError(RegistryError):
    """Raised when a token id has never been minted."""

    status_code = 404

    def __init__(self, token_id):
        self.token_id = token_id
        super().__init__(f"Token {token_id} does not exist")


class InvalidIdentityError(RegistryError, ValueError):
    """Raised for malformed or zero holder addresses."""

    status_code = 400

    def __init__(self, address):
        self.address = address
        super().__init__(f"Invalid wallet address: {address!r}")


class MetadataError(RegistryError):
    """Raised for malformed trait strings or unusable metadata documents."""

    status_code = 400
