class AuthenticationFailure(Exception):
    """Bad or missing webhook signature or cron bearer token."""


class ProviderUnavailable(RuntimeError):
    """Network failure, timeout or unusable response from the aggregator."""


class ValidationFailure(ValueError):
    """Malformed payload; rejected as a whole."""


class ConnectionNotFound(ValueError):
    pass


class ConnectionInactive(ValueError):
    pass


class InsufficientHistory(ValueError):
    pass
