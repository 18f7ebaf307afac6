class WhipError(Exception):
    pass


class ConfigurationError(WhipError):
    pass


class InvalidStateError(WhipError):
    pass


class ProtocolError(WhipError):
    pass


class TransportError(WhipError):
    pass
