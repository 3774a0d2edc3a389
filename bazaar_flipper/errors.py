# bazaar_flipper/errors.py


class ActionError(Exception):
    """A primitive game action (click, sign write, window wait) did not land."""


class ContextError(Exception):
    """The expected screen or location is not the one currently shown."""


class RpcError(Exception):
    """Malformed or failed reply from the solver service."""


class RpcTimeoutError(RpcError):
    pass
