"""
Error taxonomy for Multichain Launchpad Sync

Every failure the core can report derives from LaunchpadError. Only
NetworkError is retryable; the rest are resolved inside the operation that
raised them.
"""


class LaunchpadError(Exception):
    """Base class for all launchpad errors."""


class ValidationError(LaunchpadError, ValueError):
    """Bad input: zero amount, empty name, zero address, unknown launch."""


class StateError(LaunchpadError):
    """Harmless idempotent collision. Callers treat it as a no-op."""


class AlreadyDeployed(StateError):
    def __init__(self, launch_id, chain_id, token_address=None, curve_address=None):
        self.launch_id = launch_id
        self.chain_id = chain_id
        self.token_address = token_address
        self.curve_address = curve_address
        super().__init__(f"Launch {launch_id} already deployed on chain {chain_id}")


class AlreadyMigrated(StateError):
    def __init__(self, launch_id):
        self.launch_id = launch_id
        super().__init__(f"Launch {launch_id} already migrated")


class CurveMigrated(StateError):
    def __init__(self, launch_id, chain_id=None):
        self.launch_id = launch_id
        self.chain_id = chain_id
        super().__init__(f"Curve for launch {launch_id} is no longer trading")


class CurvePaused(StateError):
    def __init__(self, launch_id, chain_id):
        self.launch_id = launch_id
        self.chain_id = chain_id
        super().__init__(f"Curve for launch {launch_id} on chain {chain_id} is paused")


class MigrationInProgress(StateError):
    """Another worker is currently executing the DEX migration."""


class CurveArithmeticError(LaunchpadError, ArithmeticError):
    """Division by zero, overflow or reserve underflow. Needs operator attention."""


class SlippageExceeded(LaunchpadError):
    def __init__(self, message, expected=None, actual=None):
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class AuthorizationError(LaunchpadError):
    """Caller identity is not allowed to perform the operation."""


class UnauthorizedCaller(AuthorizationError):
    def __init__(self, caller):
        self.caller = caller
        super().__init__(f"Unauthorized caller: {caller}")


class NetworkError(LaunchpadError):
    """Timeout or unreachable destination. Retryable."""

    def __init__(self, message, chain_id=None):
        self.chain_id = chain_id
        super().__init__(message)


class ChainTimeout(NetworkError):
    pass


class ConsistencyError(LaunchpadError):
    """Stale or out-of-order update. Discarded silently."""


class StaleSequence(ConsistencyError):
    def __init__(self, seq, last_seq):
        self.seq = seq
        self.last_seq = last_seq
        super().__init__(f"Sequence {seq} is not newer than {last_seq}")
