"""
Error taxonomy for the bridge.

Startup failures (BrokerUnreachable, AuthenticationFailed, StorageUnavailable) are fatal and
surface to the caller. Steady-state failures (StoragePersistFailed, PayloadMalformed) are
absorbed and logged by the pipeline.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class BrokerError(BridgeError):
    """Initial broker session could not be established."""


class BrokerUnreachable(BrokerError):
    """Broker could not be reached, refused the session, or never answered CONNACK."""


class AuthenticationFailed(BrokerError):
    """Broker rejected the client credentials."""


class StorageError(BridgeError):
    """Base class for storage failures."""


class StorageUnavailable(StorageError):
    """Database could not be opened or failed its liveness probe."""


class StoragePersistFailed(StorageError):
    """A single-row insert failed (constraint, connection loss, timeout)."""


class PayloadMalformed(BridgeError):
    """Inbound payload is not a well-typed telemetry object."""
