"""Exception taxonomy for capture negotiation and health monitoring."""

from __future__ import annotations


class StreamHealthError(Exception):
    """Base class for all package errors."""


class PermissionDenied(StreamHealthError):
    """The user declined camera or microphone access."""


class NoViableConstraints(StreamHealthError):
    """No quality tier can be satisfied by the available hardware."""


class DeviceAcquisitionFailed(StreamHealthError):
    """A capture handle could not be acquired; usually transient."""


class StatsUnavailable(StreamHealthError):
    """The stats source could not produce statistics for this tick."""


class SessionAlreadyTerminal(StreamHealthError):
    """The session is disconnected and cannot be operated on."""


class SessionNotActive(StreamHealthError):
    """A health sample was requested for a session that is not active."""


class UnknownSession(StreamHealthError, KeyError):
    """No controller is attached for the session id."""


class UnknownDevice(StreamHealthError, KeyError):
    """The device id is not in the registry."""


class ConfigError(StreamHealthError, ValueError):
    """Invalid configuration value."""
