"""
Scheduling error taxonomy.

Expected failure modes (capacity, conflicts, missing mappings) are reported
through result objects by the services; these exceptions cover the cases
that must stop an operation.
"""


class SchedulingError(Exception):
    """Base class for schedule orchestration errors"""

    reason = "scheduling_error"

    def __init__(self, message: str, reason: str = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class ConfigurationError(SchedulingError):
    """Missing or invalid configuration (secrets, credentials, actor ids)"""
    reason = "configuration_error"


class ConflictError(SchedulingError):
    """Target already claimed, or a duplicate mapping would be created"""
    reason = "conflict"


class CapacityError(SchedulingError):
    """Operation would push a schedule entry past its max batch size"""
    reason = "capacity_exceeded"


class UpstreamError(SchedulingError):
    """Job platform call failed or timed out"""
    reason = "upstream_error"


class NotFoundError(SchedulingError):
    """Lookup of a schedule entry, mapping or run record failed"""
    reason = "not_found"


class InvalidTargetTypeError(SchedulingError, ValueError):
    """Unrecognized target type string"""
    reason = "invalid_target_type"
