"""Exception hierarchy for the monitor"""


class PostalMonitorError(Exception):
    """Base class for all monitor errors"""


class ConfigError(PostalMonitorError):
    """Configuration file missing, unreadable or incomplete"""


class DatabaseError(PostalMonitorError):
    """Connection or query failure against the Postal database"""


class CheckpointError(PostalMonitorError):
    """The checkpoint file exists but cannot be read"""
