# errors.py


class AutomationLabError(Exception):
    """Base error for automation-lab."""


class ConfigurationError(AutomationLabError, ValueError):
    """An environment variable holds a value that cannot be used."""


class PreflightError(AutomationLabError):
    """AWS credentials are missing/invalid or the endpoint is unreachable."""


class ProvisioningError(AutomationLabError):
    """A create step failed and the resource could not be set up."""
