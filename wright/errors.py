"""Exception hierarchy shared across the package."""


class WrightError(Exception):
    """Base class for every error raised by the package."""


class ConfigError(WrightError):
    """A configuration file could not be read or is malformed."""


class BuildError(WrightError):
    """A build step failed."""


class ValidationError(WrightError):
    """Input such as a plan or a source failed validation."""