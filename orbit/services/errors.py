class OrbitException(Exception):
    pass


class ConfigurationException(OrbitException):
    pass


class ProvisionException(OrbitException):
    """Raised when a provisioning run cannot be started or completed."""


class ReservedNameException(OrbitException):
    pass
