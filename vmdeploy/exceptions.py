"""Custom exceptions for vmdeploy."""


class DeployError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    exit_code = 1


class ConfigError(DeployError):
    exit_code = 2


class PhaseOrderError(DeployError):
    exit_code = 3


class CredentialError(DeployError):
    exit_code = 4


class VMExistsError(DeployError):
    exit_code = 5


class VMNotFoundError(DeployError):
    exit_code = 6


class TemplateMissingError(DeployError):
    exit_code = 7


class ArtifactExistsError(DeployError):
    exit_code = 8


class CloudInitDisabledError(DeployError):
    """cloud-init is permanently disabled in the guest; the seed would be ignored."""

    exit_code = 9


class CloudInitNotRanError(DeployError):
    """No evidence that cloud-init started on the boot after the seed was attached."""

    exit_code = 10


class LookupExhaustedError(DeployError):
    exit_code = 11


class PowerError(DeployError):
    exit_code = 12


class GuestChannelError(DeployError):
    exit_code = 13


class DeployCancelled(DeployError):
    exit_code = 130


class ControlPlaneError(Exception):
    """A raw control-plane fault, treated as transient by the retrying lookup."""
