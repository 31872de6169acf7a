"""Profile provisioning."""

from .provisioner import ProfileProvisioner

__all__ = ["ProfileProvisioner"]
