"""
Terraform provisioner for cloud runners.
"""

from .terraform import MIN_TERRAFORM_VERSION, TerraformProvisioner

__all__ = ["MIN_TERRAFORM_VERSION", "TerraformProvisioner"]
