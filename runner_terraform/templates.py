"""
Terraform templates for the iterative provider.
"""

import json

from runner_common.models import RunnerConfig

PROVIDER_VERSION = "0.5.9"


def _hcl(value) -> str:
    """Render a Python value as an HCL literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(str(value))


def provider_template() -> str:
    return f"""
terraform {{
  required_providers {{
    iterative = {{
      source = "iterative/iterative"
      version = "{PROVIDER_VERSION}"
    }}
  }}
}}

provider "iterative" {{}}
"""


def cml_runner_template(
    config: RunnerConfig, driver: str, repo: str, token: str
) -> str:
    """
    Render an iterative_cml_runner resource for a cloud runner.

    Unset attributes are left out so the provider defaults apply.
    """
    cloud = config.cloud
    if cloud is None:
        raise ValueError("cml runner template requires a cloud spec")

    attributes = [
        ("repo", repo),
        ("token", token),
        ("driver", driver),
        ("labels", config.labels_csv),
        ("idle_timeout", config.idle_timeout),
        ("name", config.name),
        ("single", config.single or None),
        ("cloud", cloud.provider),
        ("region", cloud.region),
        ("instance_type", cloud.instance_type),
        ("instance_gpu", cloud.gpu),
        ("instance_hdd_size", cloud.hdd_size),
        ("ssh_private", cloud.ssh_private),
        ("spot", cloud.spot or None),
        ("spot_price", cloud.spot_price if cloud.spot else None),
        ("startup_script", cloud.startup_script),
        ("aws_security_group", cloud.aws_security_group or None),
    ]
    body = "\n".join(
        f"  {key} = {_hcl(value)}" for key, value in attributes if value is not None
    )

    return f"""{provider_template()}
resource "iterative_cml_runner" "runner" {{
{body}
}}
"""
