"""
Provisioning steps.

    DEPLOY_STEPS    the seven deploy steps, in pipeline order
    teardown_steps  the reverse pipeline used by the uninstaller
"""

from __future__ import annotations

from exitnode.core.steps.base import Step
from exitnode.core.steps.cloudflared import InstallCloudflaredStep
from exitnode.core.steps.services import EnableServicesStep
from exitnode.core.steps.system import SystemPrepareStep
from exitnode.core.steps.teardown import (
    DeleteTunnelStep,
    DisableServicesStep,
    RemoveBinariesStep,
    RemoveFilesStep,
    RemoveToolchainStep,
    RemoveUnitsStep,
    RemoveUsersStep,
    StopServicesStep,
)
from exitnode.core.steps.toolchain import InstallDepsStep
from exitnode.core.steps.tunnel import ConfigureTunnelStep
from exitnode.core.steps.xray_build import BuildXrayStep
from exitnode.core.steps.xray_config import ConfigureXrayStep

DEPLOY_STEPS: tuple[Step, ...] = (
    SystemPrepareStep(),
    InstallDepsStep(),
    BuildXrayStep(),
    ConfigureXrayStep(),
    InstallCloudflaredStep(),
    ConfigureTunnelStep(),
    EnableServicesStep(),
)


def step_names() -> list[str]:
    return [s.name for s in DEPLOY_STEPS]


def get_step(name: str) -> Step:
    """Look up a deploy step by CLI name.

    Raises:
        KeyError: If no step has that name.
    """
    for step in DEPLOY_STEPS:
        if step.name == name:
            return step
    raise KeyError(name)


def teardown_steps(remove_toolchain: bool = False) -> list[Step]:
    steps: list[Step] = [
        StopServicesStep(),
        DisableServicesStep(),
        RemoveUnitsStep(),
        DeleteTunnelStep(),
        RemoveFilesStep(),
        RemoveBinariesStep(),
        RemoveUsersStep(),
    ]
    if remove_toolchain:
        steps.append(RemoveToolchainStep())
    return steps


__all__ = ["DEPLOY_STEPS", "Step", "get_step", "step_names", "teardown_steps"]
