from .applier import ApplyResult, ApplyStatus, AssertionStatus, DeploymentTarget, apply, deploy, plan_targets
from .assertions import ContainerRunning, NetworkExists, PackageInstalled, ResourceAssertion, ServiceState, VolumeExists
from .connection import CommandResult, Connection, LocalConnection, SSHConnection
from .inventory import Host, Inventory, Playbook, load_inventory, load_playbook

__all__ = [
    "ApplyResult", "ApplyStatus", "AssertionStatus", "DeploymentTarget", "apply", "deploy", "plan_targets",
    "ContainerRunning", "NetworkExists", "PackageInstalled", "ResourceAssertion", "ServiceState", "VolumeExists",
    "CommandResult", "Connection", "LocalConnection", "SSHConnection",
    "Host", "Inventory", "Playbook", "load_inventory", "load_playbook",
]
