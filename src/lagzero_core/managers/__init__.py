"""
Managers package for LagZero Core.
"""

from .base import BaseManager, ManagerConfig, HealthStatus
from .installer import CoreInstaller, InstallerState, InstallPhase
from .supervisor import CoreSupervisor, ManagedProcessState, ProcessStatus
from .rules import RuleUpdateCoordinator
from .monitor import ProcessTreeMonitor, MonitorSession

__all__ = [
    # Base
    'BaseManager',
    'ManagerConfig',
    'HealthStatus',

    # Installer
    'CoreInstaller',
    'InstallerState',
    'InstallPhase',

    # Supervisor
    'CoreSupervisor',
    'ManagedProcessState',
    'ProcessStatus',

    # Rules
    'RuleUpdateCoordinator',

    # Monitor
    'ProcessTreeMonitor',
    'MonitorSession',
]
