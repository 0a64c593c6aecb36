"""Built-in checks for deployment preconditions and verification."""

from provision_engine.checks.builtin.filesystem import DirectoryExistsCheck, FileExistsCheck, WritableDirectoryCheck
from provision_engine.checks.builtin.network import HttpStatusCheck, NetworkReachableCheck, PortFreeCheck
from provision_engine.checks.builtin.system import CurrentUserCheck, RequiredSettingsCheck, ServiceActiveCheck

__all__ = [
    "CurrentUserCheck",
    "DirectoryExistsCheck",
    "FileExistsCheck",
    "HttpStatusCheck",
    "NetworkReachableCheck",
    "PortFreeCheck",
    "RequiredSettingsCheck",
    "ServiceActiveCheck",
    "WritableDirectoryCheck",
]
