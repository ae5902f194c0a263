"""
Install handler registry.

Maps every PackageType to the handler class that installs it. The table is
checked against the enumeration at import time, so adding a package type
without a handler fails immediately.
"""

from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Type

from gman.products import PackageType

from .base import CommandRunner, InstallHandler, run_command, spawn_detached
from .linux import DebHandler
from .macos import AppHandler, PkgHandler
from .mobile import ApkHandler, IpaHandler
from .windows import AppXHandler, MsiHandler, MsiXHandler, StandaloneExeHandler

_HANDLERS: Dict[PackageType, Type[InstallHandler]] = {
    PackageType.APPX: AppXHandler,
    PackageType.MSIX: MsiXHandler,
    PackageType.MSI: MsiHandler,
    PackageType.STANDALONE_EXE: StandaloneExeHandler,
    PackageType.APP: AppHandler,
    PackageType.PKG: PkgHandler,
    PackageType.DEB: DebHandler,
    PackageType.APK: ApkHandler,
    PackageType.IPA: IpaHandler,
}


def _check_exhaustive() -> None:
    missing = set(PackageType) - set(_HANDLERS)
    if missing:
        names = ", ".join(sorted(p.value for p in missing))
        raise RuntimeError(f"No install handler registered for: {names}")
    for package_type, handler_cls in _HANDLERS.items():
        if handler_cls.package_type is not package_type:
            raise RuntimeError(
                f"{handler_cls.__name__} is registered for {package_type.value} "
                f"but handles {handler_cls.package_type.value}"
            )


_check_exhaustive()


def get_handler_class(package_type: PackageType) -> Type[InstallHandler]:
    """
    Return the handler class for a package type.
    """
    return _HANDLERS[package_type]


class InstallerRegistry:
    """Handler instances sharing one command runner and temp directory."""

    def __init__(
        self,
        runner: CommandRunner = run_command,
        temp_dir: Optional[Path] = None,
        spawner: Callable[[Sequence[str]], None] = spawn_detached,
    ) -> None:
        self._handlers: Dict[PackageType, InstallHandler] = {
            package_type: handler_cls(runner=runner, temp_dir=temp_dir, spawner=spawner)
            for package_type, handler_cls in _HANDLERS.items()
        }

    def for_type(self, package_type: PackageType) -> InstallHandler:
        return self._handlers[package_type]
