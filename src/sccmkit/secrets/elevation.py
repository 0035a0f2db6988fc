"""
Scoped privilege elevation.

Reading the SECURITY hive needs more than administrator rights. Two tactics
are available, both used through the same scoped construct:

    with elevated(RegistryAclRelaxation(api)):
        keys = LsaSecrets(api).dpapi_system()

- RegistryAclRelaxation: grant the current user read access on the LSA
  keys, restoring the original DACLs on exit.
- SystemTokenImpersonation: impersonate a duplicated SYSTEM token taken from
  winlogon.exe, reverting on exit.

Release always runs, whether the body returns or raises.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional, Sequence

import psutil

from ..errors import ElevationError, InsufficientPrivilegeError
from ..logging import get_logger
from .win32 import KeySecurity, Win32Api

logger = get_logger(__name__)

LSA_SECURITY_KEYS = (
    r"MACHINE\SECURITY\Policy\PolEKList",
    r"MACHINE\SECURITY\Policy\Secrets\DPAPI_SYSTEM",
)
SYSTEM_PROCESS_NAME = "winlogon.exe"


class ElevationTactic(str, Enum):
    REGISTRY = "registry"
    TOKEN = "token"


def require_administrator(api: Win32Api, operation: str) -> None:
    """Raise InsufficientPrivilegeError unless running as a local administrator."""
    if not api.is_user_admin():
        raise InsufficientPrivilegeError(operation)


class ElevatedAccess(ABC):
    """A privilege that is acquired for a scope and released afterwards."""

    tactic: str = "unknown"

    @abstractmethod
    def acquire(self) -> None:
        """Raise ElevationError when the privilege cannot be obtained."""

    @abstractmethod
    def release(self) -> None:
        """Undo acquire(). Raise ElevationError when the host state cannot be restored."""


@contextmanager
def elevated(access: ElevatedAccess) -> Iterator[ElevatedAccess]:
    access.acquire()
    logger.info(f"Elevated via {access.tactic}")
    try:
        yield access
    finally:
        access.release()
        logger.info(f"Released {access.tactic} elevation")


class RegistryAclRelaxation(ElevatedAccess):
    """
    Temporarily grant the current user KEY_READ on registry keys.

    Every original DACL is captured before any key is touched, so a failed
    capture leaves the host unchanged. A grant that fails midway rolls back
    the keys already modified before raising.
    """

    tactic = ElevationTactic.REGISTRY.value

    def __init__(self, api: Win32Api, keys: Sequence[str] = LSA_SECURITY_KEYS):
        self.api = api
        self.keys = tuple(keys)
        self._originals: List[KeySecurity] = []
        self._modified: List[KeySecurity] = []

    def acquire(self) -> None:
        originals: List[KeySecurity] = []
        try:
            for key in self.keys:
                originals.append(self.api.get_key_security(key))
        except OSError as e:
            self._free(originals)
            raise ElevationError(self.tactic, f"could not read DACL of {key}: {e}") from e
        self._originals = originals

        for security in self._originals:
            try:
                self.api.grant_current_user_read(security)
            except OSError as e:
                failed = security.object_name
                problems = self._restore()
                reason = f"could not relax DACL of {failed}: {e}"
                if problems:
                    reason += f"; rollback incomplete for {', '.join(problems)}"
                raise ElevationError(self.tactic, reason) from e
            self._modified.append(security)

    def release(self) -> None:
        problems = self._restore()
        if problems:
            raise ElevationError(self.tactic, f"original DACL not restored for {', '.join(problems)}")

    def _restore(self) -> List[str]:
        problems = []
        for security in reversed(self._modified):
            try:
                self.api.set_key_dacl(security.object_name, security.dacl)
                logger.debug(f"Restored DACL of {security.object_name}")
            except OSError as e:
                logger.error(f"Failed to restore DACL of {security.object_name}: {e}")
                problems.append(security.object_name)
        self._modified = []
        self._free(self._originals)
        self._originals = []
        return problems

    def _free(self, securities: Iterable[KeySecurity]) -> None:
        for security in securities:
            self.api.free_security(security)


class SystemTokenImpersonation(ElevatedAccess):
    """Impersonate SYSTEM using a duplicated token from a SYSTEM process."""

    tactic = ElevationTactic.TOKEN.value

    def __init__(
        self,
        api: Win32Api,
        process_name: str = SYSTEM_PROCESS_NAME,
        process_iter: Callable[..., Iterable[psutil.Process]] = psutil.process_iter,
    ):
        self.api = api
        self.process_name = process_name
        self.process_iter = process_iter
        self._token: Optional[int] = None
        self._impersonating = False

    def _find_pid(self) -> int:
        for proc in self.process_iter(["pid", "name"]):
            name = (proc.info.get("name") or "").lower()
            if name == self.process_name.lower():
                return proc.info["pid"]
        raise ElevationError(self.tactic, f"no running {self.process_name} process")

    def acquire(self) -> None:
        pid = self._find_pid()
        handles: List[int] = []
        try:
            process = self.api.open_process(pid)
            handles.append(process)
            token = self.api.open_process_token(process)
            handles.append(token)
            self._token = self.api.duplicate_token(token)
            self.api.impersonate(self._token)
            self._impersonating = True
        except OSError as e:
            self._close_duplicate()
            raise ElevationError(self.tactic, f"could not impersonate {self.process_name} ({pid}): {e}") from e
        finally:
            for handle in reversed(handles):
                self._close(handle)
        logger.debug(f"Impersonating token of {self.process_name} ({pid})")

    def release(self) -> None:
        reverted = True
        if self._impersonating:
            try:
                self.api.revert_to_self()
            except OSError as e:
                logger.error(f"RevertToSelf failed: {e}")
                reverted = False
            self._impersonating = False
        self._close_duplicate()
        if not reverted:
            raise ElevationError(self.tactic, "could not revert to the original token")

    def _close_duplicate(self) -> None:
        if self._token is not None:
            self._close(self._token)
            self._token = None

    def _close(self, handle: int) -> None:
        try:
            self.api.close_handle(handle)
        except OSError as e:
            logger.warning(f"CloseHandle failed: {e}")


def build_access(tactic: ElevationTactic, api: Win32Api) -> ElevatedAccess:
    if tactic is ElevationTactic.REGISTRY:
        return RegistryAclRelaxation(api)
    return SystemTokenImpersonation(api)
