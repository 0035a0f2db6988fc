"""
Native Win32 API Integration.

ctypes bindings for the handful of advapi32, crypt32, kernel32 and shell32
calls used by local secret recovery:
- administrator check
- registry key DACL capture, relaxation and restore
- SYSTEM token duplication and impersonation
- registry class names and values
- CryptUnprotectData for the current user context

The libraries are loaded on first use so the module imports on any platform.
"""

import ctypes
import sys
from ctypes import POINTER, Structure, byref, c_char, c_void_p, c_wchar_p
from ctypes import wintypes
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..errors import PlatformUnsupportedError
from ..logging import get_logger

logger = get_logger(__name__)

# SE_OBJECT_TYPE / SECURITY_INFORMATION
SE_REGISTRY_KEY = 4
DACL_SECURITY_INFORMATION = 0x00000004

# EXPLICIT_ACCESS
GRANT_ACCESS = 1
SUB_CONTAINERS_AND_OBJECTS_INHERIT = 3
NO_MULTIPLE_TRUSTEE = 0
TRUSTEE_IS_NAME = 1
TRUSTEE_IS_USER = 1
CURRENT_USER_TRUSTEE = "CURRENT_USER"

KEY_READ = 0x20019
ERROR_SUCCESS = 0

PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
TOKEN_DUPLICATE = 0x0002
TOKEN_QUERY = 0x0008
MAXIMUM_ALLOWED = 0x02000000
SECURITY_IMPERSONATION = 2
TOKEN_IMPERSONATION = 2

CRYPTPROTECT_UI_FORBIDDEN = 0x1


class TRUSTEE_W(Structure):
    """Trustee identified by name."""

    _fields_ = [
        ("pMultipleTrustee", c_void_p),
        ("MultipleTrusteeOperation", wintypes.DWORD),
        ("TrusteeForm", wintypes.DWORD),
        ("TrusteeType", wintypes.DWORD),
        ("ptstrName", c_wchar_p),
    ]


class EXPLICIT_ACCESS_W(Structure):
    """Access control entry request for SetEntriesInAclW."""

    _fields_ = [
        ("grfAccessPermissions", wintypes.DWORD),
        ("grfAccessMode", wintypes.DWORD),
        ("grfInheritance", wintypes.DWORD),
        ("Trustee", TRUSTEE_W),
    ]


class DATA_BLOB(Structure):
    """CryptoAPI byte buffer."""

    _fields_ = [
        ("cbData", wintypes.DWORD),
        ("pbData", POINTER(c_char)),
    ]


@dataclass
class KeySecurity:
    """Captured security descriptor of a registry key; dacl points into descriptor."""
    object_name: str
    descriptor: c_void_p
    dacl: c_void_p


def _load_libraries() -> Dict[str, Any]:
    if sys.platform != "win32":
        raise PlatformUnsupportedError("Win32 security API")
    return {
        "advapi32": ctypes.WinDLL("advapi32", use_last_error=True),
        "crypt32": ctypes.WinDLL("crypt32", use_last_error=True),
        "kernel32": ctypes.WinDLL("kernel32", use_last_error=True),
        "shell32": ctypes.WinDLL("shell32", use_last_error=True),
    }


def _check_bool(result: int) -> None:
    if not result:
        raise ctypes.WinError(ctypes.get_last_error())


def _check_status(status: int) -> None:
    if status != ERROR_SUCCESS:
        raise ctypes.WinError(status)


class Win32Api:
    """
    Thin wrapper over the native calls. Every failing call raises OSError.
    """

    def __init__(self):
        self._libs: Optional[Dict[str, Any]] = None

    @property
    def libs(self) -> Dict[str, Any]:
        if self._libs is None:
            self._libs = _load_libraries()
            self._setup_function_signatures()
        return self._libs

    def _setup_function_signatures(self) -> None:
        """Configure ctypes function signatures."""
        advapi32 = self._libs["advapi32"]
        kernel32 = self._libs["kernel32"]
        crypt32 = self._libs["crypt32"]
        shell32 = self._libs["shell32"]

        shell32.IsUserAnAdmin.argtypes = []
        shell32.IsUserAnAdmin.restype = wintypes.BOOL

        advapi32.GetNamedSecurityInfoW.argtypes = [
            wintypes.LPCWSTR,  # object name
            wintypes.DWORD,  # object type
            wintypes.DWORD,  # security info
            POINTER(c_void_p),  # owner out
            POINTER(c_void_p),  # group out
            POINTER(c_void_p),  # dacl out
            POINTER(c_void_p),  # sacl out
            POINTER(c_void_p),  # descriptor out
        ]
        advapi32.GetNamedSecurityInfoW.restype = wintypes.DWORD

        advapi32.SetEntriesInAclW.argtypes = [
            wintypes.ULONG,  # entry count
            POINTER(EXPLICIT_ACCESS_W),  # entries
            c_void_p,  # old acl
            POINTER(c_void_p),  # new acl out
        ]
        advapi32.SetEntriesInAclW.restype = wintypes.DWORD

        advapi32.SetNamedSecurityInfoW.argtypes = [
            wintypes.LPWSTR,  # object name
            wintypes.DWORD,  # object type
            wintypes.DWORD,  # security info
            c_void_p,  # owner
            c_void_p,  # group
            c_void_p,  # dacl
            c_void_p,  # sacl
        ]
        advapi32.SetNamedSecurityInfoW.restype = wintypes.DWORD

        advapi32.OpenProcessToken.argtypes = [wintypes.HANDLE, wintypes.DWORD, POINTER(wintypes.HANDLE)]
        advapi32.OpenProcessToken.restype = wintypes.BOOL

        advapi32.DuplicateTokenEx.argtypes = [
            wintypes.HANDLE,  # existing token
            wintypes.DWORD,  # desired access
            c_void_p,  # token attributes
            ctypes.c_int,  # impersonation level
            ctypes.c_int,  # token type
            POINTER(wintypes.HANDLE),  # new token out
        ]
        advapi32.DuplicateTokenEx.restype = wintypes.BOOL

        advapi32.ImpersonateLoggedOnUser.argtypes = [wintypes.HANDLE]
        advapi32.ImpersonateLoggedOnUser.restype = wintypes.BOOL

        advapi32.RevertToSelf.argtypes = []
        advapi32.RevertToSelf.restype = wintypes.BOOL

        advapi32.RegQueryInfoKeyW.argtypes = [
            wintypes.HKEY,  # key
            wintypes.LPWSTR,  # class out
            POINTER(wintypes.DWORD),  # class length in/out
        ] + [c_void_p] * 9
        advapi32.RegQueryInfoKeyW.restype = wintypes.LONG

        kernel32.OpenProcess.argtypes = [wintypes.DWORD, wintypes.BOOL, wintypes.DWORD]
        kernel32.OpenProcess.restype = wintypes.HANDLE

        kernel32.CloseHandle.argtypes = [wintypes.HANDLE]
        kernel32.CloseHandle.restype = wintypes.BOOL

        kernel32.LocalFree.argtypes = [c_void_p]
        kernel32.LocalFree.restype = c_void_p

        crypt32.CryptUnprotectData.argtypes = [
            POINTER(DATA_BLOB),  # data in
            POINTER(wintypes.LPWSTR),  # description out
            POINTER(DATA_BLOB),  # entropy
            c_void_p,  # reserved
            c_void_p,  # prompt
            wintypes.DWORD,  # flags
            POINTER(DATA_BLOB),  # data out
        ]
        crypt32.CryptUnprotectData.restype = wintypes.BOOL

    # -------------------------------------------------------------------------
    # Privileges
    # -------------------------------------------------------------------------

    def is_user_admin(self) -> bool:
        return bool(self.libs["shell32"].IsUserAnAdmin())

    # -------------------------------------------------------------------------
    # Registry DACLs
    # -------------------------------------------------------------------------

    def get_key_security(self, object_name: str) -> KeySecurity:
        dacl = c_void_p()
        descriptor = c_void_p()
        _check_status(
            self.libs["advapi32"].GetNamedSecurityInfoW(
                object_name, SE_REGISTRY_KEY, DACL_SECURITY_INFORMATION,
                None, None, byref(dacl), None, byref(descriptor),
            )
        )
        return KeySecurity(object_name=object_name, descriptor=descriptor, dacl=dacl)

    def grant_current_user_read(self, security: KeySecurity) -> None:
        access = EXPLICIT_ACCESS_W()
        access.grfAccessPermissions = KEY_READ
        access.grfAccessMode = GRANT_ACCESS
        access.grfInheritance = SUB_CONTAINERS_AND_OBJECTS_INHERIT
        access.Trustee.MultipleTrusteeOperation = NO_MULTIPLE_TRUSTEE
        access.Trustee.TrusteeForm = TRUSTEE_IS_NAME
        access.Trustee.TrusteeType = TRUSTEE_IS_USER
        access.Trustee.ptstrName = CURRENT_USER_TRUSTEE

        new_dacl = c_void_p()
        _check_status(self.libs["advapi32"].SetEntriesInAclW(1, byref(access), security.dacl, byref(new_dacl)))
        try:
            self.set_key_dacl(security.object_name, new_dacl)
        finally:
            self.libs["kernel32"].LocalFree(new_dacl)

    def set_key_dacl(self, object_name: str, dacl: c_void_p) -> None:
        _check_status(
            self.libs["advapi32"].SetNamedSecurityInfoW(
                object_name, SE_REGISTRY_KEY, DACL_SECURITY_INFORMATION, None, None, dacl, None
            )
        )

    def free_security(self, security: KeySecurity) -> None:
        if security.descriptor:
            self.libs["kernel32"].LocalFree(security.descriptor)
            security.descriptor = c_void_p()

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def open_process(self, pid: int) -> int:
        handle = self.libs["kernel32"].OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
        _check_bool(handle)
        return handle

    def open_process_token(self, process: int) -> int:
        token = wintypes.HANDLE()
        _check_bool(self.libs["advapi32"].OpenProcessToken(process, TOKEN_DUPLICATE | TOKEN_QUERY, byref(token)))
        return token.value

    def duplicate_token(self, token: int) -> int:
        duplicate = wintypes.HANDLE()
        _check_bool(
            self.libs["advapi32"].DuplicateTokenEx(
                token, MAXIMUM_ALLOWED, None, SECURITY_IMPERSONATION, TOKEN_IMPERSONATION, byref(duplicate)
            )
        )
        return duplicate.value

    def impersonate(self, token: int) -> None:
        _check_bool(self.libs["advapi32"].ImpersonateLoggedOnUser(token))

    def revert_to_self(self) -> None:
        _check_bool(self.libs["advapi32"].RevertToSelf())

    def close_handle(self, handle: int) -> None:
        _check_bool(self.libs["kernel32"].CloseHandle(handle))

    # -------------------------------------------------------------------------
    # Registry reads (HKEY_LOCAL_MACHINE)
    # -------------------------------------------------------------------------

    def query_class(self, path: str) -> str:
        advapi32 = self.libs["advapi32"]
        import winreg

        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, path, 0, KEY_READ) as key:
            length = wintypes.DWORD(256)
            buffer = ctypes.create_unicode_buffer(length.value)
            _check_status(
                advapi32.RegQueryInfoKeyW(
                    wintypes.HKEY(key.handle), buffer, byref(length), *([None] * 9)
                )
            )
            return buffer.value

    def query_value(self, path: str, name: str = "") -> bytes:
        if sys.platform != "win32":
            raise PlatformUnsupportedError("Windows registry")
        import winreg

        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, path, 0, KEY_READ) as key:
            value, _ = winreg.QueryValueEx(key, name)
        if isinstance(value, str):
            return value.encode("utf-16-le")
        return bytes(value)

    # -------------------------------------------------------------------------
    # Data protection
    # -------------------------------------------------------------------------

    def crypt_unprotect_data(self, data: bytes, entropy: Optional[bytes] = None) -> bytes:
        buffer = ctypes.create_string_buffer(data, len(data))
        blob_in = DATA_BLOB(len(data), ctypes.cast(buffer, POINTER(c_char)))
        blob_entropy = None
        if entropy:
            entropy_buffer = ctypes.create_string_buffer(entropy, len(entropy))
            blob_entropy = DATA_BLOB(len(entropy), ctypes.cast(entropy_buffer, POINTER(c_char)))
        blob_out = DATA_BLOB()
        _check_bool(
            self.libs["crypt32"].CryptUnprotectData(
                byref(blob_in), None, byref(blob_entropy) if blob_entropy else None,
                None, None, CRYPTPROTECT_UI_FORBIDDEN, byref(blob_out),
            )
        )
        try:
            return ctypes.string_at(blob_out.pbData, blob_out.cbData)
        finally:
            self.libs["kernel32"].LocalFree(ctypes.cast(blob_out.pbData, c_void_p))
