from types import SimpleNamespace
from unittest.mock import MagicMock, call

import pytest

from sccmkit.errors import ElevationError, InsufficientPrivilegeError
from sccmkit.secrets.elevation import (
    LSA_SECURITY_KEYS,
    ElevatedAccess,
    ElevationTactic,
    RegistryAclRelaxation,
    SystemTokenImpersonation,
    build_access,
    elevated,
    require_administrator,
)
from sccmkit.secrets.win32 import KeySecurity

KEY_A, KEY_B = LSA_SECURITY_KEYS


def _security(name):
    return KeySecurity(object_name=name, descriptor=f"sd:{name}", dacl=f"dacl:{name}")


@pytest.fixture
def api():
    api = MagicMock()
    api.get_key_security.side_effect = _security
    return api


class RecordingAccess(ElevatedAccess):
    tactic = "recording"

    def __init__(self):
        self.events = []

    def acquire(self):
        self.events.append("acquire")

    def release(self):
        self.events.append("release")


def test_scope_releases_when_body_raises():
    access = RecordingAccess()
    with pytest.raises(RuntimeError):
        with elevated(access):
            raise RuntimeError("decryption blew up")
    assert access.events == ["acquire", "release"]


def test_scope_does_not_release_what_was_never_acquired():
    access = RecordingAccess()
    access.acquire = MagicMock(side_effect=ElevationError("recording", "denied"))
    with pytest.raises(ElevationError):
        with elevated(access):
            pytest.fail("body must not run")
    assert access.events == []


def test_require_administrator():
    api = MagicMock()
    api.is_user_admin.return_value = False
    with pytest.raises(InsufficientPrivilegeError):
        require_administrator(api, "local secrets")
    api.is_user_admin.return_value = True
    require_administrator(api, "local secrets")


def test_registry_relaxation_restores_original_dacls(api):
    with elevated(RegistryAclRelaxation(api)):
        assert api.grant_current_user_read.call_count == 2
        api.set_key_dacl.assert_not_called()

    assert api.set_key_dacl.call_args_list == [call(KEY_B, f"dacl:{KEY_B}"), call(KEY_A, f"dacl:{KEY_A}")]
    assert api.free_security.call_count == 2


def test_registry_relaxation_restores_after_body_error(api):
    with pytest.raises(ValueError):
        with elevated(RegistryAclRelaxation(api)):
            raise ValueError("bad LSA record")
    assert api.set_key_dacl.call_count == 2


def test_failed_capture_changes_nothing(api):
    api.get_key_security.side_effect = [_security(KEY_A), OSError(5, "Access is denied")]

    with pytest.raises(ElevationError):
        RegistryAclRelaxation(api).acquire()

    api.grant_current_user_read.assert_not_called()
    api.set_key_dacl.assert_not_called()
    api.free_security.assert_called_once()


def test_failed_grant_rolls_back_modified_keys(api):
    api.grant_current_user_read.side_effect = [None, OSError(5, "Access is denied")]

    with pytest.raises(ElevationError) as excinfo:
        RegistryAclRelaxation(api).acquire()

    api.set_key_dacl.assert_called_once_with(KEY_A, f"dacl:{KEY_A}")
    assert excinfo.value.code == "SCCM_SECRETS_ELEVATION_FAILED"
    assert "rollback incomplete" not in excinfo.value.message


def test_failed_restore_is_reported_after_trying_every_key(api):
    access = RegistryAclRelaxation(api)
    access.acquire()
    api.set_key_dacl.side_effect = [OSError(5, "Access is denied"), None]

    with pytest.raises(ElevationError) as excinfo:
        access.release()

    assert api.set_key_dacl.call_count == 2
    assert KEY_B in excinfo.value.message


def _processes(*names):
    return lambda attrs: [SimpleNamespace(info={"pid": 100 + i, "name": n}) for i, n in enumerate(names)]


def test_token_impersonation_lifecycle():
    api = MagicMock()
    api.open_process.return_value = 10
    api.open_process_token.return_value = 11
    api.duplicate_token.return_value = 12
    access = SystemTokenImpersonation(api, process_iter=_processes("System", "WINLOGON.EXE"))

    with elevated(access):
        api.open_process.assert_called_once_with(101)
        api.impersonate.assert_called_once_with(12)
        assert api.close_handle.call_args_list == [call(11), call(10)]

    api.revert_to_self.assert_called_once()
    assert api.close_handle.call_args_list[-1] == call(12)


def test_token_impersonation_without_system_process():
    access = SystemTokenImpersonation(MagicMock(), process_iter=_processes("explorer.exe"))
    with pytest.raises(ElevationError):
        access.acquire()


def test_failed_impersonation_closes_every_handle():
    api = MagicMock()
    api.open_process.return_value = 10
    api.open_process_token.return_value = 11
    api.duplicate_token.return_value = 12
    api.impersonate.side_effect = OSError(1314, "A required privilege is not held by the client")
    access = SystemTokenImpersonation(api, process_iter=_processes("winlogon.exe"))

    with pytest.raises(ElevationError):
        access.acquire()

    closed = {c.args[0] for c in api.close_handle.call_args_list}
    assert closed == {10, 11, 12}
    access.release()
    api.revert_to_self.assert_not_called()


def test_failed_revert_is_reported():
    api = MagicMock()
    api.revert_to_self.side_effect = OSError(6, "The handle is invalid")
    access = SystemTokenImpersonation(api, process_iter=_processes("winlogon.exe"))
    access.acquire()
    with pytest.raises(ElevationError):
        access.release()


def test_build_access():
    api = MagicMock()
    assert isinstance(build_access(ElevationTactic.REGISTRY, api), RegistryAclRelaxation)
    assert isinstance(build_access(ElevationTactic("token"), api), SystemTokenImpersonation)
