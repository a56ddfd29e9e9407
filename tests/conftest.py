import shutil
from pathlib import Path

import pytest

from subid_ldap_server.config import SubIDConfig
from subid_ldap_server import metrics

FIXTURES = Path(__file__).resolve().parent / "fixtures"


@pytest.fixture
def copy_fixture(tmp_path):
    def copy(name: str, dest: str = "subuid") -> Path:
        path = tmp_path / dest
        shutil.copyfile(FIXTURES / name, path)
        return path
    return copy


@pytest.fixture
def config(tmp_path):
    return SubIDConfig(
        ldap_url="ldap://127.0.0.1:10389",
        user_base_dn="ou=People,dc=test",
        bind_dn="cn=admin,dc=test",
        bind_password="password",
        subuid_path=str(tmp_path / "subuid"),
        subgid_path=str(tmp_path / "subgid"),
    )


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset_metrics()
    yield
