import os
import re

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

load_dotenv()

DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}
DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)([smh])")


def parse_duration(value) -> float:
    """Turn "5m", "1h30m", "90s" or a bare number of seconds into seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass
    parts = DURATION_RE.findall(value)
    if not parts or "".join(n + u for n, u in parts) != value:
        raise ValueError(f"Invalid duration: {value!r}")
    return sum(float(n) * DURATION_UNITS[u] for n, u in parts)


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class SubIDConfig(BaseModel):
    ldap_url: str
    ldap_tls: bool = False
    ldap_tls_verify: bool = True
    ldap_tls_ca_cert: str = ""
    bind_dn: str = ""
    bind_password: str = ""
    user_base_dn: str
    user_filter: str = "(objectClass=posixAccount)"
    user_uid_attr: str = "uidNumber"
    paged_search: bool = False
    paged_search_size: int = Field(default=1000, gt=0)

    subuid_path: str = "/etc/subuid"
    subgid_path: str = "/etc/subgid"
    subid_start: int = Field(default=65537, ge=0)
    subid_range: int = Field(default=65536, gt=0)

    daemon: bool = False
    update_interval: float = Field(default=300, gt=0)
    listen_address: str = ":8085"
    metrics_path: str = ""

    @model_validator(mode="after")
    def check_bind(self):
        if bool(self.bind_dn) != bool(self.bind_password):
            raise ValueError("Must provide both LDAP Bind DN and Bind Password if either is provided")
        return self

    @property
    def listen_host_port(self):
        host, _, port = self.listen_address.rpartition(":")
        return host.strip("[]") or "0.0.0.0", int(port)
