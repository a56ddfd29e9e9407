import asyncio
import logging
import ssl
from typing import List, Optional

import ldap3
from ldap3.core.exceptions import LDAPException
from uvicorn.config import LOGGING_CONFIG

from .config import SubIDConfig

logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger("uvicorn.error")


class DirectoryError(RuntimeError):
    pass


def _numeric(user: str) -> int:
    try:
        return int(user)
    except ValueError:
        return 0


def sort_users(users: List[str]) -> List[str]:
    """Order uid numbers numerically; anything non-numeric sorts as 0."""
    return sorted(users, key=_numeric)


def _first_value(value) -> Optional[str]:
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        value = value[0]
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode()
    value = str(value)
    return value or None


class DirectoryClient:
    def __init__(self, config: SubIDConfig, server: ldap3.Server = None, client_strategy: str = ldap3.SYNC):
        self.config = config
        self.client_strategy = client_strategy
        self.server = server or self._server()

    def _server(self) -> ldap3.Server:
        tls = None
        if self.config.ldap_tls or self.config.ldap_url.startswith("ldaps://"):
            tls = ldap3.Tls(
                validate=ssl.CERT_REQUIRED if self.config.ldap_tls_verify else ssl.CERT_NONE,
                ca_certs_data=self.config.ldap_tls_ca_cert or None,
            )
        return ldap3.Server(self.config.ldap_url, get_info=ldap3.NONE, tls=tls)

    def connect(self) -> ldap3.Connection:
        logger.debug(f"Connecting to LDAP {self.config.ldap_url}")
        conn = ldap3.Connection(
            self.server,
            user=self.config.bind_dn or None,
            password=self.config.bind_password or None,
            client_strategy=self.client_strategy,
            raise_exceptions=True,
        )
        try:
            conn.open()
            if self.config.ldap_tls:
                logger.debug("Performing Start TLS with LDAP server")
                conn.start_tls()
            if self.config.bind_dn and self.config.bind_password:
                logger.debug(f"Binding to LDAP {self.config.ldap_url} as {self.config.bind_dn}")
                conn.bind()
        except LDAPException as e:
            logger.error(f"Error connecting to LDAP {self.config.ldap_url}: {e}")
            if not conn.closed:
                conn.unbind()
            raise DirectoryError(f"LDAP connection to {self.config.ldap_url} failed: {e}") from e
        return conn

    def search_users(self, conn: ldap3.Connection) -> List[str]:
        attr = self.config.user_uid_attr
        logger.debug(
            f"Running user search basedn={self.config.user_base_dn} filter={self.config.user_filter} attr={attr}"
        )
        try:
            if self.config.paged_search:
                entries = conn.extend.standard.paged_search(
                    search_base=self.config.user_base_dn,
                    search_filter=self.config.user_filter,
                    search_scope=ldap3.SUBTREE,
                    attributes=[attr],
                    paged_size=self.config.paged_search_size,
                    generator=False,
                )
            else:
                conn.search(
                    search_base=self.config.user_base_dn,
                    search_filter=self.config.user_filter,
                    search_scope=ldap3.SUBTREE,
                    attributes=[attr],
                )
                entries = conn.response
        except LDAPException as e:
            logger.error(f"Error getting user results: {e}")
            raise DirectoryError(f"LDAP user search failed: {e}") from e

        users = []
        for entry in entries or []:
            if entry.get("type", "searchResEntry") != "searchResEntry":
                continue
            uid = _first_value((entry.get("attributes") or {}).get(attr))
            if uid is None:
                logger.debug(f"Skipping {entry.get('dn')} without {attr}")
                continue
            users.append(uid)
        logger.debug(f"LDAP user results count={len(users)}")
        return users

    def fetch_users(self) -> List[str]:
        conn = self.connect()
        try:
            return self.search_users(conn)
        finally:
            conn.unbind()

    async def users(self) -> List[str]:
        return await asyncio.to_thread(self.fetch_users)
