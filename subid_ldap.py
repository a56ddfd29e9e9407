import argparse
import asyncio
import logging
import os
import sys

from pydantic import ValidationError

from subid_ldap_server import metrics
from subid_ldap_server.config import SubIDConfig, env_bool, parse_duration
from subid_ldap_server.subordinate_manager import APP_NAME
from subid_ldap_server.sync_manager import SyncManager, create_app

logger = logging.getLogger("uvicorn.error")

LOG_LEVELS = ["debug", "info", "warning", "error"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=APP_NAME, description="Manage subuid and subgid files from LDAP users")
    parser.add_argument("--subid.subuid", dest="subuid_path", default=os.getenv("SUBID_SUBUID", "/etc/subuid"),
                        help="Path to subuid file")
    parser.add_argument("--subid.subgid", dest="subgid_path", default=os.getenv("SUBID_SUBGID", "/etc/subgid"),
                        help="Path to subgid file")
    parser.add_argument("--subid.start", dest="subid_start", type=int, default=os.getenv("SUBID_START", "65537"),
                        help="Start ID of subuid/subgid")
    parser.add_argument("--subid.range", dest="subid_range", type=int, default=os.getenv("SUBID_RANGE", "65536"),
                        help="Range for each entry")
    parser.add_argument("--ldap.url", dest="ldap_url", default=os.getenv("LDAP_URL"), help="LDAP URL")
    parser.add_argument("--ldap.tls", dest="ldap_tls", action=argparse.BooleanOptionalAction,
                        default=env_bool("LDAP_TLS", False), help="Enable StartTLS with the LDAP server")
    parser.add_argument("--ldap.tls-verify", dest="ldap_tls_verify", action=argparse.BooleanOptionalAction,
                        default=env_bool("LDAP_TLS_VERIFY", True), help="Verify TLS certificate with LDAP server")
    parser.add_argument("--ldap.tls-ca-cert", dest="ldap_tls_ca_cert", default=os.getenv("LDAP_TLS_CA_CERT", ""),
                        help="TLS CA Cert (PEM) for LDAP server")
    parser.add_argument("--ldap.user-base-dn", dest="user_base_dn", default=os.getenv("LDAP_USER_BASE_DN"),
                        help="LDAP User Base DN")
    parser.add_argument("--ldap.user-filter", dest="user_filter",
                        default=os.getenv("LDAP_USER_FILTER", "(objectClass=posixAccount)"), help="LDAP user filter")
    parser.add_argument("--ldap.user-uid-attr", dest="user_uid_attr", default=os.getenv("LDAP_USER_UID_ATTR", "uidNumber"),
                        help="LDAP user UID attribute")
    parser.add_argument("--ldap.bind-dn", dest="bind_dn", default=os.getenv("LDAP_BIND_DN", ""), help="LDAP Bind DN")
    parser.add_argument("--ldap.bind-password", dest="bind_password", default=os.getenv("LDAP_BIND_PASSWORD", ""),
                        help="LDAP Bind Password")
    parser.add_argument("--ldap.paged-search", dest="paged_search", action=argparse.BooleanOptionalAction,
                        default=env_bool("LDAP_PAGED_SEARCH", False), help="Enable LDAP paged searching")
    parser.add_argument("--ldap.paged-search-size", dest="paged_search_size", type=int,
                        default=os.getenv("LDAP_PAGED_SEARCH_SIZE", "1000"), help="LDAP paged search size")
    parser.add_argument("--daemon", dest="daemon", action=argparse.BooleanOptionalAction,
                        default=env_bool("DAEMON", False), help="Run application as a daemon")
    parser.add_argument("--daemon.update-interval", dest="update_interval", type=parse_duration,
                        default=os.getenv("DAEMON_UPDATE_INTERVAL", "5m"), help="How often to update in daemon mode")
    parser.add_argument("--metrics.listen-address", dest="listen_address",
                        default=os.getenv("METRICS_LISTEN_ADDRESS", ":8085"), help="Address to listen on for daemon metrics")
    parser.add_argument("--metrics.path", dest="metrics_path", default=os.getenv("METRICS_PATH", ""),
                        help="Path to save Prometheus metrics when not daemon")
    parser.add_argument("--log.level", dest="log_level", choices=LOG_LEVELS, default=os.getenv("LOG_LEVEL", "info"),
                        help="Only log messages with the given severity or above")
    return parser


def load_config(args: argparse.Namespace) -> SubIDConfig:
    values = vars(args).copy()
    values.pop("log_level")
    return SubIDConfig(**values)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logger.setLevel(args.log_level.upper())

    try:
        config = load_config(args)
    except (ValidationError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    logger.info(f"Starting {APP_NAME} version={metrics.VERSION}")
    manager = SyncManager(config)

    if config.daemon:
        import uvicorn

        host, port = config.listen_host_port
        uvicorn.run(create_app(manager), host=host, port=port, log_level=args.log_level, timeout_graceful_shutdown=5)
        return 0

    try:
        asyncio.run(manager.run_once())
    except Exception as e:
        logger.error(f"Subid sync failed: {e}")
        return 1
    finally:
        if config.metrics_path:
            metrics.write_metrics(config.metrics_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
