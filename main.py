"""
WordPress fleet control plane - command line entry point.

`serve` runs the workers and the backup cleanup scheduler until SIGINT or
SIGTERM. Every other subcommand performs one control plane operation and
prints its result as JSON on stdout; logs go to stderr and the log dir.

Examples:
    python main.py node register node-1.example.com --public-ip 203.0.113.10
    python main.py site create "Acme" acme
    python main.py env deploy <environment_id> git <ref>
    python main.py promote <source_environment_id> <target_environment_id>
    python main.py serve
"""

import argparse
import dataclasses
import json
import logging
import signal
import sys
import threading
from typing import Any, Optional

from dotenv import load_dotenv

from src.app import ControlPlane
from src.common.errors import ControlPlaneError
from src.infra.config import Settings
from src.infra.logging_config import setup_logging
from src.jobs.entities import Job

logger = logging.getLogger("src.cli")

shutdown_requested = threading.Event()


def signal_handler(signum, frame):
    """SIGINT / SIGTERM: stop after running jobs finish."""
    signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
    logger.info(f"{signal_name} received - shutting down after running jobs finish")
    shutdown_requested.set()


def to_jsonable(value: Any) -> Any:
    if isinstance(value, Job):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, list):
        return [to_jsonable(item) for item in value]
    return value


def print_json(value: Any) -> None:
    print(json.dumps(to_jsonable(value), indent=2, ensure_ascii=False, default=str))


def optional_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes", "on"):
        return True
    if lowered in ("false", "0", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got {value!r}")


# =============================================================================
# Commands
# =============================================================================

def cmd_serve(cp: ControlPlane, args) -> Optional[dict]:
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    recovery_stats = cp.start(run_recovery=not args.skip_recovery)
    logger.info(f"Serving with {cp.settings.worker_count} worker(s); recovery: {recovery_stats}")
    try:
        while not shutdown_requested.wait(1.0):
            pass
    finally:
        cp.stop(timeout=args.stop_timeout)
    return None


def cmd_node_register(cp: ControlPlane, args):
    return cp.nodes.register(
        args.hostname,
        public_ip=args.public_ip,
        ssh_port=args.ssh_port,
        ssh_user=args.ssh_user,
        ssh_private_key_path=args.ssh_key,
        is_local=args.local,
    )


def cmd_node_provision(cp: ControlPlane, args):
    return {"job_id": cp.nodes.provision(args.node_id)}


def cmd_node_list(cp: ControlPlane, args):
    return cp.nodes.list_nodes()


def cmd_site_create(cp: ControlPlane, args):
    return cp.sites.create(args.name, args.slug, node_id=args.node_id)


def cmd_site_import(cp: ControlPlane, args):
    return cp.sites.import_site(args.site_id, args.archive_url)


def cmd_site_reset(cp: ControlPlane, args):
    return cp.sites.reset_failed(args.site_id)


def cmd_site_list(cp: ControlPlane, args):
    return cp.sites.list_sites()


def cmd_env_create(cp: ControlPlane, args):
    return cp.environments.create(
        args.site_id,
        args.name,
        args.slug,
        args.environment_type,
        args.source_environment_id,
        promotion_preset=args.promotion_preset,
    )


def cmd_env_deploy(cp: ControlPlane, args):
    return cp.environments.deploy(args.environment_id, args.source_type, args.source_ref)


def cmd_env_updates(cp: ControlPlane, args):
    return cp.environments.updates(args.environment_id, args.scope)


def cmd_env_restore(cp: ControlPlane, args):
    return cp.environments.restore(args.environment_id, args.backup_id)


def cmd_env_cache(cp: ControlPlane, args):
    job_id = cp.environments.toggle_cache(
        args.environment_id,
        fastcgi_cache_enabled=args.fastcgi,
        redis_cache_enabled=args.redis,
    )
    return {"job_id": job_id}


def cmd_env_purge(cp: ControlPlane, args):
    return {"job_id": cp.environments.purge_cache(args.environment_id)}


def cmd_env_reset(cp: ControlPlane, args):
    return cp.environments.reset_failed(args.environment_id)


def cmd_env_list(cp: ControlPlane, args):
    return cp.environments.list_by_site(args.site_id)


def cmd_backup_create(cp: ControlPlane, args):
    return cp.backups.create(args.environment_id, args.scope)


def cmd_backup_list(cp: ControlPlane, args):
    return cp.backups.list_by_environment(args.environment_id)


def cmd_domain_add(cp: ControlPlane, args):
    return cp.domains.add(args.environment_id, args.hostname)


def cmd_domain_remove(cp: ControlPlane, args):
    return {"job_id": cp.domains.remove(args.domain_id)}


def cmd_domain_list(cp: ControlPlane, args):
    return cp.domains.list_by_environment(args.environment_id)


def cmd_drift_check(cp: ControlPlane, args):
    return cp.promotion.drift_check(args.environment_id)


def cmd_promote(cp: ControlPlane, args):
    return cp.promotion.promote(args.source_environment_id, args.target_environment_id)


def cmd_jobs_list(cp: ControlPlane, args):
    return cp.queue.list_jobs(limit=args.limit, status=args.status)


def cmd_jobs_get(cp: ControlPlane, args):
    return cp.queue.get(args.job_id)


def cmd_jobs_cancel(cp: ControlPlane, args):
    return cp.queue.cancel(args.job_id)


def cmd_jobs_counts(cp: ControlPlane, args):
    return cp.queue.count_by_status()


def cmd_magic_login(cp: ControlPlane, args):
    return cp.magic_login.create_magic_login(args.environment_id)


# =============================================================================
# Argument parsing
# =============================================================================

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="WordPress fleet control plane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1] if __doc__ else None,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run workers and the backup cleanup scheduler")
    serve.add_argument("--skip-recovery", action="store_true", help="Do not recover orphaned running jobs")
    serve.add_argument("--stop-timeout", type=float, default=30.0, help="Seconds to wait for running jobs")
    serve.set_defaults(func=cmd_serve)

    # node
    node = commands.add_parser("node", help="Nodes").add_subparsers(dest="action", required=True)
    register = node.add_parser("register", help="Register a node and provision it")
    register.add_argument("hostname")
    register.add_argument("--public-ip", default=None)
    register.add_argument("--ssh-port", type=int, default=22)
    register.add_argument("--ssh-user", default="root")
    register.add_argument("--ssh-key", default=None, help="Private key path")
    register.add_argument("--local", action="store_true", help="Run playbooks with a local connection")
    register.set_defaults(func=cmd_node_register)
    provision = node.add_parser("provision", help="Re-run provisioning")
    provision.add_argument("node_id")
    provision.set_defaults(func=cmd_node_provision)
    node.add_parser("list").set_defaults(func=cmd_node_list)

    # site
    site = commands.add_parser("site", help="Sites").add_subparsers(dest="action", required=True)
    create = site.add_parser("create", help="Create a site with its production environment")
    create.add_argument("name")
    create.add_argument("slug")
    create.add_argument("--node-id", default=None)
    create.set_defaults(func=cmd_site_create)
    import_ = site.add_parser("import", help="Import an archive into the primary environment")
    import_.add_argument("site_id")
    import_.add_argument("archive_url")
    import_.set_defaults(func=cmd_site_import)
    reset = site.add_parser("reset", help="Return a failed site to active")
    reset.add_argument("site_id")
    reset.set_defaults(func=cmd_site_reset)
    site.add_parser("list").set_defaults(func=cmd_site_list)

    # env
    env = commands.add_parser("env", help="Environments").add_subparsers(dest="action", required=True)
    env_create = env.add_parser("create", help="Clone an environment")
    env_create.add_argument("site_id")
    env_create.add_argument("name")
    env_create.add_argument("slug")
    env_create.add_argument("environment_type", choices=["staging", "clone"])
    env_create.add_argument("source_environment_id")
    env_create.add_argument(
        "--promotion-preset",
        choices=["content-protect", "commerce-protect"],
        default="content-protect",
    )
    env_create.set_defaults(func=cmd_env_create)
    deploy = env.add_parser("deploy", help="Deploy code into a new release")
    deploy.add_argument("environment_id")
    deploy.add_argument("source_type", choices=["git", "upload"])
    deploy.add_argument("source_ref")
    deploy.set_defaults(func=cmd_env_deploy)
    updates = env.add_parser("updates", help="Run WordPress updates")
    updates.add_argument("environment_id")
    updates.add_argument("scope", choices=["core", "plugins", "themes", "all"])
    updates.set_defaults(func=cmd_env_updates)
    restore = env.add_parser("restore", help="Restore from a completed backup")
    restore.add_argument("environment_id")
    restore.add_argument("backup_id")
    restore.set_defaults(func=cmd_env_restore)
    cache = env.add_parser("cache", help="Toggle caches")
    cache.add_argument("environment_id")
    cache.add_argument("--fastcgi", type=optional_bool, default=None)
    cache.add_argument("--redis", type=optional_bool, default=None)
    cache.set_defaults(func=cmd_env_cache)
    purge = env.add_parser("purge", help="Purge caches")
    purge.add_argument("environment_id")
    purge.set_defaults(func=cmd_env_purge)
    env_reset = env.add_parser("reset", help="Return a failed environment to active")
    env_reset.add_argument("environment_id")
    env_reset.set_defaults(func=cmd_env_reset)
    env_list = env.add_parser("list", help="Environments of a site")
    env_list.add_argument("site_id")
    env_list.set_defaults(func=cmd_env_list)

    # backup
    backup = commands.add_parser("backup", help="Backups").add_subparsers(dest="action", required=True)
    backup_create = backup.add_parser("create")
    backup_create.add_argument("environment_id")
    backup_create.add_argument("scope", choices=["db", "files", "full"])
    backup_create.set_defaults(func=cmd_backup_create)
    backup_list = backup.add_parser("list")
    backup_list.add_argument("environment_id")
    backup_list.set_defaults(func=cmd_backup_list)

    # domain
    domain = commands.add_parser("domain", help="Custom domains").add_subparsers(dest="action", required=True)
    domain_add = domain.add_parser("add")
    domain_add.add_argument("environment_id")
    domain_add.add_argument("hostname")
    domain_add.set_defaults(func=cmd_domain_add)
    domain_remove = domain.add_parser("remove")
    domain_remove.add_argument("domain_id")
    domain_remove.set_defaults(func=cmd_domain_remove)
    domain_list = domain.add_parser("list")
    domain_list.add_argument("environment_id")
    domain_list.set_defaults(func=cmd_domain_list)

    # promotion
    drift = commands.add_parser("drift-check", help="Check an environment for drift")
    drift.add_argument("environment_id")
    drift.set_defaults(func=cmd_drift_check)
    promote = commands.add_parser("promote", help="Promote one environment onto another")
    promote.add_argument("source_environment_id")
    promote.add_argument("target_environment_id")
    promote.set_defaults(func=cmd_promote)

    # jobs
    jobs = commands.add_parser("jobs", help="Job queue").add_subparsers(dest="action", required=True)
    jobs_list = jobs.add_parser("list")
    jobs_list.add_argument("--status", default=None)
    jobs_list.add_argument("--limit", type=int, default=100)
    jobs_list.set_defaults(func=cmd_jobs_list)
    jobs_get = jobs.add_parser("get")
    jobs_get.add_argument("job_id")
    jobs_get.set_defaults(func=cmd_jobs_get)
    jobs_cancel = jobs.add_parser("cancel")
    jobs_cancel.add_argument("job_id")
    jobs_cancel.set_defaults(func=cmd_jobs_cancel)
    jobs.add_parser("counts").set_defaults(func=cmd_jobs_counts)

    magic = commands.add_parser("magic-login", help="One-shot admin login URL")
    magic.add_argument("environment_id")
    magic.set_defaults(func=cmd_magic_login)

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_dir, settings.log_retention_days)

    control_plane = ControlPlane.create(settings)
    try:
        result = args.func(control_plane, args)
    except ControlPlaneError as e:
        print_json({"error": e.code, "message": str(e)})
        return 1

    if result is not None:
        print_json(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
